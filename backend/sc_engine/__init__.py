"""SC Engine - learned resource allocation with federated priors."""

__version__ = "1.0.0"
