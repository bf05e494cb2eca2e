"""SC Engine - Data Models"""
from .schemas import FederationBundle, FederationSignal

__all__ = ["FederationBundle", "FederationSignal"]
