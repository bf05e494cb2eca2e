"""
Federation Services

Signed, hashed, DP-noised learning signal exchange between SC nodes:
- BundleExporter: build and sign the outbound bundle
- BundleSender: deliver queued bundles with bounded retries
- IngestionVerifier: gate inbound bundles
- GlobalPriorMerger: blend verified signals into local weights
"""

from .bundle_exporter import BundleExporter
from .bundle_sender import BundleSender
from .ingestion import IngestionVerifier, summary_strength
from .global_prior import GlobalPriorMerger, compute_global_prior, blend_with_drift_cap

__all__ = [
    'BundleExporter',
    'BundleSender',
    'IngestionVerifier',
    'summary_strength',
    'GlobalPriorMerger',
    'compute_global_prior',
    'blend_with_drift_cap',
]
