"""
Learning Services

Versioned per-division impact weights, updated by EMA over measured impact.
"""

from .weight_updater import (
    LearningWeightUpdater,
    current_weights,
    normalize_positive,
    append_weight_version,
)

__all__ = [
    'LearningWeightUpdater',
    'current_weights',
    'normalize_positive',
    'append_weight_version',
]
