"""
Allocation Services

Constrained, deterministic rebalancing of SC across division wallets.
"""

from .policy_engine import (
    AllocationPolicyEngine,
    DivisionScoreInput,
    PlannedMove,
    compute_target_percentages,
    match_moves,
    score_division,
    DEAD_BAND_SC,
)

__all__ = [
    'AllocationPolicyEngine',
    'DivisionScoreInput',
    'PlannedMove',
    'compute_target_percentages',
    'match_moves',
    'score_division',
    'DEAD_BAND_SC',
]
