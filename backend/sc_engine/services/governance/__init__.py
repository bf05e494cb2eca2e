"""
Governance Services

DAO proposals, stake snapshots, votes and quorum tallying, plus the
approval queue shared with gated rebalance moves.
"""

from .approval_queue import ApprovalQueue
from .dao_tally import DAOTally, TallyResult, compute_tally, vote_weight
from .dao_service import DAOService

__all__ = [
    'ApprovalQueue',
    'DAOTally',
    'TallyResult',
    'compute_tally',
    'vote_weight',
    'DAOService',
]
