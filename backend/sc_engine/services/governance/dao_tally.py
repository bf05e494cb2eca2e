"""
DAO Tally

Quorum/threshold vote counting for governance proposals.

    total_eligible = sum(vote_weight(mode, snapshot.balance_sc, stake_cap))
    turnout_pct    = (yes + no + abstain) / total_eligible * 100
    yes_pct        = yes / (yes + no) * 100

A proposal passes iff turnout_pct >= quorum_pct AND yes_pct >= pass_pct.
Abstain counts toward turnout only. Passed proposals are queued for
approval, never executed here.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from ...errors import NotFoundError, PreconditionError
from ...models.db_models import DAOProposalDB, ProposalStatus, VoteChoice, VotingMode, utcnow
from .approval_queue import ApprovalQueue


logger = logging.getLogger(__name__)


DEFAULT_STAKE_CAP = 10000.0


def vote_weight(voting_mode: VotingMode, snapshot_balance: float, stake_cap: float = DEFAULT_STAKE_CAP) -> float:
    """Vote weight for a voter under the space's voting mode."""
    capped = min(max(0.0, snapshot_balance or 0.0), stake_cap)
    if voting_mode == VotingMode.ONE_PERSON:
        return 1.0
    if voting_mode == VotingMode.HYBRID:
        return 0.5 * capped + 0.5
    return capped


@dataclass
class TallyResult:
    """Outcome of counting a proposal's votes."""
    yes_weight: float
    no_weight: float
    abstain_weight: float
    total_eligible: float
    turnout_pct: float
    yes_pct: float
    passed: bool


def compute_tally(
    votes: Iterable[Tuple[str, float]],
    snapshot_balances: Iterable[float],
    quorum_pct: float,
    pass_pct: float,
    stake_cap: float = DEFAULT_STAKE_CAP,
    voting_mode: VotingMode = VotingMode.STAKE,
) -> TallyResult:
    """
    Pure tally over (choice, weight) pairs and snapshot balances.

    Eligible weight is measured in the same voting mode as the votes.
    """
    totals = {VoteChoice.YES.value: 0.0, VoteChoice.NO.value: 0.0, VoteChoice.ABSTAIN.value: 0.0}
    for choice, weight in votes:
        key = choice.value if isinstance(choice, VoteChoice) else str(choice)
        if key in totals:
            totals[key] += float(weight or 0.0)

    total_eligible = sum(vote_weight(voting_mode, balance, stake_cap) for balance in snapshot_balances)

    yes = totals[VoteChoice.YES.value]
    no = totals[VoteChoice.NO.value]
    abstain = totals[VoteChoice.ABSTAIN.value]
    cast = yes + no + abstain

    turnout_pct = (cast / total_eligible * 100.0) if total_eligible > 0 else 0.0
    yes_pct = (yes / (yes + no) * 100.0) if (yes + no) > 0 else 0.0

    return TallyResult(
        yes_weight=yes,
        no_weight=no,
        abstain_weight=abstain,
        total_eligible=total_eligible,
        turnout_pct=turnout_pct,
        yes_pct=yes_pct,
        passed=turnout_pct >= quorum_pct and yes_pct >= pass_pct,
    )


class DAOTally:
    """
    Closes a proposal once its voting window has ended.

    Usage:
        result = DAOTally(db).tally(proposal_id)
    """

    def __init__(self, db: Session):
        self.db = db
        self.approvals = ApprovalQueue(db)

    def tally(self, proposal_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()

        proposal = self.db.query(DAOProposalDB).filter(DAOProposalDB.id == proposal_id).first()
        if not proposal:
            raise NotFoundError(f"Proposal not found: {proposal_id}")
        if now < proposal.voting_ends:
            raise PreconditionError("Voting still in progress")
        if proposal.status != ProposalStatus.OPEN:
            raise PreconditionError(f"Proposal already closed ({proposal.status.value})")

        result = compute_tally(
            votes=[(v.choice, v.weight) for v in proposal.votes],
            snapshot_balances=[s.balance_sc for s in proposal.snapshots],
            quorum_pct=proposal.quorum_pct,
            pass_pct=proposal.pass_pct,
            stake_cap=proposal.stake_cap or DEFAULT_STAKE_CAP,
            voting_mode=proposal.space.voting_mode,
        )

        if result.passed:
            proposal.status = ProposalStatus.APPROVED
            approval = self.approvals.enqueue(
                action="execute_dao_proposal",
                division="governance",
                requester=proposal.created_by,
                payload={"proposal_id": proposal.id, "actions": proposal.actions or []},
            )
            proposal.approval_id = approval.id
        else:
            proposal.status = ProposalStatus.REJECTED
        self.db.flush()

        logger.info(
            f"Proposal {proposal.id} {proposal.status.value}: "
            f"turnout {result.turnout_pct:.1f}%, yes {result.yes_pct:.1f}%"
        )

        return {
            "proposal_id": proposal.id,
            "status": proposal.status.value,
            "yesWeight": result.yes_weight,
            "noWeight": result.no_weight,
            "abstainWeight": result.abstain_weight,
            "turnoutPct": result.turnout_pct,
            "yesPct": result.yes_pct,
            "approval_id": proposal.approval_id,
        }
