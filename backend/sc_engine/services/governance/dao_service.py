"""
DAO Service

Proposal creation (with stake snapshot), vote casting, and the hourly
sweep that tallies proposals whose voting window has ended.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import NotFoundError, PreconditionError, SCEngineError, ValidationError
from ...models.db_models import (
    DAOProposalDB,
    DAOSpaceDB,
    DAOStakeSnapshotDB,
    DAOVoteDB,
    ProposalStatus,
    VoteChoice,
    WalletDB,
    utcnow,
)
from .dao_tally import DEFAULT_STAKE_CAP, DAOTally, vote_weight


logger = logging.getLogger(__name__)


DEFAULT_SPACE_SLUG = "sc-core"


class DAOService:
    """
    Governance proposal lifecycle.

    Usage:
        service = DAOService(db)
        proposal = service.create_proposal("Raise crisis floor", "...", created_by=user_id)
        service.cast_vote(proposal["id"], voter_id, "yes")
    """

    TITLE_MIN, TITLE_MAX = 5, 200
    BODY_MIN, BODY_MAX = 10, 50000
    MAX_ACTIONS = 10
    WINDOW_MIN_HOURS, WINDOW_MAX_HOURS = 1, 720
    DEFAULT_WINDOW_HOURS = 72

    def __init__(self, db: Session):
        self.db = db

    def create_proposal(
        self,
        title: str,
        body: str,
        actions: Optional[List[Any]] = None,
        space_slug: Optional[str] = None,
        voting_window_hours: Optional[int] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        title = (title or "").strip()
        body = (body or "").strip()
        actions = actions or []
        window = voting_window_hours or self.DEFAULT_WINDOW_HOURS

        if not self.TITLE_MIN <= len(title) <= self.TITLE_MAX:
            raise ValidationError(f"Title must be {self.TITLE_MIN}-{self.TITLE_MAX} characters")
        if not self.BODY_MIN <= len(body) <= self.BODY_MAX:
            raise ValidationError(f"Body must be {self.BODY_MIN}-{self.BODY_MAX} characters")
        if not isinstance(actions, list) or len(actions) > self.MAX_ACTIONS:
            raise ValidationError(f"Actions must be a list of at most {self.MAX_ACTIONS} items")
        if not isinstance(window, int) or not self.WINDOW_MIN_HOURS <= window <= self.WINDOW_MAX_HOURS:
            raise ValidationError(f"Voting window must be {self.WINDOW_MIN_HOURS}-{self.WINDOW_MAX_HOURS} hours")

        slug = space_slug or DEFAULT_SPACE_SLUG
        space = self.db.query(DAOSpaceDB).filter(DAOSpaceDB.slug == slug).first()
        if not space:
            raise NotFoundError(f"DAO space not found: {slug}")

        now = now or utcnow()
        proposal = DAOProposalDB(
            id=str(uuid4()),
            space_id=space.id,
            created_by=created_by,
            title=title,
            body=body,
            actions=actions,
            quorum_pct=space.quorum_pct,
            pass_pct=space.pass_pct,
            stake_cap=space.stake_cap,
            voting_starts=now,
            voting_ends=now + timedelta(hours=window),
            snapshot_at=now,
            status=ProposalStatus.OPEN,
        )
        self.db.add(proposal)
        self.db.flush()

        snapshots = self._snapshot_stakes(proposal, now)

        logger.info(f"Proposal {proposal.id} created in {slug}: {snapshots} voters snapshotted")

        return {
            "id": proposal.id,
            "space": slug,
            "title": proposal.title,
            "status": proposal.status.value,
            "quorum_pct": proposal.quorum_pct,
            "pass_pct": proposal.pass_pct,
            "voting_starts": proposal.voting_starts.isoformat(),
            "voting_ends": proposal.voting_ends.isoformat(),
            "snapshot_voters": snapshots,
        }

    def cast_vote(self, proposal_id: str, voter: str, choice: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        try:
            vote_choice = VoteChoice(choice)
        except ValueError:
            raise ValidationError("Invalid choice. Must be yes, no, or abstain")

        proposal = self.db.query(DAOProposalDB).filter(DAOProposalDB.id == proposal_id).first()
        if not proposal:
            raise NotFoundError(f"Proposal not found: {proposal_id}")
        if proposal.status != ProposalStatus.OPEN:
            raise PreconditionError("Proposal is closed")

        now = now or utcnow()
        if now < proposal.voting_starts or now > proposal.voting_ends:
            raise PreconditionError("Voting window has closed or not yet started")

        snapshot = self.db.query(DAOStakeSnapshotDB).filter(
            DAOStakeSnapshotDB.proposal_id == proposal.id,
            DAOStakeSnapshotDB.voter == voter,
        ).first()
        # Members outside the snapshot carry no weight in any mode
        weight = 0.0
        if snapshot:
            weight = vote_weight(proposal.space.voting_mode, snapshot.balance_sc, proposal.stake_cap or DEFAULT_STAKE_CAP)

        vote = self.db.query(DAOVoteDB).filter(
            DAOVoteDB.proposal_id == proposal.id,
            DAOVoteDB.voter == voter,
        ).first()
        if vote:
            vote.choice = vote_choice
            vote.weight = weight
        else:
            vote = DAOVoteDB(
                id=str(uuid4()),
                proposal_id=proposal.id,
                voter=voter,
                choice=vote_choice,
                weight=weight,
            )
            self.db.add(vote)
        self.db.flush()

        return {"ok": True, "proposal_id": proposal.id, "choice": vote_choice.value, "weight": weight}

    def tally_ended_proposals(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Tally every open proposal whose window has ended. Isolated per proposal."""
        now = now or utcnow()
        proposals = self.db.query(DAOProposalDB).filter(
            DAOProposalDB.status == ProposalStatus.OPEN,
            DAOProposalDB.voting_ends <= now,
        ).order_by(DAOProposalDB.voting_ends).all()

        tally = DAOTally(self.db)
        results = []
        errors = []
        for proposal in proposals:
            try:
                with self.db.begin_nested():
                    results.append(tally.tally(proposal.id, now=now))
            except SCEngineError as e:
                logger.warning(f"Tally failed for proposal {proposal.id}: {e.message}")
                errors.append({"proposal_id": proposal.id, "error": e.message})

        return {"ok": True, "tallied": len(results), "results": results, "errors": errors}

    def _snapshot_stakes(self, proposal: DAOProposalDB, taken_at: datetime) -> int:
        wallets = self.db.query(WalletDB).filter(WalletDB.user_id.isnot(None)).all()
        for wallet in wallets:
            self.db.add(DAOStakeSnapshotDB(
                id=str(uuid4()),
                proposal_id=proposal.id,
                voter=wallet.user_id,
                balance_sc=wallet.balance,
                taken_at=taken_at,
            ))
        self.db.flush()
        return len(wallets)
