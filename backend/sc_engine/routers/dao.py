"""
DAO API Routes

Proposal creation, vote casting and tallying.

Caller identity (created_by, voter) is resolved by the fronting auth
gateway, which reaches these routes with the internal key.
"""
from typing import Any, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.audit import audited_action
from ..services.governance import DAOService, DAOTally
from .scheduler import verify_internal_key


router = APIRouter(prefix="/dao", tags=["dao"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class ProposalRequest(BaseModel):
    """Request model for creating a proposal."""
    title: str
    body: str
    actions: Optional[List[Any]] = None
    space_slug: Optional[str] = None
    voting_window_hours: Optional[int] = None
    created_by: Optional[str] = None


class VoteRequest(BaseModel):
    """Request model for casting a vote."""
    proposal_id: str
    voter: str
    choice: str  # yes, no, abstain


class TallyRequest(BaseModel):
    """Request model for tallying a proposal."""
    proposal_id: str


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/proposals", response_model=dict)
async def create_proposal(
    request: ProposalRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Create a proposal and snapshot voter stakes."""
    with audited_action(db, "dao.propose", division="governance"):
        proposal = DAOService(db).create_proposal(
            title=request.title,
            body=request.body,
            actions=request.actions,
            space_slug=request.space_slug,
            voting_window_hours=request.voting_window_hours,
            created_by=request.created_by,
        )
    return {"ok": True, "proposal": proposal}


@router.post("/votes", response_model=dict)
async def cast_vote(
    request: VoteRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Cast or change a vote. Weight comes from the stake snapshot."""
    with audited_action(db, "dao.vote", division="governance"):
        result = DAOService(db).cast_vote(request.proposal_id, request.voter, request.choice)
    return result


@router.post("/tally", response_model=dict)
async def tally_proposal(
    request: TallyRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Close a proposal whose voting window has ended."""
    with audited_action(db, "dao.tally", division="governance"):
        result = DAOTally(db).tally(request.proposal_id)
    return result
