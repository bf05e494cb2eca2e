"""
Allocation API Routes

Rebalance runs (simulate by default) and execution of approved moves.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.allocation import AllocationPolicyEngine
from ..services.audit import audited_action
from .scheduler import verify_internal_key


router = APIRouter(prefix="/allocation", tags=["allocation"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RebalanceRequest(BaseModel):
    """Request model for a rebalance run."""
    policy_key: Optional[str] = None
    mode: str = "simulate"  # simulate, execute


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/rebalance", response_model=dict)
async def run_rebalance(
    request: RebalanceRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Plan (and optionally execute) a rebalance under an allocation policy.

    Moves above the policy's approval threshold are queued for approval
    and never executed here.
    """
    with audited_action(db, f"allocation.rebalance.{request.mode}", division="system"):
        result = AllocationPolicyEngine(db).run(request.policy_key, request.mode)
    return result


@router.get("/runs/{run_id}", response_model=dict)
async def get_run(
    run_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Rebalance run with its moves."""
    return AllocationPolicyEngine(db).get_run(run_id)


@router.post("/moves/{move_id}/execute", response_model=dict)
async def execute_move(
    move_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Execute a gated move once its approval entry is approved."""
    with audited_action(db, "allocation.execute_move", division="system"):
        result = AllocationPolicyEngine(db).execute_approved_move(move_id)
    return result
