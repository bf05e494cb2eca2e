"""
Scheduler API Routes

Internal endpoints for cadence-driven jobs.
Called by the external cron, never by end users.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from .. import config
from ..database import get_db
from ..services.scheduler import JOBS, JobRunner, run_all


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for system endpoints."""
    if x_internal_key != config.INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def _run_job(db: Session, name: str) -> dict:
    result = JobRunner(db).run(name, JOBS[name])
    return {
        "task": name,
        "run_date": datetime.now(timezone.utc).isoformat(),
        **result,
    }


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/collect-kpis", response_model=dict)
def run_collect_kpis(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Hourly KPI snapshot for every division."""
    return _run_job(db, "collect-kpis")


@router.post("/learn-cycle", response_model=dict)
def run_learn_cycle(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Daily learning cycle.

    Evaluates impact of finished rebalance runs, then updates learning
    weights by EMA.
    """
    return _run_job(db, "learn-cycle")


@router.post("/federation-export", response_model=dict)
def run_federation_export(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Build, sign and deliver the outbound learning bundle."""
    return _run_job(db, "federation-export")


@router.post("/federation-merge", response_model=dict)
def run_federation_merge(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Merge verified peer signals into local weights."""
    return _run_job(db, "federation-merge")


@router.post("/dao-tally", response_model=dict)
def run_dao_tally(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Hourly tally of proposals whose voting window has ended."""
    return _run_job(db, "dao-tally")


@router.post("/mint-epoch", response_model=dict)
def run_mint_epoch(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Daily SC emission."""
    return _run_job(db, "mint-epoch")


@router.post("/award-rewards", response_model=dict)
def run_award_rewards(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Daily capped incentive rewards from the system treasury."""
    return _run_job(db, "award-rewards")


@router.post("/trigger-all", response_model=dict)
def trigger_all_jobs(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Run every job in pipeline order.

    Manual trigger for testing or catch-up. One failing job never stops
    the rest.
    """
    return run_all(db)
