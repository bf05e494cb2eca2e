"""
Scheduled Jobs

Cadence-driven orchestration of the SC pipeline:

    collect-kpis        hourly
    learn-cycle         daily   (impact evaluation, then EMA learning)
    federation-export   6h      (build bundle, then deliver)
    federation-merge    6h
    dao-tally           hourly
    mint-epoch          daily
    award-rewards       daily   (after mint-epoch funds the treasury)

Every job runs through JobRunner, which records running/success/error
AutomationLogDB rows and never propagates a failure to the caller.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict
from uuid import uuid4
import logging

from sqlalchemy.orm import Session

from ...models.db_models import AutomationLogDB
from ..federation import BundleExporter, BundleSender, GlobalPriorMerger
from ..governance import DAOService
from ..kpi import ImpactEvaluator, KPICollector
from ..learning import LearningWeightUpdater
from ..ledger import WalletLedger


logger = logging.getLogger(__name__)


class JobRunner:
    """
    Runs one job in its own transaction and records the outcome.

    Usage:
        runner = JobRunner(db)
        result = runner.run("collect-kpis", collect_kpis)
    """

    def __init__(self, db: Session):
        self.db = db

    def run(self, job_name: str, job: Callable[[Session], Dict[str, Any]]) -> Dict[str, Any]:
        self._record(job_name, "running", None)

        try:
            result = job(self.db)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Job {job_name} failed")
            self._record(job_name, "error", str(e))
            return {"job": job_name, "status": "error", "error": str(e)}

        self._record(job_name, "success", _summarize(result))
        logger.info(f"Job {job_name} complete")
        return {"job": job_name, "status": "success", "result": result}

    def _record(self, job_name: str, status: str, message) -> None:
        try:
            self.db.add(AutomationLogDB(
                id=str(uuid4()),
                job_name=job_name,
                status=status,
                message=message,
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Could not record automation log for {job_name}: {e}")


def _summarize(result: Dict[str, Any]) -> str:
    if not isinstance(result, dict):
        return str(result)
    keys = ("message", "collected", "updated", "evaluated", "tallied", "sent", "signals", "total_emitted_sc", "total_awarded")
    parts = [f"{k}={result[k]}" for k in keys if k in result]
    return ", ".join(parts) or "ok"


# =============================================================================
# JOBS
# =============================================================================

def collect_kpis(db: Session) -> Dict[str, Any]:
    return KPICollector(db).collect()


def learn_cycle(db: Session) -> Dict[str, Any]:
    evaluation = ImpactEvaluator(db).evaluate_pending_runs()
    learning = LearningWeightUpdater(db).run()
    return {
        "evaluated": evaluation["evaluated"],
        "updated": learning["updated"],
        "evaluation": evaluation,
        "learning": learning,
    }


def federation_export(db: Session) -> Dict[str, Any]:
    bundle = BundleExporter(db).build_bundle()
    delivery = BundleSender(db).send_pending()
    return {
        "sent": delivery["sent"],
        "bundle": bundle,
        "delivery": delivery,
    }


def federation_merge(db: Session) -> Dict[str, Any]:
    return GlobalPriorMerger(db).run()


def dao_tally(db: Session) -> Dict[str, Any]:
    return DAOService(db).tally_ended_proposals()


def mint_epoch(db: Session) -> Dict[str, Any]:
    return WalletLedger(db).mint_epoch()


def award_rewards(db: Session) -> Dict[str, Any]:
    return WalletLedger(db).award_rewards()


JOBS = {
    "collect-kpis": collect_kpis,
    "learn-cycle": learn_cycle,
    "federation-export": federation_export,
    "federation-merge": federation_merge,
    "dao-tally": dao_tally,
    "mint-epoch": mint_epoch,
    "award-rewards": award_rewards,
}


def run_all(db: Session) -> Dict[str, Any]:
    """Run every job in pipeline order. One failing job never stops the rest."""
    started_at = datetime.now(timezone.utc)
    runner = JobRunner(db)
    results = {name: runner.run(name, job) for name, job in JOBS.items()}
    return {
        "started_at": started_at.isoformat(),
        "completed_at": datetime.now(timezone.utc).isoformat(),
        "jobs": results,
    }
