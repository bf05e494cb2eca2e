"""
Impact Evaluator

Measures what a rebalance run did to each division:

    before          = latest KPI captured at or before run.created_at
    after           = latest KPI captured at or after run.finished_at
    delta_stability = after.composite - before.composite
    delta_risk      = before.risk - after.risk          (reduction is positive)
    impact_score    = 0.6 * delta_stability + 0.4 * delta_risk
    impact_per_sc   = impact_score / max(1, SC routed to the division)

Divisions without both snapshots are skipped, never zero-filled.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...errors import NotFoundError, PreconditionError, SCEngineError
from ...models.db_models import (
    DivisionKPIDB,
    ImpactMetricDB,
    RebalanceMoveDB,
    RebalanceRunDB,
    utcnow,
)


logger = logging.getLogger(__name__)


STABILITY_WEIGHT = 0.6
RISK_WEIGHT = 0.4


@dataclass
class ImpactResult:
    """Impact of one run on one division."""
    delta_stability: float
    delta_risk: float
    impact_score: float
    sc_spent: float
    impact_per_sc: float


def compute_impact(
    before_composite: float,
    after_composite: float,
    before_risk: float,
    after_risk: float,
    sc_spent: float,
) -> ImpactResult:
    """
    Pure impact computation.

    sc_spent is floored at 1. impact_per_sc may be negative and is returned
    unmodified.
    """
    delta_stability = after_composite - before_composite
    delta_risk = before_risk - after_risk
    impact_score = STABILITY_WEIGHT * delta_stability + RISK_WEIGHT * delta_risk
    spent = max(1.0, sc_spent or 0.0)
    return ImpactResult(
        delta_stability=delta_stability,
        delta_risk=delta_risk,
        impact_score=impact_score,
        sc_spent=spent,
        impact_per_sc=impact_score / spent,
    )


class ImpactEvaluator:
    """
    Writes ImpactMetricDB rows for finished rebalance runs.

    Usage:
        evaluator = ImpactEvaluator(db)
        result = evaluator.evaluate_run(run_id)
    """

    PENDING_WINDOW_DAYS = 7

    def __init__(self, db: Session):
        self.db = db

    def evaluate_run(self, run_id: str) -> Dict[str, Any]:
        run = self.db.query(RebalanceRunDB).filter(RebalanceRunDB.id == run_id).first()
        if not run:
            raise NotFoundError(f"Rebalance run not found: {run_id}")
        if run.finished_at is None:
            raise PreconditionError(f"Rebalance run {run_id} has not finished")

        before = self._latest_snapshots(DivisionKPIDB.captured_at <= run.created_at)
        after = self._latest_snapshots(DivisionKPIDB.captured_at >= run.finished_at)
        spent = self._sc_spent_by_division(run.id)

        impacts = []
        for division in sorted(set(before) | set(after)):
            if division not in before or division not in after:
                logger.debug(f"Skipping {division}: missing before/after snapshot")
                continue

            b, a = before[division], after[division]
            result = compute_impact(
                before_composite=b.composite_score,
                after_composite=a.composite_score,
                before_risk=b.risk_score,
                after_risk=a.risk_score,
                sc_spent=spent.get(division, 0.0),
            )
            metric = ImpactMetricDB(
                id=str(uuid4()),
                division=division,
                rebalance_run_id=run.id,
                delta_stability=result.delta_stability,
                delta_risk=result.delta_risk,
                impact_score=result.impact_score,
                sc_spent=result.sc_spent,
                impact_per_sc=result.impact_per_sc,
                metric={
                    "before_score": b.composite_score,
                    "after_score": a.composite_score,
                    "before_risk": b.risk_score,
                    "after_risk": a.risk_score,
                },
            )
            self.db.add(metric)
            impacts.append({"division": division, **asdict(result)})

        if impacts:
            run.impact_evaluated_at = utcnow()
        self.db.flush()

        logger.info(f"Impact evaluated for run {run.id}: {len(impacts)} divisions")

        return {
            "ok": True,
            "run_id": run.id,
            "divisions": len(impacts),
            "impacts": impacts,
        }

    def evaluate_pending_runs(self) -> Dict[str, Any]:
        """
        Evaluate every finished, not-yet-evaluated run from the last 7 days.

        A run stays pending until at least one metric is produced, so late
        "after" snapshots are picked up on a later cycle.
        """
        since = utcnow() - timedelta(days=self.PENDING_WINDOW_DAYS)
        runs = self.db.query(RebalanceRunDB).filter(
            RebalanceRunDB.finished_at.isnot(None),
            RebalanceRunDB.impact_evaluated_at.is_(None),
            RebalanceRunDB.created_at >= since,
        ).order_by(RebalanceRunDB.created_at).all()

        evaluated = 0
        errors = []
        for run in runs:
            try:
                with self.db.begin_nested():
                    result = self.evaluate_run(run.id)
                if result["divisions"] > 0:
                    evaluated += 1
            except SCEngineError as e:
                logger.warning(f"Impact evaluation failed for run {run.id}: {e.message}")
                errors.append({"run_id": run.id, "error": e.message})

        return {
            "ok": True,
            "pending": len(runs),
            "evaluated": evaluated,
            "errors": errors,
        }

    # =========================================================================
    # Internal
    # =========================================================================

    def _latest_snapshots(self, condition) -> Dict[str, DivisionKPIDB]:
        latest: Dict[str, DivisionKPIDB] = {}
        rows = self.db.query(DivisionKPIDB).filter(condition).order_by(DivisionKPIDB.captured_at).all()
        for row in rows:
            latest[row.division] = row
        return latest

    def _sc_spent_by_division(self, run_id: str) -> Dict[str, float]:
        rows = self.db.query(
            RebalanceMoveDB.to_division,
            func.sum(RebalanceMoveDB.amount_sc),
        ).filter(
            RebalanceMoveDB.run_id == run_id,
            RebalanceMoveDB.executed.is_(True),
        ).group_by(RebalanceMoveDB.to_division).all()
        return {division: float(total or 0.0) for division, total in rows}
