"""
Learning Weight Updater

Adapts per-division impact weights from measured outcomes:

    target = normalize(max(0, avg impact_per_sc over the last 7 days))
    new    = (1 - alpha) * old + alpha * target      alpha = 0.3
    trend  = new - old

Weights are versioned: every update inserts a new LearningWeightDB row.
Starting from normalized weights, the weights still sum to ~1 afterwards.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import (
    AllocationPolicyDB,
    ImpactMetricDB,
    LearningWeightDB,
    WeightSource,
    utcnow,
)
from ..audit import NotificationSink


logger = logging.getLogger(__name__)


# =============================================================================
# SHARED WEIGHT HELPERS
# =============================================================================

def current_weights(db: Session) -> Dict[str, LearningWeightDB]:
    """Highest version per division."""
    latest = db.query(
        LearningWeightDB.division.label("division"),
        func.max(LearningWeightDB.version).label("version"),
    ).group_by(LearningWeightDB.division).subquery()

    rows = db.query(LearningWeightDB).join(
        latest,
        and_(
            LearningWeightDB.division == latest.c.division,
            LearningWeightDB.version == latest.c.version,
        ),
    ).all()
    return {row.division: row for row in rows}


def normalize_positive(values: Dict[str, float]) -> Dict[str, float]:
    """Floor negatives at 0 and scale to sum 1. Empty when nothing is positive."""
    floored = {k: max(0.0, v) for k, v in values.items()}
    total = sum(floored.values())
    if total <= 0:
        return {}
    return {k: v / total for k, v in floored.items()}


def append_weight_version(
    db: Session,
    division: str,
    impact_weight: float,
    trend: float,
    source: WeightSource,
    previous: Optional[LearningWeightDB],
) -> LearningWeightDB:
    row = LearningWeightDB(
        id=str(uuid4()),
        division=division,
        version=(previous.version + 1) if previous else 1,
        impact_weight=max(0.0, min(1.0, impact_weight)),
        trend=trend,
        source=source,
        last_updated=utcnow(),
    )
    db.add(row)
    return row


def notify_quietly(notifier, title: str, message: str, division: Optional[str] = None) -> None:
    """Send a notification; failures are logged and never propagate."""
    try:
        notifier.notify(title, message, division=division)
    except Exception as e:
        logger.warning(f"Notification failed ({title}): {e}")


# =============================================================================
# UPDATER
# =============================================================================

class LearningWeightUpdater:
    """
    EMA learner over recent impact metrics.

    Usage:
        updater = LearningWeightUpdater(db)
        result = updater.run()
    """

    ALPHA = 0.3
    WINDOW_DAYS = 7
    TREND_NOTIFY_THRESHOLD = 0.04

    def __init__(self, db: Session, notifier=None, policy_key: Optional[str] = None):
        self.db = db
        self.notifier = notifier or NotificationSink(db)
        self.policy_key = policy_key or config.DEFAULT_POLICY_KEY

    def run(self) -> Dict[str, Any]:
        target = self.compute_target()
        if not target:
            logger.info("No positive impact signal in window; weights unchanged")
            return {"ok": True, "updated": 0, "message": "No positive impact signal"}

        current = current_weights(self.db)
        universe = sorted(set(current) | set(target))

        if current:
            prior = {division: row.impact_weight for division, row in current.items()}
        else:
            prior = {division: 1.0 / len(universe) for division in universe}

        weights = {}
        alerts = 0
        for division in universe:
            old = prior.get(division, 0.0)
            new = (1 - self.ALPHA) * old + self.ALPHA * target.get(division, 0.0)
            trend = new - old

            append_weight_version(
                self.db, division, new, trend, WeightSource.LOCAL_EMA, current.get(division),
            )
            weights[division] = new

            if abs(trend) > self.TREND_NOTIFY_THRESHOLD:
                alerts += 1
                direction = "up" if trend > 0 else "down"
                notify_quietly(
                    self.notifier,
                    f"Learning weight shift: {division}",
                    f"{division} impact weight moved {direction} by {abs(trend):.3f} to {new:.3f}",
                    division=division,
                )

        self.db.flush()
        self._mirror_into_policy(target)

        logger.info(f"Learning cycle updated {len(weights)} weights ({alerts} alerts)")

        return {
            "ok": True,
            "updated": len(weights),
            "weights": weights,
            "target": target,
            "alerts": alerts,
        }

    def compute_target(self) -> Dict[str, float]:
        """Normalized target vector from the trailing window's impact metrics."""
        since = utcnow() - timedelta(days=self.WINDOW_DAYS)
        rows = self.db.query(
            ImpactMetricDB.division,
            func.avg(ImpactMetricDB.impact_per_sc),
        ).filter(
            ImpactMetricDB.created_at >= since,
        ).group_by(ImpactMetricDB.division).all()

        return normalize_positive({division: float(avg) for division, avg in rows if avg is not None})

    def _mirror_into_policy(self, target: Dict[str, float]) -> None:
        policy = self.db.query(AllocationPolicyDB).filter(
            AllocationPolicyDB.policy_key == self.policy_key,
        ).first()
        if not policy:
            logger.warning(f"Policy {self.policy_key} not found; learned impact not mirrored")
            return
        policy.learned_impact = dict(target)
        self.db.flush()
