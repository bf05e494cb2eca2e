"""
Global Prior Merger

Blends verified peer signals into a federated prior and merges it into the
local learning weights:

    prior[div] = normalize(sum(strength * avg) / sum(strength))
    blended    = (1 - beta) * local + beta * prior.get(div, local)    beta = 0.25
    new        = clamp(blended, local - local * drift, local + local * drift)

The drift cap is applied after blending, so no single merge can move a
weight by more than max_daily_weight_drift of its current value.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import AllocationPolicyDB, InboundSignalDB, WeightSource, utcnow
from ..audit import NotificationSink
from ..learning.weight_updater import (
    append_weight_version,
    current_weights,
    normalize_positive,
    notify_quietly,
)
from .bundle_exporter import get_federation_policy


logger = logging.getLogger(__name__)


def compute_global_prior(inbound: Iterable[Tuple[float, List[Dict[str, Any]]]]) -> Dict[str, float]:
    """Trust-weighted average per division, normalized to sum 1."""
    sums: Dict[str, float] = {}
    weights: Dict[str, float] = {}
    for strength, signals in inbound:
        for signal in signals or []:
            division = signal.get("division")
            if not division:
                continue
            sums[division] = sums.get(division, 0.0) + float(signal.get("impact_per_sc_avg", 0.0)) * strength
            weights[division] = weights.get(division, 0.0) + strength

    averages = {division: sums[division] / weights[division] for division in sums if weights[division] > 0}
    return normalize_positive(averages)


def blend_with_drift_cap(local: float, global_value: float, beta: float, max_drift: float) -> float:
    blended = (1 - beta) * local + beta * global_value
    cap = local * max_drift
    return max(local - cap, min(local + cap, blended))


class GlobalPriorMerger:
    """
    Usage:
        merger = GlobalPriorMerger(db)
        result = merger.run()
    """

    BETA = 0.25
    WINDOW_DAYS = 7
    TREND_NOTIFY_THRESHOLD = 0.10

    def __init__(self, db: Session, notifier=None, policy_key: Optional[str] = None):
        self.db = db
        self.notifier = notifier or NotificationSink(db)
        self.policy_key = policy_key or config.DEFAULT_POLICY_KEY

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        policy = get_federation_policy(self.db)
        if not policy or not policy.enabled:
            return {"ok": False, "message": "Federation disabled"}

        since = (now or utcnow()) - timedelta(days=self.WINDOW_DAYS)
        inbound = self.db.query(InboundSignalDB).filter(
            InboundSignalDB.received_at >= since,
            InboundSignalDB.signature_valid.is_(True),
        ).order_by(InboundSignalDB.received_at).all()
        if not inbound:
            return {"ok": False, "message": "No inbound signals"}

        prior = compute_global_prior((row.summary_strength, row.signals) for row in inbound)
        if not prior:
            return {"ok": False, "message": "Global prior has no positive signal"}

        current = current_weights(self.db)
        updated = {}
        for division in sorted(current):
            row = current[division]
            local = row.impact_weight
            new = blend_with_drift_cap(local, prior.get(division, local), self.BETA, policy.max_daily_weight_drift)
            trend = new - local

            append_weight_version(self.db, division, new, trend, WeightSource.GLOBAL_PRIOR, row)
            updated[division] = new

            if abs(trend) > self.TREND_NOTIFY_THRESHOLD:
                direction = "up" if trend > 0 else "down"
                notify_quietly(
                    self.notifier,
                    "Global prior update",
                    f"{division} weight {direction} to {new * 100:.1f}% (federated learning)",
                    division=division,
                )

        self.db.flush()
        self._mirror_into_policy(prior)

        logger.info(f"Merged global prior from {len(inbound)} bundles: {len(updated)} weights updated")

        return {
            "ok": True,
            "bundles": len(inbound),
            "updated": len(updated),
            "prior": prior,
            "weights": updated,
        }

    def _mirror_into_policy(self, prior: Dict[str, float]) -> None:
        policy = self.db.query(AllocationPolicyDB).filter(
            AllocationPolicyDB.policy_key == self.policy_key,
        ).first()
        if policy:
            policy.global_prior = dict(prior)
            self.db.flush()
