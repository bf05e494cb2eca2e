"""
Federation Bundle Exporter

Aggregates this node's impact metrics into a privacy-preserving learning
signal bundle, then hashes and signs the exact outbound bytes.

Per shared division (with at least min_sample metrics in the window):
    mean, population stddev of impact_per_sc
    noised mean = mean + Laplace(0, sensitivity / (epsilon * sample_count))

One bundle per 24h window. Bundles are queued for BundleSender.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import numpy as np
from cryptography.hazmat.primitives.asymmetric import ed25519
from sqlalchemy.orm import Session

from ...errors import ConfigurationError
from ...models.db_models import (
    AutomationLogDB,
    BundleStatus,
    FederationPolicyDB,
    ImpactMetricDB,
    OutboundBundleDB,
    utcnow,
)
from .signing import canonical_bytes, content_hash, load_node_signing_key, sign


logger = logging.getLogger(__name__)


def wire_timestamp(value: datetime) -> str:
    """Naive UTC datetime as an ISO-8601 'Z' timestamp."""
    return value.isoformat() + "Z"


def get_federation_policy(db: Session) -> Optional[FederationPolicyDB]:
    return db.query(FederationPolicyDB).order_by(FederationPolicyDB.created_at.desc()).first()


class BundleExporter:
    """
    Builds, signs and queues the outbound learning bundle.

    Usage:
        exporter = BundleExporter(db)
        result = exporter.build_bundle()
    """

    WINDOW_HOURS = 24
    RELIABILITY_WINDOW_DAYS = 7

    def __init__(
        self,
        db: Session,
        rng: Optional[np.random.Generator] = None,
        signing_key: Optional[ed25519.Ed25519PrivateKey] = None,
    ):
        self.db = db
        self.rng = rng if rng is not None else np.random.default_rng()
        self._signing_key = signing_key

    def build_bundle(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        policy = get_federation_policy(self.db)
        if not policy or not policy.enabled:
            return {"ok": False, "message": "Federation disabled"}
        if policy.dp_epsilon is None or policy.dp_epsilon <= 0:
            raise ConfigurationError("Federation dp_epsilon must be positive")

        window_end = now or utcnow()
        window_start = window_end - timedelta(hours=self.WINDOW_HOURS)

        existing = self.db.query(OutboundBundleDB).filter(
            OutboundBundleDB.window_end > window_start,
            OutboundBundleDB.status != BundleStatus.FAILED,
        ).first()
        if existing:
            logger.info(f"Bundle {existing.id} already covers this window")
            return {"ok": True, "skipped": True, "message": "Bundle already built for this window", "bundle_id": existing.id}

        signals = self.build_signals(policy, window_start, window_end)
        if not signals:
            logger.info("No signals meet min_sample threshold")
            return {"ok": False, "message": "No signals meet threshold"}

        payload: Dict[str, Any] = {
            "window_start": wire_timestamp(window_start),
            "window_end": wire_timestamp(window_end),
            "signals": signals,
        }
        reliability = self.node_reliability(window_end)
        if reliability is not None:
            payload["node_reliability"] = reliability

        body = canonical_bytes(payload)
        digest = content_hash(body)
        signature = sign(body, self.signing_key)

        bundle = OutboundBundleDB(
            id=str(uuid4()),
            window_start=window_start,
            window_end=window_end,
            payload=payload,
            body=body.decode("utf-8"),
            content_hash=digest,
            signature=signature,
            status=BundleStatus.QUEUED,
            attempts=0,
            delivered_peers=[],
        )
        self.db.add(bundle)
        self.db.flush()

        logger.info(f"Bundle {bundle.id} queued with {len(signals)} signals, hash {digest[:12]}")

        return {
            "ok": True,
            "bundle_id": bundle.id,
            "signals": len(signals),
            "content_hash": digest,
        }

    @property
    def signing_key(self) -> ed25519.Ed25519PrivateKey:
        if self._signing_key is None:
            self._signing_key = load_node_signing_key()
        return self._signing_key

    def build_signals(
        self,
        policy: FederationPolicyDB,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Dict[str, Any]]:
        shared = set(policy.share_divisions or [])
        rows = self.db.query(ImpactMetricDB.division, ImpactMetricDB.impact_per_sc).filter(
            ImpactMetricDB.created_at >= window_start,
            ImpactMetricDB.created_at <= window_end,
        ).all()

        values: Dict[str, List[float]] = {}
        for division, impact_per_sc in rows:
            if division in shared:
                values.setdefault(division, []).append(float(impact_per_sc or 0.0))

        signals = []
        for division in sorted(values):
            samples = np.asarray(values[division], dtype=float)
            count = int(samples.size)
            if count < policy.min_sample or count == 0:
                continue

            scale = policy.dp_sensitivity / (policy.dp_epsilon * count)
            noised = float(samples.mean() + self.rng.laplace(0.0, scale))
            signals.append({
                "division": division,
                "impact_per_sc_avg": noised,
                "sample_size": count,
                "stddev": float(samples.std()),
            })
        return signals

    def node_reliability(self, now: datetime) -> Optional[float]:
        """Success ratio of finished automation runs in the last 7 days."""
        since = now - timedelta(days=self.RELIABILITY_WINDOW_DAYS)
        statuses = [
            status for (status,) in self.db.query(AutomationLogDB.status).filter(
                AutomationLogDB.created_at >= since,
                AutomationLogDB.status.in_(["success", "error"]),
            ).all()
        ]
        if not statuses:
            return None
        return round(statuses.count("success") / len(statuses), 4)
