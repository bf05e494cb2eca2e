"""
Federation Ingestion Verifier

Validates inbound bundles through a strict, ordered gate sequence:

    1. Peer       - known and receive-enabled            (403)
    2. Schema     - strict FederationBundle               (400)
    3. Hash       - SHA-256 of received bytes             (400, security event)
    4. Signature  - Ed25519 with the peer's PEM key       (403, security event)
    5. Skew       - |now - window_end| within tolerance   (403, security event)

The first failing gate decides the rejection. No inbound row is written on
any rejection. Each bundle is judged on its own content only.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from ... import config
from ...errors import AuthorizationError, IntegrityError, ValidationError
from ...models.db_models import FederationPeerDB, InboundSignalDB, utcnow
from ...models.schemas import FederationBundle
from ..audit import SystemLogService
from .signing import hashes_match, verify


logger = logging.getLogger(__name__)


DEFAULT_NODE_RELIABILITY = 0.5
FULL_STRENGTH_SAMPLE_SIZE = 100.0


def summary_strength(trust_score: float, node_reliability: Optional[float], avg_sample_size: float) -> float:
    """(trust / 100) * reliability * min(1, avg_sample_size / 100)"""
    reliability = DEFAULT_NODE_RELIABILITY if node_reliability is None else node_reliability
    return (trust_score / 100.0) * reliability * min(1.0, avg_sample_size / FULL_STRENGTH_SAMPLE_SIZE)


class IngestionVerifier:
    """
    Usage:
        verifier = IngestionVerifier(db)
        result = verifier.ingest(peer_name, signature_b64, declared_hash, raw_body)
    """

    def __init__(self, db: Session, skew_tolerance_seconds: Optional[int] = None):
        self.db = db
        self.skew_tolerance = timedelta(
            seconds=skew_tolerance_seconds if skew_tolerance_seconds is not None else config.CLOCK_SKEW_TOLERANCE_SECONDS
        )
        self.audit = SystemLogService(db)

    def ingest(
        self,
        peer_name: str,
        signature_b64: str,
        declared_hash: str,
        raw_body: bytes,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()

        # 1. Peer
        peer = self.db.query(FederationPeerDB).filter(FederationPeerDB.peer_name == peer_name).first()
        if not peer or not peer.recv_enabled:
            raise AuthorizationError(f"Unknown or disabled peer: {peer_name}")

        # 2. Schema
        bundle = self.parse_bundle(raw_body)

        # 3. Content hash
        if not hashes_match(raw_body, declared_hash):
            self._reject(
                "hash_mismatch", "Content hash mismatch", 400, peer_name,
                {"declared": declared_hash},
            )

        # 4. Signature
        if not verify(raw_body, signature_b64, peer.public_key):
            self._reject("bad_signature", "Invalid signature", 403, peer_name)

        # 5. Clock skew
        if abs(now - bundle.window_end) > self.skew_tolerance:
            self._reject(
                "clock_skew", "Bundle window_end outside clock-skew tolerance", 403, peer_name,
                {"window_end": bundle.window_end.isoformat(), "received_at": now.isoformat()},
            )

        sizes = [s.sample_size for s in bundle.signals]
        strength = summary_strength(peer.trust_score, bundle.node_reliability, sum(sizes) / len(sizes))

        inbound = InboundSignalDB(
            id=str(uuid4()),
            peer_id=peer.id,
            window_start=bundle.window_start,
            window_end=bundle.window_end,
            signals=[s.model_dump() for s in bundle.signals],
            node_reliability=bundle.node_reliability,
            signature_valid=True,
            peer_trust=peer.trust_score,
            summary_strength=strength,
            content_hash=declared_hash.strip().lower(),
            received_at=now,
        )
        self.db.add(inbound)
        peer.last_seen = now
        self.db.flush()

        logger.info(f"Ingested bundle from {peer_name}: {len(bundle.signals)} signals, strength {strength:.3f}")

        return {"ok": True, "inbound_id": inbound.id, "summary_strength": strength}

    @staticmethod
    def parse_bundle(raw_body: bytes) -> FederationBundle:
        try:
            data = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as e:
            raise ValidationError(f"Body is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise ValidationError("Bundle must be a JSON object")

        try:
            return FederationBundle.model_validate(data)
        except SchemaError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"Invalid bundle: {problems}")

    def _reject(
        self,
        reason: str,
        message: str,
        status_code: int,
        peer_name: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Committed before raising so the event survives the caller's rollback
        self.audit.record_security_event(reason, message, peer_name=peer_name, metadata=metadata)
        self.db.commit()
        raise IntegrityError(message, reason=reason, status_code=status_code)
