"""
Federation API Routes

Inbound bundle ingestion from peers, plus internal read views of the peer
registry and outbound queue.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import ValidationError
from ..models.db_models import FederationPeerDB, OutboundBundleDB
from ..services.audit import audited_action
from ..services.federation import IngestionVerifier
from .scheduler import verify_internal_key


router = APIRouter(prefix="/federation", tags=["federation"])


@router.post("/ingest", response_model=dict)
async def ingest_bundle(
    request: Request,
    x_sc_node: Optional[str] = Header(None, alias="X-SC-Node"),
    x_sc_signature: Optional[str] = Header(None, alias="X-SC-Signature"),
    content_sha256: Optional[str] = Header(None, alias="Content-SHA256"),
    db: Session = Depends(get_db),
):
    """
    Receive a signed learning bundle from a peer.

    The body is verified byte-for-byte: the declared Content-SHA256 and the
    X-SC-Signature must both match the exact bytes received.
    """
    raw_body = await request.body()

    with audited_action(db, "federation.ingest", division="system"):
        if not x_sc_node or not x_sc_signature or not content_sha256:
            raise ValidationError("Missing X-SC-Node, X-SC-Signature or Content-SHA256 header")

        IngestionVerifier(db).ingest(x_sc_node, x_sc_signature, content_sha256, raw_body)

    return {"ok": True}


@router.get("/peers", response_model=dict)
async def list_peers(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Trusted peer registry."""
    peers = db.query(FederationPeerDB).order_by(FederationPeerDB.peer_name).all()
    return {
        "peers": [
            {
                "id": p.id,
                "peer_name": p.peer_name,
                "base_url": p.base_url,
                "trust_score": p.trust_score,
                "send_enabled": p.send_enabled,
                "recv_enabled": p.recv_enabled,
                "last_seen": p.last_seen.isoformat() if p.last_seen else None,
            }
            for p in peers
        ],
        "total": len(peers),
    }


@router.get("/bundles", response_model=dict)
async def list_bundles(
    limit: int = 50,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Recent outbound bundles, newest first."""
    bundles = db.query(OutboundBundleDB).order_by(
        OutboundBundleDB.window_end.desc()
    ).limit(max(1, min(limit, 500))).all()
    return {
        "bundles": [
            {
                "id": b.id,
                "window_start": b.window_start.isoformat(),
                "window_end": b.window_end.isoformat(),
                "content_hash": b.content_hash,
                "status": b.status.value,
                "attempts": b.attempts,
                "delivered_peers": b.delivered_peers or [],
                "last_error": b.last_error,
            }
            for b in bundles
        ],
        "total": len(bundles),
    }
