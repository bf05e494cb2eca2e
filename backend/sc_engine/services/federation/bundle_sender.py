"""
Federation Bundle Sender

Delivers queued bundles to send-enabled peers.

Core Principles:
1. The exact stored body is posted, so the peer hashes and verifies the
   same bytes that were signed.
2. Every request carries a bounded timeout.
3. Connection errors, timeouts, 429 and 5xx are retried with exponential
   backoff (base * 2^n, capped). Other 4xx responses are permanent.
4. Peers are isolated: one failing peer never blocks delivery to another.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import BundleStatus, FederationPeerDB, OutboundBundleDB, utcnow


logger = logging.getLogger(__name__)


INGEST_PATH = "/federation/ingest"


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class BundleSender:
    """
    Usage:
        sender = BundleSender(db)
        result = sender.send_pending()
    """

    def __init__(
        self,
        db: Session,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        node_name: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        max_attempts: Optional[int] = None,
        skew_tolerance_seconds: Optional[int] = None,
    ):
        self.db = db
        self.session = session or requests.Session()
        self.sleep = sleep
        self.node_name = node_name or config.NODE_NAME
        self.timeout = timeout if timeout is not None else config.PEER_HTTP_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else config.PEER_MAX_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else config.PEER_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max if backoff_max is not None else config.PEER_BACKOFF_MAX_SECONDS
        self.max_attempts = max_attempts if max_attempts is not None else config.BUNDLE_MAX_ATTEMPTS
        self.skew_tolerance = timedelta(
            seconds=skew_tolerance_seconds if skew_tolerance_seconds is not None else config.CLOCK_SKEW_TOLERANCE_SECONDS
        )

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number `retry` (0-based)."""
        return min(self.backoff_base * (2 ** retry), self.backoff_max)

    def send_pending(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()

        peers = self.db.query(FederationPeerDB).filter(
            FederationPeerDB.send_enabled.is_(True),
            FederationPeerDB.base_url.isnot(None),
        ).order_by(FederationPeerDB.peer_name).all()

        bundles = self.db.query(OutboundBundleDB).filter(
            OutboundBundleDB.status == BundleStatus.QUEUED,
        ).order_by(OutboundBundleDB.window_end).all()

        if not peers:
            logger.info("No send-enabled peers; bundles stay queued")
            return {"ok": True, "bundles": len(bundles), "sent": 0, "failed": 0, "stale": 0, "message": "No send-enabled peers"}

        sent = failed = stale = 0
        deliveries: List[Dict[str, Any]] = []

        for bundle in bundles:
            if bundle.window_end < now - self.skew_tolerance:
                bundle.status = BundleStatus.FAILED
                bundle.last_error = "stale"
                stale += 1
                logger.warning(f"Bundle {bundle.id} is stale (window_end {bundle.window_end}); marked failed")
                continue

            delivered = list(bundle.delivered_peers or [])
            errors = []
            for peer in peers:
                if peer.peer_name in delivered:
                    continue
                ok, error = self.deliver(bundle, peer)
                deliveries.append({"bundle_id": bundle.id, "peer": peer.peer_name, "ok": ok, "error": error})
                if ok:
                    delivered.append(peer.peer_name)
                    peer.last_seen = utcnow()
                else:
                    errors.append(f"{peer.peer_name}: {error}")

            bundle.delivered_peers = delivered
            bundle.attempts = (bundle.attempts or 0) + 1
            bundle.last_attempt = now
            bundle.last_error = "; ".join(errors) or None

            if all(peer.peer_name in delivered for peer in peers):
                bundle.status = BundleStatus.SENT
                sent += 1
            elif bundle.attempts >= self.max_attempts:
                bundle.status = BundleStatus.FAILED
                failed += 1
                logger.warning(f"Bundle {bundle.id} failed after {bundle.attempts} attempts: {bundle.last_error}")

        self.db.flush()

        logger.info(f"Bundle send: {sent} sent, {failed} failed, {stale} stale of {len(bundles)}")

        return {
            "ok": True,
            "bundles": len(bundles),
            "sent": sent,
            "failed": failed,
            "stale": stale,
            "deliveries": deliveries,
        }

    def deliver(self, bundle: OutboundBundleDB, peer: FederationPeerDB) -> Tuple[bool, Optional[str]]:
        """POST one bundle to one peer, retrying transient failures."""
        url = f"{peer.base_url.rstrip('/')}{INGEST_PATH}"
        headers = {
            "Content-Type": "application/json",
            "X-SC-Node": self.node_name,
            "X-SC-Signature": bundle.signature,
            "Content-SHA256": bundle.content_hash,
        }
        data = bundle.body.encode("utf-8")

        error = None
        for retry in range(self.max_retries + 1):
            try:
                response = self.session.post(url, data=data, headers=headers, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                error = f"{type(e).__name__}: {e}"
            except requests.RequestException as e:
                return False, f"{type(e).__name__}: {e}"
            else:
                if 200 <= response.status_code < 300:
                    return True, None
                error = f"HTTP {response.status_code}"
                if not is_retryable_status(response.status_code):
                    logger.warning(f"Peer {peer.peer_name} rejected bundle {bundle.id}: {error}")
                    return False, error

            if retry < self.max_retries:
                delay = self.backoff_delay(retry)
                logger.debug(f"Retrying {peer.peer_name} in {delay:.1f}s ({retry + 1}/{self.max_retries}): {error}")
                self.sleep(delay)

        logger.warning(f"Giving up on {peer.peer_name} for bundle {bundle.id}: {error}")
        return False, error
