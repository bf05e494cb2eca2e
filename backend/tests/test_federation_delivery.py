"""
Tests for outbound bundle delivery and the global prior merge.
"""
from datetime import timedelta
from uuid import uuid4

import pytest
import requests

from sc_engine.models.db_models import (
    BundleStatus,
    InboundSignalDB,
    LearningWeightDB,
    OutboundBundleDB,
    WeightSource,
)
from sc_engine.services.federation import (
    BundleSender,
    GlobalPriorMerger,
    blend_with_drift_cap,
    compute_global_prior,
)
from sc_engine.services.federation.signing import canonical_bytes, content_hash
from sc_engine.services.learning import current_weights


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class ScriptedSession:
    """
    Replays a scripted outcome per URL. The last outcome repeats.
    An outcome is a status code or an exception instance.
    """

    def __init__(self, script):
        self.script = {url: list(outcomes) for url, outcomes in script.items()}
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        outcomes = self.script[url]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


def _queued_bundle(db, window_end):
    payload = {"window_end": window_end.isoformat(), "signals": []}
    body = canonical_bytes(payload)
    bundle = OutboundBundleDB(
        id=str(uuid4()),
        window_start=window_end - timedelta(hours=24),
        window_end=window_end,
        payload=payload,
        body=body.decode("utf-8"),
        content_hash=content_hash(body),
        signature="c2lnbmF0dXJl",
        status=BundleStatus.QUEUED,
        attempts=0,
        delivered_peers=[],
    )
    db.add(bundle)
    db.flush()
    return bundle


def _sender(db, session, sleeps, **kwargs):
    return BundleSender(
        db,
        session=session,
        sleep=sleeps.append,
        node_name="sc-node-1",
        timeout=5,
        max_retries=kwargs.pop("max_retries", 3),
        backoff_base=2,
        backoff_max=60,
        max_attempts=kwargs.pop("max_attempts", 5),
        skew_tolerance_seconds=600,
    )


P1 = "http://p1.example/federation/ingest"
P2 = "http://p2.example/federation/ingest"


# =============================================================================
# TEST: BUNDLE SENDER
# =============================================================================

class TestBundleSender:

    def test_backoff_delay_is_capped(self, db):
        sender = _sender(db, ScriptedSession({}), [])
        assert [sender.backoff_delay(n) for n in range(7)] == [2, 4, 8, 16, 32, 60, 60]

    def test_transient_errors_retried_then_sent(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example/")
        bundle = _queued_bundle(db, now)
        session = ScriptedSession({P1: [requests.ConnectionError("refused"), 503, 200]})
        sleeps = []

        result = _sender(db, session, sleeps).send_pending(now=now)

        assert result["sent"] == 1
        assert sleeps == [2, 4]
        assert bundle.status == BundleStatus.SENT
        assert bundle.delivered_peers == ["p1"]
        assert bundle.attempts == 1

        call = session.calls[-1]
        assert call["data"] == bundle.body.encode("utf-8")
        assert call["timeout"] == 5
        assert call["headers"]["X-SC-Node"] == "sc-node-1"
        assert call["headers"]["X-SC-Signature"] == bundle.signature
        assert call["headers"]["Content-SHA256"] == bundle.content_hash

    def test_client_error_is_not_retried(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example")
        bundle = _queued_bundle(db, now)
        session = ScriptedSession({P1: [400]})
        sleeps = []

        _sender(db, session, sleeps).send_pending(now=now)

        assert len(session.calls) == 1
        assert sleeps == []
        assert bundle.status == BundleStatus.QUEUED
        assert bundle.last_error == "p1: HTTP 400"

    def test_rate_limit_retried(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example")
        _queued_bundle(db, now)
        session = ScriptedSession({P1: [429, 204]})
        sleeps = []

        result = _sender(db, session, sleeps).send_pending(now=now)

        assert result["sent"] == 1
        assert sleeps == [2]

    def test_retries_exhausted_keeps_bundle_queued(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example")
        bundle = _queued_bundle(db, now)
        session = ScriptedSession({P1: [503]})
        sleeps = []

        _sender(db, session, sleeps).send_pending(now=now)

        assert len(session.calls) == 4
        assert sleeps == [2, 4, 8]
        assert bundle.status == BundleStatus.QUEUED
        assert bundle.attempts == 1
        assert bundle.last_attempt == now

    def test_bundle_fails_after_max_attempts(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example")
        bundle = _queued_bundle(db, now)
        session = ScriptedSession({P1: [requests.Timeout("slow")]})

        result = _sender(db, session, [], max_retries=0, max_attempts=1).send_pending(now=now)

        assert result["failed"] == 1
        assert bundle.status == BundleStatus.FAILED

    def test_stale_bundle_not_sent(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example")
        bundle = _queued_bundle(db, now - timedelta(minutes=11))
        session = ScriptedSession({P1: [200]})

        result = _sender(db, session, []).send_pending(now=now)

        assert result["stale"] == 1
        assert session.calls == []
        assert bundle.status == BundleStatus.FAILED
        assert bundle.last_error == "stale"

    def test_peers_are_isolated(self, db, now, make_peer, keypair):
        make_peer("p1", keypair[1], base_url="http://p1.example")
        p2 = make_peer("p2", keypair[1], base_url="http://p2.example")
        bundle = _queued_bundle(db, now)
        session = ScriptedSession({P1: [400], P2: [200]})
        sender = _sender(db, session, [])

        sender.send_pending(now=now)

        assert bundle.delivered_peers == ["p2"]
        assert bundle.status == BundleStatus.QUEUED
        assert p2.last_seen is not None

        session.script[P1] = [200]
        sender.send_pending(now=now)

        assert [c["url"] for c in session.calls] == [P1, P2, P1]
        assert bundle.status == BundleStatus.SENT
        assert sorted(bundle.delivered_peers) == ["p1", "p2"]

    def test_no_peers_leaves_queue_untouched(self, db, now):
        bundle = _queued_bundle(db, now)

        result = _sender(db, ScriptedSession({}), []).send_pending(now=now)

        assert result["sent"] == 0
        assert bundle.status == BundleStatus.QUEUED
        assert bundle.attempts == 0


# =============================================================================
# TEST: GLOBAL PRIOR
# =============================================================================

def _inbound(db, peer, signals, strength, received_at):
    db.add(InboundSignalDB(
        id=str(uuid4()),
        peer_id=peer.id,
        window_start=received_at - timedelta(hours=24),
        window_end=received_at,
        signals=signals,
        signature_valid=True,
        peer_trust=peer.trust_score,
        summary_strength=strength,
        content_hash="0" * 64,
        received_at=received_at,
    ))
    db.flush()


def _weight(db, division, value):
    db.add(LearningWeightDB(
        id=str(uuid4()), division=division, version=1, impact_weight=value, trend=0.0, source=WeightSource.SEED,
    ))
    db.flush()


class TestGlobalPrior:

    def test_blend_respects_drift_cap(self):
        assert blend_with_drift_cap(0.5, 1.0, 0.25, 0.1) == pytest.approx(0.55)
        assert blend_with_drift_cap(0.5, 0.0, 0.25, 0.1) == pytest.approx(0.45)
        assert blend_with_drift_cap(0.5, 0.6, 0.25, 0.1) == pytest.approx(0.525)

    def test_prior_is_strength_weighted(self):
        prior = compute_global_prior([
            (0.8, [{"division": "a", "impact_per_sc_avg": 0.1}, {"division": "b", "impact_per_sc_avg": 0.2}]),
            (0.2, [{"division": "a", "impact_per_sc_avg": 0.6}]),
        ])
        assert prior == pytest.approx({"a": 0.5, "b": 0.5})

    def test_merge_into_local_weights(self, db, now, keypair, make_peer, make_federation_policy, make_policy):
        make_federation_policy(max_daily_weight_drift=0.1)
        policy = make_policy()
        peer = make_peer("p1", keypair[1])
        _weight(db, "a", 0.5)
        _weight(db, "b", 0.5)
        _inbound(db, peer, [
            {"division": "a", "impact_per_sc_avg": 0.75, "sample_size": 50, "stddev": 0.0},
            {"division": "b", "impact_per_sc_avg": 0.25, "sample_size": 50, "stddev": 0.0},
        ], 0.5, now - timedelta(hours=1))

        result = GlobalPriorMerger(db).run(now=now)

        assert result["ok"] is True
        assert result["weights"] == pytest.approx({"a": 0.55, "b": 0.45})
        weights = current_weights(db)
        assert weights["a"].version == 2
        assert weights["a"].source == WeightSource.GLOBAL_PRIOR
        assert weights["b"].trend == pytest.approx(-0.05)
        db.refresh(policy)
        assert policy.global_prior == pytest.approx({"a": 0.75, "b": 0.25})

    def test_division_absent_from_prior_keeps_weight(self, db, now, keypair, make_peer, make_federation_policy):
        make_federation_policy()
        peer = make_peer("p1", keypair[1])
        _weight(db, "a", 0.5)
        _weight(db, "c", 0.5)
        _inbound(db, peer, [{"division": "a", "impact_per_sc_avg": 0.3, "sample_size": 9, "stddev": 0.0}], 0.4, now)

        result = GlobalPriorMerger(db).run(now=now)

        assert result["weights"]["c"] == pytest.approx(0.5)

    def test_disabled(self, db, now, make_federation_policy):
        make_federation_policy(enabled=False)
        assert GlobalPriorMerger(db).run(now=now)["ok"] is False

    def test_old_inbound_ignored(self, db, now, keypair, make_peer, make_federation_policy):
        make_federation_policy()
        peer = make_peer("p1", keypair[1])
        _weight(db, "a", 0.5)
        _inbound(db, peer, [{"division": "a", "impact_per_sc_avg": 0.3, "sample_size": 9, "stddev": 0.0}], 0.4, now - timedelta(days=8))

        result = GlobalPriorMerger(db).run(now=now)

        assert result["ok"] is False
        assert db.query(LearningWeightDB).count() == 1
