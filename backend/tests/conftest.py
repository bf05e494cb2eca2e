"""
Shared fixtures: an isolated in-memory SQLite database per test, plus
small factories for the rows most tests need.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sc_engine.database import Base
from sc_engine.models import db_models  # noqa: F401
from sc_engine.models.db_models import (
    AllocationPolicyDB,
    DivisionKPIDB,
    FederationPeerDB,
    FederationPolicyDB,
    utcnow,
)
from sc_engine.services.federation.signing import generate_keypair, load_private_key
from sc_engine.services.ledger import WalletLedger


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT support
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def keypair():
    """(private key object, public PEM)"""
    private_pem, public_pem = generate_keypair()
    return load_private_key(private_pem), public_pem


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_wallet(db):
    def _make(division, balance=0.0):
        ledger = WalletLedger(db)
        wallet = ledger.get_or_create_division_wallet(division)
        if balance:
            ledger.adjust_balance(wallet.id, balance, db_models.TxType.MINT)
        return wallet
    return _make


@pytest.fixture
def make_kpi(db, now):
    def _make(division, composite, risk, captured_at=None):
        row = DivisionKPIDB(
            id=str(uuid4()),
            division=division,
            composite_score=composite,
            risk_score=risk,
            captured_at=captured_at or now - timedelta(minutes=5),
        )
        db.add(row)
        db.flush()
        return row
    return _make


@pytest.fixture
def make_policy(db):
    def _make(weights=None, constraints=None, **kwargs):
        policy = AllocationPolicyDB(
            id=str(uuid4()),
            policy_key=kwargs.pop("policy_key", "default_v1"),
            weights=weights or {"need": 1.0},
            constraints=constraints or {
                "min_pct_per_division": 0.0,
                "max_pct_per_division": 1.0,
                "max_move_per_epoch_sc": 5000,
                "require_approval_over_sc": 10000,
            },
            impact_input_mode=kwargs.pop("impact_input_mode", "constant"),
            impact_default=kwargs.pop("impact_default", 50.0),
            impact_scale=kwargs.pop("impact_scale", 100.0),
            enabled=kwargs.pop("enabled", True),
        )
        db.add(policy)
        db.flush()
        return policy
    return _make


@pytest.fixture
def make_federation_policy(db):
    def _make(**kwargs):
        policy = FederationPolicyDB(
            id=str(uuid4()),
            enabled=kwargs.pop("enabled", True),
            share_divisions=kwargs.pop("share_divisions", ["a", "b"]),
            min_sample=kwargs.pop("min_sample", 5),
            dp_epsilon=kwargs.pop("dp_epsilon", 1.0),
            dp_sensitivity=kwargs.pop("dp_sensitivity", 1.0),
            max_daily_weight_drift=kwargs.pop("max_daily_weight_drift", 0.1),
        )
        db.add(policy)
        db.flush()
        return policy
    return _make


@pytest.fixture
def make_peer(db):
    def _make(name, public_pem, trust_score=80.0, base_url=None, **kwargs):
        peer = FederationPeerDB(
            id=str(uuid4()),
            peer_name=name,
            base_url=base_url,
            public_key=public_pem,
            trust_score=trust_score,
            send_enabled=kwargs.pop("send_enabled", True),
            recv_enabled=kwargs.pop("recv_enabled", True),
        )
        db.add(peer)
        db.flush()
        return peer
    return _make
