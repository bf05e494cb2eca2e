"""
SC Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, Date, CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp. All stored timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class RunMode(str, Enum):
    """Rebalance run mode."""
    SIMULATE = "simulate"
    EXECUTE = "execute"


class RunStatus(str, Enum):
    """Rebalance run status."""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class TxType(str, Enum):
    """Ledger entry types."""
    MINT = "mint"
    REWARD = "reward"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    BURN = "burn"
    LOCK = "lock"
    UNLOCK = "unlock"


class WeightSource(str, Enum):
    """What produced a learning weight version."""
    SEED = "seed"
    LOCAL_EMA = "local_ema"
    GLOBAL_PRIOR = "global_prior"


class BundleStatus(str, Enum):
    """Outbound federation bundle status."""
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class ProposalStatus(str, Enum):
    """DAO proposal status."""
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"


class VoteChoice(str, Enum):
    """DAO vote choices."""
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class VotingMode(str, Enum):
    """How a DAO space converts stake into vote weight."""
    STAKE = "stake"
    ONE_PERSON = "one_person"
    HYBRID = "hybrid"


class ApprovalStatus(str, Enum):
    """Approval queue status. Transitions are owned by the reviewer."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =============================================================================
# KPI & IMPACT
# =============================================================================

class DivisionKPIDB(Base):
    """
    Per-division health snapshot.
    Immutable - a new row each collection cycle.
    """
    __tablename__ = "division_kpis"

    id = Column(String(36), primary_key=True)  # UUID
    division = Column(String(50), nullable=False, index=True)

    composite_score = Column(Float, nullable=False)  # 0-100, higher is better
    risk_score = Column(Float, nullable=False)       # 0-100, lower is better
    metric = Column(JSON, nullable=True)             # Raw source values

    captured_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class ImpactMetricDB(Base):
    """
    Before/after impact of a rebalance run on one division.
    Only written when both snapshots exist.
    """
    __tablename__ = "division_impact_metrics"

    id = Column(String(36), primary_key=True)  # UUID
    division = Column(String(50), nullable=False, index=True)
    rebalance_run_id = Column(String(36), ForeignKey("rebalance_runs.id", ondelete="SET NULL"), nullable=True, index=True)

    delta_stability = Column(Float, nullable=False)
    delta_risk = Column(Float, nullable=False)
    impact_score = Column(Float, nullable=False)
    sc_spent = Column(Float, nullable=False)      # Floored at 1
    impact_per_sc = Column(Float, nullable=False)  # May be negative
    metric = Column(JSON, nullable=True)           # Before/after scores

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class LearningWeightDB(Base):
    """
    Versioned per-division impact weight.
    Every update is a new row; the current weight is the highest version.
    """
    __tablename__ = "division_learning_weights"
    __table_args__ = (
        UniqueConstraint("division", "version", name="uq_learning_weight_version"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    division = Column(String(50), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    impact_weight = Column(Float, nullable=False)  # 0-1
    trend = Column(Float, default=0.0)             # Signed delta from previous version
    source = Column(SQLEnum(WeightSource), nullable=False, default=WeightSource.LOCAL_EMA)

    last_updated = Column(DateTime, default=utcnow, nullable=False)


# =============================================================================
# ALLOCATION
# =============================================================================

class AllocationPolicyDB(Base):
    """
    Scoring weights and rebalance constraints.

    weights:      {"need": .., "risk": .., "impact": ..}
    constraints:  {"min_pct_per_division": 0.05, "max_pct_per_division": 0.35,
                   "max_move_per_epoch_sc": 5000, "require_approval_over_sc": 2000}
    """
    __tablename__ = "allocation_policies"

    id = Column(String(36), primary_key=True)  # UUID
    policy_key = Column(String(50), unique=True, nullable=False, index=True)

    weights = Column(JSON, nullable=False)
    constraints = Column(JSON, nullable=False)

    # Impact term of the scorer
    impact_input_mode = Column(String(20), default="learned")  # learned | constant
    impact_default = Column(Float, default=50.0)
    impact_scale = Column(Float, default=100.0)

    # Mirrors written by the learning loop (auditability)
    learned_impact = Column(JSON, nullable=True)
    global_prior = Column(JSON, nullable=True)

    enabled = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class RebalanceRunDB(Base):
    """One invocation of the allocation policy engine."""
    __tablename__ = "rebalance_runs"

    id = Column(String(36), primary_key=True)  # UUID
    policy_key = Column(String(50), nullable=False)
    mode = Column(SQLEnum(RunMode), nullable=False, default=RunMode.SIMULATE)
    status = Column(SQLEnum(RunStatus), nullable=False, default=RunStatus.RUNNING)

    total_available_sc = Column(Float, default=0.0)
    total_moved_sc = Column(Float, default=0.0)
    target_pcts = Column(JSON, nullable=True)  # {division: pct}
    notes = Column(Text, nullable=True)

    impact_evaluated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    # Relationships
    moves = relationship("RebalanceMoveDB", back_populates="run", cascade="all, delete-orphan")


class RebalanceMoveDB(Base):
    """
    A planned SC move between two division wallets.
    Immutable once created; execution is a separate gated step.
    """
    __tablename__ = "rebalance_moves"
    __table_args__ = (
        CheckConstraint("amount_sc > 0", name="ck_move_amount_positive"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    run_id = Column(String(36), ForeignKey("rebalance_runs.id", ondelete="CASCADE"), nullable=False, index=True)

    from_division = Column(String(50), nullable=False)
    to_division = Column(String(50), nullable=False)
    amount_sc = Column(Float, nullable=False)
    reason = Column(Text, nullable=True)

    requires_approval = Column(Boolean, default=False)
    approval_id = Column(String(36), ForeignKey("approvals.id", ondelete="SET NULL"), nullable=True)
    executed = Column(Boolean, default=False)
    executed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    run = relationship("RebalanceRunDB", back_populates="moves")


# =============================================================================
# WALLET LEDGER
# =============================================================================

class WalletDB(Base):
    """
    SC wallet owned by a division xor a user.
    Mutated only through conditional single-statement updates.
    """
    __tablename__ = "sc_wallets"
    __table_args__ = (
        CheckConstraint("locked >= 0", name="ck_wallet_locked_non_negative"),
        CheckConstraint("balance >= locked", name="ck_wallet_balance_covers_locked"),
        CheckConstraint(
            "(division IS NULL AND user_id IS NOT NULL) OR (division IS NOT NULL AND user_id IS NULL)",
            name="ck_wallet_single_owner",
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    division = Column(String(50), unique=True, nullable=True, index=True)
    user_id = Column(String(36), unique=True, nullable=True, index=True)

    balance = Column(Float, nullable=False, default=0.0)
    locked = Column(Float, nullable=False, default=0.0)
    version = Column(Integer, nullable=False, default=0)  # Bumped on every update

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    entries = relationship("LedgerEntryDB", back_populates="wallet")


class LedgerEntryDB(Base):
    """
    Append-only record of every balance change.
    Source of truth for balance reconciliation.
    """
    __tablename__ = "sc_ledger"

    id = Column(String(36), primary_key=True)  # UUID
    wallet_id = Column(String(36), ForeignKey("sc_wallets.id"), nullable=False, index=True)

    tx_type = Column(SQLEnum(TxType), nullable=False)
    amount = Column(Float, nullable=False)
    ref_id = Column(String(36), nullable=True)  # Counterparty wallet, move, etc.
    memo = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    wallet = relationship("WalletDB", back_populates="entries")


class EmissionDB(Base):
    """One row per minted epoch."""
    __tablename__ = "sc_emissions"
    __table_args__ = (
        UniqueConstraint("epoch_date", "schedule_version", name="uq_emission_epoch"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    epoch_date = Column(Date, nullable=False)
    total_emitted_sc = Column(Float, nullable=False)
    schedule_version = Column(String(10), nullable=False, default="v1")

    created_at = Column(DateTime, default=utcnow)


class IncentiveRuleDB(Base):
    """
    Daily reward rule paid from the system treasury.
    amount = min(cap_sc_per_day, max(0, signal_value * rate_sc * weight))
    """
    __tablename__ = "sc_incentive_rules"
    __table_args__ = (
        CheckConstraint("cap_sc_per_day >= 0", name="ck_incentive_cap_non_negative"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    rule_key = Column(String(50), unique=True, nullable=False)
    division = Column(String(50), nullable=False)  # Recipient wallet
    signal = Column(String(50), nullable=False)  # risk_reduction, stability, job_reliability

    rate_sc = Column(Float, nullable=False, default=100.0)  # SC per signal unit
    weight = Column(Float, nullable=False, default=1.0)
    cap_sc_per_day = Column(Float, nullable=False)
    enabled = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)


class RewardAwardDB(Base):
    """One award per rule per day."""
    __tablename__ = "sc_reward_awards"
    __table_args__ = (
        UniqueConstraint("rule_key", "award_date", name="uq_reward_rule_day"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    rule_key = Column(String(50), nullable=False, index=True)
    award_date = Column(Date, nullable=False)
    division = Column(String(50), nullable=False)
    signal_value = Column(Float, nullable=False)
    amount_sc = Column(Float, nullable=False)

    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# FEDERATION
# =============================================================================

class FederationPeerDB(Base):
    """Trusted peer registry. Pre-populated; keys are not rotated here."""
    __tablename__ = "federation_peers"

    id = Column(String(36), primary_key=True)  # UUID
    peer_name = Column(String(100), unique=True, nullable=False, index=True)
    base_url = Column(String(500), nullable=True)
    public_key = Column(Text, nullable=False)  # PEM, Ed25519

    trust_score = Column(Float, nullable=False, default=50.0)  # 0-100
    send_enabled = Column(Boolean, default=True)
    recv_enabled = Column(Boolean, default=True)

    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class FederationPolicyDB(Base):
    """What this node shares and how inbound priors are merged."""
    __tablename__ = "federation_policies"

    id = Column(String(36), primary_key=True)  # UUID
    enabled = Column(Boolean, default=True)

    share_divisions = Column(JSON, nullable=False, default=list)
    min_sample = Column(Integer, nullable=False, default=5)
    dp_epsilon = Column(Float, nullable=False, default=1.0)
    dp_sensitivity = Column(Float, nullable=False, default=1.0)
    max_daily_weight_drift = Column(Float, nullable=False, default=0.1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class OutboundBundleDB(Base):
    """
    Signed, hashed learning signal bundle queued for peers.
    `body` holds the exact bytes that were hashed and signed.
    """
    __tablename__ = "federation_outbound_queue"

    id = Column(String(36), primary_key=True)  # UUID

    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False, index=True)

    payload = Column(JSON, nullable=False)
    body = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)  # SHA-256 hex of body
    signature = Column(Text, nullable=False)           # base64 Ed25519 over body

    status = Column(SQLEnum(BundleStatus), nullable=False, default=BundleStatus.QUEUED)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt = Column(DateTime, nullable=True)
    delivered_peers = Column(JSON, nullable=False, default=list)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)


class InboundSignalDB(Base):
    """
    Verified bundle received from a peer.
    peer_trust is a snapshot at receipt time.
    """
    __tablename__ = "federation_inbound_signals"

    id = Column(String(36), primary_key=True)  # UUID
    peer_id = Column(String(36), ForeignKey("federation_peers.id"), nullable=False, index=True)

    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    signals = Column(JSON, nullable=False)
    node_reliability = Column(Float, nullable=True)

    signature_valid = Column(Boolean, nullable=False, default=False)
    peer_trust = Column(Float, nullable=False)
    summary_strength = Column(Float, nullable=False)
    content_hash = Column(String(64), nullable=False)

    received_at = Column(DateTime, default=utcnow, nullable=False, index=True)


# =============================================================================
# GOVERNANCE
# =============================================================================

class DAOSpaceDB(Base):
    """Governance space holding quorum/pass thresholds."""
    __tablename__ = "dao_spaces"

    id = Column(String(36), primary_key=True)  # UUID
    slug = Column(String(50), unique=True, nullable=False)
    name = Column(String(200), nullable=False)

    quorum_pct = Column(Float, nullable=False, default=20.0)
    pass_pct = Column(Float, nullable=False, default=60.0)
    voting_mode = Column(SQLEnum(VotingMode), nullable=False, default=VotingMode.STAKE)
    stake_cap = Column(Float, nullable=False, default=10000.0)

    created_at = Column(DateTime, default=utcnow)


class DAOProposalDB(Base):
    """Governance proposal. Thresholds are frozen at creation."""
    __tablename__ = "dao_proposals"

    id = Column(String(36), primary_key=True)  # UUID
    space_id = Column(String(36), ForeignKey("dao_spaces.id"), nullable=False, index=True)
    created_by = Column(String(36), nullable=True)

    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=True)
    actions = Column(JSON, nullable=False, default=list)

    quorum_pct = Column(Float, nullable=False)
    pass_pct = Column(Float, nullable=False)
    stake_cap = Column(Float, nullable=False, default=10000.0)

    voting_starts = Column(DateTime, nullable=False)
    voting_ends = Column(DateTime, nullable=False, index=True)
    snapshot_at = Column(DateTime, nullable=False)

    status = Column(SQLEnum(ProposalStatus), nullable=False, default=ProposalStatus.OPEN)
    approval_id = Column(String(36), ForeignKey("approvals.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    space = relationship("DAOSpaceDB")
    votes = relationship("DAOVoteDB", back_populates="proposal", cascade="all, delete-orphan")
    snapshots = relationship("DAOStakeSnapshotDB", back_populates="proposal", cascade="all, delete-orphan")


class DAOStakeSnapshotDB(Base):
    """Voter stake frozen at proposal creation."""
    __tablename__ = "dao_stake_snapshots"

    id = Column(String(36), primary_key=True)  # UUID
    proposal_id = Column(String(36), ForeignKey("dao_proposals.id", ondelete="CASCADE"), nullable=False, index=True)
    voter = Column(String(36), nullable=False)
    balance_sc = Column(Float, nullable=False)

    taken_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    proposal = relationship("DAOProposalDB", back_populates="snapshots")


class DAOVoteDB(Base):
    """One vote per voter per proposal."""
    __tablename__ = "dao_votes"
    __table_args__ = (
        UniqueConstraint("proposal_id", "voter", name="uq_dao_vote_voter"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    proposal_id = Column(String(36), ForeignKey("dao_proposals.id", ondelete="CASCADE"), nullable=False, index=True)
    voter = Column(String(36), nullable=False)

    choice = Column(SQLEnum(VoteChoice), nullable=False)
    weight = Column(Float, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    proposal = relationship("DAOProposalDB", back_populates="votes")


class ApprovalDB(Base):
    """
    Human/policy-gated approval queue.
    This core only enqueues; status transitions are owned by reviewers.
    """
    __tablename__ = "approvals"

    id = Column(String(36), primary_key=True)  # UUID
    action = Column(String(100), nullable=False)
    division = Column(String(50), nullable=True)
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING)
    requester = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    decided_at = Column(DateTime, nullable=True)


# =============================================================================
# AUDIT / NOTIFICATIONS
# =============================================================================

class NotificationDB(Base):
    """Fire-and-forget operator notification."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    division = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow)


class SystemLogDB(Base):
    """Structured audit trail of handler outcomes."""
    __tablename__ = "system_logs"

    id = Column(String(36), primary_key=True)  # UUID
    action = Column(String(100), nullable=False, index=True)
    division = Column(String(50), nullable=True)
    result = Column(Text, nullable=False)
    log_level = Column(String(20), nullable=False, default="info")  # info, warning, error, security
    # 'metadata' is reserved in SQLAlchemy
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)


class SecurityEventDB(Base):
    """
    Integrity failures on the federation path.
    Kept apart from ordinary validation failures so tampering stands out.
    """
    __tablename__ = "security_events"

    id = Column(String(36), primary_key=True)  # UUID
    event_type = Column(String(50), nullable=False, index=True)  # hash_mismatch, bad_signature, clock_skew
    peer_name = Column(String(100), nullable=True)
    detail = Column(Text, nullable=False)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)


class AutomationLogDB(Base):
    """Scheduled job outcomes, for cadence auditing."""
    __tablename__ = "automation_logs"

    id = Column(String(36), primary_key=True)  # UUID
    job_name = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # running, success, error
    message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
