#!/usr/bin/env python3
"""
Node Seed Script
Bootstraps an SC Engine node: default policy, division wallets, federation
policy, DAO space, seed learning weights and incentive rules. Also generates
node keys and registers trusted peers.

Usage:
    python -m scripts.seed_node defaults
    python -m scripts.seed_node keygen <private_key_path>
    python -m scripts.seed_node add-peer <peer_name> <base_url> <public_key_pem_path> [trust_score]

Example:
    python -m scripts.seed_node keygen /etc/sc-engine/node.pem
    python -m scripts.seed_node add-peer sc-node-2 https://node2.example.org node2.pub 70
"""
import sys
import os
from pathlib import Path
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from sc_engine import config
from sc_engine.database import SessionLocal, init_db
from sc_engine.models.db_models import (
    AllocationPolicyDB,
    DAOSpaceDB,
    FederationPeerDB,
    FederationPolicyDB,
    IncentiveRuleDB,
    LearningWeightDB,
    VotingMode,
    WeightSource,
)
from sc_engine.services.federation.signing import generate_keypair
from sc_engine.services.governance.dao_service import DEFAULT_SPACE_SLUG
from sc_engine.services.ledger import WalletLedger


DEFAULT_WEIGHTS = {"need": 0.4, "risk": 0.3, "impact": 0.3}
DEFAULT_CONSTRAINTS = {
    "min_pct_per_division": 0.05,
    "max_pct_per_division": 0.35,
    "max_move_per_epoch_sc": 5000,
    "require_approval_over_sc": 2000,
}

# rule_key: (division, signal, rate_sc, cap_sc_per_day)
DEFAULT_INCENTIVE_RULES = {
    "risk_reduction": ("defense", "risk_reduction", 100.0, 1000.0),
    "grid_stability": ("energy", "stability", 20.0, 800.0),
    "data_pull_quality": ("finance", "job_reliability", 50.0, 500.0),
}


def seed_defaults() -> bool:
    """Create default rows that do not exist yet."""
    init_db()

    db: Session = SessionLocal()
    try:
        if not db.query(AllocationPolicyDB).filter(AllocationPolicyDB.policy_key == config.DEFAULT_POLICY_KEY).first():
            db.add(AllocationPolicyDB(
                id=str(uuid4()),
                policy_key=config.DEFAULT_POLICY_KEY,
                weights=DEFAULT_WEIGHTS,
                constraints=DEFAULT_CONSTRAINTS,
                impact_input_mode="learned",
                impact_default=50.0,
                impact_scale=100.0,
                enabled=True,
            ))
            print(f"Created allocation policy {config.DEFAULT_POLICY_KEY}")

        ledger = WalletLedger(db)
        for division in config.DIVISIONS:
            ledger.get_or_create_division_wallet(division)
        print(f"Ensured wallets for {len(config.DIVISIONS)} divisions")

        if not db.query(FederationPolicyDB).first():
            db.add(FederationPolicyDB(
                id=str(uuid4()),
                enabled=True,
                share_divisions=list(config.DIVISIONS),
                min_sample=5,
                dp_epsilon=1.0,
                dp_sensitivity=1.0,
                max_daily_weight_drift=0.1,
            ))
            print("Created federation policy")

        if not db.query(DAOSpaceDB).filter(DAOSpaceDB.slug == DEFAULT_SPACE_SLUG).first():
            db.add(DAOSpaceDB(
                id=str(uuid4()),
                slug=DEFAULT_SPACE_SLUG,
                name="SC Core Governance",
                quorum_pct=20.0,
                pass_pct=60.0,
                voting_mode=VotingMode.STAKE,
                stake_cap=10000.0,
            ))
            print(f"Created DAO space {DEFAULT_SPACE_SLUG}")

        if not db.query(LearningWeightDB).first():
            uniform = 1.0 / len(config.DIVISIONS)
            for division in config.DIVISIONS:
                db.add(LearningWeightDB(
                    id=str(uuid4()),
                    division=division,
                    version=1,
                    impact_weight=uniform,
                    trend=0.0,
                    source=WeightSource.SEED,
                ))
            print(f"Seeded uniform learning weights ({uniform:.4f})")

        for rule_key, (division, signal, rate_sc, cap) in DEFAULT_INCENTIVE_RULES.items():
            if db.query(IncentiveRuleDB).filter(IncentiveRuleDB.rule_key == rule_key).first():
                continue
            db.add(IncentiveRuleDB(
                id=str(uuid4()),
                rule_key=rule_key,
                division=division,
                signal=signal,
                rate_sc=rate_sc,
                weight=1.0,
                cap_sc_per_day=cap,
                enabled=True,
            ))
            print(f"Created incentive rule {rule_key}")

        db.commit()
        print("Node defaults seeded successfully!")
        return True

    except Exception as e:
        print(f"Error seeding defaults: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def write_keypair(private_key_path: str) -> bool:
    """Generate an Ed25519 node key. Prints the public key for peers."""
    path = Path(private_key_path)
    if path.exists():
        print(f"Error: {path} already exists.")
        return False

    private_pem, public_pem = generate_keypair()
    path.write_text(private_pem)
    path.chmod(0o600)

    print(f"Private key written to {path}")
    print(f"Set SC_NODE_SIGNING_KEY_PATH={path}")
    print("\nShare this public key with peers:\n")
    print(public_pem)
    return True


def add_peer(peer_name: str, base_url: str, public_key_path: str, trust_score: float = 50.0) -> bool:
    """Register (or update) a trusted peer."""
    init_db()

    public_pem = Path(public_key_path).read_text()
    if not 0 <= trust_score <= 100:
        print("Error: trust_score must be 0-100.")
        return False

    db: Session = SessionLocal()
    try:
        peer = db.query(FederationPeerDB).filter(FederationPeerDB.peer_name == peer_name).first()
        if peer:
            peer.base_url = base_url
            peer.public_key = public_pem
            peer.trust_score = trust_score
            print(f"Updated peer {peer_name}")
        else:
            db.add(FederationPeerDB(
                id=str(uuid4()),
                peer_name=peer_name,
                base_url=base_url,
                public_key=public_pem,
                trust_score=trust_score,
            ))
            print(f"Registered peer {peer_name}")
        db.commit()
        return True

    except Exception as e:
        print(f"Error registering peer: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1]
    if command == "defaults" and len(sys.argv) == 2:
        success = seed_defaults()
    elif command == "keygen" and len(sys.argv) == 3:
        success = write_keypair(sys.argv[2])
    elif command == "add-peer" and len(sys.argv) in (5, 6):
        trust = float(sys.argv[5]) if len(sys.argv) == 6 else 50.0
        success = add_peer(sys.argv[2], sys.argv[3], sys.argv[4], trust)
    else:
        print(__doc__)
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
