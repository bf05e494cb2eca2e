"""
Tests for the SC wallet ledger.

1. Conditional updates never overdraw a wallet
2. Lock/unlock keep balance >= locked >= 0
3. Transfers append paired ledger entries
4. Epoch emission decays and is idempotent per day
5. Balances reconcile with the ledger
6. Incentive rewards are capped, paid once per day from the treasury
"""
from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func

from sc_engine.errors import AuthorizationError, NotFoundError, PreconditionError, ValidationError
from sc_engine.models.db_models import (
    AutomationLogDB,
    EmissionDB,
    IncentiveRuleDB,
    LedgerEntryDB,
    RewardAwardDB,
    TxType,
    WalletDB,
)
from sc_engine.services.ledger import SYSTEM_WALLET_DIVISION, TRANSFER_LIMIT_SC, WalletLedger
from sc_engine.services.ledger.incentives import reward_amount


# =============================================================================
# TEST: BALANCE MUTATIONS
# =============================================================================

class TestAdjustBalance:

    def test_credit_and_debit(self, db, make_wallet):
        wallet = make_wallet("finance", 500.0)
        ledger = WalletLedger(db)

        ledger.adjust_balance(wallet.id, -200.0, TxType.BURN)

        assert wallet.balance == 300.0
        assert wallet.version == 2

    def test_insufficient_balance_changes_nothing(self, db, make_wallet):
        """A debit past available balance is refused with no side effects."""
        wallet = make_wallet("finance", 100.0)
        ledger = WalletLedger(db)
        entries_before = db.query(LedgerEntryDB).count()

        with pytest.raises(PreconditionError):
            ledger.adjust_balance(wallet.id, -100.01, TxType.BURN)

        db.refresh(wallet)
        assert wallet.balance == 100.0
        assert wallet.version == 1
        assert db.query(LedgerEntryDB).count() == entries_before

    def test_locked_funds_are_not_available(self, db, make_wallet):
        wallet = make_wallet("finance", 100.0)
        ledger = WalletLedger(db)
        ledger.lock(wallet.id, 80.0)

        with pytest.raises(PreconditionError):
            ledger.adjust_balance(wallet.id, -30.0, TxType.BURN)

        ledger.adjust_balance(wallet.id, -20.0, TxType.BURN)
        assert wallet.balance == 80.0
        assert wallet.locked == 80.0

    def test_missing_wallet(self, db):
        with pytest.raises(NotFoundError):
            WalletLedger(db).adjust_balance("no-such-wallet", 10.0, TxType.MINT)


class TestLocking:

    def test_lock_and_unlock(self, db, make_wallet):
        wallet = make_wallet("energy", 300.0)
        ledger = WalletLedger(db)

        ledger.lock(wallet.id, 120.0)
        assert ledger.get_balance(wallet.id)["available"] == 180.0

        ledger.unlock(wallet.id, 120.0)
        balance = ledger.get_balance(wallet.id)
        assert balance["locked"] == 0.0
        assert balance["available"] == 300.0

        entry_types = [e.tx_type for e in db.query(LedgerEntryDB).filter(LedgerEntryDB.wallet_id == wallet.id).all()]
        assert TxType.LOCK in entry_types
        assert TxType.UNLOCK in entry_types

    def test_cannot_lock_more_than_available(self, db, make_wallet):
        wallet = make_wallet("energy", 50.0)
        with pytest.raises(PreconditionError):
            WalletLedger(db).lock(wallet.id, 50.5)

    def test_cannot_unlock_more_than_locked(self, db, make_wallet):
        wallet = make_wallet("energy", 50.0)
        ledger = WalletLedger(db)
        ledger.lock(wallet.id, 10.0)
        with pytest.raises(PreconditionError):
            ledger.unlock(wallet.id, 10.5)

    def test_non_positive_amounts_rejected(self, db, make_wallet):
        wallet = make_wallet("energy", 50.0)
        ledger = WalletLedger(db)
        with pytest.raises(ValidationError):
            ledger.lock(wallet.id, 0)
        with pytest.raises(ValidationError):
            ledger.unlock(wallet.id, -1)


# =============================================================================
# TEST: TRANSFERS
# =============================================================================

class TestTransfer:

    def test_transfer_moves_funds_and_writes_paired_entries(self, db, make_wallet):
        source = make_wallet("finance", 1000.0)
        target = make_wallet("health")
        ledger = WalletLedger(db)

        result = ledger.transfer(source.id, target.id, 250.0, memo="grant")

        assert result["ok"] is True
        assert source.balance == 750.0
        assert target.balance == 250.0

        out_entry = db.query(LedgerEntryDB).filter(
            LedgerEntryDB.wallet_id == source.id,
            LedgerEntryDB.tx_type == TxType.TRANSFER_OUT,
        ).one()
        in_entry = db.query(LedgerEntryDB).filter(
            LedgerEntryDB.wallet_id == target.id,
            LedgerEntryDB.tx_type == TxType.TRANSFER_IN,
        ).one()
        assert out_entry.amount == -250.0
        assert in_entry.amount == 250.0
        assert out_entry.ref_id == target.id
        assert in_entry.ref_id == source.id

    def test_transfer_insufficient_funds_leaves_both_wallets(self, db, make_wallet):
        source = make_wallet("finance", 100.0)
        target = make_wallet("health", 5.0)

        with pytest.raises(PreconditionError):
            WalletLedger(db).transfer(source.id, target.id, 150.0)

        db.refresh(source)
        db.refresh(target)
        assert source.balance == 100.0
        assert target.balance == 5.0

    def test_transfer_to_missing_wallet_does_not_debit(self, db, make_wallet):
        source = make_wallet("finance", 100.0)
        with pytest.raises(NotFoundError):
            WalletLedger(db).transfer(source.id, "missing", 10.0)
        db.refresh(source)
        assert source.balance == 100.0

    @pytest.mark.parametrize("amount", [0, -5.0])
    def test_non_positive_amount(self, db, make_wallet, amount):
        source = make_wallet("finance", 100.0)
        target = make_wallet("health")
        with pytest.raises(ValidationError):
            WalletLedger(db).transfer(source.id, target.id, amount)

    def test_self_transfer(self, db, make_wallet):
        wallet = make_wallet("finance", 100.0)
        with pytest.raises(ValidationError):
            WalletLedger(db).transfer(wallet.id, wallet.id, 10.0)

    def test_limit_requires_admin(self, db, make_wallet):
        source = make_wallet("finance", TRANSFER_LIMIT_SC * 2)
        target = make_wallet("health")
        ledger = WalletLedger(db)

        with pytest.raises(AuthorizationError):
            ledger.transfer(source.id, target.id, TRANSFER_LIMIT_SC + 1)

        ledger.transfer(source.id, target.id, TRANSFER_LIMIT_SC + 1, is_admin=True)
        assert target.balance == TRANSFER_LIMIT_SC + 1


# =============================================================================
# TEST: EPOCH EMISSION
# =============================================================================

class TestMintEpoch:

    def test_first_epoch_mints_and_pays_stipend(self, db):
        ledger = WalletLedger(db)

        result = ledger.mint_epoch(date(2026, 1, 1), divisions=["a", "b"])

        assert result["minted"] is True
        assert result["total_emitted_sc"] == pytest.approx(1000.0)
        assert result["stipend_per_division"] == pytest.approx(50.0)
        assert ledger.get_division_wallet(SYSTEM_WALLET_DIVISION).balance == pytest.approx(900.0)
        assert ledger.get_division_wallet("a").balance == pytest.approx(50.0)
        assert ledger.get_division_wallet("b").balance == pytest.approx(50.0)

    def test_same_day_is_idempotent(self, db):
        ledger = WalletLedger(db)
        ledger.mint_epoch(date(2026, 1, 1), divisions=["a", "b"])

        again = ledger.mint_epoch(date(2026, 1, 1), divisions=["a", "b"])

        assert again["minted"] is False
        assert db.query(EmissionDB).count() == 1
        assert ledger.get_division_wallet(SYSTEM_WALLET_DIVISION).balance == pytest.approx(900.0)

    def test_emission_decays_per_epoch(self, db):
        ledger = WalletLedger(db)
        ledger.mint_epoch(date(2026, 1, 1), divisions=["a", "b"])

        second = ledger.mint_epoch(date(2026, 1, 2), divisions=["a", "b"])

        assert second["total_emitted_sc"] == pytest.approx(999.0)
        assert ledger.get_division_wallet("a").balance == pytest.approx(50.0 + 49.95)
        assert ledger.get_division_wallet(SYSTEM_WALLET_DIVISION).balance == pytest.approx(900.0 + 999.0 - 99.9)

    def test_supply_equals_total_emitted(self, db):
        ledger = WalletLedger(db)
        for day in range(1, 4):
            ledger.mint_epoch(date(2026, 1, day), divisions=["a", "b", "c"])

        supply = db.query(func.sum(WalletDB.balance)).scalar()
        emitted = db.query(func.sum(EmissionDB.total_emitted_sc)).scalar()
        assert supply == pytest.approx(emitted)


# =============================================================================
# TEST: RECONCILIATION
# =============================================================================

class TestReconciliation:

    def test_balance_equals_sum_of_signed_entries(self, db, make_wallet):
        """Lock/unlock rows move funds within a wallet and are excluded."""
        a = make_wallet("a", 1000.0)
        b = make_wallet("b", 200.0)
        ledger = WalletLedger(db)

        ledger.transfer(a.id, b.id, 300.0)
        ledger.lock(b.id, 100.0)
        ledger.adjust_balance(b.id, -50.0, TxType.BURN)
        ledger.unlock(b.id, 40.0)
        ledger.transfer(b.id, a.id, 25.0)

        for wallet in (a, b):
            total = db.query(func.sum(LedgerEntryDB.amount)).filter(
                LedgerEntryDB.wallet_id == wallet.id,
                LedgerEntryDB.tx_type.notin_([TxType.LOCK, TxType.UNLOCK]),
            ).scalar()
            assert wallet.balance == pytest.approx(total)
            assert wallet.balance >= wallet.locked >= 0


# =============================================================================
# TEST: INCENTIVE REWARDS
# =============================================================================

def _rule(db, rule_key, division, signal, rate_sc, cap, weight=1.0, enabled=True):
    rule = IncentiveRuleDB(
        id=str(uuid4()),
        rule_key=rule_key,
        division=division,
        signal=signal,
        rate_sc=rate_sc,
        weight=weight,
        cap_sc_per_day=cap,
        enabled=enabled,
    )
    db.add(rule)
    db.flush()
    return rule


class TestAwardRewards:

    def test_reward_amount_is_capped_and_non_negative(self):
        assert reward_amount(10, 100, 1.0, 250) == 250
        assert reward_amount(2, 50, 0.5, 1000) == 50
        assert reward_amount(-3, 20, 1.0, 1000) == 0.0

    def test_stability_reward_paid_from_treasury(self, db, now, make_wallet, make_kpi):
        treasury = make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        make_kpi("energy", 80, 20)
        make_kpi("energy", 90, 20)
        _rule(db, "grid_stability", "energy", "stability", rate_sc=20.0, cap=1000.0)
        ledger = WalletLedger(db)

        result = ledger.award_rewards(now=now)

        assert result["total_awarded"] == pytest.approx(300.0)
        assert result["rewards"][0]["signal_value"] == pytest.approx(15.0)
        energy = ledger.get_division_wallet("energy")
        assert energy.balance == pytest.approx(300.0)
        assert treasury.balance == pytest.approx(4700.0)

        entry = db.query(LedgerEntryDB).filter(LedgerEntryDB.wallet_id == energy.id).one()
        assert entry.tx_type == TxType.REWARD
        assert entry.memo == "Reward: grid_stability"
        award = db.query(RewardAwardDB).one()
        assert entry.ref_id == award.id
        assert award.award_date == now.date()

    def test_daily_cap(self, db, now, make_wallet):
        make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        _rule(db, "risk_reduction", "defense", "risk_reduction", rate_sc=100.0, cap=250.0)

        result = WalletLedger(db).award_rewards(now=now)

        assert result["rewards"][0]["signal_value"] == 10.0
        assert result["total_awarded"] == pytest.approx(250.0)

    def test_high_risk_snapshots_reduce_reward(self, db, now, make_wallet, make_kpi):
        make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        for division in ("a", "b", "c"):
            make_kpi(division, 40, 85)
        make_kpi("d", 60, 30)
        _rule(db, "risk_reduction", "defense", "risk_reduction", rate_sc=100.0, cap=1000.0)

        result = WalletLedger(db).award_rewards(now=now)

        assert result["total_awarded"] == pytest.approx(700.0)

    def test_job_reliability_counts_successful_jobs(self, db, now, make_wallet):
        make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        for status in ("success", "success", "error", "running"):
            db.add(AutomationLogDB(id=str(uuid4()), job_name="collect-kpis", status=status))
        db.flush()
        _rule(db, "data_pull_quality", "finance", "job_reliability", rate_sc=50.0, cap=1000.0)

        result = WalletLedger(db).award_rewards(now=now)

        assert result["total_awarded"] == pytest.approx(100.0)

    def test_paid_once_per_day(self, db, now, make_wallet):
        make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        _rule(db, "risk_reduction", "defense", "risk_reduction", rate_sc=100.0, cap=250.0)
        ledger = WalletLedger(db)
        ledger.award_rewards(now=now)

        again = ledger.award_rewards(now=now)
        assert again["skipped"] == 1
        assert again["total_awarded"] == 0
        assert ledger.get_division_wallet("defense").balance == pytest.approx(250.0)

        ledger.award_rewards(now=now + timedelta(days=1))
        assert ledger.get_division_wallet("defense").balance == pytest.approx(500.0)

    def test_empty_treasury_isolated_per_rule(self, db, now, make_wallet):
        treasury = make_wallet(SYSTEM_WALLET_DIVISION, 100.0)
        _rule(db, "a_big", "defense", "risk_reduction", rate_sc=100.0, cap=500.0)
        _rule(db, "b_small", "finance", "risk_reduction", rate_sc=100.0, cap=80.0)
        ledger = WalletLedger(db)

        result = ledger.award_rewards(now=now)

        assert [e["rule"] for e in result["errors"]] == ["a_big"]
        assert [r["rule"] for r in result["rewards"]] == ["b_small"]
        assert db.query(RewardAwardDB).filter(RewardAwardDB.rule_key == "a_big").count() == 0
        assert ledger.get_division_wallet("finance").balance == pytest.approx(80.0)
        assert treasury.balance == pytest.approx(20.0)

    def test_rewards_move_supply_without_creating_it(self, db, now, make_wallet, make_kpi):
        make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        make_kpi("energy", 95, 10)
        _rule(db, "grid_stability", "energy", "stability", rate_sc=20.0, cap=1000.0)
        _rule(db, "risk_reduction", "defense", "risk_reduction", rate_sc=100.0, cap=400.0)

        WalletLedger(db).award_rewards(now=now)

        assert db.query(func.sum(WalletDB.balance)).scalar() == pytest.approx(5000.0)

    def test_idle_disabled_and_misconfigured_rules(self, db, now, make_wallet):
        make_wallet(SYSTEM_WALLET_DIVISION, 5000.0)
        _rule(db, "idle", "energy", "stability", rate_sc=20.0, cap=1000.0)
        _rule(db, "off", "defense", "risk_reduction", rate_sc=100.0, cap=1000.0, enabled=False)
        _rule(db, "typo", "food", "harvest", rate_sc=1.0, cap=10.0)
        _rule(db, "self_pay", SYSTEM_WALLET_DIVISION, "risk_reduction", rate_sc=1.0, cap=10.0)

        result = WalletLedger(db).award_rewards(now=now)

        assert result["rewards"] == []
        assert {e["rule"] for e in result["errors"]} == {"typo", "self_pay"}
        assert db.query(RewardAwardDB).count() == 0
