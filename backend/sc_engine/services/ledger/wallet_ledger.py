"""
Wallet Ledger Service

Core Principles:
1. Balances change only through a single conditional UPDATE per wallet.
   The condition carries the invariant (available >= 0), so concurrent
   writers cannot overdraw a wallet.
2. Every balance change appends a LedgerEntryDB row in the same transaction.
3. Ledger amounts are signed deltas (transfer_out and burn are negative).
   Lock/unlock rows record the positive amount moved in or out of `locked`.

INVARIANT: balance >= locked >= 0 for every wallet, at all times.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ... import config
from ...errors import AuthorizationError, ConfigurationError, NotFoundError, PreconditionError, SCEngineError, ValidationError
from ...models.db_models import (
    EmissionDB,
    IncentiveRuleDB,
    LedgerEntryDB,
    RewardAwardDB,
    TxType,
    WalletDB,
    utcnow,
)
from .incentives import measure_signal, reward_amount


logger = logging.getLogger(__name__)


SYSTEM_WALLET_DIVISION = "system"
TRANSFER_LIMIT_SC = 25000.0


class WalletLedger:
    """
    Wallet operations for the SC economy.

    Usage:
        ledger = WalletLedger(db)
        ledger.transfer(from_wallet.id, to_wallet.id, 250.0)
        db.commit()
    """

    BASE_EMISSION = 1000.0
    DECAY_RATE = 0.999
    STIPEND_SHARE = 0.1
    SCHEDULE_VERSION = "v1"

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_wallet(self, wallet_id: str) -> WalletDB:
        wallet = self.db.query(WalletDB).filter(WalletDB.id == wallet_id).first()
        if not wallet:
            raise NotFoundError(f"Wallet not found: {wallet_id}")
        return wallet

    def get_division_wallet(self, division: str) -> Optional[WalletDB]:
        return self.db.query(WalletDB).filter(
            WalletDB.division == division,
            WalletDB.user_id.is_(None),
        ).first()

    def get_or_create_division_wallet(self, division: str) -> WalletDB:
        wallet = self.get_division_wallet(division)
        if wallet:
            return wallet

        wallet = WalletDB(id=str(uuid4()), division=division, balance=0.0, locked=0.0, version=0)
        self.db.add(wallet)
        self.db.flush()
        logger.info(f"Created wallet for division {division}")
        return wallet

    def get_or_create_user_wallet(self, user_id: str) -> WalletDB:
        wallet = self.db.query(WalletDB).filter(WalletDB.user_id == user_id).first()
        if wallet:
            return wallet

        wallet = WalletDB(id=str(uuid4()), user_id=user_id, balance=0.0, locked=0.0, version=0)
        self.db.add(wallet)
        self.db.flush()
        return wallet

    def list_division_wallets(self) -> List[WalletDB]:
        """All division wallets except the system treasury."""
        return self.db.query(WalletDB).filter(
            WalletDB.division.isnot(None),
            WalletDB.user_id.is_(None),
            WalletDB.division != SYSTEM_WALLET_DIVISION,
        ).order_by(WalletDB.division).all()

    def get_balance(self, wallet_id: str) -> Dict[str, Any]:
        wallet = self.get_wallet(wallet_id)
        return {
            "wallet_id": wallet.id,
            "division": wallet.division,
            "user_id": wallet.user_id,
            "balance": wallet.balance,
            "locked": wallet.locked,
            "available": wallet.balance - wallet.locked,
            "version": wallet.version,
        }

    # =========================================================================
    # Atomic mutations
    # =========================================================================

    def adjust_balance(
        self,
        wallet_id: str,
        delta: float,
        tx_type: TxType,
        ref_id: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> LedgerEntryDB:
        """
        Apply a signed delta to a wallet's balance.

        Single conditional UPDATE: succeeds only if the wallet's available
        balance stays non-negative. Bumps the wallet version.

        Raises:
            PreconditionError: Insufficient available balance
            NotFoundError: Wallet does not exist
        """
        stmt = (
            update(WalletDB)
            .where(WalletDB.id == wallet_id)
            .where(WalletDB.balance - WalletDB.locked + delta >= 0)
            .values(balance=WalletDB.balance + delta, version=WalletDB.version + 1)
            .execution_options(synchronize_session=False)
        )
        if not self._apply(stmt, wallet_id):
            self.get_wallet(wallet_id)
            raise PreconditionError(
                "Insufficient balance",
                details={"wallet_id": wallet_id, "delta": delta},
            )

        return self._append_entry(wallet_id, tx_type, delta, ref_id, memo)

    def lock(self, wallet_id: str, amount: float, ref_id: Optional[str] = None, memo: Optional[str] = None) -> LedgerEntryDB:
        """Move `amount` of available balance into `locked`."""
        if amount <= 0:
            raise ValidationError("Lock amount must be positive")

        stmt = (
            update(WalletDB)
            .where(WalletDB.id == wallet_id)
            .where(WalletDB.balance - WalletDB.locked >= amount)
            .values(locked=WalletDB.locked + amount, version=WalletDB.version + 1)
            .execution_options(synchronize_session=False)
        )
        if not self._apply(stmt, wallet_id):
            self.get_wallet(wallet_id)
            raise PreconditionError("Insufficient balance to lock", details={"wallet_id": wallet_id, "amount": amount})

        return self._append_entry(wallet_id, TxType.LOCK, amount, ref_id, memo)

    def unlock(self, wallet_id: str, amount: float, ref_id: Optional[str] = None, memo: Optional[str] = None) -> LedgerEntryDB:
        """Release `amount` from `locked` back to available balance."""
        if amount <= 0:
            raise ValidationError("Unlock amount must be positive")

        stmt = (
            update(WalletDB)
            .where(WalletDB.id == wallet_id)
            .where(WalletDB.locked >= amount)
            .values(locked=WalletDB.locked - amount, version=WalletDB.version + 1)
            .execution_options(synchronize_session=False)
        )
        if not self._apply(stmt, wallet_id):
            self.get_wallet(wallet_id)
            raise PreconditionError("Unlock exceeds locked amount", details={"wallet_id": wallet_id, "amount": amount})

        return self._append_entry(wallet_id, TxType.UNLOCK, amount, ref_id, memo)

    def transfer(
        self,
        from_wallet_id: str,
        to_wallet_id: str,
        amount: float,
        memo: Optional[str] = None,
        is_admin: bool = False,
        ref_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move SC between wallets: atomic debit, then credit.

        Both wallets are resolved before the debit so a missing recipient
        never leaves a half-applied transfer.

        Raises:
            ValidationError: Non-positive amount or self-transfer
            AuthorizationError: Amount above the transfer limit without admin
            PreconditionError: Insufficient balance in the source wallet
        """
        if amount is None or amount <= 0:
            raise ValidationError("Transfer amount must be positive")
        if from_wallet_id == to_wallet_id:
            raise ValidationError("Cannot transfer to the same wallet")
        if amount > TRANSFER_LIMIT_SC and not is_admin:
            raise AuthorizationError(f"Transfers above {TRANSFER_LIMIT_SC:.0f} SC require admin")

        self.get_wallet(from_wallet_id)
        self.get_wallet(to_wallet_id)

        self.adjust_balance(from_wallet_id, -amount, TxType.TRANSFER_OUT, ref_id=ref_id or to_wallet_id, memo=memo)
        self.adjust_balance(to_wallet_id, amount, TxType.TRANSFER_IN, ref_id=ref_id or from_wallet_id, memo=memo)

        logger.info(f"Transferred {amount:.2f} SC {from_wallet_id} -> {to_wallet_id}")

        return {
            "ok": True,
            "from_wallet_id": from_wallet_id,
            "to_wallet_id": to_wallet_id,
            "amount": amount,
        }

    # =========================================================================
    # Epoch emission
    # =========================================================================

    def mint_epoch(self, epoch_date: Optional[date] = None, divisions: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Mint the daily emission into the system wallet, then pay each
        division a base stipend out of it.

        emission = 1000 * 0.999 ** (epochs already minted)
        stipend  = 10% of emission, split evenly across divisions

        Idempotent per epoch_date.
        """
        epoch_date = epoch_date or utcnow().date()
        divisions = divisions if divisions is not None else config.DIVISIONS

        existing = self.db.query(EmissionDB).filter(
            EmissionDB.epoch_date == epoch_date,
            EmissionDB.schedule_version == self.SCHEDULE_VERSION,
        ).first()
        if existing:
            return {
                "ok": True,
                "minted": False,
                "message": "Already minted today",
                "epoch_date": epoch_date.isoformat(),
                "total_emitted_sc": existing.total_emitted_sc,
            }

        epochs = self.db.query(func.count(EmissionDB.id)).scalar() or 0
        emission = self.BASE_EMISSION * (self.DECAY_RATE ** epochs)

        system_wallet = self.get_or_create_division_wallet(SYSTEM_WALLET_DIVISION)
        self.adjust_balance(system_wallet.id, emission, TxType.MINT, memo=f"Epoch emission for {epoch_date.isoformat()}")

        stipend = (emission * self.STIPEND_SHARE) / len(divisions) if divisions else 0.0
        if stipend > 0:
            for division in divisions:
                wallet = self.get_or_create_division_wallet(division)
                self.transfer(
                    system_wallet.id,
                    wallet.id,
                    stipend,
                    memo=f"Base stipend for {epoch_date.isoformat()}",
                    is_admin=True,
                )

        self.db.add(EmissionDB(
            id=str(uuid4()),
            epoch_date=epoch_date,
            total_emitted_sc=emission,
            schedule_version=self.SCHEDULE_VERSION,
        ))
        self.db.flush()

        logger.info(f"Minted epoch {epoch_date}: {emission:.4f} SC, stipend {stipend:.4f} x {len(divisions)}")

        return {
            "ok": True,
            "minted": True,
            "epoch_date": epoch_date.isoformat(),
            "total_emitted_sc": emission,
            "stipend_per_division": stipend,
            "divisions": len(divisions),
        }

    # =========================================================================
    # Incentive rewards
    # =========================================================================

    def award_rewards(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Pay each enabled incentive rule's daily reward from the system
        treasury into the rule's division wallet.

        One award per rule per day, capped at the rule's cap_sc_per_day.
        Rules are isolated: an empty treasury or a misconfigured rule is
        reported in `errors` and the rest still pay out.
        """
        now = now or utcnow()
        award_date = now.date()
        since = now - timedelta(hours=24)

        rules = self.db.query(IncentiveRuleDB).filter(
            IncentiveRuleDB.enabled.is_(True),
        ).order_by(IncentiveRuleDB.rule_key).all()

        paid = {
            row.rule_key for row in self.db.query(RewardAwardDB).filter(RewardAwardDB.award_date == award_date)
        }
        system_wallet = self.get_or_create_division_wallet(SYSTEM_WALLET_DIVISION)

        rewards = []
        errors = []
        skipped = 0
        for rule in rules:
            if rule.rule_key in paid:
                skipped += 1
                continue
            try:
                with self.db.begin_nested():
                    reward = self._award_rule(rule, system_wallet, award_date, since)
                if reward:
                    rewards.append(reward)
            except SCEngineError as e:
                logger.warning(f"Reward rule {rule.rule_key} not paid: {e.message}")
                errors.append({"rule": rule.rule_key, "error": e.message})

        total = sum(r["amount"] for r in rewards)
        logger.info(f"Awarded {total:.2f} SC across {len(rewards)} rules for {award_date}")

        return {
            "ok": True,
            "award_date": award_date.isoformat(),
            "total_awarded": total,
            "rewards": rewards,
            "skipped": skipped,
            "errors": errors,
        }

    # =========================================================================
    # Internal
    # =========================================================================

    def _award_rule(
        self,
        rule: IncentiveRuleDB,
        system_wallet: WalletDB,
        award_date: date,
        since: datetime,
    ) -> Optional[Dict[str, Any]]:
        if rule.division == SYSTEM_WALLET_DIVISION:
            raise ConfigurationError(f"Reward rule {rule.rule_key} cannot pay the system treasury")

        value = measure_signal(self.db, rule, since)
        amount = reward_amount(value, rule.rate_sc, rule.weight, rule.cap_sc_per_day)
        if amount <= 0:
            return None

        award = RewardAwardDB(
            id=str(uuid4()),
            rule_key=rule.rule_key,
            award_date=award_date,
            division=rule.division,
            signal_value=value,
            amount_sc=amount,
        )
        self.db.add(award)

        wallet = self.get_or_create_division_wallet(rule.division)
        memo = f"Reward: {rule.rule_key}"
        self.adjust_balance(system_wallet.id, -amount, TxType.TRANSFER_OUT, ref_id=award.id, memo=memo)
        self.adjust_balance(wallet.id, amount, TxType.REWARD, ref_id=award.id, memo=memo)

        return {"rule": rule.rule_key, "division": rule.division, "signal_value": value, "amount": amount}

    def _apply(self, stmt, wallet_id: str) -> bool:
        """Run a guarded wallet UPDATE. True if exactly one row changed."""
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            return False

        # Loaded instances hold pre-update values
        cached = self.db.identity_map.get(self.db.identity_key(WalletDB, wallet_id))
        if cached is not None:
            self.db.expire(cached, ["balance", "locked", "version"])
        return True

    def _append_entry(
        self,
        wallet_id: str,
        tx_type: TxType,
        amount: float,
        ref_id: Optional[str],
        memo: Optional[str],
    ) -> LedgerEntryDB:
        entry = LedgerEntryDB(
            id=str(uuid4()),
            wallet_id=wallet_id,
            tx_type=tx_type,
            amount=amount,
            ref_id=ref_id,
            memo=memo,
        )
        self.db.add(entry)
        self.db.flush()
        return entry
