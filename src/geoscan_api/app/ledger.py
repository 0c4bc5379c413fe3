"""Point ledger: every balance change writes exactly one immutable entry.

Terms:
- Balance: `accounts.points`, the live spendable point count.
- Entry: one signed movement plus the balance right after it.
- Joining a transaction: passing `tx=` makes the ledger write commit together
  with whatever else the caller does inside the same unit of work.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from .errors import AccountNotFound, InsufficientBalance
from .models import AccountRecord, LedgerEntry, LedgerEntryType, Plan
from .storage.base import PipelineStorage, StorageTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reconciliation:
    user_id: str
    balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum


class Ledger:
    """Debit/credit operations over a `PipelineStorage` backend."""

    def __init__(self, storage: PipelineStorage) -> None:
        self.storage = storage

    def open_account(
        self,
        user_id: str,
        *,
        opening_balance: int = 0,
        plan: Plan = "FREE",
    ) -> AccountRecord:
        """Create the account if needed; a non-zero opening balance is booked as RECHARGE.

        The account row and its opening entry commit in one transaction.
        """
        if opening_balance:
            _require_positive(opening_balance)
        with self.storage.transaction() as tx:
            existing = tx.lock_account(user_id)
            if existing is not None:
                return existing
            account = tx.insert_account(user_id, plan=plan)
            if opening_balance:
                entry = self._apply(
                    tx,
                    user_id=user_id,
                    delta=opening_balance,
                    entry_type="RECHARGE",
                    description="Opening balance",
                    operator_id=None,
                )
                account = account.model_copy(update={"points": entry.balance})
        logger.info(
            "ledger event=open_account user_id=%s plan=%s opening_balance=%d",
            user_id,
            plan,
            opening_balance,
        )
        return account

    def balance(self, user_id: str) -> int:
        account = self.storage.get_account(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account.points

    def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        tx: StorageTransaction | None = None,
    ) -> int:
        """Subtract `amount` points and return the new balance.

        Raises InsufficientBalance without writing anything when the locked
        balance is lower than `amount`.
        """
        _require_positive(amount)
        with self._unit_of_work(tx) as unit:
            entry = self._apply(
                unit,
                user_id=user_id,
                delta=-amount,
                entry_type="CONSUME",
                description=reason,
                operator_id=None,
            )
        logger.info(
            "ledger event=debit user_id=%s amount=%d balance=%d",
            user_id,
            amount,
            entry.balance,
        )
        return entry.balance

    def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        entry_type: LedgerEntryType = "RECHARGE",
        operator_id: str | None = None,
        tx: StorageTransaction | None = None,
    ) -> int:
        """Add `amount` points (recharge, refund, or admin adjustment)."""
        _require_positive(amount)
        if entry_type in ("CONSUME", "ADMIN_SUB"):
            raise ValueError(f"{entry_type} is not a credit entry type")
        entry = self.credit_entry(
            user_id,
            amount,
            reason,
            entry_type=entry_type,
            operator_id=operator_id,
            tx=tx,
        )
        return entry.balance

    def credit_entry(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        entry_type: LedgerEntryType = "RECHARGE",
        operator_id: str | None = None,
        tx: StorageTransaction | None = None,
    ) -> LedgerEntry:
        _require_positive(amount)
        with self._unit_of_work(tx) as unit:
            entry = self._apply(
                unit,
                user_id=user_id,
                delta=amount,
                entry_type=entry_type,
                description=reason,
                operator_id=operator_id,
            )
        logger.info(
            "ledger event=credit user_id=%s amount=%d balance=%d entry_type=%s operator_id=%s",
            user_id,
            amount,
            entry.balance,
            entry_type,
            operator_id,
        )
        return entry

    def admin_subtract(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        operator_id: str | None = None,
        tx: StorageTransaction | None = None,
    ) -> int:
        """Remove points as an admin adjustment; never drives the balance negative."""
        _require_positive(amount)
        with self._unit_of_work(tx) as unit:
            entry = self._apply(
                unit,
                user_id=user_id,
                delta=-amount,
                entry_type="ADMIN_SUB",
                description=reason,
                operator_id=operator_id,
            )
        logger.info(
            "ledger event=admin_subtract user_id=%s amount=%d balance=%d operator_id=%s",
            user_id,
            amount,
            entry.balance,
            operator_id,
        )
        return entry.balance

    def recent_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntry]:
        return self.storage.list_ledger_entries(user_id, limit=limit)

    def reconcile(self, user_id: str) -> Reconciliation:
        """Compare the live balance with the sum of all ledger entries."""
        balance = self.balance(user_id)
        ledger_sum = sum(entry.amount for entry in self.storage.list_ledger_entries(user_id))
        result = Reconciliation(user_id=user_id, balance=balance, ledger_sum=ledger_sum)
        if not result.consistent:
            logger.error(
                "ledger event=reconcile_mismatch user_id=%s balance=%d ledger_sum=%d",
                user_id,
                balance,
                ledger_sum,
            )
        return result

    @contextmanager
    def _unit_of_work(self, tx: StorageTransaction | None) -> Iterator[StorageTransaction]:
        if tx is not None:
            yield tx
            return
        with self.storage.transaction() as own:
            yield own

    @staticmethod
    def _apply(
        unit: StorageTransaction,
        *,
        user_id: str,
        delta: int,
        entry_type: LedgerEntryType,
        description: str,
        operator_id: str | None,
    ) -> LedgerEntry:
        account = unit.lock_account(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        new_balance = account.points + delta
        if new_balance < 0:
            raise InsufficientBalance(
                user_id=user_id,
                required_points=-delta,
                current_points=account.points,
            )
        unit.set_points(user_id, new_balance)
        return unit.insert_ledger_entry(
            user_id=user_id,
            amount=delta,
            balance=new_balance,
            entry_type=entry_type,
            description=description,
            operator_id=operator_id,
        )


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Ledger amounts must be positive integers, got {amount!r}")
