"""
recorder.py - Atomic composition of ledger entries and stake mutations

TransactionRecorder is the synchronization boundary of the engine. Callers
stage a logical operation (wallet entries + stake writes + payout records +
payment records) on an AtomicUnit while holding the user's lock. When the
block exits cleanly the whole unit is validated, then applied. If the block
raises, or validation fails, nothing is applied.

Pattern:
    with recorder.atomic(user_id) as unit:
        unit.post(TransactionType.STAKE_CREATION, -amount, {"stake_id": sid})
        unit.put_stake(new_stake)
    unit.transactions   # the Transactions created by the commit

A stake write carries the version it replaces (old). The commit rejects the
unit if the stored record is no longer that version, so a write built from a
stale read can never overwrite a newer one.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from datetime import date
from decimal import Decimal
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .core import (
    Stake, Payment, PayoutRecord, Transaction, TransactionType,
    ZERO, StakeLedgerError,
    to_money,
)
from .stakes import StakeBook
from .wallet import WalletLedger, _Account

logger = logging.getLogger(__name__)


class StaleWrite(StakeLedgerError):
    """Raised when a staged stake write no longer matches the stored version."""
    pass


@dataclass(frozen=True, slots=True)
class StakeChange:
    """
    A staged replacement of a stake record.

    Attributes:
        old: Version the write was built from (None when creating the stake)
        new: Version to store
    """
    old: Optional[Stake]
    new: Stake

    @property
    def stake_id(self) -> str:
        return self.new.id

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Fields that differ between old and new, as (old_value, new_value)."""
        if self.old is None:
            return {f.name: (None, getattr(self.new, f.name)) for f in fields(Stake)}
        changes = {}
        for f in fields(Stake):
            old_val = getattr(self.old, f.name)
            new_val = getattr(self.new, f.name)
            if old_val != new_val:
                changes[f.name] = (old_val, new_val)
        return changes


@dataclass(frozen=True, slots=True)
class _StagedEntry:
    tx_type: TransactionType
    amount: Decimal
    metadata: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class _StagedPayout:
    stake_id: str
    for_date: date
    due_date: date
    entry_index: int


class AtomicUnit:
    """
    Staging area for one atomic operation on one user.

    Only valid inside TransactionRecorder.atomic(). After the commit,
    `transactions` holds the created entries in staging order.
    """

    def __init__(self, recorder: TransactionRecorder, account: _Account):
        self._recorder = recorder
        self._account = account
        self.entries: List[_StagedEntry] = []
        self.stake_changes: List[StakeChange] = []
        self.payouts: List[_StagedPayout] = []
        self.payments: List[Payment] = []
        self.pending_delta: Decimal = ZERO
        self.transactions: List[Transaction] = []
        self.committed = False

    @property
    def user_id(self) -> str:
        return self._account.user_id

    @property
    def balance(self) -> Decimal:
        """Wallet balance as it will be after the staged entries."""
        return self._account.wallet.balance + sum((e.amount for e in self.entries), ZERO)

    def is_empty(self) -> bool:
        return not (self.entries or self.stake_changes or self.payments or self.pending_delta)

    def post(
        self,
        tx_type: TransactionType,
        signed_amount,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Stage a ledger entry. Returns its index in `entries`.

        Debits are checked against the projected balance right away, so the
        caller learns about InsufficientBalance before staging anything else.
        """
        entry = _StagedEntry(tx_type, to_money(signed_amount), dict(metadata or {}))
        self._recorder.wallets._project(
            self._account,
            [(e.tx_type, e.amount) for e in self.entries] + [(entry.tx_type, entry.amount)],
        )
        self.entries.append(entry)
        return len(self.entries) - 1

    def debit(self, tx_type: TransactionType, amount, metadata: Optional[Mapping[str, Any]] = None) -> int:
        """Stage a debit of a positive magnitude (STAKE_CREATION, WITHDRAWAL)."""
        return self.post(tx_type, -to_money(amount), metadata)

    def credit(self, tx_type: TransactionType, amount, metadata: Optional[Mapping[str, Any]] = None) -> int:
        """Stage a credit of a positive magnitude (TOPUP, PAYOUT)."""
        return self.post(tx_type, to_money(amount), metadata)

    def adjust(self, amount, metadata: Optional[Mapping[str, Any]] = None) -> int:
        """Stage a signed ADJUSTMENT."""
        return self.post(TransactionType.ADJUSTMENT, amount, metadata)

    def annotate(self, entry_index: int, **metadata: Any) -> None:
        """Add metadata to a staged entry."""
        entry = self.entries[entry_index]
        self.entries[entry_index] = replace(entry, metadata={**entry.metadata, **metadata})

    def put_stake(self, new: Stake, old: Optional[Stake] = None) -> None:
        """Stage a stake write. old is the version being replaced (None to create)."""
        if new.user_id != self.user_id:
            raise ValueError(f"Stake {new.id} belongs to {new.user_id}, not {self.user_id}")
        self.stake_changes.append(StakeChange(old=old, new=new))

    def record_payout(self, stake_id: str, for_date: date, due_date: date, entry_index: int) -> None:
        """Stage the idempotency record for a payout posted at entry_index."""
        if not 0 <= entry_index < len(self.entries):
            raise ValueError(f"No staged entry at index {entry_index}")
        self.payouts.append(_StagedPayout(stake_id, for_date, due_date, entry_index))

    def put_payment(self, payment: Payment) -> None:
        if payment.user_id != self.user_id:
            raise ValueError(f"Payment {payment.id} belongs to {payment.user_id}, not {self.user_id}")
        self.payments.append(payment)

    def change_pending(self, delta) -> None:
        """Stage a change to wallet.pending_balance."""
        self.pending_delta += to_money(delta)


class TransactionRecorder:
    """
    Commits wallet entries and stake-side records as one unit.

    Thread Safety:
        atomic() holds the user's lock from staging through commit, so no
        other mutation for the same user can interleave.
    """

    def __init__(self, wallets: WalletLedger, book: StakeBook):
        self.wallets = wallets
        self.book = book

    @contextmanager
    def atomic(self, user_id: str, timeout: Optional[float] = None) -> Iterator[AtomicUnit]:
        """
        Stage and commit one atomic operation for user_id.

        Raises:
            Busy: If the user's lock is not acquired in time
            LedgerIntegrityError: If the user's ledger is frozen or inconsistent
            InsufficientBalance: If the staged debits exceed the balance
            StaleWrite: If a staged stake write is based on an outdated record
        """
        with self.wallets.lock(user_id, timeout=timeout) as account:
            self.wallets._ensure_consistent(account)
            unit = AtomicUnit(self, account)
            yield unit
            self._commit(unit, account)

    def record_entry(
        self,
        user_id: str,
        tx_type: TransactionType,
        signed_amount,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Transaction:
        """Commit a single ledger entry with no stake-side effects."""
        with self.atomic(user_id) as unit:
            unit.post(tx_type, signed_amount, metadata)
        return unit.transactions[0]

    # ========================================================================
    # COMMIT
    # ========================================================================

    def _validate(self, unit: AtomicUnit, account: _Account) -> None:
        self.wallets._project(account, [(e.tx_type, e.amount) for e in unit.entries])

        seen = set()
        for change in unit.stake_changes:
            current = self.book.find(change.stake_id)
            if change.stake_id in seen:
                raise StaleWrite(f"Stake {change.stake_id} written twice in one unit")
            seen.add(change.stake_id)
            if current != change.old:
                raise StaleWrite(
                    f"Stake {change.stake_id} changed since it was read "
                    f"(expected {change.old!r}, found {current!r})"
                )

        keys = set()
        for staged in unit.payouts:
            key = (staged.stake_id, staged.due_date)
            if key in keys or self.book.payout_record(*key) is not None:
                raise StaleWrite(f"Payout {key} already recorded")
            keys.add(key)

        if account.wallet.pending_balance + unit.pending_delta < 0:
            raise StakeLedgerError(
                f"User {unit.user_id}: pending_balance would become negative"
            )

    def _commit(self, unit: AtomicUnit, account: _Account) -> None:
        if unit.committed:
            raise StakeLedgerError("AtomicUnit already committed")
        self._validate(unit, account)

        # Validation passed; nothing below can fail on user input.
        for entry in unit.entries:
            unit.transactions.append(
                self.wallets._post(account, entry.tx_type, entry.amount, entry.metadata)
            )
        for change in unit.stake_changes:
            self.book._put_stake(change.new)
            if change.old is None or change.old.state != change.new.state:
                logger.info(
                    "Stake %s (%s): %s -> %s",
                    change.stake_id, unit.user_id,
                    change.old.state.value if change.old else "NEW",
                    change.new.state.value,
                )
        for staged in unit.payouts:
            self.book._put_payout(PayoutRecord(
                stake_id=staged.stake_id,
                for_date=staged.for_date,
                due_date=staged.due_date,
                transaction=unit.transactions[staged.entry_index],
            ))
        for payment in unit.payments:
            self.book._put_payment(payment)
        if unit.pending_delta:
            self.wallets._replace_wallet(
                account, pending_balance=account.wallet.pending_balance + unit.pending_delta
            )
        unit.committed = True
