"""
stakes.py - Stake records, payout idempotency records, and payments

StakeBook is the store for everything on the stake side of the engine:
    - one Stake record per stake_id (terminal stakes are kept for history)
    - one PayoutRecord per settled installment, keyed by (stake_id, due_date)
    - one Payment per gateway-funded stake

Writes happen only through TransactionRecorder commits, while the owning
user's lock is held. Reads are lock-free: records are immutable and each
write swaps a single dict entry.
"""

from __future__ import annotations
from datetime import date
import itertools
import threading
from typing import Dict, List, Optional, Tuple

from .core import (
    Stake, StakeState, PayoutRecord, Payment, PaymentStatus,
    NotFound,
)


class StakeBook:
    """
    In-memory store for stakes, payout records and payments.

    Example:
        book = StakeBook()
        stake_id = book.next_stake_id()
        ...
        book.get(stake_id)            # raises NotFound if unknown
        book.for_user("alice", StakeState.ACTIVE)
    """

    def __init__(self):
        self._stakes: Dict[str, Stake] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._payouts: Dict[Tuple[str, date], PayoutRecord] = {}
        self._payments: Dict[str, Payment] = {}
        self._payment_by_stake: Dict[str, str] = {}
        self._index_lock = threading.Lock()
        self._stake_seq = itertools.count(1)
        self._payment_seq = itertools.count(1)

    # ========================================================================
    # IDS
    # ========================================================================

    def next_stake_id(self) -> str:
        with self._index_lock:
            return f"STK-{next(self._stake_seq):06d}"

    def next_payment_id(self) -> str:
        with self._index_lock:
            return f"PAY-{next(self._payment_seq):06d}"

    # ========================================================================
    # WRITES (called from TransactionRecorder commits)
    # ========================================================================

    def _put_stake(self, stake: Stake) -> None:
        with self._index_lock:
            if stake.id not in self._stakes:
                self._by_user.setdefault(stake.user_id, []).append(stake.id)
            self._stakes[stake.id] = stake

    def _put_payout(self, record: PayoutRecord) -> None:
        if record.key in self._payouts:
            raise ValueError(f"Payout record {record.key} already exists")
        self._payouts[record.key] = record

    def _put_payment(self, payment: Payment) -> None:
        with self._index_lock:
            self._payments[payment.id] = payment
            self._payment_by_stake[payment.stake_id] = payment.id

    # ========================================================================
    # STAKES
    # ========================================================================

    def find(self, stake_id: str) -> Optional[Stake]:
        return self._stakes.get(stake_id)

    def get(self, stake_id: str) -> Stake:
        """
        Raises:
            NotFound: If no stake has this id
        """
        stake = self._stakes.get(stake_id)
        if stake is None:
            raise NotFound(f"Stake {stake_id} not found")
        return stake

    def for_user(self, user_id: str, state: Optional[StakeState] = None) -> List[Stake]:
        """A user's stakes in creation order, optionally filtered by state."""
        ids = list(self._by_user.get(user_id, ()))
        stakes = [self._stakes[i] for i in ids]
        if state is not None:
            stakes = [s for s in stakes if s.state == state]
        return stakes

    def all_stakes(self) -> List[Stake]:
        return sorted(self._stakes.values(), key=lambda s: s.id)

    def users(self) -> List[str]:
        return sorted(self._by_user)

    def due(self, on: date) -> List[Stake]:
        """ACTIVE stakes with payouts left and next_payout_date <= on, by user then date."""
        due = [s for s in list(self._stakes.values()) if s.is_due(on)]
        return sorted(due, key=lambda s: (s.user_id, s.next_payout_date, s.id))

    def pending_payment(self) -> List[Stake]:
        pending = [s for s in list(self._stakes.values()) if s.state == StakeState.PENDING_PAYMENT]
        return sorted(pending, key=lambda s: (s.created_at, s.id))

    # ========================================================================
    # PAYOUT RECORDS
    # ========================================================================

    def payout_record(self, stake_id: str, due_date: date) -> Optional[PayoutRecord]:
        return self._payouts.get((stake_id, due_date))

    def payout_records(self, stake_id: str) -> List[PayoutRecord]:
        """All payout records of a stake in installment order."""
        records = [r for (sid, _), r in list(self._payouts.items()) if sid == stake_id]
        return sorted(records, key=lambda r: r.due_date)

    # ========================================================================
    # PAYMENTS
    # ========================================================================

    def get_payment(self, payment_id: str) -> Payment:
        """
        Raises:
            NotFound: If no payment has this id
        """
        payment = self._payments.get(payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        return payment

    def payment_for_stake(self, stake_id: str) -> Optional[Payment]:
        payment_id = self._payment_by_stake.get(stake_id)
        return self._payments.get(payment_id) if payment_id else None

    def payments(self, status: Optional[PaymentStatus] = None) -> List[Payment]:
        payments = sorted(self._payments.values(), key=lambda p: p.id)
        if status is not None:
            payments = [p for p in payments if p.status == status]
        return payments
