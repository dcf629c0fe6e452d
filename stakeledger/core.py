"""
Core types and pure functions for the staking ledger engine.

This module provides the foundational data structures shared by every component:
1. Constants: money precision, default policy values
2. Enums: TransactionType, StakeState, FundingMethod, PaymentStatus, ...
3. Exceptions: StakeLedgerError and its domain-specific subclasses
4. Immutable records: PayoutRule, Stake, Wallet, Transaction, Payment, PayoutRecord
5. Configuration: EngineConfig and the LogicalClock

Records are frozen dataclasses. Mutation always produces a new record via
dataclasses.replace(); the owning store swaps the old record for the new one.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from enum import Enum
import threading
from typing import Any, Dict, FrozenSet, Mapping, Optional


# ============================================================================
# CONSTANTS
# ============================================================================

# Money is held as Decimal with two places and banker's rounding.
MONEY_PLACES = 2
MONEY_QUANTUM = Decimal(10) ** -MONEY_PLACES
MONEY_ROUNDING = ROUND_HALF_EVEN

ZERO = Decimal("0.00")

# Smallest principal accepted by create_stake.
DEFAULT_MINIMUM_STAKE = Decimal("500")

# Tenor applied when the resolved rule does not carry its own.
DEFAULT_DURATION_DAYS = 60

# Unconfirmed gateway payments older than this are auto-cancelled.
DEFAULT_PAYMENT_EXPIRY = timedelta(minutes=15)

DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_PAGE_SIZE = 20

ONE_DAY = timedelta(days=1)


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_money(value: Any) -> Decimal:
    """
    Convert a user-supplied amount to a quantized Decimal.

    Accepts Decimal, int, str and float (floats go through str() so that
    0.1 stays 0.1).

    Raises:
        InvalidAmount: If the value is not a finite number, or has more than
                       MONEY_PLACES significant decimals.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"amount must be numeric, got {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"amount must be numeric, got {value!r}") from None
    if not amount.is_finite():
        raise InvalidAmount(f"amount must be finite, got {value!r}")
    quantized = amount.quantize(MONEY_QUANTUM, rounding=MONEY_ROUNDING)
    if quantized != amount:
        raise InvalidAmount(
            f"amount has more than {MONEY_PLACES} decimal places, got {value!r}"
        )
    return quantized


# ============================================================================
# ENUMS
# ============================================================================

class TransactionType(Enum):
    """Kind of ledger entry. The type fixes the sign of the balance effect."""
    TOPUP = "TOPUP"
    PAYOUT = "PAYOUT"
    STAKE_CREATION = "STAKE_CREATION"
    ADJUSTMENT = "ADJUSTMENT"
    WITHDRAWAL = "WITHDRAWAL"


CREDIT_TYPES: FrozenSet[TransactionType] = frozenset({
    TransactionType.TOPUP, TransactionType.PAYOUT,
})
DEBIT_TYPES: FrozenSet[TransactionType] = frozenset({
    TransactionType.STAKE_CREATION, TransactionType.WITHDRAWAL,
})


class StakeState(Enum):
    """
    Lifecycle state of a stake.

    PENDING_PAYMENT: Created with gateway funding, waiting for confirmation.
    ACTIVE: Funded; the only state in which payouts are applied.
    COMPLETED: All payouts applied.
    CANCELLED: Cancelled by the user, an operator, or the payment expiry policy.
    """
    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (StakeState.COMPLETED, StakeState.CANCELLED)

    def can_transition_to(self, target: StakeState) -> bool:
        return target in _STAKE_TRANSITIONS[self]


_STAKE_TRANSITIONS: Dict[StakeState, FrozenSet[StakeState]] = {
    StakeState.PENDING_PAYMENT: frozenset({StakeState.ACTIVE, StakeState.CANCELLED}),
    StakeState.ACTIVE: frozenset({StakeState.COMPLETED, StakeState.CANCELLED}),
    StakeState.COMPLETED: frozenset(),
    StakeState.CANCELLED: frozenset(),
}


class FundingMethod(Enum):
    WALLET = "wallet"
    GATEWAY = "gateway"


class Gateway(Enum):
    RAZORPAY = "RAZORPAY"
    PAYTM = "PAYTM"


class PaymentStatus(Enum):
    INIT = "INIT"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CancellationPolicy(Enum):
    """
    Refund applied when an ACTIVE stake is cancelled.

    FORFEIT: Nothing is refunded.
    FULL_PRINCIPAL: The whole principal is refunded.
    PRO_RATED: principal * payouts_remaining / duration_days.
    UNRECOVERED_PRINCIPAL: principal minus payouts already received, floored at 0.
    """
    FORFEIT = "forfeit"
    FULL_PRINCIPAL = "full_principal"
    PRO_RATED = "pro_rated"
    UNRECOVERED_PRINCIPAL = "unrecovered_principal"


class PayoutResult(Enum):
    """
    Outcome of an apply_payout call.

    APPLIED: A payout was credited and the stake advanced.
    ALREADY_APPLIED: The installment due on for_date was already paid; nothing changed.
    NOT_DUE: The stake is not ACTIVE, has nothing remaining, or is not yet due.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    NOT_DUE = "not_due"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class StakeLedgerError(Exception):
    """Base exception for all staking ledger errors."""
    pass


class InvalidAmount(StakeLedgerError):
    """Raised when an amount is non-numeric, non-positive, or below the stake minimum."""
    pass


class NoMatchingRule(StakeLedgerError):
    """Raised when no active payout rule covers a stake amount."""
    pass


class InsufficientBalance(StakeLedgerError):
    """Raised when a debit would take a wallet balance below zero."""
    pass


class InvalidTransition(StakeLedgerError):
    """Raised when a command is not allowed from the stake's current state."""
    pass


class NotFound(StakeLedgerError):
    """Raised when a stake, payment, or wallet does not exist."""
    pass


class Busy(StakeLedgerError):
    """Raised when a user's lock could not be acquired in time. Retryable."""
    pass


class ConfigurationConflict(StakeLedgerError):
    """Overlapping active payout rules. Logged by the resolver, raised only in strict validation."""
    pass


class LedgerIntegrityError(StakeLedgerError):
    """Raised when a user's log disagrees with the wallet balance. The user is frozen."""
    pass


# ============================================================================
# SIGNED AMOUNTS
# ============================================================================

def signed_amount(tx_type: TransactionType, amount: Decimal) -> Decimal:
    """
    Return the balance effect of a transaction.

    Positive for TOPUP/PAYOUT, negative for STAKE_CREATION/WITHDRAWAL.
    ADJUSTMENT amounts already carry their sign.
    """
    if tx_type in CREDIT_TYPES:
        return amount
    if tx_type in DEBIT_TYPES:
        return -amount
    return amount


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PayoutRule:
    """
    A payout tier: stakes with amount in [min_amount, max_amount] earn daily_payout.

    Attributes:
        id: Rule identifier.
        min_amount: Inclusive lower bound of the tier.
        max_amount: Inclusive upper bound of the tier.
        daily_payout: Amount credited per payout day.
        is_active: Inactive rules are ignored by the resolver.
        duration_days: Optional tenor override; None means the configured default.
    """
    id: str
    min_amount: Decimal
    max_amount: Decimal
    daily_payout: Decimal
    is_active: bool = True
    duration_days: Optional[int] = None

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("PayoutRule id cannot be empty")
        for name in ("min_amount", "max_amount", "daily_payout"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_money(value))
        if self.min_amount > self.max_amount:
            raise ValueError(
                f"PayoutRule {self.id}: min_amount {self.min_amount} > max_amount {self.max_amount}"
            )
        if self.daily_payout <= 0:
            raise ValueError(f"PayoutRule {self.id}: daily_payout must be positive")
        if self.duration_days is not None and self.duration_days <= 0:
            raise ValueError(f"PayoutRule {self.id}: duration_days must be positive")

    def contains(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount

    def __repr__(self) -> str:
        return f"PayoutRule({self.id}: {self.min_amount}-{self.max_amount} -> {self.daily_payout}/day)"


@dataclass(frozen=True, slots=True)
class Stake:
    """
    A fixed principal earning a fixed daily payout for a fixed number of days.

    Invariant: payouts_completed + payouts_remaining == duration_days.

    start_date and next_payout_date are None while the stake waits for a
    gateway payment; they are set on activation.
    """
    id: str
    user_id: str
    amount: Decimal
    daily_payout: Decimal
    duration_days: int
    start_date: Optional[date]
    next_payout_date: Optional[date]
    payouts_completed: int
    payouts_remaining: int
    state: StakeState
    created_at: datetime
    funding_method: FundingMethod = FundingMethod.WALLET
    rule_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Stake {self.id}: amount must be positive")
        if self.daily_payout <= 0:
            raise ValueError(f"Stake {self.id}: daily_payout must be positive")
        if self.duration_days <= 0:
            raise ValueError(f"Stake {self.id}: duration_days must be positive")
        if self.payouts_completed < 0 or self.payouts_remaining < 0:
            raise ValueError(f"Stake {self.id}: payout counters cannot be negative")
        if self.payouts_completed + self.payouts_remaining != self.duration_days:
            raise ValueError(
                f"Stake {self.id}: payouts_completed ({self.payouts_completed}) + "
                f"payouts_remaining ({self.payouts_remaining}) != duration_days ({self.duration_days})"
            )
        if self.state == StakeState.ACTIVE and self.next_payout_date is None:
            raise ValueError(f"Stake {self.id}: ACTIVE stake needs a next_payout_date")

    @property
    def total_paid(self) -> Decimal:
        return self.daily_payout * self.payouts_completed

    @property
    def remaining_payout(self) -> Decimal:
        return self.daily_payout * self.payouts_remaining

    def is_due(self, on: date) -> bool:
        """True if the stake is ACTIVE, has payouts left, and next_payout_date <= on."""
        return (
            self.state == StakeState.ACTIVE
            and self.payouts_remaining > 0
            and self.next_payout_date is not None
            and self.next_payout_date <= on
        )

    def __repr__(self) -> str:
        return (
            f"Stake({self.id} {self.user_id} {self.amount} @ {self.daily_payout}/day "
            f"{self.payouts_completed}/{self.duration_days} {self.state.value})"
        )


@dataclass(frozen=True, slots=True)
class Wallet:
    """
    Per-user wallet.

    balance is the only field the ledger invariant covers. pending_balance is
    money committed to gateway payments that have not confirmed yet.
    """
    user_id: str
    balance: Decimal = ZERO
    pending_balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    created_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable ledger entry.

    amount is a magnitude for TOPUP/PAYOUT/STAKE_CREATION/WITHDRAWAL and a
    signed value for ADJUSTMENT. sequence is monotonic per user, starting at 1.
    """
    id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    created_at: datetime
    sequence: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type != TransactionType.ADJUSTMENT and self.amount < 0:
            raise ValueError(f"{self.type.value} amount must be non-negative, got {self.amount}")
        if self.sequence < 1:
            raise ValueError("Transaction sequence starts at 1")

    @property
    def signed_amount(self) -> Decimal:
        return signed_amount(self.type, self.amount)

    def __repr__(self) -> str:
        return (
            f"Transaction(#{self.sequence} {self.user_id} {self.type.value} "
            f"{self.signed_amount:+} -> {self.balance_after})"
        )


@dataclass(frozen=True, slots=True)
class Payment:
    """An external gateway payment funding a PENDING_PAYMENT stake."""
    id: str
    user_id: str
    stake_id: str
    gateway: Gateway
    gateway_order_id: str
    amount: Decimal
    status: PaymentStatus
    created_at: datetime
    updated_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class PayoutRecord:
    """
    Idempotency record for one settled installment.

    Keyed by (stake_id, due_date), the installment that was paid. for_date is
    the business date the payout was applied for; it is later than due_date
    when a missed installment was caught up.
    """
    stake_id: str
    for_date: date
    due_date: date
    transaction: Transaction

    @property
    def key(self):
        return (self.stake_id, self.due_date)


@dataclass(frozen=True, slots=True)
class PayoutOutcome:
    """Result of StakeLifecycleManager.apply_payout()."""
    result: PayoutResult
    stake: Stake
    transaction: Optional[Transaction] = None

    @property
    def applied(self) -> bool:
        return self.result == PayoutResult.APPLIED


@dataclass(frozen=True, slots=True)
class StakeReceipt:
    """Returned by create_stake. payment is set for gateway-funded stakes."""
    stake_id: str
    state: StakeState
    stake: Stake
    transaction: Optional[Transaction] = None
    payment: Optional[Payment] = None


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Policy parameters of the engine.

    Attributes:
        minimum_stake: Smallest principal accepted by create_stake.
        default_duration_days: Tenor for rules without their own duration_days.
        cancellation_policy: Refund policy for cancelling an ACTIVE stake.
        lock_timeout: Seconds to wait for a user's lock before raising Busy.
        payment_expiry: Age after which an unconfirmed gateway payment is cancelled.
        payout_cutoff: Time of day from which the scheduler pays for the current date.
        scheduler_workers: Threads used to process user partitions.
        scheduler_busy_retries: Attempts per stake when a lock is contended.
        page_size: Default page size for list_transactions.
        default_gateway: Gateway recorded for gateway-funded stakes.
    """
    minimum_stake: Decimal = DEFAULT_MINIMUM_STAKE
    default_duration_days: int = DEFAULT_DURATION_DAYS
    cancellation_policy: CancellationPolicy = CancellationPolicy.PRO_RATED
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    payment_expiry: timedelta = DEFAULT_PAYMENT_EXPIRY
    payout_cutoff: time = time(0, 0)
    scheduler_workers: int = 4
    scheduler_busy_retries: int = 3
    page_size: int = DEFAULT_PAGE_SIZE
    default_gateway: Gateway = Gateway.RAZORPAY

    def __post_init__(self):
        if self.default_duration_days <= 0:
            raise ValueError("default_duration_days must be positive")
        if self.lock_timeout <= 0:
            raise ValueError("lock_timeout must be positive")
        if self.scheduler_workers < 1:
            raise ValueError("scheduler_workers must be at least 1")
        if self.scheduler_busy_retries < 1:
            raise ValueError("scheduler_busy_retries must be at least 1")
        if self.page_size < 1:
            raise ValueError("page_size must be at least 1")
        if not isinstance(self.minimum_stake, Decimal):
            object.__setattr__(self, 'minimum_stake', to_money(self.minimum_stake))


# ============================================================================
# CLOCK
# ============================================================================

class LogicalClock:
    """
    Shared logical time for all engine components.

    Time can only move forward. Tests and simulations drive it with advance();
    a live deployment advances it from wall-clock time before each command.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._now = initial_time or datetime(1970, 1, 1)
        self._lock = threading.Lock()

    @property
    def now(self) -> datetime:
        return self._now

    @property
    def today(self) -> date:
        return self._now.date()

    def advance(self, new_time: datetime) -> None:
        """
        Move the clock to new_time.

        Raises:
            ValueError: If new_time is before the current time.
        """
        with self._lock:
            if new_time < self._now:
                raise ValueError(f"Cannot move time backwards: {new_time} < {self._now}")
            self._now = new_time
