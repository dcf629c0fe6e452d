"""
engine.py - StakingEngine, the command and query surface of the package

StakingEngine wires the components together around one LogicalClock:

    WalletLedger + StakeBook -> TransactionRecorder -> StakeLifecycleManager
    PayoutRuleResolver -> StakeLifecycleManager -> PaymentDesk, PayoutScheduler

Commands (create_stake, cancel_stake, top_up, withdraw, payments, payouts)
raise StakeLedgerError subclasses to the caller. Queries never mutate.

Example:
    engine = StakingEngine(initial_time=datetime(2025, 1, 1, 9, 0))
    engine.top_up("alice", 25000)
    receipt = engine.create_stake("alice", 10000)
    engine.advance_time(datetime(2025, 1, 2, 9, 0))
    engine.run_payouts()
    engine.get_wallet("alice").balance   # Decimal('15600.00')
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Union

from .core import (
    Stake, StakeState, Wallet, Transaction, TransactionType, Payment, PayoutRule,
    FundingMethod, Gateway, StakeReceipt, EngineConfig, LogicalClock, ZERO,
    InvalidAmount, NoMatchingRule,
    to_money,
)
from .lifecycle import StakeLifecycleManager
from .payments import PaymentDesk
from .recorder import TransactionRecorder
from .rules import (
    PayoutRuleResolver, StakeProjection,
    default_payout_rules, project_stake, validate_rule_set,
)
from .scheduler import PayoutScheduler, SchedulerRunSummary
from .stakes import StakeBook
from .wallet import WalletLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DashboardStats:
    """
    Per-user portfolio summary.

    Attributes:
        total_stakes: Stakes ever created by the user
        active_stakes: Stakes currently ACTIVE
        completed_stakes: Stakes that paid out in full
        total_invested: Principal of stakes that were funded
        total_earned: Sum of PAYOUT credits
        pending_payouts: Payouts still owed on ACTIVE stakes
    """
    total_stakes: int
    active_stakes: int
    completed_stakes: int
    total_invested: Decimal
    total_earned: Decimal
    pending_payouts: Decimal


def _positive(amount) -> Decimal:
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


class StakingEngine:
    """
    In-memory staking ledger engine.

    Attributes:
        clock: Shared logical clock
        config: Engine policy
        wallets: Per-user balances and transaction logs
        book: Stakes, payout records and payments
        recorder: Atomic commit boundary
        manager: Stake state machine
        payments: Gateway callback handling and expiry
        scheduler: Daily payout runs
    """

    def __init__(
        self,
        rules: Optional[Iterable[PayoutRule]] = None,
        config: Optional[EngineConfig] = None,
        initial_time: Optional[datetime] = None,
        test_mode: bool = False,
    ):
        """
        Create an engine.

        Args:
            rules: Payout rules (defaults to default_payout_rules())
            config: Engine policy (defaults to EngineConfig())
            initial_time: Starting logical time (defaults to 1970-01-01)
            test_mode: Enable WalletLedger.set_balance() for integrity tests
        """
        self.config = config or EngineConfig()
        self.clock = LogicalClock(initial_time)
        self.wallets = WalletLedger(
            self.clock,
            lock_timeout=self.config.lock_timeout,
            page_size=self.config.page_size,
            test_mode=test_mode,
        )
        self.book = StakeBook()
        self.recorder = TransactionRecorder(self.wallets, self.book)
        resolver = PayoutRuleResolver(
            default_payout_rules() if rules is None else rules,
            default_duration_days=self.config.default_duration_days,
        )
        self.manager = StakeLifecycleManager(self.recorder, resolver, self.clock, self.config)
        self.payments = PaymentDesk(self.manager)
        self.scheduler = PayoutScheduler(self.manager)
        # Held by payout runs and rule changes so rules never change mid-run.
        self._rules_lock = threading.Lock()

    # ========================================================================
    # TIME
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self.clock.now

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the logical clock forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        self.clock.advance(new_time)

    # ========================================================================
    # RULES
    # ========================================================================

    @property
    def payout_rules(self) -> List[PayoutRule]:
        return list(self.manager.resolver.rules)

    def set_payout_rules(self, rules: Iterable[PayoutRule], strict: bool = False) -> None:
        """
        Replace the payout rule set. Existing stakes keep the terms they were created with.

        Args:
            rules: New rule set
            strict: Raise ConfigurationConflict instead of logging overlaps

        Raises:
            ConfigurationConflict: If strict and two active rules overlap
        """
        rules = list(rules)
        validate_rule_set(rules, strict=strict)
        resolver = PayoutRuleResolver(rules, default_duration_days=self.config.default_duration_days)
        with self._rules_lock:
            self.manager.resolver = resolver
        logger.info("Payout rules replaced: %d active rule(s)", len(resolver.rules))

    def quote(self, amount) -> StakeProjection:
        """
        Price a prospective stake without creating it.

        Raises:
            InvalidAmount: If amount is below the minimum stake
            NoMatchingRule: If no active rule covers amount
        """
        amount = to_money(amount)
        if amount < self.config.minimum_stake:
            raise InvalidAmount(
                f"Stake amount {amount} is below the minimum of {self.config.minimum_stake}"
            )
        resolver = self.manager.resolver
        rule = resolver.resolve(amount)
        if rule is None:
            raise NoMatchingRule(f"No active payout rule covers {amount}")
        return project_stake(amount, rule, resolver.duration_for(rule))

    # ========================================================================
    # WALLET COMMANDS
    # ========================================================================

    def top_up(self, user_id: str, amount, metadata: Optional[Dict[str, Any]] = None) -> Transaction:
        """
        Credit a wallet (TOPUP).

        Raises:
            InvalidAmount: If amount is not positive
        """
        amount = _positive(amount)
        tx = self.recorder.record_entry(user_id, TransactionType.TOPUP, amount, metadata)
        logger.info("Top-up of %s for %s", amount, user_id)
        return tx

    def withdraw(self, user_id: str, amount, metadata: Optional[Dict[str, Any]] = None) -> Transaction:
        """
        Debit a wallet (WITHDRAWAL).

        Raises:
            InvalidAmount: If amount is not positive
            InsufficientBalance: If amount exceeds the balance
        """
        amount = _positive(amount)
        tx = self.recorder.record_entry(user_id, TransactionType.WITHDRAWAL, -amount, metadata)
        logger.info("Withdrawal of %s for %s", amount, user_id)
        return tx

    # ========================================================================
    # STAKE COMMANDS
    # ========================================================================

    def create_stake(
        self,
        user_id: str,
        amount,
        funding_method: Union[FundingMethod, str] = FundingMethod.WALLET,
        gateway: Optional[Gateway] = None,
    ) -> StakeReceipt:
        """See StakeLifecycleManager.create_stake."""
        return self.manager.create_stake(user_id, amount, funding_method, gateway)

    def cancel_stake(self, stake_id: str, reason: str = "") -> StakeState:
        """
        Cancel a PENDING_PAYMENT or ACTIVE stake.

        Returns:
            The new state (always CANCELLED)

        Raises:
            NotFound: If the stake does not exist
            InvalidTransition: If the stake is COMPLETED or CANCELLED
        """
        return self.manager.cancel_stake(stake_id, reason).state

    def confirm_payment(self, stake_id: str) -> Stake:
        return self.payments.confirm(stake_id)

    def fail_payment(self, stake_id: str) -> Payment:
        return self.payments.fail(stake_id)

    def expire_pending_payments(self) -> List[Stake]:
        """Cancel gateway stakes left unconfirmed for longer than config.payment_expiry."""
        return self.payments.expire()

    def run_payouts(self, today: Optional[date] = None) -> SchedulerRunSummary:
        """Apply every payout due on or before today (business date by default)."""
        with self._rules_lock:
            return self.scheduler.run(today)

    def run_until(self, end_date: date) -> List[SchedulerRunSummary]:
        with self._rules_lock:
            return self.scheduler.run_until(end_date)

    # ========================================================================
    # INTEGRITY
    # ========================================================================

    def verify_ledger(self, user_id: str) -> Dict[str, Any]:
        return self.wallets.verify_ledger(user_id)

    def reconcile(self, user_id: str) -> Wallet:
        return self.wallets.reconcile(user_id)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_wallet(self, user_id: str) -> Wallet:
        """The user's wallet; an empty one if the user has no activity yet."""
        if not self.wallets.has_wallet(user_id):
            return Wallet(user_id=user_id)
        return self.wallets.get_wallet(user_id)

    def get_stake(self, stake_id: str) -> Stake:
        return self.book.get(stake_id)

    def list_stakes(self, user_id: str, state_filter: Optional[StakeState] = None) -> List[Stake]:
        return self.book.for_user(user_id, state_filter)

    def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> List[Transaction]:
        return self.wallets.list_transactions(user_id, page, page_size)

    def dashboard_stats(self, user_id: str) -> DashboardStats:
        stakes = self.book.for_user(user_id)
        funded = [
            s for s in stakes
            if s.state in (StakeState.ACTIVE, StakeState.COMPLETED)
            or (s.state == StakeState.CANCELLED and s.start_date is not None)
        ]
        active = [s for s in stakes if s.state == StakeState.ACTIVE]
        return DashboardStats(
            total_stakes=len(stakes),
            active_stakes=len(active),
            completed_stakes=sum(1 for s in stakes if s.state == StakeState.COMPLETED),
            total_invested=sum((s.amount for s in funded), ZERO),
            total_earned=self.get_wallet(user_id).total_earned,
            pending_payouts=sum((s.remaining_payout for s in active), ZERO),
        )
