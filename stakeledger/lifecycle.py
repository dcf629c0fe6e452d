"""
lifecycle.py - Stake state machine

StakeLifecycleManager owns every state transition of a stake:

    PENDING_PAYMENT --confirm_payment--> ACTIVE --apply_payout (last)--> COMPLETED
          |                                 |
          +-------cancel_stake--------------+--cancel_stake--> CANCELLED

Each command re-reads the stake under the owner's lock (through
TransactionRecorder.atomic) and stages its ledger entries and record writes
on one AtomicUnit, so the wallet and the stake never diverge.

apply_payout is idempotent on (stake_id, for_date): once the installment due
on for_date is paid, further calls for that date return the recorded result
and change nothing.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import date
from decimal import Decimal
import logging
from typing import Optional, Union

from .core import (
    Stake, StakeState, FundingMethod, Gateway, TransactionType, CancellationPolicy,
    PaymentStatus, PayoutResult, PayoutOutcome, StakeReceipt, EngineConfig, LogicalClock,
    ZERO, ONE_DAY, MONEY_QUANTUM, MONEY_ROUNDING,
    InvalidAmount, NoMatchingRule, InvalidTransition,
    to_money,
)
from .payments import new_payment
from .recorder import TransactionRecorder, AtomicUnit
from .rules import PayoutRuleResolver

logger = logging.getLogger(__name__)


def compute_refund(stake: Stake, policy: CancellationPolicy) -> Decimal:
    """
    Refund owed when an ACTIVE stake is cancelled.

    Args:
        stake: The stake being cancelled
        policy: Refund policy from the engine configuration

    Returns:
        Non-negative refund, quantized to money precision.
    """
    if policy == CancellationPolicy.FORFEIT:
        refund = ZERO
    elif policy == CancellationPolicy.FULL_PRINCIPAL:
        refund = stake.amount
    elif policy == CancellationPolicy.PRO_RATED:
        refund = stake.amount * stake.payouts_remaining / stake.duration_days
    elif policy == CancellationPolicy.UNRECOVERED_PRINCIPAL:
        refund = max(stake.amount - stake.total_paid, ZERO)
    else:
        raise ValueError(f"Unknown cancellation policy: {policy!r}")
    return refund.quantize(MONEY_QUANTUM, rounding=MONEY_ROUNDING)


def _coerce_funding(funding_method: Union[FundingMethod, str]) -> FundingMethod:
    if isinstance(funding_method, FundingMethod):
        return funding_method
    try:
        return FundingMethod(str(funding_method).lower())
    except ValueError:
        raise ValueError(f"Unknown funding method: {funding_method!r}") from None


class StakeLifecycleManager:
    """
    Creates stakes and drives them through their states.

    Attributes:
        recorder: Atomic commit boundary (wallets + stake book)
        resolver: Payout rule resolver; replaced wholesale on rule changes
        clock: Shared logical clock
        config: Engine policy
    """

    def __init__(
        self,
        recorder: TransactionRecorder,
        resolver: PayoutRuleResolver,
        clock: LogicalClock,
        config: Optional[EngineConfig] = None,
    ):
        self.recorder = recorder
        self.resolver = resolver
        self.clock = clock
        self.config = config or EngineConfig()

    @property
    def book(self):
        return self.recorder.book

    @property
    def wallets(self):
        return self.recorder.wallets

    # ========================================================================
    # CREATION
    # ========================================================================

    def create_stake(
        self,
        user_id: str,
        amount,
        funding_method: Union[FundingMethod, str] = FundingMethod.WALLET,
        gateway: Optional[Gateway] = None,
    ) -> StakeReceipt:
        """
        Price and create a stake.

        Wallet funding debits the principal and activates the stake in one
        atomic unit. Gateway funding creates a PENDING_PAYMENT stake and an
        INIT payment, and moves the principal into pending_balance.

        Args:
            user_id: Owner of the stake
            amount: Principal
            funding_method: FundingMethod.WALLET or FundingMethod.GATEWAY (or "wallet"/"gateway")
            gateway: Gateway for gateway funding (defaults to config.default_gateway)

        Returns:
            StakeReceipt with the stake, and the debit transaction or the payment.

        Raises:
            InvalidAmount: If amount is not positive or below the minimum stake
            NoMatchingRule: If no active payout rule covers amount
            InsufficientBalance: If wallet funding exceeds the balance
        """
        funding = _coerce_funding(funding_method)
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Stake amount must be positive, got {amount}")
        if amount < self.config.minimum_stake:
            raise InvalidAmount(
                f"Stake amount {amount} is below the minimum of {self.config.minimum_stake}"
            )
        rule = self.resolver.resolve(amount)
        if rule is None:
            raise NoMatchingRule(f"No active payout rule covers {amount}")
        duration = self.resolver.duration_for(rule)

        now = self.clock.now
        base = dict(
            user_id=user_id,
            amount=amount,
            daily_payout=rule.daily_payout,
            duration_days=duration,
            payouts_completed=0,
            payouts_remaining=duration,
            created_at=now,
            funding_method=funding,
            rule_id=rule.id,
        )

        # Ids are allocated inside the unit once the debit is known to fit,
        # so a rejected stake leaves no gap in the sequence.
        if funding == FundingMethod.WALLET:
            with self.recorder.atomic(user_id) as unit:
                index = unit.debit(TransactionType.STAKE_CREATION, amount, {
                    'rule_id': rule.id,
                    'daily_payout': str(rule.daily_payout),
                    'duration_days': duration,
                })
                stake_id = self.book.next_stake_id()
                unit.annotate(index, stake_id=stake_id)
                stake = Stake(
                    id=stake_id,
                    start_date=now.date(),
                    next_payout_date=now.date() + ONE_DAY,
                    state=StakeState.ACTIVE,
                    **base,
                )
                unit.put_stake(stake)
            logger.info("Created stake %s for %s: %s from wallet", stake_id, user_id, amount)
            return StakeReceipt(stake.id, stake.state, stake, transaction=unit.transactions[index])

        with self.recorder.atomic(user_id) as unit:
            stake_id = self.book.next_stake_id()
            stake = Stake(
                id=stake_id,
                start_date=None,
                next_payout_date=None,
                state=StakeState.PENDING_PAYMENT,
                **base,
            )
            payment = new_payment(
                self.book.next_payment_id(), stake, gateway or self.config.default_gateway, now
            )
            unit.put_stake(stake)
            unit.put_payment(payment)
            unit.change_pending(amount)
        logger.info(
            "Created stake %s for %s: %s awaiting %s payment %s",
            stake_id, user_id, amount, payment.gateway.value, payment.id,
        )
        return StakeReceipt(stake.id, stake.state, stake, payment=payment)

    # ========================================================================
    # PAYMENT CONFIRMATION
    # ========================================================================

    def _settle_payment(self, unit: AtomicUnit, stake_id: str, status: PaymentStatus) -> None:
        payment = self.book.payment_for_stake(stake_id)
        if payment is None or payment.status == status:
            return
        if payment.status == PaymentStatus.INIT:
            unit.change_pending(-payment.amount)
        unit.put_payment(replace(payment, status=status, updated_at=self.clock.now))

    def confirm_payment(self, stake_id: str) -> Stake:
        """
        Activate a PENDING_PAYMENT stake after the gateway confirms.

        Idempotent: confirming an ACTIVE stake returns it unchanged.

        Raises:
            NotFound: If the stake does not exist
            InvalidTransition: If the stake is COMPLETED or CANCELLED
        """
        user_id = self.book.get(stake_id).user_id
        with self.recorder.atomic(user_id) as unit:
            current = self.book.get(stake_id)
            if current.state == StakeState.ACTIVE:
                return current
            if not current.state.can_transition_to(StakeState.ACTIVE):
                raise InvalidTransition(
                    f"Cannot confirm payment for stake {stake_id} in state {current.state.value}"
                )
            today = self.clock.today
            activated = replace(
                current,
                state=StakeState.ACTIVE,
                start_date=today,
                next_payout_date=today + ONE_DAY,
            )
            unit.put_stake(activated, old=current)
            self._settle_payment(unit, stake_id, PaymentStatus.SUCCESS)
        return activated

    # ========================================================================
    # CANCELLATION
    # ========================================================================

    def cancel_stake(
        self,
        stake_id: str,
        reason: str = "",
        only_from: Optional[StakeState] = None,
    ) -> Stake:
        """
        Cancel a PENDING_PAYMENT or ACTIVE stake. Irreversible.

        Cancelling an ACTIVE stake records an ADJUSTMENT carrying the refund
        computed by config.cancellation_policy (possibly zero). Cancelling a
        PENDING_PAYMENT stake marks its payment FAILED and releases the
        pending balance; there is no ledger entry.

        only_from restricts the cancellation to one source state; sweeps use it
        so that a stake confirmed in the meantime is left alone.

        Raises:
            NotFound: If the stake does not exist
            InvalidTransition: If the stake is COMPLETED or CANCELLED
        """
        user_id = self.book.get(stake_id).user_id
        with self.recorder.atomic(user_id) as unit:
            current = self.book.get(stake_id)
            if only_from is not None and current.state != only_from:
                raise InvalidTransition(
                    f"Stake {stake_id} is {current.state.value}, not {only_from.value}"
                )
            if not current.state.can_transition_to(StakeState.CANCELLED):
                raise InvalidTransition(
                    f"Cannot cancel stake {stake_id} in state {current.state.value}"
                )
            if current.state == StakeState.ACTIVE:
                policy = self.config.cancellation_policy
                refund = compute_refund(current, policy)
                unit.adjust(refund, {
                    'stake_id': stake_id,
                    'reason': reason or 'cancelled',
                    'policy': policy.value,
                    'payouts_remaining': current.payouts_remaining,
                })
            else:
                self._settle_payment(unit, stake_id, PaymentStatus.FAILED)
            cancelled = replace(
                current,
                state=StakeState.CANCELLED,
                cancel_reason=reason or None,
                closed_at=self.clock.now,
            )
            unit.put_stake(cancelled, old=current)
        return cancelled

    # ========================================================================
    # PAYOUTS
    # ========================================================================

    def apply_payout(self, stake_id: str, for_date: date) -> PayoutOutcome:
        """
        Apply one daily payout for a stake.

        The payout settles the oldest outstanding installment, the one due on
        next_payout_date. In one atomic unit: credit daily_payout (PAYOUT),
        bump the counters, move next_payout_date forward one day, store the
        record keyed by the settled installment, and complete the stake when
        nothing remains. A stake that is behind needs one call per missed
        installment before the installment due on for_date is reached.

        Args:
            stake_id: Stake to pay
            for_date: Business date the payout is applied for

        Returns:
            PayoutOutcome with result APPLIED, ALREADY_APPLIED (the installment
            due on for_date is paid; its transaction is returned), or NOT_DUE
            (nothing changed).

        Raises:
            NotFound: If the stake does not exist
        """
        stake = self.book.get(stake_id)
        existing = self.book.payout_record(stake_id, for_date)
        if existing is not None:
            return PayoutOutcome(PayoutResult.ALREADY_APPLIED, stake, existing.transaction)

        with self.recorder.atomic(stake.user_id) as unit:
            existing = self.book.payout_record(stake_id, for_date)
            current = self.book.get(stake_id)
            if existing is not None:
                return PayoutOutcome(PayoutResult.ALREADY_APPLIED, current, existing.transaction)
            if not current.is_due(for_date):
                return PayoutOutcome(PayoutResult.NOT_DUE, current)

            due_date = current.next_payout_date
            installment = current.payouts_completed + 1
            index = unit.credit(TransactionType.PAYOUT, current.daily_payout, {
                'stake_id': stake_id,
                'for_date': for_date.isoformat(),
                'due_date': due_date.isoformat(),
                'installment': installment,
            })
            remaining = current.payouts_remaining - 1
            advanced = replace(
                current,
                payouts_completed=installment,
                payouts_remaining=remaining,
                next_payout_date=due_date + ONE_DAY,
            )
            if remaining == 0:
                advanced = replace(advanced, state=StakeState.COMPLETED, closed_at=self.clock.now)
            unit.put_stake(advanced, old=current)
            unit.record_payout(stake_id, for_date, due_date, index)

        return PayoutOutcome(PayoutResult.APPLIED, advanced, unit.transactions[index])
