"""
payments.py - Gateway payments for PENDING_PAYMENT stakes

The payment gateway is an external collaborator: it reports success or
failure and the engine reacts. This module keeps the engine's side of that
conversation:
1. new_payment() - Build the INIT payment record for a gateway-funded stake
2. PaymentDesk.confirm() / confirm_order() - Success callback -> stake ACTIVE
3. PaymentDesk.fail() - Failure callback; the stake stays PENDING_PAYMENT
4. PaymentDesk.expire() - Auto-cancel stakes left unconfirmed past the expiry window

Callbacks can be re-delivered by the gateway; every operation here is safe
to repeat.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
import logging
from typing import TYPE_CHECKING, List, Optional

from .core import (
    Payment, PaymentStatus, Gateway, Stake, StakeState,
    NotFound, InvalidTransition, Busy,
)

if TYPE_CHECKING:
    from .lifecycle import StakeLifecycleManager

logger = logging.getLogger(__name__)

PAYMENT_EXPIRED_REASON = "payment_expired"


def new_payment(
    payment_id: str,
    stake: Stake,
    gateway: Gateway,
    created_at: datetime,
    gateway_order_id: Optional[str] = None,
) -> Payment:
    """Create the INIT payment that funds a gateway stake."""
    return Payment(
        id=payment_id,
        user_id=stake.user_id,
        stake_id=stake.id,
        gateway=gateway,
        gateway_order_id=gateway_order_id or f"order_{stake.id}",
        amount=stake.amount,
        status=PaymentStatus.INIT,
        created_at=created_at,
    )


class PaymentDesk:
    """
    Entry point for gateway callbacks and the expiry sweep.

    Example:
        receipt = manager.create_stake("alice", 5000, FundingMethod.GATEWAY)
        desk = PaymentDesk(manager)
        desk.confirm_order(receipt.payment.gateway_order_id)   # webhook
    """

    def __init__(self, manager: StakeLifecycleManager):
        self.manager = manager

    @property
    def book(self):
        return self.manager.book

    def confirm(self, stake_id: str) -> Stake:
        """Gateway success for a stake. See StakeLifecycleManager.confirm_payment."""
        return self.manager.confirm_payment(stake_id)

    def find_order(self, gateway_order_id: str) -> Payment:
        """
        Raises:
            NotFound: If no payment carries this gateway order id
        """
        for payment in self.book.payments():
            if payment.gateway_order_id == gateway_order_id:
                return payment
        raise NotFound(f"No payment for gateway order {gateway_order_id}")

    def confirm_order(self, gateway_order_id: str) -> Stake:
        return self.confirm(self.find_order(gateway_order_id).stake_id)

    def fail(self, stake_id: str) -> Payment:
        """
        Gateway failure for a stake.

        Marks the payment FAILED and releases its pending balance. The stake
        stays PENDING_PAYMENT so the user can retry until the expiry sweep
        cancels it.

        Raises:
            NotFound: If the stake or its payment does not exist
            InvalidTransition: If the payment already succeeded
        """
        stake = self.book.get(stake_id)
        with self.manager.recorder.atomic(stake.user_id) as unit:
            payment = self.book.payment_for_stake(stake_id)
            if payment is None:
                raise NotFound(f"Stake {stake_id} has no gateway payment")
            if payment.status == PaymentStatus.FAILED:
                return payment
            if payment.status == PaymentStatus.SUCCESS:
                raise InvalidTransition(f"Payment {payment.id} already succeeded")
            failed = replace(payment, status=PaymentStatus.FAILED, updated_at=self.manager.clock.now)
            unit.change_pending(-payment.amount)
            unit.put_payment(failed)
        logger.info("Payment %s for stake %s failed", payment.id, stake_id)
        return failed

    def expired(self, now: Optional[datetime] = None) -> List[Stake]:
        """PENDING_PAYMENT stakes created at least payment_expiry before now."""
        now = now or self.manager.clock.now
        cutoff = now - self.manager.config.payment_expiry
        return [s for s in self.book.pending_payment() if s.created_at <= cutoff]

    def expire(self, now: Optional[datetime] = None) -> List[Stake]:
        """
        Cancel every expired PENDING_PAYMENT stake.

        A stake confirmed or cancelled by a concurrent callback is skipped; a
        stake whose owner is busy is left for the next sweep.

        Returns:
            The stakes cancelled by this sweep.
        """
        cancelled = []
        for stake in self.expired(now):
            try:
                cancelled.append(self.manager.cancel_stake(
                    stake.id, PAYMENT_EXPIRED_REASON, only_from=StakeState.PENDING_PAYMENT,
                ))
            except InvalidTransition:
                logger.info("Stake %s left PENDING_PAYMENT before expiry", stake.id)
            except Busy:
                logger.warning("Stake %s owner busy; expiry deferred to next sweep", stake.id)
        if cancelled:
            logger.info("Expired %d unconfirmed stake(s)", len(cancelled))
        return cancelled
