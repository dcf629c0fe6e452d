"""
test_payments.py - Unit tests for PaymentDesk

Tests:
- confirm / confirm_order: activation through the gateway order id
- fail: payment FAILED, pending released, stake still PENDING_PAYMENT
- expire: unconfirmed stakes cancelled after the expiry window
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from stakeledger import (
    FundingMethod, PaymentStatus, StakeState, TransactionType,
    NotFound, InvalidTransition, PAYMENT_EXPIRED_REASON,
)


START = datetime(2025, 1, 1, 9, 0)


@pytest.fixture
def pending(manager):
    """A gateway-funded stake of 5000 for carol."""
    return manager.create_stake("carol", 5000, FundingMethod.GATEWAY)


class TestConfirm:
    """Gateway success callbacks."""

    def test_confirm_order(self, desk, pending):
        stake = desk.confirm_order(pending.payment.gateway_order_id)
        assert stake.id == pending.stake_id
        assert stake.state == StakeState.ACTIVE

    def test_unknown_order(self, desk):
        with pytest.raises(NotFound):
            desk.find_order("order_nope")

    def test_redelivered_confirm(self, desk, pending, wallets):
        desk.confirm(pending.stake_id)
        desk.confirm(pending.stake_id)
        assert wallets.get_wallet("carol").pending_balance == Decimal("0")


class TestFail:
    """Gateway failure callbacks."""

    def test_fail_releases_pending(self, desk, pending, wallets, book):
        payment = desk.fail(pending.stake_id)
        assert payment.status == PaymentStatus.FAILED
        assert wallets.get_wallet("carol").pending_balance == Decimal("0")
        assert book.get(pending.stake_id).state == StakeState.PENDING_PAYMENT

    def test_fail_twice_is_noop(self, desk, pending, wallets):
        desk.fail(pending.stake_id)
        again = desk.fail(pending.stake_id)
        assert again.status == PaymentStatus.FAILED
        assert wallets.get_wallet("carol").pending_balance == Decimal("0")

    def test_fail_after_success_rejected(self, desk, pending):
        desk.confirm(pending.stake_id)
        with pytest.raises(InvalidTransition):
            desk.fail(pending.stake_id)

    def test_fail_wallet_stake(self, desk, funded_manager):
        stake_id = funded_manager.create_stake("alice", 1000).stake_id
        with pytest.raises(NotFound):
            desk.fail(stake_id)

    def test_confirm_after_fail_still_activates(self, desk, pending, wallets):
        desk.fail(pending.stake_id)
        stake = desk.confirm(pending.stake_id)
        assert stake.state == StakeState.ACTIVE
        assert wallets.get_wallet("carol").pending_balance == Decimal("0")


class TestExpire:
    """Expiry sweep for unconfirmed gateway stakes."""

    def test_not_expired_before_window(self, desk, pending, clock):
        clock.advance(START + timedelta(minutes=14))
        assert desk.expire() == []
        assert desk.book.get(pending.stake_id).state == StakeState.PENDING_PAYMENT

    def test_expired_after_window(self, desk, pending, clock, wallets):
        clock.advance(START + timedelta(minutes=15))
        cancelled = desk.expire()

        assert [s.id for s in cancelled] == [pending.stake_id]
        stake = desk.book.get(pending.stake_id)
        assert stake.state == StakeState.CANCELLED
        assert stake.cancel_reason == PAYMENT_EXPIRED_REASON
        assert desk.book.payment_for_stake(stake.id).status == PaymentStatus.FAILED
        assert wallets.get_wallet("carol").pending_balance == Decimal("0")
        assert wallets.transactions("carol") == []

    def test_confirmed_stake_not_expired(self, desk, pending, clock):
        desk.confirm(pending.stake_id)
        clock.advance(START + timedelta(hours=1))
        assert desk.expire() == []
        assert desk.book.get(pending.stake_id).state == StakeState.ACTIVE

    def test_sweep_is_repeatable(self, desk, pending, clock):
        clock.advance(START + timedelta(hours=1))
        assert len(desk.expire()) == 1
        assert desk.expire() == []

    def test_explicit_now(self, desk, pending):
        assert desk.expired(START + timedelta(minutes=30))[0].id == pending.stake_id
        assert desk.expired(START) == []
