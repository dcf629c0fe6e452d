"""
Ledger Invariant Conformance Tests

INVARIANT: Every user's log is a running-balance chain ending at the wallet.

    ∀ user u, ∀ i ≥ 1:
        log[i].balance_after = log[i-1].balance_after + signed(log[i])
        wallet(u).balance   = log[last].balance_after
        wallet(u).balance   ≥ 0

Whatever sequence of commands is issued, accepted or rejected, the chain
holds and no debit ever takes a balance below zero.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import datetime, timedelta
from decimal import Decimal

from stakeledger import (
    StakingEngine, StakeLedgerError, TransactionType, ZERO, signed_amount,
)


START = datetime(2025, 1, 1, 9, 0)

amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("20000"),
    places=2, allow_nan=False, allow_infinity=False,
)

commands = st.one_of(
    st.tuples(st.just("top_up"), amounts),
    st.tuples(st.just("withdraw"), amounts),
    st.tuples(st.just("stake"), st.decimals(
        min_value=Decimal("100"), max_value=Decimal("120000"),
        places=2, allow_nan=False, allow_infinity=False,
    )),
    st.tuples(st.just("cancel"), st.integers(min_value=1, max_value=5)),
    st.tuples(st.just("day"), st.integers(min_value=1, max_value=5)),
)


def _assert_chain(engine: StakingEngine, user_id: str) -> None:
    running = ZERO
    for tx in engine.wallets.transactions(user_id):
        running += signed_amount(tx.type, tx.amount)
        assert tx.balance_after == running
        assert tx.balance_after >= 0
    assert engine.get_wallet(user_id).balance == running


class TestLedgerInvariant:
    """Property-based ledger invariant tests."""

    @given(st.lists(commands, min_size=1, max_size=30))
    @settings(max_examples=50, deadline=None)
    def test_chain_holds_for_any_command_sequence(self, script):
        """
        PROPERTY: After any mix of commands the chain is intact.
        """
        engine = StakingEngine(initial_time=START)
        elapsed = 0
        for op, arg in script:
            try:
                if op == "top_up":
                    engine.top_up("alice", arg)
                elif op == "withdraw":
                    engine.withdraw("alice", arg)
                elif op == "stake":
                    engine.create_stake("alice", arg)
                elif op == "cancel":
                    engine.cancel_stake(f"STK-{arg:06d}")
                else:
                    elapsed += arg
                    engine.advance_time(START + timedelta(days=elapsed))
                    engine.run_payouts()
            except StakeLedgerError:
                pass
            if engine.wallets.has_wallet("alice"):
                _assert_chain(engine, "alice")

        report = engine.verify_ledger("alice")
        assert report['valid'], report['discrepancies']

    @given(st.lists(amounts, min_size=1, max_size=20), st.lists(amounts, min_size=1, max_size=20))
    @settings(max_examples=50, deadline=None)
    def test_rejected_debits_leave_no_trace(self, credits, debits):
        """
        PROPERTY: A rejected withdrawal changes neither the balance nor the log.
        """
        engine = StakingEngine(initial_time=START)
        for amount in credits:
            engine.top_up("alice", amount)
        for amount in debits:
            before = engine.get_wallet("alice").balance
            count = len(engine.wallets.transactions("alice"))
            try:
                engine.withdraw("alice", amount)
            except StakeLedgerError:
                assert engine.get_wallet("alice").balance == before
                assert len(engine.wallets.transactions("alice")) == count
        _assert_chain(engine, "alice")
        assert engine.get_wallet("alice").balance == sum(credits, ZERO) - sum(
            (t.amount for t in engine.wallets.transactions("alice") if t.type == TransactionType.WITHDRAWAL),
            ZERO,
        )
