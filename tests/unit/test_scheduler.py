"""
test_scheduler.py - Unit tests for PayoutScheduler

Tests:
- business_date: payout cutoff handling
- run: due selection, catch-up, idempotent re-runs, summaries
- Failure handling: frozen users, Busy retries
- run_until: one run per date
"""

import logging
import threading
import pytest
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from stakeledger import (
    PayoutScheduler, StakeState, FundingMethod, TransactionType, PayoutResult, Busy,
)


TODAY = date(2025, 1, 1)


def _days(n: int) -> date:
    return TODAY + timedelta(days=n)


class TestBusinessDate:
    """The date a run pays for."""

    def test_midnight_cutoff(self, manager):
        scheduler = PayoutScheduler(manager)
        assert scheduler.business_date(datetime(2025, 3, 1, 0, 0)) == date(2025, 3, 1)

    def test_before_cutoff_is_previous_day(self, manager):
        scheduler = PayoutScheduler(manager, cutoff=time(6, 0))
        assert scheduler.business_date(datetime(2025, 3, 1, 5, 59)) == date(2025, 2, 28)
        assert scheduler.business_date(datetime(2025, 3, 1, 6, 0)) == date(2025, 3, 1)

    def test_defaults_to_clock(self, manager, clock):
        clock.advance(datetime(2025, 1, 4, 12, 0))
        assert PayoutScheduler(manager).business_date() == date(2025, 1, 4)


class TestRun:
    """Daily runs."""

    def test_nothing_due_on_creation_day(self, scheduler, funded_manager):
        funded_manager.create_stake("alice", 10000)
        summary = scheduler.run(TODAY)
        assert summary.stakes_processed == 0
        assert summary.payouts_applied == 0

    def test_pays_due_stakes(self, scheduler, funded_manager, wallets):
        funded_manager.create_stake("alice", 10000)
        funded_manager.create_stake("bob", 1000)
        summary = scheduler.run(_days(1))

        assert summary.run_date == _days(1)
        assert summary.stakes_processed == 2
        assert summary.payouts_applied == 2
        assert summary.failures == 0
        assert wallets.get_balance("alice") == Decimal("15600.00")
        assert wallets.get_balance("bob") == Decimal("24070.00")

    def test_rerun_same_date_pays_nothing(self, scheduler, funded_manager, wallets):
        funded_manager.create_stake("alice", 10000)
        scheduler.run(_days(1))
        summary = scheduler.run(_days(1))
        assert summary.payouts_applied == 0
        assert wallets.get_balance("alice") == Decimal("15600.00")

    def test_catch_up_missed_days(self, scheduler, funded_manager, wallets, book):
        stake_id = funded_manager.create_stake("alice", 10000).stake_id
        summary = scheduler.run(_days(3))

        assert summary.stakes_processed == 1
        assert summary.payouts_applied == 3
        stake = book.get(stake_id)
        assert stake.payouts_completed == 3
        assert stake.next_payout_date == _days(4)
        assert [r.for_date for r in book.payout_records(stake_id)] == [_days(1), _days(2), _days(3)]
        assert wallets.get_balance("alice") == Decimal("15000") + 3 * Decimal("600")

    def test_direct_late_payout_then_runs(self, scheduler, funded_manager, book):
        stake_id = funded_manager.create_stake("alice", 10000).stake_id
        outcome = funded_manager.apply_payout(stake_id, _days(3))
        assert outcome.result == PayoutResult.APPLIED

        assert scheduler.run(_days(3)).payouts_applied == 2
        for n in range(4, 10):
            scheduler.run(_days(n))

        stake = book.get(stake_id)
        assert stake.payouts_completed == 9
        assert stake.next_payout_date == _days(10)
        assert [r.due_date for r in book.payout_records(stake_id)] == [_days(n) for n in range(1, 10)]
        assert book.payout_records(stake_id)[0].for_date == _days(3)

    def test_catch_up_bounded_by_remaining(self, scheduler, funded_manager, book):
        stake_id = funded_manager.create_stake("alice", 10000).stake_id
        summary = scheduler.run(_days(100))
        assert summary.payouts_applied == 60
        assert book.get(stake_id).state == StakeState.COMPLETED

    def test_pending_and_cancelled_skipped(self, scheduler, funded_manager):
        funded_manager.create_stake("carol", 5000, FundingMethod.GATEWAY)
        cancelled = funded_manager.create_stake("alice", 1000).stake_id
        funded_manager.cancel_stake(cancelled)
        summary = scheduler.run(_days(2))
        assert summary.stakes_processed == 0

    def test_run_is_logged(self, scheduler, funded_manager, caplog):
        funded_manager.create_stake("alice", 10000)
        with caplog.at_level(logging.INFO, logger="stakeledger.scheduler"):
            scheduler.run(_days(1))
        assert "payouts_applied=1" in caplog.text

    def test_history_and_last_run(self, scheduler, funded_manager):
        funded_manager.create_stake("alice", 10000)
        scheduler.run(_days(1))
        scheduler.run(_days(2))
        assert scheduler.last_run_date == _days(2)
        assert [s.run_date for s in scheduler.history] == [_days(1), _days(2)]


class TestFailures:
    """Per-stake failures never abort the run."""

    def test_frozen_user_counted_others_paid(self, scheduler, funded_manager, wallets):
        funded_manager.create_stake("alice", 10000)
        funded_manager.create_stake("alice", 1000)
        funded_manager.create_stake("bob", 1000)
        wallets.set_balance("alice", Decimal("1"))

        summary = scheduler.run(_days(1))
        # The first alice stake hits the integrity error; the second is skipped.
        assert summary.failures == 2
        assert summary.stakes_processed == 3
        assert summary.payouts_applied == 1
        assert summary.errors[0][0] == "STK-000001"
        assert summary.errors[1] == ("STK-000002", "user alice frozen")
        assert wallets.get_balance("bob") == Decimal("24070.00")

    def test_busy_is_retried_then_reported(self, funded_manager, wallets):
        scheduler = PayoutScheduler(funded_manager, busy_retries=2)
        funded_manager.create_stake("alice", 10000)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with wallets.lock("alice"):
                held.set()
                release.wait(10)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert held.wait(5)
            summary = scheduler.run(_days(1))
        finally:
            release.set()
            t.join()

        assert summary.failures == 1
        assert summary.payouts_applied == 0
        # Next run picks the stake up again
        assert scheduler.run(_days(1)).payouts_applied == 1

    def test_retry_succeeds(self, funded_manager, monkeypatch):
        scheduler = PayoutScheduler(funded_manager, busy_retries=3)
        stake_id = funded_manager.create_stake("alice", 10000).stake_id
        real = funded_manager.apply_payout
        calls = []

        def flaky(sid, for_date):
            calls.append(for_date)
            if len(calls) == 1:
                raise Busy("contended")
            return real(sid, for_date)

        monkeypatch.setattr(funded_manager, "apply_payout", flaky)
        summary = scheduler.run(_days(1))
        assert summary.payouts_applied == 1
        assert summary.failures == 0
        assert calls == [_days(1), _days(1)]
        assert funded_manager.book.get(stake_id).payouts_completed == 1


class TestRunUntil:
    """Consecutive daily runs."""

    def test_runs_each_day_after_last(self, scheduler, funded_manager, wallets):
        funded_manager.create_stake("alice", 10000)
        scheduler.run(_days(1))
        summaries = scheduler.run_until(_days(4))
        assert [s.run_date for s in summaries] == [_days(2), _days(3), _days(4)]
        assert all(s.payouts_applied == 1 for s in summaries)
        assert wallets.get_balance("alice") == Decimal("15000") + 4 * Decimal("600")

    def test_first_call_runs_end_date_only(self, scheduler, funded_manager):
        funded_manager.create_stake("alice", 10000)
        summaries = scheduler.run_until(_days(3))
        assert len(summaries) == 1
        assert summaries[0].payouts_applied == 3
