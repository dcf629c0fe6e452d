"""
scheduler.py - Daily payout scheduler

PayoutScheduler finds ACTIVE stakes whose next_payout_date has arrived and
asks StakeLifecycleManager to pay them.

Execution order of run():
1. Work out the business date (clock date, or the previous date before the cutoff)
2. Select due stakes and partition them by user
3. Process partitions in parallel on a bounded thread pool; stakes within a
   partition run in order
4. For each stake, apply one payout per missed date in chronological order
5. Log and return a SchedulerRunSummary

A run may be repeated for the same date, or resumed after a crash, without
paying anything twice: each payout is recorded under the installment it
settles and the stake's next_payout_date moves in the same atomic unit as the
credit.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
import itertools
import logging
import threading
from typing import List, Optional, Tuple

from .core import (
    Stake, PayoutResult, PayoutOutcome, ONE_DAY,
    StakeLedgerError, Busy, LedgerIntegrityError,
)
from .lifecycle import StakeLifecycleManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SchedulerRunSummary:
    """
    Per-run report for observability tooling.

    Attributes:
        run_date: Business date the run paid for
        stakes_processed: Due stakes visited
        payouts_applied: Payout transactions created
        failures: Stakes that ended with an error
        errors: (stake_id, message) for each failure
    """
    run_date: date
    stakes_processed: int = 0
    payouts_applied: int = 0
    failures: int = 0
    errors: Tuple[Tuple[str, str], ...] = ()

    def merge(self, other: SchedulerRunSummary) -> SchedulerRunSummary:
        return SchedulerRunSummary(
            run_date=self.run_date,
            stakes_processed=self.stakes_processed + other.stakes_processed,
            payouts_applied=self.payouts_applied + other.payouts_applied,
            failures=self.failures + other.failures,
            errors=self.errors + other.errors,
        )


@dataclass
class _PartitionResult:
    processed: int = 0
    applied: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)


class PayoutScheduler:
    """
    Applies due payouts exactly once per stake per due date.

    Example:
        scheduler = PayoutScheduler(manager)
        summary = scheduler.run(date(2025, 3, 1))
        print(summary.payouts_applied)
    """

    def __init__(
        self,
        manager: StakeLifecycleManager,
        workers: Optional[int] = None,
        busy_retries: Optional[int] = None,
        cutoff: Optional[time] = None,
    ):
        config = manager.config
        self.manager = manager
        self.workers = workers or config.scheduler_workers
        self.busy_retries = busy_retries or config.scheduler_busy_retries
        self.cutoff = cutoff if cutoff is not None else config.payout_cutoff
        self.last_run_date: Optional[date] = None
        self.history: List[SchedulerRunSummary] = []
        self._run_lock = threading.Lock()

    def business_date(self, now: Optional[datetime] = None) -> date:
        """Date payouts are applied for at `now`: today after the cutoff, else yesterday."""
        now = now or self.manager.clock.now
        if now.time() >= self.cutoff:
            return now.date()
        return now.date() - ONE_DAY

    # ========================================================================
    # RUNS
    # ========================================================================

    def run(self, today: Optional[date] = None) -> SchedulerRunSummary:
        """
        Apply every payout due on or before `today`.

        Args:
            today: Business date to pay for (defaults to business_date())

        Returns:
            SchedulerRunSummary for this run.

        Raises:
            Exception: Errors other than StakeLedgerError escape the run. The
                       run is safe to repeat once the cause is fixed.
        """
        today = today or self.business_date()
        with self._run_lock:
            due = self.manager.book.due(today)
            partitions = [
                (user_id, list(stakes))
                for user_id, stakes in itertools.groupby(due, key=lambda s: s.user_id)
            ]
            summary = SchedulerRunSummary(run_date=today)
            if partitions:
                workers = min(self.workers, len(partitions))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payouts") as pool:
                    futures = [
                        pool.submit(self._run_partition, user_id, stakes, today)
                        for user_id, stakes in partitions
                    ]
                    for future in futures:
                        part = future.result()
                        summary = summary.merge(SchedulerRunSummary(
                            run_date=today,
                            stakes_processed=part.processed,
                            payouts_applied=part.applied,
                            failures=len(part.errors),
                            errors=tuple(part.errors),
                        ))
            self.last_run_date = today if self.last_run_date is None else max(self.last_run_date, today)
            self.history.append(summary)

        logger.info(
            "Payout run %s: stakes_processed=%d payouts_applied=%d failures=%d",
            today.isoformat(), summary.stakes_processed, summary.payouts_applied, summary.failures,
        )
        return summary

    def run_until(self, end_date: date) -> List[SchedulerRunSummary]:
        """
        Run once per date from the day after the last run through end_date.

        Without a previous run, runs for end_date only (catch-up covers
        earlier missed dates anyway).
        """
        start = end_date if self.last_run_date is None else self.last_run_date + ONE_DAY
        summaries = []
        day = start
        while day <= end_date:
            summaries.append(self.run(day))
            day += timedelta(days=1)
        return summaries

    # ========================================================================
    # PARTITIONS
    # ========================================================================

    def _run_partition(self, user_id: str, stakes: List[Stake], today: date) -> _PartitionResult:
        result = _PartitionResult()
        for position, stake in enumerate(stakes):
            result.processed += 1
            try:
                result.applied += self._catch_up(stake.id, today)
            except LedgerIntegrityError as e:
                # The user is frozen; nothing else for them can succeed.
                result.errors.append((stake.id, str(e)))
                skipped = stakes[position + 1:]
                for other in skipped:
                    result.processed += 1
                    result.errors.append((other.id, f"user {user_id} frozen"))
                logger.critical(
                    "Skipping %d remaining stake(s) for user %s: %s", len(skipped), user_id, e
                )
                break
            except StakeLedgerError as e:
                result.errors.append((stake.id, str(e)))
                logger.error("Payout failed for stake %s: %s", stake.id, e)
        return result

    def _catch_up(self, stake_id: str, today: date) -> int:
        """Apply one payout per due date up to today. Returns the number applied."""
        applied = 0
        while True:
            stake = self.manager.book.get(stake_id)
            if not stake.is_due(today):
                return applied
            outcome = self._apply_with_retry(stake_id, stake.next_payout_date)
            if outcome.result != PayoutResult.APPLIED:
                # A record already exists for this date but the stake did not
                # advance past it; leave it for an operator instead of looping.
                logger.warning(
                    "Stake %s not advanced for %s (%s)",
                    stake_id, stake.next_payout_date, outcome.result.value,
                )
                return applied
            applied += 1

    def _apply_with_retry(self, stake_id: str, for_date: date) -> PayoutOutcome:
        last_error: Optional[Busy] = None
        for attempt in range(1, self.busy_retries + 1):
            try:
                return self.manager.apply_payout(stake_id, for_date)
            except Busy as e:
                last_error = e
                logger.warning(
                    "Stake %s busy on attempt %d/%d", stake_id, attempt, self.busy_retries
                )
        raise last_error
