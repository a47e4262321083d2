"""
CI Status Poller.

Observes check runs on a change until every check is terminal or the
timeout elapses, backing off between observations.
"""

import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

import structlog

from ci_autofix.agents.classifier import FailureClassifier
from ci_autofix.models.state import (
    CheckStatus,
    PollOutcome,
    PollResult,
    PollState,
    ProgressUpdate,
)

logger = structlog.get_logger()

# Checks running longer than this are polled no faster than SLOW_CHECK_INTERVAL
SLOW_CHECK_AGE = 120.0
SLOW_CHECK_INTERVAL = 30.0

# Waiting for checks to register on a freshly pushed head
REGISTRATION_MAX_DELAY = 5.0


class CheckStatusSource(Protocol):
    def get_check_statuses(self, change_id: int) -> List[CheckStatus]:
        ...


def next_interval(
    current: float,
    multiplier: float,
    ceiling: float,
    slow_check_running: bool = False,
) -> float:
    """Grow the wait geometrically, capped at the ceiling; slow checks get at least 30s."""
    interval = min(current * multiplier, ceiling)
    if slow_check_running:
        interval = max(interval, min(SLOW_CHECK_INTERVAL, ceiling))
    return interval


class CIStatusPoller:
    """Polls check status with adaptive backoff."""

    def __init__(
        self,
        source: CheckStatusSource,
        classifier: Optional[FailureClassifier] = None,
        initial_interval: float = 5.0,
        multiplier: float = 1.5,
        max_interval: float = 30.0,
        timeout: float = 600.0,
        fail_fast: bool = True,
        registration_grace: float = 20.0,
        budget_after_registration: bool = False,
        sleep: Optional[Callable[[float], None]] = None,
        now: Optional[Callable[[], datetime]] = None,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
    ):
        """
        Initialize the poller.

        Args:
            source: Check-status source
            classifier: Used to turn failing checks into FailureDetail records
            initial_interval: First wait in seconds
            multiplier: Growth factor applied after every wait
            max_interval: Ceiling for the wait
            timeout: Total seconds of waiting before giving up
            fail_fast: Return as soon as any check fails
            registration_grace: How long to wait for checks to show up at all
            budget_after_registration: Start the timeout budget once checks appear,
                so the registration wait is bounded by registration_grace alone
            sleep: Suspension function, injectable for simulated clocks
            now: Wall clock used to age running checks
            cancel_event: Setting it wakes the current wait and cancels polling
            on_progress: Called whenever pass/fail/pending counts change
        """
        self.source = source
        self.classifier = classifier or FailureClassifier()
        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.timeout = timeout
        self.fail_fast = fail_fast
        self.registration_grace = registration_grace
        self.budget_after_registration = budget_after_registration
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.on_progress = on_progress

    def poll(self, change_id: int, fail_fast: Optional[bool] = None) -> PollResult:
        """
        Poll until terminal, fail-fast, timeout or cancellation.

        Args:
            change_id: Change (PR number) to observe
            fail_fast: Overrides the instance default

        Returns:
            PollResult; TIMED_OUT and CANCELLED are results, not errors
        """
        fail_fast = self.fail_fast if fail_fast is None else fail_fast
        state = PollState(interval=self.initial_interval)
        previous: Optional[List[CheckStatus]] = None
        registration_polls = 0

        logger.info(
            "polling_checks",
            change_id=change_id,
            timeout=self.timeout,
            fail_fast=fail_fast,
        )

        while True:
            checks = self.source.get_check_statuses(change_id)
            state.attempts_observed += 1

            # Checks not registered yet on a fresh head
            if not checks:
                grace = self._registration_limit()
                if state.elapsed < grace:
                    delay = min(REGISTRATION_MAX_DELAY, 2.0 ** registration_polls, grace - state.elapsed)
                    registration_polls += 1
                    if not self._suspend(state, delay):
                        return self._result(PollOutcome.CANCELLED, state, checks)
                    state.registration_wait += delay
                    continue
                logger.warning("no_checks_configured", change_id=change_id)
                return self._result(PollOutcome.COMPLETED, state, checks)

            self._report_progress(state, previous, checks)
            previous = checks

            pending = [c for c in checks if not c.state.is_terminal]
            failing = [c for c in checks if c.state.is_failing]

            if not pending:
                logger.info(
                    "checks_completed",
                    change_id=change_id,
                    failed=len(failing),
                    total=len(checks),
                    elapsed=state.elapsed,
                )
                return self._result(PollOutcome.COMPLETED, state, checks)

            if fail_fast and failing:
                logger.info(
                    "fail_fast_triggered",
                    change_id=change_id,
                    failed=len(failing),
                    pending=len(pending),
                )
                return self._result(PollOutcome.COMPLETED, state, checks, fail_fast_triggered=True)

            used = self._budget_used(state)
            if used >= self.timeout:
                logger.warning(
                    "poll_timed_out",
                    change_id=change_id,
                    elapsed=state.elapsed,
                    pending=len(pending),
                )
                return self._result(PollOutcome.TIMED_OUT, state, checks)

            wait = min(state.interval, self.timeout - used)
            if not self._suspend(state, wait):
                return self._result(PollOutcome.CANCELLED, state, checks)
            state.intervals.append(wait)

            state.interval = next_interval(
                state.interval,
                self.multiplier,
                self.max_interval,
                slow_check_running=self._has_slow_check(pending),
            )
            logger.debug(
                "poll_backoff",
                change_id=change_id,
                next_interval=state.interval,
                elapsed=state.elapsed,
            )

    def _registration_limit(self) -> float:
        if self.budget_after_registration:
            return self.registration_grace
        return min(self.registration_grace, self.timeout)

    def _budget_used(self, state: PollState) -> float:
        if self.budget_after_registration:
            return state.elapsed - state.registration_wait
        return state.elapsed

    def _suspend(self, state: PollState, seconds: float) -> bool:
        """Single wait point. Returns False when cancelled."""
        if self.cancel_event.is_set():
            return False
        if self._sleep is not None:
            self._sleep(seconds)
            cancelled = self.cancel_event.is_set()
        else:
            cancelled = self.cancel_event.wait(seconds)
        state.elapsed += seconds
        if cancelled:
            logger.info("poll_cancelled", elapsed=state.elapsed)
        return not cancelled

    def _has_slow_check(self, pending: List[CheckStatus]) -> bool:
        now = self._now()
        for check in pending:
            if check.started_at is None:
                continue
            started = check.started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            if (now - started).total_seconds() > SLOW_CHECK_AGE:
                return True
        return False

    def _result(
        self,
        outcome: PollOutcome,
        state: PollState,
        checks: List[CheckStatus],
        fail_fast_triggered: bool = False,
    ) -> PollResult:
        failures = self.classifier.build_failures(checks)
        return PollResult(
            outcome=outcome,
            failures=tuple(failures),
            checks=list(checks),
            poll_state=state,
            fail_fast_triggered=fail_fast_triggered,
        )

    def _report_progress(
        self,
        state: PollState,
        previous: Optional[List[CheckStatus]],
        current: List[CheckStatus],
    ):
        if self.on_progress is None:
            return

        def counts(checks):
            return (
                sum(1 for c in checks if c.state.is_terminal and not c.state.is_failing),
                sum(1 for c in checks if c.state.is_failing),
                sum(1 for c in checks if not c.state.is_terminal),
            )

        if previous is not None and counts(previous) == counts(current):
            return

        prev_failed = {c.name for c in previous or [] if c.state.is_failing}
        now_failed = {c.name for c in current if c.state.is_failing}
        passed, failed, pending = counts(current)
        self.on_progress(ProgressUpdate(
            elapsed=state.elapsed,
            total=len(current),
            passed=passed,
            failed=failed,
            pending=pending,
            new_failures=sorted(now_failed - prev_failed) if previous is not None else [],
            new_passes=sorted(prev_failed - now_failed) if previous is not None else [],
        ))
