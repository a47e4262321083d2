"""
Verification Service.

Re-observes CI on a published fix change and decides whether the fix
helped. A fix that shows no improvement is withdrawn.
"""

import threading
from datetime import datetime
from typing import Callable, Optional, Sequence

import structlog

from ci_autofix.agents.classifier import FailureClassifier
from ci_autofix.agents.fix_orchestrator import Publisher
from ci_autofix.agents.poller import CheckStatusSource, CIStatusPoller
from ci_autofix.models.state import (
    ErrorKind,
    FailureDetail,
    FixReason,
    FixReference,
    Improvement,
    PollOutcome,
    VerificationDecision,
    VerificationResult,
)

logger = structlog.get_logger()


def count_kind(failures: Sequence[FailureDetail], kind: ErrorKind) -> int:
    return sum(1 for f in failures if f.error_kind == kind)


def judge_improvement(original: int, remaining: int) -> Improvement:
    """Full when nothing of the kind remains, partial when fewer remain."""
    if remaining == 0:
        return Improvement.FULL
    if remaining < original:
        return Improvement.PARTIAL
    return Improvement.NONE


class VerificationService:
    """Polls CI on a fix change and accepts or rolls back the fix."""

    def __init__(
        self,
        source: CheckStatusSource,
        publisher: Publisher,
        classifier: Optional[FailureClassifier] = None,
        start_timeout: float = 60.0,
        timeout: float = 300.0,
        initial_interval: float = 5.0,
        multiplier: float = 1.5,
        max_interval: float = 30.0,
        sleep: Optional[Callable[[float], None]] = None,
        now: Optional[Callable[[], datetime]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize verification service.

        Args:
            source: Check-status source, queried with the fix PR number
            publisher: Used to close the fix PR and delete its branch on rollback
            classifier: Classifies failures observed on the fix change
            start_timeout: How long to wait for CI to start on the fix change
            timeout: How long to wait for CI to finish once started
            sleep: Suspension function, injectable for simulated clocks
        """
        self.publisher = publisher
        self.start_timeout = start_timeout
        self.timeout = timeout
        # The start wait is bounded by the registration grace; the poll budget
        # only starts once checks have appeared
        self.poller = CIStatusPoller(
            source,
            classifier=classifier,
            initial_interval=initial_interval,
            multiplier=multiplier,
            max_interval=max_interval,
            timeout=timeout,
            fail_fast=False,
            registration_grace=start_timeout,
            budget_after_registration=True,
            sleep=sleep,
            now=now,
            cancel_event=cancel_event,
        )

    def verify(
        self,
        fix_reference: FixReference,
        original_failures: Sequence[FailureDetail],
        fixed_kind: ErrorKind,
    ) -> VerificationResult:
        """
        Verify a fix.

        Args:
            fix_reference: Published fix change
            original_failures: Failures observed on the original change
            fixed_kind: ErrorKind the fix addressed

        Returns:
            VerificationResult with the accept/rollback/timed_out/cancelled decision

        Raises:
            PublishError: rollback could not close the PR or delete the branch
        """
        original = count_kind(original_failures, fixed_kind)

        logger.info(
            "verification_started",
            pr_number=fix_reference.number,
            branch=fix_reference.branch,
            error_kind=fixed_kind.value,
            original_failing=original,
        )

        result = self.poller.poll(fix_reference.number, fail_fast=False)
        remaining = count_kind(result.failures, fixed_kind)

        if result.outcome == PollOutcome.CANCELLED:
            # The fix change stays open; the session decides what to report
            logger.info(
                "verification_cancelled",
                pr_number=fix_reference.number,
                elapsed=result.poll_state.elapsed,
            )
            return VerificationResult(
                improvement=Improvement.NONE,
                decision=VerificationDecision.CANCELLED,
                original_failing_count=original,
                remaining_failing_count=remaining,
                fix_reference=fix_reference,
            )

        if not result.checks:
            # Nothing was observed on the fix change, so there is no basis for a rollback
            logger.warning(
                "verification_timed_out",
                pr_number=fix_reference.number,
                outcome=result.outcome.value,
                elapsed=result.poll_state.elapsed,
            )
            return VerificationResult(
                improvement=Improvement.NONE,
                decision=VerificationDecision.TIMED_OUT,
                original_failing_count=original,
                remaining_failing_count=remaining,
                fix_reference=fix_reference,
                reason=FixReason.VERIFICATION_TIMED_OUT,
            )

        if result.outcome == PollOutcome.TIMED_OUT:
            improvement = Improvement.NONE
        else:
            improvement = judge_improvement(original, remaining)

        if improvement == Improvement.NONE:
            self._rollback(fix_reference, original, remaining, result.outcome)
            return VerificationResult(
                improvement=improvement,
                decision=VerificationDecision.ROLLBACK,
                original_failing_count=original,
                remaining_failing_count=remaining,
                fix_reference=fix_reference,
                reason=FixReason.ROLLED_BACK,
            )

        logger.info(
            "verification_accepted",
            pr_number=fix_reference.number,
            improvement=improvement.value,
            original_failing=original,
            remaining_failing=remaining,
        )
        return VerificationResult(
            improvement=improvement,
            decision=VerificationDecision.ACCEPT,
            original_failing_count=original,
            remaining_failing_count=remaining,
            fix_reference=fix_reference,
        )

    def _rollback(
        self,
        fix_reference: FixReference,
        original: int,
        remaining: int,
        outcome: PollOutcome,
    ):
        if outcome == PollOutcome.TIMED_OUT:
            reason = "CI did not finish on the fix change"
        else:
            reason = f"fix did not reduce failures ({remaining} of {original} remain)"

        logger.warning(
            "verification_rollback",
            pr_number=fix_reference.number,
            branch=fix_reference.branch,
            reason=reason,
        )
        self.publisher.close_change(fix_reference, reason=reason)
        self.publisher.delete_branch(fix_reference)
