"""
Verification service tests.
"""

import threading

from ci_autofix.agents.verifier import VerificationService, judge_improvement
from ci_autofix.models.state import (
    CheckState,
    ErrorKind,
    FixReason,
    FixReference,
    Improvement,
    VerificationDecision,
)

from conftest import FakeCheckSource, check, failure


REF = FixReference(
    number=101,
    url="https://github.com/acme/app/pull/101",
    branch="autofix/42-lint-1700000000",
    base_branch="feature",
)


def verify(snapshots, original, publisher, sleep, kind=ErrorKind.LINT, **kwargs):
    source = FakeCheckSource({REF.number: snapshots})
    service = VerificationService(source, publisher, sleep=sleep, **kwargs)
    return service.verify(REF, original, kind)


def test_judge_improvement():
    assert judge_improvement(2, 0) == Improvement.FULL
    assert judge_improvement(2, 1) == Improvement.PARTIAL
    assert judge_improvement(2, 2) == Improvement.NONE
    assert judge_improvement(1, 3) == Improvement.NONE


def test_full_improvement_is_accepted(publisher, sleep):
    result = verify(
        [[check("lint", CheckState.IN_PROGRESS)], [check("lint", CheckState.SUCCESS)]],
        [failure()],
        publisher,
        sleep,
    )

    assert result.decision == VerificationDecision.ACCEPT
    assert result.improvement == Improvement.FULL
    assert result.original_failing_count == 1
    assert result.remaining_failing_count == 0
    assert publisher.closed == []


def test_partial_improvement_is_accepted(publisher, sleep):
    original = [failure(check_name="lint-py"), failure(check_name="lint-js", files=["a.js"])]
    result = verify(
        [[check("lint-py", CheckState.SUCCESS), check("lint-js", CheckState.FAILURE)]],
        original,
        publisher,
        sleep,
    )

    assert result.decision == VerificationDecision.ACCEPT
    assert result.improvement == Improvement.PARTIAL
    assert result.remaining_failing_count == 1
    assert publisher.deleted == []


def test_no_improvement_rolls_back(publisher, sleep):
    result = verify([[check("lint", CheckState.FAILURE)]], [failure()], publisher, sleep)

    assert result.decision == VerificationDecision.ROLLBACK
    assert result.improvement == Improvement.NONE
    assert result.reason == FixReason.ROLLED_BACK
    assert publisher.closed == [REF]
    assert publisher.deleted == [REF]


def test_other_kinds_do_not_count(publisher, sleep):
    """A still-failing test job does not hold back a lint fix."""
    original = [failure(), failure(ErrorKind.TEST_FAILURE, check_name="pytest")]
    result = verify(
        [[check("lint", CheckState.SUCCESS), check("pytest", CheckState.FAILURE)]],
        original,
        publisher,
        sleep,
    )

    assert result.improvement == Improvement.FULL
    assert result.decision == VerificationDecision.ACCEPT


def test_ci_never_starting_times_out_without_rollback(publisher, sleep):
    result = verify([[]], [failure()], publisher, sleep, start_timeout=60.0)

    assert result.decision == VerificationDecision.TIMED_OUT
    assert result.reason == FixReason.VERIFICATION_TIMED_OUT
    assert publisher.closed == []
    assert sleep.total == 60.0


def test_ci_not_finishing_rolls_back(publisher, sleep):
    result = verify(
        [[check("lint", CheckState.IN_PROGRESS)]],
        [failure()],
        publisher,
        sleep,
        start_timeout=10.0,
        timeout=20.0,
    )

    assert result.decision == VerificationDecision.ROLLBACK
    assert publisher.closed == [REF]
    assert sleep.total == 20.0


def test_running_ci_is_bounded_by_verification_timeout(publisher, sleep):
    """The start wait does not extend the budget once checks are running."""
    result = verify(
        [[check("lint", CheckState.IN_PROGRESS)]],
        [failure()],
        publisher,
        sleep,
        start_timeout=60.0,
        timeout=300.0,
    )

    assert result.decision == VerificationDecision.ROLLBACK
    assert sleep.total == 300.0


def test_late_start_gets_the_full_budget_after_registration(publisher, sleep):
    result = verify(
        [[], [], [check("lint", CheckState.IN_PROGRESS)]],
        [failure()],
        publisher,
        sleep,
        start_timeout=10.0,
        timeout=20.0,
    )

    assert result.decision == VerificationDecision.ROLLBACK
    assert sleep.waits[:2] == [1.0, 2.0]
    assert sleep.total == 23.0


def test_cancelled_verification_is_not_a_timeout(publisher, sleep):
    cancel = threading.Event()

    def cancelling_sleep(seconds):
        sleep(seconds)
        cancel.set()

    source = FakeCheckSource({REF.number: [[check("lint", CheckState.IN_PROGRESS)]]})
    service = VerificationService(source, publisher, sleep=cancelling_sleep, cancel_event=cancel)
    result = service.verify(REF, [failure()], ErrorKind.LINT)

    assert result.decision == VerificationDecision.CANCELLED
    assert result.reason is None
    assert publisher.closed == []
    assert publisher.deleted == []
