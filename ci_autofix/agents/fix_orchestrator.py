"""
Fix Orchestrator.

Decides fixability, enforces safety limits, dispatches the fixer strategy
for a failure and publishes the result as an isolated fix change.
"""

import json
import re
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import structlog

from ci_autofix.agents.fixers import CHANGED, FAILED, NO_TOOL, FixerOutcome, FixerRegistry
from ci_autofix.agents.local_checks import LocalCheckResult
from ci_autofix.agents.publisher import build_description, build_title
from ci_autofix.config import AutoFixConfig
from ci_autofix.models.state import (
    AutoFixMetrics,
    AutoFixResult,
    ErrorKind,
    FailureDetail,
    FixAttempt,
    FixReason,
    FixReference,
    KindStats,
    VerificationDecision,
    VerificationResult,
)

logger = structlog.get_logger()

FLAKY_PATTERNS = [
    re.compile(r"\bflak(?:y|iness|e)\b", re.IGNORECASE),
    re.compile(r"intermittent", re.IGNORECASE),
    re.compile(r"non-?deterministic", re.IGNORECASE),
    re.compile(r"timed out waiting", re.IGNORECASE),
]


class Publisher(Protocol):
    def create_fix_change(
        self,
        base_change_id: int,
        title: str,
        body: str,
        files: List[str],
        error_kind: Optional[ErrorKind] = None,
    ) -> FixReference:
        ...

    def close_change(self, ref: FixReference, reason: Optional[str] = None):
        ...

    def delete_branch(self, ref: FixReference):
        ...


class Workspace(Protocol):
    def discard_changes(self, paths=None):
        ...


class Checks(Protocol):
    def run(self) -> LocalCheckResult:
        ...


def is_flaky(failure: FailureDetail) -> bool:
    text = f"{failure.summary}\n{failure.log_excerpt}"
    return any(p.search(text) for p in FLAKY_PATTERNS)


class FixOrchestrator:
    """Routes failures to fixer strategies and tracks attempts for one session."""

    def __init__(
        self,
        registry: FixerRegistry,
        publisher: Publisher,
        workspace: Workspace,
        config: Optional[AutoFixConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        local_checks: Optional[Checks] = None,
    ):
        """
        Initialize fix orchestrator.

        Args:
            registry: ErrorKind -> strategy routing table
            publisher: Publishes and withdraws fix changes
            workspace: Working tree, used to discard oversized fixes
            config: Auto-fix limits
            clock: Monotonic clock for durations
            local_checks: Project checks run before publishing; None skips them
        """
        self.registry = registry
        self.publisher = publisher
        self.workspace = workspace
        self.config = config or AutoFixConfig()
        self._clock = clock
        self.local_checks = local_checks
        # (target_id, kind) -> attempts; owned by this instance only
        self.attempts: Dict[Tuple[int, ErrorKind], FixAttempt] = {}
        self.metrics = AutoFixMetrics()

    def is_auto_fixable(self, kind: ErrorKind, affected_files: Sequence[str] = ()) -> bool:
        """True when auto-fix is on, the kind is enabled and a strategy accepts it."""
        if not self.config.enabled or kind not in self.config.enabled_kinds:
            return False
        fixer = self.registry.get(kind)
        if fixer is None:
            return False
        return fixer.accepts(affected_files)

    def get_attempt(self, target_id: int, kind: ErrorKind) -> FixAttempt:
        key = (target_id, kind)
        if key not in self.attempts:
            self.attempts[key] = FixAttempt(target_id=target_id, error_kind=kind)
        return self.attempts[key]

    def attempt_fix(
        self,
        failure: FailureDetail,
        target_id: int,
        dry_run: Optional[bool] = None,
    ) -> AutoFixResult:
        """
        Attempt to auto-fix one failure.

        Args:
            failure: Classified failure
            target_id: Change the failure was observed on
            dry_run: Resolve the command without running it (defaults to config)

        Returns:
            AutoFixResult; fixability problems never raise

        Raises:
            PublishError: the fix could not be published
        """
        start_time = self._clock()
        kind = failure.error_kind
        dry_run = self.config.dry_run if dry_run is None else dry_run
        attempt = self.get_attempt(target_id, kind)

        log = logger.bind(target_id=target_id, check=failure.check_name, error_kind=kind.value)

        if not self.config.enabled:
            log.info("autofix_disabled")
            return self._finish(attempt, start_time, dry_run, AutoFixResult(
                success=False,
                reason=FixReason.DISABLED,
                error_kind=kind,
                attempts=attempt.count,
                message="Auto-fix is disabled",
            ), counted=False)

        if not self.is_auto_fixable(kind, failure.affected_files):
            log.info("not_auto_fixable")
            return self._finish(attempt, start_time, dry_run, AutoFixResult(
                success=False,
                reason=FixReason.NOT_AUTO_FIXABLE,
                error_kind=kind,
                attempts=attempt.count,
                message=f"{kind.value} needs manual or other remediation",
            ), counted=False)

        unsafe = self._safety_violation(failure)
        if unsafe:
            log.warning("autofix_skipped_unsafe", reason=unsafe)
            return self._finish(attempt, start_time, dry_run, AutoFixResult(
                success=False,
                reason=FixReason.SKIPPED_UNSAFE,
                error_kind=kind,
                attempts=attempt.count,
                message=unsafe,
            ), counted=False)

        if attempt.count >= self.config.max_attempts:
            log.warning("max_attempts_reached", attempts=attempt.count, max_attempts=self.config.max_attempts)
            return self._finish(attempt, start_time, dry_run, AutoFixResult(
                success=False,
                reason=FixReason.MAX_ATTEMPTS_REACHED,
                error_kind=kind,
                attempts=attempt.count,
                message=f"Max attempts ({self.config.max_attempts}) reached for {kind.value}",
            ), counted=False)

        fixer = self.registry.get(kind)

        if dry_run:
            command = fixer.describe(failure)
            log.info("autofix_dry_run", command=command)
            if command is None:
                result = AutoFixResult(
                    success=False,
                    reason=FixReason.NO_TOOL_AVAILABLE,
                    error_kind=kind,
                    attempts=attempt.count,
                    message="No tool available",
                )
            else:
                result = AutoFixResult(
                    success=True,
                    reason=FixReason.DRY_RUN,
                    error_kind=kind,
                    attempts=attempt.count,
                    command=command,
                    message=f"Would run: {command}",
                )
            return self._finish(attempt, start_time, dry_run, result, counted=False)

        log.info(
            "autofix_attempt_started",
            attempt=attempt.count + 1,
            max_attempts=self.config.max_attempts,
        )

        try:
            outcome = fixer.fix(failure)
        finally:
            attempt.count += 1

        result = self._evaluate(failure, target_id, attempt, outcome)
        return self._finish(attempt, start_time, dry_run, result, counted=True)

    def _evaluate(
        self,
        failure: FailureDetail,
        target_id: int,
        attempt: FixAttempt,
        outcome: FixerOutcome,
    ) -> AutoFixResult:
        kind = failure.error_kind
        common = dict(error_kind=kind, attempts=attempt.count, command=outcome.command)

        if outcome.status == NO_TOOL:
            return AutoFixResult(
                success=False,
                reason=FixReason.NO_TOOL_AVAILABLE,
                error=outcome.error,
                message="No tool available for this project",
                **common,
            )

        if outcome.status == FAILED:
            if outcome.touched_tree:
                self.workspace.discard_changes()
            return AutoFixResult(
                success=False,
                reason=FixReason.EXECUTION_FAILED,
                error=outcome.error,
                message="Fix tool failed",
                **common,
            )

        if outcome.status != CHANGED or not outcome.changed_files:
            return AutoFixResult(
                success=False,
                reason=FixReason.NO_CHANGES,
                message="Tool made no changes",
                **common,
            )

        if outcome.changed_lines > self.config.max_changed_lines:
            self.workspace.discard_changes(outcome.changed_files)
            logger.warning(
                "autofix_too_many_changes",
                target_id=target_id,
                changed_lines=outcome.changed_lines,
                max_changed_lines=self.config.max_changed_lines,
            )
            return AutoFixResult(
                success=False,
                reason=FixReason.TOO_MANY_CHANGES,
                changed_line_count=outcome.changed_lines,
                changed_files=tuple(outcome.changed_files),
                message=f"{outcome.changed_lines} changed lines exceeds {self.config.max_changed_lines}",
                **common,
            )

        if self.config.require_checks and self.local_checks is not None:
            checks = self.local_checks.run()
            if not checks.success:
                # The check run itself may have touched the tree too
                self.workspace.discard_changes()
                logger.warning(
                    "autofix_local_checks_failed",
                    target_id=target_id,
                    command=checks.commands[-1] if checks.commands else None,
                )
                return AutoFixResult(
                    success=False,
                    reason=FixReason.VERIFICATION_FAILED,
                    changed_line_count=outcome.changed_lines,
                    changed_files=tuple(outcome.changed_files),
                    error="\n".join(checks.errors)[-500:] or None,
                    message=f"Local checks failed: {', '.join(checks.commands)}",
                    **common,
                )

        ref = self.publisher.create_fix_change(
            target_id,
            build_title(failure, target_id),
            build_description(
                failure,
                target_id,
                outcome.changed_files,
                outcome.changed_lines,
                outcome.command,
            ),
            outcome.changed_files,
            error_kind=kind,
        )
        return AutoFixResult(
            success=True,
            changed_line_count=outcome.changed_lines,
            changed_files=tuple(outcome.changed_files),
            fix_reference=ref,
            message=f"Published fix PR #{ref.number}",
            **common,
        )

    def _safety_violation(self, failure: FailureDetail) -> Optional[str]:
        if len(failure.affected_files) > self.config.max_files_per_fix:
            return (
                f"{len(failure.affected_files)} affected files exceeds "
                f"{self.config.max_files_per_fix}"
            )
        if is_flaky(failure):
            return "Failure looks flaky; a fix cannot be verified"
        return None

    def _finish(
        self,
        attempt: FixAttempt,
        start_time: float,
        dry_run: bool,
        result: AutoFixResult,
        counted: bool,
    ) -> AutoFixResult:
        duration = self._clock() - start_time
        if counted:
            attempt.last_outcome = None if result.success else result.reason
        self._track_metrics(result, dry_run, duration, counted)

        if result.success:
            logger.info(
                "autofix_result",
                success=True,
                error_kind=result.error_kind.value if result.error_kind else None,
                reason=result.reason.value if result.reason else None,
                changed_lines=result.changed_line_count,
                duration=duration,
            )
        else:
            logger.warning(
                "autofix_result",
                success=False,
                error_kind=result.error_kind.value if result.error_kind else None,
                reason=result.reason.value if result.reason else None,
                error=result.error,
                duration=duration,
            )
        return result

    def record_verification(self, target_id: int, kind: ErrorKind, verification: VerificationResult):
        """Fold a verification outcome back into attempt state and metrics."""
        attempt = self.get_attempt(target_id, kind)
        if verification.decision == VerificationDecision.ROLLBACK:
            attempt.last_outcome = FixReason.ROLLED_BACK
            self.metrics.rollback_count += 1
            self._count_reason(FixReason.ROLLED_BACK)
        elif verification.decision == VerificationDecision.TIMED_OUT:
            attempt.last_outcome = FixReason.VERIFICATION_TIMED_OUT
            self.metrics.verification_timeouts += 1
            self._count_reason(FixReason.VERIFICATION_TIMED_OUT)
        self.metrics.last_updated = datetime.utcnow()

    def _track_metrics(self, result: AutoFixResult, dry_run: bool, duration: float, counted: bool):
        self.metrics.last_updated = datetime.utcnow()

        if dry_run and result.reason in (FixReason.DRY_RUN, FixReason.NO_TOOL_AVAILABLE):
            self.metrics.dry_run_attempts += 1
            return

        if result.reason:
            self._count_reason(result.reason)

        if not counted:
            return

        self.metrics.total_attempts += 1
        self.metrics.total_fix_duration += duration
        stats = self.metrics.by_error_kind.setdefault(result.error_kind.value, KindStats())
        stats.attempts += 1
        if result.success:
            self.metrics.successful_fixes += 1
            stats.successes += 1
        else:
            self.metrics.failed_fixes += 1
            stats.failures += 1
        if result.reason == FixReason.VERIFICATION_FAILED:
            self.metrics.verification_failures += 1

        self.metrics.average_fix_duration = (
            self.metrics.total_fix_duration / self.metrics.total_attempts
        )

    def _count_reason(self, reason: FixReason):
        self.metrics.by_reason[reason.value] = self.metrics.by_reason.get(reason.value, 0) + 1

    def get_metrics(self) -> AutoFixMetrics:
        return self.metrics.model_copy(deep=True)

    def reset_metrics(self):
        self.metrics = AutoFixMetrics()

    def export_metrics(self) -> str:
        return json.dumps(self.metrics.model_dump(mode="json"), indent=2)
