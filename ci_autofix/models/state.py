"""
State management for the CI auto-fix loop.

Defines the records exchanged between the poller, classifier, fix orchestrator,
verification service and the LangGraph session graph.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Closed set of failure categories; drives fix routing."""
    LINT = "lint"
    FORMAT = "format"
    TYPE_ERROR = "type_error"
    TEST_FAILURE = "test_failure"
    DEPENDENCY_VULNERABILITY = "dependency_vulnerability"
    BUILD_ERROR = "build_error"
    UNKNOWN = "unknown"


class CheckState(str, Enum):
    """State of one CI check as reported by the check-status source."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"

    @property
    def is_terminal(self) -> bool:
        return self not in (CheckState.QUEUED, CheckState.IN_PROGRESS)

    @property
    def is_failing(self) -> bool:
        return self in (CheckState.FAILURE, CheckState.TIMED_OUT, CheckState.ACTION_REQUIRED)


class FixReason(str, Enum):
    """Why an auto-fix did not (or did not yet) land."""
    NOT_AUTO_FIXABLE = "not_auto_fixable"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    NO_TOOL_AVAILABLE = "no_tool_available"
    NO_CHANGES = "no_changes"
    TOO_MANY_CHANGES = "too_many_changes"
    EXECUTION_FAILED = "execution_failed"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_TIMED_OUT = "verification_timed_out"
    ROLLED_BACK = "rolled_back"
    SKIPPED_UNSAFE = "skipped_unsafe"
    DISABLED = "disabled"
    DRY_RUN = "dry_run"


class PollOutcome(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class Improvement(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


class VerificationDecision(str, Enum):
    ACCEPT = "accept"
    ROLLBACK = "rollback"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class CheckStatus(BaseModel):
    """One check run (or legacy commit status) on a change."""
    name: str
    state: CheckState
    started_at: Optional[datetime] = None
    title: str = ""
    summary: str = ""
    text: str = ""
    url: Optional[str] = None


class FailureDetail(BaseModel):
    """A classified failing check. Built fresh on every poll cycle."""
    model_config = ConfigDict(frozen=True)

    check_name: str
    summary: str = ""
    error_kind: ErrorKind = ErrorKind.UNKNOWN
    affected_files: Tuple[str, ...] = ()
    log_excerpt: str = Field(default="", max_length=2000)
    url: Optional[str] = None


class PollState(BaseModel):
    """Mutable bookkeeping for a single poll invocation."""
    interval: float
    elapsed: float = 0.0
    # Part of elapsed spent waiting for checks to register
    registration_wait: float = 0.0
    attempts_observed: int = 0
    intervals: List[float] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    """Emitted to the progress callback whenever check counts change."""
    elapsed: float
    total: int
    passed: int
    failed: int
    pending: int
    new_failures: List[str] = Field(default_factory=list)
    new_passes: List[str] = Field(default_factory=list)


class PollResult(BaseModel):
    """Terminal result of a poll; a timeout is a result, not an error."""
    outcome: PollOutcome
    failures: Tuple[FailureDetail, ...] = ()
    checks: List[CheckStatus] = Field(default_factory=list)
    poll_state: PollState
    fail_fast_triggered: bool = False

    @property
    def completed(self) -> bool:
        return self.outcome == PollOutcome.COMPLETED


class FixReference(BaseModel):
    """Opaque handle to a published fix change (a pull request)."""
    model_config = ConfigDict(frozen=True)

    number: int
    url: Optional[str] = None
    branch: str
    base_branch: str


class FixAttempt(BaseModel):
    """Attempt counter for one (target change, error kind) pair."""
    target_id: int
    error_kind: ErrorKind
    count: int = 0
    last_outcome: Optional[FixReason] = None


class AutoFixResult(BaseModel):
    """Result of one fix attempt."""
    model_config = ConfigDict(frozen=True)

    success: bool
    reason: Optional[FixReason] = None
    error_kind: Optional[ErrorKind] = None
    changed_line_count: int = 0
    changed_files: Tuple[str, ...] = ()
    fix_reference: Optional[FixReference] = None
    attempts: int = 0
    command: Optional[str] = None
    error: Optional[str] = None
    message: str = ""


class VerificationResult(BaseModel):
    """Result of re-observing CI on a fix change."""
    model_config = ConfigDict(frozen=True)

    improvement: Improvement
    decision: VerificationDecision
    original_failing_count: int
    remaining_failing_count: int
    fix_reference: FixReference
    reason: Optional[FixReason] = None


class RemediationOutcome(BaseModel):
    """Final report entry for one failure handled in a session."""
    failure: FailureDetail
    fix_result: Optional[AutoFixResult] = None
    verification: Optional[VerificationResult] = None
    status: Literal["fixed", "partially_fixed", "rolled_back", "skipped", "unfixed", "dry_run"]
    reason: str


class KindStats(BaseModel):
    attempts: int = 0
    successes: int = 0
    failures: int = 0


class AutoFixMetrics(BaseModel):
    """Counters for auto-fix attempts within one orchestrator."""
    total_attempts: int = 0
    successful_fixes: int = 0
    failed_fixes: int = 0
    rollback_count: int = 0
    verification_timeouts: int = 0
    verification_failures: int = 0
    dry_run_attempts: int = 0
    by_error_kind: Dict[str, KindStats] = Field(default_factory=dict)
    by_reason: Dict[str, int] = Field(default_factory=dict)
    total_fix_duration: float = 0.0
    average_fix_duration: Optional[float] = None
    start_time: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)


class RemediationState(BaseModel):
    """
    Complete state passed between LangGraph nodes.

    Holds one remediation session against one change.
    """

    # Input
    repo_owner: str
    repo_name: str
    change_id: int
    dry_run: bool = False
    verify: bool = True

    # Polling
    poll_result: Optional[PollResult] = None

    # Failure queue
    failures: List[FailureDetail] = Field(default_factory=list)
    pending: List[FailureDetail] = Field(default_factory=list)
    current: Optional[FailureDetail] = None
    current_fix: Optional[AutoFixResult] = None

    # Results
    outcomes: List[RemediationOutcome] = Field(default_factory=list)

    # Error Handling
    errors: List[str] = Field(default_factory=list)

    # Audit Trail
    agent_history: List[Dict[str, Any]] = Field(default_factory=list)

    # Control Flow
    next_action: Optional[Literal[
        "poll",
        "select",
        "fix",
        "verify",
        "complete",
        "fail",
    ]] = "poll"

    # Metadata
    run_id: str = Field(default_factory=lambda: f"run-{datetime.utcnow().timestamp()}")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    def add_agent_record(self, agent_name: str, action: str, result: Any, duration: float):
        """Add an agent action to the history."""
        self.agent_history.append({
            "agent": agent_name,
            "action": action,
            "result": str(result)[:500],  # Truncate for storage
            "duration_seconds": duration,
            "timestamp": datetime.utcnow().isoformat()
        })

    def add_error(self, error: str):
        """Add an error to the error list."""
        self.errors.append(f"[{datetime.utcnow().isoformat()}] {error}")

    def add_outcome(self, outcome: RemediationOutcome):
        self.outcomes.append(outcome)

    @property
    def unresolved(self) -> List[RemediationOutcome]:
        """Outcomes that still need a human."""
        return [o for o in self.outcomes if o.status in ("rolled_back", "skipped", "unfixed")]
