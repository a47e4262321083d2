"""Models package for the CI auto-fix loop."""

from ci_autofix.models.state import (
    AutoFixMetrics,
    AutoFixResult,
    CheckState,
    CheckStatus,
    ErrorKind,
    FailureDetail,
    FixAttempt,
    FixReason,
    FixReference,
    Improvement,
    PollOutcome,
    PollResult,
    PollState,
    ProgressUpdate,
    RemediationOutcome,
    RemediationState,
    VerificationDecision,
    VerificationResult,
)

__all__ = [
    "AutoFixMetrics",
    "AutoFixResult",
    "CheckState",
    "CheckStatus",
    "ErrorKind",
    "FailureDetail",
    "FixAttempt",
    "FixReason",
    "FixReference",
    "Improvement",
    "PollOutcome",
    "PollResult",
    "PollState",
    "ProgressUpdate",
    "RemediationOutcome",
    "RemediationState",
    "VerificationDecision",
    "VerificationResult",
]
