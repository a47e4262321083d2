"""Agents for the CI auto-fix loop."""

from ci_autofix.agents.classifier import FailureClassifier
from ci_autofix.agents.fix_orchestrator import FixOrchestrator
from ci_autofix.agents.fixers import (
    DependencyAuditFixer,
    FixerOutcome,
    FixerRegistry,
    FormatFixer,
    LintFixer,
    default_registry,
)
from ci_autofix.agents.local_checks import LocalCheckResult, LocalChecks
from ci_autofix.agents.poller import CIStatusPoller, next_interval
from ci_autofix.agents.publisher import ChangePublisher
from ci_autofix.agents.verifier import VerificationService

__all__ = [
    "FailureClassifier",
    "FixOrchestrator",
    "DependencyAuditFixer",
    "FixerOutcome",
    "FixerRegistry",
    "FormatFixer",
    "LintFixer",
    "default_registry",
    "LocalCheckResult",
    "LocalChecks",
    "CIStatusPoller",
    "next_interval",
    "ChangePublisher",
    "VerificationService",
]
