"""
LangGraph-based orchestrator for a CI remediation session.

One session observes CI on a change, then works through the failing checks
one by one: attempt a fix, verify it on its own fix change, record the
outcome. Every failure ends the session with exactly one outcome.
"""

import threading
import time
from datetime import datetime
from typing import Literal, Optional

from langgraph.graph import StateGraph, END, START

from ci_autofix.agents.classifier import FailureClassifier
from ci_autofix.agents.fix_orchestrator import FixOrchestrator
from ci_autofix.agents.fixers import default_registry
from ci_autofix.agents.local_checks import LocalChecks
from ci_autofix.agents.poller import CIStatusPoller
from ci_autofix.agents.publisher import ChangePublisher
from ci_autofix.agents.verifier import VerificationService
from ci_autofix.config import Config
from ci_autofix.errors import ConfigError, PublishError
from ci_autofix.integrations import (
    CommandRunner,
    GitWorkspace,
    PullRequestChecks,
    ToolResolver,
    get_github_client,
)
from ci_autofix.logging_config import get_logger
from ci_autofix.models.state import (
    AutoFixResult,
    FixReason,
    Improvement,
    PollOutcome,
    RemediationOutcome,
    RemediationState,
    VerificationDecision,
    VerificationResult,
)

logger = get_logger(__name__)

# Reasons that mean the failure was left alone on purpose
SKIP_REASONS = {
    FixReason.NOT_AUTO_FIXABLE,
    FixReason.DISABLED,
    FixReason.SKIPPED_UNSAFE,
    FixReason.MAX_ATTEMPTS_REACHED,
}


def recursion_limit_for(failure_count: int) -> int:
    """Graph steps for a session: select/fix/verify per failure plus entry and exit."""
    return 3 * failure_count + 10


def outcome_for_fix(state: RemediationState, fix_result: AutoFixResult) -> RemediationOutcome:
    """Final outcome of a failure whose fix attempt will not be verified."""
    if fix_result.reason == FixReason.DRY_RUN:
        status, reason = "dry_run", FixReason.DRY_RUN.value
    elif fix_result.success:
        status, reason = "fixed", "published_unverified"
    elif fix_result.reason in SKIP_REASONS:
        status, reason = "skipped", fix_result.reason.value
    else:
        status, reason = "unfixed", fix_result.reason.value if fix_result.reason else "unknown"
    return RemediationOutcome(
        failure=state.current,
        fix_result=fix_result,
        status=status,
        reason=reason,
    )


def outcome_for_verification(
    state: RemediationState,
    verification: VerificationResult,
) -> RemediationOutcome:
    if verification.decision == VerificationDecision.ACCEPT:
        if verification.improvement == Improvement.FULL:
            status = "fixed"
        else:
            status = "partially_fixed"
        reason = verification.improvement.value
    elif verification.decision == VerificationDecision.ROLLBACK:
        status, reason = "rolled_back", FixReason.ROLLED_BACK.value
    else:
        status, reason = "unfixed", FixReason.VERIFICATION_TIMED_OUT.value
    return RemediationOutcome(
        failure=state.current,
        fix_result=state.current_fix,
        verification=verification,
        status=status,
        reason=reason,
    )


def abort_session(
    state: RemediationState,
    error: str,
    reason: str = "session_aborted",
) -> RemediationState:
    """Fail the session; failures not yet handled are reported as unfixed."""
    state.add_error(error)
    remaining = ([state.current] if state.current else []) + list(state.pending)
    for failure in remaining:
        state.add_outcome(RemediationOutcome(
            failure=failure,
            fix_result=state.current_fix if failure is state.current else None,
            status="unfixed",
            reason=reason,
        ))
    state.current = None
    state.current_fix = None
    state.pending = []
    state.next_action = "fail"
    state.completed_at = state.completed_at or datetime.utcnow()
    return state


def cancel_session(state: RemediationState, where: str) -> RemediationState:
    logger.warning("session_cancelled", node=where, remaining=len(state.pending) + (state.current is not None))
    return abort_session(state, f"Session cancelled during {where}", reason="session_cancelled")


# Conditional routing functions
def route_entry(state: dict) -> Literal["poll", "select", "complete"]:
    """Route from START; a state with observed failures skips polling."""
    if state.get("next_action") == "select":
        return "select"
    if state.get("next_action") in ("complete", "fail"):
        return "complete"
    return "poll"


def should_continue_after_poll(state: dict) -> Literal["select", "fail"]:
    """Route after polling."""
    if state.get("next_action") == "fail":
        return "fail"
    return "select"


def should_continue_after_select(state: dict) -> Literal["fix", "complete"]:
    """Route after picking the next failure."""
    if state.get("next_action") == "fix":
        return "fix"
    return "complete"


def should_continue_after_fix(state: dict) -> Literal["verify", "select", "fail"]:
    """Route after a fix attempt."""
    if state.get("next_action") == "fail":
        return "fail"
    elif state.get("next_action") == "verify":
        return "verify"
    return "select"


def should_continue_after_verify(state: dict) -> Literal["select", "fail"]:
    """Route after verification."""
    if state.get("next_action") == "fail":
        return "fail"
    return "select"


class RemediationOrchestrator:
    """LangGraph-based orchestrator for one remediation session."""

    def __init__(
        self,
        poller: CIStatusPoller,
        fix_orchestrator: FixOrchestrator,
        verifier: Optional[VerificationService] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            poller: Observes CI on the change under review
            fix_orchestrator: Attempts fixes and tracks attempts
            verifier: Verifies published fixes; None disables verification
            cancel_event: Stops the session between steps; defaults to the poller's
        """
        self.poller = poller
        self.fix_orchestrator = fix_orchestrator
        self.verifier = verifier
        self.cancel_event = cancel_event or poller.cancel_event
        self.workflow = self._build_workflow()

    @classmethod
    def from_config(
        cls,
        config: Config,
        repo_owner: str,
        repo_name: str,
        workdir: str = ".",
        change_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "RemediationOrchestrator":
        """
        Wire real collaborators: GitHub, the local clone and installed tools.

        Raises:
            ConfigError: the local clone is not on the head branch of change_id
        """
        settings = config.autofix
        cancel_event = cancel_event or threading.Event()
        github_client = get_github_client(
            token=config.github_token,
            api_url=config.github_api_url,
        )
        github_client.check_rate_limit()
        source = PullRequestChecks(github_client, repo_owner, repo_name)
        workspace = GitWorkspace(workdir)
        classifier = FailureClassifier()

        if change_id is not None:
            pr = github_client.get_pull_request(source.repo, change_id)
            local_branch = workspace.current_branch()
            if pr.head.ref != local_branch:
                raise ConfigError(
                    f"{workdir} is on '{local_branch}' but PR #{change_id} is "
                    f"'{pr.head.ref}'; check out the PR branch first"
                )

        registry = default_registry(
            ToolResolver(workdir, overrides=settings.commands),
            CommandRunner(workdir, timeout=settings.command_timeout),
            workspace,
        )
        publisher = ChangePublisher(
            github_client,
            workspace,
            repo_owner,
            repo_name,
            branch_prefix=settings.branch_prefix,
        )
        poller = CIStatusPoller(
            source,
            classifier=classifier,
            initial_interval=settings.poll_initial_interval,
            multiplier=settings.poll_multiplier,
            max_interval=settings.poll_max_interval,
            timeout=settings.poll_timeout,
            fail_fast=settings.fail_fast,
            cancel_event=cancel_event,
            on_progress=lambda update: logger.info("ci_progress", **update.model_dump()),
        )
        verifier = VerificationService(
            source,
            publisher,
            classifier=classifier,
            start_timeout=settings.verification_start_timeout,
            timeout=settings.verification_timeout,
            initial_interval=settings.poll_initial_interval,
            multiplier=settings.poll_multiplier,
            max_interval=settings.poll_max_interval,
            cancel_event=cancel_event,
        )
        return cls(
            poller=poller,
            fix_orchestrator=FixOrchestrator(
                registry,
                publisher,
                workspace,
                settings,
                local_checks=LocalChecks(
                    CommandRunner(workdir, timeout=settings.check_timeout),
                    workdir,
                    command=settings.check_command,
                ),
            ),
            verifier=verifier,
            cancel_event=cancel_event,
        )

    # Node functions for LangGraph

    def poll_node(self, state: dict) -> dict:
        """CI observation node."""
        logger.info("langgraph_node_start", node="poll")
        start_time = time.time()
        session = RemediationState(**state)

        result = self.poller.poll(session.change_id)
        session.poll_result = result
        session.failures = list(result.failures)
        session.pending = list(result.failures)

        if result.outcome == PollOutcome.CANCELLED:
            cancel_session(session, "poll")
        elif result.outcome == PollOutcome.TIMED_OUT and not result.failures:
            session.add_error("CI did not finish before the poll timeout")
            session.next_action = "fail"
        else:
            session.next_action = "select"

        duration = time.time() - start_time
        session.add_agent_record("CIStatusPoller", "poll", result.outcome.value, duration)
        logger.info(
            "langgraph_node_complete",
            node="poll",
            duration=duration,
            outcome=result.outcome.value,
            failures=len(result.failures),
        )
        return session.model_dump()

    def select_node(self, state: dict) -> dict:
        """Pick the next failure to handle."""
        session = RemediationState(**state)
        session.current_fix = None

        if self.cancel_event.is_set():
            return cancel_session(session, "select").model_dump()

        if not session.pending:
            session.current = None
            session.next_action = "complete"
            session.completed_at = datetime.utcnow()
            logger.info(
                "session_complete",
                change_id=session.change_id,
                outcomes=len(session.outcomes),
                unresolved=len(session.unresolved),
            )
            return session.model_dump()

        session.current = session.pending.pop(0)
        session.next_action = "fix"
        logger.info(
            "failure_selected",
            check=session.current.check_name,
            error_kind=session.current.error_kind.value,
            remaining=len(session.pending),
        )
        return session.model_dump()

    def fix_node(self, state: dict) -> dict:
        """Fix attempt node."""
        logger.info("langgraph_node_start", node="fix")
        start_time = time.time()
        session = RemediationState(**state)

        if self.cancel_event.is_set():
            return cancel_session(session, "fix").model_dump()

        try:
            fix_result = self.fix_orchestrator.attempt_fix(
                session.current,
                session.change_id,
                dry_run=session.dry_run or None,
            )
        except PublishError as e:
            logger.error("langgraph_node_failed", node="fix", error=str(e), branch=e.branch)
            return abort_session(session, f"Publishing fix failed: {e}").model_dump()

        duration = time.time() - start_time
        session.add_agent_record(
            "FixOrchestrator",
            "attempt_fix",
            fix_result.reason.value if fix_result.reason else "published",
            duration,
        )

        if fix_result.fix_reference and session.verify and self.verifier is not None:
            session.current_fix = fix_result
            session.next_action = "verify"
        else:
            session.add_outcome(outcome_for_fix(session, fix_result))
            session.next_action = "select"

        logger.info(
            "langgraph_node_complete",
            node="fix",
            duration=duration,
            success=fix_result.success,
            reason=fix_result.reason.value if fix_result.reason else None,
        )
        return session.model_dump()

    def verify_node(self, state: dict) -> dict:
        """Verification node."""
        logger.info("langgraph_node_start", node="verify")
        start_time = time.time()
        session = RemediationState(**state)
        kind = session.current.error_kind

        if self.cancel_event.is_set():
            return cancel_session(session, "verify").model_dump()

        try:
            verification = self.verifier.verify(
                session.current_fix.fix_reference,
                session.failures,
                kind,
            )
        except PublishError as e:
            logger.error("langgraph_node_failed", node="verify", error=str(e), branch=e.branch)
            return abort_session(session, f"Rolling back fix failed: {e}").model_dump()

        if verification.decision == VerificationDecision.CANCELLED:
            # The fix change stays open and is reported with the cancelled failure
            return cancel_session(session, "verify").model_dump()

        self.fix_orchestrator.record_verification(session.change_id, kind, verification)
        session.add_outcome(outcome_for_verification(session, verification))
        session.next_action = "select"

        duration = time.time() - start_time
        session.add_agent_record("VerificationService", "verify", verification.decision.value, duration)
        logger.info(
            "langgraph_node_complete",
            node="verify",
            duration=duration,
            decision=verification.decision.value,
            improvement=verification.improvement.value,
        )
        return session.model_dump()

    def _build_workflow(self):
        """Build the LangGraph workflow."""
        logger.info("building_langgraph_workflow")

        workflow = StateGraph(dict)

        workflow.add_node("poll", self.poll_node)
        workflow.add_node("select", self.select_node)
        workflow.add_node("fix", self.fix_node)
        workflow.add_node("verify", self.verify_node)

        workflow.add_conditional_edges(
            START,
            route_entry,
            {"poll": "poll", "select": "select", "complete": END}
        )

        workflow.add_conditional_edges(
            "poll",
            should_continue_after_poll,
            {"select": "select", "fail": END}
        )

        workflow.add_conditional_edges(
            "select",
            should_continue_after_select,
            {"fix": "fix", "complete": END}
        )

        workflow.add_conditional_edges(
            "fix",
            should_continue_after_fix,
            {
                "verify": "verify",
                "select": "select",
                "fail": END
            }
        )

        workflow.add_conditional_edges(
            "verify",
            should_continue_after_verify,
            {"select": "select", "fail": END}
        )

        compiled_workflow = workflow.compile()

        logger.info("langgraph_workflow_built", nodes=len(workflow.nodes))
        return compiled_workflow

    def run(self, initial_state: RemediationState) -> RemediationState:
        """
        Run one remediation session.

        CI is observed before the graph is entered so that the graph's
        recursion limit can be sized from the number of failures.
        """
        logger.info(
            "remediation_session_start",
            repo=f"{initial_state.repo_owner}/{initial_state.repo_name}",
            change_id=initial_state.change_id,
            dry_run=initial_state.dry_run,
        )

        state_dict = initial_state.model_dump()
        if initial_state.next_action == "poll":
            state_dict = self.poll_node(state_dict)

        limit = recursion_limit_for(len(state_dict.get("pending") or []))
        result_dict = self.workflow.invoke(state_dict, config={"recursion_limit": limit})
        result_state = RemediationState(**result_dict)

        logger.info(
            "remediation_session_complete",
            final_action=result_state.next_action,
            outcomes=len(result_state.outcomes),
            unresolved=len(result_state.unresolved),
            errors=len(result_state.errors),
        )
        return result_state
