"""
Main entry point for the CI auto-fix loop.
"""

import argparse
import signal
import sys
import threading
from datetime import datetime

from ci_autofix.config import get_config
from ci_autofix.logging_config import configure_logging, get_logger
from ci_autofix.models.state import RemediationState
from ci_autofix.orchestrator import RemediationOrchestrator

logger = get_logger(__name__)

STATUS_MARKS = {
    "fixed": "✓",
    "partially_fixed": "~",
    "dry_run": "·",
    "rolled_back": "↺",
    "skipped": "-",
    "unfixed": "✗",
}


def install_interrupt_handler(cancel_event: threading.Event):
    """
    First Ctrl-C cancels the session at its next step; a second one aborts.

    Returns the previous SIGINT handler.
    """
    def handle_interrupt(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        logger.info("autofix_cancel_requested")
        print("\nCancelling after the current step (Ctrl-C again to abort)")

    return signal.signal(signal.SIGINT, handle_interrupt)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="CI Auto-Fix - remediate failing pull request checks with deterministic tools"
    )

    parser.add_argument(
        "--repo",
        required=True,
        help="Repository in format owner/name (e.g., octocat/Hello-World)",
    )

    parser.add_argument(
        "--pr",
        required=True,
        type=int,
        help="Pull request number whose checks should be remediated",
    )

    parser.add_argument(
        "--config",
        help="Path to config.yaml (default: ./config.yaml)",
    )

    parser.add_argument(
        "--workdir",
        default=".",
        help="Local clone checked out on the PR branch (default: .)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run mode - resolve fix commands but run nothing and open no PRs",
    )

    parser.add_argument(
        "--no-verify",
        action="store_true",
        help="Publish fixes without waiting for CI on the fix PR",
    )

    parser.add_argument(
        "--metrics-file",
        help="Write auto-fix metrics as JSON to this path",
    )

    return parser.parse_args(argv)


def print_results(state: RemediationState):
    """Print the session report: one line per failure with its reason."""
    print(f"\n=== Remediation of {state.repo_owner}/{state.repo_name}#{state.change_id} ===")

    if state.poll_result:
        print(f"CI: {state.poll_result.outcome.value} "
              f"({len(state.poll_result.checks)} checks, {len(state.failures)} failing)")

    if not state.outcomes and state.next_action != "fail":
        print("\n✓ No failing checks")

    for outcome in state.outcomes:
        mark = STATUS_MARKS.get(outcome.status, "?")
        print(f"  {mark} {outcome.failure.check_name} "
              f"[{outcome.failure.error_kind.value}] {outcome.status}: {outcome.reason}")
        fix = outcome.fix_result
        if fix and fix.command:
            print(f"      Command: {fix.command}")
        if fix and fix.fix_reference:
            print(f"      PR #{fix.fix_reference.number}: {fix.fix_reference.url}")
        if outcome.verification:
            v = outcome.verification
            print(f"      Failing: {v.original_failing_count} -> {v.remaining_failing_count}")

    if state.errors:
        print("\nErrors:")
        for error in state.errors:
            print(f"  - {error}")

    if state.next_action == "fail":
        print("\n✗ Remediation failed!")
    elif state.unresolved:
        print(f"\n⚠ {len(state.unresolved)} failure(s) need attention")
    else:
        print("\n✓ Remediation completed successfully!")


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    # Configure logging
    configure_logging(debug=args.debug)

    logger.info("autofix_starting", repo=args.repo, pr=args.pr, dry_run=args.dry_run)

    # Parse repository owner/name
    try:
        repo_owner, repo_name = args.repo.split("/", 1)
    except ValueError:
        logger.error("invalid_repo_format", repo=args.repo)
        print(f"Error: Invalid repository format '{args.repo}'. Use 'owner/name'.")
        sys.exit(1)

    # Load configuration
    try:
        config = get_config(args.config)
        logger.info("config_loaded")
    except Exception as e:
        logger.error("config_load_failed", error=str(e))
        print(f"Error loading config: {e}")
        sys.exit(1)

    cancel_event = threading.Event()

    # Initialize orchestrator
    try:
        orchestrator = RemediationOrchestrator.from_config(
            config,
            repo_owner,
            repo_name,
            workdir=args.workdir,
            change_id=args.pr,
            cancel_event=cancel_event,
        )
        logger.info("orchestrator_initialized")
    except Exception as e:
        logger.error("orchestrator_init_failed", error=str(e))
        print(f"Error initializing orchestrator: {e}")
        sys.exit(1)

    initial_state = RemediationState(
        repo_owner=repo_owner,
        repo_name=repo_name,
        change_id=args.pr,
        dry_run=args.dry_run or config.dry_run,
        verify=not args.no_verify,
    )

    start_time = datetime.utcnow()
    install_interrupt_handler(cancel_event)

    try:
        final_state = orchestrator.run(initial_state)

        print_results(final_state)

        if args.metrics_file:
            with open(args.metrics_file, "w") as f:
                f.write(orchestrator.fix_orchestrator.export_metrics())

        duration = (datetime.utcnow() - start_time).total_seconds()

        logger.info("autofix_complete",
                   duration=duration,
                   final_action=final_state.next_action,
                   outcomes=len(final_state.outcomes),
                   unresolved=len(final_state.unresolved))

        # Exit with appropriate code
        if cancel_event.is_set():
            sys.exit(130)
        elif final_state.next_action == "fail" or final_state.unresolved:
            sys.exit(1)
        else:
            sys.exit(0)

    except KeyboardInterrupt:
        logger.info("autofix_interrupted")
        print("\nOperation interrupted by user")
        sys.exit(130)

    except Exception as e:
        logger.error("autofix_exception", error=str(e), exc_info=True)
        print(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
