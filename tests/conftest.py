"""
Shared fakes for the auto-fix tests.

No network and no real git: every collaborator is an in-memory stand-in
with the same interface as the production one.
"""

from typing import Dict, List, Optional, Sequence

import pytest

from ci_autofix.agents.fixers import CHANGED, FixerOutcome
from ci_autofix.agents.local_checks import LocalCheckResult
from ci_autofix.errors import PublishError
from ci_autofix.integrations.command_runner import CommandResult
from ci_autofix.integrations.git_workspace import DiffStat
from ci_autofix.models.state import (
    CheckState,
    CheckStatus,
    ErrorKind,
    FailureDetail,
    FixReference,
)


def check(name: str, state: CheckState, **kwargs) -> CheckStatus:
    return CheckStatus(name=name, state=state, **kwargs)


def failure(
    kind: ErrorKind = ErrorKind.LINT,
    files: Sequence[str] = ("a.py",),
    check_name: str = "lint",
    summary: str = "Lint errors found",
    log_excerpt: str = "",
) -> FailureDetail:
    return FailureDetail(
        check_name=check_name,
        summary=summary,
        error_kind=kind,
        affected_files=tuple(files),
        log_excerpt=log_excerpt,
    )


class FakeCheckSource:
    """Replays check snapshots per change id; the last snapshot repeats."""

    def __init__(self, snapshots: Optional[Dict[int, List[List[CheckStatus]]]] = None):
        self.snapshots = snapshots or {}
        self.calls: List[int] = []

    def get_check_statuses(self, change_id: int) -> List[CheckStatus]:
        self.calls.append(change_id)
        sequence = self.snapshots.get(change_id, [[]])
        index = min(self.calls.count(change_id) - 1, len(sequence) - 1)
        return list(sequence[index])


class RecordingSleep:
    """Simulated clock: records every suspension instead of blocking."""

    def __init__(self):
        self.waits: List[float] = []

    def __call__(self, seconds: float):
        self.waits.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.waits)


class FakeWorkspace:
    """Working tree whose diff is set by the fake tool run."""

    def __init__(self, branch: str = "feature"):
        self.branch = branch
        self.dirty = False
        self.pending_diff = DiffStat()
        self.discarded: List[Optional[List[str]]] = []
        self.commits: List[tuple] = []
        self.deleted_branches: List[str] = []

    def current_branch(self) -> str:
        return self.branch

    def is_dirty(self) -> bool:
        return self.dirty

    def diff_stat(self) -> DiffStat:
        return self.pending_diff

    def discard_changes(self, paths=None):
        self.discarded.append(list(paths) if paths else None)
        self.pending_diff = DiffStat()

    def commit_to_branch(self, branch: str, files: List[str], message: str) -> str:
        self.commits.append((branch, list(files), message))
        self.pending_diff = DiffStat()
        return "0" * 40

    def delete_local_branch(self, branch: str):
        self.deleted_branches.append(branch)


class FakeRunner:
    """Returns a canned CommandResult and applies a diff to the workspace."""

    def __init__(self, workspace: FakeWorkspace, result: Optional[CommandResult] = None,
                 diff: Optional[DiffStat] = None):
        self.workspace = workspace
        self.result = result
        self.diff = diff
        self.commands: List[List[str]] = []

    def run(self, args: List[str]) -> CommandResult:
        self.commands.append(list(args))
        if self.diff is not None:
            self.workspace.pending_diff = self.diff
        return self.result or CommandResult(args=list(args), returncode=0)


class FakeFixer:
    """Strategy returning a preset outcome and counting invocations."""

    def __init__(self, kind: ErrorKind, outcome: Optional[FixerOutcome] = None,
                 command: Optional[str] = "ruff check --fix a.py", manifests_only: bool = False):
        self.kind = kind
        self.outcome = outcome or FixerOutcome(
            status=CHANGED, changed_files=["a.py"], changed_lines=3, command=command,
        )
        self.command = command
        self.manifests_only = manifests_only
        self.calls = 0

    def accepts(self, affected_files: Sequence[str]) -> bool:
        if self.manifests_only:
            return any(f.endswith("package-lock.json") for f in affected_files)
        return True

    def describe(self, failure: FailureDetail) -> Optional[str]:
        return self.command

    def fix(self, failure: FailureDetail) -> FixerOutcome:
        self.calls += 1
        return self.outcome


class FakeChecks:
    """Project checks that pass or fail on demand."""

    def __init__(self, success: bool = True, command: str = "npm test"):
        self.success = success
        self.command = command
        self.runs = 0

    def run(self) -> LocalCheckResult:
        self.runs += 1
        if self.success:
            return LocalCheckResult(success=True, commands=[self.command])
        return LocalCheckResult(
            success=False,
            commands=[self.command],
            output="1 failing",
            errors=["AssertionError: expected 2 got 3", "1 failing"],
        )


class FakePublisher:
    """Records published, closed and deleted fix changes."""

    def __init__(self, fail_with: Optional[str] = None):
        self.created: List[dict] = []
        self.closed: List[FixReference] = []
        self.deleted: List[FixReference] = []
        self.fail_with = fail_with

    def create_fix_change(self, base_change_id, title, body, files, error_kind=None) -> FixReference:
        if self.fail_with:
            raise PublishError(self.fail_with, branch="autofix/broken")
        self.created.append({
            "base_change_id": base_change_id,
            "title": title,
            "body": body,
            "files": list(files),
            "error_kind": error_kind,
        })
        number = 100 + len(self.created)
        return FixReference(
            number=number,
            url=f"https://github.com/acme/app/pull/{number}",
            branch=f"autofix/{base_change_id}-{number}",
            base_branch="feature",
        )

    def close_change(self, ref: FixReference, reason: Optional[str] = None):
        self.closed.append(ref)

    def delete_branch(self, ref: FixReference):
        self.deleted.append(ref)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def workspace():
    return FakeWorkspace()


@pytest.fixture
def publisher():
    return FakePublisher()
