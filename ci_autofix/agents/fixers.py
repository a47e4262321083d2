"""
Fixer strategies.

One strategy per fixable ErrorKind. A strategy runs a single deterministic
external tool against the working tree and reports what changed; it never
publishes and never rolls back.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import structlog

from ci_autofix.agents.classifier import is_manifest_file
from ci_autofix.integrations.command_runner import CommandRunner
from ci_autofix.integrations.git_workspace import GitWorkspace
from ci_autofix.integrations.tool_resolver import ToolCommand, ToolResolver, detect_language
from ci_autofix.models.state import ErrorKind, FailureDetail

logger = structlog.get_logger()

CHANGED = "changed"
UNCHANGED = "unchanged"
NO_TOOL = "no_tool"
FAILED = "failed"


@dataclass
class FixerOutcome:
    """What a strategy did to the working tree."""
    status: str
    changed_files: List[str] = field(default_factory=list)
    changed_lines: int = 0
    command: Optional[str] = None
    error: Optional[str] = None
    # The tool ran and may have left partial edits behind
    touched_tree: bool = False


class Fixer(Protocol):
    kind: ErrorKind

    def accepts(self, affected_files: Sequence[str]) -> bool:
        ...

    def describe(self, failure: FailureDetail) -> Optional[str]:
        ...

    def fix(self, failure: FailureDetail) -> FixerOutcome:
        ...


def run_tool(
    task: str,
    files: Sequence[str],
    resolver: ToolResolver,
    runner: CommandRunner,
    workspace: GitWorkspace,
) -> FixerOutcome:
    """
    Resolve, run and diff a fix tool.

    A non-zero exit that still changed files is kept as a change: linters
    commonly exit non-zero when some findings are not auto-fixable.
    """
    if workspace.is_dirty():
        return FixerOutcome(status=FAILED, error="working tree has uncommitted changes")

    command = resolver.resolve(detect_language(files), task, files)
    if command is None:
        return FixerOutcome(status=NO_TOOL, error=f"no {task} tool available")

    result = runner.run(command.args)
    if result.not_found:
        return FixerOutcome(status=NO_TOOL, command=str(command), error=result.stderr)
    if result.timed_out:
        return FixerOutcome(
            status=FAILED,
            command=str(command),
            error=result.stderr or "tool timed out",
            touched_tree=True,
        )

    stat = workspace.diff_stat()
    if not stat.files:
        if result.ok:
            return FixerOutcome(status=UNCHANGED, command=str(command))
        return FixerOutcome(
            status=FAILED,
            command=str(command),
            error=(result.stderr or result.stdout)[-500:] or f"exit code {result.returncode}",
        )

    if not result.ok:
        logger.info("tool_exit_nonzero_with_changes", command=str(command), returncode=result.returncode)

    return FixerOutcome(
        status=CHANGED,
        changed_files=stat.files,
        changed_lines=stat.changed_lines,
        command=str(command),
    )


def _describe(resolver: ToolResolver, task: str, files: Sequence[str]) -> Optional[str]:
    command: Optional[ToolCommand] = resolver.resolve(detect_language(files), task, files)
    return str(command) if command else None


class LintFixer:
    """Runs the project's linter in auto-fix mode."""

    kind = ErrorKind.LINT
    task = "lint"

    def __init__(self, resolver: ToolResolver, runner: CommandRunner, workspace: GitWorkspace):
        self.resolver = resolver
        self.runner = runner
        self.workspace = workspace

    def accepts(self, affected_files: Sequence[str]) -> bool:
        return True

    def describe(self, failure: FailureDetail) -> Optional[str]:
        return _describe(self.resolver, self.task, failure.affected_files)

    def fix(self, failure: FailureDetail) -> FixerOutcome:
        return run_tool(self.task, failure.affected_files, self.resolver, self.runner, self.workspace)


class FormatFixer:
    """Runs the project's formatter over the affected files."""

    kind = ErrorKind.FORMAT
    task = "format"

    def __init__(self, resolver: ToolResolver, runner: CommandRunner, workspace: GitWorkspace):
        self.resolver = resolver
        self.runner = runner
        self.workspace = workspace

    def accepts(self, affected_files: Sequence[str]) -> bool:
        return True

    def describe(self, failure: FailureDetail) -> Optional[str]:
        return _describe(self.resolver, self.task, failure.affected_files)

    def fix(self, failure: FailureDetail) -> FixerOutcome:
        return run_tool(self.task, failure.affected_files, self.resolver, self.runner, self.workspace)


class DependencyAuditFixer:
    """Applies the package manager's audit fix; only for lock/manifest failures."""

    kind = ErrorKind.DEPENDENCY_VULNERABILITY
    task = "audit"

    def __init__(self, resolver: ToolResolver, runner: CommandRunner, workspace: GitWorkspace):
        self.resolver = resolver
        self.runner = runner
        self.workspace = workspace

    def accepts(self, affected_files: Sequence[str]) -> bool:
        return any(is_manifest_file(f) for f in affected_files)

    def _manifests(self, failure: FailureDetail) -> List[str]:
        return [f for f in failure.affected_files if is_manifest_file(f)]

    def describe(self, failure: FailureDetail) -> Optional[str]:
        return _describe(self.resolver, self.task, self._manifests(failure))

    def fix(self, failure: FailureDetail) -> FixerOutcome:
        return run_tool(self.task, self._manifests(failure), self.resolver, self.runner, self.workspace)


class FixerRegistry:
    """Routing table from ErrorKind to its strategy."""

    def __init__(self, fixers: Optional[Sequence[Fixer]] = None):
        self._fixers: Dict[ErrorKind, Fixer] = {}
        for fixer in fixers or []:
            self.register(fixer)

    def register(self, fixer: Fixer):
        if fixer.kind in self._fixers:
            logger.info("fixer_replaced", error_kind=fixer.kind.value)
        self._fixers[fixer.kind] = fixer

    def get(self, kind: ErrorKind) -> Optional[Fixer]:
        return self._fixers.get(kind)

    def kinds(self) -> List[ErrorKind]:
        return list(self._fixers)

    def __contains__(self, kind: ErrorKind) -> bool:
        return kind in self._fixers


def default_registry(
    resolver: ToolResolver,
    runner: CommandRunner,
    workspace: GitWorkspace,
) -> FixerRegistry:
    """Lint, Format and DependencyVulnerability strategies."""
    return FixerRegistry([
        LintFixer(resolver, runner, workspace),
        FormatFixer(resolver, runner, workspace),
        DependencyAuditFixer(resolver, runner, workspace),
    ])
