"""
Fixer strategy and tool resolver tests.
"""

import pytest

from ci_autofix.agents.fixers import (
    CHANGED,
    FAILED,
    NO_TOOL,
    UNCHANGED,
    DependencyAuditFixer,
    FormatFixer,
    LintFixer,
    default_registry,
)
from ci_autofix.integrations.command_runner import CommandResult
from ci_autofix.integrations.git_workspace import DiffStat
from ci_autofix.integrations.tool_resolver import ToolResolver, detect_language
from ci_autofix.models.state import ErrorKind

from conftest import FakeRunner, failure


def everything_installed(executable):
    return f"/usr/bin/{executable}"


def nothing_installed(executable):
    return None


@pytest.fixture
def resolver(tmp_path):
    return ToolResolver(str(tmp_path), which=everything_installed)


# Tool resolver

@pytest.mark.parametrize("files,expected", [
    (["a.py"], "python"),
    (["src/a.ts", "src/b.js"], "typescript"),
    (["package-lock.json"], "javascript"),
    (["main.go"], "go"),
    (["README.md"], "unknown"),
    ([], "unknown"),
])
def test_detect_language(files, expected):
    assert detect_language(files) == expected


def test_resolve_native_python_lint(resolver):
    command = resolver.resolve("python", "lint", ["a.py", "b.py"])
    assert command.args == ["ruff", "check", "--fix", "a.py", "b.py"]
    assert command.source == "native"
    assert str(command) == "ruff check --fix a.py b.py"


def test_resolve_without_files_targets_project_root(resolver):
    assert resolver.resolve("python", "lint").args == ["ruff", "check", "--fix", "."]


def test_resolve_prefers_first_available_tool(tmp_path):
    resolver = ToolResolver(str(tmp_path), which=lambda exe: "/usr/bin/ruff" if exe == "ruff" else None)
    assert resolver.resolve("python", "format", ["a.py"]).args == ["ruff", "format", "a.py"]


def test_config_override_wins(tmp_path):
    resolver = ToolResolver(
        str(tmp_path),
        overrides={"python": {"lint": "flake8-autofix --in-place {files}"}},
        which=nothing_installed,
    )
    command = resolver.resolve("python", "lint", ["a.py"])
    assert command.args == ["flake8-autofix", "--in-place", "a.py"]
    assert command.source == "config"


def test_resolve_missing_tool_returns_none(tmp_path):
    assert ToolResolver(str(tmp_path), which=nothing_installed).resolve("python", "lint") is None


def test_resolve_local_node_modules_bin(tmp_path):
    bin_dir = tmp_path / "node_modules" / ".bin"
    bin_dir.mkdir(parents=True)
    (bin_dir / "eslint").write_text("")
    resolver = ToolResolver(str(tmp_path), which=nothing_installed)

    command = resolver.resolve("typescript", "lint", ["src/a.ts"])
    assert command.args == ["npx", "eslint", "--fix", "src/a.ts"]
    assert command.language == "javascript"


def test_unknown_language_uses_project_markers(tmp_path):
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
    resolver = ToolResolver(str(tmp_path), which=everything_installed)
    assert resolver.detect_project_language() == "python"
    assert resolver.resolve("unknown", "format").args[0] == "black"


# Strategies

def test_lint_fixer_reports_changes(resolver, workspace):
    runner = FakeRunner(workspace, diff=DiffStat(files=["a.py"], lines_added=2, lines_removed=1))
    outcome = LintFixer(resolver, runner, workspace).fix(failure(ErrorKind.LINT, ["a.py"]))

    assert outcome.status == CHANGED
    assert outcome.changed_files == ["a.py"]
    assert outcome.changed_lines == 3
    assert runner.commands == [["ruff", "check", "--fix", "a.py"]]


def test_fixer_refuses_dirty_tree(resolver, workspace):
    workspace.dirty = True
    runner = FakeRunner(workspace)
    outcome = LintFixer(resolver, runner, workspace).fix(failure())

    assert outcome.status == FAILED
    assert runner.commands == []
    assert not outcome.touched_tree


def test_fixer_without_tool(tmp_path, workspace):
    resolver = ToolResolver(str(tmp_path), which=nothing_installed)
    outcome = FormatFixer(resolver, FakeRunner(workspace), workspace).fix(failure(ErrorKind.FORMAT))
    assert outcome.status == NO_TOOL


def test_fixer_tool_not_found_at_runtime(resolver, workspace):
    runner = FakeRunner(workspace, result=CommandResult(args=["ruff"], returncode=None, not_found=True))
    assert LintFixer(resolver, runner, workspace).fix(failure()).status == NO_TOOL


def test_fixer_clean_exit_without_changes(resolver, workspace):
    outcome = LintFixer(resolver, FakeRunner(workspace), workspace).fix(failure())
    assert outcome.status == UNCHANGED
    assert outcome.command == "ruff check --fix a.py"


def test_nonzero_exit_with_changes_is_kept(resolver, workspace):
    runner = FakeRunner(
        workspace,
        result=CommandResult(args=["ruff"], returncode=1, stdout="1 error remaining"),
        diff=DiffStat(files=["a.py"], lines_added=1),
    )
    outcome = LintFixer(resolver, runner, workspace).fix(failure())
    assert outcome.status == CHANGED


def test_nonzero_exit_without_changes_fails(resolver, workspace):
    runner = FakeRunner(workspace, result=CommandResult(args=["ruff"], returncode=2, stderr="config error"))
    outcome = LintFixer(resolver, runner, workspace).fix(failure())

    assert outcome.status == FAILED
    assert "config error" in outcome.error


def test_timeout_marks_tree_touched(resolver, workspace):
    runner = FakeRunner(workspace, result=CommandResult(args=["ruff"], returncode=None, timed_out=True))
    outcome = LintFixer(resolver, runner, workspace).fix(failure())

    assert outcome.status == FAILED
    assert outcome.touched_tree


def test_format_fixer_typescript(resolver, workspace):
    runner = FakeRunner(workspace, diff=DiffStat(files=["src/x.ts"], lines_added=4, lines_removed=4))
    outcome = FormatFixer(resolver, runner, workspace).fix(failure(ErrorKind.FORMAT, ["src/x.ts"]))

    assert outcome.status == CHANGED
    assert runner.commands == [["npx", "prettier", "--write", "src/x.ts"]]


def test_audit_fixer_only_accepts_manifests(resolver, workspace):
    fixer = DependencyAuditFixer(resolver, FakeRunner(workspace), workspace)
    assert fixer.accepts(["package-lock.json"])
    assert not fixer.accepts(["src/app.js"])


def test_audit_fixer_runs_package_manager(resolver, workspace):
    runner = FakeRunner(workspace, diff=DiffStat(files=["package-lock.json"], lines_added=10, lines_removed=8))
    fixer = DependencyAuditFixer(resolver, runner, workspace)
    detail = failure(ErrorKind.DEPENDENCY_VULNERABILITY, ["src/app.js", "package-lock.json"])

    assert fixer.describe(detail) == "npm audit fix"
    assert fixer.fix(detail).status == CHANGED
    assert runner.commands == [["npm", "audit", "fix"]]


def test_default_registry(resolver, workspace):
    registry = default_registry(resolver, FakeRunner(workspace), workspace)

    assert set(registry.kinds()) == {
        ErrorKind.LINT,
        ErrorKind.FORMAT,
        ErrorKind.DEPENDENCY_VULNERABILITY,
    }
    assert ErrorKind.TEST_FAILURE not in registry
    assert registry.get(ErrorKind.TYPE_ERROR) is None
    assert isinstance(registry.get(ErrorKind.LINT), LintFixer)
