"""Integrations package for external services."""

from ci_autofix.integrations.command_runner import CommandResult, CommandRunner
from ci_autofix.integrations.git_workspace import DiffStat, GitWorkspace
from ci_autofix.integrations.github_client import GitHubClient, PullRequestChecks, get_github_client
from ci_autofix.integrations.tool_resolver import ToolCommand, ToolResolver, detect_language

__all__ = [
    "CommandResult",
    "CommandRunner",
    "DiffStat",
    "GitWorkspace",
    "GitHubClient",
    "PullRequestChecks",
    "get_github_client",
    "ToolCommand",
    "ToolResolver",
    "detect_language",
]
