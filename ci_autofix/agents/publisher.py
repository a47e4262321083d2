"""
Change Publisher.

Publishes an auto-fix as its own branch and pull request against the
branch under review, and withdraws it again on rollback.
"""

import time
from typing import List, Optional, Sequence

from github import GithubException
import structlog

from ci_autofix.errors import PublishError
from ci_autofix.integrations.git_workspace import GitWorkspace
from ci_autofix.integrations.github_client import GitHubClient
from ci_autofix.models.state import ErrorKind, FailureDetail, FixReference

logger = structlog.get_logger()

TITLES = {
    ErrorKind.LINT: "fix: auto-fix linting errors",
    ErrorKind.FORMAT: "style: auto-format code",
    ErrorKind.DEPENDENCY_VULNERABILITY: "fix: auto-fix dependency vulnerabilities",
}


def build_title(failure: FailureDetail, base_change_id: int) -> str:
    """Generate concise PR title."""
    prefix = TITLES.get(failure.error_kind, f"fix: auto-fix {failure.error_kind.value}")
    return f"{prefix} (#{base_change_id})"


def build_description(
    failure: FailureDetail,
    base_change_id: int,
    files: Sequence[str],
    changed_lines: int,
    command: Optional[str],
) -> str:
    """Generate the PR description from a template."""
    parts = [
        "## Automated CI fix",
        "",
        f"The `{failure.check_name}` check failed on #{base_change_id} with a "
        f"`{failure.error_kind.value}` error that a deterministic tool can fix.",
        "",
        "### Details",
        "",
    ]
    if command:
        parts.append(f"- **Command**: `{command}`")
    parts.extend([
        f"- **Changed lines**: {changed_lines}",
        f"- **Files**: {len(files)}",
        "",
    ])
    parts.extend(f"  - `{f}`" for f in files)
    parts.extend([
        "",
        "CI is re-run on this branch; if the failure does not improve this PR is "
        "closed and its branch deleted automatically.",
        "",
        "---",
        "",
        "*Generated by ci-autofix*",
    ])
    return "\n".join(parts)


class ChangePublisher:
    """Creates and withdraws fix pull requests."""

    def __init__(
        self,
        github_client: GitHubClient,
        workspace: GitWorkspace,
        repo_owner: str,
        repo_name: str,
        branch_prefix: str = "autofix/",
    ):
        """
        Initialize publisher.

        Args:
            github_client: GitHub API client
            workspace: Local clone checked out on the branch under review
            repo_owner: Repository owner
            repo_name: Repository name
            branch_prefix: Prefix for fix branch names
        """
        self.github_client = github_client
        self.workspace = workspace
        self.repo_owner = repo_owner
        self.repo_name = repo_name
        self.branch_prefix = branch_prefix
        self._repo = None

    @property
    def repo(self):
        if self._repo is None:
            self._repo = self.github_client.get_repository(self.repo_owner, self.repo_name)
        return self._repo

    def create_fix_change(
        self,
        base_change_id: int,
        title: str,
        body: str,
        files: List[str],
        error_kind: Optional[ErrorKind] = None,
    ) -> FixReference:
        """
        Commit the working tree changes to a new branch and open a PR.

        Raises:
            PublishError: branch, push or PR creation failed
        """
        base_branch = self.workspace.current_branch()
        suffix = f"-{error_kind.value}" if error_kind else ""
        branch = f"{self.branch_prefix}{base_change_id}{suffix}-{int(time.time())}"

        logger.info(
            "publishing_fix",
            base_change_id=base_change_id,
            base_branch=base_branch,
            branch=branch,
            files=len(files),
        )

        self.workspace.commit_to_branch(branch, files, f"{title}\n\n{body}")

        try:
            pr = self.github_client.create_pull_request(
                repo=self.repo,
                title=title,
                body=body,
                head=branch,
                base=base_branch,
            )
        except GithubException as e:
            self._cleanup_branch(branch)
            raise PublishError(f"Could not open fix PR for {branch}: {e}", branch=branch) from e

        logger.info("fix_published", pr_number=pr.number, pr_url=pr.html_url, branch=branch)
        return FixReference(
            number=pr.number,
            url=pr.html_url,
            branch=branch,
            base_branch=base_branch,
        )

    def close_change(self, ref: FixReference, reason: Optional[str] = None):
        """Close the fix PR."""
        comment = f"Closing automatically: {reason}" if reason else None
        try:
            self.github_client.close_pull_request(self.repo, ref.number, comment=comment)
        except GithubException as e:
            raise PublishError(f"Could not close fix PR #{ref.number}: {e}", branch=ref.branch) from e

    def delete_branch(self, ref: FixReference):
        """Delete the fix branch remotely and locally."""
        try:
            self.github_client.delete_branch(self.repo, ref.branch)
        except GithubException as e:
            raise PublishError(f"Could not delete branch {ref.branch}: {e}", branch=ref.branch) from e
        self.workspace.delete_local_branch(ref.branch)

    def _cleanup_branch(self, branch: str):
        try:
            self.github_client.delete_branch(self.repo, branch)
        except GithubException as e:
            logger.warning("orphan_fix_branch", branch=branch, error=str(e))
        self.workspace.delete_local_branch(branch)
