"""
GitHub API client for check status, fix pull requests, and branch cleanup.
"""

from typing import List, Optional, Tuple

from github import Github, GithubException, RateLimitExceededException, Auth
from github.PullRequest import PullRequest
from github.Repository import Repository
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from ci_autofix.models.state import CheckState, CheckStatus

logger = structlog.get_logger()

# Legacy commit status states -> check states
COMMIT_STATUS_STATES = {
    "pending": CheckState.IN_PROGRESS,
    "success": CheckState.SUCCESS,
    "failure": CheckState.FAILURE,
    "error": CheckState.FAILURE,
}


def is_transient(error: BaseException) -> bool:
    """Server-side errors and rate limiting are worth retrying, other client errors are not."""
    if isinstance(error, RateLimitExceededException):
        return True
    if not isinstance(error, GithubException):
        return False
    if error.status in (500, 502, 503, 504):
        return True
    # Secondary rate limits come back as a plain 403
    message = error.data.get("message", "") if isinstance(error.data, dict) else str(error.data)
    return error.status == 403 and "rate limit" in message.lower()


def _conclusion_state(conclusion: Optional[str]) -> CheckState:
    """Map a check-run conclusion; unknown values like startup_failure or stale fold in."""
    try:
        return CheckState(conclusion or "neutral")
    except ValueError:
        return CheckState.FAILURE if "failure" in conclusion else CheckState.NEUTRAL


class GitHubClient:
    """Client for GitHub API operations."""

    def __init__(self, token: str, api_url: str = "https://api.github.com"):
        """
        Initialize GitHub client.

        Args:
            token: GitHub Personal Access Token or App token
            api_url: GitHub API base URL (for Enterprise)
        """
        self.token = token
        self.api_url = api_url

        auth = Auth.Token(token)
        if api_url == "https://api.github.com":
            self.client = Github(auth=auth)
        else:
            self.client = Github(base_url=api_url, auth=auth)

    def check_rate_limit(self) -> Tuple[int, int]:
        """
        Check GitHub API rate limit.

        Returns:
            Tuple of (remaining, limit)
        """
        rate_limit = self.client.get_rate_limit()
        core = rate_limit.core
        logger.info(
            "github_rate_limit",
            remaining=core.remaining,
            limit=core.limit,
            reset=core.reset,
        )
        return core.remaining, core.limit

    def get_repository(self, owner: str, name: str) -> Repository:
        """Get repository object."""
        try:
            repo = self.client.get_repo(f"{owner}/{name}")
            logger.info("repository_fetched", repo=f"{owner}/{name}")
            return repo
        except GithubException as e:
            logger.error("failed_to_fetch_repository", repo=f"{owner}/{name}", error=str(e))
            raise

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    def get_pull_request(self, repo: Repository, number: int) -> PullRequest:
        """Get a pull request by number."""
        return repo.get_pull(number)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    def get_check_statuses(self, repo: Repository, number: int) -> List[CheckStatus]:
        """
        Collect check runs and legacy commit statuses for a PR's head commit.

        Args:
            repo: Repository object
            number: Pull request number

        Returns:
            One CheckStatus per check run / status context
        """
        pr = repo.get_pull(number)
        commit = repo.get_commit(pr.head.sha)

        statuses: List[CheckStatus] = []
        for run in commit.get_check_runs():
            if run.status != "completed":
                state = CheckState.QUEUED if run.status == "queued" else CheckState.IN_PROGRESS
            else:
                state = _conclusion_state(run.conclusion)
            output = run.output
            statuses.append(CheckStatus(
                name=run.name,
                state=state,
                started_at=run.started_at,
                title=(output.title if output else None) or "",
                summary=(output.summary if output else None) or "",
                text=(output.text if output else None) or "",
                url=run.html_url,
            ))

        combined = commit.get_combined_status()
        for status in combined.statuses:
            statuses.append(CheckStatus(
                name=status.context,
                state=COMMIT_STATUS_STATES.get(status.state, CheckState.NEUTRAL),
                started_at=status.created_at,
                summary=status.description or "",
                url=status.target_url,
            ))

        logger.debug(
            "check_statuses_fetched",
            pr_number=number,
            sha=pr.head.sha,
            count=len(statuses),
        )
        return statuses

    def create_pull_request(
        self,
        repo: Repository,
        title: str,
        body: str,
        head: str,
        base: str = "main",
    ) -> PullRequest:
        """
        Create a pull request.

        Args:
            repo: Repository object
            title: PR title
            body: PR description
            head: Head branch
            base: Base branch

        Returns:
            PullRequest object
        """
        try:
            pr = repo.create_pull(
                title=title,
                body=body,
                head=head,
                base=base,
            )
            logger.info("pull_request_created", pr_number=pr.number, url=pr.html_url)
            return pr
        except GithubException as e:
            logger.error("failed_to_create_pr", head=head, base=base, error=str(e))
            raise

    def close_pull_request(self, repo: Repository, number: int, comment: Optional[str] = None):
        """Close a pull request, optionally leaving a comment first."""
        try:
            pr = repo.get_pull(number)
            if comment:
                pr.create_issue_comment(comment)
            pr.edit(state="closed")
            logger.info("pull_request_closed", pr_number=number)
        except GithubException as e:
            logger.error("failed_to_close_pr", pr_number=number, error=str(e))
            raise

    def delete_branch(self, repo: Repository, branch_name: str) -> bool:
        """
        Delete a remote branch.

        Returns:
            True if deleted, False if it did not exist
        """
        try:
            repo.get_git_ref(f"heads/{branch_name}").delete()
            logger.info("branch_deleted", branch=branch_name)
            return True
        except GithubException as e:
            if e.status == 404:
                logger.warning("branch_already_gone", branch=branch_name)
                return False
            logger.error("failed_to_delete_branch", branch=branch_name, error=str(e))
            raise


class PullRequestChecks:
    """Check-status source bound to one repository."""

    def __init__(self, github_client: GitHubClient, owner: str, name: str):
        self.github_client = github_client
        self.owner = owner
        self.name = name
        self._repo: Optional[Repository] = None

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            self._repo = self.github_client.get_repository(self.owner, self.name)
        return self._repo

    def get_check_statuses(self, change_id: int) -> List[CheckStatus]:
        return self.github_client.get_check_statuses(self.repo, change_id)


def get_github_client(token: str, api_url: str = "https://api.github.com") -> GitHubClient:
    """Create a new GitHub client."""
    return GitHubClient(token=token, api_url=api_url)
