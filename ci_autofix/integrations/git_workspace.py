"""
Local git working tree access for fixers and the change publisher.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import git
from git.exc import GitCommandError
import structlog

from ci_autofix.errors import PublishError

logger = structlog.get_logger()


@dataclass
class DiffStat:
    """Summary of uncommitted changes in the working tree."""
    files: List[str] = field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0

    @property
    def changed_lines(self) -> int:
        return self.lines_added + self.lines_removed


def parse_numstat(output: str) -> DiffStat:
    """Parse ``git diff --numstat`` output. Binary files count as zero lines."""
    stat = DiffStat()
    for line in output.splitlines():
        parts = line.split("\t", 2)
        if len(parts) != 3:
            continue
        added, removed, path = parts
        stat.files.append(path)
        if added.isdigit():
            stat.lines_added += int(added)
        if removed.isdigit():
            stat.lines_removed += int(removed)
    return stat


class GitWorkspace:
    """Wraps a local clone checked out at the change under review."""

    def __init__(self, path: str, remote: str = "origin"):
        self.path = path
        self.remote = remote
        self.repo = git.Repo(path)

    def current_branch(self) -> str:
        return self.repo.active_branch.name

    def is_dirty(self) -> bool:
        return self.repo.is_dirty(untracked_files=False)

    def diff_stat(self) -> DiffStat:
        """Uncommitted changes to tracked files, relative to HEAD."""
        return parse_numstat(self.repo.git.diff("HEAD", "--numstat"))

    def discard_changes(self, paths: Optional[Iterable[str]] = None):
        """Throw away uncommitted changes to tracked files."""
        paths = list(paths or [])
        if paths:
            self.repo.git.checkout("HEAD", "--", *paths)
        else:
            self.repo.git.checkout("HEAD", "--", ".")
        logger.info("working_tree_discarded", files=len(paths) or "all")

    def commit_to_branch(self, branch: str, files: List[str], message: str) -> str:
        """
        Commit the given files on a new branch and push it, then return to the
        original branch.

        Args:
            branch: New branch name
            files: Paths to stage
            message: Commit message

        Returns:
            Commit SHA
        """
        original = self.current_branch()
        try:
            head = self.repo.create_head(branch)
            head.checkout()
            self.repo.index.add(files)
            commit = self.repo.index.commit(message)
            self.repo.git.push(self.remote, f"{branch}:{branch}")
            logger.info("fix_branch_pushed", branch=branch, sha=commit.hexsha, files=len(files))
            return commit.hexsha
        except (GitCommandError, OSError) as e:
            logger.error("fix_branch_failed", branch=branch, error=str(e))
            raise PublishError(f"Could not publish fix branch {branch}: {e}", branch=branch) from e
        finally:
            self.repo.git.checkout(original)

    def delete_local_branch(self, branch: str):
        if branch in self.repo.heads:
            self.repo.delete_head(branch, force=True)
            logger.info("local_branch_deleted", branch=branch)
