"""
Git command runner.

Thin wrapper around the git executable used by the lifecycle manager and the
merge coordinator. Every invocation has a bounded timeout: short for metadata
queries, longer for commands that touch the working tree.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import GitError, GitTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class WorktreeEntry:
    """One entry of `git worktree list --porcelain`."""
    path: Path
    head: str = ""
    branch: str = ""        # short name, empty when detached
    bare: bool = False
    detached: bool = False
    prunable: bool = False


def parse_worktree_porcelain(output: str) -> List[WorktreeEntry]:
    """Parse `git worktree list --porcelain` output into entries."""
    entries = []
    current: Optional[WorktreeEntry] = None
    for line in output.split("\n"):
        if line.startswith("worktree "):
            if current is not None:
                entries.append(current)
            current = WorktreeEntry(path=Path(line[len("worktree "):]))
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].replace("refs/heads/", "", 1)
        elif line == "bare":
            current.bare = True
        elif line == "detached":
            current.detached = True
        elif line.startswith("prunable"):
            current.prunable = True
        elif line == "":
            entries.append(current)
            current = None
    if current is not None:
        entries.append(current)
    return entries


class GitRunner:
    """Run git commands against one repository."""

    def __init__(
        self,
        repo_root: Path,
        metadata_timeout: float = 5.0,
        command_timeout: float = 120.0,
    ):
        """
        Args:
            repo_root: Path to the main working tree
            metadata_timeout: Seconds allowed for read-only queries
            command_timeout: Seconds allowed for commands that change state
        """
        self.repo_root = Path(repo_root)
        self.metadata_timeout = metadata_timeout
        self.command_timeout = command_timeout

    def run(
        self,
        args: List[str],
        check: bool = False,
        timeout: Optional[float] = None,
        cwd: Optional[Path] = None,
    ) -> subprocess.CompletedProcess:
        """Run a git command.

        Args:
            args: Git command arguments (without 'git')
            check: Raise GitError on non-zero exit
            timeout: Seconds before the command is killed (defaults to command_timeout)
            cwd: Working directory (defaults to repo_root)

        Returns:
            CompletedProcess result

        Raises:
            GitTimeoutError: If the command timed out
            GitError: If check is set and the command failed, or git could not start
        """
        timeout = timeout or self.command_timeout
        logger.debug(f"git {' '.join(args)}")
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=cwd or self.repo_root,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitTimeoutError(
                f"git {' '.join(args)} timed out after {timeout:g}s", args=args
            )
        except OSError as e:
            raise GitError(f"git {' '.join(args)} could not be run: {e}", args=args)

        if check and result.returncode != 0:
            stderr = result.stderr.strip() or result.stdout.strip()
            raise GitError(
                f"git {' '.join(args)} failed: {stderr}",
                args=args,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def query(self, args: List[str], check: bool = False) -> subprocess.CompletedProcess:
        """Run a read-only metadata query with the short timeout."""
        return self.run(args, check=check, timeout=self.metadata_timeout)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_repository(self) -> bool:
        try:
            result = self.query(["rev-parse", "--is-inside-work-tree"])
        except GitError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self.query(["rev-parse", "--abbrev-ref", "HEAD"], check=True).stdout.strip()

    def head_sha(self) -> str:
        return self.query(["rev-parse", "HEAD"], check=True).stdout.strip()

    def branch_exists(self, branch_name: str) -> bool:
        result = self.query(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"])
        return result.returncode == 0

    def commits_ahead(self, branch: str, base: str) -> int:
        """Count commits on branch that are not on base."""
        result = self.query(["rev-list", "--count", f"{base}..{branch}"], check=True)
        try:
            return int(result.stdout.strip())
        except ValueError:
            raise GitError(f"Unexpected rev-list output: {result.stdout!r}")

    def merge_in_progress(self) -> bool:
        result = self.query(["rev-parse", "--quiet", "--verify", "MERGE_HEAD"])
        return result.returncode == 0

    def list_worktrees(self) -> List[WorktreeEntry]:
        result = self.query(["worktree", "list", "--porcelain"], check=True)
        return parse_worktree_porcelain(result.stdout)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def add_worktree(self, path: Path, branch: str, start_point: Optional[str] = None) -> None:
        """Attach a worktree to a branch, creating the branch from start_point if given."""
        if start_point is None:
            self.run(["worktree", "add", str(path), branch], check=True)
        else:
            self.run(["worktree", "add", "-b", branch, str(path), start_point], check=True)

    def remove_worktree(self, path: Path, force: bool = True) -> None:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        self.run(args, check=True)

    def prune_worktrees(self) -> None:
        self.run(["worktree", "prune"], check=True)

    def delete_branch(self, branch_name: str) -> None:
        self.run(["branch", "-D", branch_name], check=True)

    def checkout(self, branch: str) -> None:
        self.run(["checkout", branch], check=True)

    def merge(self, branch: str, message: str) -> subprocess.CompletedProcess:
        """Non-fast-forward merge of branch into the checked-out branch (not checked)."""
        return self.run(["merge", "--no-ff", branch, "-m", message])
