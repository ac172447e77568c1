"""Git worktree lifecycle for agent isolation

This module provides WorktreeLifecycleManager for creating, reusing and
tearing down one git worktree per write-capable agent so that agents working
in parallel never write the same files.

Each write-capable agent gets:
    - A checkout at .worktrees/takt-<agent>
    - A branch takt/<agent>, created from the mainline tip on first setup
    - Its checkout path recorded in the agent registry

Setup is idempotent: a live checkout is reported as skipped, never
re-created. Cleanup force-removes every managed checkout, deletes the agent
branches and clears the registry's checkout references.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .errors import GitError, NotAGitRepositoryError, ProvisioningError
from .git import GitRunner, WorktreeEntry
from .paths import TaktPaths
from .registry import AgentRecord, Registry, save_registry

logger = logging.getLogger(__name__)


def _real(path: Path) -> Path:
    # git reports worktree paths with symlinks resolved
    return Path(os.path.realpath(str(path)))


class ProvisionStatus(str, Enum):
    """What setup did for one agent."""
    CREATED = "created"      # New branch and checkout
    ATTACHED = "attached"    # New checkout on an existing branch
    SKIPPED = "skipped"      # Live checkout or no write access
    FAILED = "failed"


@dataclass
class ProvisionResult:
    """Setup result for one agent"""
    agent: str
    status: ProvisionStatus
    path: Optional[Path] = None
    branch: str = ""
    reason: str = ""


@dataclass
class SetupReport:
    """Result of a setup run"""
    results: List[ProvisionResult] = field(default_factory=list)
    gitignore_updated: bool = False

    def _with(self, *statuses: ProvisionStatus) -> List[ProvisionResult]:
        return [r for r in self.results if r.status in statuses]

    @property
    def created(self) -> List[ProvisionResult]:
        return self._with(ProvisionStatus.CREATED, ProvisionStatus.ATTACHED)

    @property
    def skipped(self) -> List[ProvisionResult]:
        return self._with(ProvisionStatus.SKIPPED)

    @property
    def failed(self) -> List[ProvisionResult]:
        return self._with(ProvisionStatus.FAILED)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class CleanupReport:
    """Result of a cleanup run"""
    removed: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    branches_deleted: List[str] = field(default_factory=list)
    branch_errors: List[str] = field(default_factory=list)
    registry_cleared: int = 0

    @property
    def success(self) -> bool:
        # Branch deletion failures are reported but not fatal
        return not self.errors


class WorktreeLifecycleManager:
    """Provision and tear down per-agent worktrees"""

    def __init__(self, paths: TaktPaths, git: Optional[GitRunner] = None):
        """Initialize the manager.

        Args:
            paths: Path conventions for the project
            git: Git runner (defaults to one on the project root using the settings' timeouts)
        """
        self.paths = paths
        self.settings = paths.settings
        self.git = git or GitRunner(
            paths.project_root,
            metadata_timeout=self.settings.metadata_timeout,
            command_timeout=self.settings.git_timeout,
        )

    def ensure_repository(self) -> None:
        """Raise NotAGitRepositoryError unless the project is a git work tree."""
        if not self.git.is_repository():
            raise NotAGitRepositoryError(
                f"Not a git repository: {self.paths.project_root}. Worktrees require git."
            )

    def ensure_gitignore(self) -> bool:
        """Ensure the checkout root is in .gitignore.

        Returns:
            True if the file was changed
        """
        gitignore = self.paths.gitignore_file()
        name = self.settings.checkout_dir
        entry = f"{name}/"

        if gitignore.exists():
            content = gitignore.read_text()
            lines = [line.strip() for line in content.split("\n")]
            if entry in lines or name in lines or f"/{entry}" in lines or f"/{name}" in lines:
                return False
            separator = "" if not content or content.endswith("\n") else "\n"
            gitignore.write_text(content + separator + entry + "\n")
        else:
            gitignore.write_text(entry + "\n")

        logger.info(f"Added {entry} to {gitignore}")
        return True

    def live_checkouts(self) -> Dict[Path, WorktreeEntry]:
        """Existing worktrees keyed by real absolute path."""
        return {
            _real(entry.path): entry
            for entry in self.git.list_worktrees()
            if not entry.prunable
        }

    def is_live(self, checkout: Path, live: Optional[Dict[Path, WorktreeEntry]] = None) -> bool:
        """True if a registered worktree exists at checkout."""
        live = self.live_checkouts() if live is None else live
        return _real(checkout) in live

    def managed_checkouts(self) -> List[WorktreeEntry]:
        """Existing worktrees that this tool created."""
        checkout_root = _real(self.paths.checkout_root)
        prefix = self.settings.checkout_prefix
        return [
            entry for path, entry in self.live_checkouts().items()
            if path.parent == checkout_root and path.name.startswith(prefix)
        ]

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self, registry: Registry, registry_path: Optional[Path] = None) -> SetupReport:
        """Create a worktree for every write-capable agent lacking one.

        Failures for one agent are collected and do not stop the others. The
        registry is persisted afterwards when registry_path is given.

        Args:
            registry: Loaded agent registry (mutated in place)
            registry_path: Where to persist the registry

        Returns:
            SetupReport with per-agent results

        Raises:
            NotAGitRepositoryError: If the project is not a git repository
        """
        self.ensure_repository()
        report = SetupReport()

        self.paths.checkout_root.mkdir(parents=True, exist_ok=True)
        report.gitignore_updated = self.ensure_gitignore()

        try:
            self.git.prune_worktrees()
        except GitError as e:
            logger.warning(f"Could not prune worktree metadata: {e}")

        live = self.live_checkouts()

        for record in registry.records():
            report.results.append(self._provision(record, live))

        if registry_path is not None:
            save_registry(registry, registry_path)

        logger.info(
            f"Setup finished: {len(report.created)} created, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    def _provision(self, record: AgentRecord, live: Dict[Path, WorktreeEntry]) -> ProvisionResult:
        name = record.name
        if not record.has_write_access:
            return ProvisionResult(name, ProvisionStatus.SKIPPED, reason="no write access")

        checkout = self.paths.checkout_dir(name)
        branch = self.paths.branch_name(name)

        if self.is_live(checkout, live):
            record.checkout_path = self.paths.to_registry_path(checkout)
            return ProvisionResult(
                name, ProvisionStatus.SKIPPED, path=checkout, branch=branch,
                reason="worktree already exists",
            )

        if record.checkout_path:
            # Stored path without a live checkout behind it
            logger.warning(f"Clearing stale checkout path for {name}: {record.checkout_path}")
            record.checkout_path = None

        try:
            status = self._create_checkout(name, checkout, branch)
        except ProvisioningError as e:
            logger.error(str(e))
            return ProvisionResult(name, ProvisionStatus.FAILED, path=checkout, branch=branch, reason=str(e))

        record.checkout_path = self.paths.to_registry_path(checkout)
        logger.info(f"Provisioned {name} -> {checkout} [branch: {branch}]")
        return ProvisionResult(name, status, path=checkout, branch=branch)

    def _create_checkout(self, name: str, checkout: Path, branch: str) -> ProvisionStatus:
        if checkout.exists() and any(checkout.iterdir()):
            raise ProvisioningError(
                name, f"{checkout} exists but is not a registered worktree; remove it and retry"
            )
        try:
            if self.git.branch_exists(branch):
                self.git.add_worktree(checkout, branch)
                return ProvisionStatus.ATTACHED
            self.git.add_worktree(checkout, branch, start_point=self.settings.mainline_branch)
            return ProvisionStatus.CREATED
        except GitError as e:
            raise ProvisioningError(name, str(e)) from e

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self, registry: Optional[Registry] = None, registry_path: Optional[Path] = None) -> CleanupReport:
        """Remove all managed worktrees and their branches.

        Worktrees are force-removed even with uncommitted changes. Branch
        deletion is best effort. Every registry record loses its checkout
        path.

        Args:
            registry: Loaded agent registry, if there is one
            registry_path: Where to persist the cleared registry

        Returns:
            CleanupReport

        Raises:
            NotAGitRepositoryError: If the project is not a git repository
        """
        self.ensure_repository()
        report = CleanupReport()
        branches: List[str] = []

        for entry in self.managed_checkouts():
            try:
                self.git.remove_worktree(entry.path, force=True)
                report.removed.append(entry.path)
                logger.info(f"Removed worktree {entry.path}")
            except GitError as e:
                logger.error(f"Failed to remove worktree {entry.path}: {e}")
                report.errors.append(f"{entry.path}: {e}")
                continue
            namespace = f"{self.settings.branch_namespace}/"
            if entry.branch.startswith(namespace):
                branches.append(entry.branch)

        if registry is not None:
            for record in registry.records():
                branches.append(self.paths.branch_name(record.name))

        for branch in dict.fromkeys(branches):
            try:
                if not self.git.branch_exists(branch):
                    continue
                self.git.delete_branch(branch)
                report.branches_deleted.append(branch)
            except GitError as e:
                logger.warning(f"Could not delete branch {branch}: {e}")
                report.branch_errors.append(f"{branch}: {e}")

        if registry is not None:
            report.registry_cleared = registry.clear_checkouts()
            if registry_path is not None:
                save_registry(registry, registry_path)

        try:
            self.git.prune_worktrees()
        except GitError as e:
            logger.warning(f"Could not prune worktree metadata: {e}")

        return report
