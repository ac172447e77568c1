"""Tests for the worktree lifecycle manager."""

import os
from unittest.mock import patch

import pytest

from takt.errors import GitError, NotAGitRepositoryError
from takt.paths import TaktPaths
from takt.registry import load_registry
from takt.worktrees import ProvisionStatus, WorktreeLifecycleManager

from conftest import commit_file, git, read_registry, write_registry


@pytest.fixture
def paths(git_repo):
    return TaktPaths(git_repo)


@pytest.fixture
def manager(paths):
    return WorktreeLifecycleManager(paths)


@pytest.fixture
def registry_path(git_repo):
    return write_registry(git_repo, {
        "backend": {"scopePatterns": ["src/backend/**"], "tools": ["Read", "Write"]},
        "frontend": {"scopePatterns": ["src/frontend/**"], "tools": ["Edit"]},
        "reviewer": {"tools": ["Read", "Grep"]},
    })


def branches(repo):
    return git(repo, "branch", "--list", "--format=%(refname:short)").split()


class TestSetup:
    """Provisioning checkouts"""

    def test_creates_checkout_per_write_agent(self, manager, git_repo, registry_path):
        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert report.success
        assert [r.agent for r in report.created] == ["backend", "frontend"]
        assert all(r.status == ProvisionStatus.CREATED for r in report.created)
        assert (git_repo / ".worktrees" / "takt-backend" / "README.md").exists()
        assert (git_repo / ".worktrees" / "takt-frontend").is_dir()
        assert "takt/backend" in branches(git_repo)
        assert "takt/frontend" in branches(git_repo)
        assert git(git_repo / ".worktrees" / "takt-backend", "rev-parse", "--abbrev-ref", "HEAD") == "takt/backend"

    def test_read_only_agent_skipped(self, manager, git_repo, registry_path):
        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        skipped = {r.agent: r.reason for r in report.skipped}
        assert skipped == {"reviewer": "no write access"}
        assert not (git_repo / ".worktrees" / "takt-reviewer").exists()

    def test_registry_records_checkout_paths(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)

        agents = read_registry(git_repo)["agents"]
        assert agents["backend"]["checkoutPath"] == ".worktrees/takt-backend"
        assert agents["frontend"]["checkoutPath"] == ".worktrees/takt-frontend"
        assert "checkoutPath" not in agents["reviewer"]
        assert agents["backend"]["scopePatterns"] == ["src/backend/**"]

    def test_second_run_is_idempotent(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)
        before = read_registry(git_repo)

        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert report.created == []
        assert {r.agent for r in report.skipped} == {"backend", "frontend", "reviewer"}
        assert not report.gitignore_updated
        assert read_registry(git_repo) == before

    def test_gitignore_updated_once(self, manager, git_repo, registry_path):
        (git_repo / ".gitignore").write_text("node_modules")

        first = manager.setup(load_registry(registry_path), registry_path=registry_path)
        manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert first.gitignore_updated
        assert (git_repo / ".gitignore").read_text() == "node_modules\n.worktrees/\n"

    @pytest.mark.parametrize("existing", [".worktrees", ".worktrees/", "/.worktrees/"])
    def test_existing_gitignore_entry_respected(self, manager, git_repo, existing):
        (git_repo / ".gitignore").write_text(f"{existing}\n")
        assert manager.ensure_gitignore() is False
        assert (git_repo / ".gitignore").read_text() == f"{existing}\n"

    def test_gitignore_created(self, manager, git_repo):
        assert manager.ensure_gitignore() is True
        assert (git_repo / ".gitignore").read_text() == ".worktrees/\n"

    def test_existing_branch_is_attached(self, manager, git_repo, registry_path):
        """Work left on an agent branch survives a cleanup of its checkout"""
        git(git_repo, "branch", "takt/backend")
        git(git_repo, "checkout", "takt/backend")
        sha = commit_file(git_repo, "src/backend/api.py", "print('hi')\n", "Backend work")
        git(git_repo, "checkout", "main")

        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        statuses = {r.agent: r.status for r in report.created}
        assert statuses["backend"] == ProvisionStatus.ATTACHED
        assert statuses["frontend"] == ProvisionStatus.CREATED
        assert git(git_repo / ".worktrees" / "takt-backend", "rev-parse", "HEAD") == sha

    def test_stale_checkout_path_is_replaced(self, manager, git_repo):
        registry_path = write_registry(git_repo, {
            "backend": {"tools": ["Write"], "checkoutPath": "/nowhere/takt-backend"},
        })

        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert [r.agent for r in report.created] == ["backend"]
        assert read_registry(git_repo)["agents"]["backend"]["checkoutPath"] == ".worktrees/takt-backend"

    def test_one_failure_does_not_stop_others(self, manager, git_repo, registry_path):
        blocker = git_repo / ".worktrees" / "takt-backend"
        blocker.mkdir(parents=True)
        (blocker / "leftover.txt").write_text("junk")

        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert not report.success
        assert [r.agent for r in report.failed] == ["backend"]
        assert report.failed[0].reason.startswith("backend: ")
        assert [r.agent for r in report.created] == ["frontend"]
        agents = read_registry(git_repo)["agents"]
        assert "checkoutPath" not in agents["backend"]
        assert agents["frontend"]["checkoutPath"] == ".worktrees/takt-frontend"

    def test_git_failure_is_collected(self, manager, git_repo, registry_path):
        original = manager.git.add_worktree

        def flaky(path, branch, start_point=None):
            if branch == "takt/backend":
                raise GitError("git worktree add failed: simulated")
            return original(path, branch, start_point=start_point)

        with patch.object(manager.git, "add_worktree", side_effect=flaky):
            report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert [r.agent for r in report.failed] == ["backend"]
        assert "simulated" in report.failed[0].reason
        assert [r.agent for r in report.created] == ["frontend"]

    def test_new_branch_starts_from_configured_mainline(self, git_repo, registry_path):
        git(git_repo, "checkout", "-b", "develop")
        sha = commit_file(git_repo, "dev.txt", "dev\n", "Develop work")
        git(git_repo, "checkout", "main")
        from takt.config import TaktSettings
        manager = WorktreeLifecycleManager(TaktPaths(git_repo, TaktSettings(mainline_branch="develop")))

        manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert git(git_repo, "rev-parse", "takt/backend") == sha

    def test_not_a_repository(self, tmp_path):
        registry_path = write_registry(tmp_path, {"a": {"tools": ["Write"]}})
        manager = WorktreeLifecycleManager(TaktPaths(tmp_path))
        with pytest.raises(NotAGitRepositoryError):
            manager.setup(load_registry(registry_path))


class TestCleanup:
    """Tearing checkouts down"""

    def test_removes_checkouts_and_branches(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)

        report = manager.cleanup(load_registry(registry_path), registry_path=registry_path)

        assert report.success
        assert len(report.removed) == 2
        assert sorted(report.branches_deleted) == ["takt/backend", "takt/frontend"]
        assert report.registry_cleared == 2
        assert not (git_repo / ".worktrees" / "takt-backend").exists()
        assert branches(git_repo) == ["main"]
        agents = read_registry(git_repo)["agents"]
        assert all("checkoutPath" not in a for a in agents.values())

    def test_dirty_checkout_is_force_removed(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)
        checkout = git_repo / ".worktrees" / "takt-backend"
        (checkout / "README.md").write_text("modified\n")
        (checkout / "untracked.txt").write_text("new\n")

        report = manager.cleanup(load_registry(registry_path), registry_path=registry_path)

        assert report.success
        assert not checkout.exists()

    def test_unmanaged_worktrees_untouched(self, manager, git_repo, registry_path):
        other = git_repo.parent / "other-worktree"
        git(git_repo, "worktree", "add", "-b", "feature", str(other), "main")
        manager.setup(load_registry(registry_path), registry_path=registry_path)

        manager.cleanup(load_registry(registry_path), registry_path=registry_path)

        assert other.is_dir()
        assert "feature" in branches(git_repo)

    def test_works_without_registry(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)
        os.remove(registry_path)

        report = manager.cleanup()

        assert report.success
        assert len(report.removed) == 2
        assert sorted(report.branches_deleted) == ["takt/backend", "takt/frontend"]

    def test_nothing_to_clean(self, manager, registry_path):
        report = manager.cleanup(load_registry(registry_path), registry_path=registry_path)
        assert report.success
        assert report.removed == []
        assert report.branches_deleted == []

    def test_branch_delete_failure_is_not_fatal(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)

        with patch.object(manager.git, "delete_branch", side_effect=GitError("branch is locked")):
            report = manager.cleanup(load_registry(registry_path), registry_path=registry_path)

        assert report.success
        assert len(report.branch_errors) == 2
        assert report.registry_cleared == 2

    def test_setup_after_cleanup_recreates(self, manager, git_repo, registry_path):
        manager.setup(load_registry(registry_path), registry_path=registry_path)
        manager.cleanup(load_registry(registry_path), registry_path=registry_path)

        report = manager.setup(load_registry(registry_path), registry_path=registry_path)

        assert len(report.created) == 2
