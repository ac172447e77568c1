"""
Tests for the merge coordinator.

Tests cover:
- Skipping branches without changes
- Pre-merge test gate in each checkout
- Conflict detection and rollback of the mainline
- Final suite on the mainline after all merges
"""

from unittest.mock import patch

import pytest

from takt.config import TaktSettings
from takt.errors import GitError, MainlineUnavailableError
from takt.gates import TestGate
from takt.merge import (
    MergeCoordinator,
    MergeOutcome,
    RecoveryAction,
    is_conflict_output,
)
from takt.paths import TaktPaths
from takt.registry import load_registry
from takt.worktrees import WorktreeLifecycleManager

from conftest import commit_file, git, write_registry


@pytest.fixture
def paths(git_repo):
    return TaktPaths(git_repo)


@pytest.fixture
def provisioned(git_repo, paths):
    """Two agents with live checkouts on takt/alpha and takt/beta"""
    registry_path = write_registry(git_repo, {
        "alpha": {"scopePatterns": ["src/alpha/**"], "tools": ["Write"]},
        "beta": {"scopePatterns": ["src/beta/**"], "tools": ["Write"]},
    })
    WorktreeLifecycleManager(paths).setup(load_registry(registry_path), registry_path=registry_path)
    return registry_path


def checkout(git_repo, agent):
    return git_repo / ".worktrees" / f"takt-{agent}"


def spy_gate():
    gate = TestGate(timeout=60)
    return gate, patch.object(gate, "run", wraps=gate.run)


class TestMergeRun:
    """End-to-end merge runs against a real repository"""

    def test_no_changes_skipped_and_changes_merged(self, git_repo, paths, provisioned):
        """alpha has nothing to merge, beta is merged, final suite runs once"""
        commit_file(checkout(git_repo, "beta"), "src/beta/feature.py", "x = 1\n", "Beta feature")
        gate, spy = spy_gate()

        with spy as run:
            report = MergeCoordinator(paths, test_command="true", gate=gate).run(load_registry(provisioned))

        outcomes = {r.agent: r.outcome for r in report.results}
        assert outcomes == {
            "alpha": MergeOutcome.SKIPPED_NO_CHANGES,
            "beta": MergeOutcome.MERGED,
        }
        assert [r.agent for r in report.results] == ["alpha", "beta"]
        assert report.merged == ["beta"]
        assert report.success
        assert report.final_suite is not None and report.final_suite.success

        working_dirs = [c.args[1] for c in run.call_args_list]
        assert working_dirs == [checkout(git_repo, "beta"), paths.project_root]

        assert (git_repo / "src" / "beta" / "feature.py").exists()
        subject = git(git_repo, "log", "-1", "--format=%s")
        assert subject == "Merge takt/beta: integrate beta agent work"
        parents = git(git_repo, "log", "-1", "--format=%P").split()
        assert len(parents) == 2

    def test_conflict_restores_mainline(self, git_repo, paths, provisioned):
        commit_file(checkout(git_repo, "alpha"), "README.md", "# Alpha version\n", "Alpha edits README")
        pre_merge = commit_file(git_repo, "README.md", "# Main version\n", "Main edits README")

        report = MergeCoordinator(paths).run(load_registry(provisioned))

        result = report.results[0]
        assert result.outcome == MergeOutcome.CONFLICT
        assert result.recovery[0] == "merge --abort: ok"
        assert not report.success
        assert git(git_repo, "rev-parse", "HEAD") == pre_merge
        assert (git_repo / "README.md").read_text() == "# Main version\n"
        assert "<<<<<<<" not in (git_repo / "README.md").read_text()
        assert git(git_repo, "status", "--porcelain", "--untracked-files=no") == ""

    def test_second_agent_on_same_line_conflicts(self, git_repo, paths, provisioned):
        """Once alpha's edit is merged, beta's edit of the same line conflicts"""
        commit_file(checkout(git_repo, "alpha"), "README.md", "# Alpha title\n", "Alpha edits README")
        commit_file(checkout(git_repo, "beta"), "README.md", "# Beta title\n", "Beta edits README")

        report = MergeCoordinator(paths).run(load_registry(provisioned))

        alpha, beta = report.results
        assert alpha.outcome == MergeOutcome.MERGED
        assert beta.outcome == MergeOutcome.CONFLICT
        assert beta.recovery[0] == "merge --abort: ok"
        assert "mainline state unverified" not in beta.recovery
        assert git(git_repo, "log", "-1", "--format=%s") == "Merge takt/alpha: integrate alpha agent work"
        assert (git_repo / "README.md").read_text() == "# Alpha title\n"
        assert git(git_repo, "status", "--porcelain", "--untracked-files=no") == ""
        assert not report.success

    def test_conflict_does_not_stop_later_agents(self, git_repo, paths, provisioned):
        commit_file(checkout(git_repo, "alpha"), "README.md", "# Alpha version\n", "Alpha edits README")
        commit_file(git_repo, "README.md", "# Main version\n", "Main edits README")
        commit_file(checkout(git_repo, "beta"), "src/beta/b.py", "b = 2\n", "Beta work")

        report = MergeCoordinator(paths).run(load_registry(provisioned))

        outcomes = [r.outcome for r in report.results]
        assert outcomes == [MergeOutcome.CONFLICT, MergeOutcome.MERGED]
        assert (git_repo / "src" / "beta" / "b.py").exists()

    def test_failed_gate_leaves_mainline_unchanged(self, git_repo, paths, provisioned):
        commit_file(checkout(git_repo, "alpha"), "broken.txt", "oops\n", "Alpha breaks tests")
        commit_file(checkout(git_repo, "beta"), "src/beta/ok.py", "ok = True\n", "Beta work")
        before = git(git_repo, "rev-parse", "HEAD")

        coordinator = MergeCoordinator(paths, test_command="echo checking; test ! -f broken.txt")
        report = coordinator.run(load_registry(provisioned))

        alpha, beta = report.results
        assert alpha.outcome == MergeOutcome.SKIPPED_TEST_FAILURE
        assert alpha.test_result is not None and not alpha.test_result.success
        assert alpha.ahead == 1
        assert beta.outcome == MergeOutcome.MERGED
        assert not (git_repo / "broken.txt").exists()
        assert git(git_repo, "rev-parse", "HEAD^1") == before
        assert report.final_suite.success
        assert not report.success

    def test_only_failures_leave_mainline_untouched(self, git_repo, paths, provisioned):
        commit_file(checkout(git_repo, "alpha"), "a.txt", "a\n", "Alpha work")
        before = git(git_repo, "rev-parse", "HEAD")

        report = MergeCoordinator(paths, test_command="exit 1").run(load_registry(provisioned))

        assert report.results[0].outcome == MergeOutcome.SKIPPED_TEST_FAILURE
        assert report.final_suite is None
        assert git(git_repo, "rev-parse", "HEAD") == before

    def test_final_suite_failure_fails_run(self, git_repo, paths, provisioned):
        commit_file(checkout(git_repo, "beta"), "src/beta/feature.py", "x = 1\n", "Beta feature")
        marker = checkout(git_repo, "beta").name
        # Passes inside the beta checkout, fails on the mainline
        command = f'case "$(pwd)" in *{marker}) exit 0;; *) echo suite failed; exit 1;; esac'

        report = MergeCoordinator(paths, test_command=command).run(load_registry(provisioned))

        assert report.merged == ["beta"]
        assert not report.final_suite.success
        assert report.final_suite.tail(10) == ["suite failed"]
        assert report.issues == []
        assert not report.success

    def test_no_test_command_skips_gates(self, git_repo, paths, provisioned):
        commit_file(checkout(git_repo, "beta"), "src/beta/feature.py", "x = 1\n", "Beta feature")
        gate, spy = spy_gate()

        with spy as run:
            report = MergeCoordinator(paths, gate=gate).run(load_registry(provisioned))

        assert report.merged == ["beta"]
        assert report.final_suite is None
        run.assert_not_called()

    def test_missing_branch_is_error(self, git_repo, paths):
        registry_path = write_registry(git_repo, {
            "ghost": {"tools": ["Write"], "checkoutPath": ".worktrees/takt-ghost"},
        })

        report = MergeCoordinator(paths).run(load_registry(registry_path))

        assert report.results[0].outcome == MergeOutcome.ERROR
        assert "takt/ghost" in report.results[0].message
        assert not report.success

    def test_agents_without_checkout_ignored(self, git_repo, paths):
        registry_path = write_registry(git_repo, {"idle": {"tools": ["Write"]}})
        report = MergeCoordinator(paths).run(load_registry(registry_path))
        assert report.results == []
        assert report.success

    def test_switches_to_mainline(self, git_repo, paths, provisioned):
        git(git_repo, "checkout", "-b", "scratch")
        commit_file(checkout(git_repo, "beta"), "src/beta/feature.py", "x = 1\n", "Beta feature")

        report = MergeCoordinator(paths).run(load_registry(provisioned))

        assert report.switched_from == "scratch"
        assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
        assert report.merged == ["beta"]

    def test_missing_mainline_is_fatal(self, git_repo, provisioned):
        paths = TaktPaths(git_repo, TaktSettings(mainline_branch="trunk"))
        with pytest.raises(MainlineUnavailableError):
            MergeCoordinator(paths).run(load_registry(provisioned))

    def test_progress_callback(self, git_repo, paths, provisioned):
        seen = []
        MergeCoordinator(paths).run(load_registry(provisioned), on_result=lambda r: seen.append(r.agent))
        assert seen == ["alpha", "beta"]


class TestRecovery:
    """Ordered rollback chain"""

    def test_chain_stops_at_first_success(self, git_repo, paths):
        coordinator = MergeCoordinator(paths)
        calls = []

        def failing():
            calls.append("first")
            raise GitError("nothing to abort")

        def succeeding():
            calls.append("second")

        def never():
            calls.append("third")

        actions = [
            RecoveryAction("first", failing),
            RecoveryAction("second", succeeding),
            RecoveryAction("third", never),
        ]
        head = git(git_repo, "rev-parse", "HEAD")

        with patch.object(coordinator, "recovery_actions", return_value=actions), \
                patch.object(coordinator.git, "merge_in_progress", side_effect=[True, False]):
            log = coordinator.recover(head)

        assert calls == ["first", "second"]
        assert log == ["first: failed", "second: ok"]

    def test_all_steps_failing_requests_manual_cleanup(self, git_repo, paths):
        coordinator = MergeCoordinator(paths)

        def failing():
            raise GitError("boom")

        with patch.object(coordinator, "recovery_actions",
                          return_value=[RecoveryAction("only", failing)]), \
                patch.object(coordinator.git, "merge_in_progress", return_value=True):
            log = coordinator.recover(git(git_repo, "rev-parse", "HEAD"))

        assert log == ["only: failed", "manual cleanup required"]

    def test_unexpected_head_is_flagged(self, git_repo, paths):
        coordinator = MergeCoordinator(paths)
        with patch.object(coordinator, "recovery_actions",
                          return_value=[RecoveryAction("noop", lambda: None)]):
            log = coordinator.recover("0" * 40)
        assert log == ["noop: ok", "mainline state unverified"]

    def test_default_chain_order(self, paths):
        names = [a.name for a in MergeCoordinator(paths).recovery_actions()]
        assert names == ["merge --abort", "reset --merge"]

    def test_nothing_to_recover_when_merge_never_started(self, git_repo, paths):
        coordinator = MergeCoordinator(paths)
        with patch.object(coordinator.git, "run", wraps=coordinator.git.run) as run:
            log = coordinator.recover(git(git_repo, "rev-parse", "HEAD"))

        assert log == ["nothing to recover"]
        commands = [c.args[0][:2] for c in run.call_args_list]
        assert ["merge", "--abort"] not in commands
        assert ["reset", "--merge"] not in commands

    def test_reset_skipped_without_merge_head(self, paths):
        """reset --merge only runs while a merge is in progress"""
        coordinator = MergeCoordinator(paths)

        with patch.object(coordinator.git, "merge_in_progress", return_value=False), \
                patch.object(coordinator.git, "head_sha", return_value="1" * 40), \
                patch.object(coordinator.git, "run", side_effect=GitError("MERGE_HEAD missing")) as run:
            log = coordinator.recover("0" * 40)

        assert [c.args[0] for c in run.call_args_list] == [["merge", "--abort"]]
        assert log == ["merge --abort: failed", "reset --merge: skipped", "manual cleanup required"]

    def test_refused_merge_keeps_staged_mainline_work(self, git_repo, paths, provisioned):
        """A merge git refuses to start must not touch the operator's index"""
        commit_file(checkout(git_repo, "beta"), "README.md", "# Beta version\n", "Beta edits README")
        before = git(git_repo, "rev-parse", "HEAD")
        (git_repo / "README.md").write_text("# operator work in progress\n")
        git(git_repo, "add", "README.md")

        report = MergeCoordinator(paths).run(load_registry(provisioned))

        result = report.results[1]
        assert result.agent == "beta"
        assert result.outcome == MergeOutcome.ERROR
        assert result.recovery == ["nothing to recover"]
        assert git(git_repo, "rev-parse", "HEAD") == before
        assert (git_repo / "README.md").read_text() == "# operator work in progress\n"
        assert git(git_repo, "diff", "--cached", "--name-only") == "README.md"


class TestConflictDetection:

    @pytest.mark.parametrize("stdout,stderr,expected", [
        ("CONFLICT (content): Merge conflict in README.md", "", True),
        ("", "Automatic merge failed; fix conflicts and then commit the result.", True),
        ("", "fatal: refusing to merge unrelated histories", False),
    ])
    def test_markers(self, stdout, stderr, expected):
        assert is_conflict_output(stdout, stderr) is expected
