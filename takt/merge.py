"""
Merge Coordinator

Integrates agent branches back into the mainline, one at a time:

1. Make sure the mainline is checked out.
2. Skip branches with no commits ahead of the mainline.
3. Run the test command inside the agent's checkout; a failure leaves the
   branch unmerged and untouched.
4. Merge with --no-ff. A conflict (or any other failure) is rolled back to
   the pre-merge state by an ordered chain of recovery actions. A merge git
   refused to start leaves nothing to roll back and is left alone.
5. After all branches, run the full test command once on the mainline.

Merges are strictly sequential because they all mutate the single mainline
checkout. Checkouts are never removed here; cleanup does that.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .errors import GitError, MainlineUnavailableError
from .gates import GateResult, TestGate
from .git import GitRunner
from .paths import TaktPaths
from .registry import AgentRecord, Registry

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("CONFLICT", "Automatic merge failed")


# ============================================================================
# Data Classes
# ============================================================================

class MergeOutcome(str, Enum):
    """Terminal outcome for one agent branch."""
    MERGED = "merged"
    SKIPPED_NO_CHANGES = "skipped_no_changes"
    SKIPPED_TEST_FAILURE = "skipped_test_failure"
    CONFLICT = "conflict"
    ERROR = "error"


SUCCESS_OUTCOMES = frozenset({MergeOutcome.MERGED, MergeOutcome.SKIPPED_NO_CHANGES})


@dataclass
class CheckoutBinding:
    """An agent's checkout as seen at merge time. Never cached."""
    agent: str
    checkout_path: Path
    branch: str
    ahead: int
    live: bool = True


@dataclass
class RecoveryAction:
    """One step of the post-failure rollback chain."""
    name: str
    run: Callable[[], None]
    applies: Optional[Callable[[], bool]] = None  # None means always


@dataclass
class AgentMergeResult:
    """Result for one agent branch."""
    agent: str
    branch: str
    outcome: MergeOutcome
    ahead: int = 0
    message: str = ""
    test_result: Optional[GateResult] = None
    recovery: List[str] = field(default_factory=list)


@dataclass
class MergeReport:
    """Result of a merge run."""
    mainline: str
    test_command: Optional[str] = None
    switched_from: Optional[str] = None
    results: List[AgentMergeResult] = field(default_factory=list)
    final_suite: Optional[GateResult] = None

    def with_outcome(self, outcome: MergeOutcome) -> List[AgentMergeResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def merged(self) -> List[str]:
        return [r.agent for r in self.with_outcome(MergeOutcome.MERGED)]

    @property
    def issues(self) -> List[AgentMergeResult]:
        return [r for r in self.results if r.outcome not in SUCCESS_OUTCOMES]

    @property
    def success(self) -> bool:
        """True when nothing but merges and no-change skips happened and the final suite passed."""
        if self.issues:
            return False
        return self.final_suite is None or self.final_suite.success


def is_conflict_output(stdout: str, stderr: str) -> bool:
    text = f"{stdout}\n{stderr}"
    return any(marker in text for marker in CONFLICT_MARKERS)


# ============================================================================
# Merge Coordinator
# ============================================================================

class MergeCoordinator:
    """
    Merges agent branches into the mainline behind a test gate.

    Usage:
        coordinator = MergeCoordinator(paths, test_command="python -m pytest")
        report = coordinator.run(registry)
        for result in report.results:
            print(result.agent, result.outcome.value)
    """

    def __init__(
        self,
        paths: TaktPaths,
        test_command: Optional[str] = None,
        git: Optional[GitRunner] = None,
        gate: Optional[TestGate] = None,
    ):
        self.paths = paths
        self.settings = paths.settings
        self.mainline = self.settings.mainline_branch
        self.test_command = test_command
        self.git = git or GitRunner(
            paths.project_root,
            metadata_timeout=self.settings.metadata_timeout,
            command_timeout=self.settings.git_timeout,
        )
        self.gate = gate or TestGate(timeout=self.settings.test_timeout)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def ensure_mainline(self) -> Optional[str]:
        """Check out the mainline if needed.

        Returns:
            The branch that was checked out before switching, or None

        Raises:
            MainlineUnavailableError: If the mainline cannot be checked out
        """
        try:
            current = self.git.current_branch()
            if current == self.mainline:
                return None
            logger.info(f"Switching to {self.mainline} (currently on {current})")
            self.git.checkout(self.mainline)
            return current
        except GitError as e:
            raise MainlineUnavailableError(
                f"Could not switch to {self.mainline} branch: {e}"
            ) from e

    def bind(self, record: AgentRecord) -> CheckoutBinding:
        """Compute the checkout binding for a record.

        Raises:
            GitError: If the branch does not exist or cannot be compared
        """
        branch = self.paths.branch_name(record.name)
        if not self.git.branch_exists(branch):
            raise GitError(f"Branch {branch} does not exist")
        checkout = self.paths.from_registry_path(record.checkout_path)
        return CheckoutBinding(
            agent=record.name,
            checkout_path=checkout,
            branch=branch,
            ahead=self.git.commits_ahead(branch, self.mainline),
            live=checkout.is_dir(),
        )

    def recovery_actions(self) -> List[RecoveryAction]:
        """Rollback chain, tried in order until one succeeds."""
        return [
            RecoveryAction("merge --abort", lambda: self.git.run(["merge", "--abort"], check=True)),
            RecoveryAction(
                "reset --merge",
                lambda: self.git.run(["reset", "--merge"], check=True),
                applies=self.git.merge_in_progress,
            ),
        ]

    def recover(self, pre_merge_sha: str) -> List[str]:
        """Restore the mainline to its pre-merge state.

        Returns:
            Log of the recovery actions attempted
        """
        try:
            untouched = not self.git.merge_in_progress() and self.git.head_sha() == pre_merge_sha
        except GitError as e:
            logger.warning(f"Could not inspect mainline state before recovery: {e}")
            untouched = False
        if untouched:
            # git refused to start the merge; the index and working tree are the operator's
            logger.info("No merge in progress and mainline unchanged; nothing to recover")
            return ["nothing to recover"]

        log = []
        for action in self.recovery_actions():
            try:
                if action.applies is not None and not action.applies():
                    logger.info(f"Recovery step '{action.name}' skipped: no merge in progress")
                    log.append(f"{action.name}: skipped")
                    continue
                action.run()
            except GitError as e:
                logger.warning(f"Recovery step '{action.name}' failed: {e}")
                log.append(f"{action.name}: failed")
                continue
            logger.info(f"Recovery step '{action.name}' succeeded")
            log.append(f"{action.name}: ok")
            break
        else:
            logger.error("All recovery steps failed; manual cleanup of the mainline is required")
            log.append("manual cleanup required")
            return log

        try:
            if self.git.merge_in_progress() or self.git.head_sha() != pre_merge_sha:
                logger.error(f"Mainline is not back at {pre_merge_sha[:12]} after recovery")
                log.append("mainline state unverified")
        except GitError as e:
            logger.warning(f"Could not verify mainline state: {e}")
            log.append("mainline state unverified")
        return log

    def merge_branch(self, binding: CheckoutBinding) -> AgentMergeResult:
        """Merge one agent branch into the checked-out mainline."""
        result = AgentMergeResult(
            agent=binding.agent,
            branch=binding.branch,
            outcome=MergeOutcome.MERGED,
            ahead=binding.ahead,
        )
        pre_merge_sha = self.git.head_sha()
        message = f"Merge {binding.branch}: integrate {binding.agent} agent work"
        try:
            merge = self.git.merge(binding.branch, message)
        except GitError as e:
            logger.error(f"Merge of {binding.branch} failed: {e}")
            result.outcome = MergeOutcome.ERROR
            result.message = str(e)
            result.recovery = self.recover(pre_merge_sha)
            return result

        if merge.returncode == 0:
            result.message = f"Merged {binding.ahead} commit(s)"
            logger.info(f"Merged {binding.branch} into {self.mainline}")
            return result

        output = (merge.stdout + merge.stderr).strip()
        if is_conflict_output(merge.stdout, merge.stderr):
            logger.warning(f"Merge conflict merging {binding.branch}; aborting")
            result.outcome = MergeOutcome.CONFLICT
            result.message = "Merge conflict: requires manual resolution"
        else:
            logger.error(f"Merge of {binding.branch} failed: {output}")
            result.outcome = MergeOutcome.ERROR
            result.message = f"Merge failed: {output}"
        result.recovery = self.recover(pre_merge_sha)
        return result

    def process(self, record: AgentRecord) -> AgentMergeResult:
        """Run the full per-agent state machine for one record."""
        branch = self.paths.branch_name(record.name)
        try:
            binding = self.bind(record)
        except GitError as e:
            logger.error(f"{record.name}: {e}")
            return AgentMergeResult(record.name, branch, MergeOutcome.ERROR, message=str(e))

        if binding.ahead == 0:
            logger.info(f"{record.name}: no changes ahead of {self.mainline}")
            return AgentMergeResult(
                record.name, branch, MergeOutcome.SKIPPED_NO_CHANGES,
                message=f"No changes ahead of {self.mainline}",
            )

        test_result = None
        if self.test_command and binding.live:
            test_result = self.gate.run(self.test_command, binding.checkout_path)
            if not test_result.success:
                logger.warning(f"{record.name}: tests failed in {binding.checkout_path}; skipping merge")
                return AgentMergeResult(
                    record.name, branch, MergeOutcome.SKIPPED_TEST_FAILURE,
                    ahead=binding.ahead,
                    message=test_result.error or f"Tests exited with {test_result.exit_code}",
                    test_result=test_result,
                )

        try:
            result = self.merge_branch(binding)
        except GitError as e:
            logger.error(f"{record.name}: {e}")
            result = AgentMergeResult(
                record.name, branch, MergeOutcome.ERROR, ahead=binding.ahead, message=str(e),
            )
        result.test_result = test_result
        return result

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, registry: Registry, on_result: Optional[Callable[[AgentMergeResult], None]] = None) -> MergeReport:
        """
        Merge every agent branch that has a checkout, in registry order.

        Args:
            registry: Loaded agent registry (not modified)
            on_result: Called after each agent finishes, for progress output

        Returns:
            MergeReport with one result per agent and the final suite result

        Raises:
            MainlineUnavailableError: If the mainline cannot be checked out
        """
        report = MergeReport(mainline=self.mainline, test_command=self.test_command)
        report.switched_from = self.ensure_mainline()

        for record in registry.with_checkouts():
            result = self.process(record)
            logger.info(f"{record.name}: {result.outcome.value}")
            report.results.append(result)
            if on_result is not None:
                on_result(result)

        if report.merged and self.test_command:
            logger.info(f"Running full test suite on {self.mainline}")
            report.final_suite = self.gate.run(self.test_command, self.paths.project_root)

        return report
