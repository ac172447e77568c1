"""
Console summaries

Human-facing output for the setup, cleanup, merge and status commands.
Diagnostics go through logging; these summaries are printed to stdout (errors
to stderr).
"""

import sys
from typing import List, Optional

from .gates import GateResult
from .merge import AgentMergeResult, MergeOutcome, MergeReport
from .worktrees import CleanupReport, ProvisionStatus, SetupReport

RULE = "=" * 50
PRE_MERGE_TAIL_LINES = 5
FINAL_SUITE_TAIL_LINES = 10


def _header(title: str) -> None:
    print(f"\n{title}")
    print(RULE)
    print()


def _print_tail(result: GateResult, lines: int, label: str) -> None:
    tail = result.tail(lines)
    if tail:
        print(f"  {label} (last {lines} lines):")
        for line in tail:
            print(f"    {line}")


class ConsoleReporter:
    """Plain console output."""

    def setup_summary(self, report: SetupReport, checkout_dir: str) -> None:
        _header("Takt Worktree Setup")

        if report.gitignore_updated:
            print(f"Updated .gitignore to include {checkout_dir}/\n")

        if report.created:
            print(f"Created worktrees ({len(report.created)}):")
            for r in report.created:
                note = " (existing branch)" if r.status == ProvisionStatus.ATTACHED else ""
                print(f"  + {r.agent} -> {r.path} [branch: {r.branch}]{note}")
            print()

        if report.skipped:
            print(f"Skipped ({len(report.skipped)}):")
            for r in report.skipped:
                print(f"  ~ {r.agent} ({r.reason})")
            print()

        if report.failed:
            print(f"Errors ({len(report.failed)}):", file=sys.stderr)
            for r in report.failed:
                print(f"  ! {r.agent}: {r.reason}", file=sys.stderr)
            print(file=sys.stderr)

        if not report.created and not report.failed:
            print("Nothing to do - all worktrees already exist.")
        elif not report.failed:
            print(f"Done. Created {len(report.created)} worktrees.")
        else:
            print(f"Done with errors. Created {len(report.created)}, failed {len(report.failed)}.")

    def cleanup_summary(self, report: CleanupReport) -> None:
        _header("Takt Worktree Cleanup")

        if report.removed:
            print(f"Removed worktrees ({len(report.removed)}):")
            for path in report.removed:
                print(f"  - {path}")
            print()

        if report.branches_deleted:
            print(f"Deleted branches ({len(report.branches_deleted)}):")
            for branch in report.branches_deleted:
                print(f"  - {branch}")
            print()

        if report.branch_errors:
            print(f"Branches kept ({len(report.branch_errors)}):")
            for error in report.branch_errors:
                print(f"  ~ {error}")
            print()

        if report.errors:
            print(f"Errors ({len(report.errors)}):", file=sys.stderr)
            for error in report.errors:
                print(f"  ! {error}", file=sys.stderr)
            print(file=sys.stderr)

        if not report.removed and not report.errors:
            print("No takt worktrees found. Nothing to clean up.")
        else:
            print(f"Done. Removed {len(report.removed)} worktrees.")

    def merge_start(self, mainline: str, test_command: Optional[str], candidates: int) -> None:
        _header("Takt Worktree Merge")
        print(f"Found {candidates} agent branches to merge into {mainline}.")
        if test_command:
            print(f"Test command: {test_command}")
        else:
            print("No test command detected. Skipping pre-merge tests.")
        print()

    def merge_progress(self, result: AgentMergeResult, mainline: str) -> None:
        print(f"--- {result.agent} ({result.branch}) ---")
        if result.outcome == MergeOutcome.SKIPPED_NO_CHANGES:
            print(f"  No changes ahead of {mainline}. Skipping.\n")
            return
        if result.ahead:
            print(f"  {result.ahead} commit(s) ahead of {mainline}.")
        if result.test_result is not None and result.test_result.success:
            print("  Tests passed.")

        if result.outcome == MergeOutcome.MERGED:
            print("  Merged successfully.")
        elif result.outcome == MergeOutcome.SKIPPED_TEST_FAILURE:
            print("  Tests FAILED. Skipping merge.")
            if result.test_result is not None:
                _print_tail(result.test_result, PRE_MERGE_TAIL_LINES, "Test output")
        elif result.outcome == MergeOutcome.CONFLICT:
            print("  MERGE CONFLICT detected. Merge aborted for this branch.")
        else:
            print(f"  ERROR: {result.message}")
        if result.recovery:
            print(f"  Recovery: {', '.join(result.recovery)}")
        print()

    def merge_summary(self, report: MergeReport) -> None:
        if report.final_suite is not None:
            print(f"--- Full test suite on {report.mainline} ---")
            if report.final_suite.success:
                print("  Full test suite PASSED.\n")
            else:
                print("  Full test suite FAILED.")
                _print_tail(report.final_suite, FINAL_SUITE_TAIL_LINES, "Output")
                print()

        print(RULE)
        print("Merge Summary")
        print(RULE)
        print()

        if report.switched_from:
            print(f"Switched to {report.mainline} (was on {report.switched_from}).\n")

        sections = [
            (MergeOutcome.MERGED, "Merged", "+"),
            (MergeOutcome.SKIPPED_NO_CHANGES, "Skipped - no changes", "~"),
            (MergeOutcome.SKIPPED_TEST_FAILURE, "Skipped - tests failed", "!"),
        ]
        for outcome, title, mark in sections:
            results = report.with_outcome(outcome)
            if results:
                print(f"{title} ({len(results)}):")
                for r in results:
                    print(f"  {mark} {r.agent}")
                print()

        conflicts = report.with_outcome(MergeOutcome.CONFLICT)
        if conflicts:
            print(f"Merge conflicts ({len(conflicts)}):")
            for r in conflicts:
                print(f"  ! {r.agent}: requires manual resolution")
            print()

        errors = report.with_outcome(MergeOutcome.ERROR)
        if errors:
            print(f"Errors ({len(errors)}):", file=sys.stderr)
            for r in errors:
                print(f"  ! {r.agent}: {r.message}", file=sys.stderr)
            print(file=sys.stderr)

        if report.success:
            print(f"Done. Merged {len(report.merged)} branches into {report.mainline}.")
        else:
            issues = len(report.issues)
            if report.final_suite is not None and not report.final_suite.success:
                issues += 1
            print(f"Done with issues. Merged {len(report.merged)}, issues {issues}.")

    def status_table(self, rows: List[dict], mainline: Optional[str] = None) -> None:
        _header("Takt Agents")
        if not rows:
            print("No agents found in registry.")
            return
        for row in rows:
            access = "write" if row["write"] else "read"
            line = f"  {row['agent']:<20} {access:<6} {row['branch']:<28}"
            if row["checkout"]:
                state = "live" if row["live"] else "missing"
                line += f" {row['checkout']} ({state})"
                if row.get("ahead") is not None and mainline:
                    line += f", {row['ahead']} ahead of {mainline}"
            else:
                line += " no checkout"
            print(line)
