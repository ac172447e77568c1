#!/usr/bin/env python3
"""
Takt CLI

Command-line interface for per-agent worktree isolation: provisioning
checkouts, merging agent branches back, and enforcing write scopes.
"""

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .config import TaktSettings, resolve_test_command
from .errors import ConfigurationMissingError, GitError, RegistryNotFoundError
from .git import GitRunner
from .hooks import EXIT_ALLOW, EXIT_BLOCK
from .hooks import main as scope_guard_main
from .merge import MergeCoordinator
from .paths import TaktPaths, find_project_root
from .registry import load_registry
from .report import ConsoleReporter
from .scope import ScopeAuthorizer
from .worktrees import WorktreeLifecycleManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def get_paths(args) -> TaktPaths:
    """Resolve the project root and effective settings for a command."""
    start = Path(args.dir or '.')
    project_root = find_project_root(start, TaktSettings.load(start))
    settings = TaktSettings.load(project_root).with_overrides({
        "mainline_branch": getattr(args, 'mainline', None),
    })
    return TaktPaths(project_root, settings)


def cmd_setup(args):
    """Create worktrees for all write-capable agents."""
    paths = get_paths(args)
    registry_path = paths.registry_file()
    registry = load_registry(registry_path)

    manager = WorktreeLifecycleManager(paths)
    report = manager.setup(registry, registry_path=registry_path)
    ConsoleReporter().setup_summary(report, paths.settings.checkout_dir)

    if not report.success:
        sys.exit(1)


def run_cleanup(paths: TaktPaths) -> bool:
    registry_path = paths.registry_file()
    try:
        registry = load_registry(registry_path)
    except RegistryNotFoundError:
        logger.info("No agent registry found; removing worktrees only")
        registry = None

    manager = WorktreeLifecycleManager(paths)
    report = manager.cleanup(registry, registry_path=registry_path if registry else None)
    ConsoleReporter().cleanup_summary(report)
    return report.success


def cmd_cleanup(args):
    """Remove all takt worktrees and branches."""
    if not run_cleanup(get_paths(args)):
        sys.exit(1)


def cmd_merge(args):
    """Merge agent branches into the mainline behind the test gate."""
    paths = get_paths(args)
    registry = load_registry(paths.registry_file())
    WorktreeLifecycleManager(paths).ensure_repository()

    test_command = resolve_test_command(
        paths.project_root,
        paths.settings,
        explicit=args.test_command,
        disabled=args.no_tests,
    )
    reporter = ConsoleReporter()
    coordinator = MergeCoordinator(paths, test_command=test_command)

    candidates = registry.with_checkouts()
    if not candidates:
        print("No agent worktrees found in registry. Nothing to merge.")
        return

    mainline = paths.settings.mainline_branch
    reporter.merge_start(mainline, test_command, len(candidates))
    report = coordinator.run(registry, on_result=lambda r: reporter.merge_progress(r, mainline))
    reporter.merge_summary(report)

    if not report.success:
        if args.cleanup:
            print("Skipping cleanup because the merge did not fully succeed.")
        sys.exit(1)

    if args.cleanup and not run_cleanup(paths):
        sys.exit(1)


def cmd_scope_guard(args):
    """Run the scope guard hook on stdin."""
    scope_guard_main()


def cmd_check(args):
    """Show whether an agent may write a path."""
    paths = get_paths(args)
    registry = load_registry(paths.registry_file())
    authorizer = ScopeAuthorizer(registry, paths.project_root, paths.settings)
    decision = authorizer.authorize(args.agent, args.path)

    if decision.allowed:
        print(f"ALLOWED: {args.agent} -> {decision.path} ({decision.reason})")
        sys.exit(EXIT_ALLOW)
    print(decision.message)
    sys.exit(EXIT_BLOCK)


def cmd_status(args):
    """List agents with their branches and checkouts."""
    paths = get_paths(args)
    registry = load_registry(paths.registry_file())
    git = GitRunner(paths.project_root, metadata_timeout=paths.settings.metadata_timeout)
    mainline = paths.settings.mainline_branch

    rows = []
    for record in registry.records():
        branch = paths.branch_name(record.name)
        row = {
            "agent": record.name,
            "write": record.has_write_access,
            "branch": branch,
            "checkout": record.checkout_path,
            "live": False,
            "ahead": None,
        }
        if record.checkout_path:
            row["live"] = paths.from_registry_path(record.checkout_path).is_dir()
            try:
                if git.branch_exists(branch):
                    row["ahead"] = git.commits_ahead(branch, mainline)
            except GitError as e:
                logger.debug(f"Could not compare {branch} with {mainline}: {e}")
        rows.append(row)

    ConsoleReporter().status_table(rows, mainline=mainline)


def main():
    parser = argparse.ArgumentParser(
        prog='takt',
        description="Takt - Per-agent git worktree isolation and merge-back",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  takt setup
  takt status
  takt check backend src/frontend/app.tsx
  takt merge --test-command "npm test"
  takt merge --no-tests --cleanup
  takt cleanup
        """
    )

    parser.add_argument('--dir', '-d', default='.', help='Working directory (default: current)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Setup command
    setup_parser = subparsers.add_parser('setup', help='Create worktrees for write-capable agents')
    setup_parser.add_argument('--mainline', help='Branch new agent branches start from')
    setup_parser.set_defaults(func=cmd_setup)

    # Cleanup command
    cleanup_parser = subparsers.add_parser('cleanup', help='Remove all takt worktrees and branches')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # Merge command
    merge_parser = subparsers.add_parser('merge', help='Merge agent branches into the mainline')
    tests_group = merge_parser.add_mutually_exclusive_group()
    tests_group.add_argument('--test-command', help='Test command (default: detected)')
    tests_group.add_argument('--no-tests', action='store_true', help='Skip all test gates')
    merge_parser.add_argument('--cleanup', action='store_true',
                              help='Remove worktrees after a fully successful merge')
    merge_parser.add_argument('--mainline', help='Branch to merge into')
    merge_parser.set_defaults(func=cmd_merge)

    # Scope guard hook
    guard_parser = subparsers.add_parser('scope-guard',
        help='PreToolUse hook: read hook JSON on stdin, exit 2 to block a write')
    guard_parser.set_defaults(func=cmd_scope_guard)

    # Check command
    check_parser = subparsers.add_parser('check', help='Check whether an agent may write a path')
    check_parser.add_argument('agent', help='Agent name')
    check_parser.add_argument('path', help='Target file path')
    check_parser.set_defaults(func=cmd_check)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show agents, branches and worktrees')
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command != 'scope-guard':
        configure_logging(args.verbose)

    try:
        args.func(args)
    except ConfigurationMissingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
