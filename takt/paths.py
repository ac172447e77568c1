"""Path resolution for takt files.

Directory structure:
    <project>/
    ├── .takt/                 # Shared state, writable by every agent
    │   ├── agents/
    │   │   └── registry.json  # Agent registry
    │   └── config.yaml        # Settings overrides
    └── .worktrees/            # Checkout root (git-ignored)
        ├── takt-backend/      # Checkout on branch takt/backend
        └── takt-frontend/

Path arithmetic here never touches symlinks so that the scope authorizer and
the lifecycle manager agree on the same spelling of every path.
"""

import os
from pathlib import Path
from typing import Optional

from .config import REGISTRY_RELPATH, STATE_DIR, TaktSettings


def normalize_abs(path, base: Optional[Path] = None) -> Path:
    """Absolute, normalized path (. and .. folded) without resolving symlinks."""
    path = Path(os.path.expanduser(str(path)))
    if not path.is_absolute():
        path = Path(base or Path.cwd()) / path
    return Path(os.path.normpath(str(path)))


def is_within(path: Path, directory: Path) -> bool:
    """True if path equals directory or lies beneath it."""
    try:
        path.relative_to(directory)
        return True
    except ValueError:
        return False


def find_project_root(start: Optional[Path] = None, settings: Optional[TaktSettings] = None) -> Path:
    """Walk up to find the project root.

    A start directory inside a managed checkout maps back to the project that
    owns the checkout root. Otherwise the nearest directory holding the agent
    registry wins, then the nearest directory holding .git. Falls back to the
    start directory.

    Args:
        start: Directory to search from (defaults to cwd)
        settings: Settings naming the checkout root

    Returns:
        Path to the project root
    """
    settings = settings or TaktSettings()
    start = normalize_abs(start or Path.cwd())

    parts = start.parts
    if settings.checkout_dir in parts:
        index = parts.index(settings.checkout_dir)
        start = Path(*parts[:index])

    candidates = [start, *start.parents]
    for parent in candidates:
        if (parent / REGISTRY_RELPATH).exists():
            return parent
    for parent in candidates:
        if (parent / ".git").exists():
            return parent
    return start


class TaktPaths:
    """Centralized path resolution for one project."""

    def __init__(self, project_root: Path, settings: Optional[TaktSettings] = None):
        self.settings = settings or TaktSettings()
        self.project_root = normalize_abs(project_root)
        self.state_dir = self.project_root / STATE_DIR
        self.checkout_root = self.project_root / self.settings.checkout_dir

    def registry_file(self) -> Path:
        """Get the agent registry path (.takt/agents/registry.json)."""
        return self.project_root / REGISTRY_RELPATH

    def gitignore_file(self) -> Path:
        return self.project_root / ".gitignore"

    def checkout_dir(self, agent_name: str) -> Path:
        """Get the checkout directory for an agent (.worktrees/takt-<name>)."""
        return self.checkout_root / f"{self.settings.checkout_prefix}{agent_name}"

    def branch_name(self, agent_name: str) -> str:
        """Get the branch for an agent (takt/<name>)."""
        return f"{self.settings.branch_namespace}/{agent_name}"

    def is_managed_checkout(self, path: Path) -> bool:
        """True if path is a checkout directory this tool created."""
        path = normalize_abs(path)
        return (
            path.parent == self.checkout_root
            and path.name.startswith(self.settings.checkout_prefix)
        )

    def to_registry_path(self, path: Path) -> str:
        """Spell a checkout path for the registry: project-relative, POSIX separators."""
        path = normalize_abs(path)
        if is_within(path, self.project_root):
            return path.relative_to(self.project_root).as_posix()
        return path.as_posix()

    def from_registry_path(self, stored: str) -> Path:
        """Absolute path for a stored checkout path (relative or absolute)."""
        return normalize_abs(stored, base=self.project_root)
