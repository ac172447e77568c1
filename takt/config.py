"""
Configuration for the worktree orchestrator.

Holds the conventional names (checkout root, branch namespace, shared state
directory), loads per-project overrides from .takt/config.yaml, and detects
the project's test command.
"""

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


# Shared state directory; every agent may write here regardless of checkout
STATE_DIR = ".takt"
REGISTRY_RELPATH = Path(STATE_DIR) / "agents" / "registry.json"
SETTINGS_RELPATH = Path(STATE_DIR) / "config.yaml"

# Tools whose presence in an agent's tool list grants write access
WRITE_TOOLS = frozenset({
    "Write",
    "Edit",
    "MultiEdit",
    "NotebookEdit",
    "CreateFile",
    "RenameFile",
    "DeleteFile",
})

# npm's placeholder test script counts as "no tests"
NPM_PLACEHOLDER_TEST = 'echo "Error: no test specified" && exit 1'

# Test command detection priority
# Format: (indicator_file, test_command)
PROJECT_INDICATORS = [
    ("package.json", "npm test"),
    ("Cargo.toml", "cargo test"),
    ("go.mod", "go test ./..."),
    ("pyproject.toml", "python -m pytest"),
    ("setup.py", "python -m pytest"),
    ("pytest.ini", "python -m pytest"),
    ("Makefile", "make test"),
]


@dataclass(frozen=True)
class TaktSettings:
    """Effective settings for one invocation."""
    mainline_branch: str = "main"
    checkout_dir: str = ".worktrees"
    checkout_prefix: str = "takt-"
    branch_namespace: str = "takt"
    test_command: Optional[str] = None
    metadata_timeout: float = 5.0     # rev-parse, rev-list, worktree list
    git_timeout: float = 120.0        # worktree add/remove, merge, checkout
    test_timeout: float = 300.0

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> "TaktSettings":
        """Build settings from defaults plus .takt/config.yaml overrides."""
        overrides = load_settings_overrides(project_root)
        return cls().with_overrides(overrides)

    def with_overrides(self, overrides: dict) -> "TaktSettings":
        """
        Return a copy with recognised overrides applied.

        Unknown keys and values of the wrong type are skipped with a warning.
        None values are ignored so CLI flags can be passed through unchanged.
        """
        known = {f.name: f for f in fields(self)}
        changes = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            default = getattr(self, key)
            if key.endswith("_timeout"):
                if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                    logger.warning(f"Ignoring invalid value for {key}: {value!r}")
                    continue
                value = float(value)
            elif not isinstance(value, str) or (default is not None and not value.strip()):
                logger.warning(f"Ignoring invalid value for {key}: {value!r}")
                continue
            changes[key] = value
        return replace(self, **changes) if changes else self


def load_settings_overrides(project_root: Optional[Path] = None) -> dict:
    """
    Load settings overrides from .takt/config.yaml if present.

    Args:
        project_root: Project directory. Defaults to cwd.

    Returns:
        Dict of setting overrides, or empty dict if no usable file.
    """
    if project_root is None:
        project_root = Path.cwd()
    else:
        project_root = Path(project_root)

    override_file = project_root / SETTINGS_RELPATH
    if not override_file.exists():
        return {}

    try:
        overrides = yaml.safe_load(override_file.read_text())
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read {override_file}: {e}")
        return {}

    if not isinstance(overrides, dict):
        if overrides is not None:
            logger.warning(f"Ignoring {override_file}: expected a mapping")
        return {}
    return overrides


def _has_npm_test_script(package_json: Path) -> bool:
    try:
        pkg = json.loads(package_json.read_text())
    except (OSError, ValueError):
        return False
    scripts = pkg.get("scripts") if isinstance(pkg, dict) else None
    if not isinstance(scripts, dict):
        return False
    test = scripts.get("test")
    return bool(test) and test != NPM_PLACEHOLDER_TEST


def _has_make_test_target(makefile: Path) -> bool:
    try:
        content = makefile.read_text()
    except OSError:
        return False
    return any(line.startswith("test:") for line in content.splitlines())


def detect_test_command(project_root: Optional[Path] = None) -> Optional[str]:
    """
    Detect the project's test command from indicator files.

    Args:
        project_root: Directory to check. Defaults to cwd.

    Returns:
        A shell command string, or None when no test runner is recognised.
    """
    if project_root is None:
        project_root = Path.cwd()
    else:
        project_root = Path(project_root)

    for indicator_file, test_cmd in PROJECT_INDICATORS:
        indicator = project_root / indicator_file
        if not indicator.exists():
            continue
        if indicator_file == "package.json" and not _has_npm_test_script(indicator):
            continue
        if indicator_file == "Makefile" and not _has_make_test_target(indicator):
            continue
        return test_cmd

    return None


def resolve_test_command(
    project_root: Path,
    settings: TaktSettings,
    explicit: Optional[str] = None,
    disabled: bool = False,
) -> Optional[str]:
    """Pick the test command: explicit flag, then settings, then detection."""
    if disabled:
        return None
    if explicit:
        return explicit
    if settings.test_command:
        return settings.test_command
    return detect_test_command(project_root)
