"""
Takt - Per-agent worktree isolation

Gives every write-capable agent its own git worktree and branch, guards
writes against each agent's declared scope, and merges finished agent
branches back into the mainline behind a test gate.
"""

__version__ = "0.1.0"

from .errors import (
    TaktError,
    ConfigurationMissingError,
    NotAGitRepositoryError,
    RegistryNotFoundError,
    RegistryParseError,
    MainlineUnavailableError,
    GitError,
    GitTimeoutError,
    ProvisioningError,
)
from .config import TaktSettings, detect_test_command, resolve_test_command
from .paths import TaktPaths, find_project_root
from .registry import (
    AgentRecord,
    Registry,
    load_registry,
    save_registry,
)
from .scope import Decision, ScopeAuthorizer, Violation
from .gates import GateResult, TestGate
from .worktrees import (
    WorktreeLifecycleManager,
    ProvisionStatus,
    SetupReport,
    CleanupReport,
)
from .merge import (
    MergeCoordinator,
    MergeOutcome,
    MergeReport,
    AgentMergeResult,
)

__all__ = [
    "__version__",
    # Errors
    "TaktError",
    "ConfigurationMissingError",
    "NotAGitRepositoryError",
    "RegistryNotFoundError",
    "RegistryParseError",
    "MainlineUnavailableError",
    "GitError",
    "GitTimeoutError",
    "ProvisioningError",
    # Configuration
    "TaktSettings",
    "detect_test_command",
    "resolve_test_command",
    "TaktPaths",
    "find_project_root",
    # Registry
    "AgentRecord",
    "Registry",
    "load_registry",
    "save_registry",
    # Scope
    "Decision",
    "ScopeAuthorizer",
    "Violation",
    # Test gate
    "GateResult",
    "TestGate",
    # Worktrees
    "WorktreeLifecycleManager",
    "ProvisionStatus",
    "SetupReport",
    "CleanupReport",
    # Merge
    "MergeCoordinator",
    "MergeOutcome",
    "MergeReport",
    "AgentMergeResult",
]
