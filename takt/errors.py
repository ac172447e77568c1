"""
Error Taxonomy

Exceptions raised by the worktree orchestrator.

Fatal configuration problems derive from ConfigurationMissingError and abort
the whole run. Per-agent problems (ProvisioningError, GitError) are caught by
the lifecycle manager and merge coordinator and collected into their reports
so one agent never blocks the next.
"""

from typing import Optional, Sequence


# ============================================================================
# EXCEPTIONS
# ============================================================================

class TaktError(Exception):
    """Base exception for worktree orchestration errors"""
    pass


class ConfigurationMissingError(TaktError):
    """Required configuration is missing or unusable; the run cannot continue"""
    pass


class NotAGitRepositoryError(ConfigurationMissingError):
    """Project directory is not inside a git work tree"""
    pass


class RegistryNotFoundError(ConfigurationMissingError):
    """Agent registry file does not exist"""
    pass


class RegistryParseError(ConfigurationMissingError):
    """Agent registry file exists but cannot be parsed"""
    pass


class MainlineUnavailableError(ConfigurationMissingError):
    """Mainline branch could not be checked out before merging"""
    pass


class GitError(TaktError):
    """A git invocation failed"""

    def __init__(
        self,
        message: str,
        args: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.git_args = list(args or [])
        self.returncode = returncode
        self.stderr = stderr


class GitTimeoutError(GitError):
    """A git invocation exceeded its timeout"""
    pass


class ProvisioningError(TaktError):
    """Creating one agent's checkout or branch failed"""

    def __init__(self, agent: str, message: str):
        super().__init__(f"{agent}: {message}")
        self.agent = agent
