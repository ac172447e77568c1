#!/usr/bin/env python3
"""
Scope guard hook

PreToolUse hook for write tools. Reads the hook context as JSON on stdin:

    {
      "tool_name": "Write" | "Edit" | ...,
      "tool_input": {"file_path": "/path/to/file"},
      "agent_name": "backend",
      "cwd": "/path/to/project",
      "session_id": "..."
    }

Exit codes:
    0 = allow the write
    2 = block the write (message on stdout)
    1 = internal error

Anything needed for a firm decision that is missing or unreadable allows the
write, so an unconfigured project is never blocked.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .config import WRITE_TOOLS, TaktSettings
from .paths import TaktPaths, find_project_root, normalize_abs
from .registry import try_load_registry
from .scope import Decision, ScopeAuthorizer

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_ERROR = 1
EXIT_BLOCK = 2

AGENT_ENV_VARS = ("TAKT_AGENT_NAME", "CLAUDE_AGENT_NAME")
PATH_KEYS = ("file_path", "filePath", "notebook_path", "path")


@dataclass
class HookRequest:
    """A parsed hook invocation."""
    tool_name: str
    file_path: str
    agent_name: str
    cwd: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict, env: Optional[Mapping[str, str]] = None) -> "HookRequest":
        env = os.environ if env is None else env
        tool_input = payload.get("tool_input")
        if not isinstance(tool_input, dict):
            tool_input = {}

        file_path = ""
        for key in PATH_KEYS:
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                file_path = value
                break

        agent_name = payload.get("agent_name") or ""
        if not isinstance(agent_name, str):
            agent_name = ""
        if not agent_name:
            agent_name = next((env[var] for var in AGENT_ENV_VARS if env.get(var)), "")

        cwd = payload.get("cwd")
        return cls(
            tool_name=str(payload.get("tool_name") or ""),
            file_path=file_path,
            agent_name=agent_name,
            cwd=cwd if isinstance(cwd, str) and cwd else None,
            session_id=payload.get("session_id"),
        )


@dataclass
class HookResponse:
    """What the hook tells the host runtime."""
    exit_code: int
    message: str = ""
    decision: Optional[Decision] = None

    @property
    def allowed(self) -> bool:
        return self.exit_code == EXIT_ALLOW


def parse_hook_input(raw: str, env: Optional[Mapping[str, str]] = None) -> Optional[HookRequest]:
    """Parse stdin text. Returns None when it is not a JSON object."""
    try:
        payload = json.loads(raw)
    except ValueError as e:
        logger.warning(f"scope-guard: Failed to parse stdin input: {e}")
        return None
    if not isinstance(payload, dict):
        logger.warning("scope-guard: Expected a JSON object on stdin")
        return None
    return HookRequest.from_payload(payload, env=env)


def evaluate(request: HookRequest, cwd: Optional[Path] = None) -> HookResponse:
    """
    Run the scope guard for one request.

    Args:
        request: Parsed hook request
        cwd: Fallback directory when the request carries none

    Returns:
        HookResponse with exit code and message
    """
    if not request.agent_name:
        return HookResponse(EXIT_ALLOW)
    if not request.file_path:
        return HookResponse(EXIT_ALLOW)
    if request.tool_name and request.tool_name not in WRITE_TOOLS:
        return HookResponse(EXIT_ALLOW)

    start = normalize_abs(request.cwd or cwd or Path.cwd())
    defaults = TaktSettings()
    project_root = find_project_root(start, defaults)
    settings = TaktSettings.load(project_root)
    paths = TaktPaths(project_root, settings)

    registry = try_load_registry(paths.registry_file())
    if registry is None:
        return HookResponse(EXIT_ALLOW)

    # Relative paths are relative to where the agent is working
    target = normalize_abs(request.file_path, base=start)
    decision = ScopeAuthorizer(registry, project_root, settings).authorize(request.agent_name, target)
    if decision.allowed:
        return HookResponse(EXIT_ALLOW, decision=decision)
    return HookResponse(EXIT_BLOCK, message=decision.message, decision=decision)


def run_scope_guard(raw: str, cwd: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> HookResponse:
    """Parse and evaluate raw hook input."""
    request = parse_hook_input(raw, env=env)
    if request is None:
        return HookResponse(EXIT_ALLOW)
    return evaluate(request, cwd=cwd)


def main() -> None:
    """Entry point for the takt-scope-guard script."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(name)s: %(message)s",
    )
    try:
        response = run_scope_guard(sys.stdin.read())
    except Exception as e:
        print(f"scope-guard: Unexpected error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)

    if response.message:
        sys.stdout.write(response.message)
    sys.exit(response.exit_code)


if __name__ == '__main__':
    main()
