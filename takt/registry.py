"""
Agent Registry

The registry maps agent names to their isolation configuration and is the
single source of truth shared by the lifecycle manager, the scope authorizer
and the merge coordinator.

File format (.takt/agents/registry.json):

    {
      "version": "1.0",
      "agents": {
        "backend": {
          "scopePatterns": ["src/backend/**"],
          "tools": ["Read", "Write", "Edit"],
          "checkoutPath": ".worktrees/takt-backend"
        }
      }
    }

Legacy field names (scope, allowedPaths, worktreePath) are accepted on read
and written back under the canonical names. Unknown fields are preserved.

The registry is loaded fully per invocation, passed explicitly to each
operation and rewritten atomically.
"""

import json
import logging
import os
import random
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import WRITE_TOOLS
from .errors import RegistryNotFoundError, RegistryParseError

logger = logging.getLogger(__name__)

LEGACY_SCOPE_FIELDS = ("scope", "allowedPaths")
LEGACY_CHECKOUT_FIELD = "worktreePath"


# ============================================================================
# Models
# ============================================================================

class AgentRecord(BaseModel):
    """Isolation configuration for one agent."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    scope_patterns: list[str] = Field(default_factory=list, alias="scopePatterns")
    tools: list[str] = Field(default_factory=list)
    write_access: Optional[bool] = Field(None, alias="hasWriteAccess")
    checkout_path: Optional[str] = Field(None, alias="checkoutPath")

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy in LEGACY_SCOPE_FIELDS:
            if legacy in data:
                value = data.pop(legacy)
                if "scopePatterns" not in data and "scope_patterns" not in data:
                    data["scopePatterns"] = value
        if LEGACY_CHECKOUT_FIELD in data:
            value = data.pop(LEGACY_CHECKOUT_FIELD)
            if "checkoutPath" not in data and "checkout_path" not in data:
                data["checkoutPath"] = value
        return data

    @field_validator("scope_patterns", mode="before")
    @classmethod
    def _normalize_scope(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [p.strip() for p in value if isinstance(p, str) and p.strip()]

    @field_validator("tools", mode="before")
    @classmethod
    def _normalize_tools(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return [t for t in value if isinstance(t, str)]

    @field_validator("write_access", mode="before")
    @classmethod
    def _explicit_bool_only(cls, value: Any) -> Optional[bool]:
        # Only a real boolean overrides the tool list
        return value if isinstance(value, bool) else None

    @field_validator("checkout_path", mode="before")
    @classmethod
    def _blank_checkout_is_none(cls, value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @property
    def has_write_access(self) -> bool:
        """Explicit hasWriteAccess wins; otherwise any write-capable tool grants it."""
        if self.write_access is not None:
            return self.write_access
        return any(tool in WRITE_TOOLS for tool in self.tools)

    def branch_name(self, namespace: str = "takt") -> str:
        return f"{namespace}/{self.name}"

    def checkout_dir_name(self, prefix: str = "takt-") -> str:
        return f"{prefix}{self.name}"

    def to_document(self) -> dict:
        """Serialize back to the registry file shape."""
        doc = dict(self.model_extra or {})
        fields_set = self.model_fields_set
        if self.scope_patterns or "scope_patterns" in fields_set:
            doc["scopePatterns"] = list(self.scope_patterns)
        if "tools" in fields_set:
            doc["tools"] = list(self.tools)
        if self.write_access is not None:
            doc["hasWriteAccess"] = self.write_access
        if self.checkout_path:
            doc["checkoutPath"] = self.checkout_path
        return doc


class Registry(BaseModel):
    """All agents known to the project, in file order."""
    model_config = ConfigDict(extra="allow")

    version: Any = "1.0"
    agents: dict[str, AgentRecord] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _inject_agent_names(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        agents = data.get("agents")
        if not isinstance(agents, dict):
            data["agents"] = {}
            return data
        named = {}
        for name, config in agents.items():
            config = dict(config) if isinstance(config, dict) else {}
            config["name"] = name
            named[name] = config
        data["agents"] = named
        return data

    def get(self, name: str) -> Optional[AgentRecord]:
        return self.agents.get(name)

    def records(self) -> list[AgentRecord]:
        """All records in registry order."""
        return list(self.agents.values())

    def with_checkouts(self) -> list[AgentRecord]:
        """Records that reference a checkout, in registry order."""
        return [record for record in self.agents.values() if record.checkout_path]

    def clear_checkouts(self) -> int:
        """Drop every checkout reference. Returns how many were cleared."""
        cleared = 0
        for record in self.agents.values():
            if record.checkout_path:
                record.checkout_path = None
                cleared += 1
        return cleared

    def to_document(self) -> dict:
        doc = dict(self.model_extra or {})
        doc["version"] = self.version
        doc["agents"] = {name: record.to_document() for name, record in self.agents.items()}
        return doc


# ============================================================================
# Persistence
# ============================================================================

def parse_registry(content: str, source: str = "<registry>") -> Registry:
    """Parse registry JSON text.

    Raises:
        RegistryParseError: If the text is not a JSON object or fails validation
    """
    try:
        data = json.loads(content)
    except ValueError as e:
        raise RegistryParseError(f"Failed to parse {source}: {e}") from e
    if not isinstance(data, dict):
        raise RegistryParseError(f"Failed to parse {source}: expected a JSON object")
    try:
        return Registry.model_validate(data)
    except ValidationError as e:
        raise RegistryParseError(f"Invalid registry {source}: {e}") from e


def load_registry(registry_path: Path) -> Registry:
    """
    Load the registry from disk.

    Raises:
        RegistryNotFoundError: If the file does not exist
        RegistryParseError: If the file cannot be parsed
    """
    registry_path = Path(registry_path)
    if not registry_path.exists():
        raise RegistryNotFoundError(f"Agent registry not found at {registry_path}")
    try:
        content = registry_path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryParseError(f"Failed to read {registry_path}: {e}") from e
    return parse_registry(content, source=str(registry_path))


def try_load_registry(registry_path: Path) -> Optional[Registry]:
    """Load the registry, returning None when it is missing or unparsable."""
    try:
        return load_registry(registry_path)
    except (RegistryNotFoundError, RegistryParseError) as e:
        logger.debug(f"Registry unavailable: {e}")
        return None


def save_registry(registry: Registry, registry_path: Path) -> None:
    """
    Persist the registry atomically.

    Writes a unique temp file, fsyncs it, renames it over the target and
    fsyncs the directory. On failure the temp file is removed and the
    previous registry is left intact.
    """
    registry_path = Path(registry_path)
    registry_path.parent.mkdir(parents=True, exist_ok=True)

    content = json.dumps(registry.to_document(), indent=2) + "\n"
    temp_path = registry_path.with_name(
        f"{registry_path.name}.tmp.{os.getpid()}.{random.randint(0, 999999)}"
    )
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, registry_path)

        try:
            flags = os.O_RDONLY
            if hasattr(os, "O_DIRECTORY"):
                flags |= os.O_DIRECTORY
            dir_fd = os.open(str(registry_path.parent), flags)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError:
            # Directory fsync is unsupported on some platforms; the rename already landed
            pass

    except Exception:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise

    logger.debug(f"Saved registry with {len(registry.agents)} agent(s) to {registry_path}")
