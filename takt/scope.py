"""
Scope Authorizer

Decides whether an agent may write a file.

Two independent checks are stacked:

1. Glob scope. An agent's scopePatterns lists the paths it owns. A write
   outside every pattern is blocked and, when another agent owns the path,
   the message names that agent so work can be routed to it.
2. Checkout containment. An agent with an assigned checkout must write inside
   that checkout (or inside the shared .takt/ state directory).

Missing configuration allows the write: no registry, unknown agent, no
patterns and no checkout all fail open.

Pattern grammar (matched against paths with "/" separators):

    *      any run of characters except "/"
    **/    zero or more whole path segments
    /**    (at the end) the directory itself or anything below it
    **     (elsewhere) any run of characters including "/"
    ?      exactly one character except "/"

Every other character is literal. Matching is case-sensitive.

Authorization is pure path arithmetic: it never spawns processes or touches
the filesystem beyond what the caller already loaded.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import TaktSettings
from .paths import TaktPaths, is_within, normalize_abs
from .registry import AgentRecord, Registry

logger = logging.getLogger(__name__)

_DUPLICATE_SEPARATORS = re.compile(r"/{2,}")


def normalize_path(path: str) -> str:
    """Use "/" separators, collapse repeats and drop trailing separators."""
    path = str(path).replace("\\", "/")
    path = _DUPLICATE_SEPARATORS.sub("/", path)
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


# ============================================================================
# Glob compiler
# ============================================================================

class TokenKind(Enum):
    """Pattern tokens produced by the tokenizer."""
    LITERAL = "literal"
    STAR = "star"              # *
    QUESTION = "question"      # ?
    ANY_DIRS = "any_dirs"      # **/
    ANY_PATH = "any_path"      # ** (not followed by /)


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str = ""


class _State(Enum):
    TEXT = "text"
    STAR = "star"
    GLOBSTAR = "globstar"


def tokenize(pattern: str) -> list[Token]:
    """Split a glob pattern into tokens with a three-state machine."""
    tokens: list[Token] = []
    literal: list[str] = []
    state = _State.TEXT

    def flush_literal():
        if literal:
            tokens.append(Token(TokenKind.LITERAL, "".join(literal)))
            literal.clear()

    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if state is _State.TEXT:
            if ch == "*":
                flush_literal()
                state = _State.STAR
            elif ch == "?":
                flush_literal()
                tokens.append(Token(TokenKind.QUESTION))
            else:
                literal.append(ch)
            i += 1
        elif state is _State.STAR:
            if ch == "*":
                state = _State.GLOBSTAR
                i += 1
            else:
                tokens.append(Token(TokenKind.STAR))
                state = _State.TEXT
        else:
            if ch == "/":
                tokens.append(Token(TokenKind.ANY_DIRS))
                state = _State.TEXT
                i += 1
            elif ch == "*":
                # *** behaves like **
                i += 1
            else:
                tokens.append(Token(TokenKind.ANY_PATH))
                state = _State.TEXT

    if state is _State.STAR:
        tokens.append(Token(TokenKind.STAR))
    elif state is _State.GLOBSTAR:
        tokens.append(Token(TokenKind.ANY_PATH))
    flush_literal()
    return tokens


_FRAGMENTS = {
    TokenKind.STAR: "[^/]*",
    TokenKind.QUESTION: "[^/]",
    TokenKind.ANY_DIRS: "(?:.*/)?",
    TokenKind.ANY_PATH: ".*",
}


def tokens_to_regex(tokens: list[Token]) -> str:
    """Translate tokens into an anchored regular expression."""
    parts = []
    last = len(tokens) - 1
    for index, token in enumerate(tokens):
        if token.kind is TokenKind.LITERAL:
            text = token.text
            # "dir/**" also matches "dir" itself
            if (
                index == last - 1
                and tokens[last].kind is TokenKind.ANY_PATH
                and text.endswith("/")
            ):
                parts.append(re.escape(text[:-1]))
                parts.append("(?:/.*)?")
                break
            parts.append(re.escape(text))
        else:
            parts.append(_FRAGMENTS[token.kind])
    return "^" + "".join(parts) + "$"


def literal_prefix(pattern: str) -> str:
    """The part of a pattern before its first wildcard."""
    match = re.search(r"[*?]", pattern)
    return pattern[:match.start()] if match else pattern


@dataclass(frozen=True)
class GlobPattern:
    """An immutable compiled glob.

    regex is None when compilation failed; matching then falls back to
    literal-prefix containment.
    """
    pattern: str
    regex: Optional["re.Pattern[str]"]
    prefix: str

    @classmethod
    def compile(cls, pattern: str) -> "GlobPattern":
        normalized = normalize_path(pattern)
        prefix = literal_prefix(normalized)
        try:
            regex = re.compile(tokens_to_regex(tokenize(normalized)))
        except re.error as e:
            logger.warning(f"Glob {pattern!r} failed to compile ({e}); using prefix match")
            regex = None
        return cls(pattern=pattern, regex=regex, prefix=prefix)

    def matches(self, path: str) -> bool:
        path = normalize_path(path)
        if self.regex is not None:
            return self.regex.match(path) is not None
        return path.startswith(self.prefix)


class ScopeMatcher:
    """An ordered set of globs; a path matches if any glob matches."""

    def __init__(self, patterns: list[str]):
        self.patterns = tuple(GlobPattern.compile(p) for p in patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def first_match(self, *paths: str) -> Optional[str]:
        """The first pattern matching any of the candidate paths."""
        for glob in self.patterns:
            if any(glob.matches(path) for path in paths):
                return glob.pattern
        return None

    def matches(self, *paths: str) -> bool:
        return self.first_match(*paths) is not None


# ============================================================================
# Authorization
# ============================================================================

class Violation(str, Enum):
    """Why a write was blocked."""
    SCOPE = "scope"
    CHECKOUT = "checkout"


@dataclass(frozen=True)
class Decision:
    """Outcome of one authorization check."""
    allowed: bool
    agent: str = ""
    path: str = ""
    reason: str = ""
    violation: Optional[Violation] = None
    owner: Optional[str] = None
    owner_pattern: Optional[str] = None
    message: str = ""

    @classmethod
    def allow(cls, agent: str, path: str, reason: str) -> "Decision":
        return cls(allowed=True, agent=agent, path=path, reason=reason)


class ScopeAuthorizer:
    """
    Checks write targets against the registry.

    Usage:
        authorizer = ScopeAuthorizer(registry, project_root)
        decision = authorizer.authorize("frontend", "/repo/src/backend/api.py")
        if not decision.allowed:
            print(decision.message)
    """

    def __init__(
        self,
        registry: Optional[Registry],
        project_root: Path,
        settings: Optional[TaktSettings] = None,
    ):
        self.registry = registry
        self.paths = TaktPaths(project_root, settings)
        self._matchers: dict[str, ScopeMatcher] = {}

    def _matcher(self, record: AgentRecord) -> ScopeMatcher:
        matcher = self._matchers.get(record.name)
        if matcher is None:
            matcher = ScopeMatcher(record.scope_patterns)
            self._matchers[record.name] = matcher
        return matcher

    def candidate_paths(self, target: Path) -> list[str]:
        """Spellings of an absolute target that patterns are matched against.

        Inside a managed checkout the path is taken relative to the checkout,
        inside the project relative to the project root. The absolute form is
        always included last.
        """
        candidates = []
        root = self.paths.project_root
        checkout_root = self.paths.checkout_root
        if is_within(target, checkout_root) and target != checkout_root:
            relative = target.relative_to(checkout_root)
            checkout = checkout_root / relative.parts[0]
            if self.paths.is_managed_checkout(checkout) and target != checkout:
                candidates.append(target.relative_to(checkout).as_posix())
        if is_within(target, root) and target != root:
            candidates.append(target.relative_to(root).as_posix())
        candidates.append(target.as_posix())
        return candidates

    def find_owner(self, file_path, exclude: Optional[str] = None) -> Optional[AgentRecord]:
        """First agent (in registry order) whose patterns match the path."""
        if self.registry is None:
            return None
        candidates = self.candidate_paths(normalize_abs(file_path, base=self.paths.project_root))
        for record in self.registry.records():
            if record.name == exclude:
                continue
            if self._matcher(record).matches(*candidates):
                return record
        return None

    def check_scope(self, record: AgentRecord, target: Path) -> Optional[Decision]:
        """Glob scope check. Returns a blocking decision or None."""
        matcher = self._matcher(record)
        if not matcher:
            return None
        candidates = self.candidate_paths(target)
        if matcher.matches(*candidates):
            return None

        owner = self.find_owner(target, exclude=record.name)
        if owner is not None:
            owner_pattern = self._matcher(owner).first_match(*candidates)
            hint = (
                f" This file belongs to {owner.name}'s scope ({owner_pattern})."
                f" Send a message to {owner.name} instead."
            )
        else:
            owner_pattern = None
            hint = " No agent is assigned to this path."

        return Decision(
            allowed=False,
            agent=record.name,
            path=str(target),
            reason="outside declared scope",
            violation=Violation.SCOPE,
            owner=owner.name if owner else None,
            owner_pattern=owner_pattern,
            message=f"SCOPE VIOLATION: {record.name} cannot write to {target}.{hint}",
        )

    def check_checkout(self, record: AgentRecord, target: Path) -> Optional[Decision]:
        """Checkout containment check. Returns a blocking decision or None."""
        if not record.checkout_path:
            return None
        checkout = self.paths.from_registry_path(record.checkout_path)
        if is_within(target, checkout) or is_within(target, self.paths.state_dir):
            return None
        return Decision(
            allowed=False,
            agent=record.name,
            path=str(target),
            reason="outside assigned checkout",
            violation=Violation.CHECKOUT,
            message=(
                f"WORKTREE VIOLATION: {record.name} must write to their worktree at "
                f"{record.checkout_path}/ instead of the main working directory. "
                f"Target file: {target}"
            ),
        )

    def authorize(self, agent_name: str, file_path) -> Decision:
        """
        Decide whether agent_name may write file_path.

        Args:
            agent_name: Registry key of the writing agent
            file_path: Target path; relative paths are taken from the project root

        Returns:
            Decision, allowed unless a configured check blocks the write
        """
        target = normalize_abs(file_path, base=self.paths.project_root)
        path = str(target)

        if self.registry is None:
            return Decision.allow(agent_name, path, "no registry")
        record = self.registry.get(agent_name)
        if record is None:
            return Decision.allow(agent_name, path, "agent not registered")

        for check in (self.check_scope, self.check_checkout):
            blocked = check(record, target)
            if blocked is not None:
                logger.info(f"Blocked {agent_name} -> {path}: {blocked.reason}")
                return blocked

        return Decision.allow(agent_name, path, "within scope")
