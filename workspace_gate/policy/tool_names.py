"""
Tool identifier grammar.

Three surface forms are accepted:

    google-workspace__<service>__<action>     double-underscore
    google-workspace__<service>-<action>      service-dash-action
    <service>-<action>                        legacy

Segments may not contain underscores in the double-underscore form, nor
dashes in the other two. Case is preserved.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from ..constants import TOOL_NAME_PREFIX, WORKSPACE_SERVICES

_NO_UNDERSCORE = r"[^_]+"
_NO_DASH = r"[^-]+"
_PREFIX = re.escape(TOOL_NAME_PREFIX)


class ToolNamePattern(str, enum.Enum):
    DOUBLE_UNDERSCORE = "double-underscore"
    SERVICE_DASH_ACTION = "service-dash-action"
    LEGACY = "legacy"


# Order matters: the prefixed forms must be tried before the bare legacy form,
# which would otherwise swallow "google-workspace__..." as service "google".
_PATTERNS: tuple[tuple[ToolNamePattern, re.Pattern[str]], ...] = (
    (ToolNamePattern.DOUBLE_UNDERSCORE, re.compile(rf"^{_PREFIX}__({_NO_UNDERSCORE})__({_NO_UNDERSCORE})$")),
    (ToolNamePattern.SERVICE_DASH_ACTION, re.compile(rf"^{_PREFIX}__({_NO_DASH})-({_NO_DASH})$")),
    (ToolNamePattern.LEGACY, re.compile(rf"^({_NO_DASH})-({_NO_DASH})$")),
)

_READ_VERBS = frozenset({"get", "read", "list", "view", "search"})
_WRITE_VERBS = frozenset({
    "create", "update", "insert", "replace", "delete", "modify",
    "edit", "write", "set", "add", "append", "move", "copy", "clear",
})
_TOKEN_SPLIT_RE = re.compile(r"[_\-\s]+")


@dataclass(frozen=True)
class ParsedToolName:
    service: str
    action: str
    pattern: ToolNamePattern

    def format(self) -> str:
        """Rebuild the identifier in the form it was parsed from."""
        if self.pattern is ToolNamePattern.DOUBLE_UNDERSCORE:
            return f"{TOOL_NAME_PREFIX}__{self.service}__{self.action}"
        if self.pattern is ToolNamePattern.SERVICE_DASH_ACTION:
            return f"{TOOL_NAME_PREFIX}__{self.service}-{self.action}"
        return f"{self.service}-{self.action}"

    def __str__(self) -> str:
        return self.format()


def parse_tool_name(name: str | None) -> ParsedToolName | None:
    """Parse a tool identifier; returns None when no form matches."""
    if not name:
        return None
    for pattern, regex in _PATTERNS:
        match = regex.match(name)
        if match:
            return ParsedToolName(service=match.group(1), action=match.group(2), pattern=pattern)
    return None


def is_valid_tool_name(name: str) -> bool:
    """A tool name usable in an allowlist: parseable and naming a known service."""
    parsed = parse_tool_name(name)
    return parsed is not None and parsed.service.lower() in WORKSPACE_SERVICES


def is_write_tool(name: str) -> bool:
    """
    Classify a tool by the verbs in its name.

    Read verbs win over write verbs, and names with neither are treated as
    reads.
    """
    tokens = set(_TOKEN_SPLIT_RE.split(name.lower()))
    if tokens & _READ_VERBS:
        return False
    return bool(tokens & _WRITE_VERBS)
