"""
Write access policy.

``AccessPolicyEvaluator.validate_access`` runs a requested operation through
the configured gates before any API call is made. Reads always pass. For
anything else the gates run in a fixed order and the first denial wins:

  1. read-only mode
  2. service allowlist
  3. tool allowlist
  4. folder restriction (subtree of the configured Drive folder)

Denials are raised as ``AccessControlError`` subclasses.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass

from ..config import AccessControlConfig
from ..constants import ERROR_MESSAGES
from ..exceptions import (
    AccessControlError,
    FolderHierarchyError,
    FolderRestrictedError,
    ReadOnlyModeError,
    ServiceRestrictedError,
    ToolRestrictedError,
    ValidationError,
)
from .folders import FolderHierarchyCache, FolderHierarchyResolver, ParentLookup

logger = logging.getLogger(__name__)


class Operation(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def coerce(cls, value: "Operation | str") -> "Operation":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Unknown operation type: {value!r}", context={"operation": value}
            ) from None


@dataclass(frozen=True)
class AccessRequest:
    operation: Operation
    service_name: str
    tool_name: str | None = None
    target_folder_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "operation", Operation.coerce(self.operation))


@dataclass(frozen=True)
class AccessControlSummary:
    read_only_mode: bool
    allowed_write_services: tuple[str, ...] | None
    allowed_write_tools: tuple[str, ...] | None
    folder_id: str | None
    allow_writes_outside_folder: bool
    has_restrictions: bool

    def to_dict(self) -> dict:
        return asdict(self)


class AccessPolicyEvaluator:
    """Evaluates ``AccessRequest``s against an ``AccessControlConfig``."""

    def __init__(
        self,
        config: AccessControlConfig,
        drive: ParentLookup | None = None,
        cache: FolderHierarchyCache | None = None,
    ) -> None:
        self.config = config
        self._drive = drive
        self._cache = cache if cache is not None else FolderHierarchyCache()
        self._resolver = (
            FolderHierarchyResolver(drive, self._cache) if drive is not None else None
        )
        self._allowed_services = (
            frozenset(s.lower() for s in config.allowed_write_services)
            if config.allowed_write_services
            else None
        )

    # ------------------------------------------------------------------ #
    # Entry point                                                          #
    # ------------------------------------------------------------------ #

    async def validate_access(self, request: AccessRequest) -> None:
        """
        Allow or deny ``request``.

        Returns None when permitted. Raises an AccessControlError subclass on
        the first failing gate, or FolderHierarchyError if the Drive walk
        itself fails.
        """
        if request.operation is Operation.READ:
            return

        try:
            self.check_read_only(request)
            self.check_service(request)
            self.check_tool(request)
            await self.check_folder(request)
        except AccessControlError as e:
            logger.warning(
                "Access denied (%s): %s %s via %s",
                e.code, request.operation.value, request.service_name, request.tool_name,
                extra={"event": self._event(request, outcome="denied", code=e.code)},
            )
            raise

        logger.debug(
            "Access granted: %s %s via %s",
            request.operation.value, request.service_name, request.tool_name,
            extra={"event": self._event(request, outcome="allowed")},
        )

    # ------------------------------------------------------------------ #
    # Gates                                                                #
    # ------------------------------------------------------------------ #

    def check_read_only(self, request: AccessRequest) -> None:
        if self.config.read_only_mode and request.operation is not Operation.READ:
            raise ReadOnlyModeError(
                ERROR_MESSAGES["read_only_mode"],
                **self._denial_fields(request),
            )

    def check_service(self, request: AccessRequest) -> None:
        if self._allowed_services is None or request.operation is Operation.READ:
            return
        if request.service_name.lower() not in self._allowed_services:
            raise ServiceRestrictedError(
                ERROR_MESSAGES["service_restricted"],
                **self._denial_fields(request),
                context={"allowed_services": list(self.config.allowed_write_services)},
            )

    def check_tool(self, request: AccessRequest) -> None:
        allowed = self.config.allowed_write_tools
        if allowed is None or request.operation is Operation.READ:
            return
        # Exact membership only; unparseable names simply never match.
        if request.tool_name is None or request.tool_name not in allowed:
            raise ToolRestrictedError(
                ERROR_MESSAGES["tool_restricted"],
                **self._denial_fields(request),
                context={"allowed_tools": list(allowed)},
            )

    async def check_folder(self, request: AccessRequest) -> None:
        if not self.config.folder_restricted or request.operation is Operation.READ:
            return
        if not request.target_folder_id:
            return
        root = self.config.folder_id
        if not await self.is_within_folder_hierarchy(request.target_folder_id, root):
            raise FolderRestrictedError(
                ERROR_MESSAGES["folder_restricted"],
                **self._denial_fields(request),
                context={
                    "target_folder_id": request.target_folder_id,
                    "allowed_folder_id": root,
                },
            )

    async def is_within_folder_hierarchy(self, target_folder_id: str, root_folder_id: str) -> bool:
        """True if the target is the root folder or lies beneath it."""
        if target_folder_id == root_folder_id:
            return True
        if self._resolver is None:
            raise FolderHierarchyError(
                "No Drive client configured for folder hierarchy checks",
                operation="folder_check",
                service_name="drive",
                context={"target_folder_id": target_folder_id, "allowed_folder_id": root_folder_id},
            )
        return await self._resolver.is_within(target_folder_id, root_folder_id)

    # ------------------------------------------------------------------ #
    # Introspection                                                        #
    # ------------------------------------------------------------------ #

    def summary(self) -> AccessControlSummary:
        cfg = self.config
        has_restrictions = bool(
            cfg.read_only_mode
            or cfg.allowed_write_services
            or cfg.allowed_write_tools
            or cfg.folder_restricted
        )
        return AccessControlSummary(
            read_only_mode=cfg.read_only_mode,
            allowed_write_services=cfg.allowed_write_services,
            allowed_write_tools=cfg.allowed_write_tools,
            folder_id=cfg.folder_id,
            allow_writes_outside_folder=cfg.allow_writes_outside_folder,
            has_restrictions=has_restrictions,
        )

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("Folder hierarchy cache cleared")

    @staticmethod
    def _denial_fields(request: AccessRequest) -> dict:
        return {
            "operation": request.operation.value,
            "service_name": request.service_name,
            "tool_name": request.tool_name,
        }

    @staticmethod
    def _event(request: AccessRequest, **extra) -> dict:
        return {
            "operation": request.operation.value,
            "service": request.service_name,
            "tool": request.tool_name,
            "folder": request.target_folder_id,
            **extra,
        }
