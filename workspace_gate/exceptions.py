"""Custom exception hierarchy for workspace-gate."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .google.errors import NormalizedError


class WorkspaceGateError(Exception):
    """Base exception for workspace-gate."""

    code = "WORKSPACE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        normalized: NormalizedError | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.normalized = normalized
        if status_code is not None:
            self.status_code = status_code
        self.timestamp = datetime.now(timezone.utc)

    def is_retryable(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        """Structured form for logs and tool responses."""
        data: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.is_retryable(),
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.normalized is not None:
            data["upstream"] = self.normalized.to_dict()
        return data


class ValidationError(WorkspaceGateError):
    """Raised for malformed input. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ConfigError(ValidationError):
    """Raised when access-control settings are invalid."""

    code = "CONFIG_ERROR"


class AuthError(WorkspaceGateError):
    """Raised when credentials cannot be loaded or are rejected upstream."""

    code = "AUTH_ERROR"
    status_code = 401


class ServiceError(WorkspaceGateError):
    """Raised when an upstream Workspace API call fails."""

    code = "SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        service: str = "",
        attempts: int = 0,
        context: dict[str, Any] | None = None,
        normalized: NormalizedError | None = None,
        status_code: int | None = None,
    ) -> None:
        if status_code is None and normalized is not None:
            status_code = normalized.http_status
        super().__init__(
            message, context=context, normalized=normalized, status_code=status_code
        )
        self.service = service
        self.attempts = attempts

    def is_retryable(self) -> bool:
        if self.normalized is not None:
            return self.normalized.is_retryable
        return self.status_code >= 500


class WorkspaceTimeoutError(ServiceError):
    """
    Raised when an attempt or the whole retry budget runs out of time.

    Per-request timeouts are retried like any transient failure; running out
    of the total budget ends the call.
    """

    code = "TIMEOUT_ERROR"
    status_code = 408

    def __init__(
        self,
        message: str,
        *,
        timeout_type: str,
        timeout_ms: int,
        service: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, service=service, context=context, status_code=408)
        self.timeout_type = timeout_type
        self.timeout_ms = timeout_ms

    def is_retryable(self) -> bool:
        return self.timeout_type == "request"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["timeout_type"] = self.timeout_type
        data["timeout_ms"] = self.timeout_ms
        return data


class AccessControlError(WorkspaceGateError):
    """Raised when the access policy denies an operation. Never retried."""

    code = "ACCESS_DENIED"
    status_code = 403

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        service_name: str = "",
        tool_name: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        context = {
            "operation": operation,
            "service": service_name,
            "tool": tool_name,
            **(context or {}),
        }
        super().__init__(message, context=context)
        self.operation = operation
        self.service_name = service_name
        self.tool_name = tool_name


class ReadOnlyModeError(AccessControlError):
    code = "READ_ONLY_MODE"


class ServiceRestrictedError(AccessControlError):
    code = "SERVICE_RESTRICTED"


class ToolRestrictedError(AccessControlError):
    code = "TOOL_RESTRICTED"


class FolderRestrictedError(AccessControlError):
    code = "FOLDER_RESTRICTED"


class FolderHierarchyError(AccessControlError):
    """Raised when the parent-link walk itself fails upstream."""

    code = "FOLDER_HIERARCHY_ERROR"
    status_code = 502
