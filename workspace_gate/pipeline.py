"""
ToolGate: the path every Workspace tool call takes.

The access policy is consulted first; only a permitted call reaches the
upstream API, and then always through the retry executor. Denials never
touch the network.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, TypeVar

from .google.retry import RetryContext, RetryExecutor
from .policy.access import AccessPolicyEvaluator, AccessRequest, Operation
from .policy.folders import extract_folder_ids
from .policy.tool_names import is_write_tool, parse_tool_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ToolGate:
    def __init__(self, policy: AccessPolicyEvaluator, executor: RetryExecutor) -> None:
        self.policy = policy
        self.executor = executor

    def request_for(
        self,
        tool_name: str,
        service_name: str | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> AccessRequest:
        """
        Build the access request for a tool invocation.

        The service defaults to the one encoded in the tool name, the
        operation is inferred from the tool's verb, and the first folder id
        found in ``params`` becomes the target folder.
        """
        if service_name is None:
            parsed = parse_tool_name(tool_name)
            service_name = parsed.service if parsed else ""
        folder_ids = extract_folder_ids(params or {})
        return AccessRequest(
            operation=Operation.WRITE if is_write_tool(tool_name) else Operation.READ,
            service_name=service_name,
            tool_name=tool_name,
            target_folder_id=folder_ids[0] if folder_ids else None,
        )

    async def run(
        self,
        request: AccessRequest,
        operation: Callable[[], Awaitable[T]],
        context: RetryContext | None = None,
    ) -> T:
        """Validate ``request``, then execute ``operation`` with retry."""
        await self.policy.validate_access(request)

        if context is None:
            context = RetryContext(
                operation=request.tool_name or request.operation.value,
                service=request.service_name,
                request_id=uuid.uuid4().hex[:12],
            )
        logger.debug(
            "Running %s for %s", context.operation, request.service_name or "unknown service",
            extra={"event": {**context.as_log_fields(), "access": request.operation.value}},
        )
        return await self.executor.execute(operation, context)
