"""
Retry with exponential backoff for Google API calls.

Every failure is normalised, classified as retryable or not, and either
surfaced immediately or retried after a jittered backoff delay. Attempts for
one logical call are strictly sequential.

Usage:
    from .retry import RetryContext, RetryExecutor

    executor = RetryExecutor(settings.retry_config)

    async def get_file():
        def _sync():
            return service.files().get(fileId=file_id).execute()
        return await executor.execute(
            lambda: asyncio.to_thread(_sync),
            RetryContext(operation="files.get", service="drive"),
        )
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

from ..config import RetryConfig
from ..constants import ERROR_MESSAGES, RETRYABLE_REASONS
from ..exceptions import AuthError, ServiceError, WorkspaceGateError, WorkspaceTimeoutError
from .errors import (
    BareException,
    NetworkError,
    NormalizedError,
    ScalarError,
    classify,
    extract_retry_after_ms,
    is_authentication_error,
    is_rate_limit_error,
    normalize,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], float]


@dataclass
class RetryContext:
    """Identifies one logical call in logs and in the terminal error."""

    operation: str
    service: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    cancel_event: asyncio.Event | None = None

    def as_log_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"operation": self.operation, "service": self.service}
        if self.request_id:
            fields["request_id"] = self.request_id
        return fields


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    reason: str


class RetryExecutor:
    """
    Runs an async unit of work under a ``RetryConfig``.

    ``sleep``, ``clock`` and ``rng`` are injectable so tests can run the
    backoff schedule without waiting and with deterministic jitter.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------ #
    # Classification                                                       #
    # ------------------------------------------------------------------ #

    def should_retry(self, error: BaseException, info: NormalizedError) -> RetryDecision:
        """
        Decide whether ``error`` is worth another attempt.

        The error's own ``is_retryable()`` wins. Dropped or refused
        connections are retried; other plain exceptions without any HTTP
        information are not. After that the configured
        retriable codes, retryable upstream reasons and retry-after hints each
        allow a retry; remaining 4xx statuses other than 429 do not, and
        anything left falls back to the normalised verdict.
        """
        override = getattr(error, "is_retryable", None)
        if callable(override):
            if override():
                return RetryDecision(True, "error_override_retryable")
            return RetryDecision(False, "error_override_not_retryable")

        shape = classify(error)
        if isinstance(shape, NetworkError):
            return RetryDecision(True, "transient_network_error")
        # Plain exceptions carry no HTTP information at all.
        if isinstance(shape, (BareException, ScalarError)):
            return RetryDecision(False, "non_retriable_error")

        status = info.http_status
        if status in self.config.retriable_codes:
            return RetryDecision(True, "retriable_http_status")
        if info.reason in RETRYABLE_REASONS:
            return RetryDecision(True, "retriable_reason_code")
        if extract_retry_after_ms(error) is not None:
            return RetryDecision(True, "rate_limit_hint")
        if 400 <= status < 500:
            if status == 429:
                return RetryDecision(True, "rate_limit_retryable")
            return RetryDecision(False, f"non_retriable_http_status:{status}")
        if info.is_retryable:
            return RetryDecision(True, f"normalized_retryable:{info.reason or status}")
        return RetryDecision(False, "error_not_retryable")

    def compute_delay_ms(self, attempt: int, error: BaseException | None = None) -> int:
        """Delay before attempt ``attempt + 1``. A retry-after hint is used as is."""
        hint = extract_retry_after_ms(error) if error is not None else None
        if hint is not None:
            return hint

        cfg = self.config
        delay = min(cfg.max_delay_ms, cfg.base_delay_ms * (2 ** (attempt - 1)))
        if cfg.jitter_factor:
            delay += self._rng.uniform(-1.0, 1.0) * delay * cfg.jitter_factor
        return max(0, round(delay))

    # ------------------------------------------------------------------ #
    # Execution                                                            #
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RetryContext | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or a terminal failure occurs.

        Args:
            operation: A callable returning a fresh awaitable per attempt.
            context: Names the call for logging; may carry a cancel event.

        Returns:
            The operation's result.

        Raises:
            AuthError: The final failure looks like a credential problem.
            ServiceError: Any other upstream failure, chained to the original.
            WorkspaceGateError: Raised by the operation itself, re-raised as is.
        """
        context = context or RetryContext(operation="google_api_call")
        cfg = self.config
        fields = context.as_log_fields()
        started = self._clock()

        for attempt in range(1, cfg.max_attempts + 1):
            logger.debug(
                "%s: attempt %d/%d",
                context.operation, attempt, cfg.max_attempts,
                extra={"event": {**fields, "attempt": attempt, "max_attempts": cfg.max_attempts}},
            )
            try:
                result = await self._attempt(operation, context, started)
            except asyncio.CancelledError:
                logger.info(
                    "%s: cancelled during attempt %d",
                    context.operation, attempt,
                    extra={"event": {**fields, "attempt": attempt, "outcome": "cancelled"}},
                )
                raise
            except Exception as e:
                error: Exception = e
            else:
                if attempt > 1:
                    logger.info(
                        "%s: succeeded on attempt %d/%d",
                        context.operation, attempt, cfg.max_attempts,
                        extra={"event": {**fields, "attempt": attempt, "outcome": "success"}},
                    )
                return result

            info = normalize(error)
            decision = self.should_retry(error, info)
            event = {
                **fields,
                "attempt": attempt,
                "max_attempts": cfg.max_attempts,
                "status": info.http_status,
                "upstream_reason": info.reason,
                "retry_reason": decision.reason,
            }

            if not decision.retry:
                logger.error(
                    "%s: non-retryable error on attempt %d (%s): %s",
                    context.operation, attempt, decision.reason, info.message,
                    extra={"event": {**event, "outcome": "failed", "retry_skipped": True}},
                )
                self._raise_terminal(error, info, attempt, context)

            if attempt == cfg.max_attempts:
                logger.error(
                    "%s: all %d attempts exhausted: %s",
                    context.operation, cfg.max_attempts, info.message,
                    extra={"event": {**event, "outcome": "exhausted"}},
                )
                self._raise_terminal(error, info, attempt, context)

            delay_ms = self.compute_delay_ms(attempt, error)
            self._check_total_budget(started, delay_ms, context, error)

            logger.warning(
                "%s: attempt %d/%d failed with %d, retrying in %dms (%s)",
                context.operation, attempt, cfg.max_attempts,
                info.http_status, delay_ms, decision.reason,
                extra={"event": {**event, "delay_ms": delay_ms, "outcome": "retry_scheduled"}},
            )

            if await self._wait(delay_ms, context.cancel_event):
                logger.info(
                    "%s: retry cancelled after attempt %d",
                    context.operation, attempt,
                    extra={"event": {**event, "outcome": "cancelled"}},
                )
                self._raise_terminal(error, info, attempt, context)

        # Unreachable: the loop either returns or raises on the final attempt.
        raise RuntimeError("Retry loop completed without result or error")

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        context: RetryContext,
        started: float,
    ) -> T:
        timeout_ms, timeout_type = self._attempt_timeout(started)
        if timeout_ms is not None and timeout_ms <= 0:
            raise WorkspaceTimeoutError(
                f"{context.operation} exceeded its total timeout of {self.config.total_timeout_ms}ms",
                timeout_type="total",
                timeout_ms=self.config.total_timeout_ms or 0,
                service=context.service,
                context=context.as_log_fields(),
            )
        try:
            if timeout_ms is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout_ms / 1000)
        except (TimeoutError, asyncio.TimeoutError) as e:
            timeout_type = timeout_type or "request"
            limit = timeout_ms or 0
            raise WorkspaceTimeoutError(
                f"{context.operation} timed out after {limit}ms",
                timeout_type=timeout_type,
                timeout_ms=limit,
                service=context.service,
                context=context.as_log_fields(),
            ) from e

    def _attempt_timeout(self, started: float) -> tuple[int | None, str | None]:
        """The tighter of the per-request timeout and what is left of the total budget."""
        cfg = self.config
        candidates: list[tuple[int, str]] = []
        if cfg.request_timeout_ms is not None:
            candidates.append((cfg.request_timeout_ms, "request"))
        if cfg.total_timeout_ms is not None:
            remaining = cfg.total_timeout_ms - self._elapsed_ms(started)
            candidates.append((remaining, "total"))
        if not candidates:
            return None, None
        return min(candidates)

    def _check_total_budget(
        self, started: float, delay_ms: int, context: RetryContext, error: Exception
    ) -> None:
        total = self.config.total_timeout_ms
        if total is None:
            return
        if self._elapsed_ms(started) + delay_ms >= total:
            logger.error(
                "%s: total timeout of %dms would be exceeded by the next retry",
                context.operation, total,
                extra={"event": {**context.as_log_fields(), "outcome": "timeout", "timeout_ms": total}},
            )
            raise WorkspaceTimeoutError(
                f"{context.operation} exceeded its total timeout of {total}ms",
                timeout_type="total",
                timeout_ms=total,
                service=context.service,
                context=context.as_log_fields(),
            ) from error

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    async def _wait(self, delay_ms: int, cancel_event: asyncio.Event | None) -> bool:
        """Sleep for ``delay_ms``; returns True if ``cancel_event`` fired first."""
        if cancel_event is None:
            await self._sleep(delay_ms / 1000)
            return False
        if cancel_event.is_set():
            return True

        sleeper = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return cancel_event.is_set()

    def _raise_terminal(
        self,
        error: Exception,
        info: NormalizedError,
        attempts: int,
        context: RetryContext,
    ) -> NoReturn:
        if isinstance(error, WorkspaceGateError):
            raise error

        details = {**context.as_log_fields(), **context.data, "attempts": attempts}
        if is_authentication_error(error, info) and not is_rate_limit_error(error, info):
            raise AuthError(
                info.message, context=details, normalized=info, status_code=info.http_status
            ) from error
        raise ServiceError(
            info.message or ERROR_MESSAGES["retries_exhausted"],
            service=context.service,
            attempts=attempts,
            context=details,
            normalized=info,
        ) from error


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    context: RetryContext | None = None,
) -> T:
    """One-off helper for callers without a long-lived executor."""
    return await RetryExecutor(config).execute(operation, context)
