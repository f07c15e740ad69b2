"""
Tests for workspace_gate/google/retry.py: the retry executor.

All tests inject a recording sleep, so none of them wait for real.
"""

import asyncio
import errno
import logging
import random
from unittest.mock import MagicMock

import pytest

from workspace_gate.config import RetryConfig
from workspace_gate.exceptions import (
    AuthError,
    ReadOnlyModeError,
    ServiceError,
    WorkspaceTimeoutError,
)
from workspace_gate.google.errors import normalize
from workspace_gate.google.retry import RetryContext, RetryExecutor, execute_with_retry
from tests.helpers import ApiError, google_error_body


def make_executor(sleep, **config):
    config.setdefault("jitter_factor", 0.0)
    return RetryExecutor(RetryConfig(**config), sleep=sleep)


def failing(*errors, result="ok"):
    """An operation that raises ``errors`` in turn, then returns ``result``."""
    calls = {"count": 0}

    async def _op():
        calls["count"] += 1
        if calls["count"] <= len(errors):
            raise errors[calls["count"] - 1]
        return result

    _op.calls = calls
    return _op


def always_failing(error):
    calls = {"count": 0}

    async def _op():
        calls["count"] += 1
        raise error

    _op.calls = calls
    return _op


# ── Success paths ──────────────────────────────────────────────────────────────

class TestSuccess:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, recording_sleep):
        executor = make_executor(recording_sleep)
        op = failing()
        assert await executor.execute(op) == "ok"
        assert op.calls["count"] == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=3)
        op = failing(ApiError("unavailable", code=503), ApiError("bad gateway", code=502))
        assert await executor.execute(op) == "ok"
        assert op.calls["count"] == 3
        assert recording_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_dropped_connection(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=3)
        op = failing(ConnectionResetError(errno.ECONNRESET, "Connection reset by peer"))
        assert await executor.execute(op) == "ok"
        assert op.calls["count"] == 2
        assert recording_sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_module_helper(self, recording_sleep):
        assert await execute_with_retry(failing(result=42)) == 42


# ── Exhaustion and non-retryable errors ────────────────────────────────────────

class TestTerminalFailures:
    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=2)
        original = ApiError("Service Unavailable", code=503)
        op = always_failing(original)

        with pytest.raises(ServiceError) as exc_info:
            await executor.execute(op, RetryContext(operation="files.get", service="drive"))

        assert op.calls["count"] == 2
        err = exc_info.value
        assert err.attempts == 2
        assert err.service == "drive"
        assert err.status_code == 503
        assert err.normalized.http_status == 503
        assert err.__cause__ is original
        assert err.context["operation"] == "files.get"

    @pytest.mark.asyncio
    async def test_single_attempt_config(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=1)
        op = always_failing(ApiError("x", code=503))
        with pytest.raises(ServiceError):
            await executor.execute(op)
        assert op.calls["count"] == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=5)
        op = always_failing(ApiError("Requested entity was not found", code=404))
        with pytest.raises(ServiceError) as exc_info:
            await executor.execute(op)
        assert op.calls["count"] == 1
        assert exc_info.value.status_code == 404
        assert not exc_info.value.is_retryable()

    @pytest.mark.asyncio
    async def test_plain_exception_is_not_retried(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=3)
        op = always_failing(ValueError("boom"))
        with pytest.raises(ServiceError) as exc_info:
            await executor.execute(op)
        assert op.calls["count"] == 1
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_error_override_blocks_retry(self, recording_sleep):
        class NotRetryable(ApiError):
            def is_retryable(self):
                return False

        executor = make_executor(recording_sleep, max_attempts=3)
        op = always_failing(NotRetryable("server said no", code=500))
        with pytest.raises(ServiceError):
            await executor.execute(op)
        assert op.calls["count"] == 1

    @pytest.mark.asyncio
    async def test_workspace_errors_pass_through(self, recording_sleep):
        denial = ReadOnlyModeError("read only", operation="write", service_name="docs")
        executor = make_executor(recording_sleep, max_attempts=3)
        op = always_failing(denial)
        with pytest.raises(ReadOnlyModeError) as exc_info:
            await executor.execute(op)
        assert exc_info.value is denial
        assert op.calls["count"] == 1

    @pytest.mark.asyncio
    async def test_auth_failure_becomes_auth_error(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=3)
        op = always_failing(ApiError("Invalid Credentials", code=401))
        with pytest.raises(AuthError) as exc_info:
            await executor.execute(op)
        assert op.calls["count"] == 1
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_rate_limited_403_is_retried_not_auth(self, recording_sleep):
        body = google_error_body(403, "Rate Limit Exceeded", reason="rateLimitExceeded")
        err = ApiError("x", response={"status": 403, "data": body})
        executor = make_executor(recording_sleep, max_attempts=2)
        op = always_failing(err)
        with pytest.raises(ServiceError) as exc_info:
            await executor.execute(op)
        assert not isinstance(exc_info.value, AuthError)
        assert op.calls["count"] == 2


# ── Classification ─────────────────────────────────────────────────────────────

class TestShouldRetry:
    def _decide(self, error, **config):
        executor = RetryExecutor(RetryConfig(**config))
        return executor.should_retry(error, normalize(error))

    def test_retriable_status(self):
        decision = self._decide(ApiError("x", code=503))
        assert decision.retry
        assert decision.reason == "retriable_http_status"

    def test_retriable_reason(self):
        err = ApiError("x", response={"data": google_error_body(400, "x", reason="backendError")})
        decision = self._decide(err)
        assert decision.retry
        assert decision.reason == "retriable_reason_code"

    def test_retry_after_hint(self):
        decision = self._decide(ApiError("x", code=409, retry_after=1))
        assert decision.retry
        assert decision.reason == "rate_limit_hint"

    def test_429_outside_configured_codes(self):
        decision = self._decide(ApiError("x", code=429), retriable_codes={503})
        assert decision.retry
        assert decision.reason == "rate_limit_retryable"

    def test_non_retriable_status_reason(self):
        decision = self._decide(ApiError("x", code=404))
        assert not decision.retry
        assert decision.reason == "non_retriable_http_status:404"

    def test_normalized_verdict_retries_unconfigured_5xx(self):
        # 501 is not configured but the normalised verdict still allows it
        decision = self._decide(ApiError("x", code=501))
        assert decision.retry
        assert decision.reason.startswith("normalized_retryable")

    def test_connection_reset(self):
        decision = self._decide(ConnectionResetError(errno.ECONNRESET, "Connection reset by peer"))
        assert decision.retry
        assert decision.reason == "transient_network_error"

    def test_override_reason(self):
        timeout = WorkspaceTimeoutError("t", timeout_type="request", timeout_ms=10)
        assert self._decide(timeout).reason == "error_override_retryable"


# ── Delays ─────────────────────────────────────────────────────────────────────

class TestDelays:
    def test_exponential_and_capped(self):
        executor = RetryExecutor(RetryConfig(base_delay_ms=1000, max_delay_ms=5000, jitter_factor=0))
        assert [executor.compute_delay_ms(n) for n in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]

    def test_jitter_uses_injected_rng(self):
        rng = MagicMock(spec=random.Random)
        rng.uniform.return_value = 1.0
        executor = RetryExecutor(RetryConfig(base_delay_ms=1000, jitter_factor=0.1), rng=rng)
        assert executor.compute_delay_ms(1) == 1100
        rng.uniform.assert_called_with(-1.0, 1.0)

    def test_jitter_stays_in_bounds(self):
        executor = RetryExecutor(
            RetryConfig(base_delay_ms=1000, jitter_factor=0.5), rng=random.Random(7)
        )
        for _ in range(50):
            assert 500 <= executor.compute_delay_ms(1) <= 1500

    def test_retry_after_is_used_verbatim(self):
        executor = RetryExecutor(RetryConfig(jitter_factor=1.0, max_delay_ms=30_000))
        assert executor.compute_delay_ms(1, ApiError("x", retry_after_ms=45_000)) == 45_000

    @pytest.mark.asyncio
    async def test_hint_drives_sleep(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=2)
        op = failing(ApiError("slow down", code=429, retry_after_ms=2500))
        assert await executor.execute(op) == "ok"
        assert recording_sleep.calls == [2.5]


# ── Cancellation ───────────────────────────────────────────────────────────────

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_aborts_wait(self):
        cancel = asyncio.Event()

        async def sleep(seconds):
            cancel.set()
            await asyncio.sleep(10)

        executor = RetryExecutor(RetryConfig(max_attempts=3, jitter_factor=0), sleep=sleep)
        op = always_failing(ApiError("unavailable", code=503))
        with pytest.raises(ServiceError) as exc_info:
            await executor.execute(op, RetryContext(operation="op", cancel_event=cancel))
        assert op.calls["count"] == 1
        assert exc_info.value.normalized.http_status == 503

    @pytest.mark.asyncio
    async def test_already_set_event(self, recording_sleep):
        cancel = asyncio.Event()
        cancel.set()
        executor = make_executor(recording_sleep, max_attempts=3)
        op = always_failing(ApiError("unavailable", code=503))
        with pytest.raises(ServiceError):
            await executor.execute(op, RetryContext(operation="op", cancel_event=cancel))
        assert op.calls["count"] == 1
        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, recording_sleep):
        executor = make_executor(recording_sleep, max_attempts=3)
        op = always_failing(asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await executor.execute(op)
        assert op.calls["count"] == 1


# ── Timeouts ───────────────────────────────────────────────────────────────────

class TestTimeouts:
    @pytest.mark.asyncio
    async def test_request_timeout_is_retried(self, recording_sleep):
        calls = {"count": 0}

        async def slow():
            calls["count"] += 1
            await asyncio.sleep(1)

        executor = make_executor(recording_sleep, max_attempts=2, request_timeout_ms=10)
        with pytest.raises(WorkspaceTimeoutError) as exc_info:
            await executor.execute(slow)
        assert calls["count"] == 2
        assert exc_info.value.timeout_type == "request"
        assert exc_info.value.is_retryable()

    @pytest.mark.asyncio
    async def test_total_budget_stops_retries(self, recording_sleep):
        now = [0.0]
        calls = {"count": 0}
        original = ApiError("unavailable", code=503)

        async def op():
            calls["count"] += 1
            now[0] += 5.0
            raise original

        executor = RetryExecutor(
            RetryConfig(max_attempts=5, jitter_factor=0, total_timeout_ms=8000),
            sleep=recording_sleep,
            clock=lambda: now[0],
        )
        with pytest.raises(WorkspaceTimeoutError) as exc_info:
            await executor.execute(op)
        assert calls["count"] == 2
        assert exc_info.value.timeout_type == "total"
        assert not exc_info.value.is_retryable()
        assert exc_info.value.__cause__ is original


# ── Logging ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_retry_events_are_logged(recording_sleep, caplog):
    executor = make_executor(recording_sleep, max_attempts=2)
    op = always_failing(ApiError("unavailable", code=503))

    with caplog.at_level(logging.DEBUG, logger="workspace_gate.google.retry"):
        with pytest.raises(ServiceError):
            await executor.execute(op, RetryContext(operation="values.get", service="sheets"))

    scheduled = [r for r in caplog.records if getattr(r, "event", {}).get("outcome") == "retry_scheduled"]
    assert len(scheduled) == 1
    assert scheduled[0].event["delay_ms"] == 1000
    assert scheduled[0].event["retry_reason"] == "retriable_http_status"
    assert scheduled[0].event["attempt"] == 1

    exhausted = [r for r in caplog.records if getattr(r, "event", {}).get("outcome") == "exhausted"]
    assert len(exhausted) == 1
    assert exhausted[0].event["service"] == "sheets"
