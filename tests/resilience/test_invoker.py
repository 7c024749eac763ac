"""Tests for the retrying invocation layer.

Covers:
- Success on first and later attempts
- Immediate return on non-retryable failures
- Exhaustion of the retry budget
- Server retry hints and the 429 fallback
- Cancellation during the backoff wait
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from mailwarden.auth.models.errors import (
    AuthenticationError,
    ErrorCategory,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from mailwarden.auth.primitives.random_source import FixedRandomSource
from mailwarden.resilience.backoff import compute_backoff
from mailwarden.resilience.invoker import RetryInvoker, execute_with_retry
from mailwarden.resilience.models import RetryPolicy

FAST_POLICY = RetryPolicy(
    max_attempts=3, base_delay=0.01, max_delay=1.0, jitter_factor=0.1
)


class InvokerTest:
    @pytest.fixture(autouse=True)
    def setup_invoker(self, audit_sink):
        self.audit_sink = audit_sink
        self.random_source = FixedRandomSource(0.5)
        self.invoker = RetryInvoker(
            FAST_POLICY, random_source=self.random_source, audit_sink=audit_sink
        )


class TestSuccess(InvokerTest):
    async def test_first_attempt_success(self):
        operation = AsyncMock(return_value="ok")

        outcome = await self.invoker.execute_with_retry(operation)

        assert outcome.ok
        assert outcome.value == "ok"
        assert outcome.attempts == 1
        assert outcome.unwrap() == "ok"
        operation.assert_awaited_once()

    async def test_rate_limited_twice_then_success(self):
        # Arrange
        operation = AsyncMock(
            side_effect=[RateLimitError("slow"), RateLimitError("slow"), "messages"]
        )
        expected_wait = compute_backoff(
            FAST_POLICY, 0, self.random_source
        ) + compute_backoff(FAST_POLICY, 1, self.random_source)

        # Act
        started = time.perf_counter()
        outcome = await self.invoker.execute_with_retry(operation)
        elapsed = time.perf_counter() - started

        # Assert
        assert outcome.ok
        assert outcome.value == "messages"
        assert outcome.attempts == 3
        assert operation.await_count == 3
        assert elapsed >= expected_wait - 0.001

    async def test_audit_event_per_attempt(self):
        operation = AsyncMock(side_effect=[NetworkError("down"), "ok"])

        await self.invoker.execute_with_retry(operation, operation_name="list")

        assert [e.attempt_number for e in self.audit_sink.events] == [1, 2]
        assert [e.category for e in self.audit_sink.events] == ["network", None]
        assert {e.operation for e in self.audit_sink.events} == {"list"}


class TestNonRetryable(InvokerTest):
    @pytest.mark.parametrize(
        "exception",
        [
            AuthenticationError("invalid_grant"),
            ValidationError("bad input"),
            KeyError("unexpected"),
            PermissionError("credential file is read-only"),
            FileNotFoundError("tokens.json"),
        ],
    )
    async def test_returns_immediately_without_delay(self, exception):
        operation = AsyncMock(side_effect=exception)

        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            outcome = await self.invoker.execute_with_retry(operation)

        assert not outcome.ok
        assert outcome.attempts == 1
        assert not outcome.error.retryable
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_unwrap_raises_typed_exception(self):
        operation = AsyncMock(
            side_effect=AuthenticationError("revoked", requires_reauthentication=True)
        )

        outcome = await self.invoker.execute_with_retry(operation)

        with pytest.raises(AuthenticationError) as exc_info:
            outcome.unwrap()
        assert exc_info.value.requires_reauthentication


class TestExhaustion(InvokerTest):
    async def test_returns_last_error_after_max_attempts(self):
        operation = AsyncMock(
            side_effect=[
                NetworkError("one"),
                NetworkError("two"),
                NetworkError("three"),
            ]
        )

        outcome = await self.invoker.execute_with_retry(operation)

        assert not outcome.ok
        assert not outcome.cancelled
        assert outcome.attempts == 3
        assert outcome.error.category is ErrorCategory.NETWORK
        assert outcome.error.detail == "three"
        assert operation.await_count == 3

    async def test_no_wait_after_final_attempt(self):
        operation = AsyncMock(side_effect=NetworkError("down"))
        policy = RetryPolicy(max_attempts=2, base_delay=0.01, max_delay=0.01)

        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            await self.invoker.execute_with_retry(operation, policy)

        assert sleep.await_count == 1

    async def test_single_attempt_policy(self):
        operation = AsyncMock(side_effect=NetworkError("down"))

        outcome = await self.invoker.execute_with_retry(
            operation, RetryPolicy(max_attempts=1)
        )

        assert outcome.attempts == 1
        assert outcome.error.retryable


class TestRetryHints(InvokerTest):
    async def test_retry_after_overrides_backoff(self):
        operation = AsyncMock(side_effect=[RateLimitError("slow", retry_after=5), "ok"])

        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            outcome = await self.invoker.execute_with_retry(operation)

        assert outcome.ok
        sleep.assert_awaited_once_with(5)

    async def test_bare_429_waits_sixty_seconds(self):
        request = httpx.Request("GET", "https://gmail.googleapis.com/x")
        response = httpx.Response(429, request=request)
        operation = AsyncMock(
            side_effect=[
                httpx.HTTPStatusError("429", request=request, response=response),
                "ok",
            ]
        )

        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            await self.invoker.execute_with_retry(operation)

        sleep.assert_awaited_once_with(60.0)


class TestCancellation(InvokerTest):
    async def test_cancel_during_wait(self):
        # Arrange
        cancel_event = asyncio.Event()
        operation = AsyncMock(side_effect=RateLimitError("slow", retry_after=30))
        asyncio.get_running_loop().call_later(0.01, cancel_event.set)

        # Act
        started = time.perf_counter()
        outcome = await self.invoker.execute_with_retry(
            operation, cancel_event=cancel_event
        )

        # Assert
        assert time.perf_counter() - started < 5
        assert outcome.cancelled
        assert not outcome.ok
        assert outcome.error.category is ErrorCategory.TIMEOUT
        assert operation.await_count == 1

    async def test_already_cancelled_makes_no_attempt(self):
        cancel_event = asyncio.Event()
        cancel_event.set()
        operation = AsyncMock(return_value="ok")

        outcome = await self.invoker.execute_with_retry(
            operation, cancel_event=cancel_event
        )

        assert outcome.cancelled
        assert outcome.attempts == 0
        operation.assert_not_awaited()

    async def test_task_cancellation_propagates(self):
        operation = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await self.invoker.execute_with_retry(operation)


class TestModuleFunction:
    async def test_execute_with_retry(self, audit_sink):
        operation = AsyncMock(side_effect=[NetworkError("down"), 42])

        outcome = await execute_with_retry(
            operation,
            FAST_POLICY,
            random_source=FixedRandomSource(),
            audit_sink=audit_sink,
        )

        assert outcome.value == 42
        assert outcome.attempts == 2


class TestAuditDetails(InvokerTest):
    async def test_status_code_and_budget_recorded(self):
        request = httpx.Request("GET", "https://gmail.googleapis.com/x")
        response = httpx.Response(503, request=request)
        operation = AsyncMock(
            side_effect=[
                httpx.HTTPStatusError("503", request=request, response=response),
                "ok",
            ]
        )

        await self.invoker.execute_with_retry(operation)

        failed, succeeded = self.audit_sink.events
        assert failed.details == {"max_attempts": 3, "status_code": 503}
        assert succeeded.details == {"max_attempts": 3}
