"""Retry wrapper for remote calls against the mail provider.

Runs an operation up to ``policy.max_attempts`` times. Each failure is
classified; non-retryable categories return at once, retryable ones wait a
backoff delay (or the server's hint) before the next attempt. The wait is the
only suspension point and can be interrupted through a cancel event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mailwarden.auth.models.errors import ClassifiedError, ErrorCategory
from mailwarden.auth.primitives.random_source import RandomSource, SystemRandomSource
from mailwarden.observability.audit import AuditEvent, AuditSink, LoggingAuditSink
from mailwarden.resilience.backoff import delay_for_error
from mailwarden.resilience.classifier import classify_exception
from mailwarden.resilience.models import InvocationOutcome, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


class RetryInvoker:
    """Executes fallible remote calls with classified retries.

    Holds no per-invocation state, so one invoker can serve many concurrent
    calls. The random source is the only shared component.
    """

    def __init__(
        self,
        default_policy: RetryPolicy | None = None,
        random_source: RandomSource | None = None,
        audit_sink: AuditSink | None = None,
    ):
        self.default_policy = default_policy or RetryPolicy()
        self._random = random_source or SystemRandomSource()
        self._audit = audit_sink or LoggingAuditSink()

    async def execute_with_retry(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        operation_name: str = "remote_call",
    ) -> InvocationOutcome[T]:
        """Run ``operation`` until it succeeds or cannot be retried further.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            policy: Retry policy, defaults to the invoker's policy
            cancel_event: Setting it aborts before the next attempt or mid-wait
            operation_name: Label for logs and audit events

        Returns:
            InvocationOutcome: The value, or the last classified failure, or a
            cancelled outcome
        """
        policy = policy or self.default_policy
        last_error: ClassifiedError | None = None

        for attempt_index in range(policy.max_attempts):
            attempt_number = attempt_index + 1

            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(operation_name, attempt_index)

            logger.debug(
                f"Executing {operation_name}, attempt "
                f"{attempt_number}/{policy.max_attempts}"
            )
            started = time.perf_counter()
            try:
                value = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_exception(e)
                self._record(operation_name, attempt_number, policy, started, error)
            else:
                self._record(operation_name, attempt_number, policy, started, None)
                if attempt_number > 1:
                    logger.info(
                        f"{operation_name} succeeded after {attempt_number} attempts"
                    )
                return InvocationOutcome(
                    value=value, error=None, attempts=attempt_number
                )

            last_error = error
            if not error.retryable:
                logger.warning(
                    f"{operation_name} failed with non-retryable "
                    f"{error.category.value} error: {error.detail}"
                )
                return InvocationOutcome(
                    value=None, error=error, attempts=attempt_number
                )

            if attempt_number >= policy.max_attempts:
                break

            delay = delay_for_error(error, policy, attempt_index, self._random)
            logger.warning(
                f"{operation_name} hit {error.category.value} error, retrying in "
                f"{delay:.3f}s (attempt {attempt_number}/{policy.max_attempts})"
            )
            if not await self._wait(delay, cancel_event):
                return self._cancelled(operation_name, attempt_number)

        logger.error(
            f"{operation_name} failed after {policy.max_attempts} attempts: "
            f"{last_error.category.value if last_error else 'unknown'}"
        )
        return InvocationOutcome(
            value=None, error=last_error, attempts=policy.max_attempts
        )

    async def _wait(self, delay: float, cancel_event: asyncio.Event | None) -> bool:
        """Sleep for ``delay`` seconds. False if cancelled before it elapsed."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def _cancelled(self, operation_name: str, attempts: int) -> InvocationOutcome:
        logger.info(f"{operation_name} cancelled after {attempts} attempt(s)")
        error = ClassifiedError.of(
            ErrorCategory.TIMEOUT,
            detail="Operation was cancelled",
            human_message="The operation was cancelled.",
        )
        return InvocationOutcome(
            value=None, error=error, attempts=attempts, cancelled=True
        )

    def _record(
        self,
        operation_name: str,
        attempt_number: int,
        policy: RetryPolicy,
        started: float,
        error: ClassifiedError | None,
    ) -> None:
        details: dict[str, object] = {"max_attempts": policy.max_attempts}
        if error is not None and error.status_code is not None:
            details["status_code"] = error.status_code
        self._audit.emit(
            AuditEvent.build(
                operation_name,
                attempt_number=attempt_number,
                duration_ms=(time.perf_counter() - started) * 1000,
                error=error,
                details=details,
            )
        )


async def execute_with_retry(
    operation: Operation[T],
    policy: RetryPolicy | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
    random_source: RandomSource | None = None,
    audit_sink: AuditSink | None = None,
) -> InvocationOutcome[T]:
    """One-off invocation without keeping a ``RetryInvoker`` around."""
    invoker = RetryInvoker(policy, random_source, audit_sink)
    return await invoker.execute_with_retry(operation, cancel_event=cancel_event)
