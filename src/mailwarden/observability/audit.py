"""Structured audit events for token operations and API attempts.

Sinks receive one event per invocation attempt and per token operation.
Secrets are redacted before an event is built, so sinks never see them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from mailwarden.auth.models.errors import ClassifiedError

logger = logging.getLogger("mailwarden.audit")

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "code",
        "auth_code",
        "code_verifier",
        "authorization",
        "password",
        "state",
    }
)


def redact(details: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``details`` with secret values replaced, recursing into mappings."""
    cleaned: dict[str, Any] = {}
    for key, value in details.items():
        if key.lower() in SENSITIVE_KEYS or "secret" in key.lower():
            cleaned[key] = REDACTED
        elif isinstance(value, Mapping):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


@dataclass(frozen=True)
class AuditEvent:
    operation: str
    category: str | None
    retryable: bool
    attempt_number: int
    duration_ms: float
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.category is None

    @classmethod
    def build(
        cls,
        operation: str,
        *,
        attempt_number: int,
        duration_ms: float,
        error: ClassifiedError | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        return cls(
            operation=operation,
            category=error.category.value if error else None,
            retryable=error.retryable if error else False,
            attempt_number=attempt_number,
            duration_ms=round(duration_ms, 3),
            details=redact(details or {}),
        )


class AuditSink(Protocol):
    """Receives classified outcomes for observability."""

    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the ``mailwarden.audit`` logger."""

    def __init__(self, audit_logger: logging.Logger | None = None):
        self._logger = audit_logger or logger

    def emit(self, event: AuditEvent) -> None:
        level = logging.INFO if event.succeeded else logging.WARNING
        message = (
            f"{event.operation} attempt={event.attempt_number} "
            f"category={event.category or 'ok'} retryable={event.retryable} "
            f"duration_ms={event.duration_ms}"
        )
        if event.details:
            message += " " + " ".join(
                f"{key}={value}" for key, value in sorted(event.details.items())
            )
        self._logger.log(
            level,
            message,
            extra={"audit": event},
        )
