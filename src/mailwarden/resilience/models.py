"""Retry policy and invocation outcome models."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Generic, TypeVar

from mailwarden.auth.models.errors import ClassifiedError, ConfigurationError

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 120.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER_FACTOR = 0.1

# Wait applied to an HTTP 429 that carries no Retry-After hint
RATE_LIMIT_FALLBACK_DELAY = 60.0

_ENV_FIELDS = {
    "max_attempts": ("MAILWARDEN_RETRY_MAX_ATTEMPTS", int),
    "base_delay": ("MAILWARDEN_RETRY_BASE_DELAY", float),
    "max_delay": ("MAILWARDEN_RETRY_MAX_DELAY", float),
    "backoff_multiplier": ("MAILWARDEN_RETRY_BACKOFF_MULTIPLIER", float),
    "jitter_factor": ("MAILWARDEN_RETRY_JITTER_FACTOR", float),
}


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff shape for one invocation. Delays in seconds."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter_factor: float = DEFAULT_JITTER_FACTOR

    def __post_init__(self) -> None:
        problems = []
        if self.max_attempts < 1:
            problems.append("max_attempts must be at least 1")
        if self.base_delay < 0:
            problems.append("base_delay must not be negative")
        if self.max_delay < self.base_delay:
            problems.append("max_delay must not be less than base_delay")
        if self.backoff_multiplier < 1:
            problems.append("backoff_multiplier must be at least 1")
        if not (0.0 <= self.jitter_factor <= 1.0):
            problems.append("jitter_factor must be between 0 and 1")
        if problems:
            raise ConfigurationError(
                "Invalid retry policy: " + "; ".join(problems),
                human_message="Retry settings are invalid: " + "; ".join(problems),
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RetryPolicy:
        """Build a policy from ``MAILWARDEN_RETRY_*`` variables."""
        env = os.environ if environ is None else environ
        values = {}
        for name, (key, cast) in _ENV_FIELDS.items():
            raw = env.get(key)
            if raw is None:
                continue
            try:
                values[name] = cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"{key} is not a valid number: {raw!r}") from e
        return cls(**values)


@dataclass(frozen=True)
class InvocationOutcome(Generic[T]):
    """Result of ``execute_with_retry``.

    Exactly one of ``value`` (on success) or ``error`` is meaningful.
    ``cancelled`` distinguishes a caller cancellation from an API failure.
    """

    value: T | None
    error: ClassifiedError | None
    attempts: int
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    def unwrap(self) -> T:
        """Return the value or raise the typed exception for the failure."""
        if self.error is not None:
            raise self.error.to_exception()
        return self.value
