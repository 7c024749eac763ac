"""Exponential backoff with jitter."""

from __future__ import annotations

from mailwarden.auth.models.errors import ClassifiedError, ErrorCategory
from mailwarden.auth.primitives.random_source import RandomSource
from mailwarden.resilience.classifier import HTTP_TOO_MANY_REQUESTS
from mailwarden.resilience.models import RATE_LIMIT_FALLBACK_DELAY, RetryPolicy


def raw_delay(policy: RetryPolicy, attempt_index: int) -> float:
    """Un-jittered delay: ``base_delay * backoff_multiplier ** attempt_index``."""
    return policy.base_delay * policy.backoff_multiplier**attempt_index


def compute_backoff(
    policy: RetryPolicy, attempt_index: int, random_source: RandomSource
) -> float:
    """Delay in seconds before the attempt following ``attempt_index``.

    The raw delay is stretched by up to ``jitter_factor`` so independent
    clients do not retry in lockstep, then capped at ``max_delay``.
    """
    delay = raw_delay(policy, attempt_index)
    delay *= 1.0 + random_source.random() * policy.jitter_factor
    return min(delay, policy.max_delay)


def delay_for_error(
    error: ClassifiedError,
    policy: RetryPolicy,
    attempt_index: int,
    random_source: RandomSource,
) -> float:
    """Server hint when present, 60s for a bare 429, computed backoff otherwise."""
    if error.retry_after is not None:
        return error.retry_after
    if (
        error.category is ErrorCategory.RATE_LIMIT
        and error.status_code == HTTP_TOO_MANY_REQUESTS
    ):
        return RATE_LIMIT_FALLBACK_DELAY
    return compute_backoff(policy, attempt_index, random_source)
