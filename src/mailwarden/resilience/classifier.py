"""Error classification for retry decisions.

Maps a raw failure (HTTP status + provider payload + headers, or a transport
exception) onto a ``ClassifiedError``. Rules are applied in priority order:

1. 429 or a "too many requests" provider code -> RATE_LIMIT
2. 403 whose message mentions "quota" or "rate" -> QUOTA_EXCEEDED
   (any other 403 is a permission failure -> AUTHENTICATION)
3. 401 -> AUTHENTICATION, re-authentication required
4. connect/DNS/refused transport failures -> NETWORK, timeouts -> TIMEOUT
   (other OS errors such as FileNotFoundError are not transport failures)
5. 500/502/503/504 -> NETWORK (service unavailable)
6. anything else -> UNKNOWN, not retried

The 403 rule matches on human readable text and will misfire if the provider
rewords or localizes its messages.
"""

from __future__ import annotations

import asyncio
import math
import socket
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from mailwarden.auth.models.errors import (
    ClassifiedError,
    ErrorCategory,
    MailwardenError,
)

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429
SERVICE_UNAVAILABLE_STATUSES = frozenset({500, 502, 503, 504})

RATE_LIMIT_CODES = frozenset(
    {
        "resource_exhausted",
        "ratelimitexceeded",
        "userratelimitexceeded",
        "too_many_requests",
        "toomanyrequests",
    }
)

QUOTA_MARKERS = ("quota", "rate")


def classify(
    status_code: int | None = None,
    payload: Mapping[str, Any] | None = None,
    exception: BaseException | None = None,
    headers: Mapping[str, str] | None = None,
) -> ClassifiedError:
    """Classify a failed remote call.

    Args:
        status_code: HTTP status of the response, if one was received
        payload: Decoded provider error body
        exception: Transport exception, if no response was received
        headers: Response headers (used for ``Retry-After``)

    Returns:
        ClassifiedError: Category, retryability and optional retry hint
    """
    codes = _provider_codes(payload)
    message = _provider_message(payload, exception)

    if status_code == HTTP_TOO_MANY_REQUESTS or codes & RATE_LIMIT_CODES:
        return ClassifiedError.of(
            ErrorCategory.RATE_LIMIT,
            detail=message,
            retry_after=parse_retry_after(headers),
            status_code=status_code,
        )

    if status_code == HTTP_FORBIDDEN:
        lowered = message.lower()
        if any(marker in lowered for marker in QUOTA_MARKERS):
            return ClassifiedError.of(
                ErrorCategory.QUOTA_EXCEEDED,
                detail=message,
                retry_after=parse_retry_after(headers),
                status_code=status_code,
            )
        return ClassifiedError.of(
            ErrorCategory.AUTHENTICATION,
            detail=message,
            status_code=status_code,
            human_message="The mail provider denied access. "
            "Check the granted permissions.",
        )

    if status_code == HTTP_UNAUTHORIZED:
        return ClassifiedError.of(
            ErrorCategory.AUTHENTICATION,
            detail=message,
            requires_reauthentication=True,
            status_code=status_code,
        )

    if exception is not None and status_code is None:
        transport_category = _transport_category(exception)
        if transport_category is not None:
            return ClassifiedError.of(transport_category, detail=message)

    if status_code in SERVICE_UNAVAILABLE_STATUSES:
        return ClassifiedError.of(
            ErrorCategory.NETWORK,
            detail=message,
            retry_after=parse_retry_after(headers),
            status_code=status_code,
        )

    return ClassifiedError.of(
        ErrorCategory.UNKNOWN, detail=message, status_code=status_code
    )


def classify_exception(exception: BaseException) -> ClassifiedError:
    """Classify any exception raised by a remote operation.

    Exceptions from this package already carry their classification.
    ``httpx.HTTPStatusError`` is unpacked into status, payload and headers.
    """
    if isinstance(exception, MailwardenError):
        return exception.classified

    if isinstance(exception, httpx.HTTPStatusError):
        response = exception.response
        return classify(
            status_code=response.status_code,
            payload=_decode_payload(response),
            headers=response.headers,
        )

    return classify(exception=exception)


def parse_retry_after(
    headers: Mapping[str, str] | None, now: datetime | None = None
) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Accepts delta-seconds or an HTTP date. Returns None when absent,
    unparseable or non-finite; past dates yield 0.
    """
    if not headers:
        return None
    value = _header(headers, "retry-after")
    if value is None:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _transport_category(exception: BaseException) -> ErrorCategory | None:
    if isinstance(
        exception, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)
    ):
        return ErrorCategory.TIMEOUT
    if isinstance(
        exception, (httpx.TransportError, ConnectionError, socket.gaierror)
    ):
        return ErrorCategory.NETWORK
    return None


def _provider_codes(payload: Mapping[str, Any] | None) -> set[str]:
    """Collect provider error codes, lower-cased.

    Handles both OAuth style (``{"error": "invalid_grant"}``) and Google API
    style (``{"error": {"status": ..., "errors": [{"reason": ...}]}}``) bodies.
    """
    if not payload:
        return set()
    codes: set[str] = set()
    error = payload.get("error")
    if isinstance(error, str):
        codes.add(error.lower())
    elif isinstance(error, Mapping):
        if isinstance(error.get("status"), str):
            codes.add(error["status"].lower())
        for item in error.get("errors") or []:
            if isinstance(item, Mapping) and isinstance(item.get("reason"), str):
                codes.add(item["reason"].lower())
    return codes


def _provider_message(
    payload: Mapping[str, Any] | None, exception: BaseException | None
) -> str:
    parts: list[str] = []
    if payload:
        error = payload.get("error")
        if isinstance(error, Mapping):
            if error.get("message"):
                parts.append(str(error["message"]))
        elif error:
            parts.append(str(error))
        if payload.get("error_description"):
            parts.append(str(payload["error_description"]))
        if payload.get("message") and not parts:
            parts.append(str(payload["message"]))
    if exception is not None:
        parts.append(str(exception) or type(exception).__name__)
    return ": ".join(parts)


def _decode_payload(response: httpx.Response) -> Mapping[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text} if response.text else None
    return data if isinstance(data, Mapping) else None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    if isinstance(headers, httpx.Headers):
        return headers.get(name)
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
