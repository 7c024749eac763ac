"""Security checks for the authorization code flow.

CSRF state comparison and redirect URI inspection.
"""

from __future__ import annotations

import secrets
from urllib.parse import urlparse

from mailwarden.auth.models.errors import ValidationError

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})


def validate_state(expected: str, actual: str) -> None:
    """Validate state parameter matches expected value.

    Uses a constant-time comparison. An empty expected state never matches.

    Args:
        expected: State parameter from original authorization request
        actual: State parameter from callback URL

    Raises:
        ValidationError: If state parameters don't match (``csrf`` is set)
    """
    if not expected or not secrets.compare_digest(
        expected.encode("utf-8"), (actual or "").encode("utf-8")
    ):
        raise ValidationError(
            "State parameter mismatch - possible CSRF attack", csrf=True
        )


def is_loopback_redirect(uri: str) -> bool:
    """True if ``uri`` is an http redirect to this machine."""
    try:
        parsed = urlparse(uri)
        return parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS
    except ValueError:
        return False
