"""Token models for the authorization code flow.

``TokenResponse`` mirrors the token endpoint wire format (RFC 6749 Section 5);
``TokenSet`` is the immutable credential the rest of the application holds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

RefreshMethod = Literal["automatic", "manual", "startup"]


class TokenSet(BaseModel):
    """OAuth credential for one account.

    Replaced wholesale on refresh, never mutated. ``expires_at`` decides
    liveness only; structural validity needs just a non-empty access token.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime
    scope: str | None = None
    token_type: str = "Bearer"

    @field_validator("expires_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Naive timestamps from older stores are taken as UTC
        if v.tzinfo is None or v.utcoffset() is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def has_access_token(self) -> bool:
        return bool(self.access_token)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class TokenResponse(BaseModel):
    """Token endpoint response, success (Section 5.1) or error (Section 5.2)."""

    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None

    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and bool(self.access_token)

    def is_error(self) -> bool:
        return self.error is not None

    def error_message(self) -> str:
        """Provider error code and description as a single line."""
        if self.error_description:
            return f"{self.error}: {self.error_description}"
        return self.error or "unknown_error"

    def to_token_set(
        self, issued_at: datetime, fallback_refresh_token: str | None = None
    ) -> TokenSet:
        """Convert a successful response into a TokenSet.

        Args:
            issued_at: Instant the response was received
            fallback_refresh_token: Carried forward when the provider omits a
                new refresh token

        Raises:
            ValueError: If the response carries no access token
        """
        if not self.access_token:
            raise ValueError("Cannot build TokenSet without an access token")

        lifetime = (
            timedelta(seconds=self.expires_in)
            if self.expires_in is not None
            else DEFAULT_TOKEN_LIFETIME
        )
        return TokenSet(
            access_token=self.access_token,
            refresh_token=self.refresh_token or fallback_refresh_token,
            expires_at=issued_at + lifetime,
            scope=self.scope,
            token_type=self.token_type,
        )


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3).

    The code_verifier binds the exchange to the original request (RFC 7636).
    """

    code: str = field(repr=False)
    code_verifier: str = field(repr=False)
    redirect_uri: str
    client_id: str
    client_secret: str = field(repr=False)
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Form fields for an application/x-www-form-urlencoded POST."""
        return {
            "grant_type": self.grant_type,
            "code": self.code,
            "code_verifier": self.code_verifier,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh request parameters (RFC 6749 Section 6)."""

    refresh_token: str = field(repr=False)
    client_id: str
    client_secret: str = field(repr=False)
    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        return {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }


@dataclass(frozen=True)
class RefreshMetadata:
    """Audit record attached to a refresh result. Not persisted."""

    refreshed_at: datetime
    method: RefreshMethod
    duration_ms: float
    attempt_number: int


@dataclass(frozen=True)
class RefreshResult:
    tokens: TokenSet
    metadata: RefreshMetadata


@dataclass(frozen=True)
class TokenValidation:
    """Outcome of a structural and expiry check on a TokenSet."""

    valid: bool
    reason: str | None = field(default=None)

    def __bool__(self) -> bool:
        return self.valid
