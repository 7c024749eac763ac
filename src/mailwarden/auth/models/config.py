"""Authorization client configuration.

Values may come from code or from ``MAILWARDEN_*`` environment variables.
Presence of the required fields is checked by the flow manager at
``initialize`` so that a half-configured account fails before any flow runs.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field

from mailwarden.auth.models.errors import ConfigurationError

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_ACCESS_TOKEN_PREFIX = "ya29."

DEFAULT_SCOPES = (
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

REQUIRED_FIELDS = ("client_id", "client_secret", "redirect_uri")

ENV_PREFIX = "MAILWARDEN_"


class AuthorizationConfig(BaseModel):
    """OAuth client registration and provider endpoints."""

    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    client_secret: str = Field(default="", repr=False)
    redirect_uri: str = ""
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    authorization_endpoint: str = GOOGLE_AUTHORIZATION_ENDPOINT
    token_endpoint: str = GOOGLE_TOKEN_ENDPOINT
    # None disables the provider-specific access token format check
    access_token_prefix: str | None = GOOGLE_ACCESS_TOKEN_PREFIX
    request_timeout: float = 30.0

    def missing_fields(self) -> tuple[str, ...]:
        """Names of required fields that are empty or whitespace."""
        return tuple(
            name for name in REQUIRED_FIELDS if not getattr(self, name).strip()
        )

    def sanitized(self) -> dict[str, object]:
        """Configuration without the client secret, safe to log or display."""
        return self.model_dump(exclude={"client_secret"})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AuthorizationConfig:
        """Build a config from ``MAILWARDEN_*`` environment variables.

        ``MAILWARDEN_SCOPES`` is a space separated list; unset values keep the
        defaults.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "client_id": env.get(f"{ENV_PREFIX}CLIENT_ID", ""),
            "client_secret": env.get(f"{ENV_PREFIX}CLIENT_SECRET", ""),
            "redirect_uri": env.get(f"{ENV_PREFIX}REDIRECT_URI", ""),
        }
        if scopes := env.get(f"{ENV_PREFIX}SCOPES"):
            values["scopes"] = tuple(scopes.split())
        if endpoint := env.get(f"{ENV_PREFIX}AUTHORIZATION_ENDPOINT"):
            values["authorization_endpoint"] = endpoint
        if endpoint := env.get(f"{ENV_PREFIX}TOKEN_ENDPOINT"):
            values["token_endpoint"] = endpoint
        if timeout := env.get(f"{ENV_PREFIX}REQUEST_TIMEOUT"):
            try:
                values["request_timeout"] = float(timeout)
            except ValueError as e:
                raise ConfigurationError(
                    f"{ENV_PREFIX}REQUEST_TIMEOUT is not a number: {timeout!r}"
                ) from e
        return cls(**values)
