"""Security-related models for the authorization code flow.

Contains PKCE parameters, the result of starting an authorization attempt and
the parsed redirect callback.
"""

from __future__ import annotations

from dataclasses import dataclass, field

CODE_CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE (Proof Key for Code Exchange) parameters (RFC 7636).

    Created once per authorization attempt and never reused.
    """

    code_verifier: str = field(repr=False)
    code_challenge: str = field()
    code_challenge_method: str = field(default=CODE_CHALLENGE_METHOD)

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if len(self.code_challenge) != 43:
            raise ValueError("code_challenge must be a 43 character S256 digest")
        if self.code_challenge_method != CODE_CHALLENGE_METHOD:
            raise ValueError("Only S256 code challenge method is supported")


@dataclass(frozen=True)
class AuthInitResult:
    """Everything the caller must hold until the redirect callback arrives.

    Neither the verifier nor the state is persisted by the flow manager.
    """

    auth_url: str
    code_verifier: str = field(repr=False)
    state: str = field(repr=False)


@dataclass(frozen=True)
class AuthorizationResponse:
    code: str | None = field(default=None, repr=False)
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None
