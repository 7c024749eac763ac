"""OAuth 2.0 authorization code flow with PKCE for desktop mail access.

Covers the whole credential lifecycle against the provider:
- Authorization URL construction with PKCE challenge and CSRF state
- One-shot authorization code exchange
- Access token refresh
- Pure token validation and expiry checks

Failures are raised as the typed exceptions of
``mailwarden.auth.models.errors``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import NoReturn
from urllib.parse import urlencode

import httpx

from mailwarden.auth.models.config import AuthorizationConfig
from mailwarden.auth.models.errors import (
    AuthenticationError,
    ClassifiedError,
    ConfigurationError,
    MailwardenError,
    NetworkError,
    ValidationError,
)
from mailwarden.auth.models.security import AuthInitResult, AuthorizationResponse
from mailwarden.auth.models.tokens import (
    RefreshMetadata,
    RefreshMethod,
    RefreshResult,
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
    TokenSet,
    TokenValidation,
)
from mailwarden.auth.primitives.pkce import PKCEManager
from mailwarden.auth.primitives.random_source import RandomSource
from mailwarden.auth.services.callback import parse_callback_url
from mailwarden.auth.services.security import validate_state
from mailwarden.auth.services.tokens import TokenEndpointClient
from mailwarden.observability.audit import AuditEvent, AuditSink, LoggingAuditSink

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_WINDOW = timedelta(minutes=5)

REVOKED_MARKER = "token has been expired or revoked"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class OAuthFlowManager:
    """Authorization code + PKCE flow manager for one OAuth client.

    Holds no per-user state: the verifier and CSRF state produced by
    ``initiate_auth`` belong to the caller until the callback arrives, and
    token sets are returned, never stored.

    Concurrent ``refresh_tokens`` calls for the same account must be
    serialized by the caller; see ``mailwarden.auth.session.AccountSession``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        random_source: RandomSource | None = None,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the flow manager.

        Args:
            http_client: Client for token endpoint calls; created at
                ``initialize`` (and closed by ``close``) when omitted
            random_source: Source for verifiers and state tokens
            audit_sink: Receives token operation events
            clock: Returns the current UTC instant
        """
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._pkce = PKCEManager(random_source)
        self._audit = audit_sink or LoggingAuditSink()
        self._clock = clock
        self._config: AuthorizationConfig | None = None
        self._token_client: TokenEndpointClient | None = None

    def initialize(self, config: AuthorizationConfig) -> None:
        """Validate the configuration and build the client context.

        Raises:
            ConfigurationError: If client_id, client_secret or redirect_uri is
                empty; ``missing_fields`` names them
        """
        missing = config.missing_fields()
        if missing:
            raise ConfigurationError(
                "Invalid OAuth configuration - missing required fields: "
                + ", ".join(missing),
                missing_fields=missing,
            )

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=config.request_timeout)
        self._config = config
        self._token_client = TokenEndpointClient(
            config.token_endpoint, self._http_client
        )
        logger.info(f"OAuth flow manager initialized for client {config.client_id}")

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    @property
    def scopes(self) -> tuple[str, ...]:
        return self._require_config("scopes").scopes

    def get_config(self) -> dict[str, object]:
        """Current configuration without the client secret."""
        return self._require_config("get_config").sanitized()

    def initiate_auth(self) -> AuthInitResult:
        """Start an authorization attempt.

        Generates a fresh PKCE verifier and CSRF state and builds the URL the
        user must visit. Requests offline access and forces the consent
        screen so a refresh token is issued even on repeat authorization.

        Returns:
            AuthInitResult: URL plus the verifier and state to hold until the
            callback arrives
        """
        config = self._require_config("initiate_auth")

        challenge = self._pkce.generate_challenge()
        state = self._pkce.generate_state()

        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "code_challenge": challenge.code_challenge,
            "code_challenge_method": challenge.code_challenge_method,
            "state": state,
        }
        auth_url = f"{config.authorization_endpoint}?{urlencode(params)}"

        logger.info(f"Generated authorization URL for client {config.client_id}")
        return AuthInitResult(
            auth_url=auth_url, code_verifier=challenge.code_verifier, state=state
        )

    def parse_callback(
        self, callback_url: str, expected_state: str
    ) -> AuthorizationResponse:
        """Parse a redirect URL and check it belongs to the pending request.

        Raises:
            ValidationError: On a missing or mismatched state (``csrf`` set)
            AuthenticationError: If the provider reported an error such as
                ``access_denied``
        """
        auth_response = parse_callback_url(callback_url)
        validate_state(expected_state, auth_response.state or "")
        if auth_response.is_error():
            raise AuthenticationError(
                f"Authorization failed: {auth_response.error} "
                f"({auth_response.error_description or ''})"
            )
        if auth_response.code is None:
            raise ValidationError("Authorization callback missing code")
        return auth_response

    async def exchange_code(
        self,
        auth_code: str,
        code_verifier: str,
        state: str,
        expected_state: str,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        The state check happens before anything else; a mismatch never
        reaches the token endpoint. Exactly one token request is made.

        Args:
            auth_code: Code from the redirect callback
            code_verifier: PKCE verifier from ``initiate_auth``
            state: State received on the callback
            expected_state: State returned by ``initiate_auth``

        Returns:
            TokenSet: New credential, expiry defaulting to one hour

        Raises:
            ValidationError: CSRF mismatch (``csrf`` set) or missing input
            AuthenticationError: Code expired, already used, or rejected
            ConfigurationError: Client credentials rejected
            NetworkError: Token endpoint unreachable
        """
        config = self._require_config("exchange_code")
        started = time.perf_counter()
        details = {"grant_type": "authorization_code", "client_id": config.client_id}

        try:
            validate_state(expected_state, state)

            if not auth_code or not code_verifier:
                raise ValidationError(
                    "Missing required parameters for token exchange",
                )

            token_request = TokenRequest(
                code=auth_code,
                code_verifier=code_verifier,
                redirect_uri=config.redirect_uri,
                client_id=config.client_id,
                client_secret=config.client_secret,
            )
            token_response = await self._call_token_endpoint(
                "exchange", self._token_client.exchange_code(token_request)
            )
            if token_response.is_error():
                self._raise_for_token_error(token_response, refreshing=False)
            if not token_response.access_token:
                raise AuthenticationError("No access token received from provider")

            tokens = token_response.to_token_set(issued_at=self._clock())
        except MailwardenError as e:
            self._emit("exchange_code", started, e.classified, details=details)
            raise

        self._emit("exchange_code", started, None, details=details)
        logger.info("Authorization code exchanged for tokens")
        return tokens

    async def refresh_tokens(
        self,
        refresh_token: str,
        attempt_number: int = 1,
        method: RefreshMethod = "automatic",
    ) -> RefreshResult:
        """Obtain a new access token with a refresh token.

        When the provider does not rotate the refresh token, the one passed in
        is carried forward into the new TokenSet.

        Args:
            refresh_token: Current refresh token
            attempt_number: Attempt counter recorded in the metadata
            method: How the refresh was triggered

        Returns:
            RefreshResult: New TokenSet with refresh metadata

        Raises:
            ValidationError: Empty refresh token (no request is made)
            AuthenticationError: ``requires_reauthentication`` set when the
                refresh token is expired or revoked
            ConfigurationError: Client credentials rejected
            NetworkError: Token endpoint unreachable
        """
        config = self._require_config("refresh_tokens")
        started = time.perf_counter()
        details = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "method": method,
        }

        try:
            if not refresh_token:
                raise ValidationError("Refresh token is required")

            refresh_request = RefreshTokenRequest(
                refresh_token=refresh_token,
                client_id=config.client_id,
                client_secret=config.client_secret,
            )
            token_response = await self._call_token_endpoint(
                "refresh", self._token_client.refresh(refresh_request)
            )
            if token_response.is_error():
                self._raise_for_token_error(token_response, refreshing=True)
            if not token_response.access_token:
                raise AuthenticationError("No access token received from refresh")

            refreshed_at = self._clock()
            tokens = token_response.to_token_set(
                issued_at=refreshed_at, fallback_refresh_token=refresh_token
            )
        except MailwardenError as e:
            self._emit(
                "refresh_tokens", started, e.classified, attempt_number, details
            )
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        self._emit("refresh_tokens", started, None, attempt_number, details)
        logger.info(f"Access token refreshed in {duration_ms:.0f}ms")
        return RefreshResult(
            tokens=tokens,
            metadata=RefreshMetadata(
                refreshed_at=refreshed_at,
                method=method,
                duration_ms=duration_ms,
                attempt_number=attempt_number,
            ),
        )

    def validate_tokens(
        self, token_set: TokenSet, now: datetime | None = None
    ) -> TokenValidation:
        """Check a token set is well formed and unexpired. Pure, no I/O."""
        if not token_set.access_token:
            return TokenValidation(False, "Access token is required")

        prefix = self._config.access_token_prefix if self._config else None
        if prefix and not token_set.access_token.startswith(prefix):
            return TokenValidation(False, "Invalid access token format")

        now = _as_utc(now or self._clock())
        if token_set.expires_at <= now:
            return TokenValidation(False, "Access token has expired")

        return TokenValidation(True)

    def will_expire_soon(
        self,
        token_set: TokenSet,
        window: timedelta = DEFAULT_EXPIRY_WINDOW,
        now: datetime | None = None,
    ) -> bool:
        """True if the token expires within ``window`` from now."""
        now = _as_utc(now or self._clock())
        return token_set.expires_at <= now + window

    async def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> OAuthFlowManager:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _require_config(self, operation: str) -> AuthorizationConfig:
        if self._config is None:
            raise ConfigurationError(
                f"OAuth manager not initialized (operation: {operation})"
            )
        return self._config

    async def _call_token_endpoint(self, operation: str, request) -> TokenResponse:
        """Await a token request, mapping transport failures.

        Connection-class failures (DNS, refused, connect timeout) become
        NetworkError; any other HTTP failure is reported as an authentication
        failure with the raw message preserved.
        """
        try:
            return await request
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise NetworkError(f"Network error during token {operation}: {e}") from e
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token {operation} failed: {e}") from e

    def _raise_for_token_error(
        self, token_response: TokenResponse, refreshing: bool
    ) -> NoReturn:
        code = (token_response.error or "").lower()
        description = (token_response.error_description or "").lower()

        if refreshing and (code == "invalid_grant" or REVOKED_MARKER in description):
            raise AuthenticationError(
                "Refresh token expired or revoked - re-authentication required",
                requires_reauthentication=True,
            )
        if code == "invalid_grant":
            raise AuthenticationError(
                "Authorization code expired or invalid "
                f"({token_response.error_message()})"
            )
        if code == "invalid_client":
            raise ConfigurationError(
                "Invalid OAuth client configuration "
                f"({token_response.error_message()})",
                human_message="The OAuth client ID or secret was rejected.",
            )

        operation = "refresh" if refreshing else "exchange"
        raise AuthenticationError(
            f"Token {operation} failed: {token_response.error_message()}"
        )

    def _emit(
        self,
        operation: str,
        started: float,
        error: ClassifiedError | None,
        attempt_number: int = 1,
        details: dict[str, object] | None = None,
    ) -> None:
        self._audit.emit(
            AuditEvent.build(
                operation,
                attempt_number=attempt_number,
                duration_ms=(time.perf_counter() - started) * 1000,
                error=error,
                details=details,
            )
        )
