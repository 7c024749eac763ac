"""Credential lifecycle for one mail account.

``AccountSession`` ties the flow manager to a credential store and keeps the
account's state:

    UNAUTHENTICATED -> AUTHORIZATION_PENDING -> AUTHENTICATED
    AUTHENTICATED -> REFRESHING -> AUTHENTICATED | REAUTH_REQUIRED

A pending authorization falls back to UNAUTHENTICATED when the callback fails
the state check or the exchange fails. Refreshes are serialized per session,
and a refresh still in flight when the account signs out is discarded.

An optional background scheduler checks the credential every
``check_interval`` and rotates it once it enters the expiry window.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from mailwarden.auth.models.errors import (
    AuthenticationError,
    MailwardenError,
    ValidationError,
)
from mailwarden.auth.models.security import AuthInitResult, AuthorizationResponse
from mailwarden.auth.models.tokens import (
    RefreshMetadata,
    RefreshMethod,
    RefreshResult,
    TokenSet,
)
from mailwarden.auth.services.callback import parse_callback_url
from mailwarden.auth.services.flow import (
    DEFAULT_EXPIRY_WINDOW,
    OAuthFlowManager,
    utc_now,
)
from mailwarden.auth.services.security import validate_state
from mailwarden.auth.store import CredentialStore
from mailwarden.resilience.invoker import RetryInvoker

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = timedelta(minutes=1)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth_required"


@dataclass
class RotationStatistics:
    """Refresh counters for one session, scheduled and on-demand alike."""

    total_rotations: int = 0
    failed_rotations: int = 0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None


class AccountSession:
    """Authenticated session for one mail account.

    Holds the current TokenSet and refreshes it when it nears expiry.
    Concurrent ``ensure_fresh_tokens`` callers share a single refresh.
    """

    def __init__(
        self,
        account_key: str,
        flow_manager: OAuthFlowManager,
        store: CredentialStore,
        invoker: RetryInvoker | None = None,
        expiry_window: timedelta = DEFAULT_EXPIRY_WINDOW,
        check_interval: timedelta = DEFAULT_CHECK_INTERVAL,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the session.

        Args:
            account_key: Key the credential is stored under
            flow_manager: Initialized flow manager for the provider
            store: Credential persistence
            invoker: Retries transient refresh failures when given
            expiry_window: Refresh this long before the access token expires
            check_interval: Pause between background rotation checks
            clock: Timestamps rotation statistics
        """
        self.account_key = account_key
        self._flow = flow_manager
        self._store = store
        self._invoker = invoker
        self.expiry_window = expiry_window
        self.check_interval = check_interval
        self._clock = clock

        self._state = SessionState.UNAUTHENTICATED
        self._tokens: TokenSet | None = None
        self._pending: AuthInitResult | None = None
        self._refresh_lock = asyncio.Lock()
        # Bumped whenever the credential is replaced or dropped
        self._generation = 0
        self.last_refresh: RefreshMetadata | None = None
        self.statistics = RotationStatistics()

        self._rotation_task: asyncio.Task[None] | None = None
        self._rotation_stop: asyncio.Event | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def tokens(self) -> TokenSet | None:
        return self._tokens

    @property
    def is_authenticated(self) -> bool:
        return self._tokens is not None and self._state in (
            SessionState.AUTHENTICATED,
            SessionState.REFRESHING,
        )

    @property
    def is_rotation_running(self) -> bool:
        return self._rotation_task is not None and not self._rotation_task.done()

    def next_rotation_time(self) -> datetime | None:
        """Instant the current credential enters the expiry window.

        None when the account is not signed in.
        """
        if self._tokens is None or self._state == SessionState.REAUTH_REQUIRED:
            return None
        return self._tokens.expires_at - self.expiry_window

    def begin_authorization(self) -> str:
        """Start a new authorization attempt and return the URL to open.

        Any earlier pending attempt is abandoned; its state will no longer
        be accepted.
        """
        if self._pending is not None:
            logger.info(f"Replacing pending authorization for {self.account_key}")
        self._pending = self._flow.initiate_auth()
        self._state = SessionState.AUTHORIZATION_PENDING
        return self._pending.auth_url

    async def complete_authorization(
        self, callback: AuthorizationResponse | str
    ) -> TokenSet:
        """Finish the pending authorization with the redirect callback.

        The pending verifier and state are consumed whatever the outcome; a
        failed attempt has to start again with ``begin_authorization``.

        Args:
            callback: Parsed callback, or the full redirect URL

        Raises:
            ValidationError: No pending authorization, or CSRF mismatch
            AuthenticationError: Provider denied consent or rejected the code
        """
        pending = self._pending
        self._pending = None
        if pending is None:
            raise ValidationError("No authorization is pending for this account")

        auth_response = (
            parse_callback_url(callback) if isinstance(callback, str) else callback
        )
        try:
            validate_state(pending.state, auth_response.state or "")
            if auth_response.is_error():
                raise AuthenticationError(
                    f"Authorization failed: {auth_response.error}"
                )
            tokens = await self._flow.exchange_code(
                auth_response.code or "",
                pending.code_verifier,
                auth_response.state or "",
                pending.state,
            )
            await self._store.store(self.account_key, tokens)
        except Exception:
            self._state = SessionState.UNAUTHENTICATED
            raise

        self._generation += 1
        self._tokens = tokens
        self._state = SessionState.AUTHENTICATED
        logger.info(f"Account {self.account_key} authenticated")
        return tokens

    async def load(self) -> TokenSet | None:
        """Restore the stored credential, if any."""
        tokens = await self._store.retrieve(self.account_key)
        self._generation += 1
        self._tokens = tokens
        self._state = (
            SessionState.AUTHENTICATED if tokens else SessionState.UNAUTHENTICATED
        )
        return tokens

    async def startup_refresh(self) -> TokenSet | None:
        """Load the stored credential and refresh it if it is about to expire.

        Returns None when no credential is stored.
        """
        tokens = await self.load()
        if tokens is None:
            logger.info(f"No stored credential for {self.account_key}")
            return None
        return await self.ensure_fresh_tokens(method="startup")

    async def ensure_fresh_tokens(
        self, method: RefreshMethod = "automatic"
    ) -> TokenSet:
        """Return a TokenSet that is not about to expire.

        Raises:
            AuthenticationError: With ``requires_reauthentication`` when the
                account is signed out or its refresh token was revoked
        """
        tokens = self._current_tokens()
        if not self._flow.will_expire_soon(tokens, self.expiry_window):
            return tokens

        async with self._refresh_lock:
            # Another caller may have refreshed while this one waited
            tokens = self._current_tokens()
            if not self._flow.will_expire_soon(tokens, self.expiry_window):
                return tokens
            return await self._refresh(tokens, method)

    async def refresh(self) -> TokenSet:
        """Refresh now, regardless of expiry."""
        async with self._refresh_lock:
            return await self._refresh(self._current_tokens(), "manual")

    async def sign_out(self) -> None:
        """Forget the credential locally and in the store.

        A refresh already in flight is not awaited; its result is dropped
        when it arrives.
        """
        self._generation += 1
        self._tokens = None
        self._pending = None
        self._state = SessionState.UNAUTHENTICATED
        await self._store.remove(self.account_key)
        logger.info(f"Account {self.account_key} signed out")

    async def rotate_if_due(self) -> bool:
        """Refresh the credential if it has entered the expiry window.

        Returns:
            bool: True if a refresh was performed, False if the account is not
            signed in or the token is still fresh
        """
        if not self.is_authenticated:
            return False
        previous = self._tokens
        tokens = await self.ensure_fresh_tokens(method="automatic")
        return tokens is not previous

    def start_rotation_scheduler(self) -> None:
        """Start the background rotation check. No-op if already running."""
        if self.is_rotation_running:
            return
        self._rotation_stop = asyncio.Event()
        self._rotation_task = asyncio.create_task(
            self._rotation_loop(self._rotation_stop)
        )
        logger.info(
            f"Token rotation scheduler started for {self.account_key} "
            f"(every {self.check_interval.total_seconds():g}s)"
        )

    async def stop_rotation_scheduler(self) -> None:
        """Stop the background check and wait for it to finish."""
        task, stop = self._rotation_task, self._rotation_stop
        self._rotation_task = None
        self._rotation_stop = None
        if task is None or stop is None:
            return
        stop.set()
        await task
        logger.info(f"Token rotation scheduler stopped for {self.account_key}")

    async def _rotation_loop(self, stop: asyncio.Event) -> None:
        interval = self.check_interval.total_seconds()
        while not stop.is_set():
            try:
                await self.rotate_if_due()
            except MailwardenError as e:
                logger.warning(
                    f"Scheduled token rotation for {self.account_key} failed: {e}"
                )
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def _current_tokens(self) -> TokenSet:
        if self._state == SessionState.REAUTH_REQUIRED or self._tokens is None:
            raise AuthenticationError(
                f"Account {self.account_key} is not signed in",
                requires_reauthentication=True,
            )
        return self._tokens

    async def _refresh(self, tokens: TokenSet, method: RefreshMethod) -> TokenSet:
        if not tokens.can_refresh():
            self._record_failure("no refresh token")
            await self._require_reauthentication()
            raise AuthenticationError(
                "Access token expired and no refresh token is available",
                requires_reauthentication=True,
            )

        generation = self._generation
        self._state = SessionState.REFRESHING
        try:
            result = await self._request_refresh(tokens.refresh_token, method)
        except Exception as e:
            if generation != self._generation:
                raise
            self._record_failure(str(e))
            if isinstance(e, AuthenticationError) and e.requires_reauthentication:
                await self._require_reauthentication()
            else:
                self._state = SessionState.AUTHENTICATED
            raise

        if generation != self._generation:
            logger.info(
                f"Discarding refresh for {self.account_key}; "
                "credential changed while it was running"
            )
            return self._current_tokens()

        await self._store.store(self.account_key, result.tokens)
        self._tokens = result.tokens
        self.last_refresh = result.metadata
        self._state = SessionState.AUTHENTICATED
        self.statistics.total_rotations += 1
        self.statistics.last_success = result.metadata.refreshed_at
        return result.tokens

    def _record_failure(self, error: str) -> None:
        self.statistics.failed_rotations += 1
        self.statistics.last_failure = self._clock()
        self.statistics.last_error = error

    async def _request_refresh(
        self, refresh_token: str, method: RefreshMethod
    ) -> RefreshResult:
        if self._invoker is None:
            return await self._flow.refresh_tokens(refresh_token, method=method)

        attempt_number = 0

        async def attempt() -> RefreshResult:
            nonlocal attempt_number
            attempt_number += 1
            return await self._flow.refresh_tokens(
                refresh_token, attempt_number=attempt_number, method=method
            )

        outcome = await self._invoker.execute_with_retry(
            attempt, operation_name="refresh_tokens"
        )
        return outcome.unwrap()

    async def _require_reauthentication(self) -> None:
        logger.warning(
            f"Credential for {self.account_key} can no longer be refreshed; "
            "sign-in required"
        )
        self._state = SessionState.REAUTH_REQUIRED
        self._tokens = None
        await self._store.remove(self.account_key)
