from datetime import datetime, timedelta, timezone

import pytest

from mailwarden.auth.models.config import AuthorizationConfig
from mailwarden.auth.models.tokens import TokenSet
from mailwarden.observability.audit import AuditEvent

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class InMemoryCredentialStore:
    """Dict-backed credential store."""

    def __init__(self):
        self.data: dict[str, TokenSet] = {}
        self.store_calls = 0
        self.remove_calls = 0

    async def store(self, key: str, token_set: TokenSet) -> None:
        self.store_calls += 1
        self.data[key] = token_set

    async def retrieve(self, key: str) -> TokenSet | None:
        return self.data.get(key)

    async def remove(self, key: str) -> None:
        self.remove_calls += 1
        self.data.pop(key, None)


class RecordingAuditSink:
    """Audit sink that keeps every event."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def auth_config() -> AuthorizationConfig:
    return AuthorizationConfig(
        client_id="client-123.apps.googleusercontent.com",
        client_secret="secret-xyz",
        redirect_uri="http://127.0.0.1:8765/callback",
    )


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_token_set():
    """Build a TokenSet expiring ``expires_in`` seconds after FIXED_NOW."""

    def _make(
        access_token: str = "ya29.access-token",
        refresh_token: str | None = "refresh-token-abc",
        expires_in: float = 3600,
    ) -> TokenSet:
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=FIXED_NOW + timedelta(seconds=expires_in),
        )

    return _make
