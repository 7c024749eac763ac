"""Credential persistence interface.

The application supplies the storage engine (keychain, encrypted file,
database). Implementations keep one TokenSet per account key and may use the
JSON helpers below for their at-rest format.
"""

from __future__ import annotations

from typing import Protocol

from mailwarden.auth.models.tokens import TokenSet


class CredentialStore(Protocol):
    """Async key-value store for account credentials."""

    async def store(self, key: str, token_set: TokenSet) -> None:
        """Persist ``token_set`` under ``key``, replacing any previous value."""
        ...

    async def retrieve(self, key: str) -> TokenSet | None:
        """Return the stored TokenSet, or None if there is none."""
        ...

    async def remove(self, key: str) -> None:
        """Delete the credential for ``key``. Missing keys are not an error."""
        ...


def token_set_to_json(token_set: TokenSet) -> str:
    """Serialize a TokenSet, secrets included, for storage at rest."""
    return token_set.model_dump_json()


def token_set_from_json(data: str | bytes) -> TokenSet:
    """Rebuild a TokenSet written by ``token_set_to_json``.

    Raises:
        pydantic.ValidationError: If the data is not a valid TokenSet
    """
    return TokenSet.model_validate_json(data)
