"""PKCE (Proof Key for Code Exchange) primitives.

Implements RFC 7636 S256 parameter generation to bind an authorization code to
the client that requested it. Randomness comes from an injectable
``RandomSource`` so tests can pin the verifier.
"""

from __future__ import annotations

import base64
import hashlib

from mailwarden.auth.models.security import CODE_CHALLENGE_METHOD, PKCEChallenge
from mailwarden.auth.primitives.random_source import RandomSource, SystemRandomSource

VERIFIER_ENTROPY_BYTES = 32
STATE_ENTROPY_BYTES = 16


def base64url(data: bytes) -> str:
    """Base64url-encode without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def derive_code_challenge(code_verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64url(digest)


class PKCEManager:
    """Generates PKCE challenges and CSRF state tokens.

    - Verifiers carry 32 bytes of entropy (43 base64url characters)
    - State tokens carry 16 bytes of entropy (22 base64url characters)
    - Only the S256 challenge method is produced
    """

    def __init__(self, random_source: RandomSource | None = None):
        self._random = random_source or SystemRandomSource()

    def generate_challenge(self) -> PKCEChallenge:
        """Generate a fresh verifier/challenge pair.

        Returns:
            PKCEChallenge: Immutable parameters for one authorization attempt
        """
        code_verifier = base64url(self._random.token_bytes(VERIFIER_ENTROPY_BYTES))
        return PKCEChallenge(
            code_verifier=code_verifier,
            code_challenge=derive_code_challenge(code_verifier),
            code_challenge_method=CODE_CHALLENGE_METHOD,
        )

    def generate_state(self) -> str:
        """Generate an unguessable CSRF state token."""
        return base64url(self._random.token_bytes(STATE_ENTROPY_BYTES))
