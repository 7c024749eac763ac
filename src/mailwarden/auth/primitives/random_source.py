"""Random sources for PKCE verifiers, CSRF state and backoff jitter.

All implementations are safe to share between concurrent callers.
"""

from __future__ import annotations

import random
import secrets
import threading
from typing import Protocol


class RandomSource(Protocol):
    """Supplies random bytes and uniform floats."""

    def token_bytes(self, n: int) -> bytes:
        """Return ``n`` random bytes."""
        ...

    def random(self) -> float:
        """Return a float in [0.0, 1.0)."""
        ...


class SystemRandomSource:
    """Cryptographically secure source backed by the OS CSPRNG.

    ``os.urandom`` is thread-safe, so no locking is needed.
    """

    def __init__(self):
        self._system_random = random.SystemRandom()

    def token_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)

    def random(self) -> float:
        return self._system_random.random()


class SeededRandomSource:
    """Deterministic source for reproducible tests.

    Not suitable for generating secrets. Access to the underlying generator is
    serialized with a lock.
    """

    def __init__(self, seed: int = 0):
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def token_bytes(self, n: int) -> bytes:
        with self._lock:
            return self._random.randbytes(n)

    def random(self) -> float:
        with self._lock:
            return self._random.random()


class FixedRandomSource:
    """Source returning a constant float, for pinning jitter in tests."""

    def __init__(self, value: float = 0.0, fill: bytes = b"\x00"):
        if not (0.0 <= value < 1.0):
            raise ValueError("value must be in [0.0, 1.0)")
        self._value = value
        self._fill = fill

    def token_bytes(self, n: int) -> bytes:
        return (self._fill * n)[:n]

    def random(self) -> float:
        return self._value
