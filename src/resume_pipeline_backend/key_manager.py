from __future__ import annotations

import logging
from threading import Lock
from typing import Iterable, Optional

from .configuration import split_api_keys

logger = logging.getLogger(__name__)


def _fingerprint(key: str) -> str:
    """Short, log-safe identifier for a credential."""
    return f"...{key[-4:]}" if len(key) > 4 else "****"


class KeyManager:
    """
    Round-robin pool of provider API keys shared by every concurrent call.

    The pointer only moves on rate-limit responses. Rotation takes a lock and
    always reduces the index modulo the pool size, so concurrent rotations can
    reorder each other but never leave the pointer out of range.
    """

    def __init__(self, keys: Iterable[str]):
        cleaned = [key.strip() for key in keys if key and key.strip()]
        if not cleaned:
            raise ValueError("KeyManager initialized with no keys.")
        self._keys = tuple(cleaned)
        self._index = 0
        self._lock = Lock()
        self.rotations = 0

    @classmethod
    def from_csv(cls, raw: str) -> "KeyManager":
        """Build a pool from the comma-separated ``LLM_API_KEYS`` form."""
        return cls(split_api_keys(raw))

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def index(self) -> int:
        return self._index

    def current(self) -> str:
        """Return the key new calls should use."""
        with self._lock:
            return self._keys[self._index]

    def rotate(self, seen: Optional[str] = None) -> str:
        """
        Advance to the next key and return it.

        Args:
            seen: The key the caller was rate-limited on. When given and the
                pointer has already moved past it (another call rotated first),
                the pointer is left alone so one exhausted key costs one rotation.

        Returns:
            The key the pointer designates after the call
        """
        with self._lock:
            if seen is not None and self._keys[self._index] != seen:
                return self._keys[self._index]
            previous = self._keys[self._index]
            self._index = (self._index + 1) % len(self._keys)
            self.rotations += 1
            current = self._keys[self._index]
        logger.warning(f"Rotated provider key {_fingerprint(previous)} -> {_fingerprint(current)}")
        return current
