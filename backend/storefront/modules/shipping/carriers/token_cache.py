"""
In-memory OAuth token cache owned by a single carrier client.

Holds one (token, expires_at) pair per key. Not synchronized: concurrent
cold-cache callers may each fetch a token, and the last write wins.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float  # clock seconds, safety margin already subtracted


class TokenCache:
    """
    Token store with an injectable clock.

    Args:
        margin_seconds: Subtracted from the provider's expires_in so a token
            is refreshed before the carrier starts rejecting it
        clock: Returns the current time in seconds (time.monotonic by default)
    """

    def __init__(self, margin_seconds: float = 60, clock: Optional[Callable[[], float]] = None):
        self.margin_seconds = margin_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CachedToken] = {}

    def get(self, key: str) -> Optional[str]:
        """Return the cached token for key, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.token

    def set(self, key: str, token: str, expires_in: float) -> CachedToken:
        """Store a token issued now that the provider says lives expires_in seconds."""
        entry = CachedToken(token=token, expires_at=self._clock() + expires_in - self.margin_seconds)
        self._entries[key] = entry
        return entry

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or every key when none is given."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
