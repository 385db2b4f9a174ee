"""Expiring key/value state for rate limiting and token revocation.

A ``TTLStore`` is created by the application and handed to request
handlers through a dependency, so tests (or a deployment with a shared
cache) can swap it out.
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple


class TTLStore:
    """Thread-safe in-memory store where every key carries an expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def _live(self, key: str, now: float) -> Optional[Tuple[Any, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._data[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live(key, self._clock())
            return default if entry is None else entry[0]

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def incr(self, key: str, ttl: float) -> Tuple[int, float]:
        """Increment a counter, starting a new window of ``ttl`` seconds when absent.

        Returns the new count and the absolute expiry of the window.
        """
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                count, expires_at = 1, now + ttl
            else:
                count, expires_at = entry[0] + 1, entry[1]
            self._data[key] = (count, expires_at)
            return count, expires_at

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_in: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(round(self.reset_in))),
        }


class RateLimiter:
    """Fixed-window request counter keyed by identity."""

    def __init__(self, store: TTLStore, window_seconds: int):
        self.store = store
        self.window_seconds = window_seconds

    def hit(self, identity: str, limit: int) -> RateDecision:
        count, expires_at = self.store.incr(f"rate:{identity}", self.window_seconds)
        reset_in = max(0.0, expires_at - self.store.now())
        return RateDecision(allowed=count <= limit, limit=limit,
                            remaining=max(0, limit - count), reset_in=reset_in)


class TokenBlacklist:
    """Revoked token ids, each kept only until the token would have expired anyway."""

    def __init__(self, store: TTLStore):
        self.store = store

    def revoke(self, jti: str, expires_in: float) -> None:
        if expires_in > 0:
            self.store.set(f"revoked:{jti}", True, expires_in)

    def is_revoked(self, jti: str) -> bool:
        return f"revoked:{jti}" in self.store
