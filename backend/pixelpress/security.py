"""In-memory rate limiting and per-session concurrency locks.

Both are process-local. A deployment with several worker processes must swap
in implementations backed by a shared store (the Protocols below are the seam).
"""
import logging
import threading
import time
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping, Optional, Protocol

from pixelpress.errors import ConflictError

logger = logging.getLogger("pixelpress.security")


class RateLimiter(Protocol):
    def check(self, key: str, limit: int, window_seconds: float) -> bool: ...


class LockRegistry(Protocol):
    def acquire(self, key: str) -> bool: ...

    def release(self, key: str) -> None: ...

    def held(self, key: str, message: str = ...) -> AbstractContextManager[None]: ...


@dataclass
class _Window:
    start: float
    count: int


class FixedWindowRateLimiter:
    """Fixed-window counter per key.

    Bursts of up to 2x limit are possible across a window boundary.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            cur = self._windows.get(key)
            if cur is None or now - cur.start >= window_seconds:
                self._windows[key] = _Window(start=now, count=1)
                return True
            cur.count += 1
            return cur.count <= limit


class InMemoryLockRegistry:
    """Set of currently held keys; at most one holder per key."""

    def __init__(self):
        self._held: set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held

    @contextmanager
    def held(self, key: str, message: str = "Operation already in progress") -> Iterator[None]:
        """Hold ``key`` for the duration of the block; ConflictError if taken."""
        if not self.acquire(key):
            raise ConflictError(message, {"lock": key})
        try:
            yield
        finally:
            self.release(key)


def _hash_string(s: str) -> str:
    """Tiny non-crypto hash for fallback keys."""
    h = 0
    for ch in s:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return str(h)


def client_identity(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Best-effort client id from proxy headers, socket peer, or user agent."""
    lowered = {k.lower(): v for k, v in headers.items()}
    xfwd = lowered.get("x-forwarded-for", "")
    if xfwd:
        first = xfwd.split(",")[0].strip()
        if first:
            return first
    for name in ("x-real-ip", "cf-connecting-ip"):
        value = (lowered.get(name) or "").strip()
        if value:
            return value
    if peer:
        return peer
    return f"ua:{_hash_string(lowered.get('user-agent') or 'unknown')}"


def limiter_key(route: str, client: str, session_id: Optional[str] = None) -> str:
    return f"{route}:{client}:{session_id}" if session_id else f"{route}:{client}"


# Singletons
_rate_limiter: Optional[FixedWindowRateLimiter] = None
_lock_registry: Optional[InMemoryLockRegistry] = None


def get_rate_limiter() -> FixedWindowRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = FixedWindowRateLimiter()
    return _rate_limiter


def get_lock_registry() -> InMemoryLockRegistry:
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = InMemoryLockRegistry()
    return _lock_registry
