"""
Resilience primitives wrapped around every outbound call.

  • TTLCache: content-addressed, bounded, expiring store
  • SingleFlight: one in-flight upstream call per signature
  • SlidingWindowRateLimiter: shared 60-second call budget
  • retry_call: exponential backoff for transient failures

The module-level instances at the bottom are the process-wide shared stores.
Every consumer also accepts injected instances so tests (or a future
multi-process deployment) can swap them out.
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import threading
import time
from collections import OrderedDict, deque
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# TTLs in seconds / entry bounds
TTL_ITINERARY = 15 * 60           # 900s: itinerary generation
TTL_PLACE_LOOKUP = 3 * 60 * 60    # 10800s: place / geocode lookups
MAX_ITINERARY_ENTRIES = 32
MAX_PLACE_ENTRIES = 200

RATE_LIMIT_CALLS = 12
RATE_LIMIT_WINDOW_SECONDS = 60.0

RETRY_ATTEMPTS = 3


class TransientError(RuntimeError):
    """Network / timeout / 5xx failure that is worth retrying."""


class RetryExhausted(RuntimeError):
    """All retry attempts failed with transient errors."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RateLimitExceeded(RuntimeError):
    """Raised when the shared call budget for the window is spent."""

    def __init__(self, retry_after: float):
        super().__init__(f"Rate limit exceeded; retry after {retry_after:.1f}s")
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

def cache_signature(identity: str, payload: Any) -> str:
    """Stable sha256 over the call identity and its normalised request."""
    try:
        encoded = json.dumps(
            {"identity": identity, "payload": payload},
            sort_keys=True, default=str, ensure_ascii=False,
        )
    except (TypeError, ValueError) as exc:
        logger.warning("Unserialisable cache payload for %s: %s", identity, exc)
        encoded = f"{identity}|{payload!r}"
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class TTLCache:
    """Thread-safe key/value store with per-cache TTL and an entry bound.

    Entries are kept in write order; after a write pushes the count past
    ``max_entries`` the oldest-written entries are evicted.
    """

    def __init__(self, ttl_seconds: float, max_entries: int,
                 clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            written_at, value = entry
            if written_at + self.ttl_seconds < self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (self._clock(), value)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------

class SingleFlight:
    """Named mutexes keyed by call signature.

    Locks are reference-counted so the registry does not grow without bound.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: dict[str, list] = {}  # signature -> [lock, holders]

    @contextmanager
    def hold(self, signature: str) -> Iterator[None]:
        with self._registry_lock:
            slot = self._locks.setdefault(signature, [threading.Lock(), 0])
            slot[1] += 1
        lock = slot[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(signature, None)

    def active(self) -> int:
        with self._registry_lock:
            return len(self._locks)


def cached_call(cache: TTLCache, flight: SingleFlight, signature: str,
                fn: Callable[[], T]) -> T:
    """Return the cached value for *signature*, computing it at most once.

    Read cache → take the signature lock → re-check (another caller may
    have just populated it) → call → write → release.  ``None`` results are
    not cached.
    """
    cached = cache.get(signature)
    if cached is not None:
        return cached
    with flight.hold(signature):
        cached = cache.get(signature)
        if cached is not None:
            return cached
        value = fn()
        if value is not None:
            cache.set(signature, value)
        return value


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class SlidingWindowRateLimiter:
    """Allow at most ``limit`` calls in any rolling ``window_seconds``."""

    def __init__(self, limit: int = RATE_LIMIT_CALLS,
                 window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            while self._calls and self._calls[0] <= now - self.window_seconds:
                self._calls.popleft()
            if len(self._calls) >= self.limit:
                retry_after = self._calls[0] + self.window_seconds - now
                raise RateLimitExceeded(max(retry_after, 0.001))
            self._calls.append(now)

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def _default_jitter() -> float:
    return random.uniform(0.1, 0.75)


def backoff_delay(attempt: int, jitter: Callable[[], float] = _default_jitter) -> float:
    """Delay before retrying after failed *attempt* (1-based)."""
    return 2 ** (attempt - 1) + jitter()


def _is_transient_default(exc: BaseException) -> bool:
    return isinstance(exc, (TransientError, TimeoutError, ConnectionError))


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int = RETRY_ATTEMPTS,
    is_transient: Callable[[BaseException], bool] = _is_transient_default,
    sleep: Optional[Callable[[float], None]] = None,
    jitter: Callable[[], float] = _default_jitter,
    label: str = "upstream call",
) -> T:
    """Call *fn*, retrying transient failures with exponential backoff.

    Non-transient exceptions propagate on the first occurrence.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_error = exc
            if attempt == attempts:
                break
            delay = backoff_delay(attempt, jitter)
            logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s",
                           label, attempt, attempts, delay, exc)
            (sleep or time.sleep)(delay)
    logger.error("%s failed after %d attempts: %s", label, attempts, last_error)
    raise RetryExhausted(attempts, last_error) from last_error


# ---------------------------------------------------------------------------
# Process-wide shared stores
# ---------------------------------------------------------------------------

itinerary_cache = TTLCache(TTL_ITINERARY, MAX_ITINERARY_ENTRIES)
place_cache = TTLCache(TTL_PLACE_LOOKUP, MAX_PLACE_ENTRIES)
geocode_cache = TTLCache(TTL_PLACE_LOOKUP, MAX_PLACE_ENTRIES)
single_flight = SingleFlight()
generation_limiter = SlidingWindowRateLimiter()
