"""
In-memory caching for generated content.
Entries live for the lifetime of the process only.
"""

import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

DEFAULT_TTL_SECONDS = 3600  # 1 hour TTL


class TTLCache:
    """Thread-safe key -> value memo where every entry expires after a TTL.

    An entry set at time t0 with TTL T is visible for now <= t0 + T.
    Expired entries are dropped lazily on get() or in bulk by sweep().
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = 0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        # Key: opaque string built by the caller
        # Value: (value, expires_at)
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                print(f"[Cache MISS] {key[:48]}")
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                print(f"[Cache EXPIRED] {key[:48]}")
                return None
            print(f"[Cache HIT] {key[:48]}")
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key. Last write wins."""
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            # Re-insert so dict order tracks insertion time
            self._entries.pop(key, None)
            self._entries[key] = (value, self._clock() + ttl)
            print(f"[Cache SET] {key[:48]} (ttl={ttl}s)")

            if self.max_entries and len(self._entries) > self.max_entries:
                self._sweep_locked()
                while len(self._entries) > self.max_entries:
                    oldest_key = next(iter(self._entries))
                    del self._entries[oldest_key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now > expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SingleFlight:
    """Collapse concurrent calls for the same key into one execution.

    The first caller runs fn(); callers that arrive while it is running wait
    for the same result (or the same exception). The key is released as soon
    as the call finishes.
    """

    def __init__(self):
        self._calls: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def do(self, key: str, fn: Callable[[], Any]) -> Any:
        with self._lock:
            future = self._calls.get(key)
            is_leader = future is None
            if is_leader:
                future = Future()
                self._calls[key] = future

        if not is_leader:
            print(f"[SingleFlight] Waiting on in-flight call for {key[:48]}")
            return future.result()

        try:
            result = fn()
        except BaseException as e:
            # Waiters must always be released, whatever stopped the leader
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._calls.pop(key, None)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)
