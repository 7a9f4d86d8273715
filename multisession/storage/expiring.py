from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from multisession.logging import get_logger

logger = get_logger(__name__)

# Sentinel TTL for entries that never expire
NO_EXPIRATION = -1
# Sentinel TTL meaning "use the store default"
DEFAULT_EXPIRATION = 0

_DEFAULT_TTL_SECONDS = 4 * 60 * 60
_DEFAULT_CLEANUP_INTERVAL_SECONDS = 24 * 60


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float]  # monotonic deadline, None = never

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ExpiringStore:
    """Thread-safe key/value map with a TTL per entry.

    Expired entries read as absent and are dropped on access. A full sweep
    runs from ``set`` once ``cleanup_interval`` seconds have passed since
    the previous one, so no background thread is needed.
    """

    def __init__(
        self,
        default_ttl: float = _DEFAULT_TTL_SECONDS,
        cleanup_interval: float = _DEFAULT_CLEANUP_INTERVAL_SECONDS,
        *,
        clock=time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._items: Dict[str, _Entry] = {}
        # RLock so compound helpers can call the public methods
        self._lock = threading.RLock()
        self._last_sweep = clock()

    def _deadline(self, ttl: Optional[float]) -> Optional[float]:
        if ttl is None or ttl == DEFAULT_EXPIRATION:
            ttl = self.default_ttl
        if ttl == NO_EXPIRATION:
            return None
        return self._clock() + ttl

    def set(self, key: str, value: Any, ttl: Optional[float] = DEFAULT_EXPIRATION) -> None:
        with self._lock:
            self._items[key] = _Entry(value, self._deadline(ttl))
            self._maybe_sweep()

    def add(self, key: str, value: Any, ttl: Optional[float] = DEFAULT_EXPIRATION) -> bool:
        """Set only when the key is absent or expired; returns whether it was set."""
        with self._lock:
            if self.get(key)[1]:
                return False
            self.set(key, value, ttl)
            return True

    def get(self, key: str) -> Tuple[Any, bool]:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None, False
            if entry.expired(self._clock()):
                del self._items[key]
                return None, False
            return entry.value, True

    def contains(self, key: str) -> bool:
        return self.get(key)[1]

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left for ``key``; ``None`` when absent, ``NO_EXPIRATION`` when permanent."""
        with self._lock:
            entry = self._items.get(key)
            now = self._clock()
            if entry is None or entry.expired(now):
                return None
            if entry.expires_at is None:
                return NO_EXPIRATION
            return entry.expires_at - now

    def touch(self, key: str, ttl: Optional[float] = DEFAULT_EXPIRATION) -> bool:
        """Reset the TTL of a live entry without changing its value."""
        with self._lock:
            value, found = self.get(key)
            if not found:
                return False
            self._items[key] = _Entry(value, self._deadline(ttl))
            return True

    def update(
        self,
        key: str,
        fn: Callable[[Any, bool], Any],
        ttl: Optional[float] = DEFAULT_EXPIRATION,
    ) -> Any:
        """Atomically replace the value of ``key`` with ``fn(value, found)``.

        Returning ``None`` from ``fn`` deletes the key.
        """
        with self._lock:
            value, found = self.get(key)
            new_value = fn(value, found)
            if new_value is None:
                self._items.pop(key, None)
            else:
                self.set(key, new_value, ttl)
            return new_value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def items(self) -> Iterator[Tuple[str, Any]]:
        """Snapshot of live entries."""
        with self._lock:
            now = self._clock()
            live = [(k, e.value) for k, e in self._items.items() if not e.expired(now)]
        return iter(live)

    def delete_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._items.items() if e.expired(now)]
            for key in expired:
                del self._items[key]
            self._last_sweep = now
        if expired:
            logger.debug("expiring_store_swept", removed=len(expired))
        return len(expired)

    def _maybe_sweep(self) -> None:
        if self.cleanup_interval <= 0:
            return
        if self._clock() - self._last_sweep >= self.cleanup_interval:
            self.delete_expired()

    def flush(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


_shared_store: Optional[ExpiringStore] = None
_shared_lock = threading.Lock()


def shared_store(cleanup_interval: Optional[float] = None) -> ExpiringStore:
    """Return the process-wide store, creating it on first use.

    Every ``LocalAuth`` built from the runtime shares this instance, so
    sessions and device limits are process-global state.
    A ``cleanup_interval`` passed after creation replaces the sweep cadence
    of the existing store.
    """
    global _shared_store
    with _shared_lock:
        if _shared_store is None:
            _shared_store = ExpiringStore(
                cleanup_interval=(
                    _DEFAULT_CLEANUP_INTERVAL_SECONDS
                    if cleanup_interval is None
                    else cleanup_interval
                )
            )
        elif cleanup_interval is not None and cleanup_interval != _shared_store.cleanup_interval:
            logger.info(
                "expiring_store_interval_updated",
                previous=_shared_store.cleanup_interval,
                cleanup_interval=cleanup_interval,
            )
            _shared_store.cleanup_interval = cleanup_interval
        return _shared_store


def reset_shared_store_for_tests() -> None:
    global _shared_store
    with _shared_lock:
        _shared_store = None
