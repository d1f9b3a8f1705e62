"""Per-key serialized regions with bounded acquisition.

Every engine operation names the resources it touches (``counter:3``,
``ticket:<id>``) and holds all of them at once. Keys are always acquired in
sorted order, so two operations can never wait on each other in a cycle, and
each wait is bounded by a timeout that surfaces as ``ResourceBusyError``.

Two interchangeable implementations:

* ``KeyedLocks`` — ``threading.Lock`` per key, for a single process.
* ``RedisKeyedLocks`` — ``redis-py`` locks with a TTL, shared by every
  process talking to the same Redis.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date

from redis.exceptions import LockError, RedisError

from queue_engine.config import LOCK_KEY_PREFIX, LOCK_TIMEOUT_SECONDS, REDIS_LOCK_TTL_SECONDS
from queue_engine.errors import ResourceBusyError

logger = logging.getLogger(__name__)


# ── Key helpers ──────────────────────────────────────────────────────────

def counter_key(number: int) -> str:
    return f"counter:{number}"


def ticket_key(ticket_id: str) -> str:
    return f"ticket:{ticket_id}"


def sequence_key(service_code: str, day: date) -> str:
    return f"seq:{service_code}:{day.isoformat()}"


# ── In-process ───────────────────────────────────────────────────────────

class KeyedLocks:
    """One ``threading.Lock`` per key, created on demand.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the registry only grows with the number of keys in use.
    """

    def __init__(self, timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout
        self._entries: dict[str, list] = {}      # key -> [lock, users]
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, *keys: str, timeout: float | None = None) -> Iterator[None]:
        """Hold every key in *keys* for the duration of the block."""
        ordered = sorted(set(keys))
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        acquired: list[tuple[str, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    logger.warning("Lock wait on %s exceeded timeout", key)
                    raise ResourceBusyError(key)
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    @property
    def active_keys(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]


# ── Redis ────────────────────────────────────────────────────────────────

class RedisKeyedLocks:
    """Distributed variant backed by ``redis.lock.Lock``.

    Parameters
    ----------
    client : redis.Redis
        A synchronous client.
    timeout : float
        Total time to wait for all keys.
    ttl : float
        Lock expiry, so a crashed holder cannot block a key forever.
    """

    def __init__(
        self,
        client,
        timeout: float = LOCK_TIMEOUT_SECONDS,
        ttl: float = REDIS_LOCK_TTL_SECONDS,
    ) -> None:
        self._redis = client
        self.timeout = timeout
        self._ttl = ttl

    @contextmanager
    def hold(self, *keys: str, timeout: float | None = None) -> Iterator[None]:
        ordered = sorted(set(keys))
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        acquired = []
        try:
            for key in ordered:
                lock = self._redis.lock(f"{LOCK_KEY_PREFIX}:{key}", timeout=self._ttl)
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    ok = lock.acquire(blocking_timeout=remaining)
                except RedisError as exc:
                    logger.warning("Redis lock %s unavailable (%s)", key, exc)
                    raise ResourceBusyError(key) from exc
                if not ok:
                    raise ResourceBusyError(key)
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                try:
                    lock.release()
                except LockError:
                    # Expired under us; the TTL already freed the key.
                    logger.warning("Redis lock %s expired before release", key)
