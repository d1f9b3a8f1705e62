"""Ticket numbering — one gap-free sequence per (service, calendar day).

The sequence is shared by every tier of a service, so ``W001``, ``VIPW002``
and ``W003`` are issued in that order. Allocation is a serialized
read-increment-write; it never derives the next value from the latest
ticket's trailing digits.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import date, timedelta

from redis.exceptions import RedisError

from queue_engine.config import (
    SEQUENCE_DAYS_KEPT,
    SEQUENCE_KEY_PREFIX,
    SEQUENCE_KEY_TTL_SECONDS,
    SEQUENCE_PAD,
    TIER_PREFIXES,
)
from queue_engine.domain import PriorityTier
from queue_engine.errors import ResourceBusyError
from queue_engine.routing.locks import KeyedLocks, sequence_key

logger = logging.getLogger(__name__)


def format_ticket_number(service_code: str, tier: PriorityTier, sequence: int) -> str:
    """``format_ticket_number("W", PriorityTier.VIP, 7)`` → ``"VIPW007"``."""
    return f"{TIER_PREFIXES[tier.value]}{service_code}{sequence:0{SEQUENCE_PAD}d}"


class SequenceAllocator(ABC):
    """Interface for per-service, per-day sequence allocation."""

    @abstractmethod
    def next_sequence(self, service_code: str, day: date) -> int:
        """Return the next sequence for *service_code* on *day*, starting at 1.

        Raises:
            ResourceBusyError: If the allocation could not be serialized in time.
        """
        ...


class LocalSequenceAllocator(SequenceAllocator):
    """In-process counters guarded by one lock per (service, day).

    Like the Redis keys' TTL, counters older than the previous day are
    dropped, here when a new day's counter is first created.
    """

    def __init__(self, locks: KeyedLocks | None = None) -> None:
        self._locks = locks or KeyedLocks()
        self._values: dict[tuple[str, date], int] = {}
        self._registry_lock = threading.Lock()     # guards adding/removing keys

    def next_sequence(self, service_code: str, day: date) -> int:
        key = (service_code, day)
        with self._locks.hold(sequence_key(service_code, day)):
            if key not in self._values:
                self._open_day(key)
            value = self._values.get(key, 0) + 1
            self._values[key] = value
        return value

    def _open_day(self, key: tuple[str, date]) -> None:
        oldest_kept = key[1] - timedelta(days=SEQUENCE_DAYS_KEPT - 1)
        with self._registry_lock:
            stale = [k for k in self._values if k[1] < oldest_kept]
            for k in stale:
                del self._values[k]
            self._values[key] = 0
        if stale:
            logger.debug("Dropped %d expired sequence counter(s)", len(stale))

    def current(self, service_code: str, day: date) -> int:
        """Last value handed out (0 if none yet)."""
        return self._values.get((service_code, day), 0)


class RedisSequenceAllocator(SequenceAllocator):
    """Redis ``INCR`` per (service, day) key — atomic across processes."""

    def __init__(self, client, ttl: int = SEQUENCE_KEY_TTL_SECONDS) -> None:
        self._redis = client
        self._ttl = ttl

    @staticmethod
    def key_for(service_code: str, day: date) -> str:
        return f"{SEQUENCE_KEY_PREFIX}:{service_code}:{day.isoformat()}"

    def next_sequence(self, service_code: str, day: date) -> int:
        key = self.key_for(service_code, day)
        try:
            with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, self._ttl)
                value, _ = pipe.execute()
        except RedisError as exc:
            logger.warning("Sequence allocation for %s failed (%s)", key, exc)
            raise ResourceBusyError(key) from exc
        return int(value)
