"""Engine wiring — Redis-backed when available, in-process otherwise."""

from __future__ import annotations

import logging

import redis
from redis.exceptions import RedisError

from queue_engine.config import (
    DEFAULT_COUNTERS,
    DEFAULT_SERVICES,
    LOCK_TIMEOUT_SECONDS,
    MISS_TIMEOUT_SECONDS,
    REDIS_URL,
)
from queue_engine.engine import QueueEngine
from queue_engine.routing.events import EventBus
from queue_engine.routing.locks import KeyedLocks, RedisKeyedLocks
from queue_engine.routing.sequence import LocalSequenceAllocator, RedisSequenceAllocator
from queue_engine.store import InMemoryTicketStore, TicketStore

logger = logging.getLogger(__name__)


def connect_redis(url: str):
    """Return a connected sync client, or ``None`` if Redis is unreachable."""
    if not url:
        return None
    try:
        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2)
        client.ping()
    except RedisError as exc:
        logger.warning("Redis unavailable (%s) — falling back to in-process locks", exc)
        return None
    logger.info("Connected to Redis at %s", url)
    return client


def build_engine(
    *,
    store: TicketStore | None = None,
    redis_url: str = REDIS_URL,
    events: EventBus | None = None,
    lock_timeout: float = LOCK_TIMEOUT_SECONDS,
    miss_timeout: float = MISS_TIMEOUT_SECONDS,
    clock=None,
    branch_tz=None,
) -> QueueEngine:
    client = connect_redis(redis_url)
    if client is not None:
        locks = RedisKeyedLocks(client, timeout=lock_timeout)
        allocator = RedisSequenceAllocator(client)
    else:
        locks = KeyedLocks(timeout=lock_timeout)
        allocator = LocalSequenceAllocator(KeyedLocks(timeout=lock_timeout))
    mode = "Redis" if client is not None else "in-process"
    logger.info("Queue engine ready (%s locks and sequences)", mode)
    return QueueEngine(
        store or InMemoryTicketStore(),
        allocator=allocator,
        locks=locks,
        events=events,
        clock=clock,
        miss_timeout=miss_timeout,
        branch_tz=branch_tz,
    )


def seed_defaults(
    engine: QueueEngine,
    services: dict[str, dict] = DEFAULT_SERVICES,
    counters: dict[int, dict] = DEFAULT_COUNTERS,
) -> None:
    """Register the configured services and counters that do not exist yet."""
    for code, info in services.items():
        if engine.store.get_service(code) is None:
            engine.register_service(code, info["name"], info["base_service_minutes"])
    for number, info in counters.items():
        if engine.store.get_counter(number) is None:
            engine.register_counter(number, info["services"], name=info.get("name"))
    logger.info("Seeded %d services and %d counters", len(services), len(counters))
