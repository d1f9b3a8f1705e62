"""Ticket numbering — per-service, per-day sequences (local and Redis)."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from redis.exceptions import RedisError

from queue_engine.bootstrap import seed_defaults
from queue_engine.domain import PriorityRequest, PriorityTier
from queue_engine.engine import QueueEngine
from queue_engine.errors import ResourceBusyError
from queue_engine.routing.sequence import (
    LocalSequenceAllocator,
    RedisSequenceAllocator,
    format_ticket_number,
)
from queue_engine.store import InMemoryTicketStore

DAY = date(2026, 3, 2)


def test_format_ticket_number():
    assert format_ticket_number("W", PriorityTier.NORMAL, 1) == "W001"
    assert format_ticket_number("W", PriorityTier.VIP, 7) == "VIPW007"
    assert format_ticket_number("CD", PriorityTier.APPOINTMENT, 42) == "APPCD042"
    assert format_ticket_number("D", PriorityTier.SPECIAL, 1234) == "D1234"


class TestLocalAllocator:

    def test_starts_at_one_and_increments(self):
        alloc = LocalSequenceAllocator()
        assert [alloc.next_sequence("W", DAY) for _ in range(3)] == [1, 2, 3]
        assert alloc.current("W", DAY) == 3

    def test_services_are_independent(self):
        alloc = LocalSequenceAllocator()
        alloc.next_sequence("W", DAY)
        alloc.next_sequence("W", DAY)
        assert alloc.next_sequence("D", DAY) == 1

    def test_new_day_restarts(self):
        alloc = LocalSequenceAllocator()
        alloc.next_sequence("W", DAY)
        assert alloc.next_sequence("W", DAY + timedelta(days=1)) == 1
        assert alloc.current("W", DAY + timedelta(days=2)) == 0

    def test_days_before_yesterday_are_dropped(self):
        alloc = LocalSequenceAllocator()
        alloc.next_sequence("W", DAY)
        alloc.next_sequence("D", DAY)
        alloc.next_sequence("W", DAY + timedelta(days=1))
        alloc.next_sequence("W", DAY + timedelta(days=1))

        assert alloc.next_sequence("W", DAY + timedelta(days=2)) == 1
        assert alloc.current("W", DAY) == 0
        assert alloc.current("D", DAY) == 0
        assert alloc.current("W", DAY + timedelta(days=1)) == 2
        assert len(alloc._values) == 2


class TestEngineNumbering:

    def test_tiers_share_sequence(self, engine, clock):
        numbers = [
            engine.issue_ticket("W").number,
            engine.issue_ticket("W", "vip").number,
            engine.issue_ticket("W", "urgent").number,
            engine.issue_ticket(
                "W",
                PriorityRequest(label="appointment", appointment_time=clock.now + timedelta(hours=1)),
            ).number,
        ]
        assert numbers == ["W001", "VIPW002", "W003", "APPW004"]

    def test_restart_next_day(self, engine, clock):
        engine.issue_ticket("W")
        engine.issue_ticket("W")
        clock.advance(days=1)
        assert engine.issue_ticket("W").number == "W001"

    def test_transfer_consumes_target_sequence(self, engine):
        engine.issue_ticket("D")
        w = engine.issue_ticket("W")
        assert engine.transfer_ticket(w.id, "D").replacement.number == "D002"
        assert engine.issue_ticket("W").number == "W002"

    def test_day_follows_branch_timezone(self, clock):
        ist = timezone(timedelta(hours=5, minutes=30))
        clock.now = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)     # 23:30 at the branch
        engine = QueueEngine(InMemoryTicketStore(), clock=clock, branch_tz=ist)
        seed_defaults(engine)

        assert engine.issue_ticket("W").number == "W001"
        assert engine.issue_ticket("W").number == "W002"
        clock.advance(hours=1)                                            # 00:30, still 2 March in UTC
        assert engine.business_day(clock.now) == date(2026, 3, 3)
        assert engine.issue_ticket("W").number == "W001"

    def test_utc_day_by_default(self, engine, clock):
        clock.now = datetime(2026, 3, 2, 23, 59, tzinfo=timezone.utc)
        assert engine.business_day(clock.now) == DAY
        engine.issue_ticket("W")
        clock.advance(minutes=2)
        assert engine.issue_ticket("W").number == "W001"


# ── Redis ────────────────────────────────────────────────────────────────

def _redis_with_pipeline():
    client = MagicMock()
    pipe = MagicMock()
    client.pipeline.return_value.__enter__.return_value = pipe
    return client, pipe


class TestRedisAllocator:

    def test_incr_with_expiry(self):
        client, pipe = _redis_with_pipeline()
        pipe.execute.return_value = [7, True]
        alloc = RedisSequenceAllocator(client, ttl=3600)

        assert alloc.next_sequence("W", DAY) == 7
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("queue:seq:W:2026-03-02")
        pipe.expire.assert_called_once_with("queue:seq:W:2026-03-02", 3600)

    def test_key_per_day(self):
        assert RedisSequenceAllocator.key_for("CD", DAY) == "queue:seq:CD:2026-03-02"

    def test_redis_down_is_busy(self):
        client, pipe = _redis_with_pipeline()
        pipe.execute.side_effect = RedisError("connection refused")
        with pytest.raises(ResourceBusyError) as exc:
            RedisSequenceAllocator(client).next_sequence("W", DAY)
        assert exc.value.retryable is True
