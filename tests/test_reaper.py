"""Missed-ticket sweep and the background reaper."""

from __future__ import annotations

import asyncio
import logging

import pytest

from queue_engine.domain import CounterStatus, TicketStatus
from queue_engine.routing.events import EventKind
from queue_engine.routing.locks import ticket_key
from queue_engine.routing.reaper import MissedTicketReaper


@pytest.fixture
def called_ticket(engine, open_counter):
    open_counter(1)
    engine.issue_ticket("W")
    return engine.call_next(1)


class TestSweep:

    def test_not_reaped_before_timeout(self, engine, clock, called_ticket):
        clock.advance(minutes=5)      # exactly the timeout is not yet overdue
        assert engine.sweep_missed().reaped_ticket_ids == ()
        assert engine.get_ticket(called_ticket.id).status is TicketStatus.CALLED

    def test_reaped_after_timeout(self, engine, clock, called_ticket):
        clock.advance(minutes=5, seconds=1)
        result = engine.sweep_missed()
        assert result.reaped_ticket_ids == (called_ticket.id,)
        missed = engine.get_ticket(called_ticket.id)
        assert missed.status is TicketStatus.MISSED
        assert missed.missed_at == clock.now
        assert engine.get_counter(1).status is CounterStatus.ACTIVE

    def test_idempotent(self, engine, clock, called_ticket):
        clock.advance(minutes=10)
        assert len(engine.sweep_missed().reaped_ticket_ids) == 1
        assert engine.sweep_missed().reaped_ticket_ids == ()
        missed_events = engine.events.history(EventKind.MISSED)
        assert [e.ticket_id for e in missed_events] == [called_ticket.id]

    def test_serving_tickets_are_left_alone(self, engine, clock, called_ticket):
        engine.start_serving(called_ticket.id)
        clock.advance(hours=1)
        assert engine.sweep_missed().reaped_ticket_ids == ()
        assert engine.get_ticket(called_ticket.id).status is TicketStatus.SERVING

    def test_waiting_tickets_are_left_alone(self, engine, clock):
        t = engine.issue_ticket("W")
        clock.advance(hours=3)
        engine.sweep_missed()
        assert engine.get_ticket(t.id).status is TicketStatus.WAITING

    def test_counter_reused_after_reap(self, engine, clock, called_ticket):
        nxt = engine.issue_ticket("W")
        clock.advance(minutes=6)
        engine.sweep_missed()
        assert engine.call_next(1).id == nxt.id

    def test_failure_on_one_ticket_does_not_stop_the_sweep(
        self, engine, clock, open_counter, monkeypatch, caplog
    ):
        open_counter(1, "E1")
        open_counter(2, "E2")
        engine.issue_ticket("W")
        engine.issue_ticket("W")
        bad = engine.call_next(1)
        good = engine.call_next(2)
        clock.advance(minutes=6)

        real = engine.store.commit

        def failing_commit(**kwargs):
            tickets = list(kwargs.get("tickets", ()))
            if any(t.id == bad.id and t.status is TicketStatus.MISSED for t in tickets):
                raise RuntimeError("disk full")
            return real(**kwargs)

        monkeypatch.setattr(engine.store, "commit", failing_commit)
        with caplog.at_level(logging.WARNING, logger="queue_engine.engine"):
            result = engine.sweep_missed()

        assert result.reaped_ticket_ids == (good.id,)
        assert engine.get_ticket(good.id).status is TicketStatus.MISSED
        assert engine.get_ticket(bad.id).status is TicketStatus.CALLED
        assert engine.get_counter(1).current_ticket_id == bad.id
        assert f"Could not reap {bad.number}" in caplog.text
        assert "disk full" in caplog.text

    def test_busy_ticket_is_retried_next_sweep(self, engine, clock, open_counter, caplog):
        open_counter(1, "E1")
        open_counter(2, "E2")
        engine.issue_ticket("W")
        engine.issue_ticket("W")
        held = engine.call_next(1)
        free = engine.call_next(2)
        clock.advance(minutes=6)
        engine.locks.timeout = 0.05

        with caplog.at_level(logging.WARNING, logger="queue_engine.engine"):
            with engine.locks.hold(ticket_key(held.id)):
                result = engine.sweep_missed()

        assert result.reaped_ticket_ids == (free.id,)
        assert f"Could not reap {held.number}" in caplog.text
        assert engine.sweep_missed().reaped_ticket_ids == (held.id,)


class TestReaper:

    @pytest.mark.asyncio
    async def test_run_once_counts(self, engine, clock, called_ticket):
        reaper = MissedTicketReaper(engine, interval=60)
        clock.advance(minutes=6)

        result = await reaper.run_once()

        assert result.reaped_ticket_ids == (called_ticket.id,)
        assert reaper.cycles == 1
        assert reaper.reaped_total == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine, clock, called_ticket):
        clock.advance(minutes=6)
        reaper = MissedTicketReaper(engine, interval=0.01)

        await reaper.start()
        assert reaper.running
        await asyncio.sleep(0.1)
        await reaper.stop()

        assert not reaper.running
        assert reaper.cycles >= 1
        assert reaper.reaped_total == 1
        assert engine.get_ticket(called_ticket.id).status is TicketStatus.MISSED

    @pytest.mark.asyncio
    async def test_cycle_failure_keeps_loop_alive(self, engine, monkeypatch):
        real = engine.sweep_missed
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("store offline")
            return real()

        monkeypatch.setattr(engine, "sweep_missed", flaky)
        reaper = MissedTicketReaper(engine, interval=0.01)
        await reaper.start()
        await asyncio.sleep(0.1)
        await reaper.stop()

        assert len(calls) >= 2
        assert reaper.cycles >= 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, engine):
        await MissedTicketReaper(engine).stop()
