"""Shared fixtures — an engine on a fake clock with the default branch layout."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from queue_engine.bootstrap import seed_defaults
from queue_engine.engine import QueueEngine
from queue_engine.routing.locks import KeyedLocks
from queue_engine.store import InMemoryTicketStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    # Counters 1-2: W/D/T, counter 3: A/CD/O, counter 4: L/C
    eng = QueueEngine(InMemoryTicketStore(), locks=KeyedLocks(timeout=2), clock=clock)
    seed_defaults(eng)
    return eng


@pytest.fixture
def open_counter(engine):
    """Staff and activate a counter: ``open_counter(1)``."""

    def _open(number: int, employee_id: str = "E1"):
        engine.assign_employee(number, employee_id)
        return engine.set_counter_status(number, "active")

    return _open
