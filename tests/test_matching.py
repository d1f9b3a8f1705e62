"""Serving order and counter matching."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from queue_engine.domain import Counter, CounterStatus, PriorityRequest, PriorityTier, Ticket
from queue_engine.routing import matching

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _ticket(serial, tier=PriorityTier.NORMAL, minutes=0, appointment_in=None, service="W"):
    return Ticket(
        id=f"t{serial}",
        number=f"{service}{serial:03d}",
        service_code=service,
        tier=tier,
        created_at=START + timedelta(minutes=minutes),
        serial=serial,
        appointment_time=(START + timedelta(minutes=appointment_in)) if appointment_in is not None else None,
    )


class TestOrdering:

    def test_tier_precedence(self):
        tickets = [
            _ticket(1, PriorityTier.NORMAL),
            _ticket(2, PriorityTier.SPECIAL),
            _ticket(3, PriorityTier.URGENT),
            _ticket(4, PriorityTier.VIP),
            _ticket(5, PriorityTier.APPOINTMENT, appointment_in=90),
        ]
        assert [t.serial for t in matching.ordered(tickets)] == [5, 4, 3, 2, 1]

    def test_fifo_within_tier(self):
        tickets = [_ticket(3, minutes=2), _ticket(1, minutes=0), _ticket(2, minutes=1)]
        assert [t.serial for t in matching.ordered(tickets)] == [1, 2, 3]

    def test_serial_breaks_same_instant(self):
        tickets = [_ticket(9), _ticket(4), _ticket(7)]
        assert [t.serial for t in matching.ordered(tickets)] == [4, 7, 9]

    def test_appointments_by_slot_not_issue_time(self):
        early_issue = _ticket(1, PriorityTier.APPOINTMENT, minutes=0, appointment_in=120)
        late_issue = _ticket(2, PriorityTier.APPOINTMENT, minutes=10, appointment_in=60)
        assert matching.ordered([early_issue, late_issue])[0] is late_issue

    def test_limit_returns_head(self):
        tickets = [_ticket(i, minutes=i) for i in range(1, 20)]
        head = matching.ordered(tickets, limit=3)
        assert [t.serial for t in head] == [1, 2, 3]


class TestNextTicket:

    def test_counter_sees_only_its_services(self, engine):
        engine.issue_ticket("L", "vip")
        w = engine.issue_ticket("W")
        counter_1 = engine.get_counter(1)
        assert matching.next_ticket_for(counter_1, engine.store).id == w.id

    def test_across_services_priority_wins(self, engine, clock):
        engine.issue_ticket("W")
        clock.advance(minutes=5)
        urgent = engine.issue_ticket("D", "urgent")
        assert engine.next_ticket_for(1).id == urgent.id

    def test_counter_without_services(self, engine):
        engine.issue_ticket("W")
        bare = Counter(number=99, name="Spare", status=CounterStatus.ACTIVE)
        assert matching.next_ticket_for(bare, engine.store) is None

    def test_appointment_first(self, engine, clock):
        engine.issue_ticket("A", "vip")
        appt = engine.issue_ticket(
            "A", PriorityRequest(label="appointment", appointment_time=clock.now + timedelta(hours=3))
        )
        assert engine.next_ticket_for(3).id == appt.id

    def test_position_within_service_only(self, engine):
        engine.issue_ticket("D", "vip")
        w = engine.issue_ticket("W")
        assert matching.position_of(w, engine.store) == 1
