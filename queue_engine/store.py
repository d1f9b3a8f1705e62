"""Ticket store (repository pattern).

Stores must be swappable and return domain snapshots. The engine reads
through the store freely but writes every change of one operation with a
single ``commit`` call, so a store backed by a database can map ``commit``
onto one transaction.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable

from queue_engine.domain import Counter, Service, Ticket, TicketStatus


class TicketStore(ABC):
    """Interface for queue persistence operations."""

    @abstractmethod
    def get_service(self, code: str) -> Service | None:
        """Return a service by code, or None if not found."""
        ...

    @abstractmethod
    def list_services(self) -> list[Service]:
        ...

    @abstractmethod
    def get_counter(self, number: int) -> Counter | None:
        """Return a counter by number, or None if not found."""
        ...

    @abstractmethod
    def list_counters(self) -> list[Counter]:
        """Return all counters ordered by number."""
        ...

    @abstractmethod
    def get_ticket(self, ticket_id: str) -> Ticket | None:
        """Return a ticket by id, or None if not found."""
        ...

    @abstractmethod
    def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        service_codes: Iterable[str] | None = None,
    ) -> list[Ticket]:
        """Return tickets matching the filters, in issue order."""
        ...

    @abstractmethod
    def commit(
        self,
        *,
        tickets: Iterable[Ticket] = (),
        counters: Iterable[Counter] = (),
        services: Iterable[Service] = (),
    ) -> None:
        """Persist all given snapshots atomically (all or nothing)."""
        ...

    def count_waiting(self, service_code: str) -> int:
        return len(self.list_tickets(status=TicketStatus.WAITING, service_codes=[service_code]))


class InMemoryTicketStore(TicketStore):
    """Process-local store; a lock keeps multi-object commits atomic."""

    def __init__(self) -> None:
        self._services: dict[str, Service] = {}
        self._counters: dict[int, Counter] = {}
        self._tickets: dict[str, Ticket] = {}
        self._lock = threading.Lock()

    def get_service(self, code: str) -> Service | None:
        with self._lock:
            return self._services.get(code)

    def list_services(self) -> list[Service]:
        with self._lock:
            return sorted(self._services.values(), key=lambda s: s.code)

    def get_counter(self, number: int) -> Counter | None:
        with self._lock:
            return self._counters.get(number)

    def list_counters(self) -> list[Counter]:
        with self._lock:
            return sorted(self._counters.values(), key=lambda c: c.number)

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        with self._lock:
            return self._tickets.get(ticket_id)

    def list_tickets(
        self,
        *,
        status: TicketStatus | None = None,
        service_codes: Iterable[str] | None = None,
    ) -> list[Ticket]:
        codes = None if service_codes is None else set(service_codes)
        with self._lock:
            tickets = list(self._tickets.values())
        return sorted(
            (
                t for t in tickets
                if (status is None or t.status is status)
                and (codes is None or t.service_code in codes)
            ),
            key=lambda t: t.serial,
        )

    def commit(
        self,
        *,
        tickets: Iterable[Ticket] = (),
        counters: Iterable[Counter] = (),
        services: Iterable[Service] = (),
    ) -> None:
        tickets, counters, services = list(tickets), list(counters), list(services)
        with self._lock:
            for service in services:
                self._services[service.code] = service
            for counter in counters:
                self._counters[counter.number] = counter
            for ticket in tickets:
                self._tickets[ticket.id] = ticket
