"""Counter matching — which waiting ticket a counter should serve next.

Ordering, highest first:

1. APPOINTMENT tickets, earliest ``appointment_time`` first
2. VIP > URGENT > SPECIAL > NORMAL
3. within a tier, strict FIFO on ``created_at`` (issue serial breaks ties)

Selection is read-only. Assignment goes through ``QueueEngine.call`` which
re-validates that the ticket is still waiting.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable
from datetime import datetime

from queue_engine.domain import Counter, PriorityTier, Ticket, TicketStatus
from queue_engine.store import TicketStore


def queue_order_key(ticket: Ticket) -> tuple[int, datetime, datetime, int]:
    """Sort key — lowest value is served first."""
    when = ticket.created_at
    if ticket.tier is PriorityTier.APPOINTMENT and ticket.appointment_time is not None:
        when = ticket.appointment_time
    return (ticket.tier.rank, when, ticket.created_at, ticket.serial)


def ordered(tickets: Iterable[Ticket], limit: int | None = None) -> list[Ticket]:
    """Return *tickets* in serving order (only the first *limit* if given)."""
    if limit is None:
        return sorted(tickets, key=queue_order_key)
    return heapq.nsmallest(limit, tickets, key=queue_order_key)


def next_ticket_for(counter: Counter, store: TicketStore) -> Ticket | None:
    """Head of the waiting line for the services *counter* supports."""
    if not counter.supported_service_codes:
        return None
    waiting = store.list_tickets(
        status=TicketStatus.WAITING,
        service_codes=counter.supported_service_codes,
    )
    head = ordered(waiting, limit=1)
    return head[0] if head else None


def position_of(ticket: Ticket, store: TicketStore) -> int | None:
    """1-based place of a waiting ticket within its service's line."""
    if ticket.status is not TicketStatus.WAITING:
        return None
    key = queue_order_key(ticket)
    ahead = sum(
        1
        for other in store.list_tickets(
            status=TicketStatus.WAITING, service_codes=[ticket.service_code]
        )
        if queue_order_key(other) < key
    )
    return ahead + 1
