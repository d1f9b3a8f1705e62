"""Domain models representing queue state.

Pure, immutable snapshots. A change of state is a new snapshot written
through the store; only the engine produces new ticket snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TicketStatus(Enum):
    WAITING = "waiting"
    CALLED = "called"
    SERVING = "serving"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"
    TRANSFERRED = "transferred"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {
        TicketStatus.COMPLETED,
        TicketStatus.CANCELLED,
        TicketStatus.MISSED,
        TicketStatus.TRANSFERRED,
    }
)


class CounterStatus(Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    BUSY = "busy"
    BREAK = "break"
    CLOSED = "closed"


class PriorityTier(Enum):
    """Ranked priority tiers, highest precedence first."""

    APPOINTMENT = "appointment"
    VIP = "vip"
    URGENT = "urgent"
    SPECIAL = "special"
    NORMAL = "normal"

    @property
    def rank(self) -> int:
        """Lower rank is served earlier."""
        return _TIER_RANK[self]


_TIER_RANK = {tier: i for i, tier in enumerate(PriorityTier)}


@dataclass(frozen=True)
class Service:
    """A category of work offered at the counters."""

    code: str
    name: str
    base_service_minutes: int
    active: bool = True


@dataclass(frozen=True)
class Counter:
    """A service position that serves at most one ticket at a time."""

    number: int
    name: str
    status: CounterStatus = CounterStatus.INACTIVE
    supported_service_codes: frozenset[str] = frozenset()
    assigned_employee_id: str | None = None
    current_ticket_id: str | None = None
    opened_at: datetime | None = None
    closed_at: datetime | None = None

    def supports(self, service_code: str) -> bool:
        return service_code in self.supported_service_codes

    @property
    def is_assignable(self) -> bool:
        """Active, or inactive with someone assigned to open it."""
        if self.status is CounterStatus.ACTIVE:
            return True
        return self.status is CounterStatus.INACTIVE and self.assigned_employee_id is not None


@dataclass(frozen=True)
class Ticket:
    """Domain representation of an issued ticket."""

    id: str
    number: str
    service_code: str
    tier: PriorityTier
    created_at: datetime
    serial: int
    status: TicketStatus = TicketStatus.WAITING
    customer_name: str = "Customer"
    priority_label: str = "normal"
    vip_code: str | None = None
    appointment_time: datetime | None = None
    estimated_wait_minutes: int = 0
    counter_id: int | None = None
    employee_id: str | None = None
    called_at: datetime | None = None
    serving_started_at: datetime | None = None
    completed_at: datetime | None = None
    missed_at: datetime | None = None
    cancelled_at: datetime | None = None
    transferred_at: datetime | None = None
    actual_wait_minutes: float | None = None
    actual_service_minutes: float | None = None
    cancel_reason: str | None = None
    skip_reason: str | None = None
    transferred_from: str | None = None
    transferred_to: str | None = None


@dataclass(frozen=True)
class PriorityRequest:
    """What the customer (or kiosk) asked for at issuance."""

    label: str = "normal"
    appointment_time: datetime | None = None
    vip_code: str | None = None


@dataclass(frozen=True)
class TransferResult:
    original: Ticket
    replacement: Ticket


@dataclass(frozen=True)
class SweepResult:
    reaped_ticket_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class QueueSnapshot:
    waiting_count: int
    by_tier: dict[str, int] = field(default_factory=dict)
    ordered_head: tuple[Ticket, ...] = ()
