"""Pydantic schemas for the queue HTTP adapter."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from queue_engine.domain import Counter, QueueSnapshot, Ticket


# ── input ─────────────────────────────────────────────────────────────────────

class TicketIn(BaseModel):
    service_code:     str = Field(..., min_length=1, max_length=10, examples=["W"])
    priority:         str = Field("normal", examples=["normal", "vip", "elderly"])
    customer_name:    str = Field("Customer", min_length=1, max_length=100)
    appointment_time: Optional[datetime] = None
    vip_code:         Optional[str] = Field(None, max_length=20)


class ReasonIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class TransferIn(BaseModel):
    service_code: str = Field(..., min_length=1, max_length=10)


class PriorityIn(BaseModel):
    tier:   str = Field(..., examples=["urgent"])
    reason: Optional[str] = Field(None, max_length=255)


class CounterAssignIn(BaseModel):
    counter_id: int = Field(..., ge=1)
    reason:     Optional[str] = Field(None, max_length=255)


class EmployeeIn(BaseModel):
    employee_id: str = Field(..., min_length=1)


class CounterStatusIn(BaseModel):
    status: str = Field(..., examples=["active", "break", "closed"])


# ── output ────────────────────────────────────────────────────────────────────

class TicketOut(BaseModel):
    id:                     str
    number:                 str
    service_code:           str
    tier:                   str
    status:                 str
    customer_name:          str
    priority_label:         str
    estimated_wait_minutes: int
    created_at:             datetime
    appointment_time:       Optional[datetime] = None
    counter_id:             Optional[int] = None
    employee_id:            Optional[str] = None
    called_at:              Optional[datetime] = None
    serving_started_at:     Optional[datetime] = None
    completed_at:           Optional[datetime] = None
    missed_at:              Optional[datetime] = None
    actual_wait_minutes:    Optional[float] = None
    actual_service_minutes: Optional[float] = None
    transferred_from:       Optional[str] = None
    transferred_to:         Optional[str] = None

    @classmethod
    def from_domain(cls, t: Ticket) -> "TicketOut":
        return cls(
            id=t.id,
            number=t.number,
            service_code=t.service_code,
            tier=t.tier.value,
            status=t.status.value,
            customer_name=t.customer_name,
            priority_label=t.priority_label,
            estimated_wait_minutes=t.estimated_wait_minutes,
            created_at=t.created_at,
            appointment_time=t.appointment_time,
            counter_id=t.counter_id,
            employee_id=t.employee_id,
            called_at=t.called_at,
            serving_started_at=t.serving_started_at,
            completed_at=t.completed_at,
            missed_at=t.missed_at,
            actual_wait_minutes=t.actual_wait_minutes,
            actual_service_minutes=t.actual_service_minutes,
            transferred_from=t.transferred_from,
            transferred_to=t.transferred_to,
        )


class CounterOut(BaseModel):
    number:                  int
    name:                    str
    status:                  str
    supported_service_codes: list[str]
    assigned_employee_id:    Optional[str] = None
    current_ticket_id:       Optional[str] = None

    @classmethod
    def from_domain(cls, c: Counter) -> "CounterOut":
        return cls(
            number=c.number,
            name=c.name,
            status=c.status.value,
            supported_service_codes=sorted(c.supported_service_codes),
            assigned_employee_id=c.assigned_employee_id,
            current_ticket_id=c.current_ticket_id,
        )


class TransferOut(BaseModel):
    original:    TicketOut
    replacement: TicketOut


class PositionOut(BaseModel):
    ticket_id: str
    position:  Optional[int] = None


class QueueSnapshotOut(BaseModel):
    waiting_count: int
    by_tier:       dict[str, int]
    ordered_head:  list[TicketOut]

    @classmethod
    def from_domain(cls, s: QueueSnapshot) -> "QueueSnapshotOut":
        return cls(
            waiting_count=s.waiting_count,
            by_tier=dict(s.by_tier),
            ordered_head=[TicketOut.from_domain(t) for t in s.ordered_head],
        )


class SweepOut(BaseModel):
    reaped_ticket_ids: list[str]
    count:             int
