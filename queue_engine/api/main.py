"""
queue_engine/api/main.py — HTTP adapter for the queue engine

Tickets:
    POST   /tickets                      → 201  issue a ticket
    GET    /tickets/{id}                 → ticket state
    GET    /tickets/{id}/position        → place in its service's line
    POST   /tickets/{id}/start           → CALLED → SERVING
    POST   /tickets/{id}/complete        → SERVING → COMPLETED
    POST   /tickets/{id}/cancel          → WAITING → CANCELLED
    POST   /tickets/{id}/skip            → WAITING/CALLED → MISSED
    POST   /tickets/{id}/transfer        → replace by a ticket in another service
    POST   /tickets/{id}/priority        → change tier while waiting
    POST   /tickets/{id}/counter         → move to another counter

Counters:
    GET    /counters
    POST   /counters/{n}/call-next       → call the head of the line
    POST   /counters/{n}/employee        → assign staff
    POST   /counters/{n}/status          → open / break / close

Queue:
    GET    /queue?service_code=W         → snapshot
    POST   /reaper/sweep                 → run the missed-ticket sweep now
    GET    /health

Run API:   uv run uvicorn queue_engine.api.main:app --reload

Optional env vars (.env):
    REDIS_URL=redis://localhost:6379/0      (empty = in-process locks)
    NOTIFY_WEBHOOK_URL=https://hooks.slack.com/...   (MOCK = log only)
    MISS_TIMEOUT_SECONDS=300
    REAPER_INTERVAL_SECONDS=60
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from queue_engine import errors  # noqa: E402
from queue_engine.api.schemas import (  # noqa: E402
    CounterAssignIn,
    CounterOut,
    CounterStatusIn,
    EmployeeIn,
    PositionOut,
    PriorityIn,
    QueueSnapshotOut,
    ReasonIn,
    SweepOut,
    TicketIn,
    TicketOut,
    TransferIn,
    TransferOut,
)
from queue_engine.bootstrap import build_engine, seed_defaults  # noqa: E402
from queue_engine.domain import PriorityRequest  # noqa: E402
from queue_engine.engine import QueueEngine  # noqa: E402
from queue_engine.routing.events import WebhookRelay  # noqa: E402
from queue_engine.routing.reaper import MissedTicketReaper  # noqa: E402

# ── logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
logger = logging.getLogger(__name__)

# ── global state ──────────────────────────────────────────────────────────────
_state: dict[str, Any] = {
    "engine": None,
    "reaper": None,
    "relay": None,
    "started_at": None,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = build_engine()
    seed_defaults(engine)

    relay = WebhookRelay()
    engine.events.subscribe(relay)

    reaper = MissedTicketReaper(engine)
    await reaper.start()

    _state.update(engine=engine, reaper=reaper, relay=relay, started_at=datetime.now(timezone.utc))
    logger.info("Queue API ready.")

    yield

    await reaper.stop()
    relay.close()
    logger.info("Shutdown complete.")


# ── app ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Queue Engine",
    description="Ticket issuance, counter calling and missed-ticket reclamation.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_FOR = {
    errors.ValidationError:   422,
    errors.NotFoundError:     404,
    errors.ConflictError:     409,
    errors.ResourceBusyError: 503,
}


@app.exception_handler(errors.QueueError)
async def queue_error_handler(request: Request, exc: errors.QueueError) -> JSONResponse:
    code = _STATUS_FOR.get(type(exc), 400)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=code,
        content={"code": exc.code.value, "detail": exc.message},
        headers=headers,
    )


def _engine() -> QueueEngine:
    return _state["engine"]


# ═════════════════════════════════════════════════════════════════════════════
# SYSTEM
# ═════════════════════════════════════════════════════════════════════════════

@app.get("/health", tags=["System"])
def health_check() -> dict[str, Any]:
    engine = _engine()
    reaper: MissedTicketReaper = _state["reaper"]
    started = _state["started_at"]
    return {
        "status":         "ok",
        "waiting":        engine.queue_snapshot(head_size=0).waiting_count,
        "counters":       len(engine.list_counters()),
        "reaper_running": reaper.running,
        "reaped_total":   reaper.reaped_total,
        "uptime_seconds": (datetime.now(timezone.utc) - started).total_seconds(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# TICKETS
# ═════════════════════════════════════════════════════════════════════════════

@app.post("/tickets", response_model=TicketOut, status_code=status.HTTP_201_CREATED, tags=["Tickets"])
def issue_ticket(payload: TicketIn) -> TicketOut:
    request = PriorityRequest(
        label=payload.priority,
        appointment_time=payload.appointment_time,
        vip_code=payload.vip_code,
    )
    ticket = _engine().issue_ticket(payload.service_code, request, payload.customer_name)
    return TicketOut.from_domain(ticket)


@app.get("/tickets/{ticket_id}", response_model=TicketOut, tags=["Tickets"])
def get_ticket(ticket_id: str) -> TicketOut:
    return TicketOut.from_domain(_engine().get_ticket(ticket_id))


@app.get("/tickets/{ticket_id}/position", response_model=PositionOut, tags=["Tickets"])
def ticket_position(ticket_id: str) -> PositionOut:
    return PositionOut(ticket_id=ticket_id, position=_engine().ticket_position(ticket_id))


@app.post("/tickets/{ticket_id}/start", response_model=TicketOut, tags=["Tickets"])
def start_serving(ticket_id: str) -> TicketOut:
    return TicketOut.from_domain(_engine().start_serving(ticket_id))


@app.post("/tickets/{ticket_id}/complete", response_model=TicketOut, tags=["Tickets"])
def complete_ticket(ticket_id: str) -> TicketOut:
    return TicketOut.from_domain(_engine().complete_ticket(ticket_id))


@app.post("/tickets/{ticket_id}/cancel", response_model=TicketOut, tags=["Tickets"])
def cancel_ticket(ticket_id: str, payload: Optional[ReasonIn] = None) -> TicketOut:
    reason = payload.reason if payload else None
    return TicketOut.from_domain(_engine().cancel_ticket(ticket_id, reason))


@app.post("/tickets/{ticket_id}/skip", response_model=TicketOut, tags=["Tickets"])
def skip_ticket(ticket_id: str, payload: Optional[ReasonIn] = None) -> TicketOut:
    reason = payload.reason if payload else None
    return TicketOut.from_domain(_engine().skip_ticket(ticket_id, reason))


@app.post("/tickets/{ticket_id}/transfer", response_model=TransferOut, tags=["Tickets"])
def transfer_ticket(ticket_id: str, payload: TransferIn) -> TransferOut:
    result = _engine().transfer_ticket(ticket_id, payload.service_code)
    return TransferOut(
        original=TicketOut.from_domain(result.original),
        replacement=TicketOut.from_domain(result.replacement),
    )


@app.post("/tickets/{ticket_id}/priority", response_model=TicketOut, tags=["Tickets"])
def reassign_priority(ticket_id: str, payload: PriorityIn) -> TicketOut:
    return TicketOut.from_domain(_engine().reassign_priority(ticket_id, payload.tier, payload.reason))


@app.post("/tickets/{ticket_id}/counter", response_model=TicketOut, tags=["Tickets"])
def reassign_counter(ticket_id: str, payload: CounterAssignIn) -> TicketOut:
    ticket = _engine().reassign_counter(ticket_id, payload.counter_id, payload.reason)
    return TicketOut.from_domain(ticket)


# ═════════════════════════════════════════════════════════════════════════════
# COUNTERS
# ═════════════════════════════════════════════════════════════════════════════

@app.get("/counters", response_model=list[CounterOut], tags=["Counters"])
def list_counters() -> list[CounterOut]:
    return [CounterOut.from_domain(c) for c in _engine().list_counters()]


@app.post("/counters/{counter_id}/call-next", response_model=TicketOut, tags=["Counters"])
def call_next(counter_id: int) -> TicketOut:
    return TicketOut.from_domain(_engine().call_next(counter_id))


@app.post("/counters/{counter_id}/employee", response_model=CounterOut, tags=["Counters"])
def assign_employee(counter_id: int, payload: EmployeeIn) -> CounterOut:
    return CounterOut.from_domain(_engine().assign_employee(counter_id, payload.employee_id))


@app.post("/counters/{counter_id}/status", response_model=CounterOut, tags=["Counters"])
def set_counter_status(counter_id: int, payload: CounterStatusIn) -> CounterOut:
    return CounterOut.from_domain(_engine().set_counter_status(counter_id, payload.status))


# ═════════════════════════════════════════════════════════════════════════════
# QUEUE
# ═════════════════════════════════════════════════════════════════════════════

@app.get("/queue", response_model=QueueSnapshotOut, tags=["Queue"])
def queue_snapshot(service_code: Optional[str] = None, head: int = 5) -> QueueSnapshotOut:
    return QueueSnapshotOut.from_domain(_engine().queue_snapshot(service_code, head_size=head))


@app.post("/reaper/sweep", response_model=SweepOut, tags=["Queue"])
def sweep_missed() -> SweepOut:
    result = _engine().sweep_missed()
    return SweepOut(reaped_ticket_ids=list(result.reaped_ticket_ids), count=len(result.reaped_ticket_ids))
