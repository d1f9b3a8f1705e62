"""Queue engine — ticket lifecycle, counter assignment and reclamation.

    WAITING ─call→ CALLED ─start→ SERVING ─complete→ COMPLETED
       │             ├─ timeout / skip ───────────→ MISSED
       ├─ cancel ────┼──────────────────────────→ CANCELLED
       └─ transfer ──┴──────────────────────────→ TRANSFERRED (+ new WAITING ticket)

Every entry point is safe to call from many threads. An operation holds the
keys of every ticket and counter it touches (see ``routing.locks``),
re-reads state under those keys, runs all checks, then writes its snapshots
with one ``store.commit``. A rejected operation therefore leaves nothing
half-done. Timestamps are also taken under the keys, so a ticket's times
never run backwards. Events are published after the commit.
"""

from __future__ import annotations

import itertools
import logging
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from queue_engine.config import (
    APPOINTMENT_SLOT_MINUTES,
    BRANCH_TIMEZONE,
    CALL_NEXT_ATTEMPTS,
    DEFAULT_BASE_SERVICE_MINUTES,
    MISS_TIMEOUT_SECONDS,
    SNAPSHOT_HEAD_SIZE,
)
from queue_engine.domain import (
    Counter,
    CounterStatus,
    PriorityRequest,
    PriorityTier,
    QueueSnapshot,
    Service,
    SweepResult,
    Ticket,
    TicketStatus,
    TransferResult,
)
from queue_engine.errors import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    QueueError,
    ValidationError,
)
from queue_engine.routing import matching
from queue_engine.routing.estimator import WaitEstimator
from queue_engine.routing.events import EventBus, EventKind, LifecycleEvent
from queue_engine.routing.locks import KeyedLocks, counter_key, ticket_key
from queue_engine.routing.priority import classify, normalise_label, resolve_request
from queue_engine.routing.sequence import (
    LocalSequenceAllocator,
    SequenceAllocator,
    format_ticket_number,
)
from queue_engine.store import TicketStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _zone(name: str) -> tzinfo:
    return ZoneInfo(name) if name else timezone.utc


def _minutes(delta: timedelta) -> float:
    return round(delta.total_seconds() / 60, 2)


class QueueEngine:
    """Owns every ticket state transition and counter assignment.

    Parameters
    ----------
    store : TicketStore
        Where services, counters and tickets live.
    allocator : SequenceAllocator
        Ticket numbering; defaults to an in-process allocator.
    locks : KeyedLocks | RedisKeyedLocks
        Per-key serialized regions for tickets and counters.
    clock : callable
        Returns the current aware ``datetime``; injectable for tests.
    miss_timeout : float
        Seconds a ticket may stay CALLED before ``sweep_missed`` expires it.
    branch_tz : tzinfo
        Zone whose midnight starts a new numbering day; defaults to
        ``BRANCH_TIMEZONE`` (UTC when unset).
    """

    def __init__(
        self,
        store: TicketStore,
        *,
        allocator: SequenceAllocator | None = None,
        locks=None,
        estimator: WaitEstimator | None = None,
        events: EventBus | None = None,
        clock=None,
        miss_timeout: float = MISS_TIMEOUT_SECONDS,
        call_next_attempts: int = CALL_NEXT_ATTEMPTS,
        branch_tz: tzinfo | None = None,
    ) -> None:
        self.store = store
        self.locks = locks or KeyedLocks()
        self.allocator = allocator or LocalSequenceAllocator()
        self.estimator = estimator or WaitEstimator()
        self.events = events or EventBus()
        self._clock = clock or _utcnow
        self.miss_timeout = timedelta(seconds=miss_timeout)
        self._call_next_attempts = max(1, call_next_attempts)
        self.branch_tz = branch_tz or _zone(BRANCH_TIMEZONE)
        self._serials = itertools.count(1)
        self._serial_lock = threading.Lock()

    def now(self) -> datetime:
        return _as_utc(self._clock())

    def business_day(self, moment: datetime) -> date:
        """Calendar day of *moment* at the branch; numbering restarts with it."""
        return moment.astimezone(self.branch_tz).date()

    # ── Lookups ──────────────────────────────────────────────────────

    def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found", code=ErrorCode.TICKET_NOT_FOUND)
        return ticket

    def get_counter(self, counter_id: int) -> Counter:
        counter = self.store.get_counter(counter_id)
        if counter is None:
            raise NotFoundError(f"Counter {counter_id} not found", code=ErrorCode.COUNTER_NOT_FOUND)
        return counter

    def get_service(self, code: str) -> Service:
        service = self.store.get_service(code)
        if service is None:
            raise NotFoundError(f"Service {code!r} not found", code=ErrorCode.SERVICE_NOT_FOUND)
        return service

    def list_counters(self) -> list[Counter]:
        return self.store.list_counters()

    def list_services(self) -> list[Service]:
        return self.store.list_services()

    # ── Issuance ─────────────────────────────────────────────────────

    def issue_ticket(
        self,
        service_code: str,
        priority: PriorityRequest | str | None = None,
        customer_name: str = "Customer",
    ) -> Ticket:
        """Create a WAITING ticket for *service_code*.

        Raises:
            ValidationError: Unknown/inactive service, bad priority or VIP
                code, or an appointment time that is not in the future.
            ConflictError: The appointment slot is already taken.
        """
        if priority is None:
            request = PriorityRequest()
        elif isinstance(priority, str):
            request = PriorityRequest(label=priority)
        else:
            request = priority

        service = self._active_service(service_code)
        tier, label, vip_code = resolve_request(request)
        now = self.now()

        appointment_time = None
        if tier is PriorityTier.APPOINTMENT:
            appointment_time = _as_utc(request.appointment_time)
            if appointment_time <= now:
                raise ValidationError("Appointment time must be in the future")

        # Appointment issuance for one service is serialized so that the
        # slot check and the write cannot interleave.
        guard = (
            self.locks.hold(f"appointments:{service.code}")
            if appointment_time is not None
            else nullcontext()
        )
        with guard:
            if appointment_time is not None:
                self._check_slot_free(service.code, appointment_time)
            estimate = self.estimator.estimate(
                service, tier, self.store.count_waiting(service.code)
            )
            sequence = self.allocator.next_sequence(service.code, self.business_day(now))
            ticket = Ticket(
                id=str(uuid.uuid4()),
                number=format_ticket_number(service.code, tier, sequence),
                service_code=service.code,
                tier=tier,
                created_at=now,
                serial=self._next_serial(),
                customer_name=customer_name or "Customer",
                priority_label=label,
                vip_code=vip_code,
                appointment_time=appointment_time,
                estimated_wait_minutes=estimate,
            )
            self.store.commit(tickets=[ticket])

        logger.info(
            "Issued %s  service=%s  tier=%s  est=%d min",
            ticket.number, service.code, tier.value, estimate,
        )
        self._publish(EventKind.CREATED, ticket, now)
        return ticket

    # ── Calling ──────────────────────────────────────────────────────

    def call(self, ticket_id: str, counter_id: int) -> Ticket:
        """Assign a WAITING ticket to a counter (WAITING → CALLED)."""
        self.get_counter(counter_id)
        with self._locked(ticket_id, counter_id) as ticket:
            now = self.now()
            self._expect(ticket, "call", TicketStatus.WAITING)
            called, counter = self._assign(ticket, self.get_counter(counter_id), now)
            self.store.commit(tickets=[called], counters=[counter])

        logger.info("Called %s to counter %d", called.number, counter_id)
        self._publish(EventKind.CALLED, called, now)
        return called

    def call_next(self, counter_id: int) -> Ticket:
        """Call the head of the line for *counter_id*.

        If another counter claims the selected ticket first, selection is
        retried a bounded number of times.

        Raises:
            NotFoundError: Unknown counter, or nobody is waiting.
            ConflictError: The counter is busy or not open.
            ValidationError: The counter supports no services.
        """
        for attempt in range(1, self._call_next_attempts + 1):
            counter = self.get_counter(counter_id)
            self._check_can_take(counter)
            candidate = matching.next_ticket_for(counter, self.store)
            if candidate is None:
                raise NotFoundError(
                    f"No waiting ticket for counter {counter_id}",
                    code=ErrorCode.QUEUE_EMPTY,
                )
            try:
                return self.call(candidate.id, counter_id)
            except ConflictError as exc:
                if exc.code not in (ErrorCode.RACE_LOST, ErrorCode.INVALID_TRANSITION):
                    raise
                logger.info(
                    "Counter %d lost %s to a concurrent call (attempt %d)",
                    counter_id, candidate.number, attempt,
                )
        raise ConflictError(
            f"Counter {counter_id} could not claim a ticket",
            code=ErrorCode.RACE_LOST,
        )

    def next_ticket_for(self, counter_id: int) -> Ticket | None:
        """Which ticket *counter_id* would be given next (read-only)."""
        return matching.next_ticket_for(self.get_counter(counter_id), self.store)

    def reassign_counter(self, ticket_id: str, counter_id: int, reason: str | None = None) -> Ticket:
        """Move a WAITING or CALLED ticket onto another counter."""
        self.get_counter(counter_id)
        with self._locked(ticket_id, counter_id) as ticket:
            now = self.now()
            self._expect(ticket, "reassign", TicketStatus.WAITING, TicketStatus.CALLED)
            if ticket.counter_id == counter_id:
                raise ConflictError(f"Ticket {ticket.number} is already at counter {counter_id}")
            released = self._release_counter_of(ticket)
            unassigned = replace(
                ticket,
                status=TicketStatus.WAITING,
                counter_id=None,
                employee_id=None,
                called_at=None,
            )
            called, counter = self._assign(unassigned, self.get_counter(counter_id), now)
            self.store.commit(tickets=[called], counters=[*released, counter])

        logger.info(
            "Reassigned %s from counter %s to %d (%s)",
            called.number, ticket.counter_id, counter_id, reason or "no reason given",
        )
        self._publish(EventKind.CALLED, called, now)
        return called

    # ── Serving ──────────────────────────────────────────────────────

    def start_serving(self, ticket_id: str) -> Ticket:
        with self._locked(ticket_id) as ticket:
            now = self.now()
            self._expect(ticket, "start serving", TicketStatus.CALLED)
            counter = self.store.get_counter(ticket.counter_id)
            if counter is None or counter.current_ticket_id != ticket.id:
                raise ConflictError(f"Ticket {ticket.number} is not its counter's current ticket")
            serving = replace(ticket, status=TicketStatus.SERVING, serving_started_at=now)
            self.store.commit(tickets=[serving])

        self._publish(EventKind.STARTED, serving, now)
        return serving

    def complete_ticket(self, ticket_id: str) -> Ticket:
        with self._locked(ticket_id) as ticket:
            now = self.now()
            self._expect(ticket, "complete", TicketStatus.SERVING)
            done = replace(
                ticket,
                status=TicketStatus.COMPLETED,
                completed_at=now,
                actual_wait_minutes=_minutes(ticket.called_at - ticket.created_at),
                actual_service_minutes=_minutes(now - ticket.serving_started_at),
            )
            self.store.commit(tickets=[done], counters=self._release_counter_of(ticket))

        logger.info(
            "Completed %s  wait=%.2f min  service=%.2f min",
            done.number, done.actual_wait_minutes, done.actual_service_minutes,
        )
        self._publish(EventKind.COMPLETED, done, now)
        return done

    # ── Leaving the line ─────────────────────────────────────────────

    def cancel_ticket(self, ticket_id: str, reason: str | None = None) -> Ticket:
        """WAITING → CANCELLED. Called or serving tickets use ``skip_ticket``."""
        with self._locked(ticket_id) as ticket:
            now = self.now()
            self._expect(ticket, "cancel", TicketStatus.WAITING)
            cancelled = replace(
                ticket,
                status=TicketStatus.CANCELLED,
                cancelled_at=now,
                cancel_reason=reason,
            )
            self.store.commit(tickets=[cancelled])

        logger.info("Cancelled %s (%s)", cancelled.number, reason or "no reason given")
        self._publish(EventKind.CANCELLED, cancelled, now)
        return cancelled

    def skip_ticket(self, ticket_id: str, reason: str | None = None) -> Ticket:
        """Operator override: WAITING/CALLED → MISSED, freeing the counter."""
        with self._locked(ticket_id) as ticket:
            now = self.now()
            self._expect(ticket, "skip", TicketStatus.WAITING, TicketStatus.CALLED)
            skipped = replace(
                ticket,
                status=TicketStatus.MISSED,
                missed_at=now,
                skip_reason=reason,
            )
            self.store.commit(tickets=[skipped], counters=self._release_counter_of(ticket))

        logger.info("Skipped %s (%s)", skipped.number, reason or "no reason given")
        self._publish(EventKind.MISSED, skipped, now)
        return skipped

    def transfer_ticket(self, ticket_id: str, new_service_code: str) -> TransferResult:
        """Replace a WAITING/CALLED ticket by a fresh one in another service."""
        service = self._active_service(new_service_code)
        with self._locked(ticket_id) as ticket:
            now = self.now()
            self._expect(ticket, "transfer", TicketStatus.WAITING, TicketStatus.CALLED)
            if service.code == ticket.service_code:
                raise ValidationError(f"Ticket {ticket.number} already belongs to {service.code}")
            released = self._release_counter_of(ticket)
            estimate = self.estimator.estimate(
                service, ticket.tier, self.store.count_waiting(service.code)
            )
            sequence = self.allocator.next_sequence(service.code, self.business_day(now))
            replacement = Ticket(
                id=str(uuid.uuid4()),
                number=format_ticket_number(service.code, ticket.tier, sequence),
                service_code=service.code,
                tier=ticket.tier,
                created_at=now,
                serial=self._next_serial(),
                customer_name=ticket.customer_name,
                priority_label=ticket.priority_label,
                vip_code=ticket.vip_code,
                appointment_time=ticket.appointment_time,
                estimated_wait_minutes=estimate,
                transferred_from=ticket.id,
            )
            original = replace(
                ticket,
                status=TicketStatus.TRANSFERRED,
                transferred_at=now,
                transferred_to=replacement.id,
            )
            self.store.commit(tickets=[original, replacement], counters=released)

        logger.info("Transferred %s → %s", original.number, replacement.number)
        self._publish(EventKind.TRANSFERRED, original, now)
        self._publish(EventKind.CREATED, replacement, now)
        return TransferResult(original=original, replacement=replacement)

    # ── Priority ─────────────────────────────────────────────────────

    def reassign_priority(
        self,
        ticket_id: str,
        tier: PriorityTier | str,
        reason: str | None = None,
    ) -> Ticket:
        """Change the tier of a WAITING ticket and recompute its estimate.

        The ticket keeps its number (and therefore its original prefix).
        """
        label = normalise_label(tier)
        with self._locked(ticket_id) as ticket:
            now = self.now()
            self._expect(ticket, "reprioritize", TicketStatus.WAITING)
            new_tier = classify(label, ticket.appointment_time if label == "appointment" else None)
            service = self.get_service(ticket.service_code)
            others = self.store.count_waiting(ticket.service_code) - 1
            updated = replace(
                ticket,
                tier=new_tier,
                priority_label=label,
                estimated_wait_minutes=self.estimator.estimate(service, new_tier, max(0, others)),
            )
            self.store.commit(tickets=[updated])

        logger.info(
            "Reprioritized %s  %s → %s (%s)",
            updated.number, ticket.tier.value, new_tier.value, reason or "no reason given",
        )
        self._publish(EventKind.REPRIORITIZED, updated, now)
        return updated

    # ── Queue views ──────────────────────────────────────────────────

    def ticket_position(self, ticket_id: str) -> int | None:
        """1-based place in its service's line, or None once it left WAITING."""
        return matching.position_of(self.get_ticket(ticket_id), self.store)

    def queue_snapshot(
        self,
        service_code: str | None = None,
        head_size: int = SNAPSHOT_HEAD_SIZE,
    ) -> QueueSnapshot:
        codes = None
        if service_code is not None:
            codes = [self.get_service(service_code).code]
        waiting = self.store.list_tickets(status=TicketStatus.WAITING, service_codes=codes)
        by_tier = {tier.value: 0 for tier in PriorityTier}
        for ticket in waiting:
            by_tier[ticket.tier.value] += 1
        return QueueSnapshot(
            waiting_count=len(waiting),
            by_tier=by_tier,
            ordered_head=tuple(matching.ordered(waiting, limit=max(0, head_size))),
        )

    # ── Missed-ticket sweep ──────────────────────────────────────────

    def sweep_missed(self) -> SweepResult:
        """Expire CALLED tickets older than ``miss_timeout``; idempotent."""
        cutoff = self.now() - self.miss_timeout
        overdue = [
            t for t in self.store.list_tickets(status=TicketStatus.CALLED)
            if t.called_at is not None and t.called_at < cutoff
        ]
        reaped: list[str] = []
        for candidate in overdue:
            try:
                ticket = self._reap(candidate.id, cutoff)
            except QueueError as exc:
                logger.warning("Could not reap %s: %s", candidate.number, exc)
                continue
            except Exception:
                logger.exception("Could not reap %s", candidate.number)
                continue
            if ticket is not None:
                reaped.append(ticket.id)
        if reaped:
            logger.info("Sweep marked %d ticket(s) missed", len(reaped))
        return SweepResult(reaped_ticket_ids=tuple(reaped))

    def _reap(self, ticket_id: str, cutoff: datetime) -> Ticket | None:
        with self._locked(ticket_id) as ticket:
            now = self.now()
            if ticket.status is not TicketStatus.CALLED or ticket.called_at >= cutoff:
                return None
            missed = replace(ticket, status=TicketStatus.MISSED, missed_at=now)
            self.store.commit(tickets=[missed], counters=self._release_counter_of(ticket))

        logger.info("Missed %s at counter %s", missed.number, missed.counter_id)
        self._publish(EventKind.MISSED, missed, now)
        return missed

    # ── Administration ───────────────────────────────────────────────

    def register_service(
        self,
        code: str,
        name: str,
        base_service_minutes: int = DEFAULT_BASE_SERVICE_MINUTES,
        active: bool = True,
    ) -> Service:
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("Service code is required")
        if base_service_minutes <= 0:
            raise ValidationError("Base service time must be positive")
        with self.locks.hold(f"service:{code}"):
            if self.store.get_service(code) is not None:
                raise ConflictError(f"Service {code!r} already exists")
            service = Service(code=code, name=name, base_service_minutes=base_service_minutes, active=active)
            self.store.commit(services=[service])
        return service

    def set_service_active(self, code: str, active: bool) -> Service:
        with self.locks.hold(f"service:{code}"):
            service = replace(self.get_service(code), active=active)
            self.store.commit(services=[service])
        logger.info("Service %s %s", code, "activated" if active else "deactivated")
        return service

    def register_counter(
        self,
        number: int,
        supported_service_codes: Iterable[str] = (),
        name: str | None = None,
    ) -> Counter:
        if number < 1:
            raise ValidationError("Counter number must be positive")
        codes = self._known_codes(supported_service_codes)
        with self.locks.hold(counter_key(number)):
            if self.store.get_counter(number) is not None:
                raise ConflictError(f"Counter {number} already exists")
            counter = Counter(
                number=number,
                name=name or f"Counter {number}",
                supported_service_codes=codes,
            )
            self.store.commit(counters=[counter])
        return counter

    def set_counter_services(self, counter_id: int, service_codes: Iterable[str]) -> Counter:
        codes = self._known_codes(service_codes)
        with self._locked_counter(counter_id) as counter:
            self._expect_idle(counter)
            if not codes and counter.status is CounterStatus.ACTIVE:
                raise ValidationError(
                    "An active counter needs at least one service",
                    code=ErrorCode.COUNTER_UNSUPPORTED,
                )
            counter = replace(counter, supported_service_codes=codes)
            self.store.commit(counters=[counter])
        return counter

    def assign_employee(self, counter_id: int, employee_id: str) -> Counter:
        if not employee_id:
            raise ValidationError("Employee id is required")
        with self._locked_counter(counter_id) as counter:
            self._expect_idle(counter)
            counter = replace(counter, assigned_employee_id=employee_id)
            self.store.commit(counters=[counter])
        logger.info("Employee %s assigned to counter %d", employee_id, counter_id)
        return counter

    def remove_employee(self, counter_id: int) -> Counter:
        with self._locked_counter(counter_id) as counter:
            self._expect_idle(counter)
            status = counter.status
            if status is CounterStatus.ACTIVE:
                status = CounterStatus.INACTIVE
            counter = replace(counter, assigned_employee_id=None, status=status)
            self.store.commit(counters=[counter])
        return counter

    def set_counter_status(self, counter_id: int, status: CounterStatus | str) -> Counter:
        try:
            status = CounterStatus(status.lower() if isinstance(status, str) else status)
        except ValueError:
            raise ValidationError(
                f"Invalid status {status!r}. Must be one of: "
                + ", ".join(s.value for s in CounterStatus)
            ) from None
        if status is CounterStatus.BUSY:
            raise ValidationError("A counter only becomes busy by calling a ticket")

        with self._locked_counter(counter_id) as counter:
            now = self.now()
            self._expect_idle(counter)
            if status is CounterStatus.ACTIVE:
                if counter.assigned_employee_id is None:
                    raise ValidationError("Cannot activate a counter without an assigned employee")
                if not counter.supported_service_codes:
                    raise ValidationError(
                        "Cannot activate a counter without services",
                        code=ErrorCode.COUNTER_UNSUPPORTED,
                    )
            opened_at, closed_at = counter.opened_at, counter.closed_at
            if status is CounterStatus.ACTIVE and counter.status is not CounterStatus.ACTIVE:
                opened_at, closed_at = now, None
            elif status is CounterStatus.CLOSED:
                closed_at = now
            counter = replace(counter, status=status, opened_at=opened_at, closed_at=closed_at)
            self.store.commit(counters=[counter])

        logger.info("Counter %d → %s", counter_id, status.value)
        return counter

    # ── Internals ────────────────────────────────────────────────────

    @contextmanager
    def _locked(self, ticket_id: str, *counter_ids: int) -> Iterator[Ticket]:
        """Hold the ticket, its current counter and *counter_ids*.

        Yields the ticket as re-read under the locks. If its counter changed
        between the first read and acquisition, the race is lost.
        """
        seen = self.get_ticket(ticket_id)
        keys = [ticket_key(ticket_id), *(counter_key(c) for c in counter_ids)]
        if seen.counter_id is not None:
            keys.append(counter_key(seen.counter_id))
        with self.locks.hold(*keys):
            ticket = self.get_ticket(ticket_id)
            if ticket.counter_id != seen.counter_id:
                raise ConflictError(
                    f"Ticket {ticket.number} changed while waiting for it",
                    code=ErrorCode.RACE_LOST,
                )
            yield ticket

    @contextmanager
    def _locked_counter(self, counter_id: int) -> Iterator[Counter]:
        self.get_counter(counter_id)
        with self.locks.hold(counter_key(counter_id)):
            yield self.get_counter(counter_id)

    @staticmethod
    def _expect(ticket: Ticket, action: str, *allowed: TicketStatus) -> None:
        if ticket.status not in allowed:
            raise ConflictError(
                f"Cannot {action} ticket {ticket.number} with status {ticket.status.value}"
            )

    @staticmethod
    def _expect_idle(counter: Counter) -> None:
        if counter.status is CounterStatus.BUSY:
            raise ConflictError(
                f"Counter {counter.number} is serving a ticket",
                code=ErrorCode.COUNTER_BUSY,
            )

    @staticmethod
    def _check_can_take(counter: Counter) -> None:
        if not counter.supported_service_codes:
            raise ValidationError(
                f"Counter {counter.number} supports no services",
                code=ErrorCode.COUNTER_UNSUPPORTED,
            )
        if counter.status is CounterStatus.BUSY:
            raise ConflictError(
                f"Counter {counter.number} is already busy",
                code=ErrorCode.COUNTER_BUSY,
            )
        if not counter.is_assignable:
            raise ConflictError(
                f"Counter {counter.number} is {counter.status.value}",
                code=ErrorCode.COUNTER_UNAVAILABLE,
            )

    def _assign(self, ticket: Ticket, counter: Counter, now: datetime) -> tuple[Ticket, Counter]:
        self._check_can_take(counter)
        if not counter.supports(ticket.service_code):
            raise ValidationError(
                f"Counter {counter.number} does not serve {ticket.service_code}",
                code=ErrorCode.COUNTER_UNSUPPORTED,
            )
        called = replace(
            ticket,
            status=TicketStatus.CALLED,
            called_at=now,
            counter_id=counter.number,
            employee_id=counter.assigned_employee_id,
        )
        busy = replace(
            counter,
            status=CounterStatus.BUSY,
            current_ticket_id=ticket.id,
            opened_at=counter.opened_at or now,
            closed_at=None,
        )
        return called, busy

    def _release_counter_of(self, ticket: Ticket) -> list[Counter]:
        """Snapshot of the ticket's counter freed, if it is still holding it."""
        if ticket.counter_id is None:
            return []
        counter = self.store.get_counter(ticket.counter_id)
        if counter is None or counter.current_ticket_id != ticket.id:
            return []
        return [replace(counter, status=CounterStatus.ACTIVE, current_ticket_id=None)]

    def _active_service(self, code: str) -> Service:
        service = self.store.get_service(code)
        if service is None or not service.active:
            raise ValidationError(
                f"Service {code!r} is not available",
                code=ErrorCode.SERVICE_UNAVAILABLE,
            )
        return service

    def _known_codes(self, codes: Iterable[str]) -> frozenset[str]:
        codes = frozenset(codes)
        unknown = sorted(c for c in codes if self.store.get_service(c) is None)
        if unknown:
            raise ValidationError(f"Unknown service code(s): {', '.join(unknown)}")
        return codes

    def _check_slot_free(self, service_code: str, when: datetime) -> None:
        window = timedelta(minutes=APPOINTMENT_SLOT_MINUTES)
        for status in (TicketStatus.WAITING, TicketStatus.CALLED):
            for other in self.store.list_tickets(status=status, service_codes=[service_code]):
                if (
                    other.tier is PriorityTier.APPOINTMENT
                    and other.appointment_time is not None
                    and abs(other.appointment_time - when) < window
                ):
                    raise ConflictError(
                        f"Appointment slot at {when:%H:%M} is already booked",
                        code=ErrorCode.SLOT_TAKEN,
                    )

    def _next_serial(self) -> int:
        with self._serial_lock:
            return next(self._serials)

    def _publish(self, kind: EventKind, ticket: Ticket, when: datetime) -> None:
        self.events.publish(LifecycleEvent.for_ticket(kind, ticket, when))
