"""Lifecycle events for the notification collaborator.

The engine publishes one event per state change, after the change is
stored. Subscribers run synchronously on the caller's thread; a failing
subscriber is logged and never undoes engine state.

``WebhookRelay`` is the stock subscriber: it POSTs each event as JSON via
``httpx``. With an empty or ``MOCK`` URL it only logs the would-be payload.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

import httpx

from queue_engine.config import NOTIFY_WEBHOOK_URL, WEBHOOK_TIMEOUT_SECONDS
from queue_engine.domain import Ticket

logger = logging.getLogger(__name__)


class EventKind(Enum):
    CREATED = "created"
    CALLED = "called"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"
    TRANSFERRED = "transferred"
    REPRIORITIZED = "reprioritized"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    ticket_id: str
    ticket_number: str
    service_code: str
    counter_id: int | None
    occurred_at: datetime

    @classmethod
    def for_ticket(cls, kind: EventKind, ticket: Ticket, occurred_at: datetime) -> "LifecycleEvent":
        return cls(
            kind=kind,
            ticket_id=ticket.id,
            ticket_number=ticket.number,
            service_code=ticket.service_code,
            counter_id=ticket.counter_id,
            occurred_at=occurred_at,
        )

    def to_payload(self) -> dict:
        return {
            "event": self.kind.value,
            "ticket_id": self.ticket_id,
            "ticket_number": self.ticket_number,
            "service": self.service_code,
            "counter": self.counter_id,
            "timestamp": self.occurred_at.isoformat(),
        }


Subscriber = Callable[[LifecycleEvent], None]


class EventBus:
    """In-process fan-out with a bounded audit history."""

    def __init__(self, history_size: int = 500) -> None:
        self._subscribers: list[Subscriber] = []
        self._history: deque[LifecycleEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, fn: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers.append(fn)
        return fn

    def unsubscribe(self, fn: Subscriber) -> None:
        with self._lock:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

    def publish(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        logger.debug("Event %s ticket=%s", event.kind.value, event.ticket_number)
        for fn in subscribers:
            try:
                fn(event)
            except Exception:
                logger.exception(
                    "Subscriber %r failed on %s for %s",
                    fn, event.kind.value, event.ticket_number,
                )

    def history(self, kind: EventKind | None = None) -> list[LifecycleEvent]:
        with self._lock:
            events = list(self._history)
        if kind is None:
            return events
        return [e for e in events if e.kind is kind]


class WebhookRelay:
    """Forward lifecycle events to an HTTP endpoint."""

    def __init__(
        self,
        url: str = NOTIFY_WEBHOOK_URL,
        *,
        client: httpx.Client | None = None,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self.sent = 0

    @property
    def is_mock(self) -> bool:
        return not self.url or "MOCK" in self.url

    def __call__(self, event: LifecycleEvent) -> None:
        payload = event.to_payload()
        if self.is_mock:
            logger.info(
                "MOCK WEBHOOK | %s | ticket=%s | service=%s | counter=%s",
                event.kind.value, event.ticket_number, event.service_code, event.counter_id,
            )
            return
        try:
            resp = self._client.post(self.url, json=payload)
            resp.raise_for_status()
            self.sent += 1
            logger.info("Webhook → HTTP %s | %s %s", resp.status_code, event.kind.value, event.ticket_number)
        except httpx.HTTPError as exc:
            logger.error("Webhook failed for %s (%s): %s", event.ticket_number, event.kind.value, exc)

    def close(self) -> None:
        self._client.close()
