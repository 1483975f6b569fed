"""
stockroom/notifications.py

Post-commit notification bus.

Producers (lifecycle, stock) enqueue events on the current DB session while the
transaction is open. Only after a successful commit are they handed to
subscribers; a rollback discards them. With NOTIFY_ASYNC the handlers run on
a thread pool so they can neither block the caller nor undo a committed
transition.

Collaborator interface:
    notifications.subscribe(RequestTransitioned, fn)
    notifications.subscribe(StockAlertRaised, fn)

Handlers receive frozen events whose payloads are plain dict snapshots; they
must not touch ORM objects.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Type

from flask import Flask, current_app

from .extensions import db
from .logging_config import bind_request_id, current_request_id

logger = logging.getLogger(__name__)

_PENDING_KEY = "stockroom_pending_events"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class Event:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True, kw_only=True)
class RequestTransitioned(Event):
    """A committed lifecycle action: (request snapshot, action, actor)."""

    action: str
    request: Dict[str, Any]
    actor_id: int
    actor_username: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class StockAlertRaised(Event):
    """A newly created StockAlert (alert sink)."""

    alert: Dict[str, Any]


EventHandler = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[Event], List[EventHandler]] = {}

    def subscribe(self, event_type: Type[Event], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)

    def unsubscribe(self, event_type: Type[Event], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception("event_handler_failed", extra={"event_type": type(event).__name__})

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


bus = EventBus()
subscribe = bus.subscribe
unsubscribe = bus.unsubscribe


# ---------------------------------------------------------------------
# Transaction-bound queue
# ---------------------------------------------------------------------
def enqueue(event: Event) -> None:
    """Queue an event on the current session; delivered only after commit."""
    db.session.info.setdefault(_PENDING_KEY, []).append(event)


def discard_pending() -> None:
    db.session.info.pop(_PENDING_KEY, None)


def dispatch_pending() -> List[Future]:
    """Hand queued events to subscribers. Call right after a successful commit."""
    events = db.session.info.pop(_PENDING_KEY, None) or []
    if not events:
        return []
    notifier: Notifier = current_app.extensions["stockroom_notifier"]
    return notifier.dispatch(events)


class Notifier:
    """Delivers events synchronously or on a worker pool (NOTIFY_ASYNC)."""

    def __init__(self, event_bus: EventBus, app: Optional[Flask] = None) -> None:
        self.bus = event_bus
        self._executor: Optional[ThreadPoolExecutor] = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        if app.config.get("NOTIFY_ASYNC", True):
            self._executor = ThreadPoolExecutor(
                max_workers=int(app.config.get("NOTIFY_WORKERS", 4)),
                thread_name_prefix="stockroom-notify",
            )
        app.extensions["stockroom_notifier"] = self

    def dispatch(self, events: List[Event]) -> List[Future]:
        request_id = current_request_id()
        if self._executor is None:
            for event in events:
                self._deliver(event, request_id)
            return []
        return [self._executor.submit(self._deliver, event, request_id) for event in events]

    def _deliver(self, event: Event, request_id: str) -> None:
        with bind_request_id(request_id):
            self.bus.publish(event)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


# ---------------------------------------------------------------------
# Default subscribers
# ---------------------------------------------------------------------
def log_transition(event: RequestTransitioned) -> None:
    logger.info(
        "request_transitioned",
        extra={
            "action": event.action,
            "request_code": event.request.get("code"),
            "status": event.request.get("status"),
            "actor_id": event.actor_id,
        },
    )


def log_stock_alert(event: StockAlertRaised) -> None:
    logger.warning(
        "stock_alert_raised",
        extra={
            "stock_item_id": event.alert.get("stock_item_id"),
            "level": event.alert.get("level"),
            "quantity": event.alert.get("quantity"),
        },
    )


def init_app(app: Flask) -> Notifier:
    subscribe(RequestTransitioned, log_transition)
    subscribe(StockAlertRaised, log_stock_alert)
    return Notifier(bus, app)
