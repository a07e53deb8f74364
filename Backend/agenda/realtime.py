"""
Realtime booking sync.

Two in-process mechanisms keep open slot pickers and dashboards fresh:

- AppointmentChangeFeed: row-level change notifications (insert / update /
  delete) for the appointments table, scoped by company. attach_change_feed()
  hooks SQLAlchemy session events so every committed appointment write is
  published here. subscribe_to_booking_updates() narrows the feed to one
  (company, date) view.

- BookingEventBus: named events between components of the same process
  ("appointment completed" -> refresh revenue) without a database round trip.

Usage:
    feed = AppointmentChangeFeed()
    detach = attach_change_feed(feed)

    unsubscribe = subscribe_to_booking_updates(feed, company_id, day, refresh_slots)
    ...
    unsubscribe()  # when the view goes away
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, time
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, SessionTransaction

from .models import Appointment

logger = logging.getLogger(__name__)

_PENDING_CHANGES_KEY = "agenda.pending_appointment_changes"


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class AppointmentChange:
    """One committed change to an appointment row."""
    event: ChangeEvent
    company_id: uuid.UUID
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None

    def touches_date(self, appointment_date: date | str) -> bool:
        """True if the row was on appointment_date before or after the change."""
        wanted = appointment_date.isoformat() if isinstance(appointment_date, date) else appointment_date
        for record in (self.new, self.old):
            if record and record.get("appointment_date") == wanted:
                return True
        return False


ChangeCallback = Callable[[AppointmentChange], None]


class AppointmentChangeFeed:
    """Company-scoped publish/subscribe for appointment row changes."""

    def __init__(self):
        self._subscribers: dict[uuid.UUID, list[ChangeCallback]] = defaultdict(list)

    def subscribe(self, company_id: uuid.UUID, callback: ChangeCallback) -> Callable[[], None]:
        self._subscribers[company_id].append(callback)
        logger.debug(f"[REALTIME] Subscribed to appointment changes for {company_id}")

        def unsubscribe():
            callbacks = self._subscribers.get(company_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[company_id]
                logger.debug(f"[REALTIME] Unsubscribed from appointment changes for {company_id}")

        return unsubscribe

    def publish(self, change: AppointmentChange) -> int:
        """Deliver a change to the company's subscribers. Returns how many were called."""
        callbacks = list(self._subscribers.get(change.company_id, ()))
        for callback in callbacks:
            try:
                callback(change)
            except Exception:
                logger.exception(f"[REALTIME] Change subscriber failed for {change.company_id}")
        return len(callbacks)

    def subscriber_count(self, company_id: Optional[uuid.UUID] = None) -> int:
        if company_id is not None:
            return len(self._subscribers.get(company_id, ()))
        return sum(len(callbacks) for callbacks in self._subscribers.values())


def subscribe_to_booking_updates(
    feed: AppointmentChangeFeed,
    company_id: uuid.UUID,
    appointment_date: date,
    on_change: Callable[[], None],
) -> Callable[[], None]:
    """
    Call on_change() once for every change to the company's appointments on
    appointment_date. Changes on other dates are ignored.

    Returns the disposer; callers must invoke it when the view is torn down.
    """
    logger.debug(f"[REALTIME] Watching {company_id} on {appointment_date}")

    def handle(change: AppointmentChange):
        if change.touches_date(appointment_date):
            logger.debug(f"[REALTIME] {change.event.value} on {appointment_date} for {company_id}")
            on_change()

    return feed.subscribe(company_id, handle)


# ────────────────────────────────────────────────────────────────
# In-process event bus
# ────────────────────────────────────────────────────────────────

class BookingEventType(str, Enum):
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_UPDATED = "appointment_updated"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_COMPLETED = "appointment_completed"


@dataclass(frozen=True)
class BookingEvent:
    type: BookingEventType
    company_id: uuid.UUID
    date: str
    time: str
    appointment_id: Optional[str] = None


EventHandler = Callable[[Any], None]


class BookingEventBus:
    """
    Synchronous multi-subscriber event bus.

    Handlers run in registration order on the dispatching call. A failing
    handler is logged and skipped; the remaining handlers still run.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event_type: BookingEventType | str, handler: EventHandler) -> None:
        self._handlers[_event_key(event_type)].append(handler)

    def off(self, event_type: BookingEventType | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(_event_key(event_type))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def dispatch(self, event_type: BookingEventType | str, payload: Any = None) -> None:
        key = _event_key(event_type)
        handlers = list(self._handlers.get(key, ()))
        logger.debug(f"[EVENTS] Dispatching {key} to {len(handlers)} handler(s)")
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(f"[EVENTS] Handler for {key} failed")

    def listener_count(self, event_type: BookingEventType | str) -> int:
        return len(self._handlers.get(_event_key(event_type), ()))

    def clear(self) -> None:
        self._handlers.clear()


def _event_key(event_type: BookingEventType | str) -> str:
    return event_type.value if isinstance(event_type, BookingEventType) else str(event_type)


# ────────────────────────────────────────────────────────────────
# SQLAlchemy change capture
# ────────────────────────────────────────────────────────────────

def _format_value(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


_SNAPSHOT_FIELDS = (
    "id",
    "company_id",
    "client_id",
    "service_id",
    "appointment_date",
    "appointment_time",
    "status",
    "duration",
)


def _snapshot(appointment: Appointment) -> dict[str, Any]:
    return {name: _format_value(getattr(appointment, name)) for name in _SNAPSHOT_FIELDS}


def _previous_snapshot(appointment: Appointment) -> dict[str, Any]:
    """Row values as they were before the pending flush."""
    state = inspect(appointment)
    snapshot = {}
    for name in _SNAPSHOT_FIELDS:
        history = state.attrs[name].history
        if history.deleted:
            snapshot[name] = _format_value(history.deleted[0])
        else:
            snapshot[name] = _format_value(getattr(appointment, name))
    return snapshot


def _within(transaction: Optional[SessionTransaction], ancestor: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is ancestor:
            return True
        transaction = transaction.parent
    return False


def attach_change_feed(feed: AppointmentChangeFeed, target: Any = Session) -> Callable[[], None]:
    """
    Publish committed Appointment inserts, updates and deletes to feed.

    Changes are collected at flush time, tagged with the transaction (or
    SAVEPOINT) that flushed them, and delivered only when the outermost
    transaction commits. Rolling back a SAVEPOINT drops only the changes made
    inside it; rolling back the outer transaction drops everything.
    Returns a detach function.
    """

    def collect(session, flush_context):
        owner = session.get_nested_transaction() or session.get_transaction()
        pending = session.info.setdefault(_PENDING_CHANGES_KEY, [])
        for obj in session.new:
            if isinstance(obj, Appointment):
                pending.append((owner, AppointmentChange(ChangeEvent.INSERT, obj.company_id, new=_snapshot(obj))))
        for obj in session.dirty:
            if isinstance(obj, Appointment) and session.is_modified(obj, include_collections=False):
                change = AppointmentChange(
                    ChangeEvent.UPDATE,
                    obj.company_id,
                    new=_snapshot(obj),
                    old=_previous_snapshot(obj),
                )
                pending.append((owner, change))
        for obj in session.deleted:
            if isinstance(obj, Appointment):
                pending.append(
                    (owner, AppointmentChange(ChangeEvent.DELETE, obj.company_id, old=_previous_snapshot(obj)))
                )

    def publish(session):
        # after_commit also fires when a SAVEPOINT is released
        if session.get_nested_transaction() is not None:
            return
        for _, change in session.info.pop(_PENDING_CHANGES_KEY, []):
            feed.publish(change)

    def discard(session, previous_transaction):
        pending = session.info.get(_PENDING_CHANGES_KEY)
        if not pending:
            return
        kept = [(owner, change) for owner, change in pending if not _within(owner, previous_transaction)]
        if len(kept) != len(pending):
            logger.debug(f"[REALTIME] Dropped {len(pending) - len(kept)} rolled back appointment change(s)")
        if kept:
            session.info[_PENDING_CHANGES_KEY] = kept
        else:
            session.info.pop(_PENDING_CHANGES_KEY, None)

    event.listen(target, "after_flush", collect)
    event.listen(target, "after_commit", publish)
    event.listen(target, "after_soft_rollback", discard)

    def detach():
        event.remove(target, "after_flush", collect)
        event.remove(target, "after_commit", publish)
        event.remove(target, "after_soft_rollback", discard)

    return detach
