"""
Appointment writes: booking a slot and moving an appointment through its lifecycle.

create_appointment() is the write step that follows the booking checks. It
re-runs them (slot + limits) right before inserting, then relies on the unique
index on live slots to settle races between concurrent bookings.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_rules import (
    BookingRequestValidation,
    BookingRules,
    get_booking_rules,
    to_minute_key,
    validate_booking_request,
)
from .booking_rules.conflicts import SLOT_TAKEN_MESSAGE
from .clients import upsert_client
from .models import Appointment, AppointmentStatus
from .realtime import BookingEvent, BookingEventBus, BookingEventType

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

_STATUS_EVENTS = {
    AppointmentStatus.CANCELLED: BookingEventType.APPOINTMENT_CANCELLED,
    AppointmentStatus.COMPLETED: BookingEventType.APPOINTMENT_COMPLETED,
}


class BookingRejected(Exception):
    """The booking checks turned the request down. Messages are user-facing."""

    def __init__(self, validation: BookingRequestValidation):
        self.validation = validation
        self.messages = list(validation.errors)
        super().__init__("; ".join(self.messages) or "Booking rejected")

    @property
    def reason(self) -> str:
        if not self.validation.slot.valid:
            return "slot_taken"
        if not self.validation.limits.simultaneous_limit.can_book:
            return "simultaneous_limit"
        return "monthly_limit"


class SlotUnavailable(Exception):
    """The database refused the insert because the slot is already held."""

    def __init__(self, appointment_date: date, appointment_time: str):
        self.appointment_date = appointment_date
        self.appointment_time = appointment_time
        self.message = SLOT_TAKEN_MESSAGE.format(time=appointment_time)
        super().__init__(self.message)


class AppointmentNotFound(Exception):
    def __init__(self, appointment_id: uuid.UUID):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class InvalidStatusTransition(Exception):
    def __init__(self, current: AppointmentStatus, requested: AppointmentStatus):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change appointment from {current.value} to {requested.value}")


@dataclass
class BookingRequest:
    company_id: uuid.UUID
    client_name: str
    client_phone: str
    appointment_date: date
    appointment_time: time
    duration: int = 30
    service_id: Optional[uuid.UUID] = None
    client_email: Optional[str] = None
    notes: Optional[str] = None


def _event_for(appointment: Appointment, event_type: BookingEventType) -> BookingEvent:
    return BookingEvent(
        type=event_type,
        company_id=appointment.company_id,
        date=appointment.appointment_date.isoformat(),
        time=to_minute_key(appointment.appointment_time),
        appointment_id=str(appointment.id),
    )


async def create_appointment(
    session: AsyncSession,
    request: BookingRequest,
    rules: Optional[BookingRules] = None,
    events: Optional[BookingEventBus] = None,
) -> Appointment:
    """
    Validate, upsert the client and insert a confirmed appointment. Commits.

    Raises:
        BookingRejected: a pre-commit check turned the request down
        SlotUnavailable: a concurrent booking won the slot at the database
        InvalidPhoneNumber: the phone cannot identify a client
    """
    rules = rules or get_booking_rules()
    slot_time = to_minute_key(request.appointment_time)

    validation = await validate_booking_request(
        session,
        request.company_id,
        request.client_phone,
        request.appointment_date,
        request.appointment_time,
        rules,
    )
    if not validation.is_valid:
        raise BookingRejected(validation)

    upserted = await upsert_client(
        session,
        request.company_id,
        request.client_phone,
        request.client_name,
        email=request.client_email,
        notes=request.notes,
    )

    appointment = Appointment(
        company_id=request.company_id,
        client_id=upserted.client.id,
        service_id=request.service_id,
        appointment_date=request.appointment_date,
        appointment_time=request.appointment_time.replace(second=0, microsecond=0),
        status=AppointmentStatus.CONFIRMED,
        duration=request.duration,
    )
    session.add(appointment)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(
            f"[BOOKING] Slot {request.appointment_date} {slot_time} at {request.company_id} "
            f"was taken concurrently"
        )
        raise SlotUnavailable(request.appointment_date, slot_time)

    logger.info(
        f"[BOOKING] Created appointment {appointment.id} for client {upserted.client.id} "
        f"on {request.appointment_date} {slot_time}"
    )
    if events is not None:
        events.dispatch(
            BookingEventType.APPOINTMENT_CREATED,
            _event_for(appointment, BookingEventType.APPOINTMENT_CREATED),
        )
    return appointment


async def transition_appointment_status(
    session: AsyncSession,
    company_id: uuid.UUID,
    appointment_id: uuid.UUID,
    new_status: AppointmentStatus,
    events: Optional[BookingEventBus] = None,
) -> Appointment:
    """Move an appointment to new_status if the lifecycle allows it. Commits."""
    result = await session.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.company_id == company_id,
        )
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise AppointmentNotFound(appointment_id)

    current = appointment.status
    if new_status == current:
        return appointment
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(current, new_status)

    appointment.status = new_status
    await session.commit()

    logger.info(f"[BOOKING] Appointment {appointment.id}: {current.value} -> {new_status.value}")
    if events is not None:
        event_type = _STATUS_EVENTS.get(new_status, BookingEventType.APPOINTMENT_UPDATED)
        events.dispatch(event_type, _event_for(appointment, event_type))
    return appointment
