"""
Public Booking API.

Endpoints used by the public booking page (reached through the company slug)
and the dashboard to check availability and limits and to book.

- GET   /public/companies/{company_id}/booking-limits?phone=...
- POST  /public/companies/{company_id}/slots/validate
- POST  /public/companies/{company_id}/appointments
- PATCH /public/companies/{company_id}/appointments/{appointment_id}/status

The check endpoints always answer 200 with a structured result: a database
hiccup during a check is absorbed by the failure policy, and a rejection is a
normal outcome carried in the payload.
"""

import logging
import uuid
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .appointments import (
    AppointmentNotFound,
    BookingRejected,
    BookingRequest,
    InvalidStatusTransition,
    SlotUnavailable,
    create_appointment,
    transition_appointment_status,
)
from .booking_rules import (
    BACKEND_ERRORS,
    BookingRules,
    get_booking_rules,
    to_minute_key,
    validate_booking_limits,
    validate_slot,
)
from .clients import InvalidPhoneNumber
from .core.db import get_session
from .core.responses import ErrorCodes, error_response, success_response
from .models import Appointment, AppointmentStatus
from .phone_identity import format_phone_for_display, is_valid_brazilian_phone
from .realtime import BookingEventBus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public", tags=["public-booking"])

_REJECTION_CODES = {
    "slot_taken": ErrorCodes.SLOT_TAKEN,
    "simultaneous_limit": ErrorCodes.SIMULTANEOUS_LIMIT_REACHED,
    "monthly_limit": ErrorCodes.MONTHLY_LIMIT_REACHED,
}

DATABASE_UNAVAILABLE_MESSAGE = "Bookings are unavailable right now. Please try again in a moment."


def _invalid_phone(phone: str) -> HTTPException:
    error = InvalidPhoneNumber(phone)
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=error_response(ErrorCodes.INVALID_PHONE, str(error), details={"phone": error.phone}),
    )


def _database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=error_response(ErrorCodes.DATABASE_ERROR, DATABASE_UNAVAILABLE_MESSAGE),
    )


# ────────────────────────────────────────────────────────────────
# Dependencies
# ────────────────────────────────────────────────────────────────

def get_booking_events(request: Request) -> BookingEventBus:
    return request.app.state.booking_events


def get_rules() -> BookingRules:
    return get_booking_rules()


# ────────────────────────────────────────────────────────────────
# Request / Response Models
# ────────────────────────────────────────────────────────────────

class SlotRequest(BaseModel):
    appointment_date: date
    appointment_time: time

    @field_validator("appointment_time")
    @classmethod
    def truncate_to_minute(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)


class AppointmentCreateRequest(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=255)
    client_phone: str = Field(..., min_length=8, max_length=32)
    client_email: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None
    service_id: Optional[uuid.UUID] = None
    appointment_date: date
    appointment_time: time
    duration: int = Field(default=30, gt=0, le=24 * 60)

    @field_validator("appointment_time")
    @classmethod
    def truncate_to_minute(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


def serialize_appointment(appointment: Appointment) -> dict:
    return {
        "id": str(appointment.id),
        "company_id": str(appointment.company_id),
        "client_id": str(appointment.client_id),
        "service_id": str(appointment.service_id) if appointment.service_id else None,
        "appointment_date": appointment.appointment_date.isoformat(),
        "appointment_time": to_minute_key(appointment.appointment_time),
        "status": appointment.status.value,
        "duration": appointment.duration,
    }


# ────────────────────────────────────────────────────────────────
# Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("/companies/{company_id}/booking-limits")
async def get_booking_limits(
    company_id: uuid.UUID,
    phone: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_session),
    rules: BookingRules = Depends(get_rules),
):
    limits = await validate_booking_limits(session, company_id, phone, rules)
    return success_response(limits.to_dict())


@router.post("/companies/{company_id}/slots/validate")
async def post_validate_slot(
    company_id: uuid.UUID,
    payload: SlotRequest,
    session: AsyncSession = Depends(get_session),
    rules: BookingRules = Depends(get_rules),
):
    result = await validate_slot(
        session, company_id, payload.appointment_date, payload.appointment_time, rules
    )
    return success_response(result.to_dict())


@router.post("/companies/{company_id}/appointments", status_code=status.HTTP_201_CREATED)
async def post_appointment(
    company_id: uuid.UUID,
    payload: AppointmentCreateRequest,
    session: AsyncSession = Depends(get_session),
    rules: BookingRules = Depends(get_rules),
    events: BookingEventBus = Depends(get_booking_events),
):
    if not is_valid_brazilian_phone(payload.client_phone):
        raise _invalid_phone(payload.client_phone)

    booking = BookingRequest(
        company_id=company_id,
        client_name=payload.client_name,
        client_phone=payload.client_phone,
        client_email=payload.client_email,
        notes=payload.notes,
        service_id=payload.service_id,
        appointment_date=payload.appointment_date,
        appointment_time=payload.appointment_time,
        duration=payload.duration,
    )

    try:
        appointment = await create_appointment(session, booking, rules=rules, events=events)
    except BookingRejected as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response(
                _REJECTION_CODES[e.reason],
                e.messages[0] if e.messages else str(e),
                details=e.validation.to_dict(),
            ),
        )
    except SlotUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response(ErrorCodes.SLOT_TAKEN, e.message),
        )
    except InvalidPhoneNumber as e:
        raise _invalid_phone(e.phone)
    except BACKEND_ERRORS as e:
        logger.error(f"[BOOKING] Could not save booking for {company_id}: {e}", exc_info=True)
        raise _database_unavailable()

    data = serialize_appointment(appointment)
    data["client_phone"] = format_phone_for_display(payload.client_phone)
    return success_response(data)


@router.patch("/companies/{company_id}/appointments/{appointment_id}/status")
async def patch_appointment_status(
    company_id: uuid.UUID,
    appointment_id: uuid.UUID,
    payload: StatusUpdateRequest,
    session: AsyncSession = Depends(get_session),
    events: BookingEventBus = Depends(get_booking_events),
):
    try:
        appointment = await transition_appointment_status(
            session, company_id, appointment_id, payload.status, events=events
        )
    except AppointmentNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response(ErrorCodes.APPOINTMENT_NOT_FOUND, str(e)),
        )
    except InvalidStatusTransition as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response(
                ErrorCodes.INVALID_STATUS_TRANSITION,
                str(e),
                details={"current": e.current.value, "requested": e.requested.value},
            ),
        )
    except BACKEND_ERRORS as e:
        logger.error(f"[BOOKING] Could not update appointment {appointment_id}: {e}", exc_info=True)
        raise _database_unavailable()

    return success_response(serialize_appointment(appointment))
