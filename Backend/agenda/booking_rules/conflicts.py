"""
Double-booking detection.

A slot is a (company, date, minute) triple. It is taken when any non-cancelled
appointment of the company on that date starts at the same HH:MM.

This is a read-then-decide check: two bookings can pass it at the same time.
The partial unique index on appointments is what actually prevents a double
booking; this check exists so the user gets a friendly answer before the write.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .policy import BACKEND_ERRORS, BookingRules, get_booking_rules, reset_failed_session
from .queries import list_live_appointments_on_date

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = (
    "This time is no longer available. Someone else just booked {time}. "
    "Please choose another time."
)
SLOT_UNVERIFIED_MESSAGE = (
    "We could not confirm that {time} is still free. Please try again in a moment."
)


@dataclass
class ConflictCheck:
    """Result of a slot conflict lookup."""
    conflict: bool
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {"conflict": self.conflict, "details": self.details}


@dataclass
class SlotValidation:
    valid: bool
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "message": self.message}


def to_minute_key(value: time | str) -> str:
    """
    Reduce a wall-clock value to "HH:MM".

    Accepts time objects and "H:MM", "HH:MM" or "HH:MM:SS[.ffffff]" strings.
    """
    if isinstance(value, time):
        return value.strftime("%H:%M")

    text = str(value).strip()
    parts = text.split(":")
    if len(parts) >= 2:
        try:
            return f"{int(parts[0]):02d}:{int(parts[1][:2]):02d}"
        except ValueError:
            pass
    return text[:5]


async def has_conflict(
    session: AsyncSession,
    company_id: uuid.UUID,
    appointment_date: date,
    appointment_time: time | str,
    rules: Optional[BookingRules] = None,
) -> ConflictCheck:
    """
    Check whether the requested time is already occupied.

    Never raises for database failures: with the default open policy the slot
    is reported free, with the closed policy it is reported taken.
    """
    rules = rules or get_booking_rules()
    requested = to_minute_key(appointment_time)

    logger.debug(f"[CONFLICT] Checking {company_id} on {appointment_date} at {requested}")

    try:
        appointments = await list_live_appointments_on_date(session, company_id, appointment_date)
    except BACKEND_ERRORS as e:
        logger.error(
            f"[CONFLICT] Could not load appointments for {company_id} on {appointment_date}: {e}",
            exc_info=True,
        )
        await reset_failed_session(session)
        if rules.fail_open:
            return ConflictCheck(conflict=False)
        return ConflictCheck(conflict=True, details={"reason": "verification_unavailable"})

    for appointment in appointments:
        existing = to_minute_key(appointment.appointment_time)
        if existing == requested:
            logger.info(
                f"[CONFLICT] {appointment_date} {requested} already taken by appointment "
                f"{appointment.id} ({appointment.status.value})"
            )
            return ConflictCheck(
                conflict=True,
                details={
                    "existing_appointment_id": str(appointment.id),
                    "existing_time": existing,
                    "existing_status": appointment.status.value,
                    "existing_client_id": str(appointment.client_id),
                    "created_at": appointment.created_at.isoformat() if appointment.created_at else None,
                },
            )

    logger.debug(f"[CONFLICT] {appointment_date} {requested} is free ({len(appointments)} booked that day)")
    return ConflictCheck(conflict=False)


async def validate_slot(
    session: AsyncSession,
    company_id: uuid.UUID,
    appointment_date: date,
    appointment_time: time | str,
    rules: Optional[BookingRules] = None,
) -> SlotValidation:
    """Final availability check to run right before the appointment is written."""
    check = await has_conflict(session, company_id, appointment_date, appointment_time, rules)
    if not check.conflict:
        return SlotValidation(valid=True)

    display_time = to_minute_key(appointment_time)
    if check.details and check.details.get("reason") == "verification_unavailable":
        return SlotValidation(valid=False, message=SLOT_UNVERIFIED_MESSAGE.format(time=display_time))
    return SlotValidation(valid=False, message=SLOT_TAKEN_MESSAGE.format(time=display_time))
