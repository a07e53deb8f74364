"""
Booking validation entry points.

validate_booking_limits() combines the admin bypass with the simultaneous and
monthly caps. validate_booking_request() adds the slot conflict check and is
meant to run immediately before the appointment is written, because what the
booking page displayed may already be stale.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, time
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .conflicts import SlotValidation, validate_slot
from .limits import (
    LimitCheck,
    check_if_company_is_admin,
    check_monthly_limit_detailed,
    check_simultaneous_limit,
)
from .policy import BookingRules, get_booking_rules

logger = logging.getLogger(__name__)


@dataclass
class BookingLimits:
    can_book: bool
    is_admin: bool
    simultaneous_limit: LimitCheck
    monthly_limit: LimitCheck

    def to_dict(self) -> dict:
        return {
            "can_book": self.can_book,
            "is_admin": self.is_admin,
            "simultaneous_limit": self.simultaneous_limit.to_dict(),
            "monthly_limit": self.monthly_limit.to_dict(),
        }


@dataclass
class BookingRequestValidation:
    is_valid: bool
    slot: SlotValidation
    limits: BookingLimits
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "slot": self.slot.to_dict(),
            "limits": self.limits.to_dict(),
        }


async def validate_booking_limits(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_phone: str,
    rules: Optional[BookingRules] = None,
) -> BookingLimits:
    rules = rules or get_booking_rules()

    is_admin = await check_if_company_is_admin(session, company_id)
    if is_admin:
        logger.debug(f"[LIMITS] Admin company {company_id}, all limits bypassed")
        return BookingLimits(
            can_book=True,
            is_admin=True,
            simultaneous_limit=LimitCheck(can_book=True, current_count=0, limit=0),
            monthly_limit=LimitCheck(can_book=True, current_count=0, limit=0),
        )

    # Sequential on purpose: an AsyncSession cannot run two statements at once.
    simultaneous = await check_simultaneous_limit(
        session, company_id, client_phone, is_admin_company=False, rules=rules
    )
    monthly = await check_monthly_limit_detailed(
        session, company_id, client_phone, is_admin_company=False, rules=rules
    )

    return BookingLimits(
        can_book=simultaneous.can_book and monthly.can_book,
        is_admin=False,
        simultaneous_limit=simultaneous,
        monthly_limit=monthly,
    )


async def validate_booking_request(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_phone: str,
    appointment_date: date,
    appointment_time: time | str,
    rules: Optional[BookingRules] = None,
) -> BookingRequestValidation:
    """Slot availability plus client limits, as one pre-commit decision."""
    rules = rules or get_booking_rules()

    slot = await validate_slot(session, company_id, appointment_date, appointment_time, rules)
    limits = await validate_booking_limits(session, company_id, client_phone, rules)

    errors = []
    if not slot.valid and slot.message:
        errors.append(slot.message)
    for check in (limits.simultaneous_limit, limits.monthly_limit):
        if not check.can_book and check.message:
            errors.append(check.message)

    is_valid = slot.valid and limits.can_book
    if not is_valid:
        logger.info(
            f"[VALIDATION] Booking rejected for {client_phone} at {company_id} "
            f"{appointment_date} {appointment_time}: {errors}"
        )

    return BookingRequestValidation(is_valid=is_valid, slot=slot, limits=limits, errors=errors)
