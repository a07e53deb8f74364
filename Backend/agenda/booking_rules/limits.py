"""
Per-client booking limits.

Two independent caps, both configured per company in company_settings:

- Simultaneous: how many confirmed / in-progress appointments, dated today or
  later in the company calendar, a client may hold at once (default 3).
- Monthly: how many non-cancelled appointments a client may have within the
  current calendar month. Opt-in: unset or zero means unlimited.

Companies whose profile is flagged is_admin are exempt from both.

All checks return a LimitCheck and never raise for database failures; the
BookingRules failure policy decides the answer in that case.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .policy import (
    BACKEND_ERRORS,
    BookingRules,
    get_booking_rules,
    month_bounds,
    reset_failed_session,
)
from .queries import (
    count_active_appointments,
    count_appointments_in_range,
    find_client_by_phone,
    get_company_settings,
    get_profile_admin_flag,
)

logger = logging.getLogger(__name__)

LIMIT_UNVERIFIED_MESSAGE = (
    "We could not verify your booking limits right now. Please try again in a moment."
)


@dataclass
class LimitCheck:
    can_book: bool
    current_count: int
    limit: int
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "can_book": self.can_book,
            "current_count": self.current_count,
            "limit": self.limit,
            "message": self.message,
        }


def _unverified(rules: BookingRules, limit: int) -> LimitCheck:
    if rules.fail_open:
        return LimitCheck(can_book=True, current_count=0, limit=limit)
    return LimitCheck(can_book=False, current_count=0, limit=limit, message=LIMIT_UNVERIFIED_MESSAGE)


async def check_if_company_is_admin(session: AsyncSession, company_id: uuid.UUID) -> bool:
    """
    Resolve the admin flag from the company's profile.

    Missing profile or database failure both resolve to False, so limits apply.
    """
    try:
        is_admin = await get_profile_admin_flag(session, company_id)
    except BACKEND_ERRORS as e:
        logger.error(f"[LIMITS] Could not read admin flag for {company_id}: {e}", exc_info=True)
        await reset_failed_session(session)
        return False
    return bool(is_admin)


async def check_simultaneous_limit(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_phone: str,
    is_admin_company: bool = False,
    rules: Optional[BookingRules] = None,
) -> LimitCheck:
    """Check the client's active appointments against the company's simultaneous cap."""
    if is_admin_company:
        logger.debug(f"[LIMITS] Admin company {company_id}, skipping simultaneous limit")
        return LimitCheck(can_book=True, current_count=0, limit=0)

    rules = rules or get_booking_rules()
    limit = 0

    try:
        settings = await get_company_settings(session, company_id)
        configured = settings.max_simultaneous_appointments if settings else None
        limit = configured or rules.default_max_simultaneous

        client = await find_client_by_phone(session, company_id, client_phone)
        if client is None:
            logger.debug(f"[LIMITS] New client {client_phone} at {company_id}, no active appointments")
            return LimitCheck(can_book=True, current_count=0, limit=limit)

        current_count = await count_active_appointments(
            session, company_id, client.id, rules.local_today()
        )
    except BACKEND_ERRORS as e:
        logger.error(f"[LIMITS] Simultaneous limit check failed for {company_id}: {e}", exc_info=True)
        await reset_failed_session(session)
        return _unverified(rules, limit)

    can_book = current_count < limit
    message = None
    if not can_book:
        message = (
            f"You already have {current_count} active appointment(s). "
            f"The limit is {limit} simultaneous appointment(s)."
        )
        logger.info(f"[LIMITS] Simultaneous limit reached for {client_phone}: {current_count}/{limit}")

    return LimitCheck(can_book=can_book, current_count=current_count, limit=limit, message=message)


async def check_monthly_limit_detailed(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_phone: str,
    is_admin_company: Optional[bool] = None,
    rules: Optional[BookingRules] = None,
) -> LimitCheck:
    """
    Check the client's appointments this month against the company's monthly cap.

    is_admin_company=None resolves the flag from the company profile.
    """
    if is_admin_company is None:
        is_admin_company = await check_if_company_is_admin(session, company_id)
    if is_admin_company:
        logger.debug(f"[LIMITS] Admin company {company_id}, skipping monthly limit")
        return LimitCheck(can_book=True, current_count=0, limit=0)

    rules = rules or get_booking_rules()
    limit = 0

    try:
        settings = await get_company_settings(session, company_id)
        limit = (settings.monthly_appointments_limit if settings else None) or 0
        if limit <= 0:
            return LimitCheck(can_book=True, current_count=0, limit=0)

        client = await find_client_by_phone(session, company_id, client_phone)
        if client is None:
            return LimitCheck(can_book=True, current_count=0, limit=limit)

        start, end = month_bounds(rules.local_today())
        logger.debug(f"[LIMITS] Monthly window for {client_phone}: [{start}, {end})")
        current_count = await count_appointments_in_range(session, company_id, client.id, start, end)
    except BACKEND_ERRORS as e:
        logger.error(f"[LIMITS] Monthly limit check failed for {company_id}: {e}", exc_info=True)
        await reset_failed_session(session)
        return _unverified(rules, limit)

    can_book = current_count < limit
    message = None
    if not can_book:
        message = f"You have reached the limit of {limit} appointment(s) this month."
        logger.info(f"[LIMITS] Monthly limit reached for {client_phone}: {current_count}/{limit}")

    return LimitCheck(can_book=can_book, current_count=current_count, limit=limit, message=message)


async def check_monthly_limit(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_phone: str,
    is_admin_company: Optional[bool] = None,
    rules: Optional[BookingRules] = None,
) -> bool:
    check = await check_monthly_limit_detailed(
        session, company_id, client_phone, is_admin_company=is_admin_company, rules=rules
    )
    return check.can_book
