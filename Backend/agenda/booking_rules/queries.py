"""
Company-scoped queries used by the booking checks.

Every query here filters on company_id. Callers handle database errors;
these helpers let SQLAlchemy exceptions propagate untouched.
"""

import uuid
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    Client,
    CompanySettings,
    Profile,
)
from ..phone_identity import digits_only, national_number, normalize_phone


async def get_company_settings(
    session: AsyncSession,
    company_id: uuid.UUID,
) -> Optional[CompanySettings]:
    result = await session.execute(
        select(CompanySettings).where(CompanySettings.company_id == company_id)
    )
    return result.scalar_one_or_none()


async def get_profile_admin_flag(
    session: AsyncSession,
    company_id: uuid.UUID,
) -> Optional[bool]:
    """Return the profile's is_admin flag, or None if there is no profile."""
    result = await session.execute(select(Profile.is_admin).where(Profile.id == company_id))
    return result.scalar_one_or_none()


async def find_client_by_phone(
    session: AsyncSession,
    company_id: uuid.UUID,
    phone: str,
) -> Optional[Client]:
    """
    Resolve a client by phone within a company.

    Matches the canonical key and the shorter keys older rows were written
    with (bare digits, or area code + number without the country code). The
    raw phone is also accepted for rows whose key was never backfilled. The
    oldest matching client wins.
    """
    normalized = normalize_phone(phone)
    if not normalized:
        return None

    keys = sorted({normalized, national_number(phone), digits_only(phone)})
    result = await session.execute(
        select(Client)
        .where(
            Client.company_id == company_id,
            or_(Client.normalized_phone.in_(keys), Client.phone == phone),
        )
        .order_by(Client.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_live_appointments_on_date(
    session: AsyncSession,
    company_id: uuid.UUID,
    appointment_date: date,
) -> Sequence[Appointment]:
    """All non-cancelled appointments of a company on one day."""
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.company_id == company_id,
            Appointment.appointment_date == appointment_date,
            Appointment.status != AppointmentStatus.CANCELLED,
        )
        .order_by(Appointment.appointment_time.asc())
    )
    return result.scalars().all()


async def count_active_appointments(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_id: uuid.UUID,
    from_date: date,
) -> int:
    """Confirmed or in-progress appointments dated from_date or later."""
    result = await session.execute(
        select(func.count())
        .select_from(Appointment)
        .where(
            Appointment.company_id == company_id,
            Appointment.client_id == client_id,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.appointment_date >= from_date,
        )
    )
    return result.scalar_one()


async def count_appointments_in_range(
    session: AsyncSession,
    company_id: uuid.UUID,
    client_id: uuid.UUID,
    start: date,
    end: date,
) -> int:
    """Non-cancelled appointments with start <= appointment_date < end."""
    result = await session.execute(
        select(func.count())
        .select_from(Appointment)
        .where(
            Appointment.company_id == company_id,
            Appointment.client_id == client_id,
            Appointment.appointment_date >= start,
            Appointment.appointment_date < end,
            Appointment.status != AppointmentStatus.CANCELLED,
        )
    )
    return result.scalar_one()
