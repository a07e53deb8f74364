"""
Shared configuration for the booking checks.

The checks never read the wall clock or the settings on their own: everything
they depend on (company timezone, failure policy, default caps, current time)
travels in a BookingRules value, built from settings by get_booking_rules().
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings

logger = logging.getLogger(__name__)


# Errors that mean "the database could not answer", as opposed to a bug.
BACKEND_ERRORS = (SQLAlchemyError, OSError)

DEFAULT_MAX_SIMULTANEOUS_APPOINTMENTS = 3


class FailurePolicy(str, Enum):
    """What a check answers when it cannot reach the database."""

    OPEN = "open"      # allow the booking
    CLOSED = "closed"  # block the booking


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BookingRules:
    timezone: str = "America/Sao_Paulo"
    failure_policy: FailurePolicy = FailurePolicy.OPEN
    default_max_simultaneous: int = DEFAULT_MAX_SIMULTANEOUS_APPOINTMENTS
    clock: Callable[[], datetime] = field(default=_utc_now, compare=False)

    def __post_init__(self):
        # Fail fast on a bad zone name instead of on the first booking
        ZoneInfo(self.timezone)
        if self.default_max_simultaneous <= 0:
            raise ValueError(
                f"default_max_simultaneous must be positive, got {self.default_max_simultaneous}"
            )

    @property
    def fail_open(self) -> bool:
        return self.failure_policy == FailurePolicy.OPEN

    def local_now(self) -> datetime:
        """Current instant in the company's timezone. Naive clock values are taken as local."""
        now = self.clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=ZoneInfo(self.timezone))
        return now.astimezone(ZoneInfo(self.timezone))

    def local_today(self) -> date:
        return self.local_now().date()


def month_bounds(day: date) -> tuple[date, date]:
    """Return [first day of the month, first day of the next month)."""
    start = day.replace(day=1)
    if start.month == 12:
        return start, date(start.year + 1, 1, 1)
    return start, date(start.year, start.month + 1, 1)


def get_booking_rules() -> BookingRules:
    settings = get_settings()
    return BookingRules(
        timezone=settings.booking_timezone,
        failure_policy=FailurePolicy(settings.booking_failure_policy.strip().lower()),
        default_max_simultaneous=settings.default_max_simultaneous_appointments,
    )


async def reset_failed_session(session: AsyncSession) -> None:
    """
    Roll back after a failed check so the session can run the next query.

    PostgreSQL refuses every statement in a transaction after an error until
    it is rolled back.
    """
    try:
        await session.rollback()
    except BACKEND_ERRORS as e:
        logger.warning(f"[BOOKING] Rollback after failed check also failed: {e}")
