"""
Booking integrity rules for the public booking page and the dashboard.

Modules:
    policy: BookingRules (timezone, failure policy, clock) and month boundaries
    queries: company-scoped queries the checks rely on
    conflicts: double-booking detection for a (company, date, time) slot
    limits: simultaneous and monthly per-client caps, admin bypass
    validator: combined pre-commit decision

The checks are a fast pre-filter for the user. The unique index on live
appointment slots is what guarantees correctness under concurrent bookings.
"""

from .policy import (
    BACKEND_ERRORS,
    BookingRules,
    FailurePolicy,
    get_booking_rules,
    month_bounds,
)
from .conflicts import (
    ConflictCheck,
    SlotValidation,
    has_conflict,
    to_minute_key,
    validate_slot,
)
from .limits import (
    LimitCheck,
    check_if_company_is_admin,
    check_monthly_limit,
    check_monthly_limit_detailed,
    check_simultaneous_limit,
)
from .validator import (
    BookingLimits,
    BookingRequestValidation,
    validate_booking_limits,
    validate_booking_request,
)

__all__ = [
    # Policy
    "BACKEND_ERRORS",
    "BookingRules",
    "FailurePolicy",
    "get_booking_rules",
    "month_bounds",
    # Conflicts
    "ConflictCheck",
    "SlotValidation",
    "has_conflict",
    "to_minute_key",
    "validate_slot",
    # Limits
    "LimitCheck",
    "check_if_company_is_admin",
    "check_monthly_limit",
    "check_monthly_limit_detailed",
    "check_simultaneous_limit",
    # Validator
    "BookingLimits",
    "BookingRequestValidation",
    "validate_booking_limits",
    "validate_booking_request",
]
