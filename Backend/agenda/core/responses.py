"""
Standardized API Response Module

Provides consistent response formatting for the booking endpoints.

RESPONSE FORMAT:
    Success:
        {
            "data": <response data>,
            "status": "success"
        }

    Error:
        {
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }

Business-rule rejections (slot taken, limit reached) use the error envelope with
a message that is already phrased for the end user and can be shown verbatim.
"""

from typing import Any, Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Not found errors (404)
    APPOINTMENT_NOT_FOUND = "APPOINTMENT_NOT_FOUND"

    # Validation errors (422)
    INVALID_PHONE = "INVALID_PHONE"

    # Conflict errors (409)
    SLOT_TAKEN = "SLOT_TAKEN"
    SIMULTANEOUS_LIMIT_REACHED = "SIMULTANEOUS_LIMIT_REACHED"
    MONTHLY_LIMIT_REACHED = "MONTHLY_LIMIT_REACHED"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

    # Database unavailable (503)
    DATABASE_ERROR = "DATABASE_ERROR"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any) -> dict:
    """Create a standardized success response dict."""
    return {"data": data, "status": "success"}


def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Create a standardized error response dict."""
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
