"""
Core module - configuration, database and response formatting.
"""
from .config import Settings, get_settings
from .db import get_session, Base, engine, AsyncSessionLocal
from .responses import (
    ErrorCodes,
    success_response,
    error_response,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    # Responses
    "ErrorCodes",
    "success_response",
    "error_response",
]
