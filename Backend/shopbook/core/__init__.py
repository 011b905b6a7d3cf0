"""
Core module - configuration, database, caller context, results and response formatting.
"""
from .config import get_settings, Settings
from .db import get_session, Base, build_engine, get_engine, get_sessionmaker
from .request_context import (
    CallerContext,
    CallerRole,
    resolve_caller_context,
    get_caller_context,
    get_optional_caller_context,
)
from .results import (
    ErrorKind,
    Result,
    ServiceError,
    GENERIC_TOKEN_MESSAGE,
)
from .responses import (
    ErrorDetail,
    ErrorCodes,
    error_response,
    service_error_response,
)

__all__ = [
    # Config
    "get_settings",
    "Settings",
    # Database
    "get_session",
    "Base",
    "build_engine",
    "get_engine",
    "get_sessionmaker",
    # Caller Context
    "CallerContext",
    "CallerRole",
    "resolve_caller_context",
    "get_caller_context",
    "get_optional_caller_context",
    # Results
    "ErrorKind",
    "Result",
    "ServiceError",
    "GENERIC_TOKEN_MESSAGE",
    # Responses
    "ErrorDetail",
    "ErrorCodes",
    "error_response",
    "service_error_response",
]
