"""
Standardized API Response Module

Provides consistent error formatting across all API endpoints.

RESPONSE FORMAT:
    Error:
        {
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }

ERROR CODES:
    - INVALID_INPUT: Request data failed validation
    - NOT_FOUND: Shop, service, staff or appointment not found
    - CONFLICT: Slot taken or review already stored
    - INVALID_TRANSITION: Appointment status change not allowed
    - AUTHENTICATION_REQUIRED: No caller forwarded by the gateway
    - AUTHORIZATION_DENIED: Caller role may not perform the action
    - INVALID_TOKEN: Review link invalid, expired or already used
    - ALREADY_REVIEWED: Appointment already has a review
    - RATE_LIMITED: Too many review-link requests from one client
    - INTERNAL_ERROR: Datastore failure
"""

from typing import Any, Optional

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .results import ErrorKind, ServiceError


class ErrorDetail(BaseModel):
    """Structured error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"

    # Authorization errors (403)
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation errors (400)
    INVALID_INPUT = "INVALID_INPUT"

    # Conflict errors (409)
    CONFLICT = "CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


_ERROR_MAPPING: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.INVALID_INPUT: (status.HTTP_400_BAD_REQUEST, ErrorCodes.INVALID_INPUT),
    ErrorKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, ErrorCodes.NOT_FOUND),
    ErrorKind.CONFLICT: (status.HTTP_409_CONFLICT, ErrorCodes.CONFLICT),
    ErrorKind.INVALID_TRANSITION: (status.HTTP_409_CONFLICT, ErrorCodes.INVALID_TRANSITION),
    ErrorKind.UNAUTHORIZED: (status.HTTP_403_FORBIDDEN, ErrorCodes.AUTHORIZATION_DENIED),
    # Both token failures look identical on the wire.
    ErrorKind.TOKEN_INVALID: (status.HTTP_404_NOT_FOUND, ErrorCodes.INVALID_TOKEN),
    ErrorKind.TOKEN_ALREADY_USED: (status.HTTP_404_NOT_FOUND, ErrorCodes.INVALID_TOKEN),
    ErrorKind.ALREADY_REVIEWED: (status.HTTP_409_CONFLICT, ErrorCodes.ALREADY_REVIEWED),
    ErrorKind.PERSISTENCE_FAILURE: (status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCodes.INTERNAL_ERROR),
}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """
    Create a standardized error response dict.

    Use this for simple error responses.
    """
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


def service_error_response(error: ServiceError) -> JSONResponse:
    """Render a ServiceError with its HTTP status and the standard error body."""
    status_code, code = _ERROR_MAPPING[error.kind]
    return JSONResponse(status_code=status_code, content=error_response(code, error.message))


_HTTP_STATUS_CODES: dict[int, str] = {
    status.HTTP_400_BAD_REQUEST: ErrorCodes.INVALID_INPUT,
    status.HTTP_401_UNAUTHORIZED: ErrorCodes.AUTHENTICATION_REQUIRED,
    status.HTTP_403_FORBIDDEN: ErrorCodes.AUTHORIZATION_DENIED,
    status.HTTP_404_NOT_FOUND: ErrorCodes.NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCodes.CONFLICT,
    status.HTTP_429_TOO_MANY_REQUESTS: ErrorCodes.RATE_LIMITED,
}


def code_for_status(status_code: int) -> str:
    """Error code for an HTTPException raised outside the core operations."""
    return _HTTP_STATUS_CODES.get(status_code, ErrorCodes.INTERNAL_ERROR)
