"""
Result values returned by the scheduling, booking and review operations.

Operations never raise for expected outcomes (bad input, lost races, invalid
tokens). They return a Result carrying either a value or a ServiceError whose
kind is one of ErrorKind; transports map the kind to their own framing.

Usage:
    result = await book_appointment(session, request, now=now)
    if not result.ok:
        return service_error_response(result.error)
    confirmation = result.value
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import ValidationError

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    UNAUTHORIZED = "unauthorized"
    TOKEN_INVALID = "token_invalid"
    TOKEN_ALREADY_USED = "token_already_used"
    ALREADY_REVIEWED = "already_reviewed"
    PERSISTENCE_FAILURE = "persistence_failure"


# Token failures share one message so callers cannot tell a forged token
# from an unknown, expired or spent one.
GENERIC_TOKEN_MESSAGE = "This review link is invalid or has expired."
GENERIC_PERSISTENCE_MESSAGE = "The request could not be completed. Please try again later."


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=ServiceError(kind=kind, message=message))


def token_failure(kind: ErrorKind = ErrorKind.TOKEN_INVALID) -> Result:
    return Result.failure(kind, GENERIC_TOKEN_MESSAGE)


def persistence_failure() -> Result:
    return Result.failure(ErrorKind.PERSISTENCE_FAILURE, GENERIC_PERSISTENCE_MESSAGE)


def invalid_input(exc: ValidationError, fallback: str) -> Result:
    """Collapse a pydantic ValidationError into one INVALID_INPUT message."""
    messages = [err["msg"].removeprefix("Value error, ") for err in exc.errors()]
    return Result.failure(ErrorKind.INVALID_INPUT, "; ".join(messages) or fallback)
