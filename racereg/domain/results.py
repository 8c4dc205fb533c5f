from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Literal, TypeVar, Union

T = TypeVar("T")


class ErrorCode(str, Enum):
    # input validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_HEADERS = "INVALID_HEADERS"
    NO_ROWS = "NO_ROWS"
    TOO_MANY_ROWS = "TOO_MANY_ROWS"
    INVALID_FILE = "INVALID_FILE"
    # authorization
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    # lifecycle
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    INVALID_STATE = "INVALID_STATE"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    REGISTRATION_EXPIRED = "REGISTRATION_EXPIRED"
    # capacity
    SOLD_OUT = "SOLD_OUT"
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    # scheduling
    NOT_PUBLISHED = "NOT_PUBLISHED"
    EVENT_NOT_PUBLISHED = "EVENT_NOT_PUBLISHED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    REGISTRATION_PAUSED = "REGISTRATION_PAUSED"
    REGISTRATION_NOT_OPEN = "REGISTRATION_NOT_OPEN"
    REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
    # completeness
    MISSING_REGISTRANT = "MISSING_REGISTRANT"
    MISSING_WAIVER = "MISSING_WAIVER"
    MISSING_REQUIRED_ANSWER = "MISSING_REQUIRED_ANSWER"
    # invites
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    DOB_MISMATCH = "DOB_MISMATCH"
    DOB_REQUIRED = "DOB_REQUIRED"
    INVITE_EXPIRED = "INVITE_EXPIRED"
    INVITE_CANCELLED = "INVITE_CANCELLED"
    INVITE_INVALID = "INVITE_INVALID"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    HAS_ACTIVE_INVITE = "HAS_ACTIVE_INVITE"
    RATE_LIMITED = "RATE_LIMITED"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    # data integrity
    INVALID_ROW = "INVALID_ROW"


class ActionError(Exception):
    """A recoverable domain failure; converted to `Err` at the operation boundary."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_result(self) -> "Err":
        return Err(error=self.message, code=self.code)


@dataclass(frozen=True)
class Ok(Generic[T]):
    data: T
    ok: Literal[True] = True

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "data": self.data}


@dataclass(frozen=True)
class Err:
    error: str
    code: ErrorCode
    ok: Literal[False] = False

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error, "code": self.code.value}


ActionResult = Union[Ok[T], Err]
