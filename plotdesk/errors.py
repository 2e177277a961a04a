"""
Domain errors raised by the service layer.

Every error carries a stable machine code and the HTTP status it maps to, so
route handlers never translate errors by hand. The application registers a
single handler (see ``main.create_app``) that renders them as
``{"detail": <message>, "code": <code>}``.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_DATE = "INVALID_DATE"
    PAST_DATE = "PAST_DATE"
    NOT_FOUND = "NOT_FOUND"
    PLOT_UNAVAILABLE = "PLOT_UNAVAILABLE"
    DUPLICATE_BOOKING = "DUPLICATE_BOOKING"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.code.value}
        if self.details:
            body["details"] = self.details
        return body


class MissingField(AppError):
    code = ErrorCode.MISSING_FIELD
    status_code = 400
    default_message = "Required field is missing"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"{field} is required", {"field": field})


class InvalidFormat(AppError):
    code = ErrorCode.INVALID_FORMAT
    status_code = 400
    default_message = "Invalid format"


class InvalidDate(AppError):
    code = ErrorCode.INVALID_DATE
    status_code = 400
    default_message = "Invalid date format"


class PastDate(AppError):
    code = ErrorCode.PAST_DATE
    status_code = 400
    default_message = "Date cannot be in the past"


class NotFound(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = 404
    default_message = "Not found"


class PlotUnavailable(AppError):
    code = ErrorCode.PLOT_UNAVAILABLE
    status_code = 400
    default_message = "Plot is not available for visits"


class DuplicateBooking(AppError):
    code = ErrorCode.DUPLICATE_BOOKING
    status_code = 409
    default_message = "You already have an open visit request for this plot"


class InvalidStateTransition(AppError):
    code = ErrorCode.INVALID_STATE_TRANSITION
    status_code = 400
    default_message = "Invalid state transition"

    def __init__(self, current: str, action: str):
        super().__init__(
            f"Cannot {action} a request in {current} state",
            {"current_status": current, "action": action},
        )


class Forbidden(AppError):
    code = ErrorCode.FORBIDDEN
    status_code = 403
    default_message = "Forbidden"


class Conflict(AppError):
    code = ErrorCode.CONFLICT
    status_code = 409
    default_message = "The record was modified concurrently"


class ServiceUnavailable(AppError):
    code = ErrorCode.SERVICE_UNAVAILABLE
    status_code = 503
    default_message = "Unable to connect to the database. Please try again in a few moments."


class InternalError(AppError):
    code = ErrorCode.INTERNAL_ERROR
    status_code = 500
    default_message = "Internal error"
