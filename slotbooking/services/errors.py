"""
Booking errors surfaced to callers.

Every error carries one of the canonical codes below. Routers turn them into
HTTP responses through a single exception handler (see main.py).
"""


class ErrorCode:
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    INTERNAL = "INTERNAL"


HTTP_STATUS_BY_CODE = {
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.FAILED_PRECONDITION: 412,
    ErrorCode.RESOURCE_EXHAUSTED: 429,
    ErrorCode.INTERNAL: 500,
}


class UnavailableReason:
    SLOT_BLOCKED = "SLOT_BLOCKED"
    OUT_OF_SCHEDULE = "OUT_OF_SCHEDULE"
    SLOT_IN_PAST = "SLOT_IN_PAST"


SLOT_TAKEN = "SLOT_TAKEN"


class BookingError(Exception):
    """Base class for every error the booking core reports to callers."""

    code = ErrorCode.INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)


class InvalidArgument(BookingError):
    code = ErrorCode.INVALID_ARGUMENT


class Unauthenticated(BookingError):
    code = ErrorCode.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class PermissionDenied(BookingError):
    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, message: str = "Not authorized for this company"):
        super().__init__(message)


class NotFound(BookingError):
    code = ErrorCode.NOT_FOUND


class FailedPrecondition(BookingError):
    """The slot cannot be booked: blocked, outside the schedule or in the past."""

    code = ErrorCode.FAILED_PRECONDITION

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SlotTaken(BookingError):
    """Another appointment already holds the lock for this slot."""

    code = ErrorCode.ALREADY_EXISTS

    def __init__(self, lock_id: str | None = None):
        self.lock_id = lock_id
        super().__init__(SLOT_TAKEN)


class ResourceExhausted(BookingError):
    code = ErrorCode.RESOURCE_EXHAUSTED

    def __init__(self, message: str = "Too many requests", retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class InternalError(BookingError):
    code = ErrorCode.INTERNAL
