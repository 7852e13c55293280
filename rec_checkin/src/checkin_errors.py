"""Error taxonomy shared by the cache, queue, verification and HTTP layers."""

from enum import Enum


class CheckinError(Exception):
    """Base class for every error raised by the check-in core."""


class InvalidInput(CheckinError, ValueError):
    pass


class MissingFields(InvalidInput):
    pass


class ConfigurationError(CheckinError):
    pass


class NoSegmentsConfigured(ConfigurationError):
    def __init__(self, message: str = "No membership segments configured"):
        super().__init__(message)


class StorageError(CheckinError):
    pass


class RefreshInProgress(CheckinError):
    def __init__(self, message: str = "A membership refresh is already in progress"):
        super().__init__(message)


class SegmentExists(CheckinError):
    pass


class SegmentNotFound(CheckinError):
    pass


class CommerceError(CheckinError):
    """Failure reported by the external commerce system."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class NotFound(CommerceError):
    def __init__(self, message: str = "Not found", *, status: int | None = 404):
        super().__init__(message, status=status)


class RateLimited(CommerceError):
    def __init__(self, message: str = "Rate limit exceeded", *, status: int | None = 429):
        super().__init__(message, status=status)


class PermissionDenied(CommerceError):
    def __init__(self, message: str = "Forbidden", *, status: int | None = 403):
        super().__init__(message, status=status)


class CommerceNetworkError(CommerceError):
    def __init__(self, message: str = "Network error", *, status: int | None = None):
        super().__init__(message, status=status)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limit"
    PERMISSION = "permission"
    NETWORK = "network"
    OTHER = "other"


def classify_error(exc: BaseException) -> ErrorKind:
    # Typed errors win; status codes and message text are the fallback for
    # errors raised by code that does not use the taxonomy.
    if isinstance(exc, PermissionDenied):
        return ErrorKind.PERMISSION
    if isinstance(exc, RateLimited):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, NotFound):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, CommerceNetworkError):
        return ErrorKind.NETWORK

    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if status in (401, 403):
        return ErrorKind.PERMISSION
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 404:
        return ErrorKind.NOT_FOUND

    message = str(exc).lower()
    if "403" in message or "forbidden" in message or "unauthorized" in message:
        return ErrorKind.PERMISSION
    if "429" in message or "rate limit" in message:
        return ErrorKind.RATE_LIMITED
    if "not found" in message:
        return ErrorKind.NOT_FOUND
    if "network" in message or "fetch" in message or "timed out" in message:
        return ErrorKind.NETWORK
    return ErrorKind.OTHER
