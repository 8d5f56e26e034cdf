"""
Booking error taxonomy.

Validation and conflict problems are normally returned as typed admission
results; the exception forms exist for the HTTP layer and for callers that
prefer to raise. Configuration and transient persistence errors always raise.
"""
from typing import List, Optional


class BookingError(Exception):
    """Base class for booking service errors."""


class ValidationError(BookingError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ConflictError(BookingError):
    def __init__(self, message: str, conflicting_ids: Optional[List] = None):
        super().__init__(message)
        self.message = message
        self.conflicting_ids = list(conflicting_ids or [])


class ConfigurationError(BookingError):
    """Late-fee band table (or other configuration) cannot answer the request."""


class TransientPersistenceError(BookingError):
    """Database unavailable or transaction aborted; safe to retry."""


class NotFoundError(BookingError):
    pass


class PermissionDeniedError(BookingError):
    pass
