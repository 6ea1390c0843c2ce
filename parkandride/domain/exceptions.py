# File: parkandride/domain/exceptions.py
"""
Error taxonomy for the booking engine

Every failure reported to callers carries one of four error kinds. None of
them is retried internally: a capacity conflict is real from the engine's
point of view, retry policy belongs to the caller.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Distinguishable failure kinds"""
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"


class ParkAndRideError(Exception):
    """Base exception for booking engine errors"""

    kind: ErrorKind = ErrorKind.INVALID_STATE

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ResourceNotFoundError(ParkAndRideError):
    """User, lot, booking, spot or ride is absent (or not owned by the caller)"""
    kind = ErrorKind.NOT_FOUND


class BookingConflictError(ParkAndRideError):
    """Lot capacity is exhausted for the requested window"""
    kind = ErrorKind.CONFLICT


class InvalidStateError(ParkAndRideError):
    """Transition is not legal from the current status"""
    kind = ErrorKind.INVALID_STATE


class InvalidCredentialError(ParkAndRideError):
    """QR payload or PIN does not match a booking"""
    kind = ErrorKind.INVALID_CREDENTIAL


class CredentialIssueError(Exception):
    """Credential payload could not be produced (non-fatal for booking creation)"""
    pass
