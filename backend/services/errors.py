"""
Fulfilment error taxonomy.

Business-rule violations subclass ServiceError (itself a ValueError, which is
what the services historically raised) and carry the HTTP status the API layer
answers with. Infrastructure failures are PersistenceError and are kept apart
so callers never mistake a database outage for a rule violation.
"""
from typing import Iterable, List, Optional


class ServiceError(ValueError):
    status_code = 400
    error_code = "SERVICE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error_code": self.error_code}


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class AuthorizationError(ServiceError):
    status_code = 403
    error_code = "FORBIDDEN"


class ValidationError(ServiceError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidTransitionError(ServiceError):
    """Requested status change is not an edge of the transition table."""
    status_code = 409
    error_code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, allowed: Optional[Iterable[str]] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.allowed: List[str] = list(allowed or [])
        super().__init__(
            f"Cannot change status from '{from_status}' to '{to_status}'. "
            f"Allowed: {self.allowed}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_status"] = self.from_status
        data["allowed_transitions"] = self.allowed
        return data


class WindowExpiredError(ServiceError):
    status_code = 409
    error_code = "MODIFICATION_WINDOW_EXPIRED"


class TerminalStateError(ServiceError):
    status_code = 409
    error_code = "TERMINAL_STATE"


class NoHistoryError(ServiceError):
    status_code = 409
    error_code = "NO_PREVIOUS_STATUS"


class AlreadyInterestedError(ServiceError):
    status_code = 409
    error_code = "ALREADY_INTERESTED"


class AlreadyAcceptedError(ServiceError):
    status_code = 409
    error_code = "ALREADY_ACCEPTED"


class AlreadyAssignedError(ServiceError):
    status_code = 409
    error_code = "ALREADY_ASSIGNED"


class InsufficientBalanceError(ServiceError):
    status_code = 400
    error_code = "INSUFFICIENT_BALANCE"


class BelowMinimumPayoutError(ServiceError):
    status_code = 400
    error_code = "BELOW_MINIMUM_PAYOUT"


class ConflictError(ServiceError):
    """Concurrent modification detected (stale version)."""
    status_code = 409
    error_code = "CONFLICT"


class DuplicateApplicationError(ConflictError):
    error_code = "DUPLICATE_APPLICATION"


class PersistenceError(Exception):
    """Storage layer failure. Not a business-rule error."""
    status_code = 503
