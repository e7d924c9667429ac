# societix/errors.py
"""
Application errors.

Domain code raises these; `societix.server` renders them as JSON:

    {"error": <code>, "message": <text>, "details": [...]}

Uniqueness conflicts are not in this list on purpose: they are resolved inside
the reconciliation engine and never reach a caller.
"""
from __future__ import annotations
from typing import List, Optional


class AppError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, message: str = "", *,
                 details: Optional[List[str]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or []


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class AuthError(AppError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str = "Resource", **kw) -> None:
        super().__init__(f"{resource} not found", **kw)


class EventNotFoundError(NotFoundError):
    code = "event_not_found"

    def __init__(self, event_id: str = "") -> None:
        super().__init__("Event")
        self.event_id = event_id


class AttendeeNotFoundError(NotFoundError):
    code = "attendee_not_found"

    def __init__(self) -> None:
        super().__init__("Attendee")


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"

    def __init__(self, session_id: str = "") -> None:
        super().__init__("Payment session")
        self.session_id = session_id


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class CapacityExceededError(ConflictError):
    code = "capacity_exceeded"

    def __init__(self, requested: int, remaining: int) -> None:
        super().__init__(
            f"Not enough capacity. Requested: {requested}, "
            f"Available: {remaining}"
        )
        self.requested = requested
        self.remaining = remaining


class PaymentProviderError(AppError):
    status_code = 503
    code = "payment_provider_unavailable"


class AllocationError(AppError):
    """A seat insert failed after earlier seats of the order were committed.

    The committed seats stay; the next reconciliation of the same session
    allocates the missing ones.
    """
    status_code = 503
    code = "allocation_incomplete"

    def __init__(self, order_id: str, created: List[str],
                 seat: int) -> None:
        super().__init__(
            f"Allocation for order {order_id} stopped at seat {seat}"
        )
        self.order_id = order_id
        self.created = created
        self.seat = seat
