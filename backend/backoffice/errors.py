# Overview: Typed, recoverable error taxonomy shared by the inventory and order services.

"""
Every failure raised by the core is a CoreError subclass carrying:
- a human-readable message
- a details dict (quantities, ids) for the caller
- the HTTP status the API layer maps it to

None of these are fatal. Stock failures are raised only after any partial
work in the same operation has been undone.
"""

from __future__ import annotations

from .validation import ValidationError


class CoreError(Exception):
    """Base class for domain errors."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class NotFoundError(CoreError):
    status_code = 404


# =============================================================================
# STOCK / CAPACITY
# =============================================================================

class InsufficientStockError(CoreError):
    """Requested quantity cannot be covered; caller may pick other quantities or batches."""
    status_code = 409


class InsufficientAvailableError(InsufficientStockError):
    """reserve() found fewer than qty units of on-shelf minus reserved stock."""


class InsufficientOnHandError(InsufficientStockError):
    """shelve_stock() found fewer than qty units in the warehouse."""


class NegativeStockError(CoreError):
    """A mutation would drive a quantity below zero. Never clamped."""
    status_code = 409


class LocationCapacityError(CoreError):
    """A mutation would push a location over its max capacity."""
    status_code = 409


class LocationOccupiedError(CoreError):
    """Location still holds stock and cannot be deactivated or deleted."""
    status_code = 409


# =============================================================================
# BATCH LIFECYCLE
# =============================================================================

class InvalidBatchTransitionError(CoreError):
    status_code = 409


class BatchImmutableError(CoreError):
    status_code = 409


# =============================================================================
# ORDER / PAYMENT STATE MACHINES
# =============================================================================

class PaymentNotCompleteError(CoreError):
    status_code = 409


class InvalidTransitionError(CoreError):
    status_code = 409


class RefundNotAllowedError(CoreError):
    status_code = 409


class DeleteNotAllowedError(CoreError):
    status_code = 409


class PaymentError(CoreError):
    """Raised for payment operation errors."""
    status_code = 409


def error_response(exc: Exception) -> tuple[dict, int]:
    """Translate a domain or validation error into a JSON body and status."""
    if isinstance(exc, CoreError):
        return exc.to_dict(), exc.status_code
    if isinstance(exc, ValidationError):
        return {"error": str(exc), "code": "ValidationError", "details": {}}, 400
    raise exc


__all__ = [
    "CoreError",
    "ValidationError",
    "NotFoundError",
    "InsufficientStockError",
    "InsufficientAvailableError",
    "InsufficientOnHandError",
    "NegativeStockError",
    "LocationCapacityError",
    "LocationOccupiedError",
    "InvalidBatchTransitionError",
    "BatchImmutableError",
    "PaymentNotCompleteError",
    "InvalidTransitionError",
    "RefundNotAllowedError",
    "DeleteNotAllowedError",
    "PaymentError",
    "error_response",
]
