# Overview: Settlement error hierarchy shared by every settlement component.

from __future__ import annotations


class SettlementError(Exception):
    """
    Base class for every way a settlement attempt can fail.

    kind is the stable machine-readable error code returned to callers;
    http_status is what the API layer answers with.
    """
    kind = "INTERNAL"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind, "details": self.details}


class InvalidRequestError(SettlementError):
    """Malformed or contradictory input (empty cart, bad channel, ...)."""
    kind = "INVALID_REQUEST"
    http_status = 400


class NotFoundError(SettlementError):
    """Product, variant or customer missing or not owned by the store."""
    kind = "NOT_FOUND"
    http_status = 404


class InsufficientInventoryError(SettlementError):
    kind = "INSUFFICIENT_INVENTORY"
    http_status = 409


class DiscountInvalidError(SettlementError):
    kind = "DISCOUNT_INVALID"
    http_status = 422


class PaymentMismatchError(SettlementError):
    """Payments do not add up to the order total; details carry the signed difference."""
    kind = "PAYMENT_MISMATCH"
    http_status = 422


class ConcurrencyConflictError(SettlementError):
    """A concurrent order took the stock between pre-check and commit."""
    kind = "CONCURRENCY_CONFLICT"
    http_status = 409


class SettlementInternalError(SettlementError):
    kind = "INTERNAL"
    http_status = 500
