"""Domain errors surfaced to checkout and staff callers."""

from __future__ import annotations

from uuid import UUID


class ComplianceServiceError(Exception):
    """Base class for errors raised by this service."""

    code = "COMPLIANCE_ERROR"


class ValidationError(ComplianceServiceError):
    """Rejected input (policy values, cart lines). No state was changed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class OrderNotFoundError(ComplianceServiceError):
    """Raised when an order id does not exist."""

    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: UUID):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class PreconditionNotMet(ComplianceServiceError):
    """A staff action was attempted before its hold condition was satisfied."""

    code = "PRECONDITION_NOT_MET"

    def __init__(self, order_id: UUID, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id}: {reason}")


class OrderBusyError(ComplianceServiceError):
    """Another worker has an unconfirmed gateway call in flight for the order."""

    code = "ORDER_BUSY"

    def __init__(self, order_id: UUID, operation: str):
        self.order_id = order_id
        self.operation = operation
        super().__init__(f"Order {order_id} has a pending {operation} in progress")


class PaymentDeclinedError(ComplianceServiceError):
    """The gateway declined the authorization; no order was written."""

    code = "PAYMENT_DECLINED"

    def __init__(self, message: str, reason_code: str | None = None):
        self.reason_code = reason_code
        super().__init__(message)


class PaymentUnavailableError(ComplianceServiceError):
    """The gateway stayed unavailable after all retries during checkout."""

    code = "PAYMENT_UNAVAILABLE"


class FflNotFoundError(ComplianceServiceError):
    """The FFL directory has no dealer with the given license number."""

    code = "FFL_NOT_FOUND"

    def __init__(self, license_number: str):
        self.license_number = license_number
        super().__init__(f"FFL {license_number} not found in directory")
