"""Base protocol and types for payment gateways.

All gateway implementations must implement the PaymentGateway protocol.
Every call carries an idempotency key; a gateway that sees the same key
twice must return the original outcome instead of acting again.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol


class PaymentGatewayError(Exception):
    """Base class for gateway outcomes other than approval."""


class Declined(PaymentGatewayError):
    """The processor refused the transaction. Terminal, never retried."""

    def __init__(self, message: str = "Transaction declined", reason_code: str | None = None):
        self.reason_code = reason_code
        super().__init__(message)


class GatewayError(PaymentGatewayError):
    """Transient failure (timeout, 5xx, connection). Safe to retry with the same key.

    ``transaction_id`` is set when the processor reports a transaction the
    failed call may already have created (an earlier authorization seen
    through the duplicate window).
    """

    def __init__(self, message: str = "Gateway unavailable", transaction_id: str | None = None):
        self.transaction_id = transaction_id
        super().__init__(message)


class AlreadyCaptured(PaymentGatewayError):
    """The authorization was captured by an earlier call."""

    def __init__(self, capture_transaction_id: str | None = None):
        self.capture_transaction_id = capture_transaction_id
        super().__init__("Transaction has already been captured")


class AlreadyVoided(PaymentGatewayError):
    """The authorization was voided by an earlier call."""

    def __init__(self, void_transaction_id: str | None = None):
        self.void_transaction_id = void_transaction_id
        super().__init__("Transaction has already been voided")


@dataclass(frozen=True)
class PaymentDetails:
    """Card data passed straight through to the gateway. Never persisted."""

    card_number: str
    expiration_date: str
    cvv: str
    billing: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"PaymentDetails(card=****{self.card_number[-4:]})"


@dataclass(frozen=True)
class AuthorizeResult:
    """Approved authorization."""

    transaction_id: str
    amount: Decimal
    expires_at: datetime.datetime | None = None
    message: str = ""


@dataclass(frozen=True)
class CaptureResult:
    """Approved capture of a prior authorization."""

    capture_transaction_id: str
    message: str = ""


@dataclass(frozen=True)
class VoidResult:
    """Approved void of a prior authorization."""

    void_transaction_id: str | None = None
    message: str = ""


class PaymentGateway(Protocol):
    """Protocol for payment processor adapters.

    The order workflow uses these adapters without knowing processor details.
    """

    gateway_name: str

    def authorize(
        self,
        amount: Decimal,
        payment_details: PaymentDetails,
        *,
        idempotency_key: str,
    ) -> AuthorizeResult:
        """Reserve funds without collecting them.

        Raises:
            Declined: the card was refused.
            GatewayError: transient failure.
        """
        ...

    def capture(
        self,
        transaction_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
    ) -> CaptureResult:
        """Collect funds reserved by ``transaction_id``.

        Raises:
            AlreadyCaptured: an earlier call already captured it.
            GatewayError: transient failure.
        """
        ...

    def void(
        self,
        transaction_id: str,
        *,
        idempotency_key: str,
    ) -> VoidResult:
        """Release the reservation made by ``transaction_id``.

        Raises:
            AlreadyVoided: an earlier call already voided it.
            GatewayError: transient failure.
        """
        ...
