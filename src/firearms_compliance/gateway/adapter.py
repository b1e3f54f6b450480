"""Payment gateway adapter: retries, idempotency keys and the transaction trail.

Wraps a PaymentGateway so that:
1. Every call carries a stable idempotency key (``auth:<order_id>`` for
   authorize, the authorization's transaction id for capture and void).
2. GatewayError is retried with exponential backoff up to a fixed budget.
3. Declined / AlreadyCaptured / AlreadyVoided are never retried.
4. AlreadyCaptured / AlreadyVoided are reported as applied-earlier successes.
5. Each logical call appends exactly one PaymentTransaction row.

The adapter adds rows to the caller's session; the caller owns the commit.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from firearms_compliance.config import GatewayRetryConfig
from firearms_compliance.gateway.base import (
    AlreadyCaptured,
    AlreadyVoided,
    AuthorizeResult,
    Declined,
    GatewayError,
    PaymentDetails,
    PaymentGateway,
)
from firearms_compliance.models import PaymentTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CaptureOutcome:
    """Result of a capture through the adapter."""

    capture_transaction_id: str
    already_applied: bool = False


@dataclass(frozen=True)
class VoidOutcome:
    """Result of a void through the adapter."""

    void_transaction_id: str | None
    already_applied: bool = False


class RetriesExhausted(GatewayError):
    """GatewayError raised after the retry budget ran out."""

    def __init__(self, operation: str, attempts: int, last_error: GatewayError):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}",
            transaction_id=last_error.transaction_id,
        )


class PaymentGatewayAdapter:
    """Idempotent, retrying front for the payment gateway."""

    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway,
        retry: GatewayRetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.gateway = gateway
        self.retry = retry or GatewayRetryConfig()
        self._sleep = sleep

    @staticmethod
    def authorize_key(order_id: UUID) -> str:
        return f"auth:{order_id}"

    def authorize(
        self,
        order_id: UUID,
        amount: Decimal,
        payment_details: PaymentDetails,
    ) -> AuthorizeResult:
        """Authorize ``amount`` for an order that is about to be written.

        Raises:
            Declined: terminal refusal.
            RetriesExhausted: the gateway stayed unavailable.
        """
        key = self.authorize_key(order_id)
        try:
            result, attempts = self._call_with_retry(
                "authorize",
                lambda: self.gateway.authorize(amount, payment_details, idempotency_key=key),
            )
        except Declined as e:
            self._record(order_id, "authorize", "declined", key, amount, message=str(e))
            logger.info("Authorization declined for order %s: %s", order_id, e)
            raise
        except RetriesExhausted as e:
            self._record(
                order_id,
                "authorize",
                "error",
                key,
                amount,
                gateway_transaction_id=e.transaction_id,
                attempts=e.attempts,
                message=str(e),
            )
            logger.error("Authorization for order %s gave up: %s", order_id, e)
            raise

        self._record(
            order_id,
            "authorize",
            "approved",
            key,
            amount,
            gateway_transaction_id=result.transaction_id,
            attempts=attempts,
            message=result.message,
        )
        logger.info(
            "Authorized %s for order %s (transaction %s)", amount, order_id, result.transaction_id
        )
        return result

    def capture(
        self,
        order_id: UUID,
        auth_transaction_id: str,
        amount: Decimal,
    ) -> CaptureOutcome:
        """Capture a prior authorization.

        Raises:
            Declined: the processor refused the capture.
            RetriesExhausted: the gateway stayed unavailable.
        """
        key = auth_transaction_id
        try:
            result, attempts = self._call_with_retry(
                "capture",
                lambda: self.gateway.capture(auth_transaction_id, amount, idempotency_key=key),
            )
        except AlreadyCaptured as e:
            logger.warning(
                "Capture of %s for order %s was already applied (retried call)",
                auth_transaction_id,
                order_id,
            )
            capture_id = e.capture_transaction_id or auth_transaction_id
            self._record(
                order_id,
                "capture",
                "approved",
                key,
                amount,
                gateway_transaction_id=capture_id,
                already_applied=True,
                message=str(e),
            )
            return CaptureOutcome(capture_transaction_id=capture_id, already_applied=True)
        except Declined as e:
            self._record(order_id, "capture", "declined", key, amount, message=str(e))
            logger.error("Capture declined for order %s: %s", order_id, e)
            raise
        except RetriesExhausted as e:
            self._record(
                order_id, "capture", "error", key, amount, attempts=e.attempts, message=str(e)
            )
            logger.error("Capture for order %s gave up: %s", order_id, e)
            raise

        self._record(
            order_id,
            "capture",
            "approved",
            key,
            amount,
            gateway_transaction_id=result.capture_transaction_id,
            attempts=attempts,
            message=result.message,
        )
        logger.info(
            "Captured order %s (transaction %s)", order_id, result.capture_transaction_id
        )
        return CaptureOutcome(capture_transaction_id=result.capture_transaction_id)

    def void(self, order_id: UUID, auth_transaction_id: str) -> VoidOutcome:
        """Void a prior authorization.

        Raises:
            Declined: the processor refused the void.
            RetriesExhausted: the gateway stayed unavailable.
        """
        key = auth_transaction_id
        try:
            result, attempts = self._call_with_retry(
                "void",
                lambda: self.gateway.void(auth_transaction_id, idempotency_key=key),
            )
        except AlreadyVoided as e:
            logger.warning(
                "Void of %s for order %s was already applied (retried call)",
                auth_transaction_id,
                order_id,
            )
            self._record(
                order_id,
                "void",
                "approved",
                key,
                None,
                gateway_transaction_id=e.void_transaction_id,
                already_applied=True,
                message=str(e),
            )
            return VoidOutcome(void_transaction_id=e.void_transaction_id, already_applied=True)
        except Declined as e:
            self._record(order_id, "void", "declined", key, None, message=str(e))
            logger.error("Void declined for order %s: %s", order_id, e)
            raise
        except RetriesExhausted as e:
            self._record(
                order_id, "void", "error", key, None, attempts=e.attempts, message=str(e)
            )
            logger.error("Void for order %s gave up: %s", order_id, e)
            raise

        self._record(
            order_id,
            "void",
            "approved",
            key,
            None,
            gateway_transaction_id=result.void_transaction_id,
            attempts=attempts,
            message=result.message,
        )
        logger.info("Voided authorization %s for order %s", auth_transaction_id, order_id)
        return VoidOutcome(void_transaction_id=result.void_transaction_id)

    def _call_with_retry(self, operation: str, call: Callable[[], T]) -> tuple[T, int]:
        """Run ``call``, retrying GatewayError with exponential backoff."""
        attempts = 0
        while True:
            attempts += 1
            try:
                return call(), attempts
            except GatewayError as e:
                if attempts >= self.retry.max_attempts:
                    raise RetriesExhausted(operation, attempts, e) from e
                delay = self.retry.delay_for(attempts)
                logger.warning(
                    "Gateway %s attempt %s/%s failed (%s); retrying in %.2fs",
                    operation,
                    attempts,
                    self.retry.max_attempts,
                    e,
                    delay,
                )
                self._sleep(delay)

    def _record(
        self,
        order_id: UUID,
        kind: str,
        result: str,
        idempotency_key: str,
        amount: Decimal | None,
        *,
        gateway_transaction_id: str | None = None,
        attempts: int = 1,
        already_applied: bool = False,
        message: str | None = None,
    ) -> PaymentTransaction:
        tx = PaymentTransaction(
            related_order_id=order_id,
            kind=kind,
            result=result,
            gateway_transaction_id=gateway_transaction_id,
            idempotency_key=idempotency_key,
            amount=amount,
            attempts=attempts,
            already_applied=already_applied,
            message=message,
        )
        self.session.add(tx)
        return tx
