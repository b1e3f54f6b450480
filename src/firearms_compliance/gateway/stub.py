"""In-memory payment gateway for local development and testing.

Replace with a real processor adapter (see authorize_net.py) for production.
"""

from __future__ import annotations

import datetime
import threading
import uuid
from collections import Counter
from decimal import Decimal
from typing import Any

from firearms_compliance.gateway.base import (
    AlreadyCaptured,
    AlreadyVoided,
    AuthorizeResult,
    CaptureResult,
    Declined,
    GatewayError,
    PaymentDetails,
    VoidResult,
)

# Card number that is always declined.
DECLINE_CARD = "4000000000000002"


class StubGateway:
    """Stub processor with idempotent replay and failure injection.

    Responses are remembered per (operation, idempotency key), so a retried
    call returns the original outcome without a second effect. The
    ``effects`` counter records what actually happened on the "processor"
    side and is what tests assert exactly-once behaviour against.
    """

    gateway_name = "stub"

    def __init__(self, auth_ttl_days: int = 30):
        self.auth_ttl_days = auth_ttl_days
        self._lock = threading.Lock()
        self._responses: dict[tuple[str, str], Any] = {}
        self._auths: dict[str, dict[str, Any]] = {}
        self._fail_next: Counter[str] = Counter()
        self._lose_response_next: Counter[str] = Counter()
        self._decline_next: list[str] = []
        self._duplicate_next = 0
        self.effects: Counter[str] = Counter()
        self.calls: list[tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Failure injection (for testing)
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Raise GatewayError before processing the next ``times`` calls."""
        self._fail_next[operation] += times

    def lose_response_next(self, operation: str, times: int = 1) -> None:
        """Process the next call but raise GatewayError as if the response timed out."""
        self._lose_response_next[operation] += times

    def decline_next(self, reason: str = "Card declined") -> None:
        """Decline the next authorization."""
        self._decline_next.append(reason)

    def duplicate_next(self, times: int = 1) -> None:
        """Answer the next replayed authorizations like a duplicate-window rejection."""
        self._duplicate_next += times

    # ------------------------------------------------------------------
    # PaymentGateway protocol
    # ------------------------------------------------------------------

    def authorize(
        self,
        amount: Decimal,
        payment_details: PaymentDetails,
        *,
        idempotency_key: str,
    ) -> AuthorizeResult:
        with self._lock:
            self.calls.append(("authorize", idempotency_key))
            self._maybe_fail("authorize")

            replay = self._replay("authorize", idempotency_key)
            if replay is not None:
                if self._duplicate_next > 0:
                    self._duplicate_next -= 1
                    raise GatewayError(
                        "Duplicate transaction", transaction_id=replay.transaction_id
                    )
                return replay

            if self._decline_next or payment_details.card_number == DECLINE_CARD:
                reason = self._decline_next.pop(0) if self._decline_next else "Card declined"
                error = Declined(reason, reason_code="2")
                self._responses[("authorize", idempotency_key)] = error
                raise error

            transaction_id = f"AUTH-{uuid.uuid4().hex[:12].upper()}"
            expires_at = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
                days=self.auth_ttl_days
            )
            self._auths[transaction_id] = {
                "amount": amount,
                "status": "authorized",
                "capture_id": None,
                "void_id": None,
            }
            result = AuthorizeResult(
                transaction_id=transaction_id,
                amount=amount,
                expires_at=expires_at,
                message="Stub authorization approved",
            )
            self.effects["authorize"] += 1
            return self._respond("authorize", idempotency_key, result)

    def capture(
        self,
        transaction_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
    ) -> CaptureResult:
        with self._lock:
            self.calls.append(("capture", idempotency_key))
            self._maybe_fail("capture")

            replay = self._replay("capture", idempotency_key)
            if replay is not None:
                return replay

            auth = self._auths.get(transaction_id)
            if auth is None:
                raise Declined(f"Unknown transaction {transaction_id}", reason_code="16")
            if auth["status"] == "captured":
                raise AlreadyCaptured(auth["capture_id"])
            if auth["status"] == "voided":
                raise Declined("Transaction has been voided", reason_code="310")
            if amount > auth["amount"]:
                raise Declined("Capture amount exceeds authorization", reason_code="47")

            capture_id = f"CAP-{uuid.uuid4().hex[:12].upper()}"
            auth["status"] = "captured"
            auth["capture_id"] = capture_id
            self.effects["capture"] += 1
            return self._respond(
                "capture",
                idempotency_key,
                CaptureResult(capture_transaction_id=capture_id, message="Stub capture approved"),
            )

    def void(
        self,
        transaction_id: str,
        *,
        idempotency_key: str,
    ) -> VoidResult:
        with self._lock:
            self.calls.append(("void", idempotency_key))
            self._maybe_fail("void")

            replay = self._replay("void", idempotency_key)
            if replay is not None:
                return replay

            auth = self._auths.get(transaction_id)
            if auth is None:
                raise Declined(f"Unknown transaction {transaction_id}", reason_code="16")
            if auth["status"] == "voided":
                raise AlreadyVoided(auth["void_id"])
            if auth["status"] == "captured":
                raise Declined("Captured transactions must be refunded", reason_code="311")

            void_id = f"VOID-{uuid.uuid4().hex[:12].upper()}"
            auth["status"] = "voided"
            auth["void_id"] = void_id
            self.effects["void"] += 1
            return self._respond(
                "void",
                idempotency_key,
                VoidResult(void_transaction_id=void_id, message="Stub void approved"),
            )

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def status_of(self, transaction_id: str) -> str:
        """Processor-side status of an authorization ("unknown" if never seen)."""
        auth = self._auths.get(transaction_id)
        return auth["status"] if auth else "unknown"

    def _maybe_fail(self, operation: str) -> None:
        if self._fail_next[operation] > 0:
            self._fail_next[operation] -= 1
            raise GatewayError(f"Simulated {operation} timeout")

    def _replay(self, operation: str, key: str) -> Any:
        previous = self._responses.get((operation, key))
        if isinstance(previous, Exception):
            raise previous
        return previous

    def _respond(self, operation: str, key: str, result: Any) -> Any:
        self._responses[(operation, key)] = result
        if self._lose_response_next[operation] > 0:
            self._lose_response_next[operation] -= 1
            raise GatewayError(f"Simulated lost {operation} response")
        return result
