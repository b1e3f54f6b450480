"""Authorize.Net gateway adapter (JSON API over httpx).

Maps the processor's response codes onto the gateway protocol:

    responseCode 1              -> approved
    responseCode 2 / 4          -> Declined
    responseCode 3, error 311   -> AlreadyCaptured
    responseCode 3, error 310   -> AlreadyVoided
    responseCode 3, other       -> Declined (processor rejected the request)
    HTTP 4xx                    -> Declined
    timeouts, transport, 5xx    -> GatewayError (retryable)

Authorize.Net has no idempotency header. The idempotency key is hashed into
``refId`` and the duplicate window makes the processor reject a replayed
authorization (error 11) instead of approving it twice; that rejection is
surfaced as GatewayError so the caller keeps the original outcome unknown
rather than assuming success. The original transaction id, when the
processor returns one, rides on the error so the caller can release it.
"""

from __future__ import annotations

import hashlib
import json
import logging
from decimal import Decimal
from typing import Any

import httpx

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

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://apitest.authorize.net/xml/v1/request.api"
PRODUCTION_URL = "https://api.authorize.net/xml/v1/request.api"

ERROR_ALREADY_CAPTURED = "311"
ERROR_ALREADY_VOIDED = "310"
ERROR_DUPLICATE = "11"


class AuthorizeNetGateway:
    """Authorize.Net implementation of the PaymentGateway protocol."""

    gateway_name = "authorize_net"

    def __init__(
        self,
        api_login_id: str,
        transaction_key: str,
        *,
        environment: str = "sandbox",
        timeout_seconds: float = 30.0,
        duplicate_window_seconds: int = 120,
        client: httpx.Client | None = None,
    ):
        if not api_login_id or not transaction_key:
            raise ValueError(
                "Authorize.Net credentials not configured. "
                "Required: ANET_API_LOGIN_ID, ANET_TRANSACTION_KEY"
            )
        self.api_login_id = api_login_id
        self.transaction_key = transaction_key
        self.api_url = SANDBOX_URL if environment == "sandbox" else PRODUCTION_URL
        self.duplicate_window_seconds = duplicate_window_seconds
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        self._client.close()

    def authorize(
        self,
        amount: Decimal,
        payment_details: PaymentDetails,
        *,
        idempotency_key: str,
    ) -> AuthorizeResult:
        transaction_request: dict[str, Any] = {
            "transactionType": "authOnlyTransaction",
            "amount": f"{amount:.2f}",
            "payment": {
                "creditCard": {
                    "cardNumber": payment_details.card_number,
                    "expirationDate": payment_details.expiration_date,
                    "cardCode": payment_details.cvv,
                }
            },
        }
        if payment_details.billing:
            transaction_request["billTo"] = payment_details.billing
        transaction_request["transactionSettings"] = {
            "setting": [
                {
                    "settingName": "duplicateWindow",
                    "settingValue": str(self.duplicate_window_seconds),
                }
            ]
        }

        response = self._send(transaction_request, idempotency_key)
        return AuthorizeResult(
            transaction_id=response["transId"],
            amount=amount,
            message=_first_message(response),
        )

    def capture(
        self,
        transaction_id: str,
        amount: Decimal,
        *,
        idempotency_key: str,
    ) -> CaptureResult:
        response = self._send(
            {
                "transactionType": "priorAuthCaptureTransaction",
                "amount": f"{amount:.2f}",
                "refTransId": transaction_id,
            },
            idempotency_key,
        )
        return CaptureResult(
            capture_transaction_id=response["transId"],
            message=_first_message(response),
        )

    def void(
        self,
        transaction_id: str,
        *,
        idempotency_key: str,
    ) -> VoidResult:
        response = self._send(
            {
                "transactionType": "voidTransaction",
                "refTransId": transaction_id,
            },
            idempotency_key,
        )
        return VoidResult(
            void_transaction_id=response.get("transId"),
            message=_first_message(response),
        )

    def _send(self, transaction_request: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        """POST a createTransactionRequest and return the transactionResponse."""
        body = {
            "createTransactionRequest": {
                "merchantAuthentication": {
                    "name": self.api_login_id,
                    "transactionKey": self.transaction_key,
                },
                "refId": _ref_id(idempotency_key),
                "transactionRequest": transaction_request,
            }
        }
        transaction_type = transaction_request["transactionType"]

        try:
            http_response = self._client.post(
                self.api_url,
                json=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise GatewayError(f"{transaction_type} timed out") from e
        except httpx.TransportError as e:
            raise GatewayError(f"{transaction_type} transport error: {e}") from e

        if http_response.status_code >= 500:
            raise GatewayError(f"{transaction_type} failed with HTTP {http_response.status_code}")
        if http_response.status_code >= 400:
            raise Declined(
                f"{transaction_type} rejected with HTTP {http_response.status_code}",
                reason_code=f"HTTP {http_response.status_code}",
            )

        try:
            # Authorize.Net prefixes JSON responses with a UTF-8 BOM.
            payload = json.loads(http_response.content.decode("utf-8-sig"))
        except ValueError as e:
            raise GatewayError(f"{transaction_type} returned malformed JSON") from e

        return _interpret(transaction_type, payload)


def _interpret(transaction_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    tx = payload.get("transactionResponse")
    if not tx:
        messages = payload.get("messages", {}).get("message", [])
        code = messages[0].get("code") if messages else None
        text = messages[0].get("text") if messages else "No transaction response"
        raise Declined(f"{transaction_type} rejected: {text}", reason_code=code)

    response_code = str(tx.get("responseCode", ""))
    errors = tx.get("errors") or []
    error_code = str(errors[0].get("errorCode")) if errors else None
    error_text = errors[0].get("errorText") if errors else None

    if response_code == "1":
        return tx
    if error_code == ERROR_ALREADY_CAPTURED:
        raise AlreadyCaptured(tx.get("transId") or None)
    if error_code == ERROR_ALREADY_VOIDED:
        raise AlreadyVoided(tx.get("transId") or None)
    if error_code == ERROR_DUPLICATE:
        original = tx.get("transId")
        raise GatewayError(
            f"{transaction_type} duplicate inside processor window",
            transaction_id=original if original and original != "0" else None,
        )
    if response_code in ("2", "4"):
        raise Declined(error_text or "Transaction declined", reason_code=error_code or response_code)

    logger.warning(
        "Authorize.Net %s error: code=%s text=%s", transaction_type, error_code, error_text
    )
    raise Declined(error_text or "Transaction error", reason_code=error_code)


def _ref_id(idempotency_key: str) -> str:
    """refId is limited to 20 characters."""
    return hashlib.sha256(idempotency_key.encode()).hexdigest()[:20]


def _first_message(tx: dict[str, Any]) -> str:
    messages = tx.get("messages") or []
    return messages[0].get("description", "") if messages else ""
