"""Payment gateway protocol, implementations and the retrying adapter."""

from firearms_compliance.gateway.adapter import (
    CaptureOutcome,
    PaymentGatewayAdapter,
    RetriesExhausted,
    VoidOutcome,
)
from firearms_compliance.gateway.authorize_net import AuthorizeNetGateway
from firearms_compliance.gateway.base import (
    AlreadyCaptured,
    AlreadyVoided,
    AuthorizeResult,
    CaptureResult,
    Declined,
    GatewayError,
    PaymentDetails,
    PaymentGateway,
    PaymentGatewayError,
    VoidResult,
)
from firearms_compliance.gateway.stub import DECLINE_CARD, StubGateway

__all__ = [
    # Adapter
    "PaymentGatewayAdapter",
    "CaptureOutcome",
    "VoidOutcome",
    "RetriesExhausted",
    # Protocol and types
    "PaymentGateway",
    "PaymentDetails",
    "AuthorizeResult",
    "CaptureResult",
    "VoidResult",
    # Errors
    "PaymentGatewayError",
    "Declined",
    "GatewayError",
    "AlreadyCaptured",
    "AlreadyVoided",
    # Implementations
    "StubGateway",
    "AuthorizeNetGateway",
    "DECLINE_CARD",
]
