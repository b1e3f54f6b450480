"""Order lifecycle events delivered to the CRM.

Events are immutable snapshots taken at the moment of the transition, so a
delivery that runs later (or is retried) never observes newer order state.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from firearms_compliance.time_utils import utcnow

if TYPE_CHECKING:
    from firearms_compliance.models import Order


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    ORDER = "order"


# CRM pipeline stage for each order status.
DEAL_STAGES: dict[str, str] = {
    "created": "Qualification",
    "hold_ffl": "Pending FFL",
    "hold_multi_firearm": "Compliance Hold",
    "cleared": "Compliance Hold",
    "capture_failed": "Payment Issue",
    "void_failed": "Payment Issue",
    "paid": "Ready to Fulfill",
    "fulfilled": "Closed Won",
    "voided": "Closed Lost",
}


def deal_stage_for(status: str) -> str:
    """Map an order status onto the CRM deal stage."""
    return DEAL_STAGES.get(status, "Qualification")


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID
    actor: str
    source_service: str = "firearms_compliance"
    version: int = 1

    @classmethod
    def create(cls, actor: str = "system", correlation_id: UUID | None = None) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            correlation_id=correlation_id or uuid4(),
            actor=actor,
        )


@dataclass(frozen=True)
class OrderStatusChanged:
    """An order moved from one status to another."""

    metadata: EventMetadata
    order_id: UUID
    order_number: str
    customer_id: str
    previous_status: str
    new_status: str
    hold_type: str
    amount: Decimal
    auth_transaction_id: str
    capture_transaction_id: str | None
    ffl_license_number: str | None
    deal_stage: str

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        return EventCategory.ORDER

    @classmethod
    def from_order(
        cls,
        order: Order,
        previous_status: str,
        new_status: str,
        *,
        actor: str = "system",
    ) -> OrderStatusChanged:
        return cls(
            metadata=EventMetadata.create(actor=actor, correlation_id=order.order_id),
            order_id=order.order_id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            previous_status=previous_status,
            new_status=new_status,
            hold_type=order.hold_type,
            amount=order.amount,
            auth_transaction_id=order.auth_transaction_id,
            capture_transaction_id=order.capture_transaction_id,
            ffl_license_number=order.ffl_license_number,
            deal_stage=deal_stage_for(new_status),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _serialize(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj
