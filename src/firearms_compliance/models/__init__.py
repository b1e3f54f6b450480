"""ORM models."""

from firearms_compliance.models.base import Base, TimestampMixin, UTCDateTime
from firearms_compliance.models.compliance import ComplianceSettingsRecord
from firearms_compliance.models.orders import (
    CustomerFfl,
    Order,
    OrderActivity,
    OrderLine,
    PaymentTransaction,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "ComplianceSettingsRecord",
    "CustomerFfl",
    "Order",
    "OrderActivity",
    "OrderLine",
    "PaymentTransaction",
]
