"""Order events and CRM sync.

This package provides:
- Immutable order transition events with the CRM deal stage
- A fire-and-forget emitter with retry queue and dead-letter list
"""

from firearms_compliance.events.types import (
    DEAL_STAGES,
    EventCategory,
    EventMetadata,
    OrderStatusChanged,
    deal_stage_for,
)
from firearms_compliance.events.emitter import (
    CrmSyncClient,
    ExternalSyncEmitter,
    LoggingCrmSync,
    PendingDelivery,
)

__all__ = [
    "DEAL_STAGES",
    "EventCategory",
    "EventMetadata",
    "OrderStatusChanged",
    "deal_stage_for",
    "CrmSyncClient",
    "ExternalSyncEmitter",
    "LoggingCrmSync",
    "PendingDelivery",
]
