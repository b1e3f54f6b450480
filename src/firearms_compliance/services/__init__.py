"""Order lifecycle services."""

from firearms_compliance.services.state_machine import (
    FflStatus,
    InvalidTransitionError,
    OrderStateMachine,
    OrderStatus,
    status_for_hold,
)
from firearms_compliance.services.locking import OrderLockRegistry
from firearms_compliance.services.order_service import OrderDraft, OrderService
from firearms_compliance.services.staff_actions import StaffActionService, StaffPrincipal
from firearms_compliance.services.checkout import CheckoutRequest, CheckoutResult, CheckoutService
from firearms_compliance.services.recovery import RecoveryReport, RecoveryService

__all__ = [
    "FflStatus",
    "InvalidTransitionError",
    "OrderStateMachine",
    "OrderStatus",
    "status_for_hold",
    "OrderLockRegistry",
    "OrderDraft",
    "OrderService",
    "StaffActionService",
    "StaffPrincipal",
    "CheckoutRequest",
    "CheckoutResult",
    "CheckoutService",
    "RecoveryReport",
    "RecoveryService",
]
