"""Order state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from firearms_compliance.compliance.evaluator import HoldType

if TYPE_CHECKING:
    from firearms_compliance.models import Order


class OrderStatus(str, Enum):
    """Order status values."""

    CREATED = "created"
    HOLD_FFL = "hold_ffl"
    HOLD_MULTI_FIREARM = "hold_multi_firearm"
    CLEARED = "cleared"
    PAID = "paid"
    FULFILLED = "fulfilled"
    VOIDED = "voided"
    CAPTURE_FAILED = "capture_failed"
    VOID_FAILED = "void_failed"


class FflStatus(str, Enum):
    """Verification status of the FFL dealer attached to an order."""

    MISSING = "missing"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"


class PaymentFailure(str, Enum):
    """Why a capture or void was parked."""

    DECLINED = "declined"
    UNAVAILABLE = "unavailable"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# Every HoldType maps to exactly one initial order status.
_HOLD_STATUS: dict[HoldType, OrderStatus] = {
    HoldType.NONE: OrderStatus.CREATED,
    HoldType.FFL_REQUIRED: OrderStatus.HOLD_FFL,
    HoldType.MULTI_FIREARM: OrderStatus.HOLD_MULTI_FIREARM,
}


def status_for_hold(hold_type: HoldType) -> OrderStatus:
    """Initial order status for a hold decision."""
    return _HOLD_STATUS[HoldType(hold_type)]


class OrderStateMachine:
    """State machine for order status transitions.

    Allowed transitions:
    - created → paid | capture_failed (no hold, captured at checkout)
    - created → hold_ffl | hold_multi_firearm
    - hold_ffl → cleared | hold_multi_firearm (FFL verified, limit still exceeded)
    - hold_multi_firearm → cleared
    - cleared → paid | capture_failed
    - capture_failed → paid | capture_failed (staff or scheduled retry)
    - any open status → voided | void_failed
    - void_failed → voided | void_failed
    - paid → fulfilled
    """

    _VOIDABLE = [OrderStatus.VOIDED, OrderStatus.VOID_FAILED]

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        OrderStatus.CREATED: [
            OrderStatus.PAID,
            OrderStatus.CAPTURE_FAILED,
            OrderStatus.HOLD_FFL,
            OrderStatus.HOLD_MULTI_FIREARM,
            *_VOIDABLE,
        ],
        OrderStatus.HOLD_FFL: [
            OrderStatus.CLEARED,
            OrderStatus.HOLD_MULTI_FIREARM,
            *_VOIDABLE,
        ],
        OrderStatus.HOLD_MULTI_FIREARM: [OrderStatus.CLEARED, *_VOIDABLE],
        OrderStatus.CLEARED: [OrderStatus.PAID, OrderStatus.CAPTURE_FAILED, *_VOIDABLE],
        OrderStatus.CAPTURE_FAILED: [
            OrderStatus.PAID,
            OrderStatus.CAPTURE_FAILED,
            *_VOIDABLE,
        ],
        OrderStatus.VOID_FAILED: list(_VOIDABLE),
        OrderStatus.PAID: [OrderStatus.FULFILLED],
        OrderStatus.FULFILLED: [],  # Terminal state
        OrderStatus.VOIDED: [],  # Terminal state
    }

    HOLD_STATUSES = {OrderStatus.HOLD_FFL, OrderStatus.HOLD_MULTI_FIREARM}

    TERMINAL_STATUSES = {OrderStatus.FULFILLED, OrderStatus.VOIDED}

    # Statuses from which capture may be attempted
    CAPTURABLE = {OrderStatus.CREATED, OrderStatus.CLEARED, OrderStatus.CAPTURE_FAILED}

    # Captured funds can only be refunded, which is handled elsewhere
    CAPTURED = {OrderStatus.PAID, OrderStatus.FULFILLED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str, reason: str | None = None) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def is_hold(cls, status: str) -> bool:
        return status in cls.HOLD_STATUSES

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL_STATUSES

    @classmethod
    def can_void(cls, status: str) -> bool:
        """Void is valid from any non-terminal, non-captured status."""
        return cls.can_transition(status, OrderStatus.VOIDED)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def clear_blockers(cls, order: Order) -> list[str]:
        """Unsatisfied hold conditions preventing staff clearance.

        Returns list of reasons (empty if the order may be cleared).
        """
        blockers: list[str] = []
        if order.status not in cls.HOLD_STATUSES:
            blockers.append(f"Order is not on hold (status '{order.status}')")
            return blockers

        if order.status == OrderStatus.HOLD_FFL and not order.ffl_license_number:
            blockers.append("No FFL attached")
        # Whatever the hold, a firearm never ships to an unverified dealer.
        elif order.ffl_license_number and order.ffl_status != FflStatus.VERIFIED:
            blockers.append("Attached FFL is not verified")

        # An exceeded limit must be overridden even when the FFL hold took precedence.
        needs_override = (
            order.status == OrderStatus.HOLD_MULTI_FIREARM or order.multi_firearm_flagged
        )
        if needs_override and order.override_at is None:
            blockers.append("Multi-firearm limit exceeded and no staff override recorded")

        return blockers
