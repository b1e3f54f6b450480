"""Tests for the order state machine."""

import pytest

from firearms_compliance.compliance import HoldType
from firearms_compliance.models import Order
from firearms_compliance.services import (
    InvalidTransitionError,
    OrderStateMachine,
    OrderStatus,
    status_for_hold,
)

from helpers import NOW


def order_in(status, **overrides):
    values = dict(
        status=status,
        multi_firearm_flagged=False,
        ffl_license_number=None,
        ffl_status="missing",
        override_at=None,
    )
    values.update(overrides)
    return Order(**values)


class TestOrderStateMachine:
    """Tests for OrderStateMachine."""

    def test_valid_transitions_from_created(self):
        """Test valid transitions from created status."""
        assert OrderStateMachine.can_transition("created", "paid")
        assert OrderStateMachine.can_transition("created", "hold_ffl")
        assert OrderStateMachine.can_transition("created", "hold_multi_firearm")
        assert OrderStateMachine.can_transition("created", "capture_failed")
        assert not OrderStateMachine.can_transition("created", "fulfilled")
        assert not OrderStateMachine.can_transition("created", "cleared")

    def test_hold_ffl_can_escalate_to_multi_firearm(self):
        """FFL verified while the limit is still exceeded."""
        assert OrderStateMachine.can_transition("hold_ffl", "hold_multi_firearm")
        assert not OrderStateMachine.can_transition("hold_multi_firearm", "hold_ffl")

    def test_holds_cannot_be_paid_directly(self):
        """A held order must be cleared before capture."""
        assert not OrderStateMachine.can_transition("hold_ffl", "paid")
        assert not OrderStateMachine.can_transition("hold_multi_firearm", "paid")

    def test_terminal_states(self):
        """Test that terminal states have no transitions."""
        assert OrderStateMachine.get_next_statuses("fulfilled") == []
        assert OrderStateMachine.get_next_statuses("voided") == []
        assert OrderStateMachine.is_terminal("voided")
        assert not OrderStateMachine.is_terminal("paid")

    def test_captured_orders_cannot_be_voided(self):
        assert not OrderStateMachine.can_void("paid")
        assert not OrderStateMachine.can_void("fulfilled")

    @pytest.mark.parametrize(
        "status", ["created", "hold_ffl", "hold_multi_firearm", "cleared", "capture_failed", "void_failed"]
    )
    def test_open_orders_can_be_voided(self, status):
        assert OrderStateMachine.can_void(status)
        assert OrderStateMachine.can_transition(status, "void_failed")

    def test_failed_capture_can_be_retried(self):
        assert OrderStateMachine.can_transition("capture_failed", "paid")
        assert OrderStateMachine.can_transition("capture_failed", "capture_failed")

    def test_validate_transition_raises(self):
        """Test that invalid transitions raise error."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            OrderStateMachine.validate_transition("paid", "voided", "Captured orders must be refunded")

        assert exc_info.value.from_status == "paid"
        assert exc_info.value.to_status == "voided"
        assert "refunded" in str(exc_info.value)

    def test_every_status_has_an_entry(self):
        assert set(OrderStateMachine.VALID_TRANSITIONS) == set(OrderStatus)


class TestHoldMapping:
    """Tests for hold type to status mapping."""

    @pytest.mark.parametrize(
        "hold_type,status",
        [
            (HoldType.NONE, OrderStatus.CREATED),
            (HoldType.FFL_REQUIRED, OrderStatus.HOLD_FFL),
            (HoldType.MULTI_FIREARM, OrderStatus.HOLD_MULTI_FIREARM),
        ],
    )
    def test_each_hold_type_maps_to_one_status(self, hold_type, status):
        assert status_for_hold(hold_type) is status

    def test_mapping_is_exhaustive(self):
        assert {status_for_hold(h) for h in HoldType} == {
            OrderStatus.CREATED,
            OrderStatus.HOLD_FFL,
            OrderStatus.HOLD_MULTI_FIREARM,
        }

    def test_accepts_stored_string(self):
        assert status_for_hold("ffl_required") is OrderStatus.HOLD_FFL


class TestClearBlockers:
    """Tests for the conditions checked before staff clearance."""

    def test_not_on_hold(self):
        blockers = OrderStateMachine.clear_blockers(order_in("paid"))
        assert blockers == ["Order is not on hold (status 'paid')"]

    def test_ffl_hold_without_ffl(self):
        assert OrderStateMachine.clear_blockers(order_in("hold_ffl")) == ["No FFL attached"]

    def test_ffl_hold_with_unverified_ffl(self):
        order = order_in("hold_ffl", ffl_license_number="X", ffl_status="pending_verification")
        assert OrderStateMachine.clear_blockers(order) == ["Attached FFL is not verified"]

    def test_ffl_hold_with_verified_ffl(self):
        order = order_in("hold_ffl", ffl_license_number="X", ffl_status="verified")
        assert OrderStateMachine.clear_blockers(order) == []

    def test_ffl_hold_with_flagged_limit_needs_override(self):
        """The limit breach survives the FFL hold taking precedence."""
        order = order_in(
            "hold_ffl", ffl_license_number="X", ffl_status="verified", multi_firearm_flagged=True
        )
        assert OrderStateMachine.clear_blockers(order) == [
            "Multi-firearm limit exceeded and no staff override recorded"
        ]

    def test_multi_firearm_hold_needs_override(self):
        order = order_in("hold_multi_firearm", multi_firearm_flagged=True)
        assert len(OrderStateMachine.clear_blockers(order)) == 1

        order.override_at = NOW
        assert OrderStateMachine.clear_blockers(order) == []

    def test_override_does_not_cover_unverified_ffl(self):
        """An FFL attached to a multi-firearm hold must be verified before clearing."""
        order = order_in(
            "hold_multi_firearm",
            multi_firearm_flagged=True,
            ffl_license_number="X",
            ffl_status="pending_verification",
            override_at=NOW,
        )
        assert OrderStateMachine.clear_blockers(order) == ["Attached FFL is not verified"]
