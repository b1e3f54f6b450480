"""Tests for staff actions on held orders."""

import pytest
from sqlalchemy import select

from firearms_compliance.exceptions import FflNotFoundError, PreconditionNotMet, ValidationError
from firearms_compliance.models import CustomerFfl, OrderActivity, PaymentTransaction
from firearms_compliance.services import CheckoutRequest, StaffPrincipal

from helpers import ACTIVE_FFL, INACTIVE_FFL, NOW, card, firearm


@pytest.fixture
def submit(checkout):
    def _submit(customer_id="new-customer", quantity=1):
        request = CheckoutRequest(
            customer_id=customer_id,
            lines=[firearm(quantity=quantity)],
            payment_details=card(),
        )
        return checkout.submit(request).order

    return _submit


@pytest.fixture
def ffl_held(submit):
    """An order on FFL hold."""
    order = submit()
    assert order.status == "hold_ffl"
    return order


@pytest.fixture
def ffl_and_limit_held(submit, seed_order):
    """An FFL-held order whose cart also breaches the purchase limit."""
    seed_order("new-customer", 4)
    order = submit(quantity=2)
    assert order.status == "hold_ffl"
    assert order.multi_firearm_flagged
    return order


class TestStaffPrincipal:
    def test_blank_staff_id_rejected(self):
        with pytest.raises(ValidationError):
            StaffPrincipal(staff_id="  ")


class TestAttachFfl:
    """Tests for attaching an FFL dealer."""

    def test_attach_does_not_clear_hold(self, staff_actions, ffl_held, staff, gateway):
        order = staff_actions.attach_ffl(ffl_held.order_id, ACTIVE_FFL, staff=staff)

        assert order.status == "hold_ffl"
        assert order.ffl_license_number == ACTIVE_FFL
        assert order.ffl_business_name == "Main Street Firearms"
        assert order.ffl_status == "pending_verification"
        assert gateway.effects["capture"] == 0

    def test_license_number_is_normalized(self, staff_actions, ffl_held, staff):
        order = staff_actions.attach_ffl(ffl_held.order_id, f"  {ACTIVE_FFL.lower()} ", staff=staff)

        assert order.ffl_license_number == ACTIVE_FFL

    def test_unknown_license(self, staff_actions, ffl_held, staff):
        with pytest.raises(FflNotFoundError):
            staff_actions.attach_ffl(ffl_held.order_id, "0-00-000-00-0A-00000", staff=staff)

    def test_inactive_license(self, staff_actions, ffl_held, staff):
        with pytest.raises(PreconditionNotMet, match="not active"):
            staff_actions.attach_ffl(ffl_held.order_id, INACTIVE_FFL, staff=staff)

    def test_terminal_order_rejected(self, staff_actions, order_service, ffl_held, staff):
        order_service.void(ffl_held.order_id, actor="staff-1")

        with pytest.raises(PreconditionNotMet, match="voided"):
            staff_actions.attach_ffl(ffl_held.order_id, ACTIVE_FFL, staff=staff)

    def test_reattach_resets_verification(self, staff_actions, ffl_and_limit_held, staff, ffl_directory):
        from firearms_compliance.ffl import FflListing

        ffl_directory.add(FflListing(license_number="5-55-555-55-5B-55555", business_name="Other Shop"))
        order_id = ffl_and_limit_held.order_id
        staff_actions.attach_ffl(order_id, ACTIVE_FFL, staff=staff)
        staff_actions.verify_ffl(order_id, staff=staff)

        order = staff_actions.attach_ffl(order_id, "5-55-555-55-5B-55555", staff=staff)

        assert order.ffl_status == "pending_verification"
        assert order.ffl_verified_at is None


class TestVerifyFfl:
    """Tests for FFL verification."""

    def test_scenario_d_attach_then_verify_captures(
        self, staff_actions, ffl_held, staff, gateway, session, emitter, crm
    ):
        """hold_ffl -> attach -> verify -> paid with the gateway's capture id."""
        staff_actions.attach_ffl(ffl_held.order_id, ACTIVE_FFL, staff=staff)

        order = staff_actions.verify_ffl(ffl_held.order_id, staff=staff)
        emitter.wait_idle(timeout=5)

        assert order.status == "paid"
        assert order.ffl_status == "verified"
        assert order.ffl_verified_by == staff.staff_id
        (capture_row,) = session.scalars(
            select(PaymentTransaction).where(
                PaymentTransaction.related_order_id == order.order_id,
                PaymentTransaction.kind == "capture",
            )
        ).all()
        assert capture_row.idempotency_key == order.auth_transaction_id
        assert order.capture_transaction_id == capture_row.gateway_transaction_id
        assert gateway.status_of(order.auth_transaction_id) == "captured"
        assert crm.transitions() == [
            ("created", "hold_ffl"),
            ("hold_ffl", "cleared"),
            ("cleared", "paid"),
        ]

    def test_clear_fails_until_verified(self, staff_actions, order_service, ffl_held, staff):
        """staff_clear on an FFL hold needs an attached and verified FFL."""
        with pytest.raises(PreconditionNotMet):
            order_service.staff_clear(ffl_held.order_id, actor=staff.staff_id)

        staff_actions.attach_ffl(ffl_held.order_id, ACTIVE_FFL, staff=staff)
        with pytest.raises(PreconditionNotMet, match="not verified"):
            order_service.staff_clear(ffl_held.order_id, actor=staff.staff_id)

        assert staff_actions.verify_ffl(ffl_held.order_id, staff=staff).status == "paid"

    def test_verify_without_attached_ffl(self, staff_actions, ffl_held, staff):
        with pytest.raises(PreconditionNotMet, match="No FFL attached"):
            staff_actions.verify_ffl(ffl_held.order_id, staff=staff)

    def test_verified_ffl_kept_on_file(self, staff_actions, ffl_held, staff, session, submit):
        """The customer's next firearm checkout is not FFL-held."""
        staff_actions.attach_ffl(ffl_held.order_id, ACTIVE_FFL, staff=staff)
        staff_actions.verify_ffl(ffl_held.order_id, staff=staff)

        on_file = session.scalars(select(CustomerFfl)).all()
        assert [(r.customer_id, r.license_number, r.verified_at) for r in on_file] == [
            ("new-customer", ACTIVE_FFL, NOW)
        ]
        assert submit().status == "paid"

    def test_limit_still_exceeded_moves_to_multi_firearm_hold(
        self, staff_actions, ffl_and_limit_held, staff, gateway
    ):
        order_id = ffl_and_limit_held.order_id
        staff_actions.attach_ffl(order_id, ACTIVE_FFL, staff=staff)

        order = staff_actions.verify_ffl(order_id, staff=staff)

        assert order.status == "hold_multi_firearm"
        assert order.hold_type == "multi_firearm"
        assert order.capture_transaction_id is None
        assert gateway.effects["capture"] == 0


class TestOverrideHold:
    """Tests for overriding the multi-firearm hold."""

    def test_override_then_capture(self, staff_actions, ffl_and_limit_held, staff, session, emitter, crm):
        order_id = ffl_and_limit_held.order_id
        staff_actions.attach_ffl(order_id, ACTIVE_FFL, staff=staff)
        staff_actions.verify_ffl(order_id, staff=staff)

        order = staff_actions.override_hold(order_id, "Collector purchase approved", staff=staff)
        emitter.wait_idle(timeout=5)

        assert order.status == "paid"
        assert order.override_reason == "Collector purchase approved"
        assert order.override_by == staff.staff_id
        assert order.override_at == NOW
        actions = session.scalars(
            select(OrderActivity.action)
            .where(OrderActivity.order_id == order_id)
            .order_by(OrderActivity.order_activity_id)
        ).all()
        assert actions == [
            "create",
            "hold",
            "attach_ffl",
            "verify_ffl",
            "hold",
            "override_hold",
            "staff_clear",
            "capture",
        ]
        assert crm.transitions() == [
            ("created", "hold_ffl"),
            ("hold_ffl", "hold_multi_firearm"),
            ("hold_multi_firearm", "cleared"),
            ("cleared", "paid"),
        ]

    def test_override_on_direct_multi_firearm_hold(self, staff_actions, verified_ffl_on_file, submit, staff):
        verified_ffl_on_file("regular")
        order = submit("regular", quantity=6)
        assert order.status == "hold_multi_firearm"

        assert staff_actions.override_hold(order.order_id, "Approved", staff=staff).status == "paid"

    def test_reattached_ffl_must_be_verified_before_override(
        self, staff_actions, verified_ffl_on_file, submit, staff, gateway
    ):
        """Re-attaching a dealer to a multi-firearm hold blocks the override until verified."""
        verified_ffl_on_file("regular")
        order = submit("regular", quantity=6)
        staff_actions.attach_ffl(order.order_id, ACTIVE_FFL, staff=staff)

        with pytest.raises(PreconditionNotMet, match="not verified"):
            staff_actions.override_hold(order.order_id, "Approved", staff=staff)
        assert gateway.effects["capture"] == 0

        staff_actions.verify_ffl(order.order_id, staff=staff)
        order = staff_actions.override_hold(order.order_id, "Approved", staff=staff)

        assert order.status == "paid"
        assert order.ffl_status == "verified"

    def test_reason_required(self, staff_actions, ffl_held, staff):
        with pytest.raises(ValidationError):
            staff_actions.override_hold(ffl_held.order_id, "   ", staff=staff)

    def test_ffl_hold_cannot_be_overridden(self, staff_actions, ffl_held, staff, gateway):
        with pytest.raises(PreconditionNotMet, match="multi-firearm"):
            staff_actions.override_hold(ffl_held.order_id, "Trust me", staff=staff)
        assert gateway.effects["capture"] == 0


class TestForceVoid:
    """Tests for staff cancellation."""

    def test_force_void(self, staff_actions, ffl_held, staff, gateway):
        order = staff_actions.force_void(ffl_held.order_id, "Fraud suspected", staff=staff)

        assert order.status == "voided"
        assert order.void_reason == "Fraud suspected"
        assert gateway.status_of(order.auth_transaction_id) == "voided"

    def test_reason_required(self, staff_actions, ffl_held, staff):
        with pytest.raises(ValidationError):
            staff_actions.force_void(ffl_held.order_id, "", staff=staff)
