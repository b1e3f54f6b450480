"""Staff operations on held orders.

Authentication and role checks happen before these methods are reached;
callers pass the already-authenticated StaffPrincipal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from firearms_compliance.compliance.evaluator import HoldType
from firearms_compliance.exceptions import FflNotFoundError, PreconditionNotMet, ValidationError
from firearms_compliance.ffl import FflDirectory, normalize_license_number
from firearms_compliance.models import CustomerFfl, Order
from firearms_compliance.services.order_service import OrderService
from firearms_compliance.services.state_machine import FflStatus, OrderStateMachine, OrderStatus
from firearms_compliance.time_utils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaffPrincipal:
    """An authenticated staff member."""

    staff_id: str

    def __post_init__(self) -> None:
        if not self.staff_id or not self.staff_id.strip():
            raise ValidationError("staff_id is required", field="staff_id")


class StaffActionService:
    """Attach FFL, verify FFL, override hold and force-void.

    All mutations go through OrderService under the per-order lock.
    """

    def __init__(
        self,
        session: Session,
        order_service: OrderService,
        ffl_directory: FflDirectory,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.order_service = order_service
        self.ffl_directory = ffl_directory
        self.clock = clock

    def attach_ffl(self, order_id: UUID, license_number: str, *, staff: StaffPrincipal) -> Order:
        """Attach an FFL dealer to the order. Does not clear the hold."""
        license_number = normalize_license_number(license_number)
        if not license_number:
            raise ValidationError("license_number is required", field="license_number")

        listing = self.ffl_directory.lookup(license_number)
        if listing is None:
            raise FflNotFoundError(license_number)
        if not listing.is_active:
            raise PreconditionNotMet(order_id, f"FFL {license_number} is not active")

        with self.order_service.locked(order_id) as order:
            if OrderStateMachine.is_terminal(order.status):
                raise PreconditionNotMet(order_id, f"Order is {order.status}")

            order.ffl_license_number = license_number
            order.ffl_business_name = listing.business_name
            order.ffl_status = FflStatus.PENDING_VERIFICATION.value
            order.ffl_verified_at = None
            order.ffl_verified_by = None
            self.order_service.record_activity(
                order,
                "attach_ffl",
                order.status,
                staff.staff_id,
                note=f"{license_number} {listing.business_name}",
            )
            self.session.commit()

        logger.info("FFL %s attached to order %s by %s", license_number, order.order_number, staff.staff_id)
        return order

    def verify_ffl(self, order_id: UUID, *, staff: StaffPrincipal) -> Order:
        """Mark the attached FFL verified and resolve the FFL hold.

        If the purchase limit was also exceeded the order moves on to the
        multi-firearm hold instead of being cleared.
        """
        with self.order_service.locked(order_id) as order:
            self.order_service.ensure_not_pending(order)
            if not order.ffl_license_number:
                raise PreconditionNotMet(order_id, "No FFL attached")
            if OrderStateMachine.is_terminal(order.status):
                raise PreconditionNotMet(order_id, f"Order is {order.status}")

            now = self.clock()
            order.ffl_status = FflStatus.VERIFIED.value
            order.ffl_verified_at = now
            order.ffl_verified_by = staff.staff_id
            self._remember_customer_ffl(order, staff)
            self.order_service.record_activity(
                order, "verify_ffl", order.status, staff.staff_id, note=order.ffl_license_number
            )

            if order.status != OrderStatus.HOLD_FFL:
                self.session.commit()
                logger.info("FFL verified on order %s (status %s)", order.order_number, order.status)
                return order

            if order.multi_firearm_flagged and order.override_at is None:
                order.hold_type = HoldType.MULTI_FIREARM.value
                previous = self.order_service.transition(
                    order,
                    OrderStatus.HOLD_MULTI_FIREARM,
                    action="hold",
                    actor=staff.staff_id,
                    note="Purchase limit still exceeded",
                )
                self.session.commit()
                logger.info(
                    "FFL verified on order %s; moved to multi-firearm hold", order.order_number
                )
                self.order_service.notify(order, previous, order.status, staff.staff_id)
                return order

            self.session.commit()
            return self.order_service.staff_clear(order_id, actor=staff.staff_id)

    def override_hold(self, order_id: UUID, reason: str, *, staff: StaffPrincipal) -> Order:
        """Bypass a multi-firearm hold, recording the reason, then clear it.

        An unverified FFL hold can never be overridden.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Override reason is required", field="reason")

        with self.order_service.locked(order_id) as order:
            if order.status != OrderStatus.HOLD_MULTI_FIREARM:
                raise PreconditionNotMet(
                    order_id,
                    f"Only a multi-firearm hold can be overridden (status '{order.status}')",
                )
            if order.ffl_license_number and order.ffl_status != FflStatus.VERIFIED:
                raise PreconditionNotMet(
                    order_id, f"Attached FFL {order.ffl_license_number} is not verified"
                )

            order.override_reason = reason
            order.override_by = staff.staff_id
            order.override_at = self.clock()
            self.order_service.record_activity(
                order, "override_hold", order.status, staff.staff_id, note=reason
            )
            self.session.commit()
            logger.warning(
                "Multi-firearm hold on order %s overridden by %s: %s",
                order.order_number,
                staff.staff_id,
                reason,
            )
            return self.order_service.staff_clear(order_id, actor=staff.staff_id)

    def force_void(self, order_id: UUID, reason: str, *, staff: StaffPrincipal) -> Order:
        """Cancel an open order and release its authorization."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Void reason is required", field="reason")
        return self.order_service.void(order_id, actor=staff.staff_id, reason=reason)

    def _remember_customer_ffl(self, order: Order, staff: StaffPrincipal) -> None:
        """Record the order's FFL as the customer's verified FFL on file."""
        record = self.session.scalars(
            select(CustomerFfl).where(
                CustomerFfl.customer_id == order.customer_id,
                CustomerFfl.license_number == order.ffl_license_number,
            )
        ).first()
        if record is None:
            record = CustomerFfl(
                customer_id=order.customer_id,
                license_number=order.ffl_license_number,
                business_name=order.ffl_business_name or "",
            )
            self.session.add(record)
        record.verified_at = order.ffl_verified_at
        record.verified_by = staff.staff_id
