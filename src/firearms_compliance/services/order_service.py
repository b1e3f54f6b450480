"""Order service - lifecycle orchestration for checkout orders.

Every capture and void follows write-then-call-then-confirm:
1. Under the per-order lock, record the intended gateway operation on the
   order (``pending_operation``) and commit.
2. Call the gateway through the adapter (bounded retries, stable key).
3. Record the outcome, clear the marker and commit.

A crash between 1 and 3 leaves the marker in place. ``resume_pending``
replays the call with the same idempotency key, so the gateway applies it at
most once.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterator
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from firearms_compliance.compliance.evaluator import CartLine, HoldDecision
from firearms_compliance.exceptions import (
    OrderBusyError,
    OrderNotFoundError,
    PaymentDeclinedError,
    PaymentUnavailableError,
    PreconditionNotMet,
)
from firearms_compliance.ffl import FflDealerRef
from firearms_compliance.gateway.adapter import PaymentGatewayAdapter
from firearms_compliance.gateway.base import Declined, GatewayError, PaymentDetails
from firearms_compliance.models import Order, OrderActivity, OrderLine, PaymentTransaction
from firearms_compliance.services.locking import OrderLockRegistry, lock_order
from firearms_compliance.services.state_machine import (
    FflStatus,
    InvalidTransitionError,
    OrderStateMachine,
    OrderStatus,
    PaymentFailure,
    status_for_hold,
)
from firearms_compliance.time_utils import Clock, utcnow

if TYPE_CHECKING:
    from firearms_compliance.events.emitter import ExternalSyncEmitter

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class OrderDraft:
    """Everything needed to create an order, validated by checkout."""

    customer_id: str
    lines: tuple[CartLine, ...]
    payment_details: PaymentDetails
    currency: str = "USD"
    ffl: FflDealerRef | None = None
    order_id: UUID = field(default_factory=uuid4)

    @property
    def amount(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0")).quantize(CENTS)


def generate_order_number(order_id: UUID, created_at: datetime) -> str:
    """Human readable order number, e.g. ``FC-20240305-3FA9C1``."""
    return f"FC-{created_at:%Y%m%d}-{order_id.hex[:6].upper()}"


class OrderService:
    """Service for managing the order lifecycle.

    Operations:
    - create: authorize, persist, then capture or place on hold
    - staff_clear: resolve a hold whose condition is satisfied, then capture
    - retry_capture: capture again from capture_failed
    - void: release the authorization of an open order
    - fulfill: mark a paid order fulfilled
    - resume_pending: replay a gateway call whose outcome was never confirmed
    """

    def __init__(
        self,
        session: Session,
        adapter: PaymentGatewayAdapter,
        locks: OrderLockRegistry,
        emitter: ExternalSyncEmitter | None = None,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.adapter = adapter
        self.locks = locks
        self.emitter = emitter
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: UUID) -> Order:
        """Load an order with lines and activity."""
        order = self.session.scalar(
            select(Order)
            .where(Order.order_id == order_id)
            .options(selectinload(Order.lines), selectinload(Order.activity))
        )
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_transactions(self, order_id: UUID) -> list[PaymentTransaction]:
        """Payment transaction trail for an order, oldest first."""
        return list(
            self.session.scalars(
                select(PaymentTransaction)
                .where(PaymentTransaction.related_order_id == order_id)
                .order_by(PaymentTransaction.created_at)
            ).all()
        )

    @contextmanager
    def locked(self, order_id: UUID) -> Iterator[Order]:
        """Serialize on the order and yield it freshly loaded.

        Uncommitted changes are rolled back if the block raises.
        """
        with self.locks.hold(order_id):
            try:
                yield lock_order(self.session, order_id)
            except Exception:
                self.session.rollback()
                raise

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create(
        self,
        draft: OrderDraft,
        decision: HoldDecision,
        *,
        actor: str = "checkout",
    ) -> Order:
        """Authorize payment and create the order in its initial state.

        Raises:
            PaymentDeclinedError: the gateway declined; no order was written.
            PaymentUnavailableError: the gateway stayed unavailable; no order
                was written.
        """
        order_id = draft.order_id
        amount = draft.amount

        try:
            auth = self.adapter.authorize(order_id, amount, draft.payment_details)
        except Declined as e:
            # Keep the declined attempt in the transaction trail.
            self.session.commit()
            raise PaymentDeclinedError(str(e), reason_code=e.reason_code) from e
        except GatewayError as e:
            self.session.commit()
            if e.transaction_id:
                # An earlier attempt went through but its answer was lost.
                self._release_orphaned_authorization(order_id, e.transaction_id)
            else:
                logger.error(
                    "Authorization outcome unknown for order %s; reconcile key %s",
                    order_id,
                    self.adapter.authorize_key(order_id),
                )
            raise PaymentUnavailableError(f"Payment gateway unavailable: {e}") from e

        now = self.clock()
        order = Order(
            order_id=order_id,
            order_number=generate_order_number(order_id, now),
            customer_id=draft.customer_id,
            status=OrderStatus.CREATED.value,
            hold_type=decision.hold_type.value,
            multi_firearm_flagged=decision.multi_firearm_exceeded,
            amount=amount,
            currency=draft.currency,
            auth_transaction_id=auth.transaction_id,
            auth_expires_at=auth.expires_at,
            firearms_window_count_at_creation=decision.firearm_count_in_window,
            window_days_at_creation=decision.window_days,
            firearm_limit_at_creation=decision.limit_at_evaluation,
            settings_version=decision.settings_version,
            created_at=now,
            updated_at=now,
        )
        if draft.ffl is not None:
            order.ffl_license_number = draft.ffl.license_number
            order.ffl_business_name = draft.ffl.business_name
            order.ffl_status = draft.ffl.status
            if draft.ffl.status == FflStatus.VERIFIED:
                order.ffl_verified_at = now
                order.ffl_verified_by = "on_file"

        order.lines = [
            OrderLine(
                line_no=line_no,
                sku=line.sku,
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                is_firearm=line.is_firearm,
            )
            for line_no, line in enumerate(draft.lines, start=1)
        ]
        self.session.add(order)
        self.record_activity(order, "create", None, actor, note=decision.reason)

        if decision.requires_hold:
            self.transition(
                order,
                status_for_hold(decision.hold_type),
                action="hold",
                actor=actor,
                note=decision.reason,
            )
        else:
            self._mark_pending(order, "capture")

        try:
            # Order row and its authorize transaction commit together.
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(
                "Failed to persist order %s after authorization %s; releasing it",
                order_id,
                auth.transaction_id,
            )
            self._release_orphaned_authorization(order_id, auth.transaction_id)
            raise

        logger.info(
            "Created order %s for customer %s: status=%s hold=%s amount=%s",
            order.order_number,
            order.customer_id,
            order.status,
            order.hold_type,
            order.amount,
        )

        if decision.requires_hold:
            self.notify(order, OrderStatus.CREATED.value, order.status, actor)
            return order

        with self.locks.hold(order_id):
            return self._perform_capture(order, actor=actor)

    def staff_clear(self, order_id: UUID, *, actor: str) -> Order:
        """Clear a hold whose condition is satisfied and capture payment.

        Raises:
            PreconditionNotMet: FFL not attached and verified, or limit
                exceeded without an override.
            InvalidTransitionError: the order is not on hold.
            OrderBusyError: a gateway call for the order is unconfirmed.
        """
        with self.locked(order_id) as order:
            self.ensure_not_pending(order)

            if order.capture_transaction_id is not None:
                logger.warning(
                    "Order %s already captured (%s); clear is a no-op",
                    order.order_number,
                    order.capture_transaction_id,
                )
                return order

            if not OrderStateMachine.is_hold(order.status):
                raise InvalidTransitionError(
                    order.status, OrderStatus.CLEARED.value, "Order is not on hold"
                )

            blockers = OrderStateMachine.clear_blockers(order)
            if blockers:
                raise PreconditionNotMet(order_id, "; ".join(blockers))

            previous = self.transition(order, OrderStatus.CLEARED, action="staff_clear", actor=actor)
            order.cleared_at = self.clock()
            self._mark_pending(order, "capture")
            self.session.commit()
            logger.info("Order %s cleared by %s", order.order_number, actor)
            self.notify(order, previous, order.status, actor)

            return self._perform_capture(order, actor=actor)

    def retry_capture(self, order_id: UUID, *, actor: str = "system") -> Order:
        """Capture again an order parked in capture_failed."""
        with self.locked(order_id) as order:
            self.ensure_not_pending(order)

            if order.capture_transaction_id is not None:
                logger.warning(
                    "Order %s already captured (%s); retry is a no-op",
                    order.order_number,
                    order.capture_transaction_id,
                )
                return order

            if order.status != OrderStatus.CAPTURE_FAILED:
                raise InvalidTransitionError(
                    order.status, OrderStatus.PAID.value, "Only failed captures can be retried"
                )

            self._mark_pending(order, "capture")
            self.session.commit()
            return self._perform_capture(order, actor=actor)

    def void(self, order_id: UUID, *, actor: str, reason: str | None = None) -> Order:
        """Release the authorization of an open order.

        Voiding an already voided order is a no-op. Captured orders are
        rejected; returning captured funds is a refund, handled elsewhere.
        """
        with self.locked(order_id) as order:
            self.ensure_not_pending(order)

            if order.voided_at is not None:
                logger.warning("Order %s already voided; void is a no-op", order.order_number)
                return order

            if order.capture_transaction_id is not None or order.status in OrderStateMachine.CAPTURED:
                raise InvalidTransitionError(
                    order.status, OrderStatus.VOIDED.value, "Captured orders must be refunded"
                )
            OrderStateMachine.validate_transition(order.status, OrderStatus.VOIDED.value)

            if reason:
                order.void_reason = reason
            self._mark_pending(order, "void")
            self.session.commit()
            return self._perform_void(order, actor=actor)

    def fulfill(self, order_id: UUID, *, actor: str) -> Order:
        """Mark a paid order fulfilled (terminal)."""
        with self.locked(order_id) as order:
            previous = self.transition(order, OrderStatus.FULFILLED, action="fulfill", actor=actor)
            self.session.commit()
            logger.info("Order %s fulfilled by %s", order.order_number, actor)
            self.notify(order, previous, order.status, actor)
            return order

    def resume_pending(self, order_id: UUID, *, actor: str = "recovery") -> Order:
        """Replay an unconfirmed capture or void with its original idempotency key."""
        with self.locked(order_id) as order:
            operation = order.pending_operation
            if operation is None:
                return order

            logger.warning(
                "Resuming unconfirmed %s for order %s (pending since %s)",
                operation,
                order.order_number,
                order.pending_since,
            )
            if operation == "capture":
                return self._perform_capture(order, actor=actor)
            return self._perform_void(order, actor=actor)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def record_activity(
        self,
        order: Order,
        action: str,
        from_status: str | None,
        actor: str,
        *,
        note: str | None = None,
    ) -> OrderActivity:
        """Append an audit row for the order's current status."""
        activity = OrderActivity(
            order_id=order.order_id,
            action=action,
            from_status=from_status,
            to_status=order.status,
            actor=actor,
            note=note,
            created_at=self.clock(),
        )
        self.session.add(activity)
        return activity

    def _perform_capture(self, order: Order, *, actor: str) -> Order:
        """Call the gateway for an order whose capture intent is committed."""
        previous = order.status
        try:
            outcome = self.adapter.capture(
                order.order_id, order.auth_transaction_id, order.amount
            )
        except (Declined, GatewayError) as e:
            self._clear_pending(order)
            self._record_failure(order, e, OrderStatus.CAPTURE_FAILED)
            self.transition(
                order, OrderStatus.CAPTURE_FAILED, action="capture_failed", actor=actor, note=str(e)
            )
            self.session.commit()
            logger.error(
                "Capture failed for order %s; parked in capture_failed: %s", order.order_number, e
            )
            self.notify(order, previous, order.status, actor)
            return order

        order.capture_transaction_id = outcome.capture_transaction_id
        if order.cleared_at is None:
            order.cleared_at = self.clock()
        self._clear_pending(order)
        self._clear_failure(order)
        self.transition(
            order,
            OrderStatus.PAID,
            action="capture",
            actor=actor,
            note="already captured by an earlier call" if outcome.already_applied else None,
        )
        self.session.commit()
        logger.info(
            "Order %s paid (capture %s)", order.order_number, order.capture_transaction_id
        )
        self.notify(order, previous, order.status, actor)
        return order

    def _perform_void(self, order: Order, *, actor: str) -> Order:
        """Call the gateway for an order whose void intent is committed."""
        previous = order.status
        try:
            outcome = self.adapter.void(order.order_id, order.auth_transaction_id)
        except (Declined, GatewayError) as e:
            self._clear_pending(order)
            self._record_failure(order, e, OrderStatus.VOID_FAILED)
            self.transition(
                order, OrderStatus.VOID_FAILED, action="void_failed", actor=actor, note=str(e)
            )
            self.session.commit()
            logger.error(
                "Void failed for order %s; parked in void_failed: %s", order.order_number, e
            )
            self.notify(order, previous, order.status, actor)
            return order

        order.voided_at = self.clock()
        self._clear_pending(order)
        self._clear_failure(order)
        self.transition(
            order,
            OrderStatus.VOIDED,
            action="void",
            actor=actor,
            note="already voided by an earlier call" if outcome.already_applied else order.void_reason,
        )
        self.session.commit()
        logger.info("Order %s voided by %s", order.order_number, actor)
        self.notify(order, previous, order.status, actor)
        return order

    def _release_orphaned_authorization(self, order_id: UUID, auth_transaction_id: str) -> None:
        """Best-effort void of an authorization whose order could not be saved."""
        try:
            self.adapter.void(order_id, auth_transaction_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                "Could not void orphaned authorization %s for order %s",
                auth_transaction_id,
                order_id,
            )

    def transition(
        self,
        order: Order,
        to_status: OrderStatus,
        *,
        action: str,
        actor: str,
        note: str | None = None,
    ) -> str:
        """Validate and apply a status change. Returns the previous status."""
        from_status = order.status
        OrderStateMachine.validate_transition(from_status, to_status.value)
        order.status = to_status.value
        self.record_activity(order, action, from_status, actor, note=note)
        return from_status

    def _mark_pending(self, order: Order, operation: str) -> None:
        order.pending_operation = operation
        order.pending_since = self.clock()

    @staticmethod
    def _clear_pending(order: Order) -> None:
        order.pending_operation = None
        order.pending_since = None

    @staticmethod
    def _record_failure(order: Order, error: Exception, parked_status: OrderStatus) -> None:
        """Remember why the gateway call failed; the count resets when the operation changes."""
        if order.status != parked_status.value:
            order.failure_count = 0
        order.failure_kind = (
            PaymentFailure.DECLINED.value
            if isinstance(error, Declined)
            else PaymentFailure.UNAVAILABLE.value
        )
        order.failure_count = (order.failure_count or 0) + 1

    @staticmethod
    def _clear_failure(order: Order) -> None:
        order.failure_kind = None
        order.failure_count = 0

    @staticmethod
    def ensure_not_pending(order: Order) -> None:
        if order.pending_operation is not None:
            raise OrderBusyError(order.order_id, order.pending_operation)

    def notify(self, order: Order, previous_status: str, new_status: str, actor: str) -> None:
        if self.emitter is not None:
            self.emitter.notify(order, previous_status, new_status, actor=actor)
