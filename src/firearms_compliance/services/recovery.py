"""Recovery pass run by the maintenance loop and the ``reconcile`` command.

1. Replays gateway calls whose outcome was never confirmed (stale
   ``pending_operation`` markers left by a crash).
2. Retries captures and voids parked because the gateway was unavailable,
   up to ``max_attempts`` consecutive failures. Declined calls and orders
   past the cap are left for staff and listed in ``needs_staff``.
3. Redelivers CRM notifications whose backoff has elapsed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from firearms_compliance.exceptions import ComplianceServiceError
from firearms_compliance.models import Order
from firearms_compliance.services.order_service import OrderService
from firearms_compliance.services.state_machine import (
    InvalidTransitionError,
    OrderStatus,
    PaymentFailure,
)
from firearms_compliance.time_utils import Clock, utcnow

if TYPE_CHECKING:
    from firearms_compliance.events.emitter import ExternalSyncEmitter

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """What one recovery pass did."""

    resumed: list[UUID] = field(default_factory=list)
    captures_retried: list[UUID] = field(default_factory=list)
    voids_retried: list[UUID] = field(default_factory=list)
    syncs_redelivered: int = 0
    errors: list[str] = field(default_factory=list)
    # Parked orders recovery will not touch; not counted as work done.
    needs_staff: list[UUID] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.resumed
            or self.captures_retried
            or self.voids_retried
            or self.syncs_redelivered
            or self.errors
        )


class RecoveryService:
    """Drives orders stuck mid-payment back to a settled state."""

    def __init__(
        self,
        session: Session,
        order_service: OrderService,
        emitter: ExternalSyncEmitter | None = None,
        *,
        pending_stale_seconds: int = 300,
        max_attempts: int = 5,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.order_service = order_service
        self.emitter = emitter
        self.pending_stale_seconds = pending_stale_seconds
        self.max_attempts = max_attempts
        self.clock = clock

    def run_once(self) -> RecoveryReport:
        report = RecoveryReport()

        for order_id in self.stale_pending_orders():
            if self._attempt(report, order_id, "resume", self.order_service.resume_pending):
                report.resumed.append(order_id)

        # Orders resumed above already had their gateway call this pass.
        for order_id in self._orders_in(OrderStatus.CAPTURE_FAILED, report, skip=report.resumed):
            if self._attempt(report, order_id, "retry capture", self.order_service.retry_capture):
                report.captures_retried.append(order_id)

        for order_id in self._orders_in(OrderStatus.VOID_FAILED, report, skip=report.resumed):
            if self._attempt(report, order_id, "retry void", self._retry_void):
                report.voids_retried.append(order_id)

        if self.emitter is not None:
            report.syncs_redelivered = self.emitter.retry_failed()

        if not report.is_empty:
            logger.info(
                "Recovery pass: resumed=%s captures=%s voids=%s syncs=%s errors=%s",
                len(report.resumed),
                len(report.captures_retried),
                len(report.voids_retried),
                report.syncs_redelivered,
                len(report.errors),
            )
        return report

    def stale_pending_orders(self) -> list[UUID]:
        """Orders whose gateway call has been unconfirmed for too long."""
        cutoff = self.clock() - timedelta(seconds=self.pending_stale_seconds)
        return list(
            self.session.scalars(
                select(Order.order_id)
                .where(
                    Order.pending_operation.is_not(None),
                    Order.pending_since <= cutoff,
                )
                .order_by(Order.pending_since)
            ).all()
        )

    def _orders_in(
        self, status: OrderStatus, report: RecoveryReport, *, skip: list[UUID]
    ) -> list[UUID]:
        """Parked orders worth retrying; the rest are reported for staff."""
        orders = self.session.scalars(
            select(Order)
            .where(Order.status == status.value, Order.pending_operation.is_(None))
            .order_by(Order.updated_at)
        ).all()

        retry: list[UUID] = []
        for order in orders:
            if order.order_id in skip:
                continue
            if (
                order.failure_kind == PaymentFailure.UNAVAILABLE
                and order.failure_count < self.max_attempts
            ):
                retry.append(order.order_id)
            else:
                report.needs_staff.append(order.order_id)
        return retry

    def _retry_void(self, order_id: UUID, *, actor: str) -> Order:
        return self.order_service.void(order_id, actor=actor)

    def _attempt(self, report: RecoveryReport, order_id: UUID, label: str, operation) -> bool:
        try:
            operation(order_id, actor="recovery")
        except (ComplianceServiceError, InvalidTransitionError) as e:
            logger.warning("Recovery could not %s for order %s: %s", label, order_id, e)
            report.errors.append(f"{order_id}: {e}")
            return False
        return True
