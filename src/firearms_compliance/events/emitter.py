"""Fire-and-forget CRM sync of order transitions.

The emitter provides:
- Non-blocking dispatch on a small thread pool
- Error isolation (a failing CRM never reaches order mutation code)
- A retry queue with exponential backoff, drained by the maintenance loop
- A dead-letter list once the attempt budget is spent
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from firearms_compliance.config import SyncConfig
from firearms_compliance.events.types import OrderStatusChanged
from firearms_compliance.time_utils import Clock, utcnow

if TYPE_CHECKING:
    from firearms_compliance.models import Order

logger = logging.getLogger(__name__)


@runtime_checkable
class CrmSyncClient(Protocol):
    """Outbound CRM integration (implemented outside this service)."""

    def sync_order_status(self, event: OrderStatusChanged) -> None:
        """Push an order transition to the CRM. May raise on failure."""
        ...


class LoggingCrmSync:
    """Default client: records the transition in the log only."""

    def sync_order_status(self, event: OrderStatusChanged) -> None:
        logger.info(
            "CRM sync: order %s %s -> %s (deal stage %s)",
            event.order_number,
            event.previous_status,
            event.new_status,
            event.deal_stage,
        )


@dataclass
class PendingDelivery:
    """An event waiting for (re)delivery."""

    event: OrderStatusChanged
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None


class ExternalSyncEmitter:
    """Best-effort notifier for order status transitions.

    Usage:
        emitter = ExternalSyncEmitter(LoggingCrmSync())

        # Called by the order workflow after each committed transition.
        emitter.notify(order, "hold_ffl", "paid")

        # Called periodically by the maintenance loop.
        emitter.retry_failed()
    """

    def __init__(
        self,
        client: CrmSyncClient,
        config: SyncConfig | None = None,
        clock: Clock = utcnow,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.client = client
        self.config = config or SyncConfig()
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="crm-sync",
        )
        self._lock = threading.Lock()
        self._inflight: set[Future[None]] = set()
        self._retry_queue: list[PendingDelivery] = []
        self._dead_letters: list[PendingDelivery] = []

    def notify(
        self,
        order: Order,
        previous_status: str,
        new_status: str,
        *,
        actor: str = "system",
    ) -> None:
        """Queue a transition for delivery. Never raises, never blocks on the CRM."""
        try:
            event = OrderStatusChanged.from_order(order, previous_status, new_status, actor=actor)
            self._dispatch(PendingDelivery(event=event))
        except Exception:
            logger.exception(
                "Failed to queue CRM sync for order %s (%s -> %s)",
                getattr(order, "order_id", None),
                previous_status,
                new_status,
            )

    def retry_failed(self, now: datetime | None = None) -> int:
        """Redeliver queued events whose backoff has elapsed.

        Returns the number of deliveries dispatched.
        """
        now = now or self.clock()
        with self._lock:
            due = [d for d in self._retry_queue if d.next_attempt_at is None or d.next_attempt_at <= now]
            self._retry_queue = [d for d in self._retry_queue if d not in due]

        for delivery in due:
            self._dispatch(delivery)
        return len(due)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until in-flight deliveries finish. Returns False on timeout."""
        with self._lock:
            pending = set(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)

    @property
    def pending_retries(self) -> list[PendingDelivery]:
        with self._lock:
            return list(self._retry_queue)

    @property
    def dead_letters(self) -> list[PendingDelivery]:
        with self._lock:
            return list(self._dead_letters)

    def _dispatch(self, delivery: PendingDelivery) -> None:
        future = self._executor.submit(self._deliver, delivery)
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._inflight.discard(future)

    def _deliver(self, delivery: PendingDelivery) -> None:
        delivery.attempts += 1
        event = delivery.event
        try:
            self.client.sync_order_status(event)
        except Exception as e:
            delivery.last_error = str(e)
            if delivery.attempts >= self.config.max_attempts:
                logger.error(
                    "CRM sync for order %s (%s -> %s) dead-lettered after %s attempts: %s",
                    event.order_number,
                    event.previous_status,
                    event.new_status,
                    delivery.attempts,
                    e,
                )
                with self._lock:
                    self._dead_letters.append(delivery)
                return

            delay = self.config.retry_base_seconds * (2 ** (delivery.attempts - 1))
            delivery.next_attempt_at = self.clock() + timedelta(seconds=delay)
            logger.warning(
                "CRM sync for order %s failed (attempt %s/%s), retrying after %s: %s",
                event.order_number,
                delivery.attempts,
                self.config.max_attempts,
                delivery.next_attempt_at.isoformat(),
                e,
            )
            with self._lock:
                self._retry_queue.append(delivery)
