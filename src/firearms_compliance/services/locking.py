"""Per-order mutual exclusion for mutating operations.

The in-process lock serializes workers inside one service instance; the
order row is additionally read ``FOR UPDATE`` so separate processes sharing a
PostgreSQL database serialize on the row as well.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from firearms_compliance.exceptions import OrderNotFoundError
from firearms_compliance.models import Order


class OrderLockRegistry:
    """Reference-counted re-entrant lock per order id.

    Entries are dropped once no thread holds or waits on them, so the
    registry does not grow with the number of orders ever touched.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, tuple[threading.RLock, int]] = {}

    @contextmanager
    def hold(self, order_id: UUID) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(order_id, (threading.RLock(), 0))
            self._locks[order_id] = (lock, refs + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[order_id]
                if refs <= 1:
                    del self._locks[order_id]
                else:
                    self._locks[order_id] = (lock, refs - 1)

    def active_count(self) -> int:
        """Number of orders currently locked or awaited."""
        with self._guard:
            return len(self._locks)


def lock_order(session: Session, order_id: UUID) -> Order:
    """Load an order with its lines, locking the row for update.

    Raises OrderNotFoundError if the order does not exist.
    """
    order = session.scalar(
        select(Order)
        .where(Order.order_id == order_id)
        .options(selectinload(Order.lines))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if order is None:
        raise OrderNotFoundError(order_id)
    return order
