"""Tests for CRM sync events and the fire-and-forget emitter."""

import json
import logging
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from firearms_compliance.config import SyncConfig
from firearms_compliance.events import (
    DEAL_STAGES,
    ExternalSyncEmitter,
    LoggingCrmSync,
    OrderStatusChanged,
    deal_stage_for,
)
from firearms_compliance.models import Order
from firearms_compliance.services import OrderStatus

from helpers import NOW


@pytest.fixture
def order():
    order_id = uuid4()
    return Order(
        order_id=order_id,
        order_number="FC-20240305-ABC123",
        customer_id="cust-1",
        status="paid",
        hold_type="ffl_required",
        amount=Decimal("499.99"),
        auth_transaction_id="AUTH-1",
        capture_transaction_id="CAP-1",
        ffl_license_number="1-23-456-78-9A-12345",
    )


class TestOrderStatusChanged:
    """Tests for the event snapshot."""

    def test_snapshot_from_order(self, order):
        event = OrderStatusChanged.from_order(order, "cleared", "paid", actor="staff-1")

        assert event.order_id == order.order_id
        assert event.previous_status == "cleared"
        assert event.new_status == "paid"
        assert event.deal_stage == "Ready to Fulfill"
        assert event.metadata.actor == "staff-1"
        assert event.metadata.correlation_id == order.order_id
        assert event.event_type == "OrderStatusChanged"

    def test_snapshot_is_not_affected_by_later_changes(self, order):
        event = OrderStatusChanged.from_order(order, "cleared", "paid")
        order.capture_transaction_id = "CAP-2"

        assert event.capture_transaction_id == "CAP-1"

    def test_json_serialization(self, order):
        data = json.loads(OrderStatusChanged.from_order(order, "cleared", "paid").to_json())

        assert data["order_id"] == str(order.order_id)
        assert data["amount"] == "499.99"
        assert data["metadata"]["source_service"] == "firearms_compliance"
        assert data["event_type"] == "OrderStatusChanged"

    def test_every_status_has_a_deal_stage(self):
        assert set(DEAL_STAGES) == {s.value for s in OrderStatus}
        assert deal_stage_for("voided") == "Closed Lost"
        assert deal_stage_for("hold_ffl") == "Pending FFL"


class TestExternalSyncEmitter:
    """Tests for delivery, retry and dead-lettering."""

    def test_delivers_in_background(self, emitter, crm, order):
        emitter.notify(order, "cleared", "paid")

        assert emitter.wait_idle(timeout=5)
        assert crm.transitions() == [("cleared", "paid")]

    def test_failure_never_reaches_caller(self, emitter, crm, order):
        crm.fail_next()

        emitter.notify(order, "cleared", "paid")
        emitter.wait_idle(timeout=5)

        assert crm.events == []
        (pending,) = emitter.pending_retries
        assert pending.attempts == 1
        assert pending.last_error == "CRM unavailable"
        assert pending.next_attempt_at == NOW + timedelta(seconds=10)

    def test_retry_waits_for_backoff(self, emitter, crm, order, clock):
        crm.fail_next()
        emitter.notify(order, "cleared", "paid")
        emitter.wait_idle(timeout=5)

        assert emitter.retry_failed() == 0

        clock.advance(seconds=10)
        assert emitter.retry_failed() == 1
        emitter.wait_idle(timeout=5)

        assert crm.transitions() == [("cleared", "paid")]
        assert emitter.pending_retries == []

    def test_backoff_doubles(self, emitter, crm, order, clock):
        crm.fail_next(times=2)
        emitter.notify(order, "cleared", "paid")
        emitter.wait_idle(timeout=5)

        clock.advance(seconds=10)
        emitter.retry_failed()
        emitter.wait_idle(timeout=5)

        (pending,) = emitter.pending_retries
        assert pending.attempts == 2
        assert pending.next_attempt_at == clock() + timedelta(seconds=20)

    def test_dead_letter_after_budget(self, emitter, crm, order, clock, caplog):
        crm.fail_next(times=10)
        emitter.notify(order, "cleared", "paid")
        emitter.wait_idle(timeout=5)

        with caplog.at_level(logging.ERROR, logger="firearms_compliance.events.emitter"):
            for _ in range(2):
                clock.advance(hours=1)
                emitter.retry_failed()
                emitter.wait_idle(timeout=5)

        assert emitter.pending_retries == []
        (dead,) = emitter.dead_letters
        assert dead.attempts == 3
        assert "dead-lettered" in caplog.text

    def test_broken_order_is_logged_not_raised(self, emitter, caplog):
        with caplog.at_level(logging.ERROR):
            emitter.notify(object(), "cleared", "paid")

        assert "Failed to queue CRM sync" in caplog.text

    def test_logging_client(self, order, clock, caplog):
        emitter = ExternalSyncEmitter(LoggingCrmSync(), SyncConfig(max_workers=1), clock=clock)
        try:
            with caplog.at_level(logging.INFO, logger="firearms_compliance.events.emitter"):
                emitter.notify(order, "cleared", "paid")
                emitter.wait_idle(timeout=5)
        finally:
            emitter.shutdown()

        assert "Ready to Fulfill" in caplog.text

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            SyncConfig(max_attempts=0)
