"""Shared test doubles and cart builders."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from firearms_compliance.compliance import CartLine
from firearms_compliance.config import GatewayRetryConfig, Settings, SyncConfig
from firearms_compliance.events import OrderStatusChanged
from firearms_compliance.gateway import PaymentDetails

NOW = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)

ACTIVE_FFL = "1-23-456-78-9A-12345"
INACTIVE_FFL = "9-99-999-99-9Z-99999"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingCrm:
    """CRM client that records events and can be told to fail."""

    def __init__(self) -> None:
        self.events: list[OrderStatusChanged] = []
        self.failures_remaining = 0
        self._lock = threading.Lock()

    def fail_next(self, times: int = 1) -> None:
        self.failures_remaining += times

    def sync_order_status(self, event: OrderStatusChanged) -> None:
        with self._lock:
            if self.failures_remaining > 0:
                self.failures_remaining -= 1
                raise ConnectionError("CRM unavailable")
            self.events.append(event)

    def transitions(self) -> list[tuple[str, str]]:
        with self._lock:
            return [(e.previous_status, e.new_status) for e in self.events]


def card(number: str = "4111111111111111") -> PaymentDetails:
    return PaymentDetails(card_number=number, expiration_date="12/30", cvv="123")


def firearm(quantity: int = 1, price: str = "499.99", sku: str = "FA-100") -> CartLine:
    return CartLine(sku=sku, quantity=quantity, unit_price=Decimal(price), is_firearm=True)


def accessory(quantity: int = 1, price: str = "29.99", sku: str = "AC-200") -> CartLine:
    return CartLine(sku=sku, quantity=quantity, unit_price=Decimal(price), is_firearm=False)


def make_settings(database_url: str = "sqlite://", **overrides) -> Settings:
    """Settings for tests; nothing is read from the environment."""
    values = dict(
        database_url=database_url,
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        compliance_window_days=30,
        compliance_firearm_limit=5,
        feature_multi_firearm_hold=True,
        feature_ffl_hold=True,
        gateway_provider="stub",
        gateway_retry=GatewayRetryConfig(max_attempts=3, backoff_base_seconds=0, backoff_max_seconds=0),
        anet_api_login_id="",
        anet_transaction_key="",
        anet_env="sandbox",
        sync=SyncConfig(max_workers=1, max_attempts=3, retry_base_seconds=10),
        pending_stale_seconds=300,
        recovery_max_attempts=3,
        ffl_directory_path=None,
        maintenance_interval_seconds=0,
    )
    values.update(overrides)
    return Settings(**values)
