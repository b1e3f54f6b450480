"""Pytest fixtures for firearms compliance tests.

Service tests run against an in-memory SQLite database (single shared
connection) with the stub gateway, a controllable clock and a recording
CRM client.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Callable, Iterator
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from firearms_compliance.compliance import ComplianceConfigStore, ComplianceSettings
from firearms_compliance.config import GatewayRetryConfig, SyncConfig
from firearms_compliance.database import create_schema, make_session_factory
from firearms_compliance.events import ExternalSyncEmitter
from firearms_compliance.ffl import FflListing, StaticFflDirectory
from firearms_compliance.gateway import PaymentGatewayAdapter, StubGateway
from firearms_compliance.models import CustomerFfl, Order, OrderLine
from firearms_compliance.services import (
    CheckoutService,
    OrderLockRegistry,
    OrderService,
    StaffActionService,
    StaffPrincipal,
)

from helpers import ACTIVE_FFL, INACTIVE_FFL, NOW, FakeClock, RecordingCrm


@pytest.fixture
def engine():
    """Create test database engine."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory) -> Iterator[Session]:
    """Create a database session for each test."""
    with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def default_policy() -> ComplianceSettings:
    return ComplianceSettings(
        window_days=30,
        firearm_limit=5,
        multi_firearm_hold_enabled=True,
        ffl_hold_enabled=True,
    )


@pytest.fixture
def config_store(session_factory, default_policy) -> ComplianceConfigStore:
    store = ComplianceConfigStore(session_factory, default_policy)
    store.bootstrap()
    return store


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the adapter (nothing actually sleeps)."""
    return []


@pytest.fixture
def retry_config() -> GatewayRetryConfig:
    return GatewayRetryConfig(max_attempts=3, backoff_base_seconds=0.5, backoff_max_seconds=8.0)


@pytest.fixture
def adapter(session, gateway, retry_config, sleeps) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(session, gateway, retry_config, sleep=sleeps.append)


@pytest.fixture
def crm() -> RecordingCrm:
    return RecordingCrm()


@pytest.fixture
def emitter(crm, clock) -> Iterator[ExternalSyncEmitter]:
    emitter = ExternalSyncEmitter(
        crm,
        SyncConfig(max_workers=1, max_attempts=3, retry_base_seconds=10),
        clock=clock,
    )
    yield emitter
    emitter.shutdown()


@pytest.fixture
def locks() -> OrderLockRegistry:
    return OrderLockRegistry()


@pytest.fixture
def order_service(session, adapter, locks, emitter, clock) -> OrderService:
    return OrderService(session, adapter, locks, emitter, clock=clock)


@pytest.fixture
def ffl_directory() -> StaticFflDirectory:
    return StaticFflDirectory(
        [
            FflListing(license_number=ACTIVE_FFL, business_name="Main Street Firearms"),
            FflListing(license_number=INACTIVE_FFL, business_name="Closed Dealer", is_active=False),
        ]
    )


@pytest.fixture
def staff_actions(session, order_service, ffl_directory, clock) -> StaffActionService:
    return StaffActionService(session, order_service, ffl_directory, clock=clock)


@pytest.fixture
def checkout(session, config_store, order_service, ffl_directory, clock) -> CheckoutService:
    return CheckoutService(
        session, config_store, order_service, ffl_directory=ffl_directory, clock=clock
    )


@pytest.fixture
def staff() -> StaffPrincipal:
    return StaffPrincipal(staff_id="staff-17")


@pytest.fixture
def seed_order(session, clock) -> Callable[..., Order]:
    """Insert a historical order directly, bypassing checkout."""

    def _seed(
        customer_id: str,
        firearm_units: int,
        *,
        days_ago: float = 1,
        status: str = "paid",
        accessory_units: int = 0,
    ) -> Order:
        order_id = uuid4()
        created_at = clock() - timedelta(days=days_ago)
        order = Order(
            order_id=order_id,
            order_number=f"FC-SEED-{order_id.hex[:8].upper()}",
            customer_id=customer_id,
            status=status,
            amount=Decimal("100.00"),
            auth_transaction_id=f"AUTH-SEED-{order_id.hex[:6]}",
            capture_transaction_id=f"CAP-SEED-{order_id.hex[:6]}" if status in ("paid", "fulfilled") else None,
            voided_at=created_at if status == "voided" else None,
            window_days_at_creation=30,
            firearm_limit_at_creation=5,
            settings_version=1,
            created_at=created_at,
            updated_at=created_at,
        )
        lines = []
        if firearm_units:
            lines.append(
                OrderLine(line_no=1, sku="FA-SEED", quantity=firearm_units, unit_price=Decimal("50.00"), is_firearm=True)
            )
        if accessory_units:
            lines.append(
                OrderLine(line_no=2, sku="AC-SEED", quantity=accessory_units, unit_price=Decimal("5.00"), is_firearm=False)
            )
        order.lines = lines
        session.add(order)
        session.commit()
        return order

    return _seed


@pytest.fixture
def verified_ffl_on_file(session, clock) -> Callable[[str], CustomerFfl]:
    """Give a customer a verified FFL so checkouts are not FFL-held."""

    def _add(customer_id: str) -> CustomerFfl:
        record = CustomerFfl(
            customer_id=customer_id,
            license_number=ACTIVE_FFL,
            business_name="Main Street Firearms",
            verified_at=clock(),
            verified_by="staff-1",
        )
        session.add(record)
        session.commit()
        return record

    return _add
