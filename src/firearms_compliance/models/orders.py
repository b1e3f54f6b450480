"""Order, order line, payment transaction and audit models.

Orders are never deleted. Payment transactions and activity rows are
append-only audit trails.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from firearms_compliance.models.base import Base, TimestampMixin, UTCDateTime
from firearms_compliance.time_utils import utcnow


class Order(Base, TimestampMixin):
    """A checkout order moving through the compliance/payment lifecycle."""

    __tablename__ = "orders"

    order_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    hold_type: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    multi_firearm_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    auth_transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)
    auth_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    capture_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # FFL dealer reference (the dealer record itself is owned by the directory)
    ffl_license_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ffl_business_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    ffl_status: Mapped[str] = mapped_column(String(32), nullable=False, default="missing")
    ffl_verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ffl_verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Compliance snapshot taken at checkout
    firearms_window_count_at_creation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_days_at_creation: Mapped[int] = mapped_column(Integer, nullable=False)
    firearm_limit_at_creation: Mapped[int] = mapped_column(Integer, nullable=False)
    settings_version: Mapped[int] = mapped_column(Integer, nullable=False)

    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    override_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    override_at: Mapped[datetime | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outbox marker: gateway call intended but not yet confirmed
    pending_operation: Mapped[str | None] = mapped_column(String(16), nullable=True)
    pending_since: Mapped[datetime | None] = mapped_column(nullable=True)

    # Why the last capture or void failed, and how many times in a row
    failure_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )
    cleared_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            """status IN (
                'created', 'hold_ffl', 'hold_multi_firearm', 'cleared', 'paid',
                'fulfilled', 'voided', 'capture_failed', 'void_failed'
            )""",
            name="orders_status_ck",
        ),
        CheckConstraint(
            "hold_type IN ('none', 'ffl_required', 'multi_firearm')",
            name="orders_hold_type_ck",
        ),
        CheckConstraint(
            "ffl_status IN ('missing', 'pending_verification', 'verified')",
            name="orders_ffl_status_ck",
        ),
        CheckConstraint(
            "pending_operation IS NULL OR pending_operation IN ('capture', 'void')",
            name="orders_pending_operation_ck",
        ),
        CheckConstraint(
            "failure_kind IS NULL OR failure_kind IN ('declined', 'unavailable')",
            name="orders_failure_kind_ck",
        ),
        CheckConstraint(
            "capture_transaction_id IS NULL OR voided_at IS NULL",
            name="orders_captured_xor_voided_ck",
        ),
        Index("orders_by_customer_created", "customer_id", "created_at"),
        Index("orders_by_status", "status"),
    )

    lines: Mapped[list[OrderLine]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.line_no",
    )
    activity: Mapped[list[OrderActivity]] = relationship(
        back_populates="order",
        order_by="OrderActivity.created_at",
    )

    @property
    def firearm_units(self) -> int:
        """Firearm units on this order."""
        return sum(line.quantity for line in self.lines if line.is_firearm)


class OrderLine(Base):
    """A line item on an order.

    ``is_firearm`` is copied from the catalog at order time so later catalog
    changes cannot alter historical compliance accounting.
    """

    __tablename__ = "order_lines"

    order_line_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_firearm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_lines_quantity_ck"),
        CheckConstraint("unit_price >= 0", name="order_lines_unit_price_ck"),
        Index("order_lines_by_order", "order_id"),
    )

    order: Mapped[Order] = relationship(back_populates="lines")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class PaymentTransaction(Base, TimestampMixin):
    """One logical call to the payment gateway. Immutable once written."""

    __tablename__ = "payment_transactions"

    payment_transaction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    # No FK: declined authorizations reference orders that were never written.
    related_order_id: Mapped[UUID] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    result: Mapped[str] = mapped_column(String(16), nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    already_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("kind IN ('authorize', 'capture', 'void')", name="payment_tx_kind_ck"),
        CheckConstraint(
            "result IN ('approved', 'declined', 'error')", name="payment_tx_result_ck"
        ),
        Index("payment_tx_by_order", "related_order_id", "created_at"),
    )


class OrderActivity(Base, TimestampMixin):
    """Append-only audit log of order transitions and staff actions."""

    __tablename__ = "order_activity"

    order_activity_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[UUID] = mapped_column(
        ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("order_activity_by_order", "order_id"),)

    order: Mapped[Order] = relationship(back_populates="activity")


class CustomerFfl(Base, TimestampMixin):
    """A customer's FFL dealer on file."""

    __tablename__ = "customer_ffls"

    customer_ffl_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    license_number: Mapped[str] = mapped_column(String(32), nullable=False)
    business_name: Mapped[str] = mapped_column(Text, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("customer_id", "license_number", name="customer_ffls_uq"),
        Index("customer_ffls_by_customer", "customer_id"),
    )
