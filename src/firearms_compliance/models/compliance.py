"""Compliance policy model.

Every policy update inserts a new version and deactivates the previous one,
so exactly one row is active and older versions remain for audit.
"""

from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from firearms_compliance.models.base import Base, TimestampMixin


class ComplianceSettingsRecord(Base, TimestampMixin):
    """A version of the firearms purchase policy."""

    __tablename__ = "compliance_settings"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    window_days: Mapped[int] = mapped_column(Integer, nullable=False)
    firearm_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    multi_firearm_hold_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ffl_hold_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_by: Mapped[str] = mapped_column(String(64), nullable=False, default="system")

    __table_args__ = (
        CheckConstraint("window_days > 0", name="compliance_settings_window_ck"),
        CheckConstraint("firearm_limit > 0", name="compliance_settings_limit_ck"),
    )
