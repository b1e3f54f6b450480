"""Versioned, hot-reloadable compliance policy store.

The active policy is held as an immutable snapshot. Readers get the last
committed snapshot without touching the database; writers serialize on a
lock, persist a new version, then swap the snapshot. An evaluation that
already holds a snapshot keeps using it, so updates apply prospectively.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from firearms_compliance.exceptions import ValidationError
from firearms_compliance.models import ComplianceSettingsRecord
from firearms_compliance.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComplianceSettings:
    """Snapshot of the firearms purchase policy."""

    window_days: int
    firearm_limit: int
    multi_firearm_hold_enabled: bool
    ffl_hold_enabled: bool
    version: int = 0
    updated_by: str = "system"
    updated_at: datetime | None = None

    EDITABLE_FIELDS = (
        "window_days",
        "firearm_limit",
        "multi_firearm_hold_enabled",
        "ffl_hold_enabled",
    )

    def __post_init__(self) -> None:
        """Validate policy values."""
        for name in ("window_days", "firearm_limit"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer", field=name)
            if value <= 0:
                raise ValidationError(f"{name} must be greater than 0", field=name)
        for name in ("multi_firearm_hold_enabled", "ffl_hold_enabled"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a boolean", field=name)

    @classmethod
    def from_record(cls, record: ComplianceSettingsRecord) -> ComplianceSettings:
        return cls(
            window_days=record.window_days,
            firearm_limit=record.firearm_limit,
            multi_firearm_hold_enabled=record.multi_firearm_hold_enabled,
            ffl_hold_enabled=record.ffl_hold_enabled,
            version=record.version,
            updated_by=record.updated_by,
            updated_at=record.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ComplianceConfigStore:
    """Process-wide holder of the active compliance policy.

    Usage:
        store = ComplianceConfigStore(session_factory, defaults)
        store.bootstrap()          # seed version 1 if the table is empty

        settings = store.get()     # plain read, never blocks
        store.update({"firearm_limit": 3}, updated_by="admin-7")
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        defaults: ComplianceSettings,
    ):
        self._session_factory = session_factory
        self._defaults = defaults
        self._write_lock = threading.Lock()
        self._current: ComplianceSettings | None = None

    def bootstrap(self) -> ComplianceSettings:
        """Load the active policy, seeding it from defaults when none exists."""
        with self._write_lock:
            with self._session_factory() as session:
                record = self._active_record(session)
                if record is None:
                    record = ComplianceSettingsRecord(
                        version=1,
                        window_days=self._defaults.window_days,
                        firearm_limit=self._defaults.firearm_limit,
                        multi_firearm_hold_enabled=self._defaults.multi_firearm_hold_enabled,
                        ffl_hold_enabled=self._defaults.ffl_hold_enabled,
                        is_active=True,
                        updated_by="bootstrap",
                    )
                    session.add(record)
                    session.commit()
                    logger.info("Seeded compliance policy version 1 from defaults")
                self._current = ComplianceSettings.from_record(record)
            return self._current

    def get(self) -> ComplianceSettings:
        """Return the last committed policy snapshot.

        Raises:
            RuntimeError: no policy has been loaded; call bootstrap() first.
        """
        current = self._current
        if current is None:
            raise RuntimeError("Compliance policy not loaded; call bootstrap() first")
        return current

    def reload(self) -> ComplianceSettings:
        """Re-read the active policy (picks up updates made by other processes)."""
        with self._session_factory() as session:
            record = self._active_record(session)
        if record is None:
            return self.bootstrap()
        self._current = ComplianceSettings.from_record(record)
        return self._current

    def update(self, changes: Mapping[str, Any], *, updated_by: str) -> ComplianceSettings:
        """Apply a partial policy update as a new version.

        Raises:
            ValidationError: unknown field or invalid value; nothing is written.
        """
        unknown = set(changes) - set(ComplianceSettings.EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown policy field(s): {', '.join(sorted(unknown))}")

        with self._write_lock:
            with self._session_factory() as session:
                active = self._active_record(session, for_update=True)
                base = (
                    ComplianceSettings.from_record(active) if active is not None else self._defaults
                )
                # Constructing the snapshot validates before anything is written.
                candidate = replace(base, **dict(changes))

                next_version = (
                    session.scalar(select(func.max(ComplianceSettingsRecord.version))) or 0
                ) + 1
                session.execute(
                    update(ComplianceSettingsRecord)
                    .where(ComplianceSettingsRecord.is_active.is_(True))
                    .values(is_active=False)
                )
                record = ComplianceSettingsRecord(
                    version=next_version,
                    window_days=candidate.window_days,
                    firearm_limit=candidate.firearm_limit,
                    multi_firearm_hold_enabled=candidate.multi_firearm_hold_enabled,
                    ffl_hold_enabled=candidate.ffl_hold_enabled,
                    is_active=True,
                    updated_by=updated_by,
                    created_at=utcnow(),
                )
                session.add(record)
                session.commit()

                self._current = ComplianceSettings.from_record(record)

        logger.info(
            "Compliance policy updated to version %s by %s: %s",
            self._current.version,
            updated_by,
            dict(changes),
        )
        return self._current

    def history(self) -> list[ComplianceSettings]:
        """All policy versions, newest first."""
        with self._session_factory() as session:
            records = session.scalars(
                select(ComplianceSettingsRecord).order_by(ComplianceSettingsRecord.version.desc())
            ).all()
            return [ComplianceSettings.from_record(r) for r in records]

    def _active_record(
        self, session: Session, *, for_update: bool = False
    ) -> ComplianceSettingsRecord | None:
        query = select(ComplianceSettingsRecord).where(
            ComplianceSettingsRecord.is_active.is_(True)
        )
        if for_update:
            query = query.with_for_update()
        return session.scalars(query).first()
