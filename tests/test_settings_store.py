"""Tests for the versioned compliance policy store."""

import threading

import pytest
from sqlalchemy import func, select

from firearms_compliance.compliance import ComplianceConfigStore, ComplianceSettings
from firearms_compliance.exceptions import ValidationError
from firearms_compliance.models import ComplianceSettingsRecord


class TestComplianceSettingsValidation:
    """Tests for snapshot validation."""

    def test_valid_settings(self):
        """Positive integers and booleans are accepted."""
        settings = ComplianceSettings(
            window_days=30, firearm_limit=5, multi_firearm_hold_enabled=True, ffl_hold_enabled=False
        )
        assert settings.window_days == 30
        assert settings.version == 0

    @pytest.mark.parametrize("field_name", ["window_days", "firearm_limit"])
    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_values_rejected(self, field_name, value):
        """Window and limit must be greater than zero."""
        values = dict(window_days=30, firearm_limit=5, multi_firearm_hold_enabled=True, ffl_hold_enabled=True)
        values[field_name] = value
        with pytest.raises(ValidationError) as exc_info:
            ComplianceSettings(**values)
        assert exc_info.value.field == field_name

    def test_non_integer_rejected(self):
        """A string limit is not silently coerced."""
        with pytest.raises(ValidationError):
            ComplianceSettings(
                window_days=30, firearm_limit="5", multi_firearm_hold_enabled=True, ffl_hold_enabled=True
            )

    def test_bool_is_not_an_integer(self):
        """True is an int in Python but not a valid limit."""
        with pytest.raises(ValidationError):
            ComplianceSettings(
                window_days=30, firearm_limit=True, multi_firearm_hold_enabled=True, ffl_hold_enabled=True
            )

    def test_flag_must_be_boolean(self):
        with pytest.raises(ValidationError):
            ComplianceSettings(
                window_days=30, firearm_limit=5, multi_firearm_hold_enabled="yes", ffl_hold_enabled=True
            )


class TestBootstrap:
    """Tests for seeding and loading the active policy."""

    def test_seeds_version_one_from_defaults(self, session_factory, default_policy):
        """An empty table gets version 1 built from the defaults."""
        store = ComplianceConfigStore(session_factory, default_policy)
        policy = store.bootstrap()

        assert policy.version == 1
        assert policy.window_days == 30
        assert policy.firearm_limit == 5
        assert policy.updated_by == "bootstrap"

    def test_bootstrap_is_idempotent(self, session_factory, default_policy, session):
        """A second bootstrap loads the existing row instead of inserting."""
        ComplianceConfigStore(session_factory, default_policy).bootstrap()
        policy = ComplianceConfigStore(session_factory, default_policy).bootstrap()

        assert policy.version == 1
        assert session.query(ComplianceSettingsRecord).count() == 1

    def test_existing_policy_wins_over_defaults(self, session_factory, default_policy):
        """Defaults only seed; a stored policy is never overwritten by them."""
        first = ComplianceConfigStore(session_factory, default_policy)
        first.bootstrap()
        first.update({"firearm_limit": 2}, updated_by="admin-1")

        other_defaults = ComplianceSettings(
            window_days=90, firearm_limit=10, multi_firearm_hold_enabled=False, ffl_hold_enabled=False
        )
        policy = ComplianceConfigStore(session_factory, other_defaults).bootstrap()

        assert policy.firearm_limit == 2
        assert policy.window_days == 30

    def test_get_requires_bootstrap(self, session_factory, default_policy, session):
        """get() is a plain read; it never seeds the table itself."""
        store = ComplianceConfigStore(session_factory, default_policy)

        with pytest.raises(RuntimeError, match="bootstrap"):
            store.get()
        assert session.scalar(select(func.count()).select_from(ComplianceSettingsRecord)) == 0

    def test_get_after_bootstrap(self, session_factory, default_policy):
        store = ComplianceConfigStore(session_factory, default_policy)
        store.bootstrap()

        assert store.get().version == 1


class TestUpdate:
    """Tests for policy updates."""

    def test_update_creates_new_version(self, config_store):
        """Each update is a new version with the caller recorded."""
        updated = config_store.update({"firearm_limit": 3}, updated_by="admin-7")

        assert updated.version == 2
        assert updated.firearm_limit == 3
        assert updated.window_days == 30
        assert updated.updated_by == "admin-7"
        assert updated.updated_at is not None

    def test_update_is_visible_immediately(self, config_store):
        """The next get() returns the new snapshot without a reload."""
        config_store.update({"window_days": 7}, updated_by="admin-7")
        assert config_store.get().window_days == 7

    def test_exactly_one_active_version(self, config_store, session):
        config_store.update({"firearm_limit": 3}, updated_by="a")
        config_store.update({"ffl_hold_enabled": False}, updated_by="b")

        active = session.query(ComplianceSettingsRecord).filter_by(is_active=True).all()
        assert [r.version for r in active] == [3]

    def test_invalid_value_writes_nothing(self, config_store, session):
        """A rejected update leaves the active policy and history untouched."""
        with pytest.raises(ValidationError):
            config_store.update({"firearm_limit": 0}, updated_by="admin-7")

        assert config_store.get().version == 1
        assert config_store.get().firearm_limit == 5
        assert session.query(ComplianceSettingsRecord).count() == 1

    def test_unknown_field_rejected(self, config_store):
        with pytest.raises(ValidationError, match="Unknown policy field"):
            config_store.update({"version": 99}, updated_by="admin-7")

    def test_held_snapshot_is_not_mutated(self, config_store):
        """An evaluation holding a snapshot keeps its values after an update."""
        snapshot = config_store.get()
        config_store.update({"firearm_limit": 1}, updated_by="admin-7")

        assert snapshot.firearm_limit == 5
        assert snapshot.version == 1

    def test_history_newest_first(self, config_store):
        config_store.update({"firearm_limit": 4}, updated_by="a")
        config_store.update({"firearm_limit": 3}, updated_by="b")

        history = config_store.history()
        assert [p.version for p in history] == [3, 2, 1]
        assert [p.firearm_limit for p in history] == [3, 4, 5]

    def test_reload_picks_up_other_writers(self, session_factory, default_policy, config_store):
        """A second store in another process writes; reload() sees it."""
        other = ComplianceConfigStore(session_factory, default_policy)
        other.update({"window_days": 14}, updated_by="elsewhere")

        assert config_store.get().window_days == 30
        assert config_store.reload().window_days == 14

    def test_concurrent_updates_get_distinct_versions(self, config_store):
        """Writers serialize; every update lands as its own version."""
        errors = []

        def writer(limit):
            try:
                config_store.update({"firearm_limit": limit}, updated_by=f"admin-{limit}")
            except Exception as e:  # pragma: no cover - surfaced by the assert below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(2, 7)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        versions = [p.version for p in config_store.history()]
        assert versions == [6, 5, 4, 3, 2, 1]
