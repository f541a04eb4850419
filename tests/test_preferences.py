"""
Tests for the preference store: role defaults, partial merges, progress
retention and storage failure handling.
"""

import json
from unittest.mock import Mock

import pytest

from carehub.config.access_config import RoleName
from carehub.core.exceptions import PersistenceError
from carehub.modules.preferences.schemas import DashboardKind, UserPreferencesUpdate
from carehub.modules.preferences.service import PreferenceStore, default_preferences
from carehub.modules.preferences.storage import (
    InMemoryKeyValueStorage, SupabaseKeyValueStorage, preferences_key, progress_key,
)
from tests.conftest import NOW, FakeSupabase, TickingNow


class FailingStorage:
    """Storage whose reads and/or writes raise."""

    def __init__(self, fail_reads=True, fail_writes=True, initial=None):
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.data = dict(initial or {})
        self.writes = []

    def read(self, key):
        if self.fail_reads:
            raise PersistenceError(f"read {key}", ConnectionError("offline"))
        return self.data.get(key)

    def write(self, key, value):
        self.writes.append(key)
        if self.fail_writes:
            raise PersistenceError(f"write {key}", ConnectionError("offline"))
        self.data[key] = value


class TestDefaults:
    """Role-derived defaults"""

    @pytest.mark.parametrize("roles,expected", [
        ([RoleName.ONBOARDING_TEAM], "onboarding"),
        ([RoleName.HEALTHCARE_PROVIDER], "patients"),
        ([RoleName.NURSE], "patients"),
        ([RoleName.PATIENT_CAREGIVER], "patients"),
        ([RoleName.CASE_MANAGER], "facilities"),
        ([RoleName.FINANCE_TEAM], "dashboard"),
        ([], "dashboard"),
        ([RoleName.CASE_MANAGER, RoleName.ONBOARDING_TEAM], "onboarding"),
    ])
    def test_default_module_by_role(self, roles, expected):
        preferences = default_preferences(roles)
        assert preferences.default_module == expected
        assert preferences.preferred_dashboard == DashboardKind.MODULE_SPECIFIC
        assert preferences.auto_route is True
        assert preferences.last_active_module is None

    def test_super_admin_defaults(self):
        preferences = default_preferences([RoleName.SUPER_ADMIN, RoleName.NURSE])
        assert preferences.preferred_dashboard == DashboardKind.UNIFIED
        assert preferences.default_module == "dashboard"
        assert preferences.auto_route is True


class TestLoadAndSave:
    """Reading and merging preferences"""

    @pytest.mark.asyncio
    async def test_first_load_creates_and_persists_defaults(self, preference_store, kv_storage):
        preferences = await preference_store.load("user-1", [RoleName.CASE_MANAGER])

        assert preferences.default_module == "facilities"
        stored = json.loads(kv_storage.read(preferences_key("user-1")))
        assert stored["default_module"] == "facilities"

    @pytest.mark.asyncio
    async def test_stored_preferences_win_over_role_defaults(self, preference_store, kv_storage):
        kv_storage.write(preferences_key("user-1"), json.dumps({
            "default_module": "reports",
            "last_active_module": None,
            "preferred_dashboard": "unified",
            "auto_route": False,
        }))

        preferences = await preference_store.load("user-1", [RoleName.NURSE])

        assert preferences.default_module == "reports"
        assert preferences.preferred_dashboard == DashboardKind.UNIFIED
        assert preferences.auto_route is False

    @pytest.mark.asyncio
    async def test_malformed_document_is_replaced_by_defaults(self, preference_store, kv_storage):
        kv_storage.write(preferences_key("user-1"), "{not json")
        preferences = await preference_store.load("user-1", [RoleName.NURSE])
        assert preferences.default_module == "patients"
        assert json.loads(kv_storage.read(preferences_key("user-1")))["default_module"] == "patients"

    @pytest.mark.asyncio
    async def test_save_merges_only_given_fields(self, preference_store):
        await preference_store.load("user-1", [RoleName.NURSE])

        merged = await preference_store.save("user-1", {"auto_route": False}, [RoleName.NURSE])

        assert merged.auto_route is False
        assert merged.default_module == "patients"
        assert merged.preferred_dashboard == DashboardKind.MODULE_SPECIFIC

    @pytest.mark.asyncio
    async def test_last_write_wins_per_field(self, preference_store):
        await preference_store.save("user-1", UserPreferencesUpdate(default_module="reports"))
        await preference_store.save("user-1", UserPreferencesUpdate(default_module="facilities"))
        preferences = await preference_store.load("user-1")
        assert preferences.default_module == "facilities"

    @pytest.mark.asyncio
    async def test_explicit_null_clears_last_active_module(self, preference_store):
        await preference_store.save("user-1", {"last_active_module": "reports"})
        cleared = await preference_store.save("user-1", {"last_active_module": None})
        assert cleared.last_active_module is None

    @pytest.mark.asyncio
    async def test_null_does_not_clear_flags(self, preference_store):
        await preference_store.save("user-1", {"auto_route": False})
        merged = await preference_store.save("user-1", {"auto_route": None})
        assert merged.auto_route is False

    @pytest.mark.asyncio
    async def test_invalid_module_name_is_rejected(self, preference_store):
        with pytest.raises(ValueError):
            await preference_store.save("user-1", {"default_module": "Bad Name!"})


class TestProgress:
    """Most-recent module progress"""

    @pytest.mark.asyncio
    async def test_keeps_the_ten_most_recent_modules(self, preference_store):
        for i in range(11):
            await preference_store.record_progress("user-1", f"module-{i}", f"/module-{i}")

        entries = await preference_store.load_progress("user-1")

        assert len(entries) == 10
        assert entries[0].module_id == "module-10"
        assert "module-0" not in {e.module_id for e in entries}

    @pytest.mark.asyncio
    async def test_revisiting_a_module_replaces_its_entry(self, preference_store):
        await preference_store.record_progress("user-1", "patients", "/patients/1")
        await preference_store.record_progress("user-1", "reports", "/reports")
        await preference_store.record_progress("user-1", "patients", "/patients/2", {"step": 3})

        entries = await preference_store.load_progress("user-1")

        assert [e.module_id for e in entries] == ["patients", "reports"]
        assert entries[0].last_path == "/patients/2"
        assert entries[0].form_snapshot == {"step": 3}

    @pytest.mark.asyncio
    async def test_same_timestamp_keeps_the_newest_first(self, kv_storage, reporter):
        store = PreferenceStore(kv_storage, reporter, now=lambda: NOW)
        await store.record_progress("user-1", "patients", "/patients")
        await store.record_progress("user-1", "reports", "/reports")

        entries = await store.load_progress("user-1")

        assert entries[0].module_id == "reports"

    @pytest.mark.asyncio
    async def test_get_progress(self, preference_store):
        await preference_store.record_progress("user-1", "onboarding", "/onboarding/step-2")
        progress = await preference_store.get_progress("user-1", "onboarding")
        assert progress.last_path == "/onboarding/step-2"
        assert await preference_store.get_progress("user-1", "reports") is None

    @pytest.mark.asyncio
    async def test_malformed_progress_is_treated_as_empty(self, preference_store, kv_storage):
        kv_storage.write(progress_key("user-1"), json.dumps({"not": "a list"}))
        assert await preference_store.load_progress("user-1") == []


class TestStorageFailures:
    """Persistence errors never surface to callers"""

    @pytest.mark.asyncio
    async def test_unreadable_storage_yields_defaults_and_reports(self, reporter):
        storage = FailingStorage(fail_reads=True, fail_writes=False)
        store = PreferenceStore(storage, reporter, now=TickingNow())

        preferences = await store.load("user-1", [RoleName.ONBOARDING_TEAM])

        assert preferences.default_module == "onboarding"
        assert reporter.recent()[0].source == "preferences"

    @pytest.mark.asyncio
    async def test_unreadable_key_is_never_overwritten(self, reporter):
        storage = FailingStorage(fail_reads=True, fail_writes=False)
        store = PreferenceStore(storage, reporter, now=TickingNow())

        await store.load("user-1", [RoleName.NURSE])
        saved = await store.save("user-1", {"auto_route": False}, [RoleName.NURSE])
        await store.record_progress("user-1", "patients", "/patients")

        assert saved.auto_route is False
        assert storage.writes == []
        assert (await store.load("user-1")).auto_route is False
        assert [e.module_id for e in await store.load_progress("user-1")] == ["patients"]

    @pytest.mark.asyncio
    async def test_write_failure_keeps_value_for_the_session(self, reporter):
        storage = FailingStorage(fail_reads=False, fail_writes=True)
        store = PreferenceStore(storage, reporter, now=TickingNow())

        saved = await store.save("user-1", {"default_module": "reports"}, [RoleName.NURSE])

        assert saved.default_module == "reports"
        assert (await store.load("user-1", [RoleName.NURSE])).default_module == "reports"
        assert any(r.source == "preferences" for r in reporter.recent())

    @pytest.mark.asyncio
    async def test_recovered_write_clears_the_session_copy(self, reporter):
        storage = FailingStorage(fail_reads=False, fail_writes=True)
        store = PreferenceStore(storage, reporter, now=TickingNow())
        await store.save("user-1", {"default_module": "reports"})

        storage.fail_writes = False
        await store.save("user-1", {"auto_route": False})

        stored = json.loads(storage.data[preferences_key("user-1")])
        assert stored["default_module"] == "reports"
        assert stored["auto_route"] is False

    @pytest.mark.asyncio
    async def test_saves_persist_after_a_transient_read_failure(self, reporter):
        storage = FailingStorage(fail_reads=True, fail_writes=False)
        store = PreferenceStore(storage, reporter, now=TickingNow())
        await store.load("user-1", [RoleName.NURSE])

        storage.fail_reads = False
        await store.save("user-1", {"default_module": "reports"}, [RoleName.NURSE])
        await store.save("user-1", {"auto_route": False}, [RoleName.NURSE])

        stored = json.loads(storage.data[preferences_key("user-1")])
        assert stored["default_module"] == "reports"
        assert stored["auto_route"] is False

    @pytest.mark.asyncio
    async def test_changes_made_during_an_outage_are_written_back(self, reporter):
        storage = FailingStorage(fail_reads=True, fail_writes=False)
        store = PreferenceStore(storage, reporter, now=TickingNow())
        await store.save("user-1", {"auto_route": False}, [RoleName.NURSE])
        await store.record_progress("user-1", "patients", "/patients/4")
        assert storage.writes == []

        storage.fail_reads = False
        preferences = await store.load("user-1", [RoleName.NURSE])
        entries = await store.load_progress("user-1")

        assert preferences.auto_route is False
        assert json.loads(storage.data[preferences_key("user-1")])["auto_route"] is False
        assert [e.module_id for e in entries] == ["patients"]
        assert progress_key("user-1") in storage.data

    @pytest.mark.asyncio
    async def test_untouched_session_defaults_yield_to_stored_value(self, reporter):
        stored = json.dumps({"default_module": "reports", "auto_route": False})
        storage = FailingStorage(
            fail_reads=True, fail_writes=False, initial={preferences_key("user-1"): stored}
        )
        store = PreferenceStore(storage, reporter, now=TickingNow())
        assert (await store.load("user-1", [RoleName.NURSE])).default_module == "patients"

        storage.fail_reads = False
        preferences = await store.load("user-1", [RoleName.NURSE])

        assert preferences.default_module == "reports"
        assert preferences.auto_route is False
        assert storage.writes == []


class TestSupabaseStorage:
    """Key/value rows in the user_storage table"""

    def test_write_then_read(self):
        db = FakeSupabase()
        storage = SupabaseKeyValueStorage(db, table="user_storage")

        storage.write("user-preferences-1", '{"auto_route": true}')
        storage.write("user-preferences-1", '{"auto_route": false}')

        assert storage.read("user-preferences-1") == '{"auto_route": false}'
        assert len(db.rows("user_storage")) == 1

    def test_missing_key(self):
        assert SupabaseKeyValueStorage(FakeSupabase()).read("absent") is None

    def test_failures_raise_persistence_error(self):
        client = Mock()
        client.table.side_effect = ConnectionError("offline")
        storage = SupabaseKeyValueStorage(client)

        with pytest.raises(PersistenceError):
            storage.read("user-preferences-1")
        with pytest.raises(PersistenceError):
            storage.write("user-preferences-1", "{}")

    def test_in_memory_storage(self):
        storage = InMemoryKeyValueStorage()
        assert storage.read("k") is None
        storage.write("k", "v")
        assert storage.read("k") == "v"
