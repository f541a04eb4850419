"""
Pytest configuration and fixtures for all tests.

The Supabase client is replaced by an in-memory fake that understands the
subset of the PostgREST query builder the services use.
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from carehub.config.access_config import RoleName
from carehub.core.cache import TTLCache
from carehub.core.reporting import ErrorReporter
from carehub.modules.grants.service import GrantStore
from carehub.modules.module_access.service import ModuleAccessResolver
from carehub.modules.permissions.service import PermissionResolver
from carehub.modules.preferences.service import PreferenceStore
from carehub.modules.preferences.storage import InMemoryKeyValueStorage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Fake Supabase
# ============================================================================

class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.operation = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict], bool]] = []
        self.limit_count: Optional[int] = None
        self.order_by: Optional[tuple] = None
        self.on_conflict: Optional[str] = None

    def select(self, *columns, **kwargs):
        self.operation = "select"
        return self

    def insert(self, payload):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.operation = "update"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict: Optional[str] = None, **kwargs):
        self.operation = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def delete(self):
        self.operation = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc: bool = False):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.limit_count = count
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        self.db.record(self.table_name, self.operation)
        if self.table_name in self.db.failing_tables:
            raise ConnectionError(f"Fake outage on {self.table_name}")
        with self.db.lock:
            rows = self.db.tables.setdefault(self.table_name, [])
            if self.operation == "select":
                data = [dict(r) for r in rows if self._matches(r)]
                if self.order_by:
                    column, desc = self.order_by
                    data.sort(key=lambda r: r.get(column) or "", reverse=desc)
                if self.limit_count is not None:
                    data = data[:self.limit_count]
                return FakeResponse(data)
            if self.operation == "insert":
                payload = self.payload if isinstance(self.payload, list) else [self.payload]
                inserted = []
                for item in payload:
                    row = {"id": str(uuid.uuid4()), **item}
                    rows.append(row)
                    inserted.append(dict(row))
                return FakeResponse(inserted)
            if self.operation == "update":
                updated = []
                for row in rows:
                    if self._matches(row):
                        row.update(self.payload)
                        updated.append(dict(row))
                return FakeResponse(updated)
            if self.operation == "upsert":
                key = self.on_conflict or "id"
                for row in rows:
                    if row.get(key) == self.payload.get(key):
                        row.update(self.payload)
                        return FakeResponse([dict(row)])
                row = {"id": str(uuid.uuid4()), **self.payload}
                rows.append(row)
                return FakeResponse([dict(row)])
            if self.operation == "delete":
                kept = [r for r in rows if not self._matches(r)]
                deleted = [dict(r) for r in rows if self._matches(r)]
                self.db.tables[self.table_name] = kept
                return FakeResponse(deleted)
        raise AssertionError(f"Unsupported operation {self.operation}")


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        self.db.record(f"rpc:{self.name}", "call")
        if f"rpc:{self.name}" in self.db.failing_tables:
            raise ConnectionError(f"Fake outage on rpc {self.name}")
        handler = self.db.rpc_handlers[self.name]
        return FakeResponse(handler(self.db, self.params))


class FakeSupabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, List[Dict]] = {}
        self.calls: List[tuple] = []
        self.failing_tables = set()
        self.rpc_handlers: Dict[str, Callable] = {"user_has_permission": user_has_permission_rpc}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict) -> FakeRpc:
        return FakeRpc(self, name, params)

    def record(self, target: str, operation: str):
        with self.lock:
            self.calls.append((target, operation))

    def count_calls(self, target: str) -> int:
        with self.lock:
            return sum(1 for t, _ in self.calls if t == target)

    def rows(self, table: str) -> List[Dict]:
        return self.tables.setdefault(table, [])

    # ---- seeding helpers ---------------------------------------------------

    def add_role(self, role: RoleName) -> str:
        for row in self.rows("roles"):
            if row["name"] == role.value:
                return row["id"]
        role_id = f"role-{role.value}"
        self.rows("roles").append({"id": role_id, "name": role.value, "description": None})
        return role_id

    def add_permission(self, name: str) -> str:
        permission_id = f"perm-{name}"
        self.rows("permissions").append({"id": permission_id, "name": name, "description": None})
        return permission_id

    def add_module(self, name: str, is_active: bool = True) -> str:
        module_id = f"mod-{name}"
        self.rows("modules").append({"id": module_id, "name": name, "description": f"{name} module", "is_active": is_active})
        return module_id

    def give_role(self, user_id: str, role: RoleName) -> None:
        self.rows("user_roles").append({"id": str(uuid.uuid4()), "user_id": user_id, "role_id": self.add_role(role)})

    def give_role_permission(self, role: RoleName, permission_id: str) -> None:
        self.rows("role_permissions").append({"id": str(uuid.uuid4()), "role_id": self.add_role(role), "permission_id": permission_id})

    def give_user_permission(self, user_id: str, permission_id: str, expires_at: Optional[datetime] = None, is_active: bool = True) -> None:
        self.rows("user_permissions").append({
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "permission_id": permission_id,
            "granted_by": "admin-1",
            "expires_at": expires_at.isoformat() if expires_at else None,
            "is_active": is_active,
        })

    def give_role_module(self, role: RoleName, module_id: str, is_active: bool = True) -> None:
        self.rows("role_module_assignments").append({
            "id": str(uuid.uuid4()), "role_id": self.add_role(role), "module_id": module_id, "is_active": is_active,
        })

    def give_user_module(self, user_id: str, module_id: str, expires_at: Optional[datetime] = None, is_active: bool = True) -> None:
        self.rows("user_module_assignments").append({
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "module_id": module_id,
            "assigned_by": "admin-1",
            "expires_at": expires_at.isoformat() if expires_at else None,
            "is_active": is_active,
        })


def user_has_permission_rpc(db: FakeSupabase, params: Dict) -> bool:
    """Server-side resolution as the database function would do it."""
    user_id = params["check_user_id"]
    name = params["permission_name"]
    permission_ids = {p["id"] for p in db.rows("permissions") if p["name"] == name}
    role_ids = {r["role_id"] for r in db.rows("user_roles") if r["user_id"] == user_id}
    if any(rp["role_id"] in role_ids and rp["permission_id"] in permission_ids for rp in db.rows("role_permissions")):
        return True
    for grant in db.rows("user_permissions"):
        if grant["user_id"] != user_id or grant["permission_id"] not in permission_ids or not grant["is_active"]:
            continue
        if grant["expires_at"] is None or datetime.fromisoformat(grant["expires_at"]) > NOW:
            return True
    return False


# ============================================================================
# Clocks
# ============================================================================

class FakeClock:
    """Monotonic clock for cache freshness."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class TickingNow:
    """Wall clock that moves forward one second per reading."""

    def __init__(self, start: datetime = NOW):
        self.value = start

    def __call__(self) -> datetime:
        current = self.value
        self.value = self.value + timedelta(seconds=1)
        return current


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reporter():
    return ErrorReporter(buffer_size=50)


@pytest.fixture
def store(db):
    return GrantStore(db)


@pytest.fixture
def permission_resolver(store, reporter, clock):
    return PermissionResolver(
        store,
        reporter,
        cache=TTLCache(60, clock=clock, name="permissions"),
        role_cache=TTLCache(60, clock=clock, name="roles"),
        now=lambda: NOW,
    )


@pytest.fixture
def module_resolver(store, reporter, clock):
    return ModuleAccessResolver(
        store,
        reporter,
        cache=TTLCache(60, clock=clock, name="modules"),
        role_cache=TTLCache(60, clock=clock, name="roles"),
        now=lambda: NOW,
    )


@pytest.fixture
def kv_storage():
    return InMemoryKeyValueStorage()


@pytest.fixture
def preference_store(kv_storage, reporter):
    return PreferenceStore(kv_storage, reporter, progress_limit=10, now=TickingNow())
