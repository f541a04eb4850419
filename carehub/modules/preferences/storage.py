"""
Key/value backends for per-user preference and progress documents.

Keys look like ``user-preferences-{userId}`` / ``module-progress-{userId}``;
values are JSON text.

Expected Supabase table (user_storage):
- key: text (primary key)
- value: text (not null) - JSON document
- updated_at: timestamp (default: now())
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from supabase import Client

from carehub.core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def preferences_key(user_id: str) -> str:
    return f"user-preferences-{user_id}"


def progress_key(user_id: str) -> str:
    return f"module-progress-{user_id}"


class KeyValueStorage(Protocol):
    def read(self, key: str) -> Optional[str]:
        ...

    def write(self, key: str, value: str) -> None:
        ...


class InMemoryKeyValueStorage:
    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value


class SupabaseKeyValueStorage:
    def __init__(self, supabase: Client, table: str = "user_storage"):
        self.supabase = supabase
        self.table = table

    def read(self, key: str) -> Optional[str]:
        try:
            result = self.supabase.table(self.table)\
                .select("value")\
                .eq("key", key)\
                .limit(1)\
                .execute()
        except Exception as e:
            raise PersistenceError(f"read {key}", e) from e
        if not result.data:
            return None
        return result.data[0].get("value")

    def write(self, key: str, value: str) -> None:
        try:
            self.supabase.table(self.table).upsert({
                "key": key,
                "value": value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }, on_conflict="key").execute()
        except Exception as e:
            raise PersistenceError(f"write {key}", e) from e
