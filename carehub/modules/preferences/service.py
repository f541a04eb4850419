import asyncio
import functools
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from pydantic import TypeAdapter, ValidationError

from carehub.config.access_config import (
    KnownModule, RoleName, default_module_for_roles, is_super_admin,
)
from carehub.core.exceptions import PersistenceError
from carehub.core.reporting import ErrorReporter
from carehub.modules.preferences.schemas import (
    DashboardKind, ModuleProgress, UserPreferences, UserPreferencesUpdate,
)
from carehub.modules.preferences.storage import KeyValueStorage, preferences_key, progress_key

logger = logging.getLogger(__name__)

_progress_list = TypeAdapter(List[ModuleProgress])

# Cleared only by sending an explicit null.
_NULLABLE_FIELDS = {"default_module", "last_active_module"}

_UNREADABLE = object()


def default_preferences(roles: Iterable[RoleName]) -> UserPreferences:
    roles = list(roles)
    if is_super_admin(roles):
        return UserPreferences(
            preferred_dashboard=DashboardKind.UNIFIED,
            auto_route=True,
            default_module=KnownModule.DASHBOARD.value,
        )
    return UserPreferences(
        preferred_dashboard=DashboardKind.MODULE_SPECIFIC,
        auto_route=True,
        default_module=default_module_for_roles(roles),
    )


class PreferenceStore:
    """
    Per-user routing preferences and most-recent module progress.

    Storage failures never propagate: the value is kept in a per-instance
    session overlay so later reads in this process still see it. Reads of a
    key that failed are retried on each access; once storage answers again,
    changes made in the meantime are written back (last write wins).
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        reporter: ErrorReporter,
        progress_limit: int = 10,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.storage = storage
        self.reporter = reporter
        self.progress_limit = progress_limit
        self.now = now
        self._overlay: Dict[str, str] = {}
        # Keys whose stored value could not be read. They are not written to
        # storage until a later read succeeds, so defaults never clobber data.
        self._unread: Set[str] = set()
        # Unread keys changed by the caller since the failed read.
        self._dirty: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _read(self, key: str) -> Any:
        """Stored text, None when absent, or _UNREADABLE when storage failed and nothing is held for the session."""
        if key in self._overlay and key not in self._unread:
            return self._overlay[key]
        try:
            stored = await asyncio.to_thread(self.storage.read, key)
        except PersistenceError as e:
            self.reporter.report("preferences", f"Failed to read {key}; using session values", e)
            self._unread.add(key)
            return self._overlay.get(key, _UNREADABLE)
        if key in self._unread:
            return await self._recover(key, stored)
        return stored

    async def _recover(self, key: str, stored: Optional[str]) -> Optional[str]:
        """Storage is readable again: push session changes back, or drop the session copy."""
        self._unread.discard(key)
        session_value = self._overlay.pop(key, None)
        if key not in self._dirty or session_value is None:
            self._dirty.discard(key)
            logger.info(f"Storage readable again for {key}; using stored value")
            return stored
        self._dirty.discard(key)
        logger.info(f"Storage readable again for {key}; persisting session changes")
        await self._write(key, session_value)
        return session_value

    async def _write(self, key: str, value: str) -> None:
        if key in self._unread:
            self._overlay[key] = value
            self._dirty.add(key)
            return
        try:
            await asyncio.to_thread(functools.partial(self.storage.write, key, value))
        except PersistenceError as e:
            self.reporter.report("preferences", f"Failed to write {key}; keeping value for this session", e)
            self._overlay[key] = value
        else:
            self._overlay.pop(key, None)

    # ---- preferences -----------------------------------------------------------

    async def load(self, user_id: str, roles: Iterable[RoleName] = ()) -> UserPreferences:
        key = preferences_key(user_id)
        async with self._lock_for(key):
            return await self._load_unlocked(user_id, list(roles))

    async def _load_unlocked(self, user_id: str, roles: List[RoleName]) -> UserPreferences:
        key = preferences_key(user_id)
        raw = await self._read(key)
        if raw is _UNREADABLE:
            preferences = default_preferences(roles)
            self._overlay[key] = preferences.model_dump_json()
            return preferences
        if raw is not None:
            try:
                return UserPreferences.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(f"Discarding malformed preferences for user {user_id}: {e}")
        preferences = default_preferences(roles)
        logger.info(f"Creating default preferences for user {user_id}: default_module={preferences.default_module}")
        await self._write(key, preferences.model_dump_json())
        return preferences

    async def save(
        self,
        user_id: str,
        partial: Union[UserPreferencesUpdate, Dict[str, Any]],
        roles: Iterable[RoleName] = (),
    ) -> UserPreferences:
        if not isinstance(partial, UserPreferencesUpdate):
            partial = UserPreferencesUpdate.model_validate(partial)
        updates = {
            field: value
            for field, value in partial.model_dump(exclude_unset=True).items()
            if value is not None or field in _NULLABLE_FIELDS
        }
        key = preferences_key(user_id)
        async with self._lock_for(key):
            current = await self._load_unlocked(user_id, list(roles))
            merged = UserPreferences.model_validate({**current.model_dump(), **updates})
            await self._write(key, merged.model_dump_json())
        logger.debug(f"Saved preferences for user {user_id}: {sorted(updates)}")
        return merged

    # ---- progress --------------------------------------------------------------

    async def load_progress(self, user_id: str) -> List[ModuleProgress]:
        """Progress entries, most recent first."""
        key = progress_key(user_id)
        async with self._lock_for(key):
            raw = await self._read(key)
        return self._parse_progress(user_id, raw)

    def _parse_progress(self, user_id: str, raw: Any) -> List[ModuleProgress]:
        if raw is None or raw is _UNREADABLE:
            return []
        try:
            entries = _progress_list.validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding malformed module progress for user {user_id}: {e}")
            return []
        return sorted(entries, key=lambda p: p.timestamp, reverse=True)

    async def get_progress(self, user_id: str, module_id: str) -> Optional[ModuleProgress]:
        for entry in await self.load_progress(user_id):
            if entry.module_id == module_id:
                return entry
        return None

    async def record_progress(
        self,
        user_id: str,
        module_id: str,
        path: Optional[str],
        form_snapshot: Optional[Dict[str, Any]] = None,
    ) -> List[ModuleProgress]:
        key = progress_key(user_id)
        async with self._lock_for(key):
            entries = self._parse_progress(user_id, await self._read(key))
            entry = ModuleProgress(
                module_id=module_id,
                last_path=path,
                form_snapshot=form_snapshot,
                timestamp=self.now(),
            )
            # New entry first so a timestamp tie keeps it ahead after the stable sort.
            entries = [entry] + [e for e in entries if e.module_id != module_id]
            entries.sort(key=lambda p: p.timestamp, reverse=True)
            entries = entries[:self.progress_limit]
            await self._write(key, json.dumps([e.model_dump(mode="json") for e in entries]))
        return entries
