import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from carehub.config.access_config import RoleName, is_super_admin
from carehub.core.cache import TTLCache
from carehub.core.reporting import ErrorReporter
from carehub.modules.grants.service import GrantStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GrantResolverBase:
    """Shared plumbing for the resolvers: off-loop store calls and a cached role lookup."""

    def __init__(
        self,
        store: GrantStore,
        reporter: ErrorReporter,
        role_cache: Optional[TTLCache] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.reporter = reporter
        self.role_cache = role_cache if role_cache is not None else TTLCache(ttl_seconds=60, name="roles")
        self.now = now

    async def _call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        # Supabase's sync client blocks; keep it off the event loop.
        return await asyncio.to_thread(functools.partial(fn, *args, **kwargs))

    async def user_roles(self, user_id: str) -> List[RoleName]:
        """Cached role set of the user. Raises ResolutionError."""
        return await self.role_cache.get_or_load(
            (user_id, "roles"),
            lambda: self._call(self.store.get_user_roles, user_id),
        )

    async def is_super_admin(self, user_id: str) -> bool:
        return is_super_admin(await self.user_roles(user_id))

    def invalidate_user(self, user_id: str) -> None:
        self.role_cache.invalidate_user(user_id)
