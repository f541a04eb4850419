import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from fastapi import HTTPException

from carehub.core.cache import TTLCache
from carehub.core.exceptions import ResolutionError
from carehub.core.reporting import ErrorReporter
from carehub.modules.grants.base import GrantResolverBase, utc_now
from carehub.modules.grants.schemas import (
    EffectivePermission, GrantSource, UserPermissionGrant, outlasts,
)
from carehub.modules.grants.service import GrantStore

logger = logging.getLogger(__name__)


class PermissionResolver(GrantResolverBase):
    """
    Resolves what a user may do.

    Point checks go through the ``user_has_permission`` RPC and are cached per
    (user, permission, facility) for the freshness window. Effective sets are
    merged locally from role and direct grants. Every check fails closed.
    """

    def __init__(
        self,
        store: GrantStore,
        reporter: ErrorReporter,
        cache: Optional[TTLCache] = None,
        role_cache: Optional[TTLCache] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        super().__init__(store, reporter, role_cache=role_cache, now=now)
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=60, name="permissions")

    async def has_permission(self, user_id: str, permission_name: str, facility_id: Optional[str] = None) -> bool:
        try:
            if await self.is_super_admin(user_id):
                return True
            return await self.cache.get_or_load(
                (user_id, "check", permission_name, facility_id),
                lambda: self._call(self.store.user_has_permission, user_id, permission_name, facility_id),
            )
        except ResolutionError as e:
            self.reporter.report(
                "permissions",
                f"Could not resolve {permission_name!r} for user {user_id}; denying",
                e,
                user_id=user_id,
            )
            return False
        except Exception as e:
            logger.exception(f"Unexpected error checking {permission_name!r} for user {user_id}")
            self.reporter.report("permissions", f"Unexpected error checking {permission_name!r}", e, user_id=user_id)
            return False

    async def validate_multiple(
        self,
        user_id: str,
        permission_names: Iterable[str],
        facility_id: Optional[str] = None,
    ) -> Dict[str, bool]:
        names = list(dict.fromkeys(permission_names))
        results = await asyncio.gather(
            *(self.has_permission(user_id, name, facility_id) for name in names),
            return_exceptions=True,
        )
        validated: Dict[str, bool] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Permission check for {name!r} failed: {result}")
                validated[name] = False
            else:
                validated[name] = bool(result)
        return validated

    async def effective_permissions(self, user_id: str) -> List[EffectivePermission]:
        try:
            return await self.cache.get_or_load(
                (user_id, "effective"),
                lambda: self._merge_effective(user_id),
            )
        except ResolutionError as e:
            self.reporter.report("permissions", f"Could not resolve effective permissions for user {user_id}", e, user_id=user_id)
            return []

    async def _merge_effective(self, user_id: str) -> List[EffectivePermission]:
        roles = await self.user_roles(user_id)
        role_ids = await self._call(self.store.get_role_ids, roles)
        role_permissions = await self._call(self.store.list_role_permissions, role_ids)
        grants = await self._call(self.store.list_user_permission_grants, user_id)

        merged: Dict[str, EffectivePermission] = {}
        for permission in role_permissions:
            merged[permission.name] = EffectivePermission(
                permission_name=permission.name,
                source=GrantSource.ROLE,
            )

        at = self.now()
        for grant in grants:
            if not grant.permission_name or not grant.is_effective(at):
                continue
            current = merged.get(grant.permission_name)
            if current is None or outlasts(grant.expires_at, current.expires_at):
                merged[grant.permission_name] = EffectivePermission(
                    permission_name=grant.permission_name,
                    source=GrantSource.DIRECT,
                    expires_at=grant.expires_at,
                )

        return [merged[name] for name in sorted(merged)]

    async def grant_permission(
        self,
        user_id: str,
        permission_name: str,
        granted_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> UserPermissionGrant:
        try:
            permission = await self._call(self.store.get_permission_by_name, permission_name)
            if permission is None:
                raise HTTPException(status_code=404, detail=f"Permission not found: {permission_name}")
            grant = await self._call(
                self.store.insert_user_permission_grant, user_id, permission.id, granted_by, expires_at
            )
        except ResolutionError as e:
            raise HTTPException(status_code=500, detail=f"Failed to grant permission: {e}")
        finally:
            self.invalidate_user(user_id)
        grant.permission_name = permission.name
        logger.info(f"Granted {permission_name!r} to user {user_id} (by {granted_by})")
        return grant

    async def revoke_permission(self, user_id: str, permission_name: str) -> bool:
        try:
            permission = await self._call(self.store.get_permission_by_name, permission_name)
            if permission is None:
                raise HTTPException(status_code=404, detail=f"Permission not found: {permission_name}")
            revoked = await self._call(self.store.deactivate_user_permission_grant, user_id, permission.id)
        except ResolutionError as e:
            raise HTTPException(status_code=500, detail=f"Failed to revoke permission: {e}")
        finally:
            self.invalidate_user(user_id)
        logger.info(f"Revoked {permission_name!r} from user {user_id} ({revoked} grant(s))")
        return revoked > 0

    def invalidate_user(self, user_id: str) -> None:
        super().invalidate_user(user_id)
        self.cache.invalidate_user(user_id)
