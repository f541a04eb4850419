import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from fastapi import HTTPException

from carehub.config.access_config import RoleName, validate_module_name
from carehub.core.cache import TTLCache
from carehub.core.exceptions import ResolutionError
from carehub.core.reporting import ErrorReporter
from carehub.modules.grants.base import GrantResolverBase, utc_now
from carehub.modules.grants.schemas import (
    EffectiveModule, GrantSource, Module, RoleModuleAssignment, UserModuleAssignment, outlasts,
)
from carehub.modules.grants.service import GrantStore

logger = logging.getLogger(__name__)


class ModuleAccessResolver(GrantResolverBase):
    """Resolves which modules a user is entitled to, from role and direct assignments."""

    def __init__(
        self,
        store: GrantStore,
        reporter: ErrorReporter,
        cache: Optional[TTLCache] = None,
        role_cache: Optional[TTLCache] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        super().__init__(store, reporter, role_cache=role_cache, now=now)
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=60, name="modules")

    async def has_module_access(self, user_id: str, module_name: str) -> bool:
        # Bypass applies to any name, including ones no module row could match.
        try:
            if await self.is_super_admin(user_id):
                return True
        except ResolutionError as e:
            self.reporter.report("modules", f"Could not resolve roles of user {user_id}; denying {module_name!r}", e, user_id=user_id)
            return False

        try:
            name = validate_module_name(module_name)
        except ValueError:
            logger.warning(f"Rejecting module access check for invalid name {module_name!r}")
            return False
        try:
            modules = await self.resolve_modules(user_id)
        except ResolutionError as e:
            self.reporter.report("modules", f"Could not resolve module {name!r} for user {user_id}; denying", e, user_id=user_id)
            return False
        return any(m.module_name == name for m in modules)

    async def effective_modules(self, user_id: str) -> List[EffectiveModule]:
        try:
            return await self.resolve_modules(user_id)
        except ResolutionError as e:
            self.reporter.report("modules", f"Could not resolve effective modules for user {user_id}", e, user_id=user_id)
            return []

    async def resolve_modules(self, user_id: str) -> List[EffectiveModule]:
        """Effective modules sorted by name. Raises ResolutionError."""
        return await self.cache.get_or_load(
            (user_id, "effective"),
            lambda: self._merge_effective(user_id),
        )

    async def _merge_effective(self, user_id: str) -> List[EffectiveModule]:
        roles = await self.user_roles(user_id)
        role_ids = await self._call(self.store.get_role_ids, roles)
        role_assignments = await self._call(self.store.list_role_module_assignments, role_ids)
        user_assignments = await self._call(self.store.list_user_module_assignments, user_id)

        at = self.now()
        candidates: Dict[str, tuple] = {}
        for assignment in role_assignments:
            if not assignment.is_active:
                continue
            candidates.setdefault(assignment.module_id, (GrantSource.ROLE, None))
        for assignment in user_assignments:
            if not assignment.is_effective(at):
                continue
            current = candidates.get(assignment.module_id)
            if current is None or outlasts(assignment.expires_at, current[1]):
                candidates[assignment.module_id] = (GrantSource.DIRECT, assignment.expires_at)

        modules = await self._call(self.store.get_modules_by_ids, list(candidates))
        effective = [
            EffectiveModule(
                module_id=module.id,
                module_name=module.name,
                module_description=module.description,
                source=candidates[module.id][0],
                expires_at=candidates[module.id][1],
            )
            for module in modules
            if module.is_active and module.id in candidates
        ]
        # Lexicographic by name keeps "first accessible module" deterministic.
        effective.sort(key=lambda m: (m.module_name, m.module_id))
        return effective

    async def _require_module(self, module_name: str) -> Module:
        try:
            name = validate_module_name(module_name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        module = await self._call(self.store.get_module_by_name, name)
        if module is None:
            raise HTTPException(status_code=404, detail=f"Module not found: {name}")
        return module

    async def assign_module_to_user(
        self,
        user_id: str,
        module_name: str,
        assigned_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> UserModuleAssignment:
        try:
            module = await self._require_module(module_name)
            assignment = await self._call(
                self.store.insert_user_module_assignment, user_id, module.id, assigned_by, expires_at
            )
        except ResolutionError as e:
            raise HTTPException(status_code=500, detail=f"Failed to assign module: {e}")
        finally:
            self.invalidate_user(user_id)
        logger.info(f"Assigned module {module.name!r} to user {user_id} (by {assigned_by})")
        return assignment

    async def revoke_module_from_user(self, user_id: str, module_name: str) -> bool:
        try:
            module = await self._require_module(module_name)
            revoked = await self._call(self.store.deactivate_user_module_assignment, user_id, module.id)
        except ResolutionError as e:
            raise HTTPException(status_code=500, detail=f"Failed to revoke module: {e}")
        finally:
            self.invalidate_user(user_id)
        logger.info(f"Revoked module {module.name!r} from user {user_id} ({revoked} assignment(s))")
        return revoked > 0

    async def assign_module_to_role(
        self,
        role: RoleName,
        module_name: str,
        assigned_by: Optional[str],
    ) -> RoleModuleAssignment:
        role_id: Optional[str] = None
        try:
            module = await self._require_module(module_name)
            role_record = await self._call(self.store.get_role_by_name, role)
            if role_record is None:
                raise HTTPException(status_code=404, detail=f"Role not found: {role.value}")
            role_id = role_record.id
            assignment = await self._call(self.store.insert_role_module_assignment, role_id, module.id, assigned_by)
        except ResolutionError as e:
            raise HTTPException(status_code=500, detail=f"Failed to assign module to role: {e}")
        finally:
            await self._invalidate_role_holders(role, role_id)
        logger.info(f"Assigned module {module.name!r} to role {role.value} (by {assigned_by})")
        return assignment

    async def _invalidate_role_holders(self, role: RoleName, role_id: Optional[str]) -> None:
        if role_id is None:
            return
        try:
            user_ids = await self._call(self.store.get_role_user_ids, role_id)
        except ResolutionError as e:
            logger.warning(f"Could not list holders of role {role.value}; clearing module cache: {e}")
            self.cache.clear()
            return
        for user_id in user_ids:
            self.invalidate_user(user_id)

    def invalidate_user(self, user_id: str) -> None:
        super().invalidate_user(user_id)
        self.cache.invalidate_user(user_id)
