import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from pydantic import ValidationError
from supabase import Client

from carehub.config.access_config import RoleName, parse_roles
from carehub.core.exceptions import ResolutionError
from carehub.modules.grants.schemas import (
    Role, Permission, Module,
    UserPermissionGrant, RoleModuleAssignment, UserModuleAssignment,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GrantStore:
    """Typed, policy-free access to the grant tables. Every failure surfaces as ResolutionError."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _run(self, operation: str, query: Callable[[], T]) -> T:
        try:
            return query()
        except ResolutionError:
            raise
        except (ValidationError, KeyError, TypeError) as e:
            logger.error(f"Malformed response in {operation}: {e}")
            raise ResolutionError(operation, e) from e
        except Exception as e:
            logger.error(f"Grant store error in {operation}: {e}")
            raise ResolutionError(operation, e) from e

    def ping(self) -> None:
        """Cheapest round trip to the grant tables. Raises ResolutionError when unreachable."""
        def query():
            self.supabase.table("roles")\
                .select("id")\
                .limit(1)\
                .execute()
        self._run("ping", query)

    # ---- roles ---------------------------------------------------------------

    def get_user_roles(self, user_id: str) -> List[RoleName]:
        """Role names held by the user, in a stable (name) order."""
        def query():
            links = self.supabase.table("user_roles")\
                .select("role_id")\
                .eq("user_id", user_id)\
                .execute()
            role_ids = list({r["role_id"] for r in links.data if r.get("role_id")}) if links.data else []
            if not role_ids:
                return []
            roles = self.supabase.table("roles")\
                .select("id, name")\
                .in_("id", role_ids)\
                .execute()
            names = sorted(r["name"] for r in roles.data) if roles.data else []
            return parse_roles(names)
        return self._run("get_user_roles", query)

    def get_role_by_name(self, role: RoleName) -> Optional[Role]:
        def query():
            result = self.supabase.table("roles")\
                .select("*")\
                .eq("name", role.value)\
                .limit(1)\
                .execute()
            return Role(**result.data[0]) if result.data else None
        return self._run("get_role_by_name", query)

    def get_role_ids(self, roles: List[RoleName]) -> List[str]:
        if not roles:
            return []

        def query():
            result = self.supabase.table("roles")\
                .select("id")\
                .in_("name", [r.value for r in roles])\
                .execute()
            return [r["id"] for r in result.data] if result.data else []
        return self._run("get_role_ids", query)

    def get_role_user_ids(self, role_id: str) -> List[str]:
        def query():
            result = self.supabase.table("user_roles")\
                .select("user_id")\
                .eq("role_id", role_id)\
                .execute()
            return sorted({r["user_id"] for r in result.data if r.get("user_id")}) if result.data else []
        return self._run("get_role_user_ids", query)

    # ---- permissions ---------------------------------------------------------

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        def query():
            result = self.supabase.table("permissions")\
                .select("*")\
                .eq("name", name)\
                .limit(1)\
                .execute()
            return Permission(**result.data[0]) if result.data else None
        return self._run("get_permission_by_name", query)

    def get_permissions_by_ids(self, permission_ids: List[str]) -> List[Permission]:
        if not permission_ids:
            return []

        def query():
            result = self.supabase.table("permissions")\
                .select("*")\
                .in_("id", permission_ids)\
                .execute()
            return [Permission(**p) for p in result.data] if result.data else []
        return self._run("get_permissions_by_ids", query)

    def list_role_permissions(self, role_ids: List[str]) -> List[Permission]:
        """Distinct permissions granted to any of the given roles."""
        if not role_ids:
            return []

        def query():
            result = self.supabase.table("role_permissions")\
                .select("permission_id")\
                .in_("role_id", role_ids)\
                .execute()
            permission_ids = list({rp["permission_id"] for rp in result.data if rp.get("permission_id")}) if result.data else []
            return self.get_permissions_by_ids(permission_ids)
        return self._run("list_role_permissions", query)

    def list_user_permission_grants(self, user_id: str) -> List[UserPermissionGrant]:
        """All direct grants of the user, active or not, with permission names filled in."""
        def query():
            result = self.supabase.table("user_permissions")\
                .select("*")\
                .eq("user_id", user_id)\
                .execute()
            if not result.data:
                return []
            grants = [UserPermissionGrant(**row) for row in result.data]
            names = {p.id: p.name for p in self.get_permissions_by_ids(list({g.permission_id for g in grants}))}
            for grant in grants:
                grant.permission_name = names.get(grant.permission_id)
            return grants
        return self._run("list_user_permission_grants", query)

    def user_has_permission(self, user_id: str, permission_name: str, facility_id: Optional[str] = None) -> bool:
        def query():
            params = {"check_user_id": user_id, "permission_name": permission_name}
            if facility_id:
                params["facility_id"] = facility_id
            result = self.supabase.rpc("user_has_permission", params).execute()
            if not isinstance(result.data, bool):
                raise TypeError(f"user_has_permission returned {type(result.data).__name__}, expected bool")
            return result.data
        return self._run("user_has_permission", query)

    def insert_user_permission_grant(
        self,
        user_id: str,
        permission_id: str,
        granted_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> UserPermissionGrant:
        def query():
            result = self.supabase.table("user_permissions").insert({
                "user_id": user_id,
                "permission_id": permission_id,
                "granted_by": granted_by,
                "granted_at": datetime.now(timezone.utc).isoformat(),
                "expires_at": expires_at.isoformat() if expires_at else None,
                "is_active": True,
            }).execute()
            if not result.data:
                raise ResolutionError("insert_user_permission_grant")
            return UserPermissionGrant(**result.data[0])
        return self._run("insert_user_permission_grant", query)

    def deactivate_user_permission_grant(self, user_id: str, permission_id: str) -> int:
        """Soft-revoke every active direct grant of permission_id. Returns rows touched."""
        def query():
            result = self.supabase.table("user_permissions")\
                .update({"is_active": False})\
                .eq("user_id", user_id)\
                .eq("permission_id", permission_id)\
                .eq("is_active", True)\
                .execute()
            return len(result.data) if result.data else 0
        return self._run("deactivate_user_permission_grant", query)

    # ---- modules -------------------------------------------------------------

    def get_module_by_name(self, name: str) -> Optional[Module]:
        def query():
            result = self.supabase.table("modules")\
                .select("*")\
                .eq("name", name)\
                .limit(1)\
                .execute()
            return Module(**result.data[0]) if result.data else None
        return self._run("get_module_by_name", query)

    def get_modules_by_ids(self, module_ids: List[str]) -> List[Module]:
        if not module_ids:
            return []

        def query():
            result = self.supabase.table("modules")\
                .select("*")\
                .in_("id", module_ids)\
                .execute()
            return [Module(**m) for m in result.data] if result.data else []
        return self._run("get_modules_by_ids", query)

    def list_role_module_assignments(self, role_ids: List[str]) -> List[RoleModuleAssignment]:
        if not role_ids:
            return []

        def query():
            result = self.supabase.table("role_module_assignments")\
                .select("*")\
                .in_("role_id", role_ids)\
                .execute()
            return [RoleModuleAssignment(**row) for row in result.data] if result.data else []
        return self._run("list_role_module_assignments", query)

    def list_user_module_assignments(self, user_id: str) -> List[UserModuleAssignment]:
        def query():
            result = self.supabase.table("user_module_assignments")\
                .select("*")\
                .eq("user_id", user_id)\
                .execute()
            return [UserModuleAssignment(**row) for row in result.data] if result.data else []
        return self._run("list_user_module_assignments", query)

    def insert_user_module_assignment(
        self,
        user_id: str,
        module_id: str,
        assigned_by: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> UserModuleAssignment:
        def query():
            result = self.supabase.table("user_module_assignments").insert({
                "user_id": user_id,
                "module_id": module_id,
                "assigned_by": assigned_by,
                "assigned_at": datetime.now(timezone.utc).isoformat(),
                "expires_at": expires_at.isoformat() if expires_at else None,
                "is_active": True,
            }).execute()
            if not result.data:
                raise ResolutionError("insert_user_module_assignment")
            return UserModuleAssignment(**result.data[0])
        return self._run("insert_user_module_assignment", query)

    def deactivate_user_module_assignment(self, user_id: str, module_id: str) -> int:
        def query():
            result = self.supabase.table("user_module_assignments")\
                .update({"is_active": False})\
                .eq("user_id", user_id)\
                .eq("module_id", module_id)\
                .eq("is_active", True)\
                .execute()
            return len(result.data) if result.data else 0
        return self._run("deactivate_user_module_assignment", query)

    def insert_role_module_assignment(
        self,
        role_id: str,
        module_id: str,
        assigned_by: Optional[str],
    ) -> RoleModuleAssignment:
        def query():
            existing = self.supabase.table("role_module_assignments")\
                .select("*")\
                .eq("role_id", role_id)\
                .eq("module_id", module_id)\
                .execute()
            if existing.data:
                row = existing.data[0]
                if row.get("is_active"):
                    return RoleModuleAssignment(**row)
                reactivated = self.supabase.table("role_module_assignments")\
                    .update({"is_active": True, "assigned_by": assigned_by})\
                    .eq("id", row["id"])\
                    .execute()
                return RoleModuleAssignment(**reactivated.data[0])
            result = self.supabase.table("role_module_assignments").insert({
                "role_id": role_id,
                "module_id": module_id,
                "assigned_by": assigned_by,
                "assigned_at": datetime.now(timezone.utc).isoformat(),
                "is_active": True,
            }).execute()
            if not result.data:
                raise ResolutionError("insert_role_module_assignment")
            return RoleModuleAssignment(**result.data[0])
        return self._run("insert_role_module_assignment", query)
