"""
Core dependencies: service wiring, authentication and permission guards.
"""

import logging
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from supabase import Client

from carehub.config.access_config import RoleName
from carehub.config.settings import Settings, settings as default_settings
from carehub.core.cache import TTLCache
from carehub.core.exceptions import ResolutionError
from carehub.core.reporting import ErrorReporter
from carehub.database.supabase_client import get_service_supabase, get_supabase
from carehub.modules.auth.service import AuthService
from carehub.modules.grants.service import GrantStore
from carehub.modules.module_access.service import ModuleAccessResolver
from carehub.modules.permissions.service import PermissionResolver
from carehub.modules.preferences.service import PreferenceStore
from carehub.modules.preferences.storage import InMemoryKeyValueStorage, KeyValueStorage, SupabaseKeyValueStorage
from carehub.modules.routing.service import RoutingDecisionEngine, RoutingSessionRegistry

logger = logging.getLogger(__name__)

security = HTTPBearer()


class AccessServices:
    """Process-wide access components. Caches live on these instances, never in module globals."""

    def __init__(
        self,
        supabase: Client,
        storage: KeyValueStorage,
        config: Settings = default_settings,
        reporter: Optional[ErrorReporter] = None,
    ):
        self.config = config
        self.supabase = supabase
        self.reporter = reporter if reporter is not None else ErrorReporter(buffer_size=config.error_report_buffer)
        self.grant_store = GrantStore(supabase)
        self.permissions = PermissionResolver(
            self.grant_store,
            self.reporter,
            cache=TTLCache(config.permission_cache_ttl_sec, config.cache_max_size, name="permissions"),
            role_cache=TTLCache(config.role_cache_ttl_sec, config.cache_max_size, name="permission-roles"),
        )
        self.modules = ModuleAccessResolver(
            self.grant_store,
            self.reporter,
            cache=TTLCache(config.module_cache_ttl_sec, config.cache_max_size, name="modules"),
            role_cache=TTLCache(config.role_cache_ttl_sec, config.cache_max_size, name="module-roles"),
        )
        self.preferences = PreferenceStore(storage, self.reporter, progress_limit=config.module_progress_limit)
        self.routing_sessions = RoutingSessionRegistry(
            max_sessions=config.routing_session_max,
            idle_ttl_seconds=config.routing_session_idle_sec,
        )
        self.user_cache = TTLCache(config.auth_cache_ttl_sec, config.cache_max_size, name="auth")

    def auth_service(self) -> AuthService:
        return AuthService(self.supabase, self.user_cache)

    def routing_engine(self, user_id: str, roles: List[RoleName]) -> RoutingDecisionEngine:
        return self.routing_sessions.get_or_create(
            user_id,
            roles,
            lambda: RoutingDecisionEngine(
                user_id,
                roles,
                self.modules,
                self.preferences,
                dashboard_path=self.config.dashboard_path,
                root_path=self.config.root_path,
            ),
        )


def build_access_services(config: Settings = default_settings) -> AccessServices:
    if config.preference_backend == "memory":
        storage: KeyValueStorage = InMemoryKeyValueStorage()
    else:
        storage = SupabaseKeyValueStorage(get_service_supabase(), table=config.user_storage_table)
    return AccessServices(get_supabase(), storage, config=config)


def get_access_services(request: Request) -> AccessServices:
    services = getattr(request.app.state, "access_services", None)
    if services is None:
        services = build_access_services()
        request.app.state.access_services = services
    return services


def get_auth_service(services: AccessServices = Depends(get_access_services)) -> AuthService:
    return services.auth_service()


def get_current_token(
    credentials: HTTPAuthorizationCredentials = Security(security)
) -> str:
    """Extract JWT token from Authorization header"""
    return credentials.credentials


def get_current_user(
    token: str = Depends(get_current_token),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    return auth_service.get_current_user(token)


async def get_current_roles(
    user_data: dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
) -> List[RoleName]:
    """Roles of the current user. Resolution failure means no roles (fail closed)."""
    try:
        return await services.permissions.user_roles(user_data["id"])
    except ResolutionError as e:
        services.reporter.report("auth", "Could not load roles for current user", e, user_id=user_data["id"])
        return []


def require_permission(required_permission: str):
    """Factory function to create permission check dependency"""
    async def check_permission(
        user_data: dict = Depends(get_current_user),
        services: AccessServices = Depends(get_access_services)
    ) -> dict:
        if not await services.permissions.has_permission(user_data["id"], required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {required_permission}"
            )
        return user_data
    return check_permission


async def require_super_admin(
    user_data: dict = Depends(get_current_user),
    roles: List[RoleName] = Depends(get_current_roles)
) -> dict:
    if RoleName.SUPER_ADMIN not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super administrator role required"
        )
    return user_data


def get_routing_engine(
    user_data: dict = Depends(get_current_user),
    roles: List[RoleName] = Depends(get_current_roles),
    services: AccessServices = Depends(get_access_services)
) -> RoutingDecisionEngine:
    return services.routing_engine(user_data["id"], roles)

