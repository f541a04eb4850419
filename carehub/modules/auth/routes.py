from fastapi import APIRouter, Depends
from carehub.config.access_config import RoleName, is_super_admin
from carehub.core.dependencies import (
    AccessServices,
    get_access_services,
    get_auth_service,
    get_current_roles,
    get_current_token,
    get_current_user,
)
from carehub.core.exceptions import ResolutionError
from carehub.modules.auth.schemas import LoginRequest, TokenResponse, CurrentUserResponse
from carehub.modules.auth.service import AuthService
from carehub.modules.routing.service import RecordingNavigator
from typing import Dict, List

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(
    login_data: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    services: AccessServices = Depends(get_access_services)
):
    """Login, then resolve roles and compute the landing route"""
    session = service.login(login_data)
    user_id = session["user_id"]
    try:
        roles = await services.permissions.user_roles(user_id)
    except ResolutionError as e:
        services.reporter.report("auth", "Could not load roles at login", e, user_id=user_id)
        roles = []

    engine = services.routing_engine(user_id, roles)
    await engine.load()
    route = await engine.perform_routing(RecordingNavigator(login_data.current_path), authenticated=True)
    return TokenResponse(
        access_token=session["access_token"],
        user_id=user_id,
        email=session["email"],
        roles=roles,
        route=route,
    )


@router.post("/logout", status_code=200)
async def logout(
    token: str = Depends(get_current_token),
    user_data: Dict = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    services: AccessServices = Depends(get_access_services)
):
    """Logout and end the user's routing session"""
    service.logout(token)
    services.routing_sessions.drop(user_data["id"])
    services.permissions.invalidate_user(user_data["id"])
    services.modules.invalidate_user(user_data["id"])
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=CurrentUserResponse)
async def get_me(
    user_data: Dict = Depends(get_current_user),
    roles: List[RoleName] = Depends(get_current_roles),
    services: AccessServices = Depends(get_access_services)
):
    """Current user with roles, effective permissions and effective modules (for the frontend)"""
    return CurrentUserResponse(
        id=user_data["id"],
        email=user_data.get("email"),
        roles=roles,
        is_super_admin=is_super_admin(roles),
        permissions=await services.permissions.effective_permissions(user_data["id"]),
        modules=await services.modules.effective_modules(user_data["id"]),
    )
