from fastapi import APIRouter, Depends
from carehub.core.dependencies import (
    AccessServices,
    get_access_services,
    get_current_user,
    require_permission,
)
from carehub.modules.grants.schemas import EffectiveModule, RoleModuleAssignment, UserModuleAssignment
from carehub.modules.module_access.schemas import (
    ModuleAccessResponse, UserModuleAssign, RoleModuleAssign, RevokeModuleResponse,
)
from typing import Dict, List

router = APIRouter(prefix="/modules", tags=["modules"])

MANAGE_MODULES = "modules:manage"
READ_MODULES = "modules:read"


@router.get("/access/{module_name}", response_model=ModuleAccessResponse)
async def check_module_access(
    module_name: str,
    user_data: Dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
):
    """Check whether the current user may open a module"""
    allowed = await services.modules.has_module_access(user_data["id"], module_name)
    return ModuleAccessResponse(module=module_name, allowed=allowed)


@router.get("/effective", response_model=List[EffectiveModule])
async def my_effective_modules(
    user_data: Dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
):
    """Effective modules of the current user"""
    return await services.modules.effective_modules(user_data["id"])


@router.get("/effective/{user_id}", response_model=List[EffectiveModule])
async def user_effective_modules(
    user_id: str,
    user_data: Dict = Depends(require_permission(READ_MODULES)),
    services: AccessServices = Depends(get_access_services)
):
    """Effective modules of another user"""
    return await services.modules.effective_modules(user_id)


@router.post("/assignments/users", response_model=UserModuleAssignment, status_code=201)
async def assign_module_to_user(
    request: UserModuleAssign,
    user_data: Dict = Depends(require_permission(MANAGE_MODULES)),
    services: AccessServices = Depends(get_access_services)
):
    """Assign a module directly to a user, optionally until expires_at"""
    return await services.modules.assign_module_to_user(
        request.user_id, request.module_name, user_data["id"], request.expires_at
    )


@router.delete("/assignments/users/{user_id}/{module_name}", response_model=RevokeModuleResponse)
async def revoke_module_from_user(
    user_id: str,
    module_name: str,
    user_data: Dict = Depends(require_permission(MANAGE_MODULES)),
    services: AccessServices = Depends(get_access_services)
):
    """Deactivate a user's direct module assignment"""
    revoked = await services.modules.revoke_module_from_user(user_id, module_name)
    return RevokeModuleResponse(user_id=user_id, module_name=module_name, revoked=revoked)


@router.post("/assignments/roles", response_model=RoleModuleAssignment, status_code=201)
async def assign_module_to_role(
    request: RoleModuleAssign,
    user_data: Dict = Depends(require_permission(MANAGE_MODULES)),
    services: AccessServices = Depends(get_access_services)
):
    """Assign a module to every holder of a role"""
    return await services.modules.assign_module_to_role(request.role, request.module_name, user_data["id"])
