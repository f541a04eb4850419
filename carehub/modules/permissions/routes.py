from fastapi import APIRouter, Depends
from carehub.core.dependencies import (
    AccessServices,
    get_access_services,
    get_current_user,
    require_permission,
)
from carehub.modules.grants.schemas import EffectivePermission, UserPermissionGrant
from carehub.modules.permissions.schemas import (
    PermissionCheckResponse, ValidateMultipleRequest, ValidateMultipleResponse,
    GrantPermissionRequest, RevokePermissionResponse,
)
from typing import Dict, List, Optional

router = APIRouter(prefix="/permissions", tags=["permissions"])

MANAGE_PERMISSIONS = "permissions:manage"
READ_PERMISSIONS = "permissions:read"


@router.get("/check", response_model=PermissionCheckResponse)
async def check_permission(
    permission: str,
    facility_id: Optional[str] = None,
    user_data: Dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
):
    """Check a single permission for the current user"""
    allowed = await services.permissions.has_permission(user_data["id"], permission, facility_id)
    return PermissionCheckResponse(permission=permission, facility_id=facility_id, allowed=allowed)


@router.post("/validate", response_model=ValidateMultipleResponse)
async def validate_permissions(
    request: ValidateMultipleRequest,
    user_data: Dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
):
    """Check several permissions at once; each one resolves independently"""
    results = await services.permissions.validate_multiple(user_data["id"], request.permissions, request.facility_id)
    return ValidateMultipleResponse(results=results)


@router.get("/effective", response_model=List[EffectivePermission])
async def my_effective_permissions(
    user_data: Dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
):
    """Effective permissions of the current user"""
    return await services.permissions.effective_permissions(user_data["id"])


@router.get("/effective/{user_id}", response_model=List[EffectivePermission])
async def user_effective_permissions(
    user_id: str,
    user_data: Dict = Depends(require_permission(READ_PERMISSIONS)),
    services: AccessServices = Depends(get_access_services)
):
    """Effective permissions of another user"""
    return await services.permissions.effective_permissions(user_id)


@router.post("/grants", response_model=UserPermissionGrant, status_code=201)
async def grant_permission(
    request: GrantPermissionRequest,
    user_data: Dict = Depends(require_permission(MANAGE_PERMISSIONS)),
    services: AccessServices = Depends(get_access_services)
):
    """Grant a permission directly to a user"""
    return await services.permissions.grant_permission(
        request.user_id, request.permission_name, user_data["id"], request.expires_at
    )


@router.delete("/grants/{user_id}/{permission_name}", response_model=RevokePermissionResponse)
async def revoke_permission(
    user_id: str,
    permission_name: str,
    user_data: Dict = Depends(require_permission(MANAGE_PERMISSIONS)),
    services: AccessServices = Depends(get_access_services)
):
    """Revoke a user's direct grant (soft delete)"""
    revoked = await services.permissions.revoke_permission(user_id, permission_name)
    return RevokePermissionResponse(user_id=user_id, permission_name=permission_name, revoked=revoked)
