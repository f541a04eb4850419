from fastapi import APIRouter, Depends
from carehub.config.access_config import RoleName
from carehub.core.dependencies import (
    AccessServices,
    get_access_services,
    get_current_roles,
    get_current_user,
    get_routing_engine,
)
from carehub.modules.preferences.schemas import ModuleProgress, UserPreferences, UserPreferencesUpdate
from carehub.modules.routing.service import RoutingDecisionEngine
from typing import Dict, List

router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("", response_model=UserPreferences)
async def get_preferences(
    user_data: Dict = Depends(get_current_user),
    roles: List[RoleName] = Depends(get_current_roles),
    services: AccessServices = Depends(get_access_services)
):
    """Routing preferences of the current user (created with role defaults on first read)"""
    return await services.preferences.load(user_data["id"], roles)


@router.patch("", response_model=UserPreferences)
async def update_preferences(
    update: UserPreferencesUpdate,
    engine: RoutingDecisionEngine = Depends(get_routing_engine)
):
    """Merge a partial update into the current user's preferences"""
    return await engine.update_user_preferences(update)


@router.get("/progress", response_model=List[ModuleProgress])
async def get_progress(
    user_data: Dict = Depends(get_current_user),
    services: AccessServices = Depends(get_access_services)
):
    """Most recent module progress records, newest first"""
    return await services.preferences.load_progress(user_data["id"])
