from pydantic import BaseModel
from typing import Any, Dict, Optional
from enum import Enum

from carehub.modules.preferences.schemas import UserPreferences


class RoutingState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    DECIDED = "decided"
    NAVIGATED = "navigated"
    SUSPENDED = "suspended"


class RouteDecisionRule(str, Enum):
    SUPER_ADMIN_LAST_ACTIVE = "super_admin_last_active"
    SUPER_ADMIN_DASHBOARD = "super_admin_dashboard"
    RESUME_PROGRESS = "resume_progress"
    DEFAULT_MODULE = "default_module"
    FIRST_ACCESSIBLE = "first_accessible"
    DASHBOARD = "dashboard"
    ERROR_FALLBACK = "error_fallback"


class RouteDecision(BaseModel):
    path: str
    rule: RouteDecisionRule


class BestRouteResponse(BaseModel):
    path: str
    rule: RouteDecisionRule
    state: RoutingState


class PerformRoutingRequest(BaseModel):
    current_path: str = "/"


class PerformRoutingResponse(BaseModel):
    state: RoutingState
    route: Optional[str] = None
    navigated: bool = False


class ProgressReport(BaseModel):
    module_id: str
    path: Optional[str] = None
    form_snapshot: Optional[Dict[str, Any]] = None


class ProgressReportResponse(BaseModel):
    preferences: UserPreferences
    recorded: int
