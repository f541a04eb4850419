from pydantic import BaseModel, field_validator
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum

from carehub.config.access_config import validate_module_name


class DashboardKind(str, Enum):
    UNIFIED = "unified"
    MODULE_SPECIFIC = "module_specific"


def _module_or_none(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    return validate_module_name(value)


class UserPreferences(BaseModel):
    default_module: Optional[str] = None
    last_active_module: Optional[str] = None
    preferred_dashboard: DashboardKind = DashboardKind.MODULE_SPECIFIC
    auto_route: bool = True

    @field_validator("default_module", "last_active_module")
    @classmethod
    def check_module_names(cls, value: Optional[str]) -> Optional[str]:
        return _module_or_none(value)


class UserPreferencesUpdate(BaseModel):
    """Partial update; only fields explicitly set are merged."""
    default_module: Optional[str] = None
    last_active_module: Optional[str] = None
    preferred_dashboard: Optional[DashboardKind] = None
    auto_route: Optional[bool] = None

    @field_validator("default_module", "last_active_module")
    @classmethod
    def check_module_names(cls, value: Optional[str]) -> Optional[str]:
        return _module_or_none(value)


class ModuleProgress(BaseModel):
    module_id: str
    last_path: Optional[str] = None
    form_snapshot: Optional[Dict[str, Any]] = None
    timestamp: datetime


