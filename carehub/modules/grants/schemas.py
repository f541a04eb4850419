from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

from carehub.config.access_config import RoleName


class GrantSource(str, Enum):
    ROLE = "role"
    DIRECT = "direct"


def as_utc(value: datetime) -> datetime:
    # PostgREST returns timestamptz with an offset; plain timestamps are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_live(is_active: Optional[bool], expires_at: Optional[datetime], at: datetime) -> bool:
    if not is_active:
        return False
    return expires_at is None or as_utc(expires_at) > as_utc(at)


class Role(BaseModel):
    id: str
    name: RoleName
    description: Optional[str] = None

    class Config:
        from_attributes = True


class Permission(BaseModel):
    id: str
    name: str
    description: Optional[str] = None

    class Config:
        from_attributes = True


class Module(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_active: Optional[bool] = True

    class Config:
        from_attributes = True


class UserPermissionGrant(BaseModel):
    id: str
    user_id: str
    permission_id: str
    permission_name: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = True

    def is_effective(self, at: datetime) -> bool:
        return _is_live(self.is_active, self.expires_at, at)


class RoleModuleAssignment(BaseModel):
    id: str
    role_id: str
    module_id: str
    assigned_by: Optional[str] = None
    is_active: Optional[bool] = True


class UserModuleAssignment(BaseModel):
    id: str
    user_id: str
    module_id: str
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = True

    def is_effective(self, at: datetime) -> bool:
        return _is_live(self.is_active, self.expires_at, at)


class EffectivePermission(BaseModel):
    permission_name: str
    source: GrantSource
    expires_at: Optional[datetime] = None


class EffectiveModule(BaseModel):
    module_id: str
    module_name: str
    module_description: Optional[str] = None
    source: GrantSource
    expires_at: Optional[datetime] = None


def outlasts(candidate_expiry: Optional[datetime], current_expiry: Optional[datetime]) -> bool:
    """True when a grant expiring at candidate_expiry lives strictly longer than current_expiry (None = never)."""
    if current_expiry is None:
        return False
    if candidate_expiry is None:
        return True
    return as_utc(candidate_expiry) > as_utc(current_expiry)
