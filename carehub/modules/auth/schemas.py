from pydantic import BaseModel, EmailStr
from typing import List, Optional

from carehub.config.access_config import RoleName
from carehub.modules.grants.schemas import EffectiveModule, EffectivePermission


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    current_path: str = "/"


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: str
    roles: List[RoleName] = []
    route: Optional[str] = None


class CurrentUserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    roles: List[RoleName]
    is_super_admin: bool
    permissions: List[EffectivePermission]
    modules: List[EffectiveModule]
