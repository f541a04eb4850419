from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from carehub.config.access_config import ModuleName, RoleName


class ModuleAccessResponse(BaseModel):
    module: str
    allowed: bool


class UserModuleAssign(BaseModel):
    user_id: str
    module_name: ModuleName
    expires_at: Optional[datetime] = None


class RoleModuleAssign(BaseModel):
    role: RoleName
    module_name: ModuleName


class RevokeModuleResponse(BaseModel):
    user_id: str
    module_name: str
    revoked: bool
