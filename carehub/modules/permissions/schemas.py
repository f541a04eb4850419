from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime


class PermissionCheckResponse(BaseModel):
    permission: str
    facility_id: Optional[str] = None
    allowed: bool


class ValidateMultipleRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1)
    facility_id: Optional[str] = None


class ValidateMultipleResponse(BaseModel):
    results: Dict[str, bool]


class GrantPermissionRequest(BaseModel):
    user_id: str
    permission_name: str
    expires_at: Optional[datetime] = None


class RevokePermissionResponse(BaseModel):
    user_id: str
    permission_name: str
    revoked: bool
