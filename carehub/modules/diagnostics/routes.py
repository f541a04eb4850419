from fastapi import APIRouter, Depends
from carehub.core.dependencies import AccessServices, get_access_services, require_super_admin
from carehub.core.reporting import ErrorReport
from typing import Dict, List

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


@router.get("/errors", response_model=List[ErrorReport])
async def recent_errors(
    limit: int = 50,
    user_data: Dict = Depends(require_super_admin),
    services: AccessServices = Depends(get_access_services)
):
    """Recent swallowed access errors, newest first"""
    return services.reporter.recent(limit)
