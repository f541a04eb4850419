from fastapi import APIRouter, Depends, HTTPException
from carehub.core.dependencies import get_routing_engine
from carehub.modules.routing.schemas import (
    BestRouteResponse, PerformRoutingRequest, PerformRoutingResponse,
    ProgressReport, ProgressReportResponse,
)
from carehub.modules.routing.service import RecordingNavigator, RoutingDecisionEngine

router = APIRouter(prefix="/routing", tags=["routing"])


@router.get("/best-route", response_model=BestRouteResponse)
async def best_route(
    engine: RoutingDecisionEngine = Depends(get_routing_engine)
):
    """Where the current user should land, without navigating"""
    await engine.load()
    decision = await engine.best_route_decision()
    return BestRouteResponse(path=decision.path, rule=decision.rule, state=engine.state)


@router.post("/perform", response_model=PerformRoutingResponse)
async def perform_routing(
    request: PerformRoutingRequest,
    engine: RoutingDecisionEngine = Depends(get_routing_engine)
):
    """Run auto-routing from the client's current location"""
    await engine.load()
    navigator = RecordingNavigator(request.current_path)
    route = await engine.perform_routing(navigator)
    return PerformRoutingResponse(state=engine.state, route=route, navigated=route is not None)


@router.post("/progress", response_model=ProgressReportResponse)
async def report_progress(
    report: ProgressReport,
    engine: RoutingDecisionEngine = Depends(get_routing_engine)
):
    """Report navigation into a module so the next session can resume there"""
    try:
        preferences, entries = await engine.update_module_progress(
            report.module_id, report.path, report.form_snapshot
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ProgressReportResponse(preferences=preferences, recorded=len(entries))
