"""Analytics polling API routes - V1."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Request

from ...models import (
    ConversationStateResponse,
    DataResponse,
    FastUpdateResponse,
    HealthResponse,
    RefreshResponse,
    SessionResponse,
)
from ...services import DashboardService
from ...utils.logger import get_app_logger
from ...utils.timefmt import timestamp_fields

router = APIRouter(prefix="/api", tags=["Analytics"])

logger = get_app_logger()


def get_dashboard(request: Request) -> DashboardService:
    """Dependency to get the dashboard service of this app."""
    dashboard = getattr(request.app.state, "dashboard", None)
    if dashboard is None:
        raise HTTPException(status_code=500, detail="Dashboard not initialized")
    return dashboard


def _fail(dashboard: DashboardService, kind: str, detail: str, error: Exception) -> HTTPException:
    dashboard.monitor.record_error(kind, str(error))
    logger.error(f"{detail}: {error}")
    return HTTPException(status_code=500, detail=detail)


@router.get("/data", response_model=DataResponse, response_model_by_alias=True)
async def get_data(dashboard: DashboardService = Depends(get_dashboard)):
    """
    Full snapshot: conversations, summary, active projects and token totals.

    Returns:
        DataResponse
    """
    try:
        return dashboard.data_payload()
    except Exception as e:
        raise _fail(dashboard, "api_data", "Failed to build data snapshot", e)


@router.get("/realtime")
async def get_realtime(dashboard: DashboardService = Depends(get_dashboard)) -> Dict[str, Any]:
    """Lightweight counters for the header widgets."""
    return dashboard.realtime_stats()


@router.get("/fast-update", response_model=FastUpdateResponse, response_model_by_alias=True)
async def fast_update(dashboard: DashboardService = Depends(get_dashboard)):
    """
    Re-detect processes and re-read only conversations with a running process.

    Returns:
        FastUpdateResponse
    """
    try:
        snapshot = await dashboard.fast_update()
        return dashboard.fast_update_payload(snapshot)
    except Exception as e:
        raise _fail(dashboard, "api_fast_update", "Failed to update conversation states", e)


@router.get("/conversation-state", response_model=ConversationStateResponse, response_model_by_alias=True)
async def get_conversation_states(dashboard: DashboardService = Depends(get_dashboard)):
    """
    States of conversations with a running process, computed without file access.

    Returns:
        ConversationStateResponse
    """
    try:
        return await dashboard.conversation_states()
    except Exception as e:
        raise _fail(dashboard, "api_conversation_state", "Failed to get conversation states", e)


@router.get("/refresh", response_model=RefreshResponse, response_model_by_alias=True)
async def refresh(dashboard: DashboardService = Depends(get_dashboard)):
    """Force a full reload."""
    logger.info("Manual refresh requested")
    try:
        await dashboard.refresh()
    except Exception as e:
        raise _fail(dashboard, "api_refresh", "Failed to refresh data", e)
    return dashboard.refresh_payload()


@router.get("/session/{conversation_id}", response_model=SessionResponse, response_model_by_alias=True)
async def get_session(conversation_id: str, dashboard: DashboardService = Depends(get_dashboard)):
    """
    One conversation with its full message list.

    Args:
        conversation_id: Conversation id (log file stem)

    Returns:
        SessionResponse
    """
    payload = dashboard.session_payload(conversation_id)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return payload


@router.get("/processes")
async def get_processes(dashboard: DashboardService = Depends(get_dashboard)) -> Dict[str, Any]:
    """Running agent processes and their working-dir statistics."""
    try:
        await dashboard.process_detector.detect_running_agent_processes()
    except Exception as e:
        raise _fail(dashboard, "api_processes", "Failed to detect processes", e)
    return {**dashboard.process_detector.get_process_stats(), **timestamp_fields()}


@router.get("/notifications")
async def get_notifications(
    notification_type: Optional[str] = Query(None, alias="type", description="Only notifications of this type"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of notifications"),
    dashboard: DashboardService = Depends(get_dashboard),
) -> Dict[str, Any]:
    """Recent notification history and notification stats."""
    return {
        "notifications": dashboard.notifications.get_history(notification_type, limit),
        "stats": dashboard.notifications.stats(),
        **timestamp_fields(),
    }


@router.get("/system/health", response_model=HealthResponse, response_model_by_alias=True)
async def system_health(dashboard: DashboardService = Depends(get_dashboard)):
    """
    Health summary: healthy, degraded (too many recent errors) or warning (memory).

    Returns:
        HealthResponse
    """
    try:
        return dashboard.health()
    except Exception as e:
        logger.error(f"Failed to get system health: {e}")
        raise HTTPException(status_code=500, detail="Failed to get system health")


@router.get("/system/metrics")
async def system_metrics(dashboard: DashboardService = Depends(get_dashboard)) -> Dict[str, Any]:
    """Detailed performance metrics."""
    return dashboard.metrics()
