"""
FastAPI route: SOS reports, admin review and alert lookups.

    POST /api/v1/sos/report                  — submit an SOS video report
    GET  /api/v1/sos/pending                 — review queue (admin)
    GET  /api/v1/sos/all                     — filtered report listing (admin)
    GET  /api/v1/sos/users-in-radius         — who would be alerted (admin)
    GET  /api/v1/sos/stats                   — review statistics (admin)
    POST /api/v1/sos/alerts/stampede         — manual stampede broadcast (admin)
    GET  /api/v1/sos/alerts/{alert_id}       — alert delivery record (admin)
    GET  /api/v1/sos/{sos_id}                — single report (admin)
    PUT  /api/v1/sos/{sos_id}/review         — approve / reject (admin)
    PUT  /api/v1/sos/{sos_id}/classification — store an AI verdict (admin)
    POST /api/v1/sos/{sos_id}/analyze        — run the AI classifier (admin)

Admin routes require X-Admin-Key when ADMIN_API_KEY is configured.
"""

from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from backend.app.api.schemas import (
    AiVerdictRequest,
    ReviewRequest,
    ReviewResponse,
    SOSReportRequest,
    SOSReportResponse,
    StampedeAlertRequest,
)
from backend.app.core.errors import AuthenticationError, NotFoundError
from backend.app.sos.container import ServiceContainer

router = APIRouter(prefix="/api/v1/sos", tags=["sos"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def require_admin(
    container: ServiceContainer = Depends(get_container),
    x_admin_key: Optional[str] = Header(None),
    x_admin_id: Optional[str] = Header(None),
) -> str:
    """Check the admin key and return the reviewer id."""
    expected = container.settings.ADMIN_API_KEY
    if expected and not hmac.compare_digest(x_admin_key or "", expected):
        raise AuthenticationError()
    return x_admin_id or "admin"


# ---------------------------------------------------------------------------
# Reporter endpoints
# ---------------------------------------------------------------------------

@router.post("/report", response_model=SOSReportResponse, status_code=201)
async def submit_report(
    body: SOSReportRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Accept an SOS video report and queue it for admin review."""
    device = body.device_info
    incident = await container.incident_service.create_report(
        body.user_id,
        body.video_url,
        body.location.latitude,
        body.location.longitude,
        message=body.message,
        accuracy=body.location.accuracy,
        video_thumbnail=body.video_thumbnail,
        video_duration=body.video_duration,
        captured_at=body.timestamp,
        device_platform=device.platform if device else None,
        device_version=device.version if device else None,
        device_model=device.model if device else None,
    )
    return SOSReportResponse(
        sos_id=incident.incident_id,
        message="SOS report submitted successfully. Admin will review shortly.",
        estimated_review_time=container.incident_service.estimated_review_time,
    )


# ---------------------------------------------------------------------------
# Admin queries
# ---------------------------------------------------------------------------

@router.get("/pending")
async def pending_reports(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    result = await container.incident_service.list_pending(page=page, limit=limit)
    return {"success": True, **result.to_dict()}


@router.get("/all")
async def all_reports(
    status: Optional[str] = Query(None, description="pending | approved | rejected"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    priority: Optional[str] = Query(None, description="high | medium | low"),
    category: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    result = await container.incident_service.list_reports(
        status=status,
        start_date=start_date,
        end_date=end_date,
        priority=priority,
        category=category,
        page=page,
        limit=limit,
    )
    return {"success": True, **result.to_dict()}


@router.get("/users-in-radius")
async def users_in_radius(
    latitude: float = Query(..., description="Centre latitude"),
    longitude: float = Query(..., description="Centre longitude"),
    radius: float = Query(1000, description="Search radius in metres (100-10000)"),
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    users = await container.incident_service.users_in_radius(latitude, longitude, radius)
    return {
        "success": True,
        "users": users,
        "count": len(users),
        "search_params": {"latitude": latitude, "longitude": longitude, "radius": radius},
    }


@router.get("/stats")
async def review_stats(
    timeframe: str = Query("week", description="day | week | month | year"),
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    return {"success": True, **await container.incident_service.stats(timeframe)}


@router.post("/alerts/stampede")
async def send_stampede_alert(
    body: StampedeAlertRequest,
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    """Send an operator-written stampede alert to the duty numbers over WhatsApp."""
    result = await container.manual_alerts.send_stampede_alert(
        body.message, body.crowd_density, body.timestamp,
    )
    return result.to_dict()


@router.get("/alerts/{alert_id}")
async def get_alert(
    alert_id: str,
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    record = await container.alerts.get(alert_id)
    if record is None:
        raise NotFoundError("Alert", alert_id=alert_id)
    return {"success": True, "alert": record.to_dict()}


@router.get("/{sos_id}")
async def get_report(
    sos_id: str,
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    incident = await container.incident_service.get_report(sos_id)
    return {"success": True, "sos_report": incident.to_dict()}


# ---------------------------------------------------------------------------
# Admin actions
# ---------------------------------------------------------------------------

@router.put("/{sos_id}/review", response_model=ReviewResponse)
async def review_report(
    sos_id: str,
    body: ReviewRequest,
    container: ServiceContainer = Depends(get_container),
    reviewer_id: str = Depends(require_admin),
):
    """Approve or reject a pending report. Approval fans out nearby alerts."""
    result = await container.review_workflow.submit_review(
        sos_id, body.decision, body.admin_notes, reviewer_id=reviewer_id,
    )
    return ReviewResponse(
        message=f"SOS report {result.incident.status.value} successfully",
        **result.to_dict(),
    )


@router.put("/{sos_id}/classification")
async def store_classification(
    sos_id: str,
    body: AiVerdictRequest,
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    incident = await container.incident_service.apply_classification(
        sos_id, body.model_dump(),
    )
    return {"success": True, "sos_report": incident.to_dict()}


@router.post("/{sos_id}/analyze")
async def analyze_report(
    sos_id: str,
    container: ServiceContainer = Depends(get_container),
    _admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    incident = await container.incident_service.classify_incident(sos_id)
    return {
        "success": True,
        "sos_id": incident.incident_id,
        "ai_classification": (
            incident.ai_classification.to_dict() if incident.ai_classification else None
        ),
    }
