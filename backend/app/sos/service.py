"""
service.py — SOS report intake, admin queries and AI classification.

IncidentService is the façade the HTTP layer talks to. Review decisions
go through ReviewWorkflow (backend.app.sos.review); everything else about
a report lives here.

═══════════════════════════════════════════════════════════════════════════
INTAKE PIPELINE
═══════════════════════════════════════════════════════════════════════════

    validate ──▶ reporter lookup ──▶ reverse geocode ──▶ heuristics ──▶ persist
    (400)        (404)               (never fails)       (pure)        (pending)
                                                                           │
                                                  sos_received to reporter ◀┘
                                                  (best effort)

Nothing is persisted unless every validation passes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from backend.app.alerts.channels.whatsapp import TwilioWhatsAppAdapter
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.sos.classifier import IncidentClassifier, parse_verdict
from backend.app.sos.geocoding import ReverseGeocoder, resolve_address
from backend.app.sos.heuristics import categorize_incident, determine_priority
from backend.app.sos.models import (
    AiClassification,
    Category,
    DeviceInfo,
    DevicePlatform,
    GeoLocation,
    IncidentReport,
    IncidentStatus,
    Priority,
)
from backend.app.sos.store import IncidentStore, ReportFilter, UserDirectory
from backend.app.spatial.radius_utils import validate_coordinates

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Limits
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_MESSAGE = "Emergency situation reported"
MAX_MESSAGE_LENGTH = 500
MIN_VIDEO_DURATION = 1
MAX_VIDEO_DURATION = 30
MIN_SEARCH_RADIUS_M = 100
MAX_SEARCH_RADIUS_M = 10_000
MAX_PAGE_SIZE = 100

TIMEFRAMES: Dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


@dataclass
class ReportPage:
    reports: List[IncidentReport]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reports": [r.to_dict() for r in self.reports],
            "pagination": {
                "current_page": self.page,
                "total_pages": self.total_pages,
                "total_reports": self.total,
                "has_next_page": self.page < self.total_pages,
                "has_prev_page": self.page > 1,
            },
        }


# ═══════════════════════════════════════════════════════════════════════════
# Validation Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _validate_http_url(value: Optional[str], field: str) -> None:
    parsed = urlparse(value or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{field} must be a valid http(s) URL", field=field)


def _validate_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1", field="page")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")


def _location(latitude: Any, longitude: Any, accuracy: Optional[float] = None) -> GeoLocation:
    try:
        return GeoLocation(latitude=latitude, longitude=longitude, accuracy=accuracy)
    except ValueError as e:
        raise ValidationError(str(e), field="location")


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class IncidentService:

    def __init__(
        self,
        incidents: IncidentStore,
        users: UserDirectory,
        geocoder: ReverseGeocoder,
        *,
        classifier: Optional[IncidentClassifier] = None,
        notifier: Optional[TwilioWhatsAppAdapter] = None,
        default_video_duration: int = 15,
        estimated_review_time: str = "5-10 minutes",
    ) -> None:
        self.incidents = incidents
        self.users = users
        self.geocoder = geocoder
        self.classifier = classifier
        self.notifier = notifier
        self.default_video_duration = default_video_duration
        self.estimated_review_time = estimated_review_time

    # ── Intake ──

    async def create_report(
        self,
        user_id: str,
        video_url: str,
        latitude: float,
        longitude: float,
        *,
        message: Optional[str] = None,
        accuracy: Optional[float] = None,
        video_thumbnail: Optional[str] = None,
        video_duration: Optional[int] = None,
        captured_at: Optional[datetime] = None,
        device_platform: Optional[str] = None,
        device_version: Optional[str] = None,
        device_model: Optional[str] = None,
    ) -> IncidentReport:
        """Validate, enrich and persist a new pending SOS report."""
        if not user_id or not str(user_id).strip():
            raise ValidationError("User ID is required", field="user_id")
        _validate_http_url(video_url, "video_url")
        if video_thumbnail:
            _validate_http_url(video_thumbnail, "video_thumbnail")

        location = _location(latitude, longitude, accuracy)

        text = (message or "").strip() or DEFAULT_MESSAGE
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters", field="message",
            )

        duration = self.default_video_duration if video_duration is None else video_duration
        if not MIN_VIDEO_DURATION <= duration <= MAX_VIDEO_DURATION:
            raise ValidationError(
                f"Video duration must be between {MIN_VIDEO_DURATION} and "
                f"{MAX_VIDEO_DURATION} seconds",
                field="video_duration",
            )

        platform: Optional[DevicePlatform] = None
        if device_platform:
            try:
                platform = DevicePlatform(device_platform)
            except ValueError:
                raise ValidationError(
                    "Device platform must be one of ios, android, web",
                    field="device_info.platform",
                )

        user = await self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id=user_id)

        location.address = await resolve_address(
            self.geocoder, location.latitude, location.longitude,
        )

        incident = IncidentReport(
            reporter_id=user_id,
            reporter=user.to_reporter_info(),
            video_url=video_url,
            video_thumbnail=video_thumbnail,
            video_duration=duration,
            message=text,
            location=location,
            captured_at=captured_at or datetime.now(timezone.utc),
            device_info=DeviceInfo(platform=platform, version=device_version, model=device_model),
            priority=determine_priority(text),
            category=categorize_incident(text),
        )
        await self.incidents.create(incident)

        logger.info(
            "SOS %s created by %s (%s/%s)",
            incident.incident_id, user_id, incident.priority.value, incident.category.value,
            extra={"incident_id": incident.incident_id},
        )

        await self._acknowledge(incident)
        return incident

    async def _acknowledge(self, incident: IncidentReport) -> None:
        if self.notifier is None or not incident.reporter.phone:
            return
        try:
            outcome = await self.notifier.send_template(
                incident.reporter.phone,
                "sos_received",
                {
                    "user_name": incident.reporter.name or "there",
                    "sos_id": incident.incident_id,
                    "review_time": self.estimated_review_time,
                },
            )
        except Exception as e:
            logger.warning("sos_received for %s failed: %s", incident.incident_id, e)
            return
        if not outcome.success:
            logger.warning("sos_received for %s not delivered: %s", incident.incident_id, outcome.error)

    # ── Queries ──

    async def get_report(self, incident_id: str) -> IncidentReport:
        incident = await self.incidents.get(incident_id)
        if incident is None:
            raise NotFoundError("SOS report", sos_id=incident_id)
        return incident

    async def list_pending(self, page: int = 1, limit: int = 20) -> ReportPage:
        return await self.list_reports(status=IncidentStatus.PENDING.value, page=page, limit=limit)

    async def list_reports(
        self,
        *,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        priority: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> ReportPage:
        _validate_paging(page, limit)
        try:
            filters = ReportFilter(
                status=IncidentStatus(status) if status else None,
                priority=Priority(priority) if priority else None,
                category=Category(category) if category else None,
                start=start_date,
                end=end_date,
            )
        except ValueError as e:
            raise ValidationError(str(e))
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date", field="start_date")

        reports, total = await self.incidents.query(
            filters, offset=(page - 1) * limit, limit=limit,
        )
        return ReportPage(reports=reports, page=page, limit=limit, total=total)

    async def users_in_radius(
        self, latitude: float, longitude: float, radius_m: float = 1000,
    ) -> List[Dict[str, Any]]:
        try:
            validate_coordinates(latitude, longitude)
        except ValueError as e:
            raise ValidationError(str(e), field="location")
        if not MIN_SEARCH_RADIUS_M <= radius_m <= MAX_SEARCH_RADIUS_M:
            raise ValidationError(
                f"Radius must be between {MIN_SEARCH_RADIUS_M} and {MAX_SEARCH_RADIUS_M} meters",
                field="radius",
            )

        found = await self.users.find_users_within(latitude, longitude, radius_m)
        return [
            {
                "user_id": user.user_id,
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "distance_km": round(distance_km, 2),
                "has_push_token": bool(user.push_token),
            }
            for user, distance_km in found
        ]

    async def stats(self, timeframe: str = "week") -> Dict[str, Any]:
        window = TIMEFRAMES.get(timeframe)
        if window is None:
            raise ValidationError(
                "timeframe must be one of " + ", ".join(TIMEFRAMES), field="timeframe",
            )
        end = datetime.now(timezone.utc)
        start = end - window
        filters = ReportFilter(start=start, end=end)

        by_status = await self.incidents.count_by_status(filters)
        by_category = await self.incidents.count_by_category(filters)

        total = sum(by_status.values())
        approved = by_status.get(IncidentStatus.APPROVED, 0)
        return {
            "timeframe": timeframe,
            "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
            "stats": {
                "total": total,
                "pending": by_status.get(IncidentStatus.PENDING, 0),
                "approved": approved,
                "rejected": by_status.get(IncidentStatus.REJECTED, 0),
                "approval_rate": round(approved / total * 100, 1) if total else 0.0,
            },
            "category_breakdown": {c.value: n for c, n in by_category.items()},
        }

    # ── AI classification ──

    async def apply_classification(
        self, incident_id: str, verdict: Dict[str, Any],
    ) -> IncidentReport:
        """Validate a verdict and merge it; review state is never touched."""
        classification = parse_verdict(verdict)
        return await self._store_classification(incident_id, classification)

    async def classify_incident(self, incident_id: str) -> IncidentReport:
        """Run the configured classifier on the report video and store the verdict."""
        if self.classifier is None:
            raise ValidationError("AI classification is not configured")
        incident = await self.get_report(incident_id)
        classification = await self.classifier.classify(incident.video_url)
        return await self._store_classification(incident_id, classification)

    async def _store_classification(
        self, incident_id: str, classification: AiClassification,
    ) -> IncidentReport:
        updated = await self.incidents.set_ai_classification(incident_id, classification)
        if updated is None:
            raise NotFoundError("SOS report", sos_id=incident_id)
        logger.info(
            "AI verdict stored for %s: emergency=%s",
            incident_id, classification.is_emergency,
            extra={"incident_id": incident_id},
        )
        return updated
