"""
models.py — Incident (SOS report) domain model.

Defines:
    • IncidentStatus / Priority / Category / DevicePlatform — enums
    • PrimaryService / Confidence — AI verdict enums
    • GeoLocation, DeviceInfo, ReporterInfo — payload parts
    • ReviewRecord, AlertOutcome, AiClassification — lifecycle sub-records
    • IncidentReport — the aggregate
    • UserRecord — directory entry (reporter lookup + alert recipient source)

═══════════════════════════════════════════════════════════════════════════
INCIDENT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌─────────┐  review(approved)  ┌──────────┐  fan-out  ┌──────────────────┐
    │ pending │ ─────────────────▶ │ approved │ ────────▶ │ + alert_outcome  │
    └─────────┘                    └──────────┘           └──────────────────┘
         │
         │  review(rejected)
         ▼
    ┌──────────┐
    │ rejected │
    └──────────┘

A report is reviewed exactly once. After review only `alert_outcome` and
the advisory `ai_classification` may change. Reports are never deleted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from backend.app.alerts.models import Recipient
from backend.app.spatial.radius_utils import validate_coordinates


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class IncidentStatus(str, Enum):
    PENDING  = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


REVIEW_DECISIONS = (IncidentStatus.APPROVED, IncidentStatus.REJECTED)


class Priority(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class Category(str, Enum):
    STAMPEDE = "stampede"
    FIRE     = "fire"
    VIOLENCE = "violence"
    MEDICAL  = "medical"
    OTHER    = "other"


class DevicePlatform(str, Enum):
    IOS     = "ios"
    ANDROID = "android"
    WEB     = "web"


class PrimaryService(str, Enum):
    POLICE       = "Police"
    AMBULANCE    = "Ambulance"
    FIRE_BRIGADE = "Fire Brigade"


class Confidence(str, Enum):
    HIGH   = "High"
    MEDIUM = "Medium"
    LOW    = "Low"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"SOS-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Payload Parts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GeoLocation:
    """Where the incident happened. Out-of-range values raise ValueError."""
    latitude: float
    longitude: float
    address: str = ""
    accuracy: Optional[float] = None  # metres, as reported by the device

    def __post_init__(self) -> None:
        validate_coordinates(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "accuracy": self.accuracy,
        }


@dataclass
class DeviceInfo:
    platform: Optional[DevicePlatform] = None
    version: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value if self.platform else None,
            "version": self.version,
            "model": self.model,
        }


@dataclass
class ReporterInfo:
    """Contact snapshot taken from the user directory at creation time."""
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "phone": self.phone, "email": self.email}


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle Sub-records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ReviewRecord:
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    decision: Optional[IncidentStatus] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "decision": self.decision.value if self.decision else None,
            "admin_notes": self.notes,
        }


@dataclass
class AlertOutcome:
    """Result of the fan-out triggered by approval, success or not."""
    attempted: bool = True
    recipient_count: int = 0
    alert_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None

    @property
    def is_sent(self) -> bool:
        return self.error is None and self.alert_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_sent": self.is_sent,
            "attempted": self.attempted,
            "recipient_count": self.recipient_count,
            "alert_id": self.alert_id,
            "error": self.error,
            "sent_at": _iso(self.sent_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertOutcome":
        sent_at = data.get("sent_at")
        return cls(
            attempted=bool(data.get("attempted", True)),
            recipient_count=int(data.get("recipient_count") or 0),
            alert_id=data.get("alert_id"),
            error=data.get("error"),
            sent_at=datetime.fromisoformat(sent_at) if sent_at else None,
        )


@dataclass
class AiClassification:
    """Advisory verdict from the video classifier."""
    is_emergency: bool
    primary_service: Optional[PrimaryService] = None
    confidence: Optional[Confidence] = None
    reason: str = ""
    classified_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_emergency": self.is_emergency,
            "primary_service": self.primary_service.value if self.primary_service else None,
            "confidence": self.confidence.value if self.confidence else None,
            "reason": self.reason,
            "classified_at": _iso(self.classified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AiClassification":
        classified_at = data.get("classified_at")
        return cls(
            is_emergency=bool(data["is_emergency"]),
            primary_service=(
                PrimaryService(data["primary_service"]) if data.get("primary_service") else None
            ),
            confidence=Confidence(data["confidence"]) if data.get("confidence") else None,
            reason=data.get("reason") or "",
            classified_at=datetime.fromisoformat(classified_at) if classified_at else _now(),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Aggregate
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class IncidentReport:
    """An SOS report from creation through review and fan-out."""
    reporter_id: str
    video_url: str
    location: GeoLocation
    message: str = "Emergency situation reported"
    video_thumbnail: Optional[str] = None
    video_duration: int = 15
    captured_at: datetime = field(default_factory=_now)
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    reporter: ReporterInfo = field(default_factory=ReporterInfo)
    priority: Priority = Priority.MEDIUM
    category: Category = Category.OTHER
    status: IncidentStatus = IncidentStatus.PENDING
    review: ReviewRecord = field(default_factory=ReviewRecord)
    alert_outcome: Optional[AlertOutcome] = None
    ai_classification: Optional[AiClassification] = None
    incident_id: str = field(default_factory=_generate_id)
    created_at: datetime = field(default_factory=_now)

    @property
    def is_pending(self) -> bool:
        return self.status == IncidentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sos_id": self.incident_id,
            "user_id": self.reporter_id,
            "reporter": self.reporter.to_dict(),
            "video_url": self.video_url,
            "video_thumbnail": self.video_thumbnail,
            "video_duration": self.video_duration,
            "message": self.message,
            "location": self.location.to_dict(),
            "timestamp": self.captured_at.isoformat(),
            "device_info": self.device_info.to_dict(),
            "status": self.status.value,
            "priority": self.priority.value,
            "category": self.category.value,
            "review": self.review.to_dict(),
            "alert_sent": self.alert_outcome.to_dict() if self.alert_outcome else None,
            "ai_classification": (
                self.ai_classification.to_dict() if self.ai_classification else None
            ),
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# User Directory Entry
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class UserRecord:
    """A registered app user. Owned by the user directory, read-only here."""
    user_id: str
    name: str
    latitude: float
    longitude: float
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    is_active: bool = True

    def to_recipient(self) -> Recipient:
        return Recipient(
            recipient_id=self.user_id,
            name=self.name,
            latitude=self.latitude,
            longitude=self.longitude,
            push_token=self.push_token,
            phone=self.phone,
            is_active=self.is_active,
        )

    def to_reporter_info(self) -> ReporterInfo:
        return ReporterInfo(name=self.name, phone=self.phone, email=self.email)
