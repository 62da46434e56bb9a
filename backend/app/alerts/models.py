"""
models.py — Shared data structures for the nearby-user alert fan-out.

Defines:
    • AlertChannel    — delivery channel enum (push, WhatsApp/SMS)
    • AlertStatus     — lifecycle of an AlertRecord
    • Recipient       — read-only projection of a user eligible for alerts
    • ChannelMessage  — channel-agnostic rendered notification
    • DeliveryOutcome — result of one adapter send (failures are data)
    • DeliveryAttempt — outcome bound to a recipient + channel
    • AlertRecord     — persisted record of one fan-out pass
    • DispatchSummary — what dispatch_alert returns to the review workflow

═══════════════════════════════════════════════════════════════════════════
ALERT RECORD LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌──────────┐   all sends settled    ┌──────┐
    │ sending  │ ─────────────────────▶ │ sent │
    └──────────┘                        └──────┘
         │
         │  dispatch pass crashed (store/bug, never a channel failure)
         ▼
    ┌──────────┐
    │  failed  │
    └──────────┘

The record is written in `sending` state BEFORE any notification leaves
the process, so every delivered message can be traced to a record.

═══════════════════════════════════════════════════════════════════════════
CHANNEL SELECTION
═══════════════════════════════════════════════════════════════════════════

A recipient gets one delivery job per channel it has an address for:

    push_token present   → PUSH
    phone present        → WHATSAPP (WhatsApp or plain SMS, provider config)

A recipient with neither is never a candidate.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertChannel(str, Enum):
    """Available notification channels."""
    PUSH     = "push"
    WHATSAPP = "whatsapp"


class AlertStatus(str, Enum):
    """AlertRecord state machine."""
    SENDING = "sending"
    SENT    = "sent"
    FAILED  = "failed"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Recipient:
    """
    A user who may receive an alert.

    Attributes
    ----------
    recipient_id : str
        User id in the user directory.
    name : str
        Display name.
    latitude, longitude : float
        Last known location.
    push_token : str | None
        FCM registration token.
    phone : str | None
        E.164 phone number (+91XXXXXXXXXX) for WhatsApp/SMS.
    is_active : bool
        Inactive accounts never receive alerts.
    distance_km : float | None
        Filled in by the geospatial lookup, not by callers.
    """
    recipient_id: str
    name: str
    latitude: float
    longitude: float
    push_token: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    distance_km: Optional[float] = field(default=None, compare=False)

    @property
    def channels(self) -> List[AlertChannel]:
        """Channels this recipient can be reached on, in dispatch order."""
        available: List[AlertChannel] = []
        if self.push_token:
            available.append(AlertChannel.PUSH)
        if self.phone:
            available.append(AlertChannel.WHATSAPP)
        return available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "has_push_token": bool(self.push_token),
            "has_phone": bool(self.phone),
            "distance_km": (
                round(self.distance_km, 2) if self.distance_km is not None else None
            ),
        }


@dataclass
class ChannelMessage:
    """
    A rendered notification, independent of the provider.

    `data` values must be strings: FCM rejects any other type in the data
    payload, and Twilio ignores it.
    """
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ValueError for payloads no provider could accept."""
        if not self.body or not self.body.strip():
            raise ValueError("Notification body must not be empty")
        for key, value in self.data.items():
            if not isinstance(value, str):
                raise ValueError(
                    f"Notification data values must be strings, got {type(value).__name__} for {key!r}"
                )


@dataclass
class DeliveryOutcome:
    """Result of a single provider send. Never raised, always returned."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, provider_message_id: Optional[str] = None) -> "DeliveryOutcome":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error: str) -> "DeliveryOutcome":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "provider_message_id": self.provider_message_id,
            "error": self.error,
        }


@dataclass
class DeliveryAttempt:
    """One recipient × one channel, with its outcome."""
    recipient_id: str
    channel: AlertChannel
    outcome: DeliveryOutcome
    attempted_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "attempted_at": self.attempted_at.isoformat(),
            **self.outcome.to_dict(),
        }


@dataclass
class AlertRecord:
    """Persisted trace of one fan-out pass for an approved incident."""
    incident_id: str
    latitude: float
    longitude: float
    recipient_ids: List[str]
    message: str
    alert_id: str = field(default_factory=_generate_id)
    status: AlertStatus = AlertStatus.SENDING
    dispatched_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    push_sent: int = 0
    push_failed: int = 0
    whatsapp_sent: int = 0
    whatsapp_failed: int = 0
    recipients_reached: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "sos_id": self.incident_id,
            "location": {
                "latitude": self.latitude,
                "longitude": self.longitude,
            },
            "recipients": list(self.recipient_ids),
            "message": self.message,
            "status": self.status.value,
            "dispatched_at": self.dispatched_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "push_sent": self.push_sent,
            "push_failed": self.push_failed,
            "whatsapp_sent": self.whatsapp_sent,
            "whatsapp_failed": self.whatsapp_failed,
            "recipients_reached": self.recipients_reached,
            "error": self.error,
        }


@dataclass
class DispatchSummary:
    """Aggregated result of dispatch_alert."""
    alert_id: str
    candidate_count: int
    recipient_count: int = 0  # distinct recipients with ≥1 successful channel
    push_sent: int = 0
    push_failed: int = 0
    whatsapp_sent: int = 0
    whatsapp_failed: int = 0
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "candidate_count": self.candidate_count,
            "recipient_count": self.recipient_count,
            "push_sent": self.push_sent,
            "push_failed": self.push_failed,
            "whatsapp_sent": self.whatsapp_sent,
            "whatsapp_failed": self.whatsapp_failed,
            "total_attempts": self.total_attempts,
        }
