"""
manual.py — Admin-triggered stampede broadcast.

Unlike the fan-out in alert_service, a manual alert is not tied to an
incident or a radius: an operator types a message and the observed crowd
density, and one WhatsApp message goes to every configured duty number.

    POST /api/v1/sos/alerts/stampede  {message, crowd_density, timestamp?}
        → 200  at least one number reached
        → 400  empty message, non-numeric or non-positive density,
               or no duty numbers configured
        → 502  every send failed
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from backend.app.alerts.channels.base import ChannelAdapter, _mask
from backend.app.alerts.models import ChannelMessage, DeliveryOutcome
from backend.app.core.errors import UpstreamUnavailableError, ValidationError

logger = logging.getLogger(__name__)

STAMPEDE_TITLE = "🚨 STAMPEDE ALERT! 🚨"


@dataclass
class ManualAlertResult:
    sent: int
    failed: int
    outcomes: List[DeliveryOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "WhatsApp alert sent!",
            "sent": self.sent,
            "failed": self.failed,
        }


def format_crowd_density(crowd_density: float) -> str:
    """
    >>> format_crowd_density(12.0)
    '12'
    >>> format_crowd_density(4.75)
    '4.75'
    """
    return f"{crowd_density:g}"


def compose_stampede_message(
    message: str, crowd_density: float, timestamp: Optional[datetime] = None,
) -> ChannelMessage:
    density = format_crowd_density(crowd_density)
    data = {"type": "stampede_alert", "crowd_density": density}
    if timestamp is not None:
        data["timestamp"] = timestamp.isoformat()
    return ChannelMessage(
        title=STAMPEDE_TITLE,
        body=f"Crowd Density: {density}\nDetails: {message}",
        data=data,
    )


class ManualAlertService:
    """Sends operator-written stampede alerts to the duty numbers."""

    def __init__(
        self,
        adapter: Optional[ChannelAdapter],
        recipients: Sequence[str],
        *,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.adapter = adapter
        self.recipients = list(recipients)
        self.timeout_seconds = timeout_seconds

    async def send_stampede_alert(
        self,
        message: str,
        crowd_density: Any,
        timestamp: Optional[datetime] = None,
    ) -> ManualAlertResult:
        text = message.strip() if isinstance(message, str) else ""
        if not text:
            raise ValidationError("Alert message is required", field="message")
        if (
            isinstance(crowd_density, bool)
            or not isinstance(crowd_density, (int, float))
            or math.isnan(crowd_density)
            or crowd_density <= 0
        ):
            raise ValidationError(
                "Crowd density must be a positive number", field="crowd_density",
            )
        if self.adapter is None or not self.recipients:
            raise ValidationError("No manual alert recipients are configured")

        alert = compose_stampede_message(text, float(crowd_density), timestamp)
        outcomes = await self.adapter.send_many(
            [(phone, alert) for phone in self.recipients],
            timeout=self.timeout_seconds,
        )

        sent = sum(1 for o in outcomes if o.success)
        for phone, outcome in zip(self.recipients, outcomes):
            if not outcome.success:
                logger.warning(
                    "Stampede alert to %s failed: %s", _mask(phone), outcome.error,
                    extra={"channel": self.adapter.channel.value},
                )
        if sent == 0:
            raise UpstreamUnavailableError(
                self.adapter.channel.value,
                "WhatsApp alert failed. Please try again later.",
                errors=[o.error for o in outcomes],
            )

        logger.info(
            "Stampede alert sent to %d/%d duty numbers (density=%s)",
            sent, len(outcomes), format_crowd_density(float(crowd_density)),
            extra={"recipient_count": sent, "channel": self.adapter.channel.value},
        )
        return ManualAlertResult(sent=sent, failed=len(outcomes) - sent, outcomes=outcomes)
