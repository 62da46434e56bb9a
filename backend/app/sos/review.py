"""
review.py — Admin review state machine for SOS reports.

    pending ──approve──▶ approved ──▶ fan-out ──▶ alert_outcome recorded
       │
       └────reject────▶ rejected

Order of operations in submit_review:

    1. Validate decision and notes          (no state touched on failure)
    2. Load the report                      (NotFoundError)
    3. Compare-and-set pending → decision   (AlreadyReviewedError on loss)
    4. Approved only: dispatch the alert and record the outcome.
       A failed fan-out is recorded, never raised; the review stands.
    5. Notify the reporter over WhatsApp    (best effort)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.alerts.alert_service import AlertFanOutOrchestrator
from backend.app.alerts.channels.whatsapp import TwilioWhatsAppAdapter
from backend.app.alerts.models import DispatchSummary
from backend.app.core.errors import (
    AlreadyReviewedError,
    InvalidDecisionError,
    NoRecipientsError,
    NotFoundError,
    ValidationError,
)
from backend.app.core.logging_config import log_context
from backend.app.sos.models import (
    REVIEW_DECISIONS,
    AlertOutcome,
    IncidentReport,
    IncidentStatus,
    ReviewRecord,
)
from backend.app.sos.store import IncidentStore

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000


@dataclass
class ReviewResult:
    incident: IncidentReport
    alert_summary: Optional[DispatchSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sos_report": self.incident.to_dict(),
            "alert_result": self.alert_summary.to_dict() if self.alert_summary else None,
        }


def parse_decision(decision: Any) -> IncidentStatus:
    try:
        status = IncidentStatus(decision)
    except ValueError:
        raise InvalidDecisionError(decision)
    if status not in REVIEW_DECISIONS:
        raise InvalidDecisionError(decision)
    return status


class ReviewWorkflow:

    def __init__(
        self,
        incidents: IncidentStore,
        orchestrator: AlertFanOutOrchestrator,
        *,
        notifier: Optional[TwilioWhatsAppAdapter] = None,
    ) -> None:
        self.incidents = incidents
        self.orchestrator = orchestrator
        self.notifier = notifier

    async def submit_review(
        self,
        incident_id: str,
        decision: Any,
        notes: Optional[str] = None,
        *,
        reviewer_id: str,
    ) -> ReviewResult:
        with log_context(incident_id=incident_id, admin_id=reviewer_id):
            return await self._review(incident_id, decision, notes, reviewer_id)

    async def _review(
        self, incident_id: str, decision: Any, notes: Optional[str], reviewer_id: str,
    ) -> ReviewResult:
        status = parse_decision(decision)
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(
                f"Admin notes cannot exceed {MAX_NOTES_LENGTH} characters",
                field="admin_notes",
            )

        existing = await self.incidents.get(incident_id)
        if existing is None:
            raise NotFoundError("SOS report", sos_id=incident_id)
        if not existing.is_pending:
            raise AlreadyReviewedError(incident_id, existing.status.value)

        review = ReviewRecord(
            reviewed_by=reviewer_id,
            reviewed_at=datetime.now(timezone.utc),
            decision=status,
            notes=notes,
        )
        incident = await self.incidents.transition_review(incident_id, review)
        if incident is None:
            # Lost the race against a concurrent reviewer
            current = await self.incidents.get(incident_id)
            raise AlreadyReviewedError(
                incident_id, current.status.value if current else None,
            )

        logger.info(
            "SOS %s %s by %s", incident_id, status.value, reviewer_id,
            extra={"incident_id": incident_id},
        )

        summary: Optional[DispatchSummary] = None
        if status == IncidentStatus.APPROVED:
            summary, outcome = await self._run_fan_out(incident)
            updated = await self.incidents.record_alert_outcome(incident_id, outcome)
            if updated is not None:
                incident = updated

        await self._notify_reporter(incident)
        return ReviewResult(incident=incident, alert_summary=summary)

    async def _run_fan_out(
        self, incident: IncidentReport,
    ) -> tuple[Optional[DispatchSummary], AlertOutcome]:
        now = datetime.now(timezone.utc)
        try:
            summary = await self.orchestrator.dispatch_alert(incident)
        except NoRecipientsError as e:
            return None, AlertOutcome(attempted=True, error=e.message, sent_at=now)
        except Exception as e:
            logger.error(
                "Fan-out failed for %s: %s", incident.incident_id, e,
                extra={"incident_id": incident.incident_id},
            )
            return None, AlertOutcome(
                attempted=True, error=str(e) or type(e).__name__, sent_at=now,
            )

        return summary, AlertOutcome(
            attempted=True,
            recipient_count=summary.recipient_count,
            alert_id=summary.alert_id,
            sent_at=datetime.now(timezone.utc),
        )

    async def _notify_reporter(self, incident: IncidentReport) -> None:
        if self.notifier is None or not incident.reporter.phone:
            return
        template = (
            "sos_approved" if incident.status == IncidentStatus.APPROVED else "sos_reviewed"
        )
        try:
            outcome = await self.notifier.send_template(
                incident.reporter.phone,
                template,
                {
                    "user_name": incident.reporter.name or "there",
                    "sos_id": incident.incident_id,
                    "decision": incident.status.value,
                },
            )
        except Exception as e:
            logger.warning("Reporter notification for %s failed: %s", incident.incident_id, e)
            return
        if not outcome.success:
            logger.warning(
                "Reporter notification for %s not delivered: %s",
                incident.incident_id, outcome.error,
            )
