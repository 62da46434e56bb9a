"""
alert_service.py — Nearby-user alert fan-out orchestration.

This is the central coordinator that, for one approved incident:
    1. Looks up eligible users inside the alert radius
    2. Persists an AlertRecord (status=sending) BEFORE any send
    3. Builds one delivery job per recipient per available channel
    4. Dispatches jobs concurrently, batch by batch, with per-call timeouts
    5. Aggregates per-channel successes / failures
    6. Marks the AlertRecord sent and returns a DispatchSummary

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  Review Workflow    │
    │  approves incident  │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Geo-fence       │  RecipientLookup.find_recipients_within
    │     Lookup          │  active ∧ (push ∨ phone) ∧ ≠ reporter
    └─────────┬───────────┘
              │  none → NoRecipientsError (no record written)
              ▼
    ┌─────────────────────┐
    │  2. AlertRecord     │  status = sending, candidate id snapshot
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Jobs            │  recipient × channel, distance + ETA in payload
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Batches         │  ALERT_BATCH_SIZE jobs per batch,
    │                     │  channels in parallel, sleep between batches
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5-6. Aggregate     │  distinct recipients reached, per-channel counts
    │       + complete    │  AlertRecord → sent
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
FAILURE POLICY
═══════════════════════════════════════════════════════════════════════════

    • Each send carries its own timeout; a slow recipient fails only its
      own job, and deliveries that finished in time still count. FCM
      applies the timeout per native batch call.
    • An adapter that raises (instead of returning outcomes) fails every
      job in that call and nothing else.
    • Channels are independent: a dead WhatsApp provider never blocks push.
    • No retries: a failed or timed-out send is final for this pass.
    • If the pass itself crashes after the record exists (store down,
      bug), the record is marked failed and the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Sequence

from backend.app.alerts.channels.base import ChannelAdapter
from backend.app.alerts.geo_fence import RecipientLookup, is_eligible
from backend.app.alerts.models import (
    AlertChannel,
    AlertRecord,
    AlertStatus,
    ChannelMessage,
    DeliveryAttempt,
    DeliveryOutcome,
    DispatchSummary,
    Recipient,
)
from backend.app.alerts.store import AlertCompletion, AlertStore
from backend.app.core.errors import NoRecipientsError
from backend.app.core.logging_config import log_context
from backend.app.sos.models import IncidentReport
from backend.app.spatial.radius_utils import (
    DEFAULT_AVG_SPEED_KMH,
    eta_minutes,
    haversine_distance_km,
)

logger = logging.getLogger(__name__)

PUSH_TITLE = "Emergency Alert"


# ═══════════════════════════════════════════════════════════════════════════
# Message Composition
# ═══════════════════════════════════════════════════════════════════════════

def compose_alert_message(incident: IncidentReport) -> str:
    """The text stored on the AlertRecord and shown on every channel."""
    address = incident.location.address or (
        f"Lat: {incident.location.latitude}, Lng: {incident.location.longitude}"
    )
    return (
        f"Emergency alert: {incident.category.value} reported at {address}. "
        f"{incident.message}"
    )


def _push_message(
    incident: IncidentReport, alert_id: str, distance_km: float, eta: int,
) -> ChannelMessage:
    return ChannelMessage(
        title=PUSH_TITLE,
        body=(
            f"{incident.category.value.capitalize()} reported "
            f"{distance_km:.1f}km from your location. Stay alert."
        ),
        data={
            "type": "sos_alert",
            "sos_id": incident.incident_id,
            "alert_id": alert_id,
            "category": incident.category.value,
            "latitude": str(incident.location.latitude),
            "longitude": str(incident.location.longitude),
            "distance_km": f"{distance_km:.2f}",
            "eta_minutes": str(eta),
        },
    )


def _whatsapp_message(
    alert_text: str, distance_km: float, eta: int,
) -> ChannelMessage:
    return ChannelMessage(
        title=PUSH_TITLE,
        body=(
            f"{alert_text}\n"
            f"Distance: {distance_km:.1f} km (about {eta} min away).\n"
            "Stay alert and avoid the area if possible."
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Jobs
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class _DeliveryJob:
    recipient_id: str
    channel: AlertChannel
    channel_id: str
    message: ChannelMessage


def _chunks(items: Sequence[_DeliveryJob], size: int) -> List[Sequence[_DeliveryJob]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════

class AlertFanOutOrchestrator:
    """
    Notify users near an approved incident, once per available channel.

    Collaborators are injected; the orchestrator owns no provider SDK.
    """

    def __init__(
        self,
        lookup: RecipientLookup,
        alert_store: AlertStore,
        adapters: Mapping[AlertChannel, ChannelAdapter],
        *,
        radius_m: float = 1000,
        batch_size: int = 50,
        batch_interval_seconds: float = 1.0,
        channel_timeout_seconds: float = 15.0,
        avg_speed_kmh: float = DEFAULT_AVG_SPEED_KMH,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"Batch size must be >= 1, got {batch_size}")
        self.lookup = lookup
        self.alert_store = alert_store
        self.adapters: Dict[AlertChannel, ChannelAdapter] = dict(adapters)
        self.radius_m = radius_m
        self.batch_size = batch_size
        self.batch_interval_seconds = batch_interval_seconds
        self.channel_timeout_seconds = channel_timeout_seconds
        self.avg_speed_kmh = avg_speed_kmh

    # ── Public API ──

    async def dispatch_alert(self, incident: IncidentReport) -> DispatchSummary:
        """
        Run one fan-out pass for `incident`.

        Raises
        ------
        NoRecipientsError
            Nobody eligible inside the radius; no AlertRecord is written.
        """
        recipients = await self._find_recipients(incident)
        if not recipients:
            logger.info(
                "No eligible recipients within %dm of %s",
                self.radius_m, incident.incident_id,
                extra={"incident_id": incident.incident_id},
            )
            raise NoRecipientsError(incident.incident_id, self.radius_m)

        record = AlertRecord(
            incident_id=incident.incident_id,
            latitude=incident.location.latitude,
            longitude=incident.location.longitude,
            recipient_ids=[r.recipient_id for r in recipients],
            message=compose_alert_message(incident),
        )
        await self.alert_store.create(record)
        logger.info(
            "Alert %s created for %s: %d candidates",
            record.alert_id, incident.incident_id, len(recipients),
            extra={
                "alert_id": record.alert_id,
                "incident_id": incident.incident_id,
                "recipient_count": len(recipients),
            },
        )

        try:
            jobs = self._build_jobs(incident, record, recipients)
            with log_context(incident_id=incident.incident_id, alert_id=record.alert_id):
                attempts = await self._dispatch_jobs(jobs)
            summary = self._summarise(record.alert_id, len(recipients), attempts)
            await self.alert_store.complete(
                record.alert_id,
                AlertCompletion(
                    status=AlertStatus.SENT,
                    completed_at=datetime.now(timezone.utc),
                    push_sent=summary.push_sent,
                    push_failed=summary.push_failed,
                    whatsapp_sent=summary.whatsapp_sent,
                    whatsapp_failed=summary.whatsapp_failed,
                    recipients_reached=summary.recipient_count,
                ),
            )
        except Exception as exc:
            logger.exception("Alert %s dispatch pass crashed", record.alert_id)
            await self._mark_failed(record.alert_id, exc)
            raise

        logger.info(
            "Alert %s complete: %d/%d reached (push %d/%d, whatsapp %d/%d)",
            record.alert_id, summary.recipient_count, summary.candidate_count,
            summary.push_sent, summary.push_sent + summary.push_failed,
            summary.whatsapp_sent, summary.whatsapp_sent + summary.whatsapp_failed,
            extra={"alert_id": record.alert_id, "recipient_count": summary.recipient_count},
        )
        return summary

    # ── Steps ──

    async def _find_recipients(self, incident: IncidentReport) -> List[Recipient]:
        found = await self.lookup.find_recipients_within(
            incident.location.latitude,
            incident.location.longitude,
            self.radius_m,
            exclude_user_id=incident.reporter_id,
        )
        # Re-check eligibility and drop duplicate ids whatever the backend returned
        unique: Dict[str, Recipient] = {}
        for recipient in found:
            if is_eligible(recipient, incident.reporter_id):
                unique.setdefault(recipient.recipient_id, recipient)
        return list(unique.values())

    def _build_jobs(
        self,
        incident: IncidentReport,
        record: AlertRecord,
        recipients: Sequence[Recipient],
    ) -> List[_DeliveryJob]:
        jobs: List[_DeliveryJob] = []
        for recipient in recipients:
            distance = haversine_distance_km(
                incident.location.latitude, incident.location.longitude,
                recipient.latitude, recipient.longitude,
            )
            eta = eta_minutes(distance, self.avg_speed_kmh)

            if recipient.push_token:
                jobs.append(_DeliveryJob(
                    recipient.recipient_id, AlertChannel.PUSH, recipient.push_token,
                    _push_message(incident, record.alert_id, distance, eta),
                ))
            if recipient.phone:
                jobs.append(_DeliveryJob(
                    recipient.recipient_id, AlertChannel.WHATSAPP, recipient.phone,
                    _whatsapp_message(record.message, distance, eta),
                ))
        return jobs

    async def _dispatch_jobs(self, jobs: Sequence[_DeliveryJob]) -> List[DeliveryAttempt]:
        attempts: List[DeliveryAttempt] = []
        batches = _chunks(jobs, self.batch_size)
        for index, batch in enumerate(batches):
            attempts.extend(await self._dispatch_batch(batch))
            if index < len(batches) - 1 and self.batch_interval_seconds > 0:
                await asyncio.sleep(self.batch_interval_seconds)
        return attempts

    async def _dispatch_batch(self, batch: Sequence[_DeliveryJob]) -> List[DeliveryAttempt]:
        by_channel: Dict[AlertChannel, List[_DeliveryJob]] = defaultdict(list)
        for job in batch:
            by_channel[job.channel].append(job)

        groups = await asyncio.gather(
            *(self._send_channel_group(channel, group) for channel, group in by_channel.items())
        )
        return [attempt for group in groups for attempt in group]

    async def _send_channel_group(
        self, channel: AlertChannel, jobs: Sequence[_DeliveryJob],
    ) -> List[DeliveryAttempt]:
        adapter = self.adapters.get(channel)
        if adapter is None:
            outcomes = [
                DeliveryOutcome.failed(f"No adapter for channel: {channel.value}")
                for _ in jobs
            ]
        else:
            outcomes = await self._call_adapter(adapter, jobs)

        return [
            DeliveryAttempt(recipient_id=job.recipient_id, channel=channel, outcome=outcome)
            for job, outcome in zip(jobs, outcomes)
        ]

    async def _call_adapter(
        self, adapter: ChannelAdapter, jobs: Sequence[_DeliveryJob],
    ) -> List[DeliveryOutcome]:
        channel = adapter.channel.value
        try:
            outcomes = await adapter.send_many(
                [(job.channel_id, job.message) for job in jobs],
                timeout=self.channel_timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "[%s] Adapter failed for %d sends: %s",
                channel.upper(), len(jobs), exc,
                extra={"channel": channel},
            )
            return [DeliveryOutcome.failed(str(exc) or type(exc).__name__) for _ in jobs]

        if len(outcomes) != len(jobs):
            logger.error(
                "[%s] Adapter returned %d outcomes for %d sends",
                channel.upper(), len(outcomes), len(jobs),
            )
            return [DeliveryOutcome.failed("Adapter returned mismatched outcomes") for _ in jobs]
        return list(outcomes)

    @staticmethod
    def _summarise(
        alert_id: str, candidate_count: int, attempts: List[DeliveryAttempt],
    ) -> DispatchSummary:
        summary = DispatchSummary(
            alert_id=alert_id, candidate_count=candidate_count, attempts=attempts,
        )
        reached = set()
        for attempt in attempts:
            ok = attempt.outcome.success
            if ok:
                reached.add(attempt.recipient_id)
            if attempt.channel == AlertChannel.PUSH:
                if ok:
                    summary.push_sent += 1
                else:
                    summary.push_failed += 1
            elif attempt.channel == AlertChannel.WHATSAPP:
                if ok:
                    summary.whatsapp_sent += 1
                else:
                    summary.whatsapp_failed += 1
        summary.recipient_count = len(reached)
        return summary

    async def _mark_failed(self, alert_id: str, exc: Exception) -> None:
        try:
            await self.alert_store.complete(
                alert_id,
                AlertCompletion(
                    status=AlertStatus.FAILED,
                    completed_at=datetime.now(timezone.utc),
                    error=str(exc) or type(exc).__name__,
                ),
            )
        except Exception as store_exc:
            logger.error("Could not mark alert %s failed: %s", alert_id, store_exc)

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()


__all__ = [
    "AlertFanOutOrchestrator",
    "compose_alert_message",
    "PUSH_TITLE",
]
