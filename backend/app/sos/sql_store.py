"""
SQL implementations of the incident, alert and user stores.

Every method opens its own short session from the injected
`async_sessionmaker`; nothing is held across awaits of other services.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.alerts.geo_fence import filter_recipients_by_radius
from backend.app.alerts.models import AlertRecord, AlertStatus
from backend.app.alerts.store import AlertCompletion, AlertStore
from backend.app.sos.models import (
    AiClassification,
    AlertOutcome,
    Category,
    DeviceInfo,
    DevicePlatform,
    GeoLocation,
    IncidentReport,
    IncidentStatus,
    Priority,
    ReporterInfo,
    ReviewRecord,
    UserRecord,
)
from backend.app.sos.orm import AlertRow, IncidentRow, UserRow
from backend.app.sos.store import IncidentStore, ReportFilter, UserDirectory
from backend.app.spatial.radius_utils import bounding_box, validate_coordinates

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store and compare everything in UTC; SQLite drops tzinfo on read."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Row ⇄ Domain Mapping
# ═══════════════════════════════════════════════════════════════════════════

def _incident_to_row(incident: IncidentReport) -> IncidentRow:
    return IncidentRow(
        id=incident.incident_id,
        reporter_id=incident.reporter_id,
        reporter_name=incident.reporter.name,
        reporter_phone=incident.reporter.phone,
        reporter_email=incident.reporter.email,
        video_url=incident.video_url,
        video_thumbnail=incident.video_thumbnail,
        video_duration=incident.video_duration,
        message=incident.message,
        latitude=incident.location.latitude,
        longitude=incident.location.longitude,
        address=incident.location.address,
        accuracy=incident.location.accuracy,
        captured_at=_utc(incident.captured_at),
        device_platform=(
            incident.device_info.platform.value if incident.device_info.platform else None
        ),
        device_version=incident.device_info.version,
        device_model=incident.device_info.model,
        status=incident.status.value,
        priority=incident.priority.value,
        category=incident.category.value,
        reviewed_by=incident.review.reviewed_by,
        reviewed_at=_utc(incident.review.reviewed_at),
        decision=incident.review.decision.value if incident.review.decision else None,
        admin_notes=incident.review.notes,
        alert_outcome=incident.alert_outcome.to_dict() if incident.alert_outcome else None,
        ai_classification=(
            incident.ai_classification.to_dict() if incident.ai_classification else None
        ),
        created_at=_utc(incident.created_at),
    )


def _row_to_incident(row: IncidentRow) -> IncidentReport:
    return IncidentReport(
        incident_id=row.id,
        reporter_id=row.reporter_id,
        reporter=ReporterInfo(
            name=row.reporter_name, phone=row.reporter_phone, email=row.reporter_email,
        ),
        video_url=row.video_url,
        video_thumbnail=row.video_thumbnail,
        video_duration=row.video_duration,
        message=row.message,
        location=GeoLocation(
            latitude=row.latitude,
            longitude=row.longitude,
            address=row.address or "",
            accuracy=row.accuracy,
        ),
        captured_at=_utc(row.captured_at),
        device_info=DeviceInfo(
            platform=DevicePlatform(row.device_platform) if row.device_platform else None,
            version=row.device_version,
            model=row.device_model,
        ),
        status=IncidentStatus(row.status),
        priority=Priority(row.priority),
        category=Category(row.category),
        review=ReviewRecord(
            reviewed_by=row.reviewed_by,
            reviewed_at=_utc(row.reviewed_at),
            decision=IncidentStatus(row.decision) if row.decision else None,
            notes=row.admin_notes,
        ),
        alert_outcome=AlertOutcome.from_dict(row.alert_outcome) if row.alert_outcome else None,
        ai_classification=(
            AiClassification.from_dict(row.ai_classification) if row.ai_classification else None
        ),
        created_at=_utc(row.created_at),
    )


def _row_to_user(row: UserRow) -> UserRecord:
    return UserRecord(
        user_id=row.id,
        name=row.name,
        latitude=row.latitude,
        longitude=row.longitude,
        email=row.email,
        phone=row.phone,
        push_token=row.push_token,
        is_active=row.is_active,
    )


def _row_to_alert(row: AlertRow) -> AlertRecord:
    return AlertRecord(
        alert_id=row.id,
        incident_id=row.incident_id,
        latitude=row.latitude,
        longitude=row.longitude,
        recipient_ids=list(row.recipient_ids or []),
        message=row.message,
        status=AlertStatus(row.status),
        dispatched_at=_utc(row.dispatched_at),
        completed_at=_utc(row.completed_at),
        push_sent=row.push_sent,
        push_failed=row.push_failed,
        whatsapp_sent=row.whatsapp_sent,
        whatsapp_failed=row.whatsapp_failed,
        recipients_reached=row.recipients_reached,
        error=row.error,
    )


def _apply_filters(stmt, filters: ReportFilter):
    if filters.status is not None:
        stmt = stmt.where(IncidentRow.status == filters.status.value)
    if filters.priority is not None:
        stmt = stmt.where(IncidentRow.priority == filters.priority.value)
    if filters.category is not None:
        stmt = stmt.where(IncidentRow.category == filters.category.value)
    if filters.start is not None:
        stmt = stmt.where(IncidentRow.captured_at >= _utc(filters.start))
    if filters.end is not None:
        stmt = stmt.where(IncidentRow.captured_at <= _utc(filters.end))
    return stmt


# ═══════════════════════════════════════════════════════════════════════════
# Incident Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlIncidentStore(IncidentStore):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def create(self, incident: IncidentReport) -> IncidentReport:
        async with self._sessions() as session:
            session.add(_incident_to_row(incident))
            await session.commit()
        return incident

    async def get(self, incident_id: str) -> Optional[IncidentReport]:
        async with self._sessions() as session:
            row = await session.get(IncidentRow, incident_id)
            return _row_to_incident(row) if row else None

    async def transition_review(
        self, incident_id: str, review: ReviewRecord,
    ) -> Optional[IncidentReport]:
        stmt = (
            update(IncidentRow)
            .where(
                IncidentRow.id == incident_id,
                IncidentRow.status == IncidentStatus.PENDING.value,
            )
            .values(
                status=review.decision.value,
                decision=review.decision.value,
                reviewed_by=review.reviewed_by,
                reviewed_at=_utc(review.reviewed_at),
                admin_notes=review.notes,
            )
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get(incident_id)

    async def record_alert_outcome(
        self, incident_id: str, outcome: AlertOutcome,
    ) -> Optional[IncidentReport]:
        stmt = (
            update(IncidentRow)
            .where(
                IncidentRow.id == incident_id,
                IncidentRow.status == IncidentStatus.APPROVED.value,
            )
            .values(alert_outcome=outcome.to_dict())
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get(incident_id)

    async def set_ai_classification(
        self, incident_id: str, classification: AiClassification,
    ) -> Optional[IncidentReport]:
        stmt = (
            update(IncidentRow)
            .where(IncidentRow.id == incident_id)
            .values(ai_classification=classification.to_dict())
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get(incident_id)

    async def query(
        self, filters: ReportFilter, *, offset: int = 0, limit: int = 20,
    ) -> Tuple[List[IncidentReport], int]:
        rows_stmt = (
            _apply_filters(select(IncidentRow), filters)
            .order_by(IncidentRow.captured_at.desc())
            .offset(offset)
            .limit(limit)
        )
        count_stmt = _apply_filters(select(func.count(IncidentRow.id)), filters)
        async with self._sessions() as session:
            rows = (await session.scalars(rows_stmt)).all()
            total = (await session.execute(count_stmt)).scalar_one()
        return [_row_to_incident(r) for r in rows], int(total)

    async def count_by_status(self, filters: ReportFilter) -> Dict[IncidentStatus, int]:
        stmt = _apply_filters(
            select(IncidentRow.status, func.count(IncidentRow.id)), filters,
        ).group_by(IncidentRow.status)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        counts = {status: 0 for status in IncidentStatus}
        for status, n in rows:
            counts[IncidentStatus(status)] = int(n)
        return counts

    async def count_by_category(self, filters: ReportFilter) -> Dict[Category, int]:
        stmt = _apply_filters(
            select(IncidentRow.category, func.count(IncidentRow.id)), filters,
        ).group_by(IncidentRow.category)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return {Category(category): int(n) for category, n in rows if n}


# ═══════════════════════════════════════════════════════════════════════════
# Alert Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlertStore(AlertStore):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def create(self, record: AlertRecord) -> AlertRecord:
        row = AlertRow(
            id=record.alert_id,
            incident_id=record.incident_id,
            latitude=record.latitude,
            longitude=record.longitude,
            recipient_ids=list(record.recipient_ids),
            message=record.message,
            status=record.status.value,
            dispatched_at=_utc(record.dispatched_at),
        )
        async with self._sessions() as session:
            session.add(row)
            await session.commit()
        return record

    async def complete(self, alert_id: str, completion: AlertCompletion) -> Optional[AlertRecord]:
        stmt = (
            update(AlertRow)
            .where(AlertRow.id == alert_id, AlertRow.status == AlertStatus.SENDING.value)
            .values(
                status=completion.status.value,
                completed_at=_utc(completion.completed_at),
                push_sent=completion.push_sent,
                push_failed=completion.push_failed,
                whatsapp_sent=completion.whatsapp_sent,
                whatsapp_failed=completion.whatsapp_failed,
                recipients_reached=completion.recipients_reached,
                error=completion.error,
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()
        return await self.get(alert_id)

    async def get(self, alert_id: str) -> Optional[AlertRecord]:
        async with self._sessions() as session:
            row = await session.get(AlertRow, alert_id)
            return _row_to_alert(row) if row else None


# ═══════════════════════════════════════════════════════════════════════════
# User Directory
# ═══════════════════════════════════════════════════════════════════════════

class SqlUserDirectory(UserDirectory):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def add_user(self, user: UserRecord) -> None:
        """Upsert a directory entry (seeding and tests)."""
        async with self._sessions() as session:
            await session.merge(UserRow(
                id=user.user_id,
                name=user.name,
                email=user.email,
                phone=user.phone,
                push_token=user.push_token,
                latitude=user.latitude,
                longitude=user.longitude,
                is_active=user.is_active,
            ))
            await session.commit()

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._sessions() as session:
            row = await session.get(UserRow, user_id)
            return _row_to_user(row) if row else None

    async def find_users_within(
        self, latitude: float, longitude: float, radius_m: float,
    ) -> List[Tuple[UserRecord, float]]:
        validate_coordinates(latitude, longitude)
        radius_km = radius_m / 1000.0
        box = bounding_box(latitude, longitude, radius_km)

        stmt = select(UserRow).where(
            UserRow.is_active.is_(True),
            UserRow.latitude.between(box.min_lat, box.max_lat),
            or_(*(UserRow.longitude.between(lo, hi) for lo, hi in box.lon_ranges)),
        )
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()

        users = {row.id: _row_to_user(row) for row in rows}
        targeted, _ = filter_recipients_by_radius(
            latitude, longitude, radius_km, [u.to_recipient() for u in users.values()],
        )
        logger.debug(
            "Radius query: %d in box, %d within %.0fm", len(rows), len(targeted), radius_m,
        )
        return [(users[r.recipient_id], r.distance_km or 0.0) for r in targeted]
