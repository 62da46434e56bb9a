"""
test_sql_store.py — SQLAlchemy backends against a throwaway SQLite file.

Skipped when aiosqlite is not installed.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("aiosqlite")

from backend.app.alerts.alert_service import AlertFanOutOrchestrator  # noqa: E402
from backend.app.alerts.models import AlertRecord, AlertStatus  # noqa: E402
from backend.app.alerts.store import AlertCompletion  # noqa: E402
from backend.app.core.database import (  # noqa: E402
    close_db,
    create_engine,
    create_session_factory,
    init_db,
    ping_db,
)
from backend.app.sos.models import (  # noqa: E402
    AiClassification,
    AlertOutcome,
    Category,
    DeviceInfo,
    DevicePlatform,
    IncidentStatus,
    PrimaryService,
    Confidence,
    ReviewRecord,
    UserRecord,
)
from backend.app.sos.review import ReviewWorkflow  # noqa: E402
from backend.app.sos.sql_store import SqlAlertStore, SqlIncidentStore, SqlUserDirectory  # noqa: E402
from backend.app.sos.store import ReportFilter  # noqa: E402
from backend.app.core.errors import AlreadyReviewedError  # noqa: E402
from tests.fakes import DELHI_LAT, DELHI_LON, make_adapters, make_incident, make_users  # noqa: E402


def _run(tmp_path, scenario):
    """Run `scenario(incidents, users, alerts)` against a fresh database."""
    async def main():
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'sos.db'}")
        await init_db(engine)
        await ping_db(engine)
        sessions = create_session_factory(engine)
        try:
            return await scenario(
                SqlIncidentStore(sessions), SqlUserDirectory(sessions), SqlAlertStore(sessions),
            )
        finally:
            await close_db(engine)

    return asyncio.run(main())


class TestSqlIncidentStore:

    def test_round_trip(self, tmp_path):
        incident = make_incident(message="fire near gate")
        incident.category = Category.FIRE
        incident.device_info = DeviceInfo(platform=DevicePlatform.IOS, version="17", model="iPhone")
        incident.reporter.phone = "+919800000000"

        async def scenario(incidents, users, alerts):
            await incidents.create(incident)
            return await incidents.get(incident.incident_id)

        loaded = _run(tmp_path, scenario)

        assert loaded.incident_id == incident.incident_id
        assert loaded.category == Category.FIRE
        assert loaded.device_info.platform == DevicePlatform.IOS
        assert loaded.reporter.phone == "+919800000000"
        assert loaded.location.address == "Gate 3, Delhi"
        assert loaded.captured_at == incident.captured_at
        assert loaded.status == IncidentStatus.PENDING

    def test_review_transition_is_conditional(self, tmp_path):
        incident = make_incident()

        async def scenario(incidents, users, alerts):
            await incidents.create(incident)
            first = await incidents.transition_review(
                incident.incident_id,
                ReviewRecord(reviewed_by="a", reviewed_at=datetime.now(timezone.utc),
                             decision=IncidentStatus.APPROVED, notes="ok"),
            )
            second = await incidents.transition_review(
                incident.incident_id,
                ReviewRecord(reviewed_by="b", decision=IncidentStatus.REJECTED),
            )
            return first, second, await incidents.get(incident.incident_id)

        first, second, stored = _run(tmp_path, scenario)

        assert first.status == IncidentStatus.APPROVED
        assert second is None
        assert stored.review.reviewed_by == "a"
        assert stored.review.notes == "ok"

    def test_alert_outcome_only_on_approved(self, tmp_path):
        incident = make_incident()
        outcome = AlertOutcome(recipient_count=3, alert_id="ALR-1",
                               sent_at=datetime.now(timezone.utc))

        async def scenario(incidents, users, alerts):
            await incidents.create(incident)
            before = await incidents.record_alert_outcome(incident.incident_id, outcome)
            await incidents.transition_review(
                incident.incident_id,
                ReviewRecord(reviewed_by="a", decision=IncidentStatus.APPROVED),
            )
            after = await incidents.record_alert_outcome(incident.incident_id, outcome)
            return before, after

        before, after = _run(tmp_path, scenario)

        assert before is None
        assert after.alert_outcome.is_sent
        assert after.alert_outcome.recipient_count == 3

    def test_ai_classification_stored(self, tmp_path):
        incident = make_incident()
        verdict = AiClassification(
            is_emergency=True, primary_service=PrimaryService.POLICE,
            confidence=Confidence.LOW, reason="Scuffle",
        )

        async def scenario(incidents, users, alerts):
            await incidents.create(incident)
            missing = await incidents.set_ai_classification("SOS-NOPE", verdict)
            stored = await incidents.set_ai_classification(incident.incident_id, verdict)
            return missing, stored

        missing, stored = _run(tmp_path, scenario)

        assert missing is None
        assert stored.ai_classification.primary_service == PrimaryService.POLICE
        assert stored.status == IncidentStatus.PENDING

    def test_query_and_counts(self, tmp_path):
        now = datetime.now(timezone.utc)
        reports = []
        for i in range(5):
            incident = make_incident()
            incident.captured_at = now - timedelta(hours=i)
            reports.append(incident)
        old = make_incident()
        old.captured_at = now - timedelta(days=10)

        async def scenario(incidents, users, alerts):
            for incident in reports + [old]:
                await incidents.create(incident)
            await incidents.transition_review(
                reports[0].incident_id,
                ReviewRecord(reviewed_by="a", decision=IncidentStatus.REJECTED),
            )
            week = ReportFilter(start=now - timedelta(days=7), end=now)
            page, total = await incidents.query(
                ReportFilter(status=IncidentStatus.PENDING), offset=0, limit=2,
            )
            by_status = await incidents.count_by_status(week)
            by_category = await incidents.count_by_category(week)
            return page, total, by_status, by_category

        page, total, by_status, by_category = _run(tmp_path, scenario)

        assert total == 5
        assert [r.incident_id for r in page] == [reports[1].incident_id, reports[2].incident_id]
        assert by_status[IncidentStatus.PENDING] == 4
        assert by_status[IncidentStatus.REJECTED] == 1
        assert by_status[IncidentStatus.APPROVED] == 0
        assert by_category == {Category.OTHER: 5}


class TestSqlUserDirectory:

    def test_radius_query(self, tmp_path):
        async def scenario(incidents, users, alerts):
            for user in make_users():
                await users.add_user(user)
            found = await users.find_users_within(DELHI_LAT, DELHI_LON, 1000)
            recipients = await users.find_recipients_within(
                DELHI_LAT, DELHI_LON, 1000, exclude_user_id="REP",
            )
            return found, recipients, await users.get_user("U1")

        found, recipients, u1 = _run(tmp_path, scenario)

        assert [u.user_id for u, _ in found] == ["REP", "U1", "U2", "U3"]
        assert [r.recipient_id for r in recipients] == ["U1", "U2", "U3"]
        assert u1.push_token == "tok-u1"

    def test_radius_query_across_antimeridian(self, tmp_path):
        async def scenario(incidents, users, alerts):
            await users.add_user(UserRecord("FJ", "Fiji", -17.0, -179.999, phone="+6799000000"))
            await users.add_user(UserRecord("NZ", "Far", -17.0, 175.0, phone="+6799000001"))
            return await users.find_users_within(-17.0, 179.999, 1000)

        found = _run(tmp_path, scenario)

        assert [u.user_id for u, _ in found] == ["FJ"]
        assert found[0][1] == pytest.approx(0.213, abs=0.01)


class TestSqlAlertStore:

    def test_complete_only_once(self, tmp_path):
        record = AlertRecord(
            incident_id="SOS-1", latitude=DELHI_LAT, longitude=DELHI_LON,
            recipient_ids=["U1", "U2"], message="Emergency alert",
        )

        async def scenario(incidents, users, alerts):
            await alerts.create(record)
            done = await alerts.complete(record.alert_id, AlertCompletion(
                status=AlertStatus.SENT, completed_at=datetime.now(timezone.utc),
                push_sent=2, recipients_reached=2,
            ))
            again = await alerts.complete(record.alert_id, AlertCompletion(
                status=AlertStatus.FAILED, completed_at=datetime.now(timezone.utc),
                error="late",
            ))
            return done, again

        done, again = _run(tmp_path, scenario)

        assert done.status == AlertStatus.SENT
        assert done.recipient_ids == ["U1", "U2"]
        assert again.status == AlertStatus.SENT
        assert again.error is None


class TestSqlWorkflow:

    def test_approval_end_to_end(self, tmp_path):
        incident = make_incident()

        async def scenario(incidents, users, alerts):
            for user in make_users():
                await users.add_user(user)
            await incidents.create(incident)
            orchestrator = AlertFanOutOrchestrator(
                users, alerts, make_adapters(), batch_interval_seconds=0,
            )
            workflow = ReviewWorkflow(incidents, orchestrator)
            result = await workflow.submit_review(
                incident.incident_id, "approved", reviewer_id="admin",
            )
            with pytest.raises(AlreadyReviewedError):
                await workflow.submit_review(
                    incident.incident_id, "rejected", reviewer_id="other",
                )
            record = await alerts.get(result.incident.alert_outcome.alert_id)
            return result, record

        result, record = _run(tmp_path, scenario)

        assert result.incident.status == IncidentStatus.APPROVED
        assert result.alert_summary.total_attempts == 4
        assert result.incident.alert_outcome.recipient_count == 3
        assert record.status == AlertStatus.SENT
        assert record.recipients_reached == 3
