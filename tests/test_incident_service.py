"""
test_incident_service.py — SOS intake, listing, radius search and stats.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.alerts.models import DeliveryOutcome
from backend.app.alerts.channels.whatsapp import TwilioWhatsAppAdapter
from backend.app.core.errors import NotFoundError, UpstreamUnavailableError, ValidationError
from backend.app.sos.classifier import IncidentClassifier
from backend.app.sos.geocoding import CoordinateGeocoder, ReverseGeocoder
from backend.app.sos.models import (
    AiClassification,
    Category,
    Confidence,
    IncidentStatus,
    PrimaryService,
    Priority,
    ReviewRecord,
)
from backend.app.sos.service import IncidentService
from backend.app.sos.store import InMemoryIncidentStore, InMemoryUserDirectory
from tests.fakes import DELHI_LAT, DELHI_LON, VIDEO_URL, make_users


class FailingGeocoder(ReverseGeocoder):
    async def reverse(self, latitude, longitude):
        raise UpstreamUnavailableError("mapbox", "timeout")


class FixedClassifier(IncidentClassifier):
    def __init__(self):
        self.urls = []

    async def classify(self, video_url):
        self.urls.append(video_url)
        return AiClassification(
            is_emergency=True,
            primary_service=PrimaryService.FIRE_BRIGADE,
            confidence=Confidence.HIGH,
            reason="Visible flames",
        )


class AckNotifier(TwilioWhatsAppAdapter):
    def __init__(self):
        super().__init__()
        self.sent = []

    async def send_template(self, phone, template_name, parameters):
        self.sent.append((phone, template_name, dict(parameters)))
        return DeliveryOutcome.ok("sim")


def _make_service(geocoder=None, **kwargs):
    incidents = InMemoryIncidentStore()
    service = IncidentService(
        incidents,
        InMemoryUserDirectory(make_users()),
        geocoder or CoordinateGeocoder(),
        **kwargs,
    )
    return service, incidents


def _create(service, **kwargs):
    params = dict(user_id="REP", video_url=VIDEO_URL, latitude=DELHI_LAT, longitude=DELHI_LON)
    params.update(kwargs)
    return asyncio.run(service.create_report(
        params.pop("user_id"), params.pop("video_url"),
        params.pop("latitude"), params.pop("longitude"), **params,
    ))


# ═══════════════════════════════════════════════════════════════════════════
# Intake
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateReport:

    def test_creates_pending_report_with_heuristics(self):
        service, incidents = _make_service()
        incident = _create(service, message="Stampede at the station, people hurt")

        assert incident.incident_id.startswith("SOS-")
        assert incident.status == IncidentStatus.PENDING
        assert incident.priority == Priority.HIGH
        assert incident.category == Category.STAMPEDE
        assert incident.reporter.name == "Reporter"
        assert incident.location.address == "Lat: 28.7, Lng: 77.1"
        assert asyncio.run(incidents.get(incident.incident_id)) is not None

    def test_defaults(self):
        service, _ = _make_service(default_video_duration=15)
        incident = _create(service)
        assert incident.message == "Emergency situation reported"
        assert incident.video_duration == 15
        assert incident.priority == Priority.HIGH  # "Emergency" keyword
        assert incident.category == Category.OTHER

    def test_latitude_95_rejected_nothing_persisted(self):
        service, incidents = _make_service()
        with pytest.raises(ValidationError):
            _create(service, latitude=95.0)
        assert incidents._incidents == {}

    @pytest.mark.parametrize("kwargs", [
        {"user_id": ""},
        {"video_url": "not-a-url"},
        {"video_url": "ftp://example.com/v.mp4"},
        {"video_thumbnail": "thumb.png"},
        {"message": "x" * 501},
        {"video_duration": 0},
        {"video_duration": 31},
        {"device_platform": "symbian"},
        {"longitude": -200.0},
    ])
    def test_invalid_input_rejected(self, kwargs):
        service, incidents = _make_service()
        with pytest.raises(ValidationError):
            _create(service, **kwargs)
        assert incidents._incidents == {}

    def test_unknown_user(self):
        service, incidents = _make_service()
        with pytest.raises(NotFoundError):
            _create(service, user_id="ghost")
        assert incidents._incidents == {}

    def test_geocoder_failure_falls_back_to_coordinates(self):
        service, _ = _make_service(geocoder=FailingGeocoder())
        incident = _create(service)
        assert incident.location.address == "Lat: 28.7, Lng: 77.1"

    def test_device_info_and_capture_time(self):
        service, _ = _make_service()
        captured = datetime(2026, 1, 5, 10, 30, tzinfo=timezone.utc)
        incident = _create(
            service, device_platform="android", device_model="Pixel 8", captured_at=captured,
        )
        assert incident.device_info.platform.value == "android"
        assert incident.device_info.model == "Pixel 8"
        assert incident.captured_at == captured

    def test_reporter_acknowledged(self):
        notifier = AckNotifier()
        service, _ = _make_service(notifier=notifier, estimated_review_time="5-10 minutes")
        incident = _create(service)

        (phone, template, params), = notifier.sent
        assert phone == "+919800000000"
        assert template == "sos_received"
        assert params == {
            "user_name": "Reporter",
            "sos_id": incident.incident_id,
            "review_time": "5-10 minutes",
        }


# ═══════════════════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════════════════

def _seed_reports(service, incidents, count):
    base = datetime.now(timezone.utc) - timedelta(hours=count)
    created = []
    for i in range(count):
        created.append(_create(service, captured_at=base + timedelta(hours=i)))
    return created


class TestListing:

    def test_pagination_newest_first(self):
        service, incidents = _make_service()
        created = _seed_reports(service, incidents, 5)

        page1 = asyncio.run(service.list_pending(page=1, limit=2)).to_dict()
        page3 = asyncio.run(service.list_pending(page=3, limit=2)).to_dict()

        assert [r["sos_id"] for r in page1["reports"]] == [
            created[4].incident_id, created[3].incident_id,
        ]
        assert page1["pagination"] == {
            "current_page": 1,
            "total_pages": 3,
            "total_reports": 5,
            "has_next_page": True,
            "has_prev_page": False,
        }
        assert len(page3["reports"]) == 1
        assert page3["pagination"]["has_next_page"] is False

    def test_status_filter(self):
        service, incidents = _make_service()
        created = _seed_reports(service, incidents, 3)
        asyncio.run(incidents.transition_review(
            created[0].incident_id,
            ReviewRecord(reviewed_by="a", decision=IncidentStatus.REJECTED),
        ))

        rejected = asyncio.run(service.list_reports(status="rejected"))
        pending = asyncio.run(service.list_pending())
        assert rejected.total == 1
        assert pending.total == 2

    def test_invalid_filters(self):
        service, _ = _make_service()
        with pytest.raises(ValidationError):
            asyncio.run(service.list_reports(status="archived"))
        with pytest.raises(ValidationError):
            asyncio.run(service.list_reports(page=0))
        with pytest.raises(ValidationError):
            asyncio.run(service.list_reports(limit=101))

    def test_date_range(self):
        service, incidents = _make_service()
        created = _seed_reports(service, incidents, 4)
        start = created[2].captured_at
        page = asyncio.run(service.list_reports(start_date=start))
        assert page.total == 2

    def test_get_report_not_found(self):
        service, _ = _make_service()
        with pytest.raises(NotFoundError):
            asyncio.run(service.get_report("SOS-NOPE"))


class TestUsersInRadius:

    def test_users_within_one_km(self):
        service, _ = _make_service()
        users = asyncio.run(service.users_in_radius(DELHI_LAT, DELHI_LON, 1000))
        ids = [u["user_id"] for u in users]
        # Reporter included here; inactive and far users are not
        assert ids == ["REP", "U1", "U2", "U3"]
        assert users[0]["distance_km"] == 0.0
        assert users[2]["has_push_token"] is True

    @pytest.mark.parametrize("radius", [50, 20_000])
    def test_radius_bounds(self, radius):
        service, _ = _make_service()
        with pytest.raises(ValidationError):
            asyncio.run(service.users_in_radius(DELHI_LAT, DELHI_LON, radius))

    def test_invalid_centre(self):
        service, _ = _make_service()
        with pytest.raises(ValidationError):
            asyncio.run(service.users_in_radius(91.0, DELHI_LON, 1000))


class TestStats:

    def test_counts_and_approval_rate(self):
        service, incidents = _make_service()
        created = _seed_reports(service, incidents, 4)
        for incident, decision in (
            (created[0], IncidentStatus.APPROVED),
            (created[1], IncidentStatus.APPROVED),
            (created[2], IncidentStatus.REJECTED),
        ):
            asyncio.run(incidents.transition_review(
                incident.incident_id, ReviewRecord(reviewed_by="a", decision=decision),
            ))

        stats = asyncio.run(service.stats("week"))

        assert stats["timeframe"] == "week"
        assert stats["stats"] == {
            "total": 4,
            "pending": 1,
            "approved": 2,
            "rejected": 1,
            "approval_rate": 50.0,
        }
        assert stats["category_breakdown"] == {"other": 4}

    def test_old_reports_outside_window(self):
        service, _ = _make_service()
        _create(service, captured_at=datetime.now(timezone.utc) - timedelta(days=3))
        assert asyncio.run(service.stats("day"))["stats"]["total"] == 0
        assert asyncio.run(service.stats("week"))["stats"]["total"] == 1

    def test_empty_stats(self):
        service, _ = _make_service()
        assert asyncio.run(service.stats("month"))["stats"]["approval_rate"] == 0.0

    def test_unknown_timeframe(self):
        service, _ = _make_service()
        with pytest.raises(ValidationError):
            asyncio.run(service.stats("decade"))


# ═══════════════════════════════════════════════════════════════════════════
# AI classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassification:

    def test_apply_verdict_keeps_review_state(self):
        service, _ = _make_service()
        incident = _create(service, message="fire in the market")

        updated = asyncio.run(service.apply_classification(incident.incident_id, {
            "is_emergency": True,
            "primary_service": "Fire Brigade",
            "confidence": "High",
            "reason": "Flames visible",
        }))

        assert updated.status == IncidentStatus.PENDING
        assert updated.category == Category.FIRE
        assert updated.ai_classification.primary_service == PrimaryService.FIRE_BRIGADE

    def test_invalid_verdict(self):
        service, _ = _make_service()
        incident = _create(service)
        with pytest.raises(ValidationError):
            asyncio.run(service.apply_classification(incident.incident_id, {
                "is_emergency": True, "primary_service": "Coast Guard", "confidence": "High",
            }))

    def test_apply_verdict_unknown_report(self):
        service, _ = _make_service()
        with pytest.raises(NotFoundError):
            asyncio.run(service.apply_classification("SOS-NOPE", {"is_emergency": False}))

    def test_classify_runs_configured_classifier(self):
        classifier = FixedClassifier()
        service, _ = _make_service(classifier=classifier)
        incident = _create(service)

        updated = asyncio.run(service.classify_incident(incident.incident_id))

        assert classifier.urls == [VIDEO_URL]
        assert updated.ai_classification.confidence == Confidence.HIGH

    def test_classify_without_classifier(self):
        service, _ = _make_service()
        incident = _create(service)
        with pytest.raises(ValidationError):
            asyncio.run(service.classify_incident(incident.incident_id))
