"""
Dependency container — wires stores, adapters and services from Settings.

    STORE_BACKEND=memory  → in-memory stores (no database needed)
    STORE_BACKEND=sql     → SQLAlchemy async stores on DATABASE_URL

Provider SDKs (Firebase app, HTTP clients, the Gemini model) are created
here and handed to the components that use them. The Gemini SDK keeps
its API key in module state via genai.configure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.alerts.alert_service import AlertFanOutOrchestrator
from backend.app.alerts.channels.base import ChannelAdapter
from backend.app.alerts.channels.push import FirebasePushAdapter, create_firebase_app
from backend.app.alerts.channels.whatsapp import TwilioWhatsAppAdapter
from backend.app.alerts.manual import ManualAlertService
from backend.app.alerts.models import AlertChannel
from backend.app.alerts.store import AlertStore, InMemoryAlertStore
from backend.app.core.config import Settings
from backend.app.core.database import close_db, create_engine, create_session_factory, init_db
from backend.app.sos.classifier import GeminiVideoClassifier, IncidentClassifier
from backend.app.sos.geocoding import CoordinateGeocoder, MapboxGeocoder, ReverseGeocoder
from backend.app.sos.review import ReviewWorkflow
from backend.app.sos.service import IncidentService
from backend.app.sos.store import (
    IncidentStore,
    InMemoryIncidentStore,
    InMemoryUserDirectory,
    UserDirectory,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    incidents: IncidentStore
    users: UserDirectory
    alerts: AlertStore
    adapters: Dict[AlertChannel, ChannelAdapter]
    geocoder: ReverseGeocoder
    orchestrator: AlertFanOutOrchestrator
    review_workflow: ReviewWorkflow
    incident_service: IncidentService
    manual_alerts: ManualAlertService
    classifier: Optional[IncidentClassifier] = None
    engine: Optional[AsyncEngine] = field(default=None, repr=False)

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        await self.geocoder.aclose()
        if self.classifier is not None:
            await self.classifier.aclose()
        if self.engine is not None:
            await close_db(self.engine)


def assemble(
    settings: Settings,
    *,
    incidents: IncidentStore,
    users: UserDirectory,
    alerts: AlertStore,
    adapters: Dict[AlertChannel, ChannelAdapter],
    geocoder: ReverseGeocoder,
    classifier: Optional[IncidentClassifier] = None,
    engine: Optional[AsyncEngine] = None,
) -> ServiceContainer:
    """Build the service graph from already-constructed collaborators."""
    orchestrator = AlertFanOutOrchestrator(
        users,
        alerts,
        adapters,
        radius_m=settings.ALERT_RADIUS_METERS,
        batch_size=settings.ALERT_BATCH_SIZE,
        batch_interval_seconds=settings.ALERT_BATCH_INTERVAL_SECONDS,
        channel_timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
        avg_speed_kmh=settings.AVERAGE_RESPONSE_SPEED_KMH,
    )
    notifier = adapters.get(AlertChannel.WHATSAPP)
    if not isinstance(notifier, TwilioWhatsAppAdapter):
        notifier = None

    review_workflow = ReviewWorkflow(incidents, orchestrator, notifier=notifier)
    incident_service = IncidentService(
        incidents,
        users,
        geocoder,
        classifier=classifier,
        notifier=notifier,
        default_video_duration=settings.DEFAULT_VIDEO_DURATION_SECONDS,
        estimated_review_time=settings.ESTIMATED_REVIEW_TIME,
    )
    manual_alerts = ManualAlertService(
        adapters.get(AlertChannel.WHATSAPP),
        settings.STAMPEDE_ALERT_RECIPIENTS,
        timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
    )
    return ServiceContainer(
        settings=settings,
        incidents=incidents,
        users=users,
        alerts=alerts,
        adapters=adapters,
        geocoder=geocoder,
        orchestrator=orchestrator,
        review_workflow=review_workflow,
        incident_service=incident_service,
        manual_alerts=manual_alerts,
        classifier=classifier,
        engine=engine,
    )


def _build_adapters(settings: Settings) -> Dict[AlertChannel, ChannelAdapter]:
    firebase_app = None
    if settings.PUSH_PROVIDER == "fcm":
        firebase_app = create_firebase_app(settings.FIREBASE_CREDENTIALS_PATH)

    return {
        AlertChannel.PUSH: FirebasePushAdapter(
            provider=settings.PUSH_PROVIDER, app=firebase_app,
        ),
        AlertChannel.WHATSAPP: TwilioWhatsAppAdapter(
            provider=settings.WHATSAPP_PROVIDER,
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_FROM_NUMBER,
            use_sms=settings.WHATSAPP_USE_SMS,
            timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
        ),
    }


def _build_geocoder(settings: Settings) -> ReverseGeocoder:
    if settings.GEOCODER_PROVIDER == "mapbox":
        return MapboxGeocoder(
            settings.MAPBOX_TOKEN or "",
            timeout_seconds=settings.GEOCODER_TIMEOUT_SECONDS,
            cache_ttl=settings.GEOCODE_CACHE_TTL,
        )
    if settings.GEOCODER_PROVIDER != "coordinates":
        raise ValueError(f"Unknown geocoder provider: {settings.GEOCODER_PROVIDER}")
    return CoordinateGeocoder()


def _build_classifier(settings: Settings) -> Optional[IncidentClassifier]:
    if not settings.GEMINI_API_KEY:
        logger.info("GEMINI_API_KEY not set, AI classification disabled")
        return None
    return GeminiVideoClassifier(
        settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        timeout_seconds=settings.CLASSIFIER_TIMEOUT_SECONDS,
        max_video_mb=settings.CLASSIFIER_MAX_VIDEO_MB,
    )


async def build_container(settings: Settings) -> ServiceContainer:
    """Create every collaborator named by `settings` and wire them."""
    engine: Optional[AsyncEngine] = None
    if settings.STORE_BACKEND == "sql":
        from backend.app.sos.sql_store import SqlAlertStore, SqlIncidentStore, SqlUserDirectory

        engine = create_engine(settings.DATABASE_URL, settings=settings)
        if not settings.is_production:
            await init_db(engine)
        sessions = create_session_factory(engine)
        incidents: IncidentStore = SqlIncidentStore(sessions)
        users: UserDirectory = SqlUserDirectory(sessions)
        alerts: AlertStore = SqlAlertStore(sessions)
    elif settings.STORE_BACKEND == "memory":
        incidents = InMemoryIncidentStore()
        users = InMemoryUserDirectory()
        alerts = InMemoryAlertStore()
    else:
        raise ValueError(f"Unknown store backend: {settings.STORE_BACKEND}")

    logger.info(
        "Container built: store=%s push=%s whatsapp=%s geocoder=%s",
        settings.STORE_BACKEND, settings.PUSH_PROVIDER,
        settings.WHATSAPP_PROVIDER, settings.GEOCODER_PROVIDER,
    )
    return assemble(
        settings,
        incidents=incidents,
        users=users,
        alerts=alerts,
        adapters=_build_adapters(settings),
        geocoder=_build_geocoder(settings),
        classifier=_build_classifier(settings),
        engine=engine,
    )
