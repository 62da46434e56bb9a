"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.cache import close_redis
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.sos.container import ServiceContainer, build_container

# ── API routers ──
from backend.app.api.v1.sos import router as sos_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container unless one was injected, and close it on exit."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    owned = app.state.container is None
    if owned:
        app.state.container = await build_container(settings)
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    if owned:
        await app.state.container.aclose()
        app.state.container = None
    await close_redis()


# ── Create application ──

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency SOS backend. Citizens submit short video reports with "
            "their location; admins review them, and every approval fans out "
            "push and WhatsApp alerts to registered users within the alert "
            "radius. Optional AI video triage suggests the emergency service "
            "to dispatch."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.container = container

    # ── Middleware stack (last added runs outermost) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(sos_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "sos-intake",
                "admin-review",
                "alert-fan-out",
                "ai-classification",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health check across all subsystems."""
        report = await run_health_check(request.app.state.container)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness check: is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness check: can we serve traffic?"""
        report = await run_health_check(request.app.state.container)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
