"""
FastAPI application entry point.

Run with:
    uvicorn notifier.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn notifier.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from notifier.app.core.config import settings
from notifier.app.core.logging_config import setup_logging, get_logger
from notifier.app.core.errors import register_error_handlers
from notifier.app.core.middleware import RequestLoggingMiddleware
from notifier.app.core.health import HealthStatus, run_health_check

# ── Alert engine & API routers ──
from notifier.app.alerts.engine import AlertEngine, build_engine
from notifier.app.api.v1.alerts import router as alert_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(engine: Optional[AlertEngine] = None) -> FastAPI:
    """Build the application around ``engine`` (built from settings if omitted)."""
    engine = engine or build_engine(settings)

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        engine.start()
        yield
        engine.shutdown()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Alert and subscription notification engine. "
            "Attaches email, chat and HTTP webhook channels to saved queries, "
            "evaluates firing conditions on an hourly, daily or weekly schedule, "
            "fans results out to every enabled channel, and manages the "
            "subscriber lifecycle with subscribe/unsubscribe notices and "
            "auto-archiving."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # ── Middleware stack (outermost first) ──

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
    app.include_router(alert_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "channel_types": engine.registry.types(),
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    def health_check():
        """Deep health probe: scheduler, ledger, channels."""
        report = run_health_check(engine)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = run_health_check(engine)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
