"""
FastAPI application entry point.

Run with:
    uvicorn backend.feedsync.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.feedsync.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.feedsync.core.config import settings
from backend.feedsync.core.logging_config import setup_logging, get_logger
from backend.feedsync.core.errors import register_error_handlers
from backend.feedsync.core.middleware import RequestLoggingMiddleware
from backend.feedsync.core.health import HealthStatus, run_health_check
from backend.feedsync.core.cache import close_redis

# ── Services ──
from backend.feedsync.api.deps import close_services, current_store, init_services
from backend.feedsync.sync.scheduler import ScheduledJobRunner

# ── API routers ──
from backend.feedsync.api.v1.cron import router as cron_router
from backend.feedsync.api.v1.tenants import router as tenant_router
from backend.feedsync.api.v1.facebook_auth import router as facebook_auth_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)

_scheduler: Optional[ScheduledJobRunner] = None


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    global _scheduler
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    orchestrator = await init_services()
    if settings.SCHEDULER_ENABLED:
        _scheduler = ScheduledJobRunner(orchestrator)
        _scheduler.start()
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
    await close_services()
    await close_redis()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Multi-tenant incident and weather feed synchronisation. "
        "Decrypts the incident feed, reconciles it against stored incidents, "
        "collapses weather alert revision chains, and republishes incident "
        "and alert lifecycle changes to each tenant's social page."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (order matters — outermost first) ──

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
app.include_router(cron_router)
app.include_router(tenant_router)
app.include_router(facebook_auth_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "incident-feed",
            "incident-reconciliation",
            "weather-chain-resolution",
            "posting-state",
            "social-publishing",
        ],
        "scheduler": _scheduler.running if _scheduler else False,
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(current_store())
    body = report.to_dict()
    if _scheduler is not None:
        body["scheduler"] = {name: s.to_dict() for name, s in _scheduler.stats.items()}
    return body


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(current_store())
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
