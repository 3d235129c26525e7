"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatrelay.config import settings
from chatrelay.database import close_db, init_db
from chatrelay.errors import InternalError, InvalidArgument, RateLimitExceeded, RelayError, ServiceUnavailable
from chatrelay.routes import VERSION, router
from chatrelay.routes.activity import activity_router
from chatrelay.routes.triggers import trigger_router
from chatrelay.services.container import services_from_firebase
from chatrelay.services.firebase import init_firebase
from chatrelay.services.scheduler import JanitorScheduler, default_jobs

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting chatrelay v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    fb_ok = init_firebase(
        cred_path=settings.firebase_cred_path,
        db_url=settings.firebase_db_url,
        project_id=settings.firebase_project_id,
        storage_bucket=settings.firebase_storage_bucket,
    )
    if not fb_ok:
        raise RuntimeError("Firebase Admin SDK could not be initialized")
    app.state.services = services_from_firebase(settings)
    logger.info("✅ Firebase gateways ready")

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = JanitorScheduler(
            default_jobs(app.state.services, settings.stale_token_hour),
            budget_secs=settings.janitor_time_budget_secs,
        )
        scheduler.start()
    else:
        logger.info("ℹ️ Janitor scheduler disabled")

    yield

    # Shutdown
    if scheduler:
        await scheduler.stop()
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="chatrelay",
    description="Notification fan-out, resilience and cleanup backend for the chat app.",
    version=VERSION,
    lifespan=lifespan,
)

# CORS: admin dashboard and local dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error rendering ─────────────────────────────────────

def _error_response(exc: RelayError) -> JSONResponse:
    headers = {}
    if isinstance(exc, (RateLimitExceeded, ServiceUnavailable)) and exc.retry_after_seconds:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    return _error_response(InvalidArgument("Invalid request", {"errors": errors}))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(InternalError("Internal error"))


app.include_router(router, prefix="/api/v1")
app.include_router(trigger_router, prefix="/api/v1")
app.include_router(activity_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "chatrelay",
        "version": VERSION,
        "docs": "/docs",
    }
