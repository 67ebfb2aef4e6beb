"""
CreativeWriter FastAPI Application Entry Point
Middleware stack, lifespan, observability and error rendering for the
subscription & usage-metering API.

Notes:
- Auth is NOT global: routes use Depends(get_current_user) / Depends(require_admin)
- Middleware order: CORS → Metrics/Logging → Rate Limiting
- Policy rejections (AppException) render as {"detail", "code", "data"}
"""

import logging
import time
import uuid

import sentry_sdk
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from creativewriter.core.config import Settings, get_settings
from creativewriter.core.exceptions import AppException
from creativewriter.core.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    registry,
)
from creativewriter.db.session import get_session_factory, lifespan
from creativewriter.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from creativewriter.routers import admin, subscriptions

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler()],
    )


def configure_sentry(settings: Settings) -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.ENVIRONMENT,
        release=f"creativewriter-api@{settings.APP_VERSION}",
        send_default_pii=False,
    )
    logger.info("Sentry initialized", extra={"environment": settings.ENVIRONMENT})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    configure_sentry(settings)

    app = FastAPI(
        title="CreativeWriter API",
        description="Subscription lifecycle and usage metering for generative AI features",
        version=settings.APP_VERSION,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Subscriptions", "description": "Plans, checkout, usage"},
            {"name": "Admin", "description": "Catalog & subscription administration (protected)"},
            {"name": "Health", "description": "Health & readiness checks"},
        ],
    )

    # ────────────────────────────────────────────────
    # Middleware Stack
    # ────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        method = request.method
        path = request.url.path
        start_time = time.time()

        # Correlation ID for tracing
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            duration = time.time() - start_time
            http_requests_total.labels(method=method, path=path, status=status_code).inc()
            http_request_duration_seconds.labels(method=method, path=path).observe(duration)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # ────────────────────────────────────────────────
    # Routers
    # ────────────────────────────────────────────────
    app.include_router(subscriptions.router, prefix=API_PREFIX)
    app.include_router(admin.router, prefix=API_PREFIX)

    # ────────────────────────────────────────────────
    # Exception Handlers
    # ────────────────────────────────────────────────
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        # Expected rejections: informational, never error-level
        logger.info(
            f"Request rejected: {exc.code}",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "path": request.url.path,
                "status_code": exc.status_code,
            },
        )
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception: {exc}",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "user_id": getattr(request.state, "user_id", None),
                "environment": settings.ENVIRONMENT,
            },
        )
        sentry_sdk.capture_exception(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # ────────────────────────────────────────────────
    # Health / Readiness / Metrics
    # ────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "version": settings.APP_VERSION}

    @app.get("/ready", tags=["Health"])
    async def readiness_check():
        try:
            async with get_session_factory()() as db:
                await db.execute(text("SELECT 1"))
            return {"status": "ready"}
        except Exception as e:
            logger.error("Readiness check failed", exc_info=True)
            return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
