import re as _re
import time as _time
import uuid as _uuid
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from ondemand.auth.routes import router as auth_router
from ondemand.bookings.routes import router as bookings_router
from ondemand.config import settings
from ondemand.database import async_session
from ondemand.errors import DomainError
from ondemand.geo.index import MechanicIndex
from ondemand.mechanics.routes import router as mechanics_router
from ondemand.metrics import MECHANIC_INDEX_SIZE
from ondemand.middleware import SecurityHeadersMiddleware
from ondemand.notifications.hub import NotificationHub
from ondemand.notifications.routes import router as notifications_router
from ondemand.pricing.routes import router as pricing_router
from ondemand.services.ratings import RatingAggregator
from ondemand.services.scheduler import scheduler, start_scheduler, stop_scheduler
from ondemand.utils.keyed_lock import KeyedLock
from ondemand.utils.rate_limit import limiter

# Configure structlog: JSON in production, console in development
processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]
if settings.is_production:
    processors.append(structlog.processors.JSONRenderer())
else:
    processors.append(structlog.dev.ConsoleRenderer())

structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(0),
)

logger = structlog.get_logger()

# Sentry error tracking
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )


async def _check_alembic_migration_version() -> None:
    """Log a warning if the database migration version does not match alembic head.

    Best-effort, never crashes the application.
    """
    try:
        from alembic.config import Config as AlembicConfig
        from alembic.script import ScriptDirectory

        alembic_cfg = AlembicConfig("alembic.ini")
        script = ScriptDirectory.from_config(alembic_cfg)
        head_rev = script.get_current_head()

        async with async_session() as session:
            conn = await session.connection()

            def _get_current_rev(connection):
                if not connection.dialect.has_table(connection, "alembic_version"):
                    return None
                row = connection.execute(text("SELECT version_num FROM alembic_version")).fetchone()
                return row[0] if row else None

            current_rev = await conn.run_sync(_get_current_rev)

        if current_rev is None:
            logger.warning(
                "alembic_version_check",
                status="no_alembic_version_table",
                message="No alembic_version table found, database may not be initialized",
            )
        elif current_rev != head_rev:
            logger.warning(
                "alembic_version_mismatch",
                current=current_rev,
                head=head_rev,
                message="Database migration version does not match alembic head. Run 'alembic upgrade head'.",
            )
        else:
            logger.info("alembic_version_ok", version=current_rev)
    except Exception as exc:
        logger.warning(
            "alembic_version_check_failed",
            error=str(exc),
            message="Could not verify database migration version",
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("ondemand_startup", env=settings.APP_ENV)

    await _check_alembic_migration_version()

    index: MechanicIndex = app.state.mechanic_index
    try:
        async with async_session() as db:
            MECHANIC_INDEX_SIZE.set(await index.load(db))
    except Exception:
        # The scheduled resync retries; searches return nothing until then
        logger.exception("mechanic_index_initial_load_failed")

    start_scheduler(index)
    yield
    stop_scheduler()
    app.state.notification_hub.close_all()
    logger.info("ondemand_shutdown")


app = FastAPI(
    title="Mechanic On Demand API",
    description="Books mobile mechanics near a customer and tracks each job from request to rating",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# Process-scoped registries, reached through ondemand.dependencies
app.state.mechanic_index = MechanicIndex()
app.state.notification_hub = NotificationHub()
app.state.booking_locks = KeyedLock()
app.state.rating_aggregator = RatingAggregator()

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    logger.info(
        "domain_error",
        kind=exc.kind,
        path=request.url.path,
        detail=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions and return a safe 500 response outside development."""
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV != "development":
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
    # In development, re-raise so the default handler shows the traceback
    raise exc


# Middleware is LIFO: the last middleware added runs first.
# CORS is added first so it runs last; SecurityHeaders is added after so it runs first.
if settings.is_production:
    # allow_credentials is only safe because origins are an explicit list, never "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
    )
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8081", "http://localhost:19006"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Security headers in all environments; HSTS only in production
app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)


_REQUEST_ID_RE = _re.compile(r"^[a-zA-Z0-9\-]{1,64}$")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a unique request ID and measure duration for every request."""
    # Client-supplied ids are validated to keep them out of log injection
    client_id = request.headers.get("X-Request-ID")
    request_id = client_id if client_id and _REQUEST_ID_RE.match(client_id) else str(_uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start = _time.monotonic()
    try:
        response = await call_next(request)
        duration_ms = (_time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        if duration_ms > 1000:
            logger.warning(
                "slow_request",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                status_code=response.status_code,
            )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


# Custom instrumentation avoids metrics.default(), which crashes on
# non-numeric Content-Length headers.
def _safe_metrics(info) -> None:
    from prometheus_client import Counter, Histogram
    if not hasattr(_safe_metrics, "_total"):
        _safe_metrics._total = Counter(
            "ondemand_http_requests_total", "Total HTTP requests",
            ["method", "status", "handler"],
        )
        _safe_metrics._latency = Histogram(
            "ondemand_http_request_duration_seconds", "Request latency",
            ["method", "handler"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
        )
    _safe_metrics._total.labels(info.method, info.modified_status, info.modified_handler).inc()
    _safe_metrics._latency.labels(info.method, info.modified_handler).observe(info.modified_duration)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics", "/notifications/stream"],
).add(_safe_metrics).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus metrics endpoint (protected by API key)."""
    from prometheus_client import generate_latest
    from starlette.responses import Response as StarletteResponse

    # In production/staging, METRICS_API_KEY is required
    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")

    if settings.METRICS_API_KEY:
        api_key = request.headers.get("x-metrics-key", "")
        if api_key != settings.METRICS_API_KEY:
            raise HTTPException(
                status_code=403,
                detail="Invalid metrics API key",
            )

    return StarletteResponse(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(mechanics_router, prefix="/mechanics", tags=["mechanics"])
app.include_router(bookings_router, prefix="/bookings", tags=["bookings"])
app.include_router(notifications_router, prefix="/notifications", tags=["notifications"])
app.include_router(pricing_router, prefix="/pricing", tags=["pricing"])


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check with database and Redis connectivity verification."""
    result: dict = {"status": "ok", "database": "connected", "redis": "connected"}

    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "redis": "unknown"},
        )

    # Redis only backs rate limiting, the API keeps working without it
    try:
        import redis.asyncio as aioredis
        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        await r.ping()
        await r.aclose()
    except Exception:
        result["redis"] = "unavailable"

    result["scheduler"] = "running" if scheduler.running else "stopped"
    result["indexed_mechanics"] = len(request.app.state.mechanic_index)
    result["notification_channels"] = request.app.state.notification_hub.active_channels

    if settings.is_production:
        db_ok = result.get("database") == "connected"
        redis_ok = result.get("redis") == "connected"
        sched_ok = result.get("scheduler") == "running"
        overall = "ok" if (db_ok and redis_ok and sched_ok) else "unhealthy"
        return {
            "status": overall,
            "database": "ok" if db_ok else "error",
            "redis": "ok" if redis_ok else "error",
            "scheduler": "ok" if sched_ok else "error",
        }
    return result
