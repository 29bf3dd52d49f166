"""
FastAPI application entrypoint.

Lifespan:
  • On startup: build the DB engine and Redis client, wire the gateway
    components, verify connectivity, start the usage-reset scheduler and
    the request-log writer.
  • On shutdown: stop background tasks, flush logs, close connections.

Routers:
  • /api/v1  — endpoints behind the admission gateway
  • /admin   — key lifecycle (X-Admin-Token)
  • /health  — liveness / readiness probes
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import Settings, settings
from app.core.database import build_engine, build_session_factory
from app.core.errors import register_exception_handlers
from app.core.redis import build_redis
from app.middleware.request_log import request_log_middleware
from app.routers.admin import router as admin_router
from app.routers.usage import router as usage_router
from app.services.api_keys import ApiKeyService
from app.services.gateway import GatewayPipeline
from app.services.request_log import RequestLogWriter
from app.services.usage_reset import UsageResetScheduler

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def install_components(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    cache,  # redis.asyncio.Redis
) -> None:
    """Wire every gateway component onto app.state from explicit handles."""
    cfg: Settings = app.state.settings
    gateway = GatewayPipeline.from_settings(cfg, session_factory, cache)

    app.state.session_factory = session_factory
    app.state.redis = cache
    app.state.gateway = gateway
    app.state.key_service = ApiKeyService(session_factory, gateway.keys, gateway.quota)
    app.state.reset_scheduler = UsageResetScheduler(
        session_factory,
        interval_seconds=cfg.USAGE_RESET_INTERVAL_SECONDS,
        batch_size=cfg.USAGE_RESET_BATCH_SIZE,
        batch_delay=cfg.USAGE_RESET_BATCH_DELAY_SECONDS,
    )
    app.state.request_log_writer = RequestLogWriter(
        session_factory,
        flush_interval=cfg.REQUEST_LOG_FLUSH_SECONDS,
        max_batch=cfg.REQUEST_LOG_MAX_BATCH,
    )


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    cfg: Settings = app.state.settings
    engine: AsyncEngine = build_engine(cfg)
    cache = build_redis(cfg)
    install_components(app, build_session_factory(engine), cache)

    # Startup: verify backing stores are reachable
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection verified ✓")
    except Exception:
        logger.warning(
            "Could not reach the database on startup. "
            "The app will start, but requests will fail until the DB is available."
        )
    try:
        await cache.ping()
        logger.info("Redis connection verified ✓")
    except Exception:
        logger.warning(
            "Could not reach Redis on startup (rate-limit fail mode: %s).",
            cfg.RATE_LIMIT_FAIL_MODE,
        )

    if cfg.USAGE_RESET_ENABLED:
        app.state.reset_scheduler.start()
    app.state.request_log_writer.start()

    yield  # ← application runs here

    # Shutdown: stop background work, then close pools
    await app.state.reset_scheduler.stop()
    await app.state.request_log_writer.stop()
    await cache.aclose()
    await engine.dispose()
    logger.info("Database engine disposed ✓")


# ── App ─────────────────────────────────────────────────────
def create_app(app_settings: Settings = settings) -> FastAPI:
    app = FastAPI(
        title=app_settings.APP_NAME,
        version="0.1.0",
        description=(
            "Admission gateway for the credential-search API — "
            "key resolution, endpoint scope, rate limits and quotas."
        ),
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    register_exception_handlers(app)
    app.middleware("http")(request_log_middleware)

    # Mount routers
    app.include_router(usage_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/admin")

    # ── Health checks ───────────────────────────────────────
    @app.get("/health", tags=["System"], summary="Liveness probe")
    async def health_check() -> dict[str, str]:
        """Shallow health check — confirms the process is alive."""
        return {"status": "healthy"}

    @app.get("/health/ready", tags=["System"], summary="Readiness probe")
    async def readiness_check(request: Request) -> JSONResponse:
        checks = {"database": "ok", "redis": "ok"}
        try:
            async with request.app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error("Readiness: database check failed: %r", exc)
            checks["database"] = "unavailable"
        try:
            await request.app.state.redis.ping()
        except Exception as exc:
            logger.error("Readiness: redis check failed: %r", exc)
            checks["redis"] = "unavailable"

        healthy = all(value == "ok" for value in checks.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if healthy else "degraded", "checks": checks},
        )

    return app


app = create_app()
