"""
FoundMatch — HTTP service entry point

The process owns three long-lived resources: the database pool, the Redis
connection used for outbound match events, and the optional embedding
checkpoint synced from GCS.  They are opened in ``lifespan`` and released
after in-flight requests have drained.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from foundmatch.config import get_settings
from foundmatch.database import async_session_factory, get_engine
from foundmatch.services.event_publisher import close_redis, connect_redis, get_redis
from foundmatch.utils.storage import fetch_verified_blob, get_storage_client

settings = get_settings()

REQUEST_TIMEOUT_SECONDS = 30.0
DRAIN_TIMEOUT_SECONDS = 15.0
REQUEST_ID_HEADER = "X-Request-ID"


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(settings.LOG_LEVEL)
logger = structlog.get_logger("foundmatch")


class InFlightRequests:
    """Counts requests being served so shutdown can wait for them."""

    def __init__(self) -> None:
        self.count = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def enter(self) -> None:
        self.count += 1
        self._idle.clear()

    def leave(self) -> None:
        self.count -= 1
        if self.count <= 0:
            self.count = 0
            self._idle.set()

    async def drain(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("drain_timeout_exceeded", remaining_requests=self.count)
            return False
        return True


in_flight = InFlightRequests()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the log context, enforce a deadline and log the outcome.

    Requests that outlive ``timeout_seconds`` get a 504.  The caller's
    ``X-Request-ID`` is reused when present and echoed back either way.
    """

    def __init__(self, app, timeout_seconds: float = REQUEST_TIMEOUT_SECONDS) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        started = time.perf_counter()
        in_flight.enter()
        try:
            response = await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", timeout=self.timeout_seconds)
            response = JSONResponse(status_code=504, content={"detail": "Request timed out"})
        except Exception:
            logger.exception("request_error", duration_ms=_elapsed_ms(started))
            raise
        else:
            logger.info(
                "request_handled",
                status=response.status_code,
                duration_ms=_elapsed_ms(started),
            )
        finally:
            in_flight.leave()
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _sync_embedding_weights() -> str:
    """Make sure the embedding checkpoint is on local disk.

    Blocking; call it from a worker thread.  Returns a short state label for
    the startup log.  Without a checkpoint the extractor emits no ``dna``.
    """
    local_path = Path(settings.EMBEDDING_WEIGHTS_PATH)
    if local_path.exists():
        return "present"
    if not settings.GCS_BUCKET_NAME:
        return "absent"
    blob_name = f"{settings.GCS_MODEL_WEIGHTS_PREFIX}{local_path.name}"
    if fetch_verified_blob(settings.GCS_BUCKET_NAME, blob_name, local_path):
        return "downloaded"
    return "unavailable"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("startup_begin", environment=settings.ENVIRONMENT)

    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_ready")

    await connect_redis()

    try:
        weights = await asyncio.to_thread(_sync_embedding_weights)
    except Exception:
        logger.exception("embedding_weight_sync_failed")
    else:
        logger.info("embedding_weights", state=weights)

    logger.info("startup_complete")
    yield

    logger.info("shutdown_begin", in_flight=in_flight.count)
    await in_flight.drain(DRAIN_TIMEOUT_SECONDS)
    await close_redis()
    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="FoundMatch",
    description="Lost-and-found photo matching engine",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

# Last added runs outermost.
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    return {"status": "healthy"}


async def _probe_database() -> str:
    async with async_session_factory() as session:
        await session.execute(text("SELECT 1"))
    return "connected"


async def _probe_redis() -> str:
    redis = get_redis()
    if redis is None:
        raise RuntimeError("Redis client not initialised")
    await redis.ping()
    return "connected"


async def _probe_gcs() -> str:
    if not settings.GCS_BUCKET_NAME:
        return "not_configured"
    bucket = get_storage_client().bucket(settings.GCS_BUCKET_NAME)
    if not await asyncio.to_thread(bucket.exists):
        raise RuntimeError(f"bucket {settings.GCS_BUCKET_NAME!r} not found")
    return "accessible"


async def _probe_weights() -> str:
    return "present" if Path(settings.EMBEDDING_WEIGHTS_PATH).exists() else "absent"


_PROBES: dict[str, Callable[[], Awaitable[str]]] = {
    "database": _probe_database,
    "redis": _probe_redis,
    "gcs": _probe_gcs,
    "embedding_weights": _probe_weights,
}


@app.get("/health/deep", tags=["health"])
async def health_deep() -> dict:
    """Readiness probe.

    Reports ``degraded`` when any dependency check raises.  A missing
    embedding checkpoint is reported but does not degrade the service.
    """
    report: dict = {"status": "healthy"}
    for name, probe in _PROBES.items():
        try:
            report[name] = await probe()
        except Exception as exc:
            logger.error("health_probe_failed", probe=name, error=str(exc))
            report[name] = f"error: {exc}"
            report["status"] = "degraded"
    return report


from foundmatch.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
