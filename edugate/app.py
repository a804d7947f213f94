from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Callable, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from edugate.api.error_handling import register_exception_handlers
from edugate.api.routes import router, ws_router
from edugate.config import Settings
from edugate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = _settings.app_version

_maintenance_tasks: List[asyncio.Task] = []


async def _run_periodic(name: str, interval_seconds: int, job: Callable[[], object]) -> None:
    """Run ``job`` in a worker thread every ``interval_seconds`` until cancelled.

    A failing run is logged and the loop keeps going.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await asyncio.to_thread(job)
            logger.info("maintenance_job_completed", job=name, result=result)
        except Exception as exc:
            logger.error(
                "maintenance_job_failed",
                job=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )


def _start_maintenance(runtime) -> None:
    settings = runtime.settings

    def cleanup() -> dict:
        return {
            "expired_sessions": runtime.auth.cleanup_expired_sessions(),
            "activity_entries": runtime.activity.cleanup(settings.activity_log_retention_days),
        }

    def check_database() -> bool:
        if not runtime.store.ping():
            raise RuntimeError("store ping returned no row")
        return True

    _maintenance_tasks.append(
        asyncio.create_task(
            _run_periodic("cleanup", settings.cleanup_interval_seconds, cleanup)
        )
    )
    _maintenance_tasks.append(
        asyncio.create_task(
            _run_periodic(
                "health_check", settings.health_check_interval_seconds, check_database
            )
        )
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from edugate.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.test_mode:
        logger.info("maintenance_disabled_in_test_mode")
    else:
        _start_maintenance(runtime)
        logger.info(
            "maintenance_started",
            cleanup_interval_seconds=runtime.settings.cleanup_interval_seconds,
            health_check_interval_seconds=runtime.settings.health_check_interval_seconds,
        )

    yield

    for task in _maintenance_tasks:
        task.cancel()
    for task in _maintenance_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _maintenance_tasks.clear()
    if runtime.cache is not None:
        await runtime.cache.close()
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Edugate", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation id.

    The id comes from the client's ``X-Request-ID`` header when present and
    is echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router, prefix=_settings.api_prefix)
app.include_router(ws_router, prefix=_settings.api_prefix)
