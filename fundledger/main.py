from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fundledger import db
from fundledger.config import AppInfo, Settings, get_settings
from fundledger.core.logging import get_logger, setup_logging
from fundledger.core.runtime_state import set_scheduler_active
import fundledger.models  # noqa: F401  registers tables
from fundledger.exceptions import FundLedgerError, GatewayError
from fundledger.routers import get_api_router
from fundledger.services.cron import (
    orphan_sweep_job,
    reconciliation_job,
    webhook_maintenance_job,
)
from fundledger.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from fundledger.services.signatures import secret_status
from fundledger.utils.errors import domain_error_response, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = get_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key", "X-Request-Id"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="fundledger")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_webhook_secrets(settings: Settings) -> None:
    """Fail fast when the gateway webhook secret is missing outside dev."""

    configured = bool(settings.gateway_webhook_secret or settings.gateway_webhook_secret_next)
    env_lower = settings.app_env.lower()
    if env_lower != "dev" and not configured:
        logger.error(
            "Gateway webhook secret is missing; set GATEWAY_WEBHOOK_SECRET before startup.",
            extra={"env": settings.app_env},
        )
        raise RuntimeError("Missing gateway webhook secret in non-dev environment.")
    if not configured:
        logger.warning(
            "Gateway webhook secret is not configured; allowed in dev only.",
            extra={"env": settings.app_env},
        )
    elif settings.gateway_webhook_secret is None:
        logger.warning(
            "Primary webhook secret unset; relying on GATEWAY_WEBHOOK_SECRET_NEXT only.",
            extra={"env": settings.app_env, "webhook_secret_status": secret_status()},
        )


def _start_scheduler(settings: Settings) -> AsyncIOScheduler:
    jobs = AsyncIOScheduler()
    jobs.start()
    jobs.add_job(
        reconciliation_job,
        "interval",
        hours=settings.RECONCILIATION_INTERVAL_HOURS,
        id="reconciliation",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    jobs.add_job(
        orphan_sweep_job,
        "interval",
        minutes=settings.ORPHAN_SWEEP_INTERVAL_MINUTES,
        id="orphan-sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    jobs.add_job(
        webhook_maintenance_job,
        "interval",
        minutes=10,
        id="webhook-maintenance",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    jobs.add_job(
        refresh_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    return jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    setup_logging()
    settings = get_settings()
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_webhook_secrets(settings)

    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    # Only the replica holding the DB lock schedules periodic jobs.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler(settings)
            set_scheduler_active(True)
            logger.info(
                "Scheduler started",
                extra={"jobs": [job.id for job in scheduler.get_jobs()]},
            )
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(FundLedgerError)
async def domain_exception_handler(request: Request, exc: FundLedgerError) -> JSONResponse:
    status_code = 502 if isinstance(exc, GatewayError) else 400
    logger.warning(
        "Domain error surfaced to client",
        extra={"code": exc.code, "path": request.url.path, "error": exc.message},
    )
    return JSONResponse(status_code=status_code, content=domain_error_response(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
