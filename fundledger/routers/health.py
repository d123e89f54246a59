"""Health check endpoint."""
from __future__ import annotations

import logging
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter
from sqlalchemy import text

from fundledger.config import get_settings
from fundledger.core.runtime_state import is_scheduler_active, job_runs
from fundledger.db import get_engine
from fundledger.services.events import get_event_stats
from fundledger.services.notifications import get_dispatcher
from fundledger.services.reconciliation import get_reconciliation_stats
from fundledger.services.scheduler_lock import describe_scheduler_lock
from fundledger.services.signatures import secret_status
from fundledger.services.webhook_processor import get_processor, get_webhook_stats

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _secret_status(primary: str | None, secondary: str | None) -> str:
    if primary and secondary:
        return "ok"
    if primary or secondary:
        return "partial"
    return "missing"


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        config = Config(str(ALEMBIC_INI))
        config.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
        return ScriptDirectory.from_config(config).get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"
    if expected_head is None:
        return False, "unknown"
    if current == expected_head:
        return True, "up_to_date"
    return False, "out_of_date"


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    """Return a health payload with ingestion and reconciliation counters."""

    settings = get_settings()
    primary_secret = settings.gateway_webhook_secret
    secondary_secret = settings.gateway_webhook_secret_next
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    degraded = not (db_ok and migration_ok)
    dispatcher = get_dispatcher()
    return {
        "status": "degraded" if degraded else "ok",
        "gateway_webhook_configured": bool(primary_secret or secondary_secret),
        "gateway_webhook_secret_status": _secret_status(primary_secret, secondary_secret),
        "gateway_webhook_secret_fingerprints": secret_status(),
        "strict_signature": settings.strict_signature,
        "gateway_credentials_configured": bool(settings.GATEWAY_API_KEY and settings.GATEWAY_SECRET_KEY),
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "scheduler_lock": describe_scheduler_lock(),
        "jobs": job_runs(),
        "webhook_stats": get_webhook_stats(),
        "dedup_cache_size": len(get_processor().cache),
        "event_stats": get_event_stats(),
        "reconciliation_stats": get_reconciliation_stats(),
        "notifications": {"delivered": dispatcher.delivered, "failed": dispatcher.failed},
    }


__all__ = ["router"]
