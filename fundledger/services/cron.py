"""Scheduled job entrypoints; each opens its own session and gateway client."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from fundledger.core.logging import get_logger
from fundledger.core.runtime_state import record_job_run
from fundledger.db import job_session
from fundledger.services.gateway_client import GatewayClient
from fundledger.services.maintenance import prune_webhook_records, replay_stale_webhooks
from fundledger.services.orphans import resolve_orphans
from fundledger.services.reconciliation import ReconciliationReport, run_reconciliation

logger = get_logger(__name__)


@contextmanager
def _tracked(name: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        logger.exception("Scheduled job failed", extra={"job": name})
        record_job_run(name, ok=False, error=type(exc).__name__)
        raise
    record_job_run(name, ok=True)


async def reconciliation_job(
    db_session: Session | None = None, client: GatewayClient | None = None
) -> ReconciliationReport:
    """Reconcile the trailing window against the gateway."""

    with _tracked("reconciliation"), job_session(db_session) as db:
        if client is not None:
            return await run_reconciliation(db, client)
        async with GatewayClient() as owned_client:
            return await run_reconciliation(db, owned_client)


def orphan_sweep_job(db_session: Session | None = None) -> int:
    with _tracked("orphan-sweep"), job_session(db_session) as db:
        return resolve_orphans(db).resolved


def webhook_maintenance_job(db_session: Session | None = None) -> dict[str, int]:
    """Replay unattempted webhook records, then prune old processed ones."""

    with _tracked("webhook-maintenance"), job_session(db_session) as db:
        replayed = replay_stale_webhooks(db)
        pruned = prune_webhook_records(db)
    return {"replayed": replayed, "pruned": pruned}


__all__ = [
    "orphan_sweep_job",
    "reconciliation_job",
    "webhook_maintenance_job",
]
