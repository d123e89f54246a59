"""Housekeeping: payment expiry, webhook replay and retention."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from fundledger.config import get_settings
from fundledger.models import PaymentStatus, PaymentTransaction, WebhookRecord
from fundledger.services.webhook_processor import get_processor
from fundledger.utils.time import utcnow

logger = logging.getLogger(__name__)


def expire_stale_payments(db: Session, *, now: datetime | None = None) -> int:
    """Move PENDING deposits past ``expires_at`` to EXPIRED; never touches balances."""

    now = now or utcnow()
    stmt = (
        update(PaymentTransaction)
        .where(
            PaymentTransaction.status == PaymentStatus.PENDING,
            PaymentTransaction.expires_at.is_not(None),
            PaymentTransaction.expires_at < now,
        )
        .values(status=PaymentStatus.EXPIRED, failure_reason="Payment window expired")
        .execution_options(synchronize_session=False)
    )
    expired = db.execute(stmt).rowcount or 0
    db.commit()
    if expired:
        logger.info("Expired stale pending payments", extra={"expired": expired})
    return expired


def replay_stale_webhooks(
    db: Session, *, grace_seconds: int | None = None, limit: int = 200, now: datetime | None = None
) -> int:
    """Re-run records stored but never attempted, e.g. after a crash between ack and processing."""

    grace = grace_seconds if grace_seconds is not None else get_settings().WEBHOOK_REPLAY_GRACE_SECONDS
    cutoff = (now or utcnow()) - timedelta(seconds=grace)
    stmt = (
        select(WebhookRecord.id)
        .where(
            WebhookRecord.processed.is_(False),
            WebhookRecord.attempts == 0,
            WebhookRecord.received_at <= cutoff,
        )
        .order_by(WebhookRecord.received_at.asc(), WebhookRecord.id.asc())
        .limit(limit)
    )
    record_ids = list(db.scalars(stmt))
    processor = get_processor()
    for record_id in record_ids:
        processor.process(record_id, db)
    if record_ids:
        logger.warning("Replayed unattempted webhooks", extra={"count": len(record_ids)})
    return len(record_ids)


def prune_webhook_records(
    db: Session, *, retention_days: int | None = None, now: datetime | None = None
) -> int:
    """Delete processed records older than the retention window."""

    days = retention_days if retention_days is not None else get_settings().WEBHOOK_RETENTION_DAYS
    cutoff = (now or utcnow()) - timedelta(days=days)
    stmt = (
        delete(WebhookRecord)
        .where(WebhookRecord.processed.is_(True), WebhookRecord.received_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    removed = db.execute(stmt).rowcount or 0
    db.commit()
    if removed:
        logger.info("Pruned processed webhook records", extra={"removed": removed, "retention_days": days})
    return removed


__all__ = ["expire_stale_payments", "replay_stale_webhooks", "prune_webhook_records"]
