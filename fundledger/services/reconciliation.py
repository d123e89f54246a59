"""Periodic reconciliation of local deposits against the gateway's records.

The job never writes financial state directly: missing credits are replayed
through the same event router as live webhooks, and anything it cannot repair
safely becomes a :class:`ReconciliationDiscrepancy` for operator review.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from fundledger.config import get_settings
from fundledger.exceptions import GatewayError
from fundledger.models import (
    DiscrepancyKind,
    OrphanPayment,
    PaymentStatus,
    SettlementBatch,
    SettlementStatus,
)
from fundledger.schemas.webhook import WebhookEventType
from fundledger.services import notifications as notify
from fundledger.services.dedup import derive_dedup_key
from fundledger.services.discrepancies import flag_discrepancy
from fundledger.services.events import EventContext, find_payment, process_event
from fundledger.services.gateway_client import GatewayClient
from fundledger.services.ledger import to_money
from fundledger.services.maintenance import expire_stale_payments
from fundledger.services.orphans import record_orphan, resolve_orphans
from fundledger.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "PAID": PaymentStatus.PAID,
    "OVERPAID": PaymentStatus.PAID,
    "PENDING": PaymentStatus.PENDING,
    "PARTIALLY_PAID": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "EXPIRED": PaymentStatus.EXPIRED,
    "REVERSED": PaymentStatus.REVERSED,
}

SETTLEMENT_EVENT_BY_STATUS: dict[str, WebhookEventType] = {
    SettlementStatus.COMPLETED.value: WebhookEventType.SETTLEMENT_COMPLETED,
    SettlementStatus.FAILED.value: WebhookEventType.SETTLEMENT_FAILED,
}

ORPHAN_ESCALATION_AGE = timedelta(days=1)

_RUN_LOCK = threading.Lock()
_STATS_LOCK = threading.Lock()
_RECONCILIATION_STATS: dict[str, Any] = {"runs": 0, "skipped": 0, "failures": 0, "last_run": None}


@dataclass
class ReconciliationReport:
    window_start: datetime
    window_end: datetime
    skipped: bool = False
    gateway_transactions: int = 0
    gateway_settlements: int = 0
    credited: int = 0
    orphans_created: int = 0
    orphans_resolved: int = 0
    discrepancies: int = 0
    settlements_replayed: int = 0
    expired: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return (
            self.credited
            + self.orphans_created
            + self.orphans_resolved
            + self.discrepancies
            + self.settlements_replayed
            + self.expired
        )

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat()
        data["window_end"] = self.window_end.isoformat()
        data["mutations"] = self.mutations
        return data


def get_reconciliation_stats() -> dict[str, Any]:
    with _STATS_LOCK:
        return dict(_RECONCILIATION_STATS)


def _record_run(report: ReconciliationReport) -> None:
    with _STATS_LOCK:
        if report.skipped:
            _RECONCILIATION_STATS["skipped"] += 1
            return
        _RECONCILIATION_STATS["runs"] += 1
        if report.errors:
            _RECONCILIATION_STATS["failures"] += 1
        _RECONCILIATION_STATS["last_run"] = report.as_dict()


def _as_decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return to_money(value)
    except (InvalidOperation, ValueError):
        return None


def _orphan_exists(db: Session, transaction_reference: str | None, payment_reference: str | None) -> bool:
    if transaction_reference:
        clause = OrphanPayment.transaction_reference == transaction_reference
    elif payment_reference:
        clause = OrphanPayment.payment_reference == payment_reference
    else:
        return False
    return db.scalars(select(OrphanPayment.id).where(clause).limit(1)).first() is not None


def _reconcile_transaction(
    db: Session,
    item: dict[str, Any],
    report: ReconciliationReport,
    dispatcher: notify.NotificationDispatcher | None,
) -> None:
    transaction_reference = item.get("transactionReference")
    payment_reference = item.get("paymentReference")
    gateway_status = str(item.get("paymentStatus") or "").upper()
    mapped = GATEWAY_STATUS_MAP.get(gateway_status)
    reference = payment_reference or transaction_reference
    if not reference or mapped is None:
        logger.debug("Skipping gateway transaction", extra={"reference": reference, "status": gateway_status})
        return

    local = find_payment(
        db, payment_reference=payment_reference, transaction_reference=transaction_reference
    )

    if local is None:
        if mapped != PaymentStatus.PAID or _orphan_exists(db, transaction_reference, payment_reference):
            return
        orphan = record_orphan(
            db, WebhookEventType.SUCCESSFUL_TRANSACTION.value, dict(item), source="reconciliation"
        )
        db.commit()
        report.orphans_created += 1
        sweep = resolve_orphans(db, orphan_ids=[orphan.id], dispatcher=dispatcher)
        report.orphans_resolved += sweep.resolved
        return

    if local.status == PaymentStatus.PENDING and mapped == PaymentStatus.PAID:
        event_type = WebhookEventType.SUCCESSFUL_TRANSACTION.value
        outcome = process_event(
            db,
            event_type,
            dict(item),
            context=EventContext(
                source="reconciliation",
                dedup_key=derive_dedup_key(event_type, item, f"reconciliation-{reference}"),
            ),
            dispatcher=dispatcher,
        )
        if outcome.processed:
            report.credited += 1
            return
        # Fall through: the replay was refused, so the disagreement needs a human.
        db.refresh(local)

    if local.status != mapped:
        _, created = flag_discrepancy(
            db,
            DiscrepancyKind.STATUS_MISMATCH,
            local.payment_reference,
            local_status=local.status.value,
            gateway_status=gateway_status,
            details={"transaction_reference": transaction_reference},
        )
        report.discrepancies += int(created)
    elif mapped == PaymentStatus.PAID:
        gateway_amount = _as_decimal(item.get("amountPaid"))
        local_amount = to_money(local.amount_paid) if local.amount_paid is not None else None
        if gateway_amount is not None and local_amount is not None and gateway_amount != local_amount:
            _, created = flag_discrepancy(
                db,
                DiscrepancyKind.AMOUNT_MISMATCH,
                local.payment_reference,
                local_status=local.status.value,
                gateway_status=gateway_status,
                details={"local_amount": str(local_amount), "gateway_amount": str(gateway_amount)},
            )
            report.discrepancies += int(created)
    db.commit()


def _reconcile_settlement(
    db: Session,
    item: dict[str, Any],
    report: ReconciliationReport,
    dispatcher: notify.NotificationDispatcher | None,
) -> None:
    reference = item.get("settlementReference")
    kind = SETTLEMENT_EVENT_BY_STATUS.get(str(item.get("status") or "").upper())
    if not reference or kind is None:
        return

    batch = db.scalars(
        select(SettlementBatch).where(SettlementBatch.settlement_reference == reference)
    ).first()
    if batch is not None and SETTLEMENT_EVENT_BY_STATUS.get(batch.status.value) == kind:
        return

    outcome = process_event(
        db,
        kind.value,
        dict(item),
        context=EventContext(
            source="reconciliation",
            dedup_key=derive_dedup_key(kind.value, item, f"reconciliation-{reference}"),
        ),
        dispatcher=dispatcher,
    )
    if outcome.processed:
        report.settlements_replayed += 1


def _escalate_stale_orphans(db: Session, now: datetime, report: ReconciliationReport) -> None:
    cutoff = now - ORPHAN_ESCALATION_AGE
    stmt = select(OrphanPayment).where(
        OrphanPayment.reconciled.is_(False),
        OrphanPayment.event_type == WebhookEventType.SUCCESSFUL_TRANSACTION.value,
        OrphanPayment.created_at < cutoff,
    )
    for orphan in list(db.scalars(stmt)):
        reference = orphan.transaction_reference or orphan.payment_reference or f"orphan-{orphan.id}"
        _, created = flag_discrepancy(
            db,
            DiscrepancyKind.UNRESOLVED_ORPHAN,
            reference,
            details={
                "orphan_id": orphan.id,
                "amount": str(orphan.amount) if orphan.amount is not None else None,
                "age_hours": round((now - ensure_utc(orphan.created_at)).total_seconds() / 3600, 1),
            },
        )
        report.discrepancies += int(created)
    db.commit()


async def run_reconciliation(
    db: Session,
    client: GatewayClient,
    *,
    lookback_hours: int | None = None,
    now: datetime | None = None,
    dispatcher: notify.NotificationDispatcher | None = None,
) -> ReconciliationReport:
    """Diff the gateway's trailing window against local state and repair it."""

    now = now or utcnow()
    hours = lookback_hours or get_settings().RECONCILIATION_LOOKBACK_HOURS
    report = ReconciliationReport(window_start=now - timedelta(hours=hours), window_end=now)

    if not _RUN_LOCK.acquire(blocking=False):
        report.skipped = True
        logger.info("Reconciliation already running, skipping this run")
        _record_run(report)
        return report

    try:
        logger.info(
            "Reconciliation started",
            extra={"window_start": report.window_start.isoformat(), "window_end": now.isoformat()},
        )
        try:
            async for item in client.iter_transactions(start=report.window_start, end=now):
                report.gateway_transactions += 1
                _reconcile_transaction(db, item, report, dispatcher)
        except GatewayError as exc:
            logger.exception("Reconciliation could not list gateway transactions")
            report.errors.append(f"transactions: {exc.message}")

        try:
            async for item in client.iter_settlements(start=report.window_start, end=now):
                report.gateway_settlements += 1
                _reconcile_settlement(db, item, report, dispatcher)
        except GatewayError as exc:
            logger.exception("Reconciliation could not list gateway settlements")
            report.errors.append(f"settlements: {exc.message}")

        sweep = resolve_orphans(db, dispatcher=dispatcher)
        report.orphans_resolved += sweep.resolved
        _escalate_stale_orphans(db, now, report)
        report.expired = expire_stale_payments(db, now=now)
    finally:
        _RUN_LOCK.release()

    _record_run(report)
    logger.info("Reconciliation finished", extra=report.as_dict())
    return report


__all__ = [
    "GATEWAY_STATUS_MAP",
    "ReconciliationReport",
    "get_reconciliation_stats",
    "run_reconciliation",
]
