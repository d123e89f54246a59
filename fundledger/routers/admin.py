"""Operator endpoints: orphan attribution, discrepancy review, job triggers."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from fundledger.db import get_db
from fundledger.models import OrphanPayment, ReconciliationDiscrepancy, WebhookRecord
from fundledger.schemas.operations import (
    DiscrepancyRead,
    OrphanRead,
    OrphanResolve,
    OrphanSweepRead,
    ReconciliationRunRead,
    ResolutionNote,
    WebhookRecordRead,
)
from fundledger.security import require_service_key
from fundledger.services import discrepancies as discrepancy_service
from fundledger.services import orphans as orphan_service
from fundledger.services.gateway_client import GatewayClient, get_gateway_client
from fundledger.services.reconciliation import run_reconciliation
from fundledger.services.webhook_processor import get_processor
from fundledger.utils.audit import log_audit
from fundledger.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_service_key)])


@router.get("/orphans", response_model=list[OrphanRead])
def list_orphans(
    reconciled: bool | None = Query(False),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> list[OrphanPayment]:
    return orphan_service.list_orphans(db, reconciled=reconciled, limit=limit, offset=offset)


@router.post("/orphans/sweep", response_model=OrphanSweepRead)
def sweep_orphans(db: Session = Depends(get_db)) -> OrphanSweepRead:
    """Retry email matching for every unreconciled funds-bearing orphan."""

    return OrphanSweepRead(**orphan_service.resolve_orphans(db).as_dict())


@router.post("/orphans/{orphan_id}/resolve", response_model=OrphanRead)
def resolve_orphan(
    orphan_id: int,
    payload: OrphanResolve,
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> OrphanPayment:
    """Credit an orphan payment to the given user."""

    return orphan_service.resolve_orphan_for_user(db, orphan_id, payload.user_id, actor=actor)


@router.post("/orphans/{orphan_id}/dismiss", response_model=OrphanRead)
def dismiss_orphan(
    orphan_id: int,
    payload: ResolutionNote,
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> OrphanPayment:
    return orphan_service.dismiss_orphan(db, orphan_id, note=payload.note, actor=actor)


@router.get("/discrepancies", response_model=list[DiscrepancyRead])
def list_discrepancies(
    resolved: bool | None = Query(False),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> list[ReconciliationDiscrepancy]:
    return discrepancy_service.list_discrepancies(db, resolved=resolved, limit=limit, offset=offset)


@router.post("/discrepancies/{discrepancy_id}/resolve", response_model=DiscrepancyRead)
def resolve_discrepancy(
    discrepancy_id: int,
    payload: ResolutionNote,
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> ReconciliationDiscrepancy:
    return discrepancy_service.resolve_discrepancy(db, discrepancy_id, note=payload.note, actor=actor)


@router.post("/reconciliation/run", response_model=ReconciliationRunRead)
async def trigger_reconciliation(
    lookback_hours: int | None = Query(None, ge=1, le=24 * 31),
    db: Session = Depends(get_db),
    client: GatewayClient = Depends(get_gateway_client),
    actor: str = Depends(require_service_key),
) -> ReconciliationRunRead:
    """Run a reconciliation pass now instead of waiting for the schedule."""

    report = await run_reconciliation(db, client, lookback_hours=lookback_hours)
    log_audit(
        db,
        actor=actor,
        action="RECONCILIATION_TRIGGERED",
        entity="ReconciliationReport",
        entity_id=None,
        data=report.as_dict(),
    )
    db.commit()
    return ReconciliationRunRead(**report.as_dict())


@router.get("/webhooks", response_model=list[WebhookRecordRead])
def list_webhooks(
    processed: bool | None = Query(False),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> list[WebhookRecord]:
    stmt = select(WebhookRecord).order_by(WebhookRecord.received_at.desc(), WebhookRecord.id.desc())
    if processed is not None:
        stmt = stmt.where(WebhookRecord.processed.is_(processed))
    return list(db.scalars(stmt.offset(offset).limit(limit)))


@router.post("/webhooks/{record_id}/reprocess", response_model=WebhookRecordRead)
def reprocess_webhook(
    record_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> WebhookRecord:
    """Push a stored, unprocessed notification through the queue again."""

    record = db.get(WebhookRecord, record_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("WEBHOOK_NOT_FOUND", "Webhook record not found."),
        )
    if record.processed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("WEBHOOK_ALREADY_PROCESSED", "Webhook record already processed."),
        )
    logger.info("Operator reprocessing webhook", extra={"webhook_record_id": record_id, "actor": actor})
    get_processor().process(record_id, db)
    db.refresh(record)
    return record


__all__ = ["router"]
