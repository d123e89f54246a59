"""Operator-review records for divergences between local state and the gateway."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fundledger.models import DiscrepancyKind, ReconciliationDiscrepancy
from fundledger.utils.audit import log_audit
from fundledger.utils.errors import error_response

logger = logging.getLogger(__name__)


def _find(db: Session, kind: DiscrepancyKind, reference: str) -> ReconciliationDiscrepancy | None:
    stmt = select(ReconciliationDiscrepancy).where(
        ReconciliationDiscrepancy.kind == kind,
        ReconciliationDiscrepancy.reference == reference,
    )
    return db.scalars(stmt).first()


def flag_discrepancy(
    db: Session,
    kind: DiscrepancyKind,
    reference: str,
    *,
    local_status: str | None = None,
    gateway_status: str | None = None,
    details: dict[str, Any] | None = None,
) -> tuple[ReconciliationDiscrepancy, bool]:
    """Record a discrepancy once per (kind, reference); return it and whether it is new."""

    existing = _find(db, kind, reference)
    if existing is not None:
        return existing, False

    discrepancy = ReconciliationDiscrepancy(
        kind=kind,
        reference=reference,
        local_status=local_status,
        gateway_status=gateway_status,
        details=details or {},
        resolved=False,
    )
    try:
        with db.begin_nested():
            db.add(discrepancy)
    except IntegrityError:
        return _find(db, kind, reference), False

    logger.warning(
        "Discrepancy flagged for operator review",
        extra={
            "kind": kind.value,
            "reference": reference,
            "local_status": local_status,
            "gateway_status": gateway_status,
        },
    )
    return discrepancy, True


def list_discrepancies(
    db: Session, *, resolved: bool | None = False, limit: int = 100, offset: int = 0
) -> list[ReconciliationDiscrepancy]:
    stmt = select(ReconciliationDiscrepancy).order_by(ReconciliationDiscrepancy.created_at.desc())
    if resolved is not None:
        stmt = stmt.where(ReconciliationDiscrepancy.resolved.is_(resolved))
    return list(db.scalars(stmt.offset(offset).limit(limit)))


def resolve_discrepancy(
    db: Session, discrepancy_id: int, *, note: str, actor: str
) -> ReconciliationDiscrepancy:
    discrepancy = db.get(ReconciliationDiscrepancy, discrepancy_id)
    if discrepancy is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("DISCREPANCY_NOT_FOUND", "Discrepancy not found."),
        )
    if discrepancy.resolved:
        return discrepancy

    discrepancy.resolved = True
    discrepancy.resolution_note = note
    log_audit(
        db,
        actor=actor,
        action="DISCREPANCY_RESOLVED",
        entity="ReconciliationDiscrepancy",
        entity_id=discrepancy.id,
        data={"kind": discrepancy.kind.value, "reference": discrepancy.reference, "note": note},
    )
    db.commit()
    db.refresh(discrepancy)
    return discrepancy


__all__ = ["flag_discrepancy", "list_discrepancies", "resolve_discrepancy"]
