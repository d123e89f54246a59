"""Orphan payments: gateway notifications that match no local deposit."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fundledger.exceptions import ConcurrentUpdateError
from fundledger.models import OrphanPayment, PaymentStatus, PaymentTransaction, User
from fundledger.schemas.webhook import TransactionEventData, WebhookEventType
from fundledger.services import notifications as notify
from fundledger.utils.audit import log_audit
from fundledger.utils.errors import error_response
from fundledger.utils.time import utcnow

logger = logging.getLogger(__name__)

FUNDS_EVENT = WebhookEventType.SUCCESSFUL_TRANSACTION.value


def _amount_from(data: Mapping[str, Any]) -> Decimal | None:
    for key in ("amountPaid", "amount", "reversalAmount", "refundAmount"):
        value = data.get(key)
        if value in (None, ""):
            continue
        try:
            return Decimal(str(value))
        except InvalidOperation:
            continue
    return None


def _existing_orphan(
    db: Session, transaction_reference: str | None, payment_reference: str | None
) -> OrphanPayment | None:
    if transaction_reference:
        stmt = select(OrphanPayment).where(OrphanPayment.transaction_reference == transaction_reference)
    elif payment_reference:
        stmt = select(OrphanPayment).where(
            OrphanPayment.transaction_reference.is_(None),
            OrphanPayment.payment_reference == payment_reference,
        )
    else:
        return None
    return db.scalars(stmt).first()


def record_orphan(
    db: Session,
    event_type: str,
    event_data: dict[str, Any],
    *,
    source: str = "webhook",
) -> OrphanPayment:
    """Persist the funds signal of an unmatched notification, once per reference."""

    transaction_reference = event_data.get("transactionReference")
    payment_reference = event_data.get("paymentReference")
    customer = event_data.get("customer") or {}

    existing = _existing_orphan(db, transaction_reference, payment_reference)
    if existing is not None:
        if (
            event_type == FUNDS_EVENT
            and existing.event_type != FUNDS_EVENT
            and not existing.reconciled
        ):
            # A success supersedes an earlier non-funds signal for the same reference.
            existing.event_type = event_type
            existing.event_data = event_data
            existing.amount = _amount_from(event_data)
            db.flush()
        logger.warning(
            "Orphan notification redelivered",
            extra={
                "orphan_id": existing.id,
                "event_type": event_type,
                "transaction_reference": transaction_reference,
            },
        )
        return existing

    orphan = OrphanPayment(
        transaction_reference=transaction_reference,
        payment_reference=payment_reference,
        amount=_amount_from(event_data),
        currency=event_data.get("currency"),
        payment_method=event_data.get("paymentMethod"),
        customer_email=(customer.get("email") or event_data.get("customerEmail")),
        customer_name=(customer.get("name") or event_data.get("customerName")),
        event_type=event_type,
        source=source,
        event_data=event_data,
        reconciled=False,
    )
    try:
        with db.begin_nested():
            db.add(orphan)
    except IntegrityError:
        return _existing_orphan(db, transaction_reference, payment_reference)

    logger.warning(
        "Orphan payment recorded",
        extra={
            "orphan_id": orphan.id,
            "event_type": event_type,
            "transaction_reference": transaction_reference,
            "payment_reference": payment_reference,
            "amount": str(orphan.amount) if orphan.amount is not None else None,
            "source": source,
        },
    )
    return orphan


class _NotCredited(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class OrphanSweepResult:
    resolved: int = 0
    unmatched: int = 0
    skipped: int = 0
    resolved_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "resolved": self.resolved,
            "unmatched": self.unmatched,
            "skipped": self.skipped,
            "resolved_ids": list(self.resolved_ids),
        }


def find_user_by_email(db: Session, email: str | None) -> User | None:
    if not email:
        return None
    stmt = select(User).where(func.lower(User.email) == email.strip().lower(), User.is_active.is_(True))
    return db.scalars(stmt).first()


def _credit_orphan(db: Session, orphan: OrphanPayment, user: User, *, source: str):
    """Synthesise a PENDING deposit for ``user`` and replay the success path on it."""

    from fundledger.services import events
    from fundledger.services.dedup import derive_dedup_key

    if orphan.amount is None or orphan.amount <= 0:
        raise _NotCredited("missing_amount")

    try:
        payload = TransactionEventData.model_validate(orphan.event_data or {})
    except ValidationError as exc:
        raise _NotCredited("payload_invalid") from exc
    reference = orphan.payment_reference or f"ORPHAN_{orphan.transaction_reference or orphan.id}"
    if events.find_payment(db, payment_reference=reference, transaction_reference=orphan.transaction_reference):
        raise _NotCredited("payment_exists")

    payment = PaymentTransaction(
        user_id=user.id,
        payment_reference=reference,
        transaction_reference=orphan.transaction_reference,
        amount=orphan.amount,
        currency=orphan.currency or "NGN",
        status=PaymentStatus.PENDING,
        payment_method=orphan.payment_method,
        customer_email=orphan.customer_email,
        customer_name=orphan.customer_name,
        metadata_json={"orphan_id": orphan.id, "orphan_source": orphan.source},
    )
    db.add(payment)
    db.flush()

    dedup_key = derive_dedup_key(FUNDS_EVENT, orphan.event_data, f"orphan-{orphan.id}")
    outcome = events.apply_successful_payment(
        db, payment, payload, events.EventContext(source=source, dedup_key=dedup_key)
    )
    if not outcome.processed:
        raise _NotCredited(outcome.reason)

    orphan.reconciled = True
    orphan.reconciled_at = utcnow()
    orphan.resolved_user_id = user.id
    orphan.payment_transaction_id = payment.id
    db.flush()
    return outcome


def _resolve_one(
    db: Session,
    orphan: OrphanPayment,
    user: User,
    *,
    actor: str,
    source: str,
    dispatcher: notify.NotificationDispatcher | None,
) -> bool:
    try:
        with db.begin_nested():
            outcome = _credit_orphan(db, orphan, user, source=source)
            log_audit(
                db,
                actor=actor,
                action="ORPHAN_RESOLVED",
                entity="OrphanPayment",
                entity_id=orphan.id,
                data={
                    "user_id": user.id,
                    "transaction_reference": orphan.transaction_reference,
                    "amount": str(orphan.amount),
                    "customer_email": orphan.customer_email,
                },
            )
    except (_NotCredited, ConcurrentUpdateError) as exc:
        logger.warning(
            "Orphan could not be credited",
            extra={"orphan_id": orphan.id, "reason": getattr(exc, "reason", str(exc))},
        )
        return False
    except IntegrityError:
        # A concurrent sweep inserted the synthesised deposit first.
        logger.warning(
            "Orphan already being credited elsewhere",
            extra={"orphan_id": orphan.id, "reason": "concurrent_resolution"},
        )
        return False

    db.commit()
    logger.info(
        "Orphan payment resolved",
        extra={"orphan_id": orphan.id, "user_id": user.id, "actor": actor},
    )
    (dispatcher or notify.get_dispatcher()).dispatch(outcome.notifications)
    return True


def resolve_orphans(
    db: Session,
    *,
    orphan_ids: list[int] | None = None,
    dispatcher: notify.NotificationDispatcher | None = None,
) -> OrphanSweepResult:
    """Credit funds-bearing orphans whose customer email now matches a user."""

    result = OrphanSweepResult()
    stmt = (
        select(OrphanPayment)
        .where(OrphanPayment.reconciled.is_(False), OrphanPayment.event_type == FUNDS_EVENT)
        .order_by(OrphanPayment.created_at.asc(), OrphanPayment.id.asc())
    )
    if orphan_ids is not None:
        stmt = stmt.where(OrphanPayment.id.in_(orphan_ids))

    for orphan in list(db.scalars(stmt)):
        user = find_user_by_email(db, orphan.customer_email)
        if user is None:
            result.unmatched += 1
            continue
        if _resolve_one(db, orphan, user, actor="system", source="orphan_sweep", dispatcher=dispatcher):
            result.resolved += 1
            result.resolved_ids.append(orphan.id)
        else:
            result.skipped += 1

    if result.resolved or result.unmatched:
        logger.info("Orphan sweep finished", extra=result.as_dict())
    return result


def _get_orphan_or_404(db: Session, orphan_id: int) -> OrphanPayment:
    orphan = db.get(OrphanPayment, orphan_id)
    if orphan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("ORPHAN_NOT_FOUND", "Orphan payment not found."),
        )
    if orphan.reconciled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("ORPHAN_ALREADY_RECONCILED", "Orphan payment already reconciled."),
        )
    return orphan


def resolve_orphan_for_user(
    db: Session,
    orphan_id: int,
    user_id: int,
    *,
    actor: str,
    dispatcher: notify.NotificationDispatcher | None = None,
) -> OrphanPayment:
    """Operator attribution of an orphan to a known user."""

    orphan = _get_orphan_or_404(db, orphan_id)
    if orphan.event_type != FUNDS_EVENT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response(
                "ORPHAN_NOT_CREDITABLE",
                "Only successful-payment orphans can be credited.",
                {"event_type": orphan.event_type},
            ),
        )
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("USER_NOT_FOUND", "Active user not found."),
        )
    if not _resolve_one(db, orphan, user, actor=actor, source="operator", dispatcher=dispatcher):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("ORPHAN_NOT_CREDITED", "Orphan payment could not be credited."),
        )
    db.refresh(orphan)
    return orphan


def dismiss_orphan(db: Session, orphan_id: int, *, note: str, actor: str) -> OrphanPayment:
    """Close a non-funds orphan (failure or reversal of an unknown payment)."""

    orphan = _get_orphan_or_404(db, orphan_id)
    if orphan.event_type == FUNDS_EVENT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response(
                "ORPHAN_HAS_FUNDS",
                "Successful-payment orphans must be attributed to a user, not dismissed.",
            ),
        )
    orphan.reconciled = True
    orphan.reconciled_at = utcnow()
    orphan.resolution_note = note[:255]
    log_audit(
        db,
        actor=actor,
        action="ORPHAN_DISMISSED",
        entity="OrphanPayment",
        entity_id=orphan.id,
        data={"event_type": orphan.event_type, "note": note},
    )
    db.commit()
    db.refresh(orphan)
    return orphan


def list_orphans(
    db: Session, *, reconciled: bool | None = False, limit: int = 100, offset: int = 0
) -> list[OrphanPayment]:
    stmt = select(OrphanPayment).order_by(OrphanPayment.created_at.desc())
    if reconciled is not None:
        stmt = stmt.where(OrphanPayment.reconciled.is_(reconciled))
    return list(db.scalars(stmt.offset(offset).limit(limit)))


__all__ = [
    "OrphanSweepResult",
    "record_orphan",
    "find_user_by_email",
    "resolve_orphans",
    "resolve_orphan_for_user",
    "dismiss_orphan",
    "list_orphans",
]
