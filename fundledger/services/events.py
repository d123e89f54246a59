"""Event router and payment state transitions for gateway notifications.

Each :class:`WebhookEventType` has exactly one payload model and one handler.
Handlers run inside a savepoint opened by :func:`route_event`; an exception
(invalid transition, lost compare-and-set race) rolls back everything the
handler touched, including the dedup key and any ledger entry.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from fundledger.config import get_settings
from fundledger.exceptions import ConcurrentUpdateError, InvalidTransition
from fundledger.models import (
    DiscrepancyKind,
    PaymentStatus,
    PaymentTransaction,
    SettlementBatch,
    SettlementStatus,
)
from fundledger.schemas.webhook import (
    ReversalEventData,
    SettlementEventData,
    TransactionEventData,
    WebhookEventType,
)
from fundledger.services import notifications as notify
from fundledger.services.dedup import record_key
from fundledger.services.discrepancies import flag_discrepancy
from fundledger.services.ledger import ZERO, credit_wallet, debit_wallet, to_money
from fundledger.services.orphans import record_orphan
from fundledger.services.state_machine import ensure_transition
from fundledger.utils.time import parse_iso_utc_or_none, utcnow

logger = logging.getLogger(__name__)

_STATS_LOCK = threading.Lock()
_OUTCOME_COUNTS: Counter[str] = Counter()
_SETTLEMENT_FALLBACK_MATCHES: int = 0


@dataclass
class EventContext:
    """Where an event came from and how to record that it was applied."""

    source: str = "webhook"
    dedup_key: str | None = None
    webhook_record_id: int | None = None


@dataclass
class ProcessingOutcome:
    processed: bool
    reason: str
    reference: str | None = None
    notifications: list[notify.NotificationEvent] = field(default_factory=list)
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "reason": self.reason,
            "reference": self.reference,
            "error": self.error,
        }


def _count(reason: str) -> None:
    with _STATS_LOCK:
        _OUTCOME_COUNTS[reason] += 1


def _count_fallback_match() -> None:
    global _SETTLEMENT_FALLBACK_MATCHES
    with _STATS_LOCK:
        _SETTLEMENT_FALLBACK_MATCHES += 1


def get_event_stats() -> dict[str, Any]:
    with _STATS_LOCK:
        return {
            "outcomes": dict(_OUTCOME_COUNTS),
            "settlement_fallback_matches": _SETTLEMENT_FALLBACK_MATCHES,
        }


def reset_event_stats() -> None:
    global _SETTLEMENT_FALLBACK_MATCHES
    with _STATS_LOCK:
        _OUTCOME_COUNTS.clear()
        _SETTLEMENT_FALLBACK_MATCHES = 0


def find_payment(
    db: Session,
    *,
    payment_reference: str | None = None,
    transaction_reference: str | None = None,
    for_update: bool = False,
) -> PaymentTransaction | None:
    """Look a deposit up by our reference first, then by the gateway's."""

    clauses = []
    if payment_reference:
        clauses.append(PaymentTransaction.payment_reference == payment_reference)
    if transaction_reference:
        clauses.append(PaymentTransaction.transaction_reference == transaction_reference)
    if not clauses:
        return None

    stmt = select(PaymentTransaction).where(or_(*clauses)).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    candidates = list(db.scalars(stmt))
    if not candidates:
        return None
    for candidate in candidates:
        if payment_reference and candidate.payment_reference == payment_reference:
            return candidate
    return candidates[0]


def _compare_and_set(
    db: Session,
    payment: PaymentTransaction,
    *,
    expected: PaymentStatus,
    values: dict[str, Any],
) -> None:
    """Apply ``values`` only if the row still has status ``expected``."""

    stmt = (
        update(PaymentTransaction)
        .where(PaymentTransaction.id == payment.id, PaymentTransaction.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrentUpdateError(
            f"Payment {payment.payment_reference} left {expected.value} concurrently",
            details={"reference": payment.payment_reference},
        )
    db.refresh(payment)


def _claim_key(db: Session, kind: WebhookEventType, ctx: EventContext) -> bool:
    if not ctx.dedup_key:
        return True
    return record_key(
        db, ctx.dedup_key, event_type=kind.value, webhook_record_id=ctx.webhook_record_id
    )


def apply_successful_payment(
    db: Session,
    payment: PaymentTransaction,
    payload: TransactionEventData,
    ctx: EventContext,
) -> ProcessingOutcome:
    """Flip ``payment`` to PAID and credit the wallet in the caller's transaction."""

    reference = payment.payment_reference
    if payment.status == PaymentStatus.PAID:
        logger.info(
            "Payment already processed",
            extra={"payment_reference": reference, "source": ctx.source},
        )
        return ProcessingOutcome(False, "already_processed", reference)

    ensure_transition(reference, payment.status, PaymentStatus.PAID)
    if not _claim_key(db, WebhookEventType.SUCCESSFUL_TRANSACTION, ctx):
        return ProcessingOutcome(False, "duplicate", reference)

    amount = payload.effective_amount
    amount = to_money(amount) if amount is not None and amount > 0 else to_money(payment.amount)
    if amount != to_money(payment.amount):
        logger.warning(
            "Paid amount differs from requested amount",
            extra={
                "payment_reference": reference,
                "requested": str(payment.amount),
                "paid": str(amount),
            },
        )

    metadata = dict(payment.metadata_json or {})
    metadata["paid_via"] = ctx.source
    _compare_and_set(
        db,
        payment,
        expected=PaymentStatus.PENDING,
        values={
            "status": PaymentStatus.PAID,
            "settlement_status": SettlementStatus.PENDING,
            "amount_paid": amount,
            "paid_at": parse_iso_utc_or_none(payload.paid_on) or utcnow(),
            "transaction_reference": payment.transaction_reference or payload.transaction_reference,
            "payment_method": payload.payment_method or payment.payment_method,
            "fee": payload.fee,
            "settlement_amount": payload.settlement_amount,
            "customer_email": payment.customer_email or payload.customer_email,
            "customer_name": payment.customer_name
            or (payload.customer.name if payload.customer else None),
            "response_code": payload.response_code,
            "metadata_json": metadata,
        },
    )

    change = credit_wallet(
        db,
        user_id=payment.user_id,
        amount=amount,
        reference=reference,
        description=f"Deposit via {payment.payment_method or 'gateway'}",
        payment_transaction_id=payment.id,
    )
    logger.info(
        "Payment credited",
        extra={
            "payment_reference": reference,
            "transaction_reference": payment.transaction_reference,
            "user_id": payment.user_id,
            "amount": str(amount),
            "source": ctx.source,
        },
    )
    data = {
        "paymentReference": reference,
        "transactionReference": payment.transaction_reference,
        "previousBalance": str(change.balance_before),
    }
    return ProcessingOutcome(
        True,
        "credited",
        reference,
        [
            notify.NotificationEvent(
                notify.PAYMENT_SUCCESSFUL,
                user_id=payment.user_id,
                amount=amount,
                new_balance=change.balance_after,
                data=data,
            ),
            notify.NotificationEvent(
                notify.BALANCE_UPDATED,
                user_id=payment.user_id,
                amount=amount,
                new_balance=change.balance_after,
                data=data,
            ),
        ],
    )


def _orphan(
    db: Session, kind: WebhookEventType, raw: Mapping[str, Any], ctx: EventContext
) -> ProcessingOutcome:
    orphan = record_orphan(db, kind.value, dict(raw), source=ctx.source)
    reference = orphan.transaction_reference or orphan.payment_reference
    return ProcessingOutcome(False, "orphaned", reference)


def _handle_successful(
    db: Session, payload: TransactionEventData, raw: Mapping[str, Any], ctx: EventContext
) -> ProcessingOutcome:
    payment = find_payment(
        db,
        payment_reference=payload.payment_reference,
        transaction_reference=payload.transaction_reference,
        for_update=True,
    )
    if payment is None:
        return _orphan(db, WebhookEventType.SUCCESSFUL_TRANSACTION, raw, ctx)
    return apply_successful_payment(db, payment, payload, ctx)


def _handle_failed(
    db: Session, payload: TransactionEventData, raw: Mapping[str, Any], ctx: EventContext
) -> ProcessingOutcome:
    payment = find_payment(
        db,
        payment_reference=payload.payment_reference,
        transaction_reference=payload.transaction_reference,
        for_update=True,
    )
    if payment is None:
        return _orphan(db, WebhookEventType.FAILED_TRANSACTION, raw, ctx)

    reference = payment.payment_reference
    if payment.status == PaymentStatus.FAILED:
        logger.info("Payment failure already recorded", extra={"payment_reference": reference})
        return ProcessingOutcome(False, "already_processed", reference)

    ensure_transition(reference, payment.status, PaymentStatus.FAILED)
    if not _claim_key(db, WebhookEventType.FAILED_TRANSACTION, ctx):
        return ProcessingOutcome(False, "duplicate", reference)

    reason = payload.response_message or payload.payment_status or "Payment failed"
    _compare_and_set(
        db,
        payment,
        expected=PaymentStatus.PENDING,
        values={
            "status": PaymentStatus.FAILED,
            "failure_reason": reason[:255],
            "response_code": payload.response_code,
            "transaction_reference": payment.transaction_reference or payload.transaction_reference,
        },
    )
    logger.info(
        "Payment marked failed",
        extra={"payment_reference": reference, "reason": reason, "source": ctx.source},
    )
    return ProcessingOutcome(
        True,
        "failed",
        reference,
        [
            notify.NotificationEvent(
                notify.PAYMENT_FAILED,
                user_id=payment.user_id,
                amount=to_money(payment.amount),
                data={"paymentReference": reference, "reason": reason},
            )
        ],
    )


def _make_reversal_handler(kind: WebhookEventType):
    def _handle_reversal(
        db: Session, payload: ReversalEventData, raw: Mapping[str, Any], ctx: EventContext
    ) -> ProcessingOutcome:
        payment = find_payment(
            db,
            payment_reference=payload.payment_reference,
            transaction_reference=payload.transaction_reference,
            for_update=True,
        )
        if payment is None:
            return _orphan(db, kind, raw, ctx)

        reference = payment.payment_reference
        if payment.status == PaymentStatus.REVERSED:
            logger.info("Reversal already applied", extra={"payment_reference": reference})
            return ProcessingOutcome(False, "already_processed", reference)

        ensure_transition(reference, payment.status, PaymentStatus.REVERSED)
        if not _claim_key(db, kind, ctx):
            return ProcessingOutcome(False, "duplicate", reference)

        requested = payload.reversal_amount
        if requested is None or requested <= 0:
            requested = payment.amount_paid or payment.amount
        requested = to_money(requested)

        metadata = dict(payment.metadata_json or {})
        metadata["reversal"] = {
            "event": kind.value,
            "reference": payload.reversal_reference,
            "reason": payload.reversal_reason,
            "amount": str(requested),
        }
        _compare_and_set(
            db,
            payment,
            expected=PaymentStatus.PAID,
            values={
                "status": PaymentStatus.REVERSED,
                "settlement_status": SettlementStatus.FAILED,
                "failure_reason": (payload.reversal_reason or "Payment reversed")[:255],
                "metadata_json": metadata,
            },
        )
        change = debit_wallet(
            db,
            user_id=payment.user_id,
            amount=requested,
            reference=payload.reversal_reference or reference,
            description=f"Reversal of {reference}",
            payment_transaction_id=payment.id,
        )
        if change.shortfall > ZERO:
            flag_discrepancy(
                db,
                DiscrepancyKind.BALANCE_CLAMPED,
                reference,
                local_status=PaymentStatus.REVERSED.value,
                details={
                    "user_id": payment.user_id,
                    "requested": str(change.requested),
                    "applied": str(change.applied),
                    "shortfall": str(change.shortfall),
                },
            )

        data = {
            "paymentReference": reference,
            "reversalReference": payload.reversal_reference,
            "reason": payload.reversal_reason,
        }
        return ProcessingOutcome(
            True,
            "reversed",
            reference,
            [
                notify.NotificationEvent(
                    notify.PAYMENT_REVERSED,
                    user_id=payment.user_id,
                    amount=-change.applied,
                    new_balance=change.balance_after,
                    data=data,
                ),
                notify.NotificationEvent(
                    notify.BALANCE_UPDATED,
                    user_id=payment.user_id,
                    amount=-change.applied,
                    new_balance=change.balance_after,
                    data=data,
                ),
            ],
        )

    return _handle_reversal


def _settlement_targets(
    db: Session, payload: SettlementEventData, *, known_batch: bool
) -> tuple[list[PaymentTransaction], bool]:
    """Return the deposits covered by a settlement and whether the fallback was used.

    A batch seen before keeps the deposits it was matched to; the time window
    only applies to a batch's first unreferenced delivery.
    """

    refs = [ref for ref in payload.transaction_references if ref]
    if refs:
        stmt = (
            select(PaymentTransaction)
            .where(
                or_(
                    PaymentTransaction.transaction_reference.in_(refs),
                    PaymentTransaction.payment_reference.in_(refs),
                ),
                PaymentTransaction.status == PaymentStatus.PAID,
            )
            .with_for_update()
        )
        return list(db.scalars(stmt)), False

    if known_batch:
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.settlement_reference == payload.settlement_reference,
                PaymentTransaction.status == PaymentStatus.PAID,
            )
            .with_for_update()
        )
        matched = list(db.scalars(stmt))
        if matched:
            return matched, False

    settings = get_settings()
    cutoff = utcnow() - timedelta(days=settings.SETTLEMENT_FALLBACK_LOOKBACK_DAYS)
    limit = payload.transaction_count or settings.SETTLEMENT_FALLBACK_LIMIT
    stmt = (
        select(PaymentTransaction)
        .where(
            PaymentTransaction.status == PaymentStatus.PAID,
            PaymentTransaction.settlement_status == SettlementStatus.PENDING,
            PaymentTransaction.paid_at >= cutoff,
        )
        .order_by(PaymentTransaction.paid_at.asc(), PaymentTransaction.id.asc())
        .limit(limit)
        .with_for_update()
    )
    return list(db.scalars(stmt)), True


def _make_settlement_handler(kind: WebhookEventType):
    target = (
        SettlementStatus.COMPLETED
        if kind == WebhookEventType.SETTLEMENT_COMPLETED
        else SettlementStatus.FAILED
    )
    notification_type = (
        notify.SETTLEMENT_COMPLETED
        if target == SettlementStatus.COMPLETED
        else notify.SETTLEMENT_FAILED
    )

    def _handle_settlement(
        db: Session, payload: SettlementEventData, raw: Mapping[str, Any], ctx: EventContext
    ) -> ProcessingOutcome:
        reference = payload.settlement_reference
        batch = db.scalars(
            select(SettlementBatch)
            .where(SettlementBatch.settlement_reference == reference)
            .with_for_update()
        ).first()
        if batch is not None and batch.status == target:
            logger.info(
                "Settlement already recorded",
                extra={"settlement_reference": reference, "status": target.value},
            )
            return ProcessingOutcome(False, "already_processed", reference)
        if not _claim_key(db, kind, ctx):
            return ProcessingOutcome(False, "duplicate", reference)

        known_batch = batch is not None
        if batch is None:
            batch = SettlementBatch(settlement_reference=reference)
            db.add(batch)
        elif batch.status != SettlementStatus.PENDING:
            logger.warning(
                "Settlement status changed after being final",
                extra={
                    "settlement_reference": reference,
                    "previous": batch.status.value,
                    "status": target.value,
                },
            )

        batch.settlement_id = payload.settlement_id or batch.settlement_id
        batch.batch_reference = payload.batch_reference or batch.batch_reference
        batch.amount = to_money(payload.amount) if payload.amount is not None else batch.amount
        batch.settlement_date = parse_iso_utc_or_none(payload.settlement_date) or batch.settlement_date
        batch.transaction_count = payload.transaction_count or batch.transaction_count
        batch.transaction_references = list(payload.transaction_references)
        batch.status = target
        batch.failure_reason = payload.failure_reason
        batch.raw_json = dict(raw)
        db.flush()

        payments, used_fallback = _settlement_targets(db, payload, known_batch=known_batch)
        if used_fallback:
            batch.matched_by_fallback = True
            _count_fallback_match()
            logger.warning(
                "Settlement without transaction references matched by time window",
                extra={
                    "settlement_reference": reference,
                    "matched": len(payments),
                    "expected": payload.transaction_count,
                },
            )

        events: list[notify.NotificationEvent] = []
        for payment in payments:
            payment.settlement_status = target
            payment.settlement_reference = reference
            payment.settlement_date = batch.settlement_date
            events.append(
                notify.NotificationEvent(
                    notification_type,
                    user_id=payment.user_id,
                    amount=to_money(payment.amount_paid or payment.amount),
                    data={
                        "settlementReference": reference,
                        "paymentReference": payment.payment_reference,
                        "reason": payload.failure_reason,
                    },
                )
            )
        db.flush()
        logger.info(
            "Settlement applied",
            extra={
                "settlement_reference": reference,
                "status": target.value,
                "payments": len(payments),
                "fallback": used_fallback,
            },
        )
        return ProcessingOutcome(True, "settlement_applied", reference, events)

    return _handle_settlement


Handler = Callable[[Session, Any, Mapping[str, Any], EventContext], ProcessingOutcome]

PAYLOAD_MODELS: dict[WebhookEventType, type[BaseModel]] = {
    WebhookEventType.SUCCESSFUL_TRANSACTION: TransactionEventData,
    WebhookEventType.FAILED_TRANSACTION: TransactionEventData,
    WebhookEventType.REVERSED_TRANSACTION: ReversalEventData,
    WebhookEventType.REFUND_COMPLETED: ReversalEventData,
    WebhookEventType.SETTLEMENT_COMPLETED: SettlementEventData,
    WebhookEventType.SETTLEMENT_FAILED: SettlementEventData,
}

HANDLERS: dict[WebhookEventType, Handler] = {
    WebhookEventType.SUCCESSFUL_TRANSACTION: _handle_successful,
    WebhookEventType.FAILED_TRANSACTION: _handle_failed,
    WebhookEventType.REVERSED_TRANSACTION: _make_reversal_handler(WebhookEventType.REVERSED_TRANSACTION),
    WebhookEventType.REFUND_COMPLETED: _make_reversal_handler(WebhookEventType.REFUND_COMPLETED),
    WebhookEventType.SETTLEMENT_COMPLETED: _make_settlement_handler(WebhookEventType.SETTLEMENT_COMPLETED),
    WebhookEventType.SETTLEMENT_FAILED: _make_settlement_handler(WebhookEventType.SETTLEMENT_FAILED),
}

_unhandled = set(WebhookEventType) - set(HANDLERS) | set(WebhookEventType) - set(PAYLOAD_MODELS)
if _unhandled:  # pragma: no cover
    raise RuntimeError(f"Event types without handler: {sorted(k.value for k in _unhandled)}")


def route_event(
    db: Session,
    event_type: str,
    event_data: Mapping[str, Any],
    *,
    context: EventContext | None = None,
) -> ProcessingOutcome:
    """Classify and apply one notification without committing.

    Invalid transitions and lost races come back as unprocessed outcomes;
    other exceptions propagate to the caller.
    """

    ctx = context or EventContext()
    kind = WebhookEventType.parse(event_type)
    if kind is None:
        logger.warning("Unknown gateway event type", extra={"event_type": event_type})
        outcome = ProcessingOutcome(False, "unknown_event_type", error=f"Unknown event type {event_type}")
        _count(outcome.reason)
        return outcome

    try:
        payload = PAYLOAD_MODELS[kind].model_validate(dict(event_data or {}))
    except ValidationError as exc:
        logger.error(
            "Gateway event payload invalid",
            extra={"event_type": kind.value, "errors": exc.errors(include_url=False)},
        )
        outcome = ProcessingOutcome(False, "payload_invalid", error=str(exc))
        _count(outcome.reason)
        return outcome

    try:
        with db.begin_nested():
            outcome = HANDLERS[kind](db, payload, event_data, ctx)
    except InvalidTransition as exc:
        logger.error(
            "Rejected invalid payment transition",
            extra={"event_type": kind.value, "source": ctx.source, **exc.details},
        )
        outcome = ProcessingOutcome(False, "invalid_transition", exc.reference, error=exc.message)
    except ConcurrentUpdateError as exc:
        logger.info(
            "Payment changed concurrently, treating as already processed",
            extra={"event_type": kind.value, **exc.details},
        )
        outcome = ProcessingOutcome(False, "already_processed", exc.details.get("reference"))

    _count(outcome.reason)
    return outcome


def process_event(
    db: Session,
    event_type: str,
    event_data: Mapping[str, Any],
    *,
    context: EventContext | None = None,
    dispatcher: notify.NotificationDispatcher | None = None,
) -> ProcessingOutcome:
    """Route, commit, then fan out notifications."""

    outcome = route_event(db, event_type, event_data, context=context)
    db.commit()
    if outcome.notifications:
        (dispatcher or notify.get_dispatcher()).dispatch(outcome.notifications)
    return outcome


__all__ = [
    "EventContext",
    "ProcessingOutcome",
    "HANDLERS",
    "PAYLOAD_MODELS",
    "apply_successful_payment",
    "find_payment",
    "get_event_stats",
    "reset_event_stats",
    "route_event",
    "process_event",
]
