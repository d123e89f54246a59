"""Write-ahead capture and serialised processing of gateway notifications."""
from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fundledger.db import job_session
from fundledger.exceptions import WebhookPayloadError
from fundledger.models import WebhookRecord
from fundledger.schemas.webhook import WebhookEnvelope
from fundledger.services import notifications as notify
from fundledger.services.dedup import RecentKeyCache, derive_dedup_key, is_key_recorded
from fundledger.services.events import EventContext, ProcessingOutcome, route_event
from fundledger.utils.time import utcnow

logger = logging.getLogger(__name__)

PROVIDER = "gateway"

# Outcomes after which the record needs no further work.
SETTLED_REASONS = frozenset(
    {"credited", "failed", "reversed", "settlement_applied", "already_processed", "duplicate", "orphaned"}
)

_STATS_LOCK = threading.Lock()
_WEBHOOK_STATS: Counter[str] = Counter()


def _bump(name: str) -> None:
    with _STATS_LOCK:
        _WEBHOOK_STATS[name] += 1


def get_webhook_stats() -> dict[str, int]:
    with _STATS_LOCK:
        stats = {"received": 0, "processed": 0, "duplicates": 0, "orphaned": 0, "rejected": 0, "errors": 0}
        stats.update(_WEBHOOK_STATS)
        return stats


def reset_webhook_stats() -> None:
    with _STATS_LOCK:
        _WEBHOOK_STATS.clear()


def parse_envelope(raw_body: bytes) -> WebhookEnvelope:
    """Decode ``{eventType, eventData}`` or raise :class:`WebhookPayloadError`."""

    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookPayloadError("Webhook body is not valid JSON.") from exc
    if not isinstance(body, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object.")
    try:
        return WebhookEnvelope.model_validate(body)
    except ValidationError as exc:
        raise WebhookPayloadError(
            "Webhook body must contain eventType and eventData.",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def store_webhook(
    db: Session,
    *,
    request_id: str,
    envelope: WebhookEnvelope,
    raw: dict[str, Any],
    signature_valid: bool,
) -> tuple[WebhookRecord, bool]:
    """Persist and commit the raw notification; return it and whether it is new."""

    data = envelope.event_data
    record = WebhookRecord(
        provider=PROVIDER,
        request_id=request_id,
        event_type=envelope.event_type,
        dedup_key=derive_dedup_key(envelope.event_type, data, request_id),
        transaction_reference=data.get("transactionReference") or data.get("settlementReference"),
        payment_reference=data.get("paymentReference"),
        raw_json=raw,
        signature_valid=signature_valid,
        processed=False,
        attempts=0,
        received_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(record)
    except IntegrityError:
        existing = db.scalars(select(WebhookRecord).where(WebhookRecord.request_id == request_id)).one()
        logger.info(
            "Webhook request id seen before",
            extra={"request_id": request_id, "webhook_record_id": existing.id},
        )
        return existing, False

    db.commit()
    _bump("received")
    logger.info(
        "Webhook stored",
        extra={
            "request_id": request_id,
            "webhook_record_id": record.id,
            "event_type": record.event_type,
            "dedup_key": record.dedup_key,
            "signature_valid": signature_valid,
        },
    )
    return record, True


class WebhookProcessor:
    """Single logical queue: one notification is applied at a time per process."""

    def __init__(
        self,
        cache: RecentKeyCache | None = None,
        dispatcher: notify.NotificationDispatcher | None = None,
    ) -> None:
        self.cache = cache or RecentKeyCache()
        self.dispatcher = dispatcher
        self._lock = threading.Lock()

    def process(self, record_id: int, db: Session | None = None) -> ProcessingOutcome | None:
        with self._lock, job_session(db) as session:
            return self._process(session, record_id)

    def _process(self, db: Session, record_id: int) -> ProcessingOutcome | None:
        record = db.get(WebhookRecord, record_id, populate_existing=True)
        if record is None:
            logger.error("Webhook record vanished before processing", extra={"webhook_record_id": record_id})
            return None
        if record.processed:
            logger.info("Webhook record already processed", extra={"webhook_record_id": record_id})
            return None

        record.attempts = (record.attempts or 0) + 1
        key = record.dedup_key
        log_fields = {
            "webhook_record_id": record.id,
            "request_id": record.request_id,
            "event_type": record.event_type,
            "dedup_key": key,
        }

        if key in self.cache or is_key_recorded(db, key):
            logger.info("Duplicate webhook absorbed", extra=log_fields)
            outcome = ProcessingOutcome(False, "duplicate")
        else:
            try:
                outcome = route_event(
                    db,
                    record.event_type,
                    (record.raw_json or {}).get("eventData") or {},
                    context=EventContext(source="webhook", dedup_key=key, webhook_record_id=record.id),
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Webhook processing failed", extra=log_fields)
                record.error_message = f"{type(exc).__name__}: {exc}"[:2000]
                db.commit()
                _bump("errors")
                return ProcessingOutcome(False, "error", error=str(exc))

        if outcome.reason in SETTLED_REASONS:
            record.processed = True
            record.processed_at = utcnow()
            record.error_message = None
        else:
            record.error_message = (outcome.error or outcome.reason)[:2000]
        db.commit()

        if outcome.processed or outcome.reason in {"already_processed", "duplicate"}:
            self.cache.add(key)

        if outcome.processed:
            _bump("processed")
        elif outcome.reason == "duplicate" or outcome.reason == "already_processed":
            _bump("duplicates")
        elif outcome.reason == "orphaned":
            _bump("orphaned")
        else:
            _bump("rejected")

        logger.info("Webhook processed", extra={**log_fields, **outcome.as_dict()})
        if outcome.notifications:
            (self.dispatcher or notify.get_dispatcher()).dispatch(outcome.notifications)
        return outcome


processor = WebhookProcessor()


def get_processor() -> WebhookProcessor:
    return processor


__all__ = [
    "PROVIDER",
    "WebhookProcessor",
    "get_processor",
    "get_webhook_stats",
    "reset_webhook_stats",
    "parse_envelope",
    "processor",
    "store_webhook",
]
