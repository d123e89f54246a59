"""Deduplication keys and the in-memory recent-key cache."""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fundledger.config import get_settings
from fundledger.models.webhook import ProcessedWebhookKey
from fundledger.schemas.webhook import SETTLEMENT_EVENTS, TRANSACTION_EVENTS, WebhookEventType

logger = logging.getLogger(__name__)


def derive_dedup_key(event_type: str, event_data: Mapping[str, Any] | None, request_id: str) -> str:
    """Build the logical identity of a notification.

    The event kind is part of the key, so a reversal of a paid transaction does
    not collide with the earlier success notification for the same reference.
    """

    data = event_data or {}
    kind = WebhookEventType.parse(event_type)
    if kind is None:
        return f"UNKNOWN:{event_type}:{request_id}"

    if kind in SETTLEMENT_EVENTS:
        reference = data.get("settlementReference")
        if reference:
            return f"{kind.value}:settlement:{reference}"
    elif kind in TRANSACTION_EVENTS:
        reference = data.get("transactionReference") or data.get("paymentReference")
        if reference:
            return f"{kind.value}:payment:{reference}"

    return f"{kind.value}:request:{request_id}"


class RecentKeyCache:
    """Bounded LRU of recently applied keys; a fast path in front of the DB index."""

    def __init__(self, max_size: int | None = None) -> None:
        self.max_size = max_size or get_settings().DEDUP_CACHE_SIZE
        self._keys: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                self._keys.move_to_end(key)
                return True
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def add(self, key: str) -> None:
        with self._lock:
            self._keys[key] = None
            self._keys.move_to_end(key)
            while len(self._keys) > self.max_size:
                self._keys.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._keys.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()


def is_key_recorded(db: Session, dedup_key: str) -> bool:
    stmt = select(ProcessedWebhookKey.id).where(ProcessedWebhookKey.dedup_key == dedup_key).limit(1)
    return db.execute(stmt).first() is not None


def record_key(
    db: Session,
    dedup_key: str,
    *,
    event_type: str,
    webhook_record_id: int | None = None,
) -> bool:
    """Add ``dedup_key`` to the durable index inside the caller's transaction.

    Returns ``False`` when another writer already recorded the key; the caller
    must then abandon its business effect.
    """

    try:
        with db.begin_nested():
            db.add(
                ProcessedWebhookKey(
                    dedup_key=dedup_key,
                    event_type=event_type,
                    webhook_record_id=webhook_record_id,
                )
            )
    except IntegrityError:
        logger.info("Dedup key already recorded", extra={"dedup_key": dedup_key})
        return False
    return True


__all__ = ["derive_dedup_key", "RecentKeyCache", "is_key_recorded", "record_key"]
