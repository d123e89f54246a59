"""Post-commit user notifications.

Delivery is best-effort: a failing sink is logged and never undoes or blocks
the ledger change that produced the event.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

BALANCE_UPDATED = "balance_updated"
PAYMENT_SUCCESSFUL = "payment_successful"
PAYMENT_FAILED = "payment_failed"
PAYMENT_REVERSED = "payment_reversed"
SETTLEMENT_COMPLETED = "settlement_completed"
SETTLEMENT_FAILED = "settlement_failed"

NOTIFICATION_TYPES = frozenset(
    {
        BALANCE_UPDATED,
        PAYMENT_SUCCESSFUL,
        PAYMENT_FAILED,
        PAYMENT_REVERSED,
        SETTLEMENT_COMPLETED,
        SETTLEMENT_FAILED,
    }
)


@dataclass(frozen=True)
class NotificationEvent:
    type: str
    user_id: int | None = None
    amount: Decimal | None = None
    new_balance: Decimal | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {self.type}")

    def as_log_fields(self) -> dict[str, Any]:
        fields = asdict(self)
        for key in ("amount", "new_balance"):
            if fields[key] is not None:
                fields[key] = str(fields[key])
        return {"notification_" + key: value for key, value in fields.items()}


NotificationSink = Callable[[NotificationEvent], None]


def logging_sink(event: NotificationEvent) -> None:
    logger.info("Notification emitted", extra=event.as_log_fields())


class NotificationDispatcher:
    """Fan out events to registered sinks, swallowing sink failures."""

    def __init__(self, sinks: Iterable[NotificationSink] | None = None) -> None:
        self._sinks: list[NotificationSink] = list(sinks) if sinks is not None else [logging_sink]
        self._lock = threading.Lock()
        self.delivered = 0
        self.failed = 0

    def register(self, sink: NotificationSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def unregister(self, sink: NotificationSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def dispatch(self, events: Iterable[NotificationEvent]) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for event in events:
            for sink in sinks:
                try:
                    sink(event)
                    self.delivered += 1
                except Exception:  # noqa: BLE001
                    self.failed += 1
                    logger.exception(
                        "Notification sink failed",
                        extra={"notification_type": event.type, "user_id": event.user_id},
                    )


dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return dispatcher


__all__ = [
    "BALANCE_UPDATED",
    "PAYMENT_SUCCESSFUL",
    "PAYMENT_FAILED",
    "PAYMENT_REVERSED",
    "SETTLEMENT_COMPLETED",
    "SETTLEMENT_FAILED",
    "NotificationEvent",
    "NotificationDispatcher",
    "logging_sink",
    "dispatcher",
    "get_dispatcher",
]
