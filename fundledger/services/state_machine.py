"""Allowed payment status transitions."""
from __future__ import annotations

from fundledger.exceptions import InvalidTransition
from fundledger.models.payment_transaction import PaymentStatus

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
        }
    ),
    PaymentStatus.PAID: frozenset({PaymentStatus.REVERSED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.REVERSED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(reference: str, current: PaymentStatus, target: PaymentStatus) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is allowed."""

    if not can_transition(current, target):
        raise InvalidTransition(reference, current.value, target.value)


__all__ = ["ALLOWED_TRANSITIONS", "TERMINAL_STATUSES", "can_transition", "ensure_transition"]
