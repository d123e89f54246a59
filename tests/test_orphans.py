from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from fundledger.models import AuditLog, OrphanPayment, PaymentStatus, PaymentTransaction
from fundledger.services.dedup import derive_dedup_key
from fundledger.services.events import EventContext, process_event
from fundledger.services.ledger import get_wallet
from fundledger.services.orphans import (
    dismiss_orphan,
    list_orphans,
    record_orphan,
    resolve_orphan_for_user,
    resolve_orphans,
)


def _unmatched_success(email: str, reference: str = "MNFY|ORPHAN-1", amount: str = "2500.00") -> dict:
    return {
        "transactionReference": reference,
        "paymentReference": f"EXT-{reference.split('|')[-1]}",
        "amountPaid": amount,
        "paymentStatus": "PAID",
        "paymentMethod": "ACCOUNT_TRANSFER",
        "currency": "NGN",
        "customer": {"email": email, "name": "Late Signup"},
    }


def _deliver(db, event_type: str, data: dict):
    ctx = EventContext(dedup_key=derive_dedup_key(event_type, data, "req"))
    return process_event(db, event_type, data, context=ctx)


def _orphan(db, reference: str) -> OrphanPayment:
    return db.scalars(select(OrphanPayment).where(OrphanPayment.transaction_reference == reference)).one()


def test_sweep_credits_orphan_once_user_exists(db_session, make_user, notifications):
    data = _unmatched_success("late.signup@example.com")
    assert _deliver(db_session, "SUCCESSFUL_TRANSACTION", data).reason == "orphaned"

    first = resolve_orphans(db_session)
    assert first.resolved == 0
    assert first.unmatched == 1

    user = make_user(email="Late.Signup@example.com")
    second = resolve_orphans(db_session)
    third = resolve_orphans(db_session)

    assert second.resolved == 1
    assert third.resolved == 0
    assert get_wallet(db_session, user.id).balance == Decimal("2500.00")

    orphan = _orphan(db_session, "MNFY|ORPHAN-1")
    assert orphan.reconciled is True
    assert orphan.resolved_user_id == user.id
    payment = db_session.get(PaymentTransaction, orphan.payment_transaction_id)
    assert payment.status == PaymentStatus.PAID
    assert payment.metadata_json["orphan_id"] == orphan.id
    assert any(event.user_id == user.id for event in notifications)


def test_redelivered_orphan_is_stored_once(db_session):
    data = _unmatched_success("someone@example.com")
    record_orphan(db_session, "SUCCESSFUL_TRANSACTION", data)
    record_orphan(db_session, "SUCCESSFUL_TRANSACTION", data)

    assert len(list_orphans(db_session)) == 1


def test_success_supersedes_earlier_non_funds_orphan(db_session):
    reversal = {"transactionReference": "MNFY|ORPHAN-2", "reversalAmount": "100.00"}
    record_orphan(db_session, "REVERSED_TRANSACTION", reversal)

    record_orphan(db_session, "SUCCESSFUL_TRANSACTION", _unmatched_success("x@example.com", "MNFY|ORPHAN-2", "900.00"))

    orphan = _orphan(db_session, "MNFY|ORPHAN-2")
    assert orphan.event_type == "SUCCESSFUL_TRANSACTION"
    assert orphan.amount == Decimal("900.00")


def test_operator_can_attribute_orphan_to_user(db_session, make_user):
    data = _unmatched_success("unknown@example.com", "MNFY|ORPHAN-3", "300.00")
    _deliver(db_session, "SUCCESSFUL_TRANSACTION", data)
    orphan = _orphan(db_session, "MNFY|ORPHAN-3")
    user = make_user()

    resolved = resolve_orphan_for_user(db_session, orphan.id, user.id, actor="ops@example.com")

    assert resolved.reconciled is True
    assert get_wallet(db_session, user.id).balance == Decimal("300.00")
    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "ORPHAN_RESOLVED", AuditLog.entity_id == orphan.id)
    ).one()
    assert audit.actor == "ops@example.com"

    with pytest.raises(HTTPException) as excinfo:
        resolve_orphan_for_user(db_session, orphan.id, user.id, actor="ops@example.com")
    assert excinfo.value.status_code == 409


def test_operator_resolution_requires_active_user(db_session, make_user):
    data = _unmatched_success("unknown@example.com", "MNFY|ORPHAN-4")
    _deliver(db_session, "SUCCESSFUL_TRANSACTION", data)
    orphan = _orphan(db_session, "MNFY|ORPHAN-4")
    inactive = make_user(is_active=False)

    with pytest.raises(HTTPException) as excinfo:
        resolve_orphan_for_user(db_session, orphan.id, inactive.id, actor="ops")
    assert excinfo.value.status_code == 404


def test_reversal_of_unknown_payment_can_be_dismissed(db_session):
    data = {"transactionReference": "MNFY|ORPHAN-5", "reversalAmount": "50.00"}
    assert _deliver(db_session, "REVERSED_TRANSACTION", data).reason == "orphaned"
    orphan = _orphan(db_session, "MNFY|ORPHAN-5")

    dismissed = dismiss_orphan(db_session, orphan.id, note="Reversal for a payment we never saw", actor="ops")

    assert dismissed.reconciled is True
    assert dismissed.resolution_note.startswith("Reversal")


def test_funds_orphan_cannot_be_dismissed(db_session):
    _deliver(db_session, "SUCCESSFUL_TRANSACTION", _unmatched_success("a@example.com", "MNFY|ORPHAN-6"))
    orphan = _orphan(db_session, "MNFY|ORPHAN-6")

    with pytest.raises(HTTPException) as excinfo:
        dismiss_orphan(db_session, orphan.id, note="no", actor="ops")
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["error"]["code"] == "ORPHAN_HAS_FUNDS"


def test_sweep_skips_non_funds_orphans(db_session, make_user):
    make_user(email="refund@example.com")
    record_orphan(
        db_session,
        "FAILED_TRANSACTION",
        {"transactionReference": "MNFY|ORPHAN-7", "customer": {"email": "refund@example.com"}},
    )

    result = resolve_orphans(db_session)

    assert result.resolved == 0
    assert result.unmatched == 0


def test_sweep_continues_when_deposit_insert_conflicts(db_session, make_user, make_payment, monkeypatch):
    _deliver(db_session, "SUCCESSFUL_TRANSACTION", _unmatched_success("race@example.com", "MNFY|RACE-1", "300.00"))
    _deliver(db_session, "SUCCESSFUL_TRANSACTION", _unmatched_success("race@example.com", "MNFY|RACE-2", "700.00"))
    user = make_user(email="race@example.com")
    # Deposit row written by a sweep running in parallel after our lookup.
    make_payment(payment_reference="EXT-RACE-1", transaction_reference="MNFY|PARALLEL")
    db_session.commit()
    monkeypatch.setattr("fundledger.services.events.find_payment", lambda db, **kwargs: None)

    result = resolve_orphans(db_session)

    assert result.resolved == 1
    assert result.skipped == 1
    assert _orphan(db_session, "MNFY|RACE-1").reconciled is False
    assert _orphan(db_session, "MNFY|RACE-2").reconciled is True
    assert get_wallet(db_session, user.id).balance == Decimal("700.00")
