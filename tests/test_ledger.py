from decimal import Decimal

import pytest
from sqlalchemy import select

from fundledger.exceptions import InvalidTransition
from fundledger.models import LedgerEntry, LedgerEntryType, PaymentStatus
from fundledger.services.ledger import (
    credit_wallet,
    debit_wallet,
    get_wallet,
    ledger_balance,
    to_money,
    verify_wallet_consistency,
)
from fundledger.services.state_machine import (
    TERMINAL_STATUSES,
    can_transition,
    ensure_transition,
)


def test_to_money_quantizes_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(3) == Decimal("3.00")
    assert to_money(Decimal("1.234")) == Decimal("1.23")


def test_credit_creates_wallet_and_ledger_entry(db_session, make_user):
    user = make_user()
    change = credit_wallet(db_session, user_id=user.id, amount=Decimal("1000"), reference="FL_A")

    wallet = get_wallet(db_session, user.id)
    assert wallet.balance == Decimal("1000.00")
    assert wallet.total_deposited == Decimal("1000.00")
    assert wallet.deposit_count == 1
    assert wallet.last_deposit_at is not None
    assert change.balance_before == Decimal("0.00")
    assert change.balance_after == Decimal("1000.00")
    assert change.entry.entry_type == LedgerEntryType.DEPOSIT
    assert change.entry.amount == Decimal("1000.00")


def test_debit_is_clamped_at_zero_and_records_applied_delta(db_session, make_user):
    user = make_user()
    credit_wallet(db_session, user_id=user.id, amount=Decimal("300"), reference="FL_B")
    change = debit_wallet(db_session, user_id=user.id, amount=Decimal("500"), reference="REV_B")

    assert change.applied == Decimal("-300.00")
    assert change.shortfall == Decimal("200.00")
    assert get_wallet(db_session, user.id).balance == Decimal("0.00")
    assert change.entry.amount == Decimal("-300.00")
    assert change.entry.balance_after == Decimal("0.00")


def test_debit_does_not_touch_deposit_aggregates(db_session, make_user):
    user = make_user()
    credit_wallet(db_session, user_id=user.id, amount=Decimal("300"))
    debit_wallet(db_session, user_id=user.id, amount=Decimal("100"))
    wallet = get_wallet(db_session, user.id)
    assert wallet.total_deposited == Decimal("300.00")
    assert wallet.deposit_count == 1


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
def test_non_positive_amounts_are_rejected(db_session, make_user, amount):
    user = make_user()
    with pytest.raises(ValueError):
        credit_wallet(db_session, user_id=user.id, amount=amount)
    with pytest.raises(ValueError):
        debit_wallet(db_session, user_id=user.id, amount=amount)


def test_balance_equals_sum_of_ledger_entries(db_session, make_user):
    user = make_user()
    credit_wallet(db_session, user_id=user.id, amount=Decimal("1000"))
    credit_wallet(db_session, user_id=user.id, amount=Decimal("250.50"))
    debit_wallet(db_session, user_id=user.id, amount=Decimal("2000"))
    credit_wallet(db_session, user_id=user.id, amount=Decimal("10"))

    assert ledger_balance(db_session, user.id) == Decimal("10.00")
    report = verify_wallet_consistency(db_session, user.id)
    assert report["consistent"] is True
    assert report["balance"] == Decimal("10.00")

    entries = db_session.scalars(
        select(LedgerEntry).where(LedgerEntry.user_id == user.id).order_by(LedgerEntry.id)
    ).all()
    for previous, current in zip(entries, entries[1:]):
        assert current.balance_before == previous.balance_after


def test_consistency_check_detects_drift(db_session, make_user):
    user = make_user()
    credit_wallet(db_session, user_id=user.id, amount=Decimal("100"))
    get_wallet(db_session, user.id).balance = Decimal("150.00")
    db_session.flush()
    assert verify_wallet_consistency(db_session, user.id)["consistent"] is False


def test_user_without_wallet_is_consistent(db_session, make_user):
    user = make_user()
    report = verify_wallet_consistency(db_session, user.id)
    assert report == {
        "user_id": user.id,
        "balance": Decimal("0.00"),
        "ledger_balance": Decimal("0.00"),
        "consistent": True,
    }


def test_allowed_transitions():
    assert can_transition(PaymentStatus.PENDING, PaymentStatus.PAID)
    assert can_transition(PaymentStatus.PENDING, PaymentStatus.EXPIRED)
    assert can_transition(PaymentStatus.PAID, PaymentStatus.REVERSED)
    assert not can_transition(PaymentStatus.PENDING, PaymentStatus.REVERSED)
    assert not can_transition(PaymentStatus.PAID, PaymentStatus.PENDING)
    assert not can_transition(PaymentStatus.EXPIRED, PaymentStatus.PAID)


def test_terminal_statuses_have_no_exit():
    assert TERMINAL_STATUSES == {
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.EXPIRED,
        PaymentStatus.REVERSED,
    }
    for status in TERMINAL_STATUSES:
        for target in PaymentStatus:
            assert not can_transition(status, target)


def test_ensure_transition_raises_with_details():
    with pytest.raises(InvalidTransition) as excinfo:
        ensure_transition("FL_X", PaymentStatus.PENDING, PaymentStatus.REVERSED)
    assert excinfo.value.details == {"reference": "FL_X", "current": "PENDING", "target": "REVERSED"}
