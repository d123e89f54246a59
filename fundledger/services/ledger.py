"""Wallet balance mutations and the append-only ledger.

Every change to ``WalletAccount.balance`` goes through
:func:`apply_balance_change`, which writes the matching :class:`LedgerEntry`
in the same unit of work. Functions here only ``flush()``; the caller owns
the transaction and commits it together with the status change that
justified the mutation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fundledger.models import LedgerEntry, LedgerEntryType, WalletAccount
from fundledger.utils.time import utcnow

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Quantize to two decimals; accepts Decimal, int, float or numeric text."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BalanceChange:
    entry: LedgerEntry
    balance_before: Decimal
    balance_after: Decimal
    requested: Decimal
    applied: Decimal

    @property
    def shortfall(self) -> Decimal:
        """Part of a requested debit that could not be applied without going negative."""

        return to_money(abs(self.requested) - abs(self.applied))


def get_wallet(db: Session, user_id: int) -> WalletAccount | None:
    return db.scalars(select(WalletAccount).where(WalletAccount.user_id == user_id)).first()


def _lock_or_create_wallet(db: Session, user_id: int) -> WalletAccount:
    stmt = select(WalletAccount).where(WalletAccount.user_id == user_id).with_for_update()
    wallet = db.scalars(stmt).first()
    if wallet is not None:
        return wallet

    try:
        with db.begin_nested():
            wallet = WalletAccount(
                user_id=user_id,
                balance=ZERO,
                total_deposited=ZERO,
                deposit_count=0,
            )
            db.add(wallet)
    except IntegrityError:
        # Another writer created it first.
        wallet = db.scalars(stmt).one()
    return wallet


def apply_balance_change(
    db: Session,
    *,
    user_id: int,
    amount: Decimal,
    entry_type: LedgerEntryType,
    reference: str | None = None,
    description: str | None = None,
    payment_transaction_id: int | None = None,
) -> BalanceChange:
    """Mutate the wallet by a signed ``amount`` and append the ledger entry.

    Debits are clamped so the balance never drops below zero; the entry
    records the delta actually applied.
    """

    requested = to_money(amount)
    wallet = _lock_or_create_wallet(db, user_id)
    before = to_money(wallet.balance or ZERO)

    if requested >= ZERO:
        applied = requested
    else:
        applied = -min(-requested, before)
    after = to_money(before + applied)

    wallet.balance = after
    if entry_type == LedgerEntryType.DEPOSIT and applied > ZERO:
        wallet.total_deposited = to_money((wallet.total_deposited or ZERO) + applied)
        wallet.deposit_count = (wallet.deposit_count or 0) + 1
        wallet.last_deposit_at = utcnow()

    entry = LedgerEntry(
        user_id=user_id,
        entry_type=entry_type,
        amount=applied,
        balance_before=before,
        balance_after=after,
        payment_transaction_id=payment_transaction_id,
        reference=reference,
        description=description,
    )
    db.add(wallet)
    db.add(entry)
    db.flush()

    change = BalanceChange(
        entry=entry,
        balance_before=before,
        balance_after=after,
        requested=requested,
        applied=applied,
    )
    if change.shortfall > ZERO:
        logger.error(
            "Debit clamped at zero balance",
            extra={
                "user_id": user_id,
                "reference": reference,
                "requested": str(requested),
                "applied": str(applied),
                "shortfall": str(change.shortfall),
            },
        )
    else:
        logger.info(
            "Wallet balance updated",
            extra={
                "user_id": user_id,
                "entry_type": entry_type.value,
                "amount": str(applied),
                "balance_after": str(after),
                "reference": reference,
            },
        )
    return change


def credit_wallet(
    db: Session,
    *,
    user_id: int,
    amount: Decimal,
    reference: str | None = None,
    description: str | None = None,
    payment_transaction_id: int | None = None,
) -> BalanceChange:
    if to_money(amount) <= ZERO:
        raise ValueError("Credit amount must be positive")
    return apply_balance_change(
        db,
        user_id=user_id,
        amount=amount,
        entry_type=LedgerEntryType.DEPOSIT,
        reference=reference,
        description=description,
        payment_transaction_id=payment_transaction_id,
    )


def debit_wallet(
    db: Session,
    *,
    user_id: int,
    amount: Decimal,
    entry_type: LedgerEntryType = LedgerEntryType.REFUND,
    reference: str | None = None,
    description: str | None = None,
    payment_transaction_id: int | None = None,
) -> BalanceChange:
    if to_money(amount) <= ZERO:
        raise ValueError("Debit amount must be positive")
    return apply_balance_change(
        db,
        user_id=user_id,
        amount=-to_money(amount),
        entry_type=entry_type,
        reference=reference,
        description=description,
        payment_transaction_id=payment_transaction_id,
    )


def ledger_balance(db: Session, user_id: int) -> Decimal:
    stmt = select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.user_id == user_id)
    return to_money(db.scalar(stmt) or 0)


def verify_wallet_consistency(db: Session, user_id: int) -> dict[str, object]:
    """Compare the stored balance with the sum of the user's ledger entries."""

    wallet = get_wallet(db, user_id)
    stored = to_money(wallet.balance) if wallet else ZERO
    computed = ledger_balance(db, user_id)
    consistent = stored == computed
    if not consistent:
        logger.error(
            "Wallet balance does not match ledger",
            extra={"user_id": user_id, "stored": str(stored), "ledger": str(computed)},
        )
    return {
        "user_id": user_id,
        "balance": stored,
        "ledger_balance": computed,
        "consistent": consistent,
    }


__all__ = [
    "BalanceChange",
    "ZERO",
    "to_money",
    "get_wallet",
    "apply_balance_change",
    "credit_wallet",
    "debit_wallet",
    "ledger_balance",
    "verify_wallet_consistency",
]
