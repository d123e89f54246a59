"""Wallet balance and ledger models."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class WalletAccount(Base):
    """Per-user spendable balance; only the ledger service writes it."""

    __tablename__ = "wallet_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallet_accounts_non_negative"),)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    total_deposited: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0.00")
    )
    deposit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_deposit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="wallet")


class LedgerEntryType(str, enum.Enum):
    """Kinds of balance mutation recorded in the ledger."""

    DEPOSIT = "DEPOSIT"
    REFUND = "REFUND"
    PURCHASE = "PURCHASE"


class LedgerEntry(Base):
    """Immutable audit record of one balance mutation."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_user_created", "user_id", "created_at"),
        Index("ix_ledger_entries_reference", "reference"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(
        SqlEnum(LedgerEntryType, name="ledgerentrytype"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("payment_transactions.id"), nullable=True, index=True
    )
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payment_transaction = relationship("PaymentTransaction")
