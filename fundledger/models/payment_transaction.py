"""Deposit attempt (payment transaction) model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Lifecycle of a deposit attempt."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REVERSED = "REVERSED"


class SettlementStatus(str, enum.Enum):
    """Settlement axis, meaningful once the payment is PAID."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentTransaction(Base):
    """Represents one user-initiated deposit through the payment gateway."""

    __tablename__ = "payment_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_transactions_positive_amount"),
        Index("ix_payment_transactions_status", "status"),
        Index("ix_payment_transactions_user_status", "user_id", "status"),
        Index("ix_payment_transactions_settlement", "status", "settlement_status", "paid_at"),
        Index("ix_payment_transactions_expires_at", "expires_at"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    transaction_reference: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus, name="paymentstatus"), nullable=False, default=PaymentStatus.PENDING
    )
    settlement_status: Mapped[SettlementStatus] = mapped_column(
        SqlEnum(SettlementStatus, name="settlementstatus"),
        nullable=False,
        default=SettlementStatus.PENDING,
    )
    amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    response_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fee: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    settlement_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    settlement_reference: Mapped[str | None] = mapped_column(
        ForeignKey("settlement_batches.settlement_reference"), nullable=True, index=True
    )
    settlement_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    user = relationship("User", back_populates="payment_transactions")
    settlement = relationship("SettlementBatch", back_populates="payment_transactions")
