"""Orphan payment model: gateway notifications matching no local deposit."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OrphanPayment(Base):
    """Unmatched funds signal kept until an operator or the sweep resolves it."""

    __tablename__ = "orphan_payments"
    __table_args__ = (
        Index("ix_orphan_payments_reconciled", "reconciled"),
        Index("ix_orphan_payments_customer_email", "customer_email"),
        Index("ix_orphan_payments_payment_reference", "payment_reference"),
    )

    transaction_reference: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="webhook")
    event_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    payment_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("payment_transactions.id"), nullable=True
    )
    resolution_note: Mapped[str | None] = mapped_column(String(255), nullable=True)
