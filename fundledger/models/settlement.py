"""Settlement batch model."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum as SqlEnum, Integer, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .payment_transaction import SettlementStatus


class SettlementBatch(Base):
    """Gateway confirmation that funds for one or more deposits have moved."""

    __tablename__ = "settlement_batches"

    settlement_reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    settlement_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    batch_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    settlement_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transaction_references: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[SettlementStatus] = mapped_column(
        SqlEnum(SettlementStatus, name="settlementstatus"),
        nullable=False,
        default=SettlementStatus.PENDING,
    )
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    matched_by_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    payment_transactions = relationship("PaymentTransaction", back_populates="settlement")
