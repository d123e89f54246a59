"""Inbound webhook persistence models."""
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WebhookRecord(Base):
    """Raw capture of a gateway notification, written before acknowledging it."""

    __tablename__ = "webhook_records"
    __table_args__ = (
        Index("ix_webhook_records_received", "received_at"),
        Index("ix_webhook_records_event_type", "event_type"),
        Index("ix_webhook_records_dedup_key", "dedup_key"),
        Index("ix_webhook_records_processed", "processed", "attempts"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="gateway")
    request_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProcessedWebhookKey(Base):
    """Durable deduplication index: one row per logical event applied."""

    __tablename__ = "webhook_dedup_keys"

    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    webhook_record_id: Mapped[int | None] = mapped_column(
        ForeignKey("webhook_records.id", ondelete="SET NULL"), nullable=True
    )
