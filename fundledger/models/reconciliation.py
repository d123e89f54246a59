"""Reconciliation discrepancy model."""
import enum

from sqlalchemy import Boolean, Enum as SqlEnum, Index, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class DiscrepancyKind(str, enum.Enum):
    """Divergences between local state and the gateway that need an operator."""

    STATUS_MISMATCH = "STATUS_MISMATCH"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    UNRESOLVED_ORPHAN = "UNRESOLVED_ORPHAN"
    BALANCE_CLAMPED = "BALANCE_CLAMPED"


class ReconciliationDiscrepancy(Base):
    """Flagged record for operator review; never mutates financial state."""

    __tablename__ = "reconciliation_discrepancies"
    __table_args__ = (
        UniqueConstraint("kind", "reference", name="uq_reconciliation_discrepancies_kind_reference"),
        Index("ix_reconciliation_discrepancies_resolved", "resolved"),
    )

    kind: Mapped[DiscrepancyKind] = mapped_column(
        SqlEnum(DiscrepancyKind, name="discrepancykind"), nullable=False
    )
    reference: Mapped[str] = mapped_column(String(128), nullable=False)
    local_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    gateway_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution_note: Mapped[str | None] = mapped_column(String(255), nullable=True)
