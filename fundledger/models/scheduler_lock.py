"""Lease row electing the replica that runs reconciliation and maintenance jobs."""
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from fundledger.utils.time import ensure_utc

from .base import Base


class SchedulerLock(Base):
    """One row per lock name; ``owner`` is ``<hostname>-<pid>`` of the holder."""

    __tablename__ = "scheduler_locks"

    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # A NULL expiry counts as a free lease.
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def is_expired(self, now: datetime) -> bool:
        expires_at = ensure_utc(self.expires_at)
        return expires_at is None or expires_at <= now

    def held_by(self, owner: str) -> bool:
        return self.owner == owner
