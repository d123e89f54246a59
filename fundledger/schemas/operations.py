"""Operator-facing schemas: orphans, discrepancies, webhook records, job runs."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fundledger.models.reconciliation import DiscrepancyKind


class OrphanRead(BaseModel):
    id: int
    transaction_reference: str | None
    payment_reference: str | None
    amount: Decimal | None
    currency: str | None
    payment_method: str | None
    customer_email: str | None
    customer_name: str | None
    event_type: str
    source: str
    reconciled: bool
    reconciled_at: datetime | None
    resolved_user_id: int | None
    payment_transaction_id: int | None
    resolution_note: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrphanResolve(BaseModel):
    user_id: int


class ResolutionNote(BaseModel):
    note: str = Field(min_length=3, max_length=255)


class DiscrepancyRead(BaseModel):
    id: int
    kind: DiscrepancyKind
    reference: str
    local_status: str | None
    gateway_status: str | None
    details: dict[str, Any]
    resolved: bool
    resolution_note: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WebhookRecordRead(BaseModel):
    id: int
    request_id: str
    event_type: str
    dedup_key: str
    transaction_reference: str | None
    payment_reference: str | None
    signature_valid: bool
    processed: bool
    attempts: int
    error_message: str | None
    received_at: datetime
    processed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ReconciliationRunRead(BaseModel):
    window_start: str
    window_end: str
    skipped: bool
    gateway_transactions: int
    gateway_settlements: int
    credited: int
    orphans_created: int
    orphans_resolved: int
    discrepancies: int
    settlements_replayed: int
    expired: int
    mutations: int
    errors: list[str]


class OrphanSweepRead(BaseModel):
    resolved: int
    unmatched: int
    skipped: int
    resolved_ids: list[int]
