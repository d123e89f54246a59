"""Schemas for deposits (payment transactions)."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fundledger.config import get_settings
from fundledger.models.payment_transaction import PaymentStatus, SettlementStatus


class DepositCreate(BaseModel):
    user_id: int
    amount: Decimal = Field(max_digits=18, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    redirect_url: str | None = None
    description: str | None = Field(default=None, max_length=255)

    @field_validator("amount")
    @classmethod
    def _amount_within_limits(cls, value: Decimal) -> Decimal:
        settings = get_settings()
        if value < settings.MIN_DEPOSIT_AMOUNT or value > settings.MAX_DEPOSIT_AMOUNT:
            raise ValueError(
                f"Amount must be between {settings.MIN_DEPOSIT_AMOUNT} and {settings.MAX_DEPOSIT_AMOUNT}"
            )
        return value


class PaymentTransactionRead(BaseModel):
    id: int
    user_id: int
    payment_reference: str
    transaction_reference: str | None
    amount: Decimal
    currency: str
    status: PaymentStatus
    settlement_status: SettlementStatus
    amount_paid: Decimal | None
    payment_method: str | None
    paid_at: datetime | None
    expires_at: datetime | None
    failure_reason: str | None
    settlement_reference: str | None
    checkout_url: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DepositVerifyRead(BaseModel):
    payment: PaymentTransactionRead
    gateway_status: str | None
    outcome: str
