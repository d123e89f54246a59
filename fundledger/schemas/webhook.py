"""Gateway webhook payload schemas, one model per event variant."""
from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class WebhookEventType(str, enum.Enum):
    """Notification kinds the gateway sends."""

    SUCCESSFUL_TRANSACTION = "SUCCESSFUL_TRANSACTION"
    FAILED_TRANSACTION = "FAILED_TRANSACTION"
    REVERSED_TRANSACTION = "REVERSED_TRANSACTION"
    REFUND_COMPLETED = "REFUND_COMPLETED"
    SETTLEMENT_COMPLETED = "SETTLEMENT_COMPLETED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"

    @classmethod
    def parse(cls, value: str | None) -> "WebhookEventType | None":
        """Return the matching member, or ``None`` for unrecognised upstream types."""

        try:
            return cls(value)
        except ValueError:
            return None


TRANSACTION_EVENTS = frozenset(
    {
        WebhookEventType.SUCCESSFUL_TRANSACTION,
        WebhookEventType.FAILED_TRANSACTION,
        WebhookEventType.REVERSED_TRANSACTION,
        WebhookEventType.REFUND_COMPLETED,
    }
)
SETTLEMENT_EVENTS = frozenset(
    {WebhookEventType.SETTLEMENT_COMPLETED, WebhookEventType.SETTLEMENT_FAILED}
)


class WebhookEnvelope(BaseModel):
    """Outer ``{eventType, eventData}`` body."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    event_type: str = Field(validation_alias=AliasChoices("eventType", "event_type"))
    event_data: dict[str, Any] = Field(validation_alias=AliasChoices("eventData", "event_data"))

    @field_validator("event_type")
    @classmethod
    def _event_type_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("eventType cannot be blank")
        return value.strip()


class _GatewayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class CustomerInfo(_GatewayModel):
    email: str | None = None
    name: str | None = None


class TransactionEventData(_GatewayModel):
    """Payload of SUCCESSFUL_TRANSACTION / FAILED_TRANSACTION."""

    transaction_reference: str | None = Field(
        default=None, validation_alias=AliasChoices("transactionReference", "transaction_reference")
    )
    payment_reference: str | None = Field(
        default=None, validation_alias=AliasChoices("paymentReference", "payment_reference")
    )
    amount_paid: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("amountPaid", "amount_paid")
    )
    amount: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("amount", "totalPayable")
    )
    paid_on: str | None = Field(default=None, validation_alias=AliasChoices("paidOn", "paid_on"))
    payment_method: str | None = Field(
        default=None, validation_alias=AliasChoices("paymentMethod", "payment_method")
    )
    currency: str | None = None
    payment_status: str | None = Field(
        default=None, validation_alias=AliasChoices("paymentStatus", "payment_status")
    )
    fee: Decimal | None = None
    settlement_amount: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("settlementAmount", "settlement_amount")
    )
    response_code: str | None = Field(
        default=None, validation_alias=AliasChoices("responseCode", "response_code")
    )
    response_message: str | None = Field(
        default=None, validation_alias=AliasChoices("responseMessage", "response_message")
    )
    customer: CustomerInfo | None = None

    @field_validator("response_code", mode="before")
    @classmethod
    def _code_as_text(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @property
    def effective_amount(self) -> Decimal | None:
        return self.amount_paid if self.amount_paid is not None else self.amount

    @property
    def customer_email(self) -> str | None:
        return self.customer.email if self.customer else None


class ReversalEventData(_GatewayModel):
    """Payload of REVERSED_TRANSACTION / REFUND_COMPLETED."""

    transaction_reference: str | None = Field(
        default=None, validation_alias=AliasChoices("transactionReference", "transaction_reference")
    )
    payment_reference: str | None = Field(
        default=None, validation_alias=AliasChoices("paymentReference", "payment_reference")
    )
    reversal_amount: Decimal | None = Field(
        default=None,
        validation_alias=AliasChoices("reversalAmount", "refundAmount", "amount", "reversal_amount"),
    )
    reversal_reference: str | None = Field(
        default=None,
        validation_alias=AliasChoices("reversalReference", "refundReference", "reversal_reference"),
    )
    reversal_reason: str | None = Field(
        default=None,
        validation_alias=AliasChoices("reversalReason", "refundReason", "reversal_reason"),
    )


class SettlementEventData(_GatewayModel):
    """Payload of SETTLEMENT_COMPLETED / SETTLEMENT_FAILED."""

    settlement_reference: str = Field(
        validation_alias=AliasChoices("settlementReference", "settlement_reference")
    )
    settlement_id: str | None = Field(
        default=None, validation_alias=AliasChoices("settlementId", "settlement_id")
    )
    amount: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("amount", "settlementAmount")
    )
    settlement_date: str | None = Field(
        default=None, validation_alias=AliasChoices("settlementDate", "settlement_date")
    )
    batch_reference: str | None = Field(
        default=None, validation_alias=AliasChoices("batchReference", "batch_reference")
    )
    transaction_count: int | None = Field(
        default=None, validation_alias=AliasChoices("transactionCount", "transaction_count")
    )
    transaction_references: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("transactionReferences", "transaction_references"),
    )
    failure_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("failureReason", "failure_reason")
    )

    @field_validator("settlement_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("transaction_references", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class WebhookAck(BaseModel):
    success: bool = True
    message: str = "Webhook received"
    requestId: str


__all__ = [
    "WebhookEventType",
    "TRANSACTION_EVENTS",
    "SETTLEMENT_EVENTS",
    "WebhookEnvelope",
    "CustomerInfo",
    "TransactionEventData",
    "ReversalEventData",
    "SettlementEventData",
    "WebhookAck",
]
