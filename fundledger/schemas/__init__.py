"""Schema package exports."""
from .operations import (
    DiscrepancyRead,
    OrphanRead,
    OrphanResolve,
    OrphanSweepRead,
    ReconciliationRunRead,
    ResolutionNote,
    WebhookRecordRead,
)
from .payment import DepositCreate, DepositVerifyRead, PaymentTransactionRead
from .wallet import LedgerEntryRead, WalletRead
from .webhook import (
    ReversalEventData,
    SettlementEventData,
    TransactionEventData,
    WebhookAck,
    WebhookEnvelope,
    WebhookEventType,
)

__all__ = [
    "DepositCreate",
    "DepositVerifyRead",
    "DiscrepancyRead",
    "LedgerEntryRead",
    "OrphanRead",
    "OrphanResolve",
    "OrphanSweepRead",
    "PaymentTransactionRead",
    "ReconciliationRunRead",
    "ResolutionNote",
    "ReversalEventData",
    "SettlementEventData",
    "TransactionEventData",
    "WalletRead",
    "WebhookAck",
    "WebhookEnvelope",
    "WebhookEventType",
    "WebhookRecordRead",
]
