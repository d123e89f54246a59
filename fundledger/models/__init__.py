"""ORM models package."""
from .audit import AuditLog
from .base import Base
from .orphan import OrphanPayment
from .payment_transaction import PaymentStatus, PaymentTransaction, SettlementStatus
from .reconciliation import DiscrepancyKind, ReconciliationDiscrepancy
from .scheduler_lock import SchedulerLock
from .settlement import SettlementBatch
from .user import User
from .wallet import LedgerEntry, LedgerEntryType, WalletAccount
from .webhook import ProcessedWebhookKey, WebhookRecord

__all__ = [
    "AuditLog",
    "Base",
    "DiscrepancyKind",
    "LedgerEntry",
    "LedgerEntryType",
    "OrphanPayment",
    "PaymentStatus",
    "PaymentTransaction",
    "ProcessedWebhookKey",
    "ReconciliationDiscrepancy",
    "SchedulerLock",
    "SettlementBatch",
    "SettlementStatus",
    "User",
    "WalletAccount",
    "WebhookRecord",
]
