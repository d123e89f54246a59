"""Wallet and ledger read models."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from fundledger.models.wallet import LedgerEntryType


class WalletRead(BaseModel):
    user_id: int
    balance: Decimal
    total_deposited: Decimal
    deposit_count: int
    last_deposit_at: datetime | None
    ledger_balance: Decimal
    consistent: bool


class LedgerEntryRead(BaseModel):
    id: int
    entry_type: LedgerEntryType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    payment_transaction_id: int | None
    reference: str | None
    description: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
