"""Read-only wallet balance and ledger history."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from fundledger.db import get_db
from fundledger.models import LedgerEntry, User
from fundledger.schemas.wallet import LedgerEntryRead, WalletRead
from fundledger.security import require_service_key
from fundledger.services.ledger import ZERO, get_wallet, verify_wallet_consistency
from fundledger.utils.errors import error_response

router = APIRouter(prefix="/wallets", tags=["wallets"])


def _ensure_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("USER_NOT_FOUND", "User not found."),
        )
    return user


@router.get("/{user_id}", response_model=WalletRead)
def read_wallet(
    user_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> WalletRead:
    """Balance plus the ledger-derived check value."""

    _ensure_user(db, user_id)
    wallet = get_wallet(db, user_id)
    check = verify_wallet_consistency(db, user_id)
    return WalletRead(
        user_id=user_id,
        balance=check["balance"],
        total_deposited=wallet.total_deposited if wallet else ZERO,
        deposit_count=wallet.deposit_count if wallet else 0,
        last_deposit_at=wallet.last_deposit_at if wallet else None,
        ledger_balance=check["ledger_balance"],
        consistent=check["consistent"],
    )


@router.get("/{user_id}/ledger", response_model=list[LedgerEntryRead])
def read_ledger(
    user_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> list[LedgerEntry]:
    _ensure_user(db, user_id)
    stmt = (
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(db.scalars(stmt))


__all__ = ["router"]
