"""Deposit initiation and status endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from fundledger.db import get_db
from fundledger.models import PaymentTransaction
from fundledger.schemas.payment import DepositCreate, DepositVerifyRead, PaymentTransactionRead
from fundledger.security import require_service_key
from fundledger.services import deposits as deposits_service
from fundledger.services.gateway_client import GatewayClient, get_gateway_client

router = APIRouter(prefix="/deposits", tags=["deposits"])


@router.post(
    "",
    response_model=PaymentTransactionRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_deposit(
    payload: DepositCreate,
    db: Session = Depends(get_db),
    client: GatewayClient = Depends(get_gateway_client),
    actor: str = Depends(require_service_key),
) -> PaymentTransaction:
    """Open a gateway checkout for a wallet top-up."""

    return await deposits_service.initiate_deposit(
        db,
        client,
        user_id=payload.user_id,
        amount=payload.amount,
        currency=payload.currency,
        redirect_url=payload.redirect_url,
        description=payload.description,
        actor=actor,
    )


@router.get("/{payment_reference}", response_model=PaymentTransactionRead)
def get_deposit(
    payment_reference: str,
    db: Session = Depends(get_db),
    actor: str = Depends(require_service_key),
) -> PaymentTransaction:
    return deposits_service.get_deposit_or_404(db, payment_reference)


@router.post("/{payment_reference}/verify", response_model=DepositVerifyRead)
async def verify_deposit(
    payment_reference: str,
    db: Session = Depends(get_db),
    client: GatewayClient = Depends(get_gateway_client),
    actor: str = Depends(require_service_key),
) -> DepositVerifyRead:
    """Re-check a pending deposit with the gateway and apply its authoritative status."""

    payment, gateway_status, outcome = await deposits_service.verify_deposit(db, client, payment_reference)
    return DepositVerifyRead(
        payment=PaymentTransactionRead.model_validate(payment),
        gateway_status=gateway_status,
        outcome=outcome.reason,
    )


__all__ = ["router"]
