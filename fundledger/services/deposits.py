"""Deposit initiation and manual verification against the gateway."""
from __future__ import annotations

import logging
import secrets
import time
from datetime import timedelta
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from fundledger.config import get_settings
from fundledger.exceptions import GatewayError
from fundledger.models import PaymentStatus, PaymentTransaction, User
from fundledger.schemas.webhook import WebhookEventType
from fundledger.services import notifications as notify
from fundledger.services.dedup import derive_dedup_key
from fundledger.services.events import EventContext, ProcessingOutcome, find_payment, process_event
from fundledger.services.gateway_client import GatewayClient
from fundledger.services.reconciliation import GATEWAY_STATUS_MAP
from fundledger.utils.audit import log_audit
from fundledger.utils.errors import error_response
from fundledger.utils.time import utcnow

logger = logging.getLogger(__name__)


def new_payment_reference(user_id: int) -> str:
    """``FL_<user id>_<epoch ms>_<random hex>``; unique per attempt."""

    return f"FL_{user_id:06d}_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def _gateway_unavailable(exc: GatewayError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=error_response(
            "GATEWAY_UNAVAILABLE",
            "Payment gateway request failed.",
            {"reason": exc.message, "status_code": exc.status_code},
        ),
    )


async def initiate_deposit(
    db: Session,
    client: GatewayClient,
    *,
    user_id: int,
    amount: Decimal,
    currency: str | None = None,
    redirect_url: str | None = None,
    description: str | None = None,
    actor: str = "service",
) -> PaymentTransaction:
    """Open a checkout at the gateway and record the PENDING deposit."""

    settings = get_settings()
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("USER_NOT_FOUND", "Active user not found."),
        )

    reference = new_payment_reference(user.id)
    currency = (currency or settings.DEFAULT_CURRENCY).upper()
    try:
        body = await client.init_transaction(
            amount=amount,
            payment_reference=reference,
            customer_name=user.username,
            customer_email=user.email,
            description=description or f"Wallet funding for {user.username}",
            currency=currency,
            redirect_url=redirect_url,
        )
    except GatewayError as exc:
        logger.error(
            "Deposit initiation failed at gateway",
            extra={"user_id": user.id, "payment_reference": reference, "error": exc.message},
        )
        raise _gateway_unavailable(exc) from exc

    payment = PaymentTransaction(
        user_id=user.id,
        payment_reference=reference,
        transaction_reference=body.get("transactionReference"),
        amount=amount,
        currency=currency,
        status=PaymentStatus.PENDING,
        expires_at=utcnow() + timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES),
        checkout_url=body.get("checkoutUrl"),
        customer_email=user.email,
        customer_name=user.username,
        metadata_json={
            "enabled_payment_methods": body.get("enabledPaymentMethod") or [],
            "redirect_url": redirect_url,
        },
    )
    db.add(payment)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="DEPOSIT_INITIATED",
        entity="PaymentTransaction",
        entity_id=payment.id,
        data={
            "user_id": user.id,
            "payment_reference": reference,
            "amount": str(amount),
            "currency": currency,
            "customer_email": user.email,
        },
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Deposit initiated",
        extra={"user_id": user.id, "payment_reference": reference, "amount": str(amount)},
    )
    return payment


def get_deposit_or_404(db: Session, payment_reference: str) -> PaymentTransaction:
    payment = find_payment(db, payment_reference=payment_reference)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("PAYMENT_NOT_FOUND", "Payment not found."),
        )
    return payment


async def verify_deposit(
    db: Session,
    client: GatewayClient,
    payment_reference: str,
    *,
    dispatcher: notify.NotificationDispatcher | None = None,
) -> tuple[PaymentTransaction, str | None, ProcessingOutcome]:
    """Ask the gateway for the authoritative status and replay it through the router."""

    payment = get_deposit_or_404(db, payment_reference)
    if payment.status != PaymentStatus.PENDING:
        return payment, None, ProcessingOutcome(False, "already_final", payment_reference)

    try:
        body = await client.query_transaction(payment_reference)
    except GatewayError as exc:
        raise _gateway_unavailable(exc) from exc

    gateway_status = str(body.get("paymentStatus") or "").upper()
    mapped = GATEWAY_STATUS_MAP.get(gateway_status)
    if mapped == PaymentStatus.PAID:
        kind = WebhookEventType.SUCCESSFUL_TRANSACTION
    elif mapped == PaymentStatus.FAILED:
        kind = WebhookEventType.FAILED_TRANSACTION
    else:
        return payment, gateway_status or None, ProcessingOutcome(False, "still_pending", payment_reference)

    event_data = dict(body)
    event_data.setdefault("paymentReference", payment_reference)
    outcome = process_event(
        db,
        kind.value,
        event_data,
        context=EventContext(
            source="verify",
            dedup_key=derive_dedup_key(kind.value, event_data, f"verify-{payment_reference}"),
        ),
        dispatcher=dispatcher,
    )
    db.refresh(payment)
    logger.info(
        "Deposit verified against gateway",
        extra={"payment_reference": payment_reference, "gateway_status": gateway_status, **outcome.as_dict()},
    )
    return payment, gateway_status, outcome


__all__ = ["initiate_deposit", "verify_deposit", "get_deposit_or_404", "new_payment_reference"]
