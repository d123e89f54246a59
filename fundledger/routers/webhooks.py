"""Inbound gateway notifications: verify, store, acknowledge, then process."""
from __future__ import annotations

import logging
import uuid
from typing import Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from fundledger.config import get_settings
from fundledger.db import get_db, get_session_factory
from fundledger.exceptions import WebhookPayloadError
from fundledger.schemas.webhook import WebhookAck
from fundledger.services import signatures
from fundledger.services.webhook_processor import get_processor, parse_envelope, store_webhook
from fundledger.utils.errors import domain_error_response, error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _process_in_background(record_id: int, session_scope: Callable) -> None:
    with session_scope() as session:
        get_processor().process(record_id, session)


@router.post("/gateway", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def gateway_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_scope: Callable = Depends(get_session_factory),
) -> WebhookAck:
    raw_body = await request.body()
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    # Raw body is kept in the log stream even when the request is rejected below.
    logger.info(
        "Gateway webhook received",
        extra={"request_id": request_id, "raw_body": raw_body.decode("utf-8", errors="replace")},
    )

    check = signatures.verify_signature(raw_body, signatures.get_signature_header(request.headers))
    if not check.valid:
        if get_settings().strict_signature:
            logger.warning(
                "Gateway webhook rejected: invalid signature",
                extra={"request_id": request_id, "reason": check.reason},
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response(
                    "WEBHOOK_SIGNATURE_INVALID",
                    "Webhook signature verification failed.",
                    {"reason": check.reason},
                ),
            )
        logger.warning(
            "Gateway webhook signature not verified; accepting outside strict mode",
            extra={"request_id": request_id, "reason": check.reason},
        )

    try:
        envelope = parse_envelope(raw_body)
    except WebhookPayloadError as exc:
        logger.warning(
            "Gateway webhook payload rejected",
            extra={"request_id": request_id, "error": exc.message},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=domain_error_response(exc),
        ) from exc

    record, created = store_webhook(
        db,
        request_id=request_id,
        envelope=envelope,
        raw={"eventType": envelope.event_type, "eventData": envelope.event_data},
        signature_valid=check.valid,
    )
    if created:
        background_tasks.add_task(_process_in_background, record.id, session_scope)

    return WebhookAck(success=True, message="Webhook received", requestId=request_id)


__all__ = ["router"]
