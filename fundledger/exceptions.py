"""Domain exceptions raised by the ingestion, ledger and reconciliation services."""
from __future__ import annotations

from typing import Any


class FundLedgerError(Exception):
    """Base class for domain errors."""

    code = "FUNDLEDGER_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTransition(FundLedgerError):
    """A payment status change the state machine does not allow."""

    code = "INVALID_TRANSITION"

    def __init__(self, reference: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move payment {reference} from {current} to {target}",
            details={"reference": reference, "current": current, "target": target},
        )
        self.reference = reference
        self.current = current
        self.target = target


class ConcurrentUpdateError(FundLedgerError):
    """A compare-and-set status update matched no row; another writer got there first."""

    code = "CONCURRENT_UPDATE"


class WebhookPayloadError(FundLedgerError):
    """Inbound notification body is not a valid ``{eventType, eventData}`` envelope."""

    code = "WEBHOOK_PAYLOAD_INVALID"


class WebhookSignatureError(FundLedgerError):
    """Inbound notification signature is missing or does not match."""

    code = "WEBHOOK_SIGNATURE_INVALID"


class GatewayError(FundLedgerError):
    """The payment gateway could not be reached or answered with an error."""

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


__all__ = [
    "FundLedgerError",
    "InvalidTransition",
    "ConcurrentUpdateError",
    "WebhookPayloadError",
    "WebhookSignatureError",
    "GatewayError",
]
