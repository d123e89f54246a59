"""HMAC-SHA512 verification of gateway webhook bodies."""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Mapping

from fundledger.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureCheck:
    """Result of checking one inbound notification."""

    valid: bool
    reason: str | None = None


def _current_secrets() -> tuple[str | None, str | None]:
    settings = get_settings()
    return settings.gateway_webhook_secret, settings.gateway_webhook_secret_next


def masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue

        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def secret_status() -> dict[str, str | None]:
    primary, secondary = _current_secrets()
    return masked_secret_status({"primary": primary, "secondary": secondary})


def get_signature_header(headers: Mapping[str, str]) -> str | None:
    """Return the first configured signature header present, matched case-insensitively."""

    wanted = [name.lower() for name in get_settings().WEBHOOK_SIGNATURE_HEADERS]
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in wanted:
        value = lowered.get(name)
        if value:
            return value
    return None


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of the exact request bytes."""

    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def _normalise_provided(provided: str) -> str:
    # Some senders prefix the digest with the header name, e.g. "monnify-signature: abc..."
    value = provided.strip()
    if ":" in value:
        value = value.rsplit(":", 1)[1].strip()
    return value.lower()


def verify_signature(raw_body: bytes, provided: str | None) -> SignatureCheck:
    """Check ``provided`` against the primary secret and, if set, the rotation secret."""

    primary, secondary = _current_secrets()
    secrets = [s for s in (primary, secondary) if s]
    if not secrets:
        logger.error(
            "Gateway webhook secret is not configured",
            extra={"webhook_secret_status": secret_status()},
        )
        return SignatureCheck(False, "secret_not_configured")

    if not provided:
        return SignatureCheck(False, "signature_missing")

    candidate = _normalise_provided(provided)
    for secret in secrets:
        expected = compute_signature(secret, raw_body)
        if hmac.compare_digest(expected, candidate):
            return SignatureCheck(True)

    logger.warning(
        "Gateway webhook signature mismatch",
        extra={"webhook_secret_status": secret_status()},
    )
    return SignatureCheck(False, "signature_mismatch")


__all__ = [
    "SignatureCheck",
    "compute_signature",
    "get_signature_header",
    "masked_secret_status",
    "secret_status",
    "verify_signature",
]
