"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from fundledger.models.audit import AuditLog
from fundledger.utils.time import utcnow


SENSITIVE_KEYS = {
    "accountNumber",
    "account_number",
    "card_number",
    "cardNumber",
    "email",
    "customerEmail",
    "customer_email",
    "customerPhoneNumber",
    "phone",
}

_ACCOUNT_KEYS = {"accountNumber", "account_number", "card_number", "cardNumber"}
_EMAIL_KEYS = {"email", "customerEmail", "customer_email"}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in _ACCOUNT_KEYS:
        stripped = str(value).replace(" ", "")
        if len(stripped) <= 4:
            return f"***{stripped}"
        return f"***{stripped[-4:]}"

    if key in _EMAIL_KEYS:
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    text = str(value)
    if len(text) <= 4:
        return "***"
    return f"***{text[-2:]}"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS and not isinstance(value, (Mapping, list)):
                sanitized[key] = _mask_value(key, value)
            else:
                sanitized[key] = sanitize_payload_for_audit(value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Persist an audit entry in the shared AuditLog table."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )
