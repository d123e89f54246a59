"""Service-key dependency guarding the deposit and operator routes."""
from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, status

from fundledger.config import DEV_API_KEY_ALLOWED, get_settings
from fundledger.utils.errors import error_response

DEV_SERVICE_KEY = "dev-service-key"


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_service_key(token: str | None = Depends(_extract_key)) -> str:
    """Validate the shared service key and return the actor name used in audit rows."""

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    expected = get_settings().API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("API_KEY_NOT_CONFIGURED", "Service API key is not configured."),
        )
    if expected == DEV_SERVICE_KEY and not DEV_API_KEY_ALLOWED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("LEGACY_KEY_FORBIDDEN", "Built-in dev key disabled."),
        )
    if not secrets.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid API key."),
        )
    return "service"


__all__ = ["require_service_key"]
