"""Helpers for the ``{"error": {code, message, details}}`` envelope every route returns."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fundledger.exceptions import FundLedgerError


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload; empty details are omitted."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


def domain_error_response(exc: "FundLedgerError") -> dict[str, Any]:
    """Render a domain exception with its class-level error code."""

    return error_response(exc.code, exc.message, exc.details)


__all__ = ["error_response", "domain_error_response"]
