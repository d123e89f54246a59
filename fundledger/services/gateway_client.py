"""Async HTTP client for the payment gateway's merchant API."""
from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from fundledger.config import Settings, get_settings
from fundledger.exceptions import GatewayError

logger = logging.getLogger(__name__)

AUTH_PATH = "/api/v1/auth/login"
INIT_TRANSACTION_PATH = "/api/v1/merchant/transactions/init-transaction"
QUERY_TRANSACTION_PATH = "/api/v1/merchant/transactions/query"
LIST_TRANSACTIONS_PATH = "/api/v1/merchant/transactions"
LIST_SETTLEMENTS_PATH = "/api/v1/merchant/settlements"

# Used when the login response omits expiresIn.
DEFAULT_TOKEN_TTL_SECONDS = 50 * 60

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


@dataclass
class GatewayPage:
    content: list[dict[str, Any]] = field(default_factory=list)
    page: int = 0
    size: int = 0
    total_pages: int = 0
    total_elements: int = 0

    @property
    def is_last(self) -> bool:
        return self.page + 1 >= self.total_pages

    @classmethod
    def from_body(cls, body: dict[str, Any], *, page: int, size: int) -> "GatewayPage":
        pageable = body.get("pageable") or {}
        return cls(
            content=list(body.get("content") or []),
            page=int(pageable.get("pageNumber", page)),
            size=int(pageable.get("pageSize", size)),
            total_pages=int(body.get("totalPages") or 0),
            total_elements=int(body.get("totalElements") or 0),
        )


def _epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class GatewayClient:
    """Bearer-token client with cached login and capped exponential backoff."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.GATEWAY_BASE_URL,
            timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._sleep = sleep
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._auth_lock = asyncio.Lock()
        self.login_count = 0

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- authentication ------------------------------------------------

    def _basic_credentials(self) -> str:
        api_key = self.settings.GATEWAY_API_KEY
        secret = self.settings.GATEWAY_SECRET_KEY
        if not api_key or not secret:
            raise GatewayError("Gateway credentials are not configured.")
        raw = f"{api_key}:{secret}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    def _token_valid(self) -> bool:
        return self._token is not None and self._clock() < self._token_expires_at

    async def _access_token(self) -> str:
        if self._token_valid():
            return self._token  # type: ignore[return-value]
        async with self._auth_lock:
            if self._token_valid():
                return self._token  # type: ignore[return-value]
            body = await self._send(
                "POST",
                AUTH_PATH,
                headers={"Authorization": f"Basic {self._basic_credentials()}"},
                authenticated=False,
            )
            token = body.get("accessToken")
            if not token:
                raise GatewayError("Gateway login returned no access token.")
            ttl = float(body.get("expiresIn") or DEFAULT_TOKEN_TTL_SECONDS)
            margin = self.settings.GATEWAY_TOKEN_REFRESH_MARGIN_SECONDS
            self._token = token
            self._token_expires_at = self._clock() + max(ttl - margin, 0.0)
            self.login_count += 1
            logger.info("Gateway authentication successful", extra={"token_ttl_seconds": ttl})
            return token

    # --- transport -----------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        base = self.settings.GATEWAY_BACKOFF_BASE_SECONDS
        return min(base * (2**attempt), self.settings.GATEWAY_BACKOFF_MAX_SECONDS)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        authenticated: bool = True,
    ) -> dict[str, Any]:
        """Issue one API call and return ``responseBody``; retry transient failures."""

        max_retries = self.settings.GATEWAY_MAX_RETRIES
        last_error: GatewayError | None = None

        for attempt in range(max_retries + 1):
            request_headers = dict(headers or {})
            if authenticated:
                request_headers["Authorization"] = f"Bearer {await self._access_token()}"

            try:
                response = await self._client.request(
                    method, path, params=params, json=json, headers=request_headers
                )
            except httpx.TransportError as exc:
                last_error = GatewayError(
                    f"Gateway unreachable: {type(exc).__name__}",
                    details={"path": path, "attempt": attempt + 1},
                )
                logger.warning(
                    "Gateway request transport error",
                    extra={"path": path, "attempt": attempt + 1, "error": str(exc)},
                )
            else:
                if response.status_code == 401 and authenticated:
                    self.invalidate_token()
                    last_error = GatewayError("Gateway rejected the access token.", status_code=401)
                    logger.warning("Gateway token rejected, re-authenticating", extra={"path": path})
                    if attempt < max_retries:
                        continue
                    break
                if response.status_code in _RETRYABLE_STATUS:
                    last_error = GatewayError(
                        f"Gateway returned HTTP {response.status_code}",
                        status_code=response.status_code,
                        details={"path": path, "attempt": attempt + 1},
                    )
                    logger.warning(
                        "Gateway request failed, will retry",
                        extra={"path": path, "status_code": response.status_code, "attempt": attempt + 1},
                    )
                else:
                    return self._unwrap(response, path)

            if attempt < max_retries:
                await self._sleep(self._backoff(attempt))

        if last_error is None:
            # Only reachable with a negative GATEWAY_MAX_RETRIES.
            last_error = GatewayError("Gateway request was not attempted.", details={"path": path})
        logger.error(
            "Gateway request failed after retries",
            extra={"path": path, "status_code": last_error.status_code, "attempts": max_retries + 1},
        )
        raise last_error

    @staticmethod
    def _unwrap(response: httpx.Response, path: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Gateway returned a non-JSON body.", status_code=response.status_code
            ) from exc

        if response.status_code >= 400 or payload.get("requestSuccessful") is False:
            raise GatewayError(
                payload.get("responseMessage") or f"Gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
                details={"path": path, "response_code": payload.get("responseCode")},
            )
        body = payload.get("responseBody")
        return body if isinstance(body, dict) else {"items": body}

    # --- operations ----------------------------------------------------

    async def init_transaction(
        self,
        *,
        amount: Decimal,
        payment_reference: str,
        customer_name: str,
        customer_email: str,
        description: str,
        currency: str | None = None,
        redirect_url: str | None = None,
        payment_methods: list[str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "amount": float(amount),
            "customerName": customer_name,
            "customerEmail": customer_email,
            "paymentReference": payment_reference,
            "paymentDescription": description,
            "currencyCode": currency or self.settings.DEFAULT_CURRENCY,
            "contractCode": self.settings.GATEWAY_CONTRACT_CODE,
            "paymentMethods": payment_methods or ["CARD", "ACCOUNT_TRANSFER"],
        }
        if redirect_url:
            payload["redirectUrl"] = redirect_url
        return await self._send("POST", INIT_TRANSACTION_PATH, json=payload)

    async def query_transaction(self, payment_reference: str) -> dict[str, Any]:
        return await self._send(
            "GET", QUERY_TRANSACTION_PATH, params={"paymentReference": payment_reference}
        )

    async def _list(
        self, path: str, *, start: datetime | None, end: datetime | None, page: int, size: int | None
    ) -> GatewayPage:
        size = size or self.settings.GATEWAY_PAGE_SIZE
        params: dict[str, Any] = {"page": page, "size": size}
        if start is not None:
            params["from"] = _epoch_millis(start)
        if end is not None:
            params["to"] = _epoch_millis(end)
        body = await self._send("GET", path, params=params)
        return GatewayPage.from_body(body, page=page, size=size)

    async def list_transactions(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> GatewayPage:
        return await self._list(LIST_TRANSACTIONS_PATH, start=start, end=end, page=page, size=size)

    async def list_settlements(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> GatewayPage:
        return await self._list(LIST_SETTLEMENTS_PATH, start=start, end=end, page=page, size=size)

    async def _iterate(self, lister, start: datetime | None, end: datetime | None) -> AsyncIterator[dict[str, Any]]:
        page = 0
        while True:
            result = await lister(start=start, end=end, page=page)
            for item in result.content:
                yield item
            if result.is_last or not result.content:
                return
            page += 1

    def iter_transactions(
        self, *, start: datetime | None = None, end: datetime | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        return self._iterate(self.list_transactions, start, end)

    def iter_settlements(
        self, *, start: datetime | None = None, end: datetime | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        return self._iterate(self.list_settlements, start, end)


async def get_gateway_client() -> AsyncIterator[GatewayClient]:
    """FastAPI dependency yielding a client closed after the request."""

    async with GatewayClient() as client:
        yield client


__all__ = ["GatewayClient", "GatewayPage", "DEFAULT_TOKEN_TTL_SECONDS", "get_gateway_client"]
