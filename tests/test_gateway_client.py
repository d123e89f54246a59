import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from fundledger.config import get_settings
from fundledger.exceptions import GatewayError
from fundledger.services.gateway_client import GatewayClient, GatewayPage


def _paths(gateway) -> list[str]:
    return [request.url.path for request in gateway.requests]


@pytest.mark.anyio("asyncio")
async def test_token_is_cached_between_calls(fake_gateway):
    fake_gateway.queries["FL_1"] = {"paymentReference": "FL_1", "paymentStatus": "PENDING"}
    async with fake_gateway.client() as client:
        await client.query_transaction("FL_1")
        await client.query_transaction("FL_1")
        assert client.login_count == 1

    login = fake_gateway.requests[0]
    assert login.headers["Authorization"].startswith("Basic ")
    assert fake_gateway.requests[1].headers["Authorization"] == "Bearer token-1"


@pytest.mark.anyio("asyncio")
async def test_token_refreshed_before_expiry(fake_gateway):
    now = [0.0]
    fake_gateway.expires_in = 120
    fake_gateway.queries["FL_1"] = {"paymentReference": "FL_1"}

    async def _no_sleep(_):
        return None

    async with GatewayClient(
        get_settings(),
        transport=httpx.MockTransport(fake_gateway.handler),
        sleep=_no_sleep,
        clock=lambda: now[0],
    ) as client:
        await client.query_transaction("FL_1")
        now[0] = 59.0
        await client.query_transaction("FL_1")
        assert client.login_count == 1
        # Refresh margin is 60s, so a 120s token is replaced after 60s.
        now[0] = 61.0
        await client.query_transaction("FL_1")
        assert client.login_count == 2

    assert fake_gateway.requests[-1].headers["Authorization"] == "Bearer token-2"


@pytest.mark.anyio("asyncio")
async def test_transient_errors_are_retried_with_backoff(fake_gateway):
    delays: list[float] = []

    async def _record_sleep(delay: float) -> None:
        delays.append(delay)

    fake_gateway.failures = [503, 429]
    fake_gateway.queries["FL_2"] = {"paymentReference": "FL_2", "paymentStatus": "PAID"}

    async with GatewayClient(
        get_settings(), transport=httpx.MockTransport(fake_gateway.handler), sleep=_record_sleep
    ) as client:
        body = await client.query_transaction("FL_2")

    assert body["paymentStatus"] == "PAID"
    assert delays == [1.0, 2.0]


@pytest.mark.anyio("asyncio")
async def test_rejected_token_triggers_single_reauthentication(fake_gateway):
    fake_gateway.failures = [401]
    fake_gateway.queries["FL_3"] = {"paymentReference": "FL_3"}

    async with fake_gateway.client() as client:
        await client.query_transaction("FL_3")
        assert client.login_count == 2

    assert _paths(fake_gateway).count("/api/v1/auth/login") == 2


@pytest.mark.anyio("asyncio")
async def test_persistent_failure_raises_gateway_error(fake_gateway):
    fake_gateway.failures = [500] * 10

    async with fake_gateway.client() as client:
        with pytest.raises(GatewayError) as excinfo:
            await client.query_transaction("FL_4")

    assert excinfo.value.status_code == 500
    # One login plus the first attempt and three retries.
    assert len(fake_gateway.requests) == 1 + 4


@pytest.mark.anyio("asyncio")
async def test_client_errors_are_not_retried(fake_gateway):
    async with fake_gateway.client() as client:
        with pytest.raises(GatewayError) as excinfo:
            await client.query_transaction("MISSING")

    assert excinfo.value.status_code == 404
    assert len(fake_gateway.requests) == 2


@pytest.mark.anyio("asyncio")
async def test_transport_errors_are_retried():
    calls = {"count": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/auth/login"):
            return httpx.Response(200, json={"requestSuccessful": True, "responseBody": {"accessToken": "t", "expiresIn": 3600}})
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"requestSuccessful": True, "responseBody": {"paymentStatus": "PAID"}})

    async def _no_sleep(_):
        return None

    async with GatewayClient(get_settings(), transport=httpx.MockTransport(_handler), sleep=_no_sleep) as client:
        body = await client.query_transaction("FL_5")

    assert body == {"paymentStatus": "PAID"}
    assert calls["count"] == 2


@pytest.mark.anyio("asyncio")
async def test_unsuccessful_envelope_raises():
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/auth/login"):
            return httpx.Response(200, json={"requestSuccessful": True, "responseBody": {"accessToken": "t"}})
        return httpx.Response(
            200, json={"requestSuccessful": False, "responseMessage": "Invalid contract", "responseCode": "99"}
        )

    async with GatewayClient(get_settings(), transport=httpx.MockTransport(_handler)) as client:
        with pytest.raises(GatewayError) as excinfo:
            await client.query_transaction("FL_6")

    assert excinfo.value.message == "Invalid contract"
    assert excinfo.value.details["response_code"] == "99"


@pytest.mark.anyio("asyncio")
async def test_missing_credentials_fail_fast(monkeypatch, fake_gateway):
    monkeypatch.setattr(get_settings(), "GATEWAY_SECRET_KEY", None)

    async with fake_gateway.client() as client:
        with pytest.raises(GatewayError):
            await client.query_transaction("FL_7")

    assert fake_gateway.requests == []


@pytest.mark.anyio("asyncio")
async def test_init_transaction_sends_contract_and_reference(fake_gateway):
    async with fake_gateway.client() as client:
        body = await client.init_transaction(
            amount=Decimal("1500.00"),
            payment_reference="FL_000001_1",
            customer_name="Alice",
            customer_email="alice@example.com",
            description="Wallet top-up",
            redirect_url="https://app.test/done",
        )

    sent = json.loads(fake_gateway.requests[-1].content)
    assert sent["contractCode"] == get_settings().GATEWAY_CONTRACT_CODE
    assert sent["currencyCode"] == "NGN"
    assert sent["amount"] == 1500.0
    assert sent["redirectUrl"] == "https://app.test/done"
    assert body["checkoutUrl"] == "https://checkout.test/FL_000001_1"


@pytest.mark.anyio("asyncio")
async def test_iter_transactions_walks_every_page(fake_gateway):
    fake_gateway.transactions = [{"paymentReference": f"FL_{i}"} for i in range(5)]
    start = datetime(2026, 10, 18, tzinfo=UTC)
    end = start + timedelta(hours=24)

    async with fake_gateway.client() as client:
        items = [item async for item in client.iter_transactions(start=start, end=end)]

    assert [item["paymentReference"] for item in items] == [f"FL_{i}" for i in range(5)]
    listed = [r for r in fake_gateway.requests if r.url.path.endswith("/merchant/transactions")]
    assert [r.url.params["page"] for r in listed] == ["0", "1", "2"]
    assert listed[0].url.params["from"] == str(int(start.timestamp() * 1000))
    assert listed[0].url.params["to"] == str(int(end.timestamp() * 1000))


@pytest.mark.anyio("asyncio")
async def test_empty_listing_stops_iteration(fake_gateway):
    async with fake_gateway.client() as client:
        items = [item async for item in client.iter_settlements()]
    assert items == []


def test_gateway_page_last_page_detection():
    body = {"content": [{}], "pageable": {"pageNumber": 1, "pageSize": 1}, "totalPages": 2}
    page = GatewayPage.from_body(body, page=1, size=1)
    assert page.is_last is True
    assert GatewayPage.from_body({**body, "pageable": {"pageNumber": 0}}, page=0, size=1).is_last is False


@pytest.mark.anyio("asyncio")
async def test_negative_retry_budget_raises_gateway_error(fake_gateway):
    settings = get_settings().model_copy(update={"GATEWAY_MAX_RETRIES": -1})
    async with GatewayClient(settings, transport=httpx.MockTransport(fake_gateway.handler)) as client:
        with pytest.raises(GatewayError) as exc_info:
            await client.query_transaction("FL_1")

    assert exc_info.value.message == "Gateway request was not attempted."
    assert fake_gateway.requests == []
