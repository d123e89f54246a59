"""Test configuration."""
import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import nullcontext
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///./fundledger_test.db")
os.environ.setdefault("API_KEY", "test-service-key")
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("GATEWAY_API_KEY", "MK_TEST_KEY")
os.environ.setdefault("GATEWAY_SECRET_KEY", "MK_TEST_SECRET")
os.environ.setdefault("GATEWAY_CONTRACT_CODE", "1234567890")
os.environ.setdefault("GATEWAY_BASE_URL", "https://gateway.test")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from fundledger.main import app  # noqa: E402
from fundledger.config import get_settings  # noqa: E402
from fundledger.core.runtime_state import reset_job_runs  # noqa: E402
from fundledger.db import get_db, get_session_factory  # noqa: E402
from fundledger.models import PaymentStatus, PaymentTransaction, User  # noqa: E402
from fundledger.services import events, webhook_processor  # noqa: E402
from fundledger.services.gateway_client import GatewayClient, get_gateway_client  # noqa: E402
from fundledger.services.notifications import NotificationEvent, get_dispatcher  # noqa: E402
from fundledger.services.signatures import compute_signature  # noqa: E402
from fundledger.utils.time import utcnow  # noqa: E402

DB_PATH = Path("./fundledger_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- Fresh database file per session, schema built by Alembic only
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)
TestingSessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False
)

_run_migrations()


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    def _session_factory():
        # Background tasks must see the test transaction's uncommitted rows.
        return lambda: nullcontext(db_session)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = _session_factory
    yield
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_factory, None)


@pytest.fixture(autouse=True)
def reset_processing_state() -> Iterator[None]:
    webhook_processor.get_processor().cache.clear()
    webhook_processor.reset_webhook_stats()
    events.reset_event_stats()
    reset_job_runs()
    yield
    webhook_processor.get_processor().cache.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(*, email: str | None = None, is_active: bool = True) -> User:
        tag = uuid4().hex[:8]
        user = User(
            username=f"user-{tag}",
            email=email or f"user-{tag}@example.com",
            is_active=is_active,
        )
        db_session.add(user)
        db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_payment(db_session: Session, make_user: Callable[..., User]) -> Callable[..., PaymentTransaction]:
    def _factory(
        *,
        user: User | None = None,
        amount: str = "1000.00",
        status: PaymentStatus = PaymentStatus.PENDING,
        transaction_reference: str | None = None,
        payment_reference: str | None = None,
        expires_in: timedelta = timedelta(hours=1),
    ) -> PaymentTransaction:
        owner = user or make_user()
        tag = uuid4().hex[:10].upper()
        payment = PaymentTransaction(
            user_id=owner.id,
            payment_reference=payment_reference or f"FL_{owner.id:06d}_{tag}",
            transaction_reference=transaction_reference or f"MNFY|{tag}",
            amount=Decimal(amount),
            currency="NGN",
            status=status,
            expires_at=utcnow() + expires_in,
            customer_email=owner.email,
            metadata_json={},
        )
        db_session.add(payment)
        db_session.flush()
        return payment

    return _factory


@pytest.fixture
def notifications() -> Iterator[list[NotificationEvent]]:
    """Record every notification dispatched through the shared dispatcher."""

    received: list[NotificationEvent] = []
    dispatcher = get_dispatcher()
    dispatcher.register(received.append)
    yield received
    dispatcher.unregister(received.append)


@pytest.fixture
def sign() -> Callable[[bytes], dict[str, str]]:
    def _sign(body: bytes) -> dict[str, str]:
        secret = get_settings().gateway_webhook_secret
        return {"monnify-signature": compute_signature(secret, body), "Content-Type": "application/json"}

    return _sign


@pytest.fixture
def success_payload() -> Callable[..., dict]:
    """Gateway SUCCESSFUL_TRANSACTION eventData for a local payment."""

    def _payload(payment: PaymentTransaction, **overrides) -> dict:
        data = {
            "transactionReference": payment.transaction_reference,
            "paymentReference": payment.payment_reference,
            "amountPaid": str(payment.amount),
            "totalPayable": str(payment.amount),
            "paidOn": utcnow().isoformat(),
            "paymentStatus": "PAID",
            "paymentMethod": "CARD",
            "currency": "NGN",
            "customer": {"email": payment.customer_email, "name": "Test Customer"},
        }
        data.update(overrides)
        return data

    return _payload


class FakeGateway:
    """In-memory stand-in for the gateway's merchant API, served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.transactions: list[dict] = []
        self.settlements: list[dict] = []
        self.queries: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.failures: list[int] = []
        self.token_counter = 0
        self.expires_in = 3600
        self.page_size = 2

    @staticmethod
    def _ok(body) -> httpx.Response:
        return httpx.Response(
            200,
            json={"requestSuccessful": True, "responseMessage": "success", "responseCode": "0", "responseBody": body},
        )

    def _page(self, items: list[dict], request: httpx.Request) -> httpx.Response:
        page = int(request.url.params.get("page", 0))
        size = self.page_size
        chunk = items[page * size : (page + 1) * size]
        total_pages = max((len(items) + size - 1) // size, 1)
        return self._ok(
            {
                "content": chunk,
                "pageable": {"pageNumber": page, "pageSize": size},
                "totalElements": len(items),
                "totalPages": total_pages,
            }
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/auth/login"):
            self.token_counter += 1
            return self._ok({"accessToken": f"token-{self.token_counter}", "expiresIn": self.expires_in})
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"requestSuccessful": False})
        if path.endswith("/init-transaction"):
            body = json.loads(request.content)
            reference = body["paymentReference"]
            return self._ok(
                {
                    "transactionReference": f"MNFY|{reference}",
                    "paymentReference": reference,
                    "checkoutUrl": f"https://checkout.test/{reference}",
                    "enabledPaymentMethod": body.get("paymentMethods", []),
                }
            )
        if path.endswith("/transactions/query"):
            reference = request.url.params.get("paymentReference")
            if reference not in self.queries:
                return httpx.Response(404, json={"requestSuccessful": False, "responseMessage": "not found"})
            return self._ok(self.queries[reference])
        if path.endswith("/merchant/transactions"):
            return self._page(self.transactions, request)
        if path.endswith("/merchant/settlements"):
            return self._page(self.settlements, request)
        return httpx.Response(404, json={"requestSuccessful": False})

    def client(self) -> GatewayClient:
        async def _no_sleep(_: float) -> None:
            return None

        return GatewayClient(
            get_settings(),
            transport=httpx.MockTransport(self.handler),
            sleep=_no_sleep,
        )


@pytest.fixture
def fake_gateway() -> Iterator[FakeGateway]:
    gateway = FakeGateway()

    async def _client() -> AsyncIterator[GatewayClient]:
        async with gateway.client() as gateway_client:
            yield gateway_client

    app.dependency_overrides[get_gateway_client] = _client
    yield gateway
    app.dependency_overrides.pop(get_gateway_client, None)

