"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

# --- Config env par défaut
os.environ.setdefault("DATABASE_URL", "sqlite:///./riciti_test.db")
os.environ.setdefault("MPESA_CALLBACK_SECRET", "test-callback-secret")
os.environ.setdefault("MPESA_ENVIRONMENT", "sandbox")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("RICITI_ENV", "dev")

from app.main import app  # noqa: E402
from app.db import get_db, make_sessionmaker  # noqa: E402
from app.models import Invoice, Payment, PaymentStatus  # noqa: E402
from app.schemas.invoice import InvoiceCreate, LineItemCreate  # noqa: E402
from app.security import Tenant  # noqa: E402
from app.services.invoices import create_invoice  # noqa: E402
from app.services.mpesa import StkPushResponse, StkQueryResponse, get_mpesa_client  # noqa: E402
from app.services.rate_limit import reset_limiters  # noqa: E402

DB_PATH = Path("./riciti_test.db")
CALLBACK_SECRET = os.environ["MPESA_CALLBACK_SECRET"]


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parents[1] / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Reset DB fichier au début de la session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False, "timeout": 15},
    future=True,
)
TestingSessionLocal = make_sessionmaker(engine)

# --- (2) Construire le schéma via Alembic uniquement
_run_migrations()


class FakeMpesaClient:
    """Stands in for the Daraja client; records calls and returns canned answers."""

    def __init__(self) -> None:
        self.pushes: list[dict] = []
        self.queries: list[str] = []
        self.push_error: Exception | None = None
        self.query_error: Exception | None = None
        self.query_result_code = "1037"
        self.query_result_desc = "DS timeout user cannot be reached"

    def initiate_stk_push(self, *, phone_number, amount, account_reference, callback_url, transaction_desc=None):
        if self.push_error is not None:
            raise self.push_error
        checkout_request_id = f"ws_CO_{uuid4().hex[:16]}"
        self.pushes.append(
            {
                "phone_number": phone_number,
                "amount": amount,
                "account_reference": account_reference,
                "callback_url": callback_url,
                "checkout_request_id": checkout_request_id,
            }
        )
        return StkPushResponse(
            merchant_request_id=f"mr-{uuid4().hex[:8]}",
            checkout_request_id=checkout_request_id,
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    def query_stk_push(self, checkout_request_id):
        self.queries.append(checkout_request_id)
        if self.query_error is not None:
            raise self.query_error
        return StkQueryResponse(
            checkout_request_id=checkout_request_id,
            result_code=self.query_result_code,
            result_desc=self.query_result_desc,
            response_code="0",
            response_description="The service request has been accepted successsfully",
        )


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as connection:
            connection.execute(text("DELETE FROM payments"))
            connection.execute(text("DELETE FROM line_items"))
            connection.execute(text("DELETE FROM invoices"))


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    # One session per request, as in production.
    def _get_db() -> Iterator[Session]:
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Iterator[None]:
    reset_limiters()
    yield
    reset_limiters()


@pytest.fixture
def fake_mpesa() -> Iterator[FakeMpesaClient]:
    fake = FakeMpesaClient()
    app.dependency_overrides[get_mpesa_client] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_mpesa_client, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def callback_secret() -> str:
    return CALLBACK_SECRET


@pytest.fixture
def make_invoice(db_session: Session) -> Callable[..., Invoice]:
    """Factory creating a guest invoice with a single line item."""

    def _factory(*, rate: str = "1500", quantity: str = "1", guest_session_id: str | None = None) -> Invoice:
        payload = InvoiceCreate(
            from_name="Duka Moja",
            to_name="Acme Ltd",
            items=[LineItemCreate(description="Consulting", quantity=Decimal(quantity), rate=Decimal(rate))],
        )
        tenant = Tenant(guest_session_id=guest_session_id or str(uuid4()))
        return create_invoice(db_session, payload, tenant)

    return _factory


@pytest.fixture
def make_payment(db_session: Session) -> Callable[..., Payment]:
    """Factory inserting a payment row directly, bypassing the ledger checks."""

    def _factory(
        invoice: Invoice,
        *,
        status: PaymentStatus = PaymentStatus.PROCESSING,
        amount: str = "10",
        checkout_request_id: str | None = None,
    ) -> Payment:
        payment = Payment(
            invoice_id=invoice.id,
            phone_number="254712345678",
            amount=Decimal(amount),
            currency="KES",
            status=status,
            merchant_request_id=f"mr-{uuid4().hex[:8]}",
            checkout_request_id=checkout_request_id or f"ws_CO_{uuid4().hex[:16]}",
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _factory


def stk_callback(
    checkout_request_id: str,
    *,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    amount: object = 10,
    receipt: str = "NLJ7RT61SV",
    transaction_date: object = 20241219102115,
    phone: object = 254712345678,
) -> dict:
    """Build a Daraja STK callback envelope."""

    callback: dict = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": transaction_date},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def callback_payload() -> Callable[..., dict]:
    return stk_callback


@pytest.fixture
def session_factory() -> Callable[[], Session]:
    return TestingSessionLocal
