import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="societix-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/societix-test.db"
os.environ["PAYSESSION_BACKEND"] = "sql"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ["MOCK_WEBHOOK_URL"] = "http://testserver/payments/webhook"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "test-admin-pw"
os.environ["ADMIN_JWT_SECRET"] = "test-jwt-secret"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["RESEND_API_KEY"] = ""
os.environ["DB_GATE_LIMIT"] = "64"
os.environ["LOG_LEVEL"] = "WARNING"

from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import text  # noqa: E402

from societix import server  # noqa: E402
from societix.helpers import new_id  # noqa: E402
from societix.mailer import LogMailer  # noqa: E402
from societix.model import events as event_ops  # noqa: E402
from societix.model.db import Base  # noqa: E402
from societix.model.paymentsession import new_store  # noqa: E402
from societix.model.paymentsession._sql import create_schema  # noqa: E402
from societix.model.purchase import CheckoutSession, PurchaseIntent  # noqa


@pytest.fixture
async def db():
    async with server.engine.begin() as conn:
        await conn.execute(text("DROP TABLE IF EXISTS checkout_sessions"))
        await conn.execute(
            text("DROP TABLE IF EXISTS checkout_sessions_pending")
        )
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    yield
    # aiosqlite connections belong to this test's loop
    await server.engine.dispose()


@pytest.fixture
async def session(db):
    async with server.SessionAsync() as s:
        yield s


@pytest.fixture
async def store(db):
    async with server.SessionAsync() as s:
        yield new_store(db=s, gated=server.gated)


@pytest.fixture
def mailer():
    m = LogMailer()
    server.app.state.mailer = m
    return m


@pytest.fixture
async def client(db, mailer):
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        # mock webhooks loop back into the app
        server.app.state.http = c
        yield c
    server.app.state.http = None


@pytest.fixture
def make_event(session):
    async def _make(**kw):
        fields = dict(
            name="Spring Ball",
            description="Black tie optional",
            location="Great Hall",
            event_date=date(2030, 5, 1),
            event_time="19:00-23:00",
            price=Decimal("12.50"),
            capacity=10,
        )
        fields.update(kw)
        return await event_ops.create_event(session, fields)
    return _make


@pytest.fixture
def paid_session():
    def _make(event_id, quantity=1, name="Ada Lovelace",
              email="ada@example.com", phone=None, session_id=None,
              order_id=None):
        intent = PurchaseIntent(
            order_id=order_id or new_id(),
            event_id=event_id,
            buyer_name=name,
            buyer_email=email,
            buyer_phone=phone,
            quantity=quantity,
        )
        return CheckoutSession(
            session_id=session_id or f"cs_test_{new_id()}",
            paid=True,
            metadata=intent.to_metadata(),
            customer_email=email,
            amount_total=1250 * quantity,
        )
    return _make
