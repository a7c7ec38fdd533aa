from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app import inventory, ledger, schema
from app.config import Settings
from app.errors import GatewayError
from app.gateway import PaymentIntent, RazorpayGateway
from app.models import OrderItem
from app.orchestrator import CheckoutOrchestrator
from app.signature import SignatureVerifier

SECRET = "test_key_secret"
GATEWAY_URL = "https://api.razorpay.test/v1"


def make_gateway(handler) -> RazorpayGateway:
    """httpx.MockTransport で応答を差し替えた本物のゲートウェイクライアント"""
    settings = Settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        database_url="sqlite+aiosqlite://",
        gateway_base_url=GATEWAY_URL,
    )
    client = httpx.AsyncClient(
        base_url=GATEWAY_URL,
        auth=("rzp_test_key", "rzp_test_secret"),
        transport=httpx.MockTransport(handler),
    )
    return RazorpayGateway(settings, client)


class LedgerFixture:
    """テスト用に台帳へ直接読み書きするヘルパー"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def seed_stock(self, **quantities: int) -> None:
        async with self.session_factory() as session:
            for item_id, quantity in quantities.items():
                await session.execute(
                    text("INSERT INTO stock_items (id, name, quantity) VALUES (:id, :id, :qty)"),
                    {"id": item_id, "qty": quantity},
                )
            await session.commit()

    async def quantity(self, item_id: str) -> int | None:
        async with self.session_factory() as session:
            stock = await inventory.get_stock_item(session, item_id)
        return stock.quantity if stock else None

    async def create_order(self, order_id: str, items: dict[str, int], total: str = "500.00"):
        async with self.session_factory() as session:
            return await ledger.create_order(
                session,
                order_id,
                [OrderItem(item_id=k, quantity=v) for k, v in items.items()],
                Decimal(total),
                "INR",
            )

    async def order(self, order_id: str):
        async with self.session_factory() as session:
            return await ledger.get_order(session, order_id)

    async def delete_order(self, order_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(text("DELETE FROM orders WHERE id = :id"), {"id": order_id})
            await session.commit()

    async def reservation(self, gateway_order_id: str):
        async with self.session_factory() as session:
            return await inventory.find_reservation(session, gateway_order_id)


class FakeGateway:
    """呼び出しを記録するだけのゲートウェイ"""

    def __init__(self):
        self.intents: list[dict] = []
        self.refunds: list[dict] = []
        self.fail_intent = False
        self.fail_refund = False

    async def create_intent(self, amount, currency, receipt, idempotency_key):
        if self.fail_intent:
            raise GatewayError("Gateway timeout: read timed out")
        self.intents.append(
            {"amount": amount, "currency": currency, "receipt": receipt, "key": idempotency_key}
        )
        return PaymentIntent(
            gateway_order_id=f"order_{len(self.intents)}",
            amount=amount,
            currency=currency,
        )

    async def refund(self, payment_id, amount, currency, idempotency_key):
        self.refunds.append(
            {"payment_id": payment_id, "amount": amount, "currency": currency, "key": idempotency_key}
        )
        if self.fail_refund:
            raise GatewayError("Gateway returned 502 for refund", status_code=502)
        return {"id": f"rfnd_{len(self.refunds)}", "amount": amount}


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await schema.create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    return LedgerFixture(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
def orchestrator(session_factory, gateway, redis):
    return CheckoutOrchestrator(
        session_factory, gateway, SignatureVerifier(SECRET), redis, "INR"
    )
