"""
Checkout Service — FastAPI エントリーポイント

在庫引き当て・決済 Saga を HTTP API として公開する。

  POST /orders/intent    在庫を引き当てて支払い意図を作成
  POST /orders/complete  支払い完了の署名を検証して確定 or 補償
  GET  /health

設定は起動時に Settings.from_env() で一度だけ読み、lifespan で
DB エンジン・Redis・ゲートウェイクライアントを組み立てて
オーケストレーターに渡す。

    uvicorn app.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import inventory, ledger, schema
from .config import Settings
from .errors import CheckoutError, OrderNotFound
from .gateway import RazorpayGateway
from .models import OrderItem
from .orchestrator import CheckoutOrchestrator
from .signature import SignatureVerifier

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class IntentItem(BaseModel):
    id: str = Field(min_length=1)
    quantity: StrictInt = Field(gt=0)


class CreateIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: StrictInt = Field(gt=0)
    items: list[IntentItem] = Field(min_length=1)
    order_doc_id: str | None = Field(default=None, alias="orderDocId")


class CompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_ref: str = Field(min_length=1, alias="orderRef")
    payment_ref: str = Field(min_length=1, alias="paymentRef")
    signature: str = Field(min_length=1)
    order_doc_id: str = Field(min_length=1, alias="orderDocId")


# ── Dependencies ─────────────────────────────────


def get_orchestrator(request: Request) -> CheckoutOrchestrator:
    return request.app.state.orchestrator


def get_session_factory(request: Request) -> sessionmaker:
    return request.app.state.session_factory


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        engine = create_async_engine(settings.database_url, echo=False)
        if settings.create_schema:
            await schema.create_tables(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
        gateway = RazorpayGateway(settings)
        verifier = SignatureVerifier(settings.razorpay_key_secret.get_secret_value())

        app.state.session_factory = async_session
        app.state.orchestrator = CheckoutOrchestrator(
            async_session, gateway, verifier, redis_pool, settings.currency
        )
        logger.info("Checkout service started (currency=%s)", settings.currency)
        yield
        await gateway.aclose()
        await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Checkout Service", lifespan=lifespan)

    # CORS 設定（フロントエンドのオリジンだけを許可）
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        return JSONResponse(status_code=exc.status_code, content=exc.body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            loc = ".".join(str(p) for p in errors[0]["loc"] if p != "body")
            message = f"{loc}: {errors[0]['msg']}" if loc else errors[0]["msg"]
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    # ── Saga Endpoints ───────────────────────────

    @app.post("/orders/intent", status_code=201)
    async def create_intent(
        req: CreateIntentRequest,
        orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    ):
        """在庫を引き当て、ゲートウェイに支払い意図を作成する"""
        result = await orchestrator.create_intent(
            req.amount,
            [OrderItem(item_id=i.id, quantity=i.quantity) for i in req.items],
            req.order_doc_id,
        )
        return {
            "intentRef": result["intent_ref"],
            "amount": result["amount"],
            "currency": result["currency"],
        }

    @app.post("/orders/complete")
    async def complete(
        req: CompleteRequest,
        orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    ):
        """支払い完了を検証し、注文を確定または補償する"""
        result = await orchestrator.complete(
            req.order_ref, req.payment_ref, req.signature, req.order_doc_id
        )
        result.pop("saga_log", None)
        return result

    # ── Query Endpoints ──────────────────────────

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(
        order_id: str,
        session_factory: sessionmaker = Depends(get_session_factory),
    ):
        async with session_factory() as session:
            order = await ledger.get_order(session, order_id)
        if order is None:
            raise OrderNotFound()
        return ledger.to_read_model(order)

    @app.get("/queries/stock/{item_id}")
    async def query_get_stock(
        item_id: str,
        session_factory: sessionmaker = Depends(get_session_factory),
    ):
        async with session_factory() as session:
            stock = await inventory.get_stock_item(session, item_id)
        if stock is None:
            raise HTTPException(404, "Item not found")
        return stock.model_dump()

    @app.get("/queries/stock")
    async def query_list_stock(session_factory: sessionmaker = Depends(get_session_factory)):
        async with session_factory() as session:
            return await inventory.list_stock(session)

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "ok"

    return app


if __name__ == "__main__":
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
