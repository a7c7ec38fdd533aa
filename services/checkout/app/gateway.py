"""
Checkout Service — 決済ゲートウェイクライアント (Razorpay)

ゲートウェイ呼び出しは取り消せないリモート副作用。

  - タイムアウトは必ず上限を設け、タイムアウトは失敗として扱う
  - 自動リトライはしない（二重返金・二重請求は取りこぼしより悪い）
  - 呼び出しごとに冪等キー (注文 ID + 試行回数) を付ける

失敗はすべて GatewayError に変換する。httpx の例外をそのまま
呼び出し側に漏らさない。
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

import httpx
from pydantic import BaseModel, ValidationError

from .config import Settings
from .errors import GatewayError

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class PaymentIntent(BaseModel):
    gateway_order_id: str
    amount: int
    currency: str


def to_minor_units(amount: Decimal) -> int:
    """主単位の金額 (例: 120.50 INR) を最小単位 (12050 paise) にする。"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RazorpayGateway:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            base_url=settings.gateway_base_url,
            auth=(settings.razorpay_key_id, settings.razorpay_key_secret.get_secret_value()),
            timeout=httpx.Timeout(settings.gateway_timeout),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_intent(
        self,
        amount: int,
        currency: str,
        receipt: str,
        idempotency_key: str,
    ) -> PaymentIntent:
        """
        支払い意図 (Razorpay Order) を作成する。

        amount は最小通貨単位の正の整数。
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValueError("amount must be a positive integer in minor units")

        data = await self._post(
            "/orders",
            {
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
            },
            idempotency_key,
        )
        _require_id(data, "/orders")
        try:
            return PaymentIntent(
                gateway_order_id=data["id"],
                amount=data.get("amount", amount),
                currency=data.get("currency", currency),
            )
        except ValidationError as e:
            raise GatewayError("Gateway returned a malformed order for /orders", body=data) from e

    async def refund(
        self,
        payment_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> dict:
        """入金済みの支払いを返金する。"""
        path = f"/payments/{payment_id}/refund"
        data = await self._post(
            path,
            {"amount": amount, "speed": "normal", "notes": {"currency": currency}},
            idempotency_key,
        )
        _require_id(data, path)
        return data

    async def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        try:
            resp = await self._client.post(
                path,
                json=payload,
                headers={IDEMPOTENCY_HEADER: idempotency_key},
            )
        except httpx.TimeoutException as e:
            logger.warning("Gateway timeout on %s (key=%s)", path, idempotency_key)
            raise GatewayError(f"Gateway timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("Gateway transport error on %s: %s", path, e)
            raise GatewayError(f"Gateway transport error: {e}") from e

        if resp.is_error:
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            raise GatewayError(
                f"Gateway returned {resp.status_code} for {path}",
                status_code=resp.status_code,
                body=body,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise GatewayError(f"Gateway returned a non-object body for {path}", body=data)
        return data


def _require_id(data: dict, path: str) -> None:
    # 2xx でも id の無い応答は成功として扱わない
    if not isinstance(data.get("id"), str) or not data["id"]:
        raise GatewayError(f"Gateway response for {path} has no id", body=data)
