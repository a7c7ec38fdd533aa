"""
Checkout Service — エラー分類

ストアやゲートウェイの生の例外はオーケストレーターの境界で
以下のいずれかに変換される。HTTP 層は status_code と body() を
そのままレスポンスにする。

RefundFailed は例外ではない。返金失敗はレスポンスの warnings に
載るだけで、既に決まった注文・在庫の状態は変えない。
"""


class CheckoutError(Exception):
    kind = "checkout_error"
    status_code = 500

    def __init__(self, message: str = "", saga_log: list[dict] | None = None):
        super().__init__(message or self.kind)
        self.saga_log = saga_log or []

    def body(self) -> dict:
        return {"error": self.kind}


class InvalidInput(CheckoutError):
    """クライアントの入力エラー（副作用なし）"""

    kind = "invalid_input"
    status_code = 400

    def body(self) -> dict:
        return {"error": str(self)}


class InsufficientStock(CheckoutError):
    """在庫不足（引き当て無し、または解放済み）"""

    kind = "insufficient_stock"
    status_code = 400

    def __init__(self, item_id: str, reason: str, saga_log: list[dict] | None = None):
        super().__init__(f"{item_id}: {reason}", saga_log)
        self.item_id = item_id
        self.reason = reason

    def body(self) -> dict:
        return {"error": self.kind, "item_id": self.item_id, "reason": self.reason}


class SignatureMismatch(CheckoutError):
    """署名不一致（補償: 在庫解放のみ、返金なし）"""

    kind = "signature_mismatch"
    status_code = 400

    def body(self) -> dict:
        return {"status": "cancelled", "reason": self.kind}


class GatewayUnavailable(CheckoutError):
    """決済ゲートウェイ障害（補償: 在庫解放、リトライ可能）"""

    kind = "gateway_unavailable"
    status_code = 502


class OrderNotFound(CheckoutError):
    kind = "order_not_found"
    status_code = 404


class LedgerUnavailable(CheckoutError):
    kind = "ledger_unavailable"
    status_code = 500


class GatewayError(Exception):
    """ゲートウェイ呼び出しの失敗。オーケストレーターの外には出さない。"""

    def __init__(self, message: str, status_code: int | None = None, body: object = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
