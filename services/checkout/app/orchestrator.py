"""
Saga Orchestrator — 在庫引き当て・決済 Saga

決済ゲートウェイ（お金の正）と台帳（在庫・注文の正）の間には
分散トランザクションが無い。副作用の順序と補償トランザクションで
次の 2 点を保証する:
  - 引き当てていない商品の代金を請求しない
  - 決済が失敗・偽造されたときに引き当てた在庫を失わない

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  create_intent                                               │
  │   1. 在庫確認        ── 不足 → InsufficientStock (副作用なし) │
  │   2. 在庫引き当て    ── 競合で失敗 → InsufficientStock       │
  │   3. 支払い意図作成  ── 失敗 → 在庫解放 → GatewayUnavailable │
  │                                                              │
  │  complete                                                    │
  │   4. 署名検証        ── 偽造 → 在庫解放・注文キャンセル       │
  │   5. 注文読み込み    ── 無い → OrderNotFound (在庫は引き当てのまま) │
  │   6. 引き当て確認    ── 不足 → 在庫解放・注文キャンセル・返金 │
  │   7. 金額確認        ── 不一致 → 在庫解放・注文キャンセル・返金 │
  │   8. 注文確定        (confirmed/confirmed + 引き当て確定)     │
  └──────────────────────────────────────────────────────────────┘

補償はそれぞれ独立したベストエフォート。在庫解放が失敗しても
注文キャンセルと返金は実行し、返金が失敗しても解放は戻さない。
返金の失敗は refund_retry キューに積み、レスポンスの warnings で返す。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import inventory, ledger
from .errors import (
    GatewayError,
    GatewayUnavailable,
    InsufficientStock,
    InvalidInput,
    LedgerUnavailable,
    OrderNotFound,
    SignatureMismatch,
)
from .events import RefundRequested
from .gateway import RazorpayGateway, to_minor_units
from .models import Order, OrderItem, Reservation, ReservationStatus, Status
from .signature import SignatureVerifier

logger = logging.getLogger(__name__)

SAGA_CHANNEL = "saga_events"
REFUND_RETRY_QUEUE = "refund_retry"

SIGNATURE_MISMATCH = "signature_mismatch"
INSUFFICIENT_STOCK = "insufficient_stock"
AMOUNT_MISMATCH = "amount_mismatch"
ORDER_ALREADY_CLOSED = "order_already_closed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _step(saga_log: list[dict], action: str) -> dict:
    entry = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": _now(),
    }
    saga_log.append(entry)
    return entry


def _fail(entry: dict, error: str) -> None:
    entry["status"] = "FAILED"
    entry["error"] = error


class CheckoutOrchestrator:
    """引き当て → 支払い → 検証 → 確定/補償 の Saga オーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: RazorpayGateway,
        verifier: SignatureVerifier,
        redis: aioredis.Redis,
        currency: str,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.verifier = verifier
        self.redis = redis
        self.currency = currency

    # ── 支払い意図の作成 ────────────────────────────

    async def create_intent(
        self,
        amount: int,
        items: list[OrderItem],
        order_id: str | None = None,
    ) -> dict:
        """
        在庫を引き当ててからゲートウェイに支払い意図を作成する。

        amount は最小通貨単位の正の整数。
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidInput("Amount is required and must be a positive integer.")
        if not items:
            raise InvalidInput("At least one item is required.")

        saga_log: list[dict] = []
        reservation_id = uuid4().hex
        try:
            return await self._create_intent(amount, items, order_id, reservation_id, saga_log)
        except SQLAlchemyError as e:
            logger.exception("Ledger failure while creating intent (reservation=%s)", reservation_id)
            raise LedgerUnavailable(str(e), saga_log) from e

    async def _create_intent(
        self,
        amount: int,
        items: list[OrderItem],
        order_id: str | None,
        reservation_id: str,
        saga_log: list[dict],
    ) -> dict:
        # ── Step 1: 在庫確認 ────────────────────────
        entry = _step(saga_log, "CheckAvailability")
        async with self.session_factory() as session:
            check = await inventory.check_availability(session, items)
        if not check["available"]:
            _fail(entry, check["reason"])
            await self._publish_saga_event("IntentRejected", reservation_id, saga_log)
            raise InsufficientStock(check["item_id"], check["reason"], saga_log)
        entry["status"] = "COMPLETED"

        # ── Step 2: 在庫引き当て ────────────────────
        entry = _step(saga_log, "ReserveStock")
        async with self.session_factory() as session:
            reserved = await inventory.reserve_stock(session, reservation_id, items, order_id)
        if not reserved["success"]:
            # 確認後に他の注文が在庫を取った。ロールバック済みなので解放は不要。
            _fail(entry, reserved["reason"])
            await self._publish_saga_event("IntentRejected", reservation_id, saga_log)
            raise InsufficientStock(reserved["item_id"], reserved["reason"], saga_log)
        entry["status"] = "COMPLETED"

        # ── Step 3: 支払い意図を作成 ────────────────
        entry = _step(saga_log, "CreatePaymentIntent")
        reference = order_id or reservation_id
        try:
            intent = await self.gateway.create_intent(
                amount,
                self.currency,
                receipt=reference,
                idempotency_key=f"{reference}:intent:{reserved['attempt']}",
            )
        except GatewayError as e:
            _fail(entry, str(e))
            await self._release(reservation_id, saga_log)
            await self._publish_saga_event("IntentFailed", reservation_id, saga_log)
            raise GatewayUnavailable(str(e), saga_log) from e
        entry["status"] = "COMPLETED"

        # ── Step 4: 引き当てに支払い意図を紐付け ────
        entry = _step(saga_log, "BindIntent")
        try:
            async with self.session_factory() as session:
                await inventory.bind_intent(
                    session, reservation_id, intent.gateway_order_id, intent.amount
                )
        except SQLAlchemyError as e:
            _fail(entry, str(e))
            logger.exception("Failed to bind intent %s to reservation %s", intent.gateway_order_id, reservation_id)
            await self._release(reservation_id, saga_log)
            await self._publish_saga_event("IntentFailed", reservation_id, saga_log)
            raise LedgerUnavailable(str(e), saga_log) from e
        entry["status"] = "COMPLETED"

        await self._publish_saga_event("IntentIssued", intent.gateway_order_id, saga_log)
        return {
            "intent_ref": intent.gateway_order_id,
            "amount": intent.amount,
            "currency": intent.currency,
            "reservation_id": reservation_id,
            "saga_log": saga_log,
        }

    # ── 支払い完了の検証 ────────────────────────────

    async def complete(
        self,
        order_ref: str,
        payment_ref: str,
        signature: str,
        order_doc_id: str,
    ) -> dict:
        """
        クライアントの支払い完了の主張を検証し、注文を確定または補償する。

        注文の商品と金額は必ず台帳から読み直す。クライアントの入力は
        署名検証以外には使わない。
        """
        for name, value in (
            ("orderRef", order_ref),
            ("paymentRef", payment_ref),
            ("signature", signature),
            ("orderDocId", order_doc_id),
        ):
            if not isinstance(value, str) or not value:
                raise InvalidInput(f"Missing required field: {name}")

        saga_log: list[dict] = []
        try:
            return await self._complete(order_ref, payment_ref, signature, order_doc_id, saga_log)
        except SQLAlchemyError as e:
            logger.exception("Ledger failure while completing order %s", order_doc_id)
            raise LedgerUnavailable(str(e), saga_log) from e

    async def _complete(
        self,
        order_ref: str,
        payment_ref: str,
        signature: str,
        order_doc_id: str,
        saga_log: list[dict],
    ) -> dict:
        # ── Step 1: 署名検証 ────────────────────────
        entry = _step(saga_log, "VerifySignature")
        valid = self.verifier.verify(order_ref, payment_ref, signature)
        async with self.session_factory() as session:
            reservation = await inventory.find_reservation(session, order_ref)

        if not valid:
            _fail(entry, "Signature mismatch")
            logger.warning("Signature mismatch for order %s (intent=%s)", order_doc_id, order_ref)
            if reservation is not None and not reservation.belongs_to(order_doc_id):
                # 他の注文の引き当ては偽造された主張では解放しない
                reservation = None
            await self._compensate_forged(order_doc_id, reservation, saga_log)
            await self._publish_saga_event("SagaCompensated", order_doc_id, saga_log)
            raise SignatureMismatch("Payment signature mismatch", saga_log)
        entry["status"] = "COMPLETED"

        # ── Step 2: 注文を台帳から読み直す ──────────
        entry = _step(saga_log, "LoadOrder")
        async with self.session_factory() as session:
            order = await ledger.get_order(session, order_doc_id)
        if order is None:
            # 引き当ては残ったまま。自動で解放せず、手動の突き合わせに回す。
            _fail(entry, "Order not found")
            logger.error(
                "Order %s not found after verified payment %s; reservation %s left reserved",
                order_doc_id, payment_ref, reservation.id if reservation else None,
            )
            await self._publish_saga_event(
                "ReconciliationRequired",
                order_doc_id,
                saga_log,
                payment_id=payment_ref,
                reservation_id=reservation.id if reservation else None,
            )
            raise OrderNotFound("Order document not found", saga_log)
        if reservation is not None and not reservation.belongs_to(order.id):
            # 別の注文のための支払い意図。どちらの注文も在庫も動かさない。
            _fail(entry, "Intent belongs to another order")
            logger.warning(
                "Intent %s is bound to order %s, not %s; claim rejected",
                order_ref, reservation.order_id, order.id,
            )
            raise InvalidInput("orderRef does not belong to orderDocId", saga_log)
        entry["status"] = "COMPLETED"

        if order.is_terminal:
            return await self._replay_terminal(order, payment_ref, reservation, saga_log)

        if (
            reservation is None
            or reservation.status != ReservationStatus.RESERVED
            or order.invalid_lines
            or not inventory.covers(reservation, order.items)
        ):
            return await self._compensate_paid(
                order, payment_ref, reservation, INSUFFICIENT_STOCK, saga_log
            )

        if reservation.amount != to_minor_units(order.total_amount):
            # 請求額が台帳の totalAmount と違う。実際に支払われた額を返金する。
            logger.warning(
                "Intent %s charged %s but order %s totals %s",
                order_ref, reservation.amount, order.id, order.total_amount,
            )
            return await self._compensate_paid(
                order, payment_ref, reservation, AMOUNT_MISMATCH, saga_log,
                refund_amount=reservation.amount,
            )

        # ── Step 3: 注文確定 ────────────────────────
        entry = _step(saga_log, "FinalizeOrder")
        async with self.session_factory() as session:
            confirmed = await ledger.confirm_order(session, order.id, payment_ref, reservation.id)
        if not confirmed:
            # 別のリクエストが先に注文か引き当てを動かした
            _fail(entry, "Order or reservation no longer pending")
            async with self.session_factory() as session:
                current = await ledger.get_order(session, order.id)
            if current is None:
                raise OrderNotFound("Order document not found", saga_log)
            if current.is_terminal:
                return await self._replay_terminal(current, payment_ref, reservation, saga_log)
            return await self._compensate_paid(
                current, payment_ref, reservation, INSUFFICIENT_STOCK, saga_log
            )
        entry["status"] = "COMPLETED"

        logger.info("Order %s confirmed with payment %s", order.id, payment_ref)
        await self._publish_saga_event("SagaCompleted", order.id, saga_log)
        return {"status": "confirmed", "saga_log": saga_log}

    async def _replay_terminal(
        self,
        order: Order,
        payment_ref: str,
        reservation: Reservation | None,
        saga_log: list[dict],
    ) -> dict:
        """
        既に終端状態の注文への完了通知。注文の状態は変えない。

        同じ支払いの再送ならそのまま結果を返す。別の支払いなら
        商品の無い入金なので、この支払い意図の引き当てを戻して返金する。
        """
        if order.gateway_payment_id == payment_ref:
            if order.order_status == Status.CONFIRMED:
                return {"status": "confirmed", "saga_log": saga_log}
            return {
                "status": "compensated",
                "reason": order.cancellation_reason,
                "refund": None,
                "warnings": [],
                "saga_log": saga_log,
            }

        logger.warning(
            "Verified payment %s for closed order %s (status=%s); refunding",
            payment_ref, order.id, order.order_status.value,
        )
        if reservation is not None and reservation.status == ReservationStatus.RESERVED:
            await self._release(reservation.id, saga_log)
        refund = await self._refund(order, payment_ref, saga_log)
        await self._publish_saga_event("SagaCompensated", order.id, saga_log)
        return self._compensated(ORDER_ALREADY_CLOSED, refund, saga_log)

    # ── 補償トランザクション ────────────────────────

    async def _compensate_forged(
        self,
        order_doc_id: str,
        reservation: Reservation | None,
        saga_log: list[dict],
    ) -> None:
        """偽造: 在庫を戻して注文を cancelled/cancelled にする。返金はしない。"""
        if reservation is not None:
            await self._release(reservation.id, saga_log)

        entry = _step(saga_log, "CancelOrder (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                cancelled = await ledger.cancel_order(
                    session, order_doc_id, Status.CANCELLED, SIGNATURE_MISMATCH
                )
            entry["status"] = "COMPLETED" if cancelled else "SKIPPED"
        except SQLAlchemyError as e:
            _fail(entry, str(e))
            logger.exception("Failed to cancel order %s after signature mismatch", order_doc_id)

    async def _compensate_paid(
        self,
        order: Order,
        payment_ref: str,
        reservation: Reservation | None,
        reason: str,
        saga_log: list[dict],
        refund_amount: int | None = None,
    ) -> dict:
        """
        入金済みだが確定できない（引き当てが無い、金額が違う）: 在庫を戻し、
        注文を confirmed/cancelled にして返金する。

        返金額は refund_amount が無ければ台帳上の totalAmount。
        """
        if reservation is not None:
            await self._release(reservation.id, saga_log)

        entry = _step(saga_log, "CancelOrder (COMPENSATING)")
        cancelled = None
        try:
            async with self.session_factory() as session:
                cancelled = await ledger.cancel_order(
                    session, order.id, Status.CONFIRMED, reason, payment_ref
                )
            entry["status"] = "COMPLETED" if cancelled else "SKIPPED"
        except SQLAlchemyError as e:
            _fail(entry, str(e))
            logger.exception("Failed to cancel order %s (%s)", order.id, reason)

        if cancelled is False:
            # 同時に別のリクエストが注文を終端状態にした
            async with self.session_factory() as session:
                current = await ledger.get_order(session, order.id)
            if current is not None and current.is_terminal:
                return await self._replay_terminal(current, payment_ref, reservation, saga_log)

        refund = await self._refund(order, payment_ref, saga_log, refund_amount)
        await self._publish_saga_event("SagaCompensated", order.id, saga_log)
        return self._compensated(reason, refund, saga_log)

    async def _release(self, reservation_id: str, saga_log: list[dict]) -> bool:
        entry = _step(saga_log, "ReleaseStock (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                result = await inventory.release_stock(session, reservation_id)
        except SQLAlchemyError as e:
            _fail(entry, str(e))
            logger.exception("Failed to release reservation %s", reservation_id)
            await self._publish_saga_event(
                "ReconciliationRequired", reservation_id, saga_log, reservation_id=reservation_id
            )
            return False
        entry["status"] = "COMPLETED" if result["released"] else "SKIPPED"
        return True

    async def _refund(
        self,
        order: Order,
        payment_ref: str,
        saga_log: list[dict],
        amount: int | None = None,
    ) -> dict:
        """
        返金サブタスク

        金額は指定が無ければ台帳の totalAmount から計算する。失敗しても例外にせず、
        結果を dict で返して再試行キューに積む。
        """
        entry = _step(saga_log, "RefundPayment (COMPENSATING)")
        if amount is None:
            amount = to_minor_units(order.total_amount)
        try:
            async with self.session_factory() as session:
                attempt = await ledger.next_refund_attempt(session, order.id)
        except SQLAlchemyError:
            logger.exception("Failed to bump refund attempt for order %s", order.id)
            attempt = order.refund_attempts + 1

        try:
            data = await self.gateway.refund(
                payment_ref,
                amount,
                order.currency,
                idempotency_key=f"{order.id}:refund:{attempt}",
            )
        except GatewayError as e:
            _fail(entry, str(e))
            logger.warning("Refund failed for order %s payment %s: %s", order.id, payment_ref, e)
            queued = await self._enqueue_refund_retry(order, payment_ref, amount, attempt, str(e))
            return {
                "status": "failed",
                "amount": amount,
                "currency": order.currency,
                "attempt": attempt,
                "error": str(e),
                "queued": queued,
            }

        entry["status"] = "COMPLETED"
        logger.info("Refund issued for order %s payment %s", order.id, payment_ref)
        return {
            "status": "issued",
            "refund_id": data.get("id"),
            "amount": amount,
            "currency": order.currency,
            "attempt": attempt,
        }

    @staticmethod
    def _compensated(reason: str, refund: dict, saga_log: list[dict]) -> dict:
        warnings = []
        if refund["status"] == "failed":
            warnings.append({"kind": "refund_failed", **refund})
        return {
            "status": "compensated",
            "reason": reason,
            "refund": refund,
            "warnings": warnings,
            "saga_log": saga_log,
        }

    # ── Redis への通知 ──────────────────────────────

    async def _enqueue_refund_retry(
        self,
        order: Order,
        payment_ref: str,
        amount: int,
        attempt: int,
        error: str,
    ) -> bool:
        """失敗した返金を外部ジョブ用の再試行キューに積む。"""
        event = RefundRequested(
            order_id=order.id,
            payment_id=payment_ref,
            amount=amount,
            currency=order.currency,
            attempt=attempt,
            error=error,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await self.redis.rpush(REFUND_RETRY_QUEUE, event.model_dump_json())
        except RedisError:
            logger.exception("Failed to enqueue refund retry for order %s", order.id)
            return False
        return True

    async def _publish_saga_event(
        self,
        event_type: str,
        reference: str,
        saga_log: list[dict],
        **extra,
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        try:
            await self.redis.publish(
                SAGA_CHANNEL,
                json.dumps(
                    {
                        "event_type": event_type,
                        "reference": reference,
                        "saga_log": saga_log,
                        **extra,
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish saga event %s for %s", event_type, reference)
