"""
Checkout Service — 注文台帳 (Ledger Store)

注文の読み取りと状態遷移。注文の作成自体は外部の注文受付フローの
責務で、ここでは pending の注文を確定・キャンセルするだけ。

終端状態の注文は二度と遷移しない: すべての更新は
order_status = 'pending' を条件にした UPDATE で行う。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, inventory
from .events import OrderCancelled, OrderConfirmed
from .models import Order, OrderItem, Status, dump_items


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    return Order.from_row(row) if row else None


async def create_order(
    session: AsyncSession,
    order_id: str,
    items: list[OrderItem],
    total_amount: Decimal,
    currency: str,
) -> Order:
    """pending/pending の注文を作成する（注文受付フロー・テスト用）。"""
    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO orders
                (id, items, total_amount, currency, payment_status, order_status,
                 refund_attempts, created_at, updated_at)
            VALUES
                (:id, :items, :total_amount, :currency, 'pending', 'pending', 0, :now, :now)
        """).bindparams(bindparam("total_amount", type_=Numeric(12, 2))),
        {
            "id": order_id,
            "items": dump_items(items),
            "total_amount": total_amount,
            "currency": currency,
            "now": now,
        },
    )
    await session.commit()
    return Order(id=order_id, items=items, total_amount=total_amount, currency=currency)


async def confirm_order(
    session: AsyncSession,
    order_id: str,
    payment_id: str,
    reservation_id: str,
) -> bool:
    """
    注文確定コマンド

    注文を confirmed/confirmed にし、引き当てを committed にする。
    両方を 1 トランザクションで行い、どちらかが条件に合わなければ
    ロールバックして False を返す。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            UPDATE orders
            SET payment_status = 'confirmed', order_status = 'confirmed',
                gateway_payment_id = :payment_id, updated_at = :now
            WHERE id = :id AND order_status = 'pending'
        """),
        {"payment_id": payment_id, "now": now, "id": order_id},
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    if not await inventory.commit_reservation(session, reservation_id, order_id):
        await session.rollback()
        return False

    await event_store.append_event(
        session,
        order_id,
        "Order",
        OrderConfirmed(order_id=order_id, payment_id=payment_id, timestamp=now),
    )
    await session.commit()
    return True


async def cancel_order(
    session: AsyncSession,
    order_id: str,
    payment_status: Status,
    reason: str,
    payment_id: str | None = None,
) -> bool:
    """
    注文キャンセルコマンド（Saga の補償トランザクション）

    payment_status=confirmed でのキャンセルは「入金済み・商品なし」を
    意味するので、呼び出し側が必ず返金を試みること。
    """
    now = datetime.now(timezone.utc)
    params = {
        "payment_status": payment_status.value,
        "reason": reason,
        "now": now,
        "id": order_id,
    }
    payment_clause = ""
    if payment_id is not None:
        payment_clause = "gateway_payment_id = :payment_id,"
        params["payment_id"] = payment_id
    result = await session.execute(
        text(f"""
            UPDATE orders
            SET payment_status = :payment_status, order_status = 'cancelled',
                cancellation_reason = :reason, {payment_clause}
                updated_at = :now
            WHERE id = :id AND order_status = 'pending'
        """),
        params,
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    await event_store.append_event(
        session,
        order_id,
        "Order",
        OrderCancelled(
            order_id=order_id,
            payment_status=payment_status.value,
            reason=reason,
            payment_id=payment_id,
            timestamp=now,
        ),
    )
    await session.commit()
    return True


async def next_refund_attempt(session: AsyncSession, order_id: str) -> int:
    """返金試行回数を 1 増やして返す（冪等キーに使う）。"""
    await session.execute(
        text("""
            UPDATE orders
            SET refund_attempts = refund_attempts + 1
            WHERE id = :id
        """),
        {"id": order_id},
    )
    result = await session.execute(
        text("SELECT refund_attempts FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    attempt = result.scalar() or 0
    await session.commit()
    return attempt


def to_read_model(order: Order) -> dict:
    return {
        "id": order.id,
        "items": [{"id": i.item_id, "quantity": i.quantity} for i in order.items],
        "totalAmount": str(order.total_amount),
        "currency": order.currency,
        "paymentStatus": order.payment_status.value,
        "orderStatus": order.order_status.value,
        "gatewayPaymentId": order.gateway_payment_id,
        "cancellationReason": order.cancellation_reason,
    }
