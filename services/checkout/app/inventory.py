"""
Checkout Service — 在庫引き当て (Stock Reservation)

在庫の確認(Check)・引き当て(Reserve)・解放(Release)を処理する。

引き当ては 1 トランザクションで:
  1. 引き当て記録 (reservations) を reserved で作成
  2. 商品ごとに条件付き減算 (quantity >= :qty の行だけ更新)
  3. どれか 1 つでも更新できなければロールバック（全件 or 無し）

check_availability は早期に断るための読み取りにすぎない。確認と
引き当ての間に他の注文が在庫を取る可能性がある (TOCTOU) ので、
実際のガードは条件付き減算の方。同じ商品への同時引き当ては
行ロックで直列化される。

解放は引き当て記録の状態を reserved → released に条件付きで
変えてから在庫を戻すので、何度呼んでも二重に戻らない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .events import ReservationCommitted, StockReleased, StockReserved
from .models import (
    OrderItem,
    Reservation,
    ReservationStatus,
    StockItem,
    dump_items,
    merge_items,
)

logger = logging.getLogger(__name__)


async def get_stock_item(session: AsyncSession, item_id: str) -> StockItem | None:
    result = await session.execute(
        text("SELECT id, quantity FROM stock_items WHERE id = :id"),
        {"id": item_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return StockItem(id=row.id, quantity=int(row.quantity or 0))


async def list_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT id, name, quantity, updated_at FROM stock_items ORDER BY id"),
    )
    return [
        {
            "id": row.id,
            "name": row.name,
            "quantity": int(row.quantity or 0),
            "updated_at": str(row.updated_at) if row.updated_at else None,
        }
        for row in result.fetchall()
    ]


async def check_availability(session: AsyncSession, items: list[OrderItem]) -> dict:
    """
    在庫確認（読み取りのみ）

    商品が存在しない、または数量が欠けている場合は在庫 0 とみなす。
    """
    for item in merge_items(items):
        stock = await get_stock_item(session, item.item_id)
        if stock is None:
            return {"available": False, "item_id": item.item_id, "reason": "Item not found"}
        if stock.quantity < item.quantity:
            return {
                "available": False,
                "item_id": item.item_id,
                "reason": f"Insufficient stock: requested={item.quantity}, available={stock.quantity}",
            }
    return {"available": True}


async def reserve_stock(
    session: AsyncSession,
    reservation_id: str,
    items: list[OrderItem],
    order_id: str | None = None,
) -> dict:
    """
    在庫引き当てコマンド（全件 or 無し）

    order_id を渡すと、その注文に対する何回目の引き当てかを attempt で返す。
    支払い意図の冪等キーはこの値から作る。
    """
    now = datetime.now(timezone.utc)
    items = merge_items(items)

    await session.execute(
        text("""
            INSERT INTO reservations (id, order_id, items, status, created_at, updated_at)
            VALUES (:id, :order_id, :items, :status, :now, :now)
        """),
        {
            "id": reservation_id,
            "order_id": order_id,
            "items": dump_items(items),
            "status": ReservationStatus.RESERVED.value,
            "now": now,
        },
    )

    for item in items:
        result = await session.execute(
            text("""
                UPDATE stock_items
                SET quantity = quantity - :qty, updated_at = :now
                WHERE id = :id AND quantity >= :qty
            """),
            {"qty": item.quantity, "now": now, "id": item.item_id},
        )
        if result.rowcount != 1:
            # 減算できなかった → 先に減算した商品も含めて全部戻す
            await session.rollback()
            logger.info(
                "Reservation %s failed on item %s (requested=%d)",
                reservation_id, item.item_id, item.quantity,
            )
            return {
                "success": False,
                "item_id": item.item_id,
                "reason": f"Insufficient stock: requested={item.quantity}",
            }

    await event_store.append_event(
        session,
        reservation_id,
        "Reservation",
        StockReserved(
            reservation_id=reservation_id,
            order_id=order_id,
            items=[i.model_dump() for i in items],
            timestamp=now,
        ),
    )
    attempt = 1
    if order_id is not None:
        # 解放済みの引き当ても数えるので、同じ注文の再試行で冪等キーが重ならない
        result = await session.execute(
            text("SELECT COUNT(*) FROM reservations WHERE order_id = :order_id"),
            {"order_id": order_id},
        )
        attempt = int(result.scalar_one())
    await session.commit()
    return {"success": True, "reservation_id": reservation_id, "attempt": attempt}


async def release_stock(session: AsyncSession, reservation_id: str) -> dict:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    reserved 状態の引き当てだけを戻す。解放済み・確定済みなら何もしない。
    """
    now = datetime.now(timezone.utc)
    reservation = await get_reservation(session, reservation_id)
    if reservation is None:
        return {"success": True, "released": False}

    result = await session.execute(
        text("""
            UPDATE reservations
            SET status = :released, updated_at = :now
            WHERE id = :id AND status = :reserved
        """),
        {
            "released": ReservationStatus.RELEASED.value,
            "reserved": ReservationStatus.RESERVED.value,
            "now": now,
            "id": reservation_id,
        },
    )
    if result.rowcount != 1:
        await session.rollback()
        return {"success": True, "released": False}

    for item in reservation.items:
        await session.execute(
            text("""
                UPDATE stock_items
                SET quantity = quantity + :qty, updated_at = :now
                WHERE id = :id
            """),
            {"qty": item.quantity, "now": now, "id": item.item_id},
        )

    await event_store.append_event(
        session,
        reservation_id,
        "Reservation",
        StockReleased(
            reservation_id=reservation_id,
            items=[i.model_dump() for i in reservation.items],
            timestamp=now,
        ),
    )
    await session.commit()
    return {"success": True, "released": True}


async def commit_reservation(
    session: AsyncSession,
    reservation_id: str,
    order_id: str,
) -> bool:
    """
    引き当てを注文に確定する。コミットは呼び出し側が行う
    （注文確定と同じトランザクションに載せるため）。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            UPDATE reservations
            SET status = :committed, order_id = :order_id, updated_at = :now
            WHERE id = :id AND status = :reserved
        """),
        {
            "committed": ReservationStatus.COMMITTED.value,
            "reserved": ReservationStatus.RESERVED.value,
            "order_id": order_id,
            "now": now,
            "id": reservation_id,
        },
    )
    if result.rowcount != 1:
        return False
    await event_store.append_event(
        session,
        reservation_id,
        "Reservation",
        ReservationCommitted(reservation_id=reservation_id, order_id=order_id, timestamp=now),
    )
    return True


async def bind_intent(
    session: AsyncSession,
    reservation_id: str,
    gateway_order_id: str,
    amount: int,
) -> None:
    """
    ゲートウェイの支払い意図 ID と請求額（最小単位）を引き当て記録に紐付ける。

    完了時に注文の totalAmount と突き合わせるため、金額もここで保存する。
    """
    await session.execute(
        text("""
            UPDATE reservations
            SET gateway_order_id = :gateway_order_id, amount = :amount, updated_at = :now
            WHERE id = :id
        """),
        {
            "gateway_order_id": gateway_order_id,
            "amount": amount,
            "now": datetime.now(timezone.utc),
            "id": reservation_id,
        },
    )
    await session.commit()


async def get_reservation(session: AsyncSession, reservation_id: str) -> Reservation | None:
    result = await session.execute(
        text("SELECT * FROM reservations WHERE id = :id"),
        {"id": reservation_id},
    )
    row = result.fetchone()
    return Reservation.from_row(row) if row else None


async def find_reservation(session: AsyncSession, gateway_order_id: str) -> Reservation | None:
    result = await session.execute(
        text("SELECT * FROM reservations WHERE gateway_order_id = :gid"),
        {"gid": gateway_order_id},
    )
    row = result.fetchone()
    return Reservation.from_row(row) if row else None


def covers(reservation: Reservation, items: list[OrderItem]) -> bool:
    """引き当て済みの数量が items の全商品を満たしているか。"""
    reserved = {i.item_id: i.quantity for i in merge_items(reservation.items)}
    return all(reserved.get(i.item_id, 0) >= i.quantity for i in merge_items(items))
