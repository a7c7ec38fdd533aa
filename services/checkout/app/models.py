"""
Checkout Service — ドメインモデル

Order / StockItem / Reservation をリードモデルの行から組み立てる。

Order の状態遷移:
    pending/pending → confirmed/confirmed   (署名検証 OK・引き当て済み)
    pending/pending → cancelled/cancelled   (署名不一致)
    pending/pending → confirmed/cancelled   (入金済みだが在庫なし・金額不一致 = 返金)

Reservation の状態遷移:
    reserved → committed  (注文確定)
    reserved → released   (補償で在庫を戻した)
"""

import json
from collections import OrderedDict
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class Status(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class OrderItem(BaseModel):
    item_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class Order(BaseModel):
    id: str
    items: list[OrderItem]
    total_amount: Decimal
    currency: str
    payment_status: Status = Status.PENDING
    order_status: Status = Status.PENDING
    gateway_payment_id: str | None = None
    cancellation_reason: str | None = None
    refund_attempts: int = 0
    # 数量の欠けた行の数。0 でなければ引き当てで満たせない注文として扱う
    invalid_lines: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.order_status != Status.PENDING

    @classmethod
    def from_row(cls, row) -> "Order":
        items, invalid_lines = split_items(row._mapping["items"])
        return cls(
            id=row.id,
            items=items,
            invalid_lines=invalid_lines,
            total_amount=Decimal(str(row.total_amount or 0)),
            currency=row.currency,
            payment_status=Status(row.payment_status),
            order_status=Status(row.order_status),
            gateway_payment_id=row.gateway_payment_id,
            cancellation_reason=row.cancellation_reason,
            refund_attempts=row.refund_attempts or 0,
        )


class StockItem(BaseModel):
    id: str
    quantity: int


class Reservation(BaseModel):
    id: str
    gateway_order_id: str | None = None
    order_id: str | None = None
    items: list[OrderItem]
    status: ReservationStatus
    amount: int | None = None

    def belongs_to(self, order_id: str) -> bool:
        """注文 ID を持たない引き当ては誰のものとも判断できないので True。"""
        return self.order_id is None or self.order_id == order_id

    @classmethod
    def from_row(cls, row) -> "Reservation":
        return cls(
            id=row.id,
            gateway_order_id=row.gateway_order_id,
            order_id=row.order_id,
            items=parse_items(row._mapping["items"]),
            status=ReservationStatus(row.status),
            amount=row.amount,
        )


def split_items(raw) -> tuple[list[OrderItem], int]:
    """
    永続化された items JSON を OrderItem のリストに変換する。

    古いレコードは id の代わりに productId を持つ。ID や数量が欠けている行、
    数量が 0 以下の行はリストに入れず、その行数を 2 つ目の値で返す。
    """
    data = json.loads(raw) if isinstance(raw, str) else (raw or [])
    items = []
    invalid = 0
    for entry in data:
        item_id = entry.get("item_id") or entry.get("productId") or entry.get("id")
        try:
            quantity = int(entry.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        if item_id and quantity > 0:
            items.append(OrderItem(item_id=str(item_id), quantity=quantity))
        else:
            invalid += 1
    return items, invalid


def parse_items(raw) -> list[OrderItem]:
    return split_items(raw)[0]


def dump_items(items: list[OrderItem]) -> str:
    return json.dumps([{"id": i.item_id, "quantity": i.quantity} for i in items])


def merge_items(items: list[OrderItem]) -> list[OrderItem]:
    """同じ商品が複数行ある場合は数量を合算する（順序は最初の出現順）。"""
    merged: OrderedDict[str, int] = OrderedDict()
    for item in items:
        merged[item.item_id] = merged.get(item.item_id, 0) + item.quantity
    return [OrderItem(item_id=k, quantity=v) for k, v in merged.items()]
