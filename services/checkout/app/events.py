"""
Checkout Service — イベント定義

台帳（event_store）に追記するイベントと、Redis に発行する
Saga イベント。イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime

from pydantic import BaseModel


class StockReserved(BaseModel):
    """在庫が引き当てられた"""
    reservation_id: str
    order_id: str | None = None
    items: list[dict]
    timestamp: datetime


class StockReleased(BaseModel):
    """引き当てが解放された（補償トランザクション）"""
    reservation_id: str
    items: list[dict]
    timestamp: datetime


class ReservationCommitted(BaseModel):
    """引き当てが注文に確定した"""
    reservation_id: str
    order_id: str
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """注文と支払いが確定した"""
    order_id: str
    payment_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた"""
    order_id: str
    payment_status: str
    reason: str
    payment_id: str | None = None
    timestamp: datetime


class RefundRequested(BaseModel):
    """
    返金の再試行依頼（refund_retry キューに積む）

    外部のジョブがこのキューを消費して再試行する。
    """
    order_id: str
    payment_id: str
    amount: int
    currency: str
    attempt: int
    error: str
    timestamp: datetime
