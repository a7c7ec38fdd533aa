"""
Checkout Service — 台帳スキーマ

PostgreSQL と SQLite (テスト) の両方で通る DDL だけを使う。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS stock_items (
        id VARCHAR(128) PRIMARY KEY,
        name VARCHAR(255),
        quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(128) PRIMARY KEY,
        items TEXT NOT NULL,
        total_amount NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(8) NOT NULL,
        payment_status VARCHAR(16) NOT NULL DEFAULT 'pending',
        order_status VARCHAR(16) NOT NULL DEFAULT 'pending',
        gateway_payment_id VARCHAR(128),
        cancellation_reason VARCHAR(64),
        refund_attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        id VARCHAR(64) PRIMARY KEY,
        gateway_order_id VARCHAR(128) UNIQUE,
        order_id VARCHAR(128),
        items TEXT NOT NULL,
        status VARCHAR(16) NOT NULL,
        amount INTEGER,
        created_at TIMESTAMP WITH TIME ZONE,
        updated_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id VARCHAR(128) NOT NULL,
        aggregate_type VARCHAR(32) NOT NULL,
        event_type VARCHAR(64) NOT NULL,
        event_data TEXT NOT NULL,
        version INTEGER NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE,
        UNIQUE (aggregate_id, version)
    )
    """,
]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))
