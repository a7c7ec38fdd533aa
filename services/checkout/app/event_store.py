"""
Checkout Service — 台帳イベントストア

在庫・注文に対する変更を監査用に追記する。コマンドと同じ
トランザクション内で書くので、状態変更とイベントは必ず揃う。
aggregate_id + version の UNIQUE 制約で同時書き込みを検知する。
"""

import json
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event: BaseModel,
) -> int:
    """
    イベントを追記して新しいバージョン番号を返す。
    コミットは呼び出し側のコマンドが行う。
    """
    result = await session.execute(
        text("SELECT MAX(version) AS version FROM event_store WHERE aggregate_id = :agg_id"),
        {"agg_id": aggregate_id},
    )
    current_version = result.scalar() or 0
    new_version = current_version + 1
    await session.execute(
        text("""
            INSERT INTO event_store
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": aggregate_id,
            "agg_type": aggregate_type,
            "evt_type": type(event).__name__,
            "evt_data": event.model_dump_json(),
            "version": new_version,
            "now": datetime.now(timezone.utc),
        },
    )
    return new_version


async def load_events(
    session: AsyncSession,
    aggregate_id: str,
) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data) if isinstance(row.event_data, str) else row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
