"""
ローカルカレンダーストア
同期エンジンが読み書きするローカルイベントの保存先
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Union

import aiosqlite

from ...core.errors import NotFoundError
from ...core.models import CalendarEvent, generate_id, utc_now

logger = logging.getLogger(__name__)


class LocalCalendarStore(Protocol):
    """ローカルストレージ契約"""

    async def create_local_event(self, event: CalendarEvent) -> str:
        ...

    async def get_local_event(self, event_id: str) -> Optional[CalendarEvent]:
        ...

    async def update_local_event_data(self, event_id: str, event: CalendarEvent) -> None:
        ...

    async def delete_local_event(self, event_id: str) -> bool:
        ...

    async def list_local_events(self, calendar_id: str) -> List[CalendarEvent]:
        ...


class SQLiteLocalCalendarStore:
    """SQLiteによるローカルカレンダー実装"""

    def __init__(self, database_path: Union[str, Path] = "data/local_calendar.db",
                 clock: Callable[[], datetime] = utc_now):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    async def initialize(self):
        sql = """
        CREATE TABLE IF NOT EXISTS local_events (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_local_events_calendar ON local_events(calendar_id)"
            )
            await db.commit()
        logger.info(f"Local calendar store initialized: {self.database_path}")

    def _stamp(self, event: CalendarEvent) -> CalendarEvent:
        """タイムスタンプ未設定なら現在時刻を付与"""
        now = self._clock()
        return event.copy_with(
            created_at=event.created_at or now,
            updated_at=event.updated_at or now,
        )

    async def create_local_event(self, event: CalendarEvent) -> str:
        """イベント作成。ローカルIDを返す"""
        event = self._stamp(event.copy_with(id=event.id or generate_id("evt")))
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(
                "INSERT INTO local_events (id, calendar_id, payload, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (event.id, event.calendar_id, event.to_json(),
                 event.created_at.isoformat(), event.updated_at.isoformat())
            )
            await db.commit()
        logger.debug(f"Created local event {event.id} in {event.calendar_id}")
        return event.id

    async def get_local_event(self, event_id: str) -> Optional[CalendarEvent]:
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT payload FROM local_events WHERE id = ?", (event_id,))
            row = await cursor.fetchone()
        return CalendarEvent.from_json(row['payload']) if row else None

    async def update_local_event_data(self, event_id: str, event: CalendarEvent) -> None:
        """イベント内容を置き換え(IDは維持)"""
        event = self._stamp(event.copy_with(id=event_id))
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute(
                "UPDATE local_events SET calendar_id = ?, payload = ?, updated_at = ? WHERE id = ?",
                (event.calendar_id, event.to_json(), event.updated_at.isoformat(), event_id)
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"Local event not found: {event_id}")

    async def delete_local_event(self, event_id: str) -> bool:
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute("DELETE FROM local_events WHERE id = ?", (event_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_local_events(self, calendar_id: str) -> List[CalendarEvent]:
        """カレンダー内のイベント一覧(作成順)"""
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT payload FROM local_events WHERE calendar_id = ? ORDER BY created_at ASC, id ASC",
                (calendar_id,)
            )
            rows = await cursor.fetchall()
        return [CalendarEvent.from_json(row['payload']) for row in rows]
