"""
同期状態ストレージ
SQLiteによるイベントマッピング・同期メタデータ・オフラインキュー・競合・同期ログの永続化
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from ...core.errors import MappingConflictError
from ...core.models import (CalendarEvent, ConflictResolution, ConflictStatus,
                            ConflictStrategy, ConflictType, ExternalEventMapping,
                            FieldDifference, OperationType, QueuedOperation,
                            SyncConflict, SyncMetadata, SyncResult,
                            _dt_to_str, _str_to_dt)

logger = logging.getLogger(__name__)


def _event_to_json(event: Optional[CalendarEvent]) -> Optional[str]:
    return event.to_json() if event else None


def _event_from_json(payload: Optional[str]) -> Optional[CalendarEvent]:
    return CalendarEvent.from_json(payload) if payload else None


class SyncStateStore:
    """同期状態の永続化"""

    def __init__(self, database_path: Union[str, Path] = "data/calendar_sync.db"):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    async def initialize(self):
        """データベース初期化"""
        await self._create_tables()
        await self._create_indexes()
        logger.info(f"Sync state storage initialized: {self.database_path}")

    async def _create_tables(self):
        """テーブル作成"""

        # マッピングテーブル(接続ごとに双方向で一意)
        mappings_table_sql = """
        CREATE TABLE IF NOT EXISTS event_mappings (
            connection_id TEXT NOT NULL,
            external_event_id TEXT NOT NULL,
            local_event_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            last_sync_time TIMESTAMP NOT NULL,
            sync_hash TEXT NOT NULL,
            conflict_status TEXT DEFAULT 'none',
            PRIMARY KEY (connection_id, external_event_id),
            UNIQUE (connection_id, local_event_id)
        )
        """

        metadata_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_metadata (
            connection_id TEXT PRIMARY KEY,
            sync_token TEXT,
            last_modified TIMESTAMP,
            sync_version INTEGER DEFAULT 0,
            provider_data TEXT
        )
        """

        # オフラインキューテーブル
        offline_queue_table_sql = """
        CREATE TABLE IF NOT EXISTS offline_queue (
            id TEXT PRIMARY KEY,
            connection_id TEXT NOT NULL,
            operation_type TEXT NOT NULL,
            local_event_id TEXT,
            external_event_id TEXT,
            calendar_id TEXT,
            event_data TEXT,
            retry_count INTEGER DEFAULT 1,
            next_retry_at TIMESTAMP NOT NULL,
            last_error TEXT,
            created_at TIMESTAMP NOT NULL
        )
        """

        conflicts_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_conflicts (
            id TEXT PRIMARY KEY,
            connection_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            conflict_type TEXT NOT NULL,
            local_event TEXT,
            remote_event TEXT,
            differences TEXT,
            is_resolved BOOLEAN DEFAULT FALSE,
            resolution TEXT,
            detected_at TIMESTAMP NOT NULL
        )
        """

        # 同期ログテーブル
        sync_logs_table_sql = """
        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            connection_id TEXT NOT NULL,
            status TEXT NOT NULL,
            events_imported INTEGER DEFAULT 0,
            events_exported INTEGER DEFAULT 0,
            events_updated INTEGER DEFAULT 0,
            events_deleted INTEGER DEFAULT 0,
            events_skipped INTEGER DEFAULT 0,
            conflicts INTEGER DEFAULT 0,
            errors INTEGER DEFAULT 0,
            error_message TEXT,
            duration_seconds REAL DEFAULT 0,
            timestamp TIMESTAMP NOT NULL
        )
        """

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(mappings_table_sql)
            await db.execute(metadata_table_sql)
            await db.execute(offline_queue_table_sql)
            await db.execute(conflicts_table_sql)
            await db.execute(sync_logs_table_sql)
            await db.commit()

    async def _create_indexes(self):
        """インデックス作成"""
        indexes_sql = [
            "CREATE INDEX IF NOT EXISTS idx_offline_queue_connection ON offline_queue(connection_id)",
            "CREATE INDEX IF NOT EXISTS idx_conflicts_connection_event ON sync_conflicts(connection_id, event_id)",
            "CREATE INDEX IF NOT EXISTS idx_sync_logs_connection ON sync_logs(connection_id)",
            "CREATE INDEX IF NOT EXISTS idx_sync_logs_timestamp ON sync_logs(timestamp)",
        ]

        async with aiosqlite.connect(self.database_path) as db:
            for index_sql in indexes_sql:
                await db.execute(index_sql)
            await db.commit()

    # ------------------------------------------------------------------
    # マッピング
    # ------------------------------------------------------------------

    async def save_mapping(self, mapping: ExternalEventMapping):
        """マッピング保存(外部IDで上書き、ローカルID重複は拒否)"""
        sql = """
        INSERT INTO event_mappings (
            connection_id, external_event_id, local_event_id, calendar_id,
            last_sync_time, sync_hash, conflict_status
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(connection_id, external_event_id) DO UPDATE SET
            local_event_id = excluded.local_event_id,
            calendar_id = excluded.calendar_id,
            last_sync_time = excluded.last_sync_time,
            sync_hash = excluded.sync_hash,
            conflict_status = excluded.conflict_status
        """

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    mapping.connection_id, mapping.external_event_id, mapping.local_event_id,
                    mapping.calendar_id, mapping.last_sync_time.isoformat(),
                    mapping.sync_hash, mapping.conflict_status.value
                ))
                await db.commit()
        except sqlite3.IntegrityError as e:
            raise MappingConflictError(
                f"Local event {mapping.local_event_id} is already mapped on "
                f"connection {mapping.connection_id}"
            ) from e

    async def _fetch_mappings(self, where: str, params: tuple) -> List[ExternalEventMapping]:
        sql = f"SELECT * FROM event_mappings WHERE {where}"
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def _row_to_mapping(self, row: aiosqlite.Row) -> ExternalEventMapping:
        return ExternalEventMapping(
            connection_id=row['connection_id'],
            local_event_id=row['local_event_id'],
            external_event_id=row['external_event_id'],
            calendar_id=row['calendar_id'],
            last_sync_time=_str_to_dt(row['last_sync_time']),
            sync_hash=row['sync_hash'],
            conflict_status=ConflictStatus(row['conflict_status']),
        )

    async def get_mapping_by_external(self, connection_id: str,
                                      external_event_id: str) -> Optional[ExternalEventMapping]:
        mappings = await self._fetch_mappings(
            "connection_id = ? AND external_event_id = ?", (connection_id, external_event_id)
        )
        return mappings[0] if mappings else None

    async def get_mapping_by_local(self, connection_id: str,
                                   local_event_id: str) -> Optional[ExternalEventMapping]:
        mappings = await self._fetch_mappings(
            "connection_id = ? AND local_event_id = ?", (connection_id, local_event_id)
        )
        return mappings[0] if mappings else None

    async def get_mappings(self, connection_id: str) -> List[ExternalEventMapping]:
        return await self._fetch_mappings("connection_id = ?", (connection_id,))

    async def delete_mapping(self, connection_id: str, external_event_id: str) -> bool:
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute(
                "DELETE FROM event_mappings WHERE connection_id = ? AND external_event_id = ?",
                (connection_id, external_event_id)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_connection_state(self, connection_id: str):
        """接続に紐づく状態を全削除"""
        async with aiosqlite.connect(self.database_path) as db:
            for table in ("event_mappings", "sync_metadata", "offline_queue", "sync_conflicts"):
                await db.execute(f"DELETE FROM {table} WHERE connection_id = ?", (connection_id,))
            await db.commit()

    # ------------------------------------------------------------------
    # 同期メタデータ
    # ------------------------------------------------------------------

    async def get_sync_metadata(self, connection_id: str) -> SyncMetadata:
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM sync_metadata WHERE connection_id = ?", (connection_id,))
            row = await cursor.fetchone()

        if row is None:
            return SyncMetadata(connection_id=connection_id)
        return SyncMetadata(
            connection_id=row['connection_id'],
            sync_token=row['sync_token'],
            last_modified=_str_to_dt(row['last_modified']),
            sync_version=row['sync_version'] or 0,
            provider_data=json.loads(row['provider_data']) if row['provider_data'] else {},
        )

    async def save_sync_metadata(self, metadata: SyncMetadata):
        sql = """
        INSERT OR REPLACE INTO sync_metadata (
            connection_id, sync_token, last_modified, sync_version, provider_data
        ) VALUES (?, ?, ?, ?, ?)
        """
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql, (
                metadata.connection_id, metadata.sync_token,
                _dt_to_str(metadata.last_modified), metadata.sync_version,
                json.dumps(metadata.provider_data, default=str)
            ))
            await db.commit()

    # ------------------------------------------------------------------
    # オフラインキュー
    # ------------------------------------------------------------------

    async def save_queued_operation(self, operation: QueuedOperation):
        sql = """
        INSERT OR REPLACE INTO offline_queue (
            id, connection_id, operation_type, local_event_id, external_event_id,
            calendar_id, event_data, retry_count, next_retry_at, last_error, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql, (
                operation.id, operation.connection_id, operation.operation_type.value,
                operation.local_event_id, operation.external_event_id, operation.calendar_id,
                _event_to_json(operation.event), operation.retry_count,
                operation.next_retry_at.isoformat(), operation.last_error,
                operation.created_at.isoformat()
            ))
            await db.commit()

    async def delete_queued_operation(self, operation_id: str) -> bool:
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute("DELETE FROM offline_queue WHERE id = ?", (operation_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def get_queued_operations(self, connection_id: Optional[str] = None) -> List[QueuedOperation]:
        """キュー取得(作成順)"""
        if connection_id:
            sql = "SELECT * FROM offline_queue WHERE connection_id = ? ORDER BY created_at ASC"
            params: tuple = (connection_id,)
        else:
            sql = "SELECT * FROM offline_queue ORDER BY created_at ASC"
            params = ()

        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()

        return [
            QueuedOperation(
                id=row['id'],
                connection_id=row['connection_id'],
                operation_type=OperationType(row['operation_type']),
                local_event_id=row['local_event_id'],
                external_event_id=row['external_event_id'],
                calendar_id=row['calendar_id'],
                event=_event_from_json(row['event_data']),
                retry_count=row['retry_count'],
                next_retry_at=_str_to_dt(row['next_retry_at']),
                last_error=row['last_error'],
                created_at=_str_to_dt(row['created_at']),
            )
            for row in rows
        ]

    async def clear_queued_operations(self, connection_id: str) -> int:
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute("DELETE FROM offline_queue WHERE connection_id = ?", (connection_id,))
            await db.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # 競合
    # ------------------------------------------------------------------

    async def save_conflict(self, conflict: SyncConflict):
        """競合の保存(同一IDは上書き)"""
        resolution = None
        if conflict.resolution:
            resolution = json.dumps({
                "strategy": conflict.resolution.strategy.value,
                "resolved_at": _dt_to_str(conflict.resolution.resolved_at),
                "user_choice": conflict.resolution.user_choice,
            })
        differences = json.dumps([
            {"field_name": d.field_name, "local_value": d.local_value, "remote_value": d.remote_value}
            for d in conflict.differences
        ], default=str, ensure_ascii=False)

        sql = """
        INSERT OR REPLACE INTO sync_conflicts (
            id, connection_id, event_id, conflict_type, local_event, remote_event,
            differences, is_resolved, resolution, detected_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql, (
                conflict.id, conflict.connection_id, conflict.event_id,
                conflict.conflict_type.value, _event_to_json(conflict.local_event),
                _event_to_json(conflict.remote_event), differences,
                conflict.is_resolved, resolution, conflict.detected_at.isoformat()
            ))
            await db.commit()

    def _row_to_conflict(self, row: aiosqlite.Row) -> SyncConflict:
        resolution = None
        if row['resolution']:
            data = json.loads(row['resolution'])
            resolution = ConflictResolution(
                strategy=ConflictStrategy(data['strategy']),
                resolved_at=_str_to_dt(data.get('resolved_at')),
                user_choice=data.get('user_choice', False),
            )
        differences = [FieldDifference(**d) for d in json.loads(row['differences'] or "[]")]
        return SyncConflict(
            id=row['id'],
            connection_id=row['connection_id'],
            event_id=row['event_id'],
            conflict_type=ConflictType(row['conflict_type']),
            local_event=_event_from_json(row['local_event']),
            remote_event=_event_from_json(row['remote_event']),
            differences=differences,
            is_resolved=bool(row['is_resolved']),
            resolution=resolution,
            detected_at=_str_to_dt(row['detected_at']),
        )

    async def get_conflicts(self, connection_id: str, include_resolved: bool = False) -> List[SyncConflict]:
        sql = "SELECT * FROM sync_conflicts WHERE connection_id = ?"
        if not include_resolved:
            sql += " AND is_resolved = 0"
        sql += " ORDER BY detected_at ASC"

        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, (connection_id,))
            rows = await cursor.fetchall()
        return [self._row_to_conflict(row) for row in rows]

    async def get_conflict(self, conflict_id: str) -> Optional[SyncConflict]:
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,))
            row = await cursor.fetchone()
        return self._row_to_conflict(row) if row else None

    async def find_open_conflict(self, connection_id: str, event_id: str) -> Optional[SyncConflict]:
        """同一イベントの未解決競合"""
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM sync_conflicts WHERE connection_id = ? AND event_id = ? AND is_resolved = 0",
                (connection_id, event_id)
            )
            row = await cursor.fetchone()
        return self._row_to_conflict(row) if row else None

    # ------------------------------------------------------------------
    # 同期ログ
    # ------------------------------------------------------------------

    async def log_sync_result(self, result: SyncResult):
        """同期結果記録"""
        sql = """
        INSERT INTO sync_logs (
            connection_id, status, events_imported, events_exported, events_updated,
            events_deleted, events_skipped, conflicts, errors, error_message, duration_seconds,
            timestamp
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        error_message = "; ".join(e.message for e in result.errors) or None
        timestamp = result.last_sync_time or datetime.now().astimezone()
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql, (
                result.connection_id, "success" if result.success else "failed",
                result.events_imported, result.events_exported, result.events_updated,
                result.events_deleted, result.events_skipped,
                len(result.conflicts), len(result.errors),
                error_message, result.duration_seconds, timestamp.isoformat()
            ))
            await db.commit()

    async def get_sync_logs(self, connection_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """同期ログ取得(新しい順)"""
        if connection_id:
            sql = "SELECT * FROM sync_logs WHERE connection_id = ? ORDER BY id DESC LIMIT ?"
            params: tuple = (connection_id, limit)
        else:
            sql = "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?"
            params = (limit,)

        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_storage_statistics(self) -> Dict[str, Any]:
        """ストレージ統計情報"""
        stats = {}
        async with aiosqlite.connect(self.database_path) as db:
            for key, table in (("total_mappings", "event_mappings"),
                               ("queued_operations", "offline_queue"),
                               ("sync_logs", "sync_logs")):
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                stats[key] = (await cursor.fetchone())[0]

            cursor = await db.execute("SELECT COUNT(*) FROM sync_conflicts WHERE is_resolved = 0")
            stats["open_conflicts"] = (await cursor.fetchone())[0]

        stats["database_size_bytes"] = self.database_path.stat().st_size if self.database_path.exists() else 0
        return stats
