"""
オフラインキュー
一時的な障害で失敗した同期操作を指数バックオフで再実行
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set

from ...core.models import (CalendarEvent, OperationType, QueuedOperation, SyncError,
                            utc_now)
from .event_storage import SyncStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """リトライポリシー"""
    max_retries: int = 3
    base_delay_minutes: float = 1.0

    def delay_for(self, retry_count: int) -> timedelta:
        """retry_count 回目の待機時間 (1, 2, 4 ... 分)"""
        return timedelta(minutes=self.base_delay_minutes * 2 ** (max(retry_count, 1) - 1))

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


class OfflineQueue:
    """永続化されたリトライキュー"""

    def __init__(self, state_store: SyncStateStore,
                 policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.state_store = state_store
        self.policy = policy or RetryPolicy()
        self._clock = clock

        # 統計情報
        self.enqueued_total = 0
        self.completed_total = 0
        self.dropped_total = 0

    async def enqueue(self, connection_id: str, operation_type: OperationType,
                      local_event_id: Optional[str] = None,
                      external_event_id: Optional[str] = None,
                      calendar_id: Optional[str] = None,
                      event: Optional[CalendarEvent] = None,
                      error: Optional[str] = None) -> QueuedOperation:
        """操作をキューに追加(1回目のリトライ待ち)"""
        now = self._clock()
        operation = QueuedOperation(
            connection_id=connection_id,
            operation_type=operation_type,
            local_event_id=local_event_id,
            external_event_id=external_event_id,
            calendar_id=calendar_id,
            event=event,
            retry_count=1,
            next_retry_at=now + self.policy.delay_for(1),
            last_error=error,
            created_at=now,
        )
        await self.state_store.save_queued_operation(operation)
        self.enqueued_total += 1
        logger.info(f"Queued {operation_type.value} for {connection_id} "
                    f"(local={local_event_id}, retry at {operation.next_retry_at.isoformat()})")
        return operation

    async def due_operations(self, connection_id: str) -> List[QueuedOperation]:
        """再実行期限を迎えた操作(作成順)"""
        now = self._clock()
        operations = await self.state_store.get_queued_operations(connection_id)
        return [op for op in operations if op.next_retry_at <= now]

    async def pending_local_event_ids(self, connection_id: str) -> Set[str]:
        operations = await self.state_store.get_queued_operations(connection_id)
        return {op.local_event_id for op in operations if op.local_event_id}

    async def complete(self, operation: QueuedOperation):
        await self.state_store.delete_queued_operation(operation.id)
        self.completed_total += 1
        logger.debug(f"Queued operation {operation.id} completed")

    async def record_failure(self, operation: QueuedOperation, error: SyncError,
                             policy: Optional[RetryPolicy] = None) -> Optional[SyncError]:
        """
        再実行失敗の記録

        上限到達またはリトライ不可のエラーなら終端エラーを返してキューから削除。
        それ以外は retry_count を進めて再スケジュールし None を返す。
        """
        policy = policy or self.policy

        if not error.can_retry or not policy.can_retry(operation.retry_count):
            await self.state_store.delete_queued_operation(operation.id)
            self.dropped_total += 1
            logger.warning(f"Dropping queued {operation.operation_type.value} {operation.id} "
                           f"after {operation.retry_count} attempts: {error.message}")
            return SyncError(
                error_type=error.error_type,
                message=f"Gave up on queued {operation.operation_type.value} "
                        f"after {operation.retry_count} attempts: {error.message}",
                connection_id=operation.connection_id,
                event_id=operation.local_event_id,
                retry_count=operation.retry_count,
                can_retry=False,
            )

        operation.retry_count += 1
        operation.next_retry_at = self._clock() + policy.delay_for(operation.retry_count)
        operation.last_error = error.message
        await self.state_store.save_queued_operation(operation)
        logger.info(f"Rescheduled queued operation {operation.id} "
                    f"(attempt {operation.retry_count}, retry at {operation.next_retry_at.isoformat()})")
        return None

    async def size(self, connection_id: Optional[str] = None) -> int:
        return len(await self.state_store.get_queued_operations(connection_id))

    async def clear(self, connection_id: str) -> int:
        removed = await self.state_store.clear_queued_operations(connection_id)
        if removed:
            logger.info(f"Cleared {removed} queued operations for {connection_id}")
        return removed

    def get_statistics(self):
        return {
            "enqueued_total": self.enqueued_total,
            "completed_total": self.completed_total,
            "dropped_total": self.dropped_total,
            "max_retries": self.policy.max_retries,
        }
