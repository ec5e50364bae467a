"""
同期エンジン
接続ごとに オフラインキュー再実行 → インポート → エクスポート → 競合解決 の順で同期を実行
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ...config.enhanced_config import EngineConfig
from ...core.errors import (AuthenticationError, MappingConflictError, NotFoundError,
                            RateLimitExceeded)
from ...core.models import (AuthStatus, CalendarAccount, CalendarEvent, ConflictResolution,
                            ConflictStatus, ConflictStrategy, ConflictType,
                            ExternalEventMapping, HealthStatus, OperationType,
                            QueuedOperation, SyncConflict, SyncConnection, SyncError,
                            SyncErrorType, SyncMetadata, SyncResult, SyncSettings,
                            generate_id, utc_now)
from ...core.notifications import (AccountError, AuthStatusChanged, ConflictDetected,
                                   NotificationBus, SyncCompleted, SyncNotification)
from ...utils.enhanced_logger import get_logger
from ..account_layer.account_manager import AccountManager
from ..provider_layer.adapter import ProviderAdapter, ProviderCapabilities
from ..provider_layer.content_validator import ContentValidator, KeywordContentValidator
from ..provider_layer.error_handler import ErrorHandler
from ..provider_layer.registry import ProviderRegistry
from ..rate_limit_layer.request_scheduler import (RequestOptions, RequestPriority,
                                                  RequestScheduler)
from .conflict_resolver import (ConflictDetector, ConflictResolver, ResolutionAction,
                                ResolutionPlan)
from .event_storage import SyncStateStore
from .local_calendar_store import LocalCalendarStore
from .offline_queue import OfflineQueue, RetryPolicy
from .sync_monitor import SyncMonitor

logger = get_logger(__name__)

# 連続失敗でERROR扱いにする回数
FAILURE_ESCALATION_THRESHOLD = 3


class _SyncAborted(Exception):
    """認証失敗による同期中断"""


@dataclass
class _SyncRun:
    """1回の同期実行の状態"""
    connection: SyncConnection
    account: CalendarAccount
    adapter: ProviderAdapter
    options: RequestOptions
    started_at: datetime
    events_imported: int = 0
    events_exported: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_skipped: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    new_conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[SyncError] = field(default_factory=list)
    open_conflicts: Dict[str, SyncConflict] = field(default_factory=dict)
    conflict_event_ids: Set[str] = field(default_factory=set)
    touched_event_ids: Set[str] = field(default_factory=set)
    metadata: Optional[SyncMetadata] = None
    next_sync_token: Optional[str] = None
    fetch_complete: bool = False
    auth_refreshed: bool = False

    @property
    def settings(self) -> SyncSettings:
        return self.connection.settings

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.adapter.capabilities

    @property
    def connection_id(self) -> str:
        return self.connection.id

    @property
    def remote_writable(self) -> bool:
        return self.settings.can_export and self.capabilities.bidirectional_sync

    @property
    def can_update_remote(self) -> bool:
        return self.remote_writable and self.capabilities.supports_update

    @property
    def can_delete_remote(self) -> bool:
        return self.remote_writable and self.capabilities.supports_delete

    def add_conflict(self, conflict: SyncConflict, blocking: bool = True) -> bool:
        """1イベントにつき1件まで"""
        if conflict.event_id in self.conflict_event_ids:
            return False
        self.conflict_event_ids.add(conflict.event_id)
        self.conflicts.append(conflict)
        if blocking:
            self.new_conflicts.append(conflict)
        return True


class SynchronizationEngine:
    """同期エンジン"""

    def __init__(self, registry: ProviderRegistry,
                 account_manager: AccountManager,
                 scheduler: RequestScheduler,
                 state_store: SyncStateStore,
                 local_store: LocalCalendarStore,
                 validator: Optional[ContentValidator] = None,
                 offline_queue: Optional[OfflineQueue] = None,
                 notifications: Optional[NotificationBus] = None,
                 monitor: Optional[SyncMonitor] = None,
                 config: Optional[EngineConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.registry = registry
        self.account_manager = account_manager
        self.scheduler = scheduler
        self.state_store = state_store
        self.local_store = local_store
        self.config = config or EngineConfig()
        self.validator = validator or KeywordContentValidator()
        self.offline_queue = offline_queue or OfflineQueue(
            state_store,
            RetryPolicy(self.config.retry.max_retries, self.config.retry.base_delay_minutes),
            clock,
        )
        self.notifications = notifications
        self.monitor = monitor
        self._clock = clock

        self.error_handler = ErrorHandler()
        self.detector = ConflictDetector(clock)

        self.connections: Dict[str, SyncConnection] = {}
        self._sync_locks: Dict[str, asyncio.Lock] = {}

        # 統計情報
        self.total_syncs = 0
        self.successful_syncs = 0
        self.failed_syncs = 0
        self.conflicts_detected = 0
        self.private_events_skipped = 0

    async def start(self):
        """リクエストスケジューラのtick開始"""
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

    async def _publish(self, notification: SyncNotification):
        if self.notifications:
            await self.notifications.publish(notification)

    # ------------------------------------------------------------------
    # 接続管理
    # ------------------------------------------------------------------

    def create_connection(self, account_id: str,
                          settings: Optional[SyncSettings] = None) -> SyncConnection:
        """アカウントの同期接続を作成(設定はアカウント既定値のコピー)"""
        account = self.account_manager.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")

        connection = SyncConnection(
            id=generate_id("conn"),
            account_id=account.id,
            user_id=account.user_id,
            provider_id=account.provider_id,
            settings=(settings or account.sync_settings).copy(),
            auth_status=AuthStatus.AUTHENTICATED if account.auth_info.is_valid else AuthStatus.INVALID,
        )
        self.connections[connection.id] = connection
        logger.info("Sync connection created", connection_id=connection.id,
                    account_id=account_id, provider_id=account.provider_id,
                    direction=connection.settings.direction.value)
        return connection

    def get_connection(self, connection_id: str) -> Optional[SyncConnection]:
        return self.connections.get(connection_id)

    def get_connections(self, user_id: Optional[str] = None) -> List[SyncConnection]:
        return [c for c in self.connections.values() if user_id is None or c.user_id == user_id]

    def _require_connection(self, connection_id: str) -> SyncConnection:
        connection = self.connections.get(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection not found: {connection_id}")
        return connection

    async def remove_connection(self, connection_id: str):
        """接続と同期状態の削除"""
        self._require_connection(connection_id)
        async with self._lock_for(connection_id):
            await self.state_store.delete_connection_state(connection_id)
            del self.connections[connection_id]
            self._sync_locks.pop(connection_id, None)
        logger.info("Sync connection removed", connection_id=connection_id)

    async def reconnect(self, connection_id: str) -> bool:
        """再認証して接続を復帰"""
        connection = self._require_connection(connection_id)
        account = self.account_manager.get_account(connection.account_id)
        if account is None:
            return False

        if account.auth_info.supports_refresh:
            try:
                await self.account_manager.refresh_account_auth(account.id, force=True)
            except AuthenticationError as e:
                logger.warning("Reconnect failed", connection_id=connection_id, error_message=str(e))
                return False

        if not await self.account_manager.validate_account_auth(account.id):
            return False

        connection.auth_status = AuthStatus.AUTHENTICATED
        connection.consecutive_failures = 0
        connection.health_status = HealthStatus.HEALTHY
        await self._publish(AuthStatusChanged(connection_id=connection_id, status=AuthStatus.AUTHENTICATED))
        logger.info("Connection re-authenticated", connection_id=connection_id)
        return True

    def _lock_for(self, connection_id: str) -> asyncio.Lock:
        if connection_id not in self._sync_locks:
            self._sync_locks[connection_id] = asyncio.Lock()
        return self._sync_locks[connection_id]

    # ------------------------------------------------------------------
    # 同期
    # ------------------------------------------------------------------

    async def sync(self, connection_id: str, force: bool = False) -> SyncResult:
        """
        接続の同期実行

        同一接続の同期は直列化され、後続の呼び出しは先行する同期の完了を待つ。
        """
        connection = self._require_connection(connection_id)
        async with self._lock_for(connection_id):
            return await self._run_sync(connection, force)

    async def force_sync(self, connection_id: str) -> SyncResult:
        """レート制限を無視して優先送信する同期(使用量は記録される)"""
        return await self.sync(connection_id, force=True)

    async def sync_all(self, user_id: str) -> List[SyncResult]:
        """ユーザーの全アクティブ接続を並行同期(接続ごとに失敗を分離)"""
        connections = [c for c in self.get_connections(user_id) if c.is_active]
        outcomes = await asyncio.gather(
            *(self.sync(c.id) for c in connections),
            return_exceptions=True
        )

        results = []
        for connection, outcome in zip(connections, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Connection sync raised", connection_id=connection.id,
                               error_type=outcome.__class__.__name__, error_message=str(outcome))
                now = self._clock()
                results.append(SyncResult(
                    connection_id=connection.id,
                    errors=(self.error_handler.to_sync_error(outcome, connection.id),),
                    last_sync_time=now,
                    next_sync_time=now + timedelta(minutes=self.config.sync.failure_retry_minutes),
                ))
            else:
                results.append(outcome)
        return results

    async def _run_sync(self, connection: SyncConnection, force: bool) -> SyncResult:
        started = time.monotonic()
        account = self.account_manager.get_account(connection.account_id)

        precondition_error = None
        if not connection.is_active:
            precondition_error = SyncError(SyncErrorType.API_ERROR, "Connection is inactive",
                                           connection.id, can_retry=False)
        elif connection.auth_status == AuthStatus.INVALID:
            precondition_error = SyncError(SyncErrorType.AUTHENTICATION_FAILED,
                                           "Connection requires re-authentication",
                                           connection.id, can_retry=False)
        elif account is None:
            precondition_error = SyncError(SyncErrorType.API_ERROR,
                                           f"Account not found: {connection.account_id}",
                                           connection.id, can_retry=False)

        if precondition_error:
            logger.warning("Sync skipped", connection_id=connection.id, reason=precondition_error.message)
            return await self._finish(connection, started, errors=[precondition_error])

        if not force and self.scheduler.is_rate_limited(connection.provider_id):
            limiter = self.scheduler.get_limiter(connection.provider_id)
            raise RateLimitExceeded(
                f"Provider {connection.provider_id} is rate limited",
                reset_time=limiter.get_next_reset_time(),
                usage=limiter.get_usage(),
                provider_id=connection.provider_id,
            )

        run = _SyncRun(
            connection=connection,
            account=account,
            adapter=self.registry.get_adapter(connection.provider_id),
            options=RequestOptions(priority=RequestPriority.HIGH, force=True) if force else RequestOptions(),
            started_at=self._clock(),
        )
        op_ctx = logger.log_operation_start("sync", connection_id=connection.id,
                                            provider_id=connection.provider_id, force=force)

        try:
            await self._ensure_auth(run)
            run.open_conflicts = {
                c.event_id: c for c in await self.state_store.get_conflicts(connection.id)
            }
            await self._drain_offline_queue(run)
            if run.settings.can_import:
                await self._import(run)
            if run.remote_writable:
                await self._export(run)
            await self._resolve(run)
            await self._persist_metadata(run)
        except _SyncAborted:
            logger.warning("Sync aborted after authentication failure", connection_id=connection.id)

        result = await self._finish(connection, started, run=run)
        logger.log_operation_end(op_ctx, success=result.success,
                                 events_imported=result.events_imported,
                                 events_exported=result.events_exported,
                                 events_updated=result.events_updated,
                                 events_deleted=result.events_deleted,
                                 events_skipped=result.events_skipped,
                                 conflicts=len(result.conflicts),
                                 errors=len(result.errors))
        return result

    async def _finish(self, connection: SyncConnection, started: float,
                      run: Optional[_SyncRun] = None,
                      errors: Optional[List[SyncError]] = None) -> SyncResult:
        """結果の確定・記録・通知"""
        now = self._clock()
        errors = list(run.errors if run else errors or [])
        for error in errors:
            if error.connection_id is None:
                error.connection_id = connection.id

        if errors:
            next_sync_time = now + timedelta(minutes=self.config.sync.failure_retry_minutes)
        else:
            next_sync_time = now + timedelta(minutes=connection.settings.sync_frequency_minutes)

        result = SyncResult(
            connection_id=connection.id,
            events_imported=run.events_imported if run else 0,
            events_exported=run.events_exported if run else 0,
            events_updated=run.events_updated if run else 0,
            events_deleted=run.events_deleted if run else 0,
            events_skipped=run.events_skipped if run else 0,
            conflicts=tuple(run.conflicts) if run else (),
            errors=tuple(errors),
            duration_seconds=time.monotonic() - started,
            last_sync_time=now,
            next_sync_time=next_sync_time,
            queued_operations=await self.offline_queue.size(connection.id),
        )

        connection.last_sync_time = now
        connection.next_sync_time = next_sync_time
        self.total_syncs += 1
        if result.success:
            self.successful_syncs += 1
            connection.consecutive_failures = 0
            connection.health_status = HealthStatus.HEALTHY
        else:
            self.failed_syncs += 1
            connection.consecutive_failures += 1
            connection.health_status = (
                HealthStatus.ERROR if connection.consecutive_failures >= FAILURE_ESCALATION_THRESHOLD
                else HealthStatus.WARNING
            )

        if run:
            run.account.last_sync_time = now

        await self.state_store.log_sync_result(result)
        if self.monitor:
            self.monitor.record_result(result)

        await self._publish(SyncCompleted(result=result))
        if run:
            for conflict in run.new_conflicts:
                if not conflict.is_resolved:
                    await self._publish(ConflictDetected(connection_id=connection.id, conflict=conflict))
        return result

    # ------------------------------------------------------------------
    # プロバイダー呼び出し
    # ------------------------------------------------------------------

    def _timed(self, run: _SyncRun, fn: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
        """タイムアウト付きリクエスト"""
        timeout = run.settings.request_timeout_seconds

        async def request():
            return await asyncio.wait_for(fn(), timeout=timeout)

        return request

    async def _dispatch(self, run: _SyncRun, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await self.scheduler.make_request(run.connection.provider_id,
                                                 self._timed(run, fn), run.options)

    async def _call(self, run: _SyncRun, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        アダプター呼び出し

        実行中最初の認証エラーでトークンを強制更新して1回だけ再試行する。
        更新失敗または再試行も認証エラーなら接続を無効化して同期を中断。
        """
        try:
            return await self._dispatch(run, fn)
        except Exception as e:
            if self.error_handler.classify(e) != SyncErrorType.AUTHENTICATION_FAILED:
                raise
            first_error = e

        await self._refresh_after_auth_error(run, first_error)

        try:
            return await self._dispatch(run, fn)
        except Exception as e:
            if self.error_handler.classify(e) == SyncErrorType.AUTHENTICATION_FAILED:
                await self._invalidate_auth(run, e, publish_account_error=True)
            raise

    async def _refresh_after_auth_error(self, run: _SyncRun, error: BaseException):
        if run.auth_refreshed:
            await self._invalidate_auth(run, error, publish_account_error=True)

        run.auth_refreshed = True
        logger.info("Authentication rejected, refreshing token", connection_id=run.connection_id)
        try:
            await self.account_manager.refresh_account_auth(run.account.id, force=True)
        except AuthenticationError as refresh_error:
            await self._invalidate_auth(run, refresh_error, publish_account_error=False)

    async def _ensure_auth(self, run: _SyncRun):
        """期限が近いトークンを事前に更新"""
        try:
            await self.account_manager.refresh_account_auth(run.account.id)
        except AuthenticationError as e:
            await self._invalidate_auth(run, e, publish_account_error=False)

    async def _invalidate_auth(self, run: _SyncRun, error: BaseException, publish_account_error: bool):
        """接続を認証無効にして同期を中断"""
        run.connection.auth_status = AuthStatus.INVALID
        run.account.auth_info.is_valid = False
        self.error_handler.record(SyncErrorType.AUTHENTICATION_FAILED)
        run.errors.append(SyncError(
            error_type=SyncErrorType.AUTHENTICATION_FAILED,
            message=f"Authentication failed: {error}",
            connection_id=run.connection_id,
            can_retry=False,
        ))
        logger.error("Connection authentication invalidated", error=error,
                     connection_id=run.connection_id, operation="sync")

        await self._publish(AuthStatusChanged(connection_id=run.connection_id, status=AuthStatus.INVALID))
        if publish_account_error:
            await self._publish(AccountError(account_id=run.account.id,
                                             error_type=SyncErrorType.AUTHENTICATION_FAILED,
                                             message=str(error)))
        raise _SyncAborted()

    def _record_error(self, run: _SyncRun, error: BaseException,
                      event_id: Optional[str] = None) -> SyncError:
        sync_error = self.error_handler.to_sync_error(error, run.connection_id, event_id)
        run.errors.append(sync_error)
        logger.warning("Event sync failed", connection_id=run.connection_id, event_id=event_id,
                       error_type=sync_error.error_type.value, error_message=sync_error.message)
        return sync_error

    def _validation_error(self, run: _SyncRun, event_id: Optional[str], message: str):
        self.error_handler.record(SyncErrorType.VALIDATION_ERROR)
        run.errors.append(SyncError(
            error_type=SyncErrorType.VALIDATION_ERROR,
            message=message,
            connection_id=run.connection_id,
            event_id=event_id,
            can_retry=False,
        ))
        logger.info("Event rejected by validation", connection_id=run.connection_id,
                    event_id=event_id, reason=message)

    # ------------------------------------------------------------------
    # マッピング・ローカル書き込み
    # ------------------------------------------------------------------

    async def _save_mapping(self, run: _SyncRun, local_event_id: str, external_event_id: str,
                            calendar_id: str, sync_hash: str,
                            status: ConflictStatus = ConflictStatus.NONE) -> ExternalEventMapping:
        mapping = ExternalEventMapping(
            connection_id=run.connection_id,
            local_event_id=local_event_id,
            external_event_id=external_event_id,
            calendar_id=calendar_id,
            last_sync_time=self._clock(),
            sync_hash=sync_hash,
            conflict_status=status,
        )
        await self.state_store.save_mapping(mapping)
        return mapping

    async def _touch_mapping(self, mapping: ExternalEventMapping, sync_hash: str,
                             status: ConflictStatus = ConflictStatus.NONE):
        """書き込み後にハッシュと最終同期時刻を更新"""
        mapping.sync_hash = sync_hash
        mapping.last_sync_time = self._clock()
        mapping.conflict_status = status
        await self.state_store.save_mapping(mapping)

    def _external_id(self, remote: CalendarEvent) -> str:
        return remote.external_id or remote.id

    def _export_calendar_id(self, run: _SyncRun) -> Optional[str]:
        if run.settings.export_calendar_id:
            return run.settings.export_calendar_id
        calendars = run.account.sync_enabled_calendars or run.account.calendars
        writable = [c for c in calendars if c.is_writable]
        for calendar in writable:
            if calendar.is_primary:
                return calendar.id
        return writable[0].id if writable else None

    async def _create_local_from_remote(self, run: _SyncRun, remote: CalendarEvent,
                                        managed: bool = True) -> str:
        """リモートイベントをローカルに新規作成"""
        now = self._clock()
        metadata = dict(remote.metadata)
        if managed:
            metadata["connection_id"] = run.connection_id
            external_id = self._external_id(remote)
        else:
            metadata["unmanaged"] = True
            metadata["duplicated_from"] = self._external_id(remote)
            external_id = None

        local_event = remote.copy_with(
            id=generate_id("evt"),
            calendar_id=run.connection.local_calendar_id,
            external_id=external_id,
            metadata=metadata,
            created_at=now,
            updated_at=now,
            is_deleted=False,
        )
        local_id = await self.local_store.create_local_event(local_event)
        run.touched_event_ids.add(local_id)
        return local_id

    async def _apply_remote_to_local(self, run: _SyncRun, local: CalendarEvent,
                                     remote: CalendarEvent) -> CalendarEvent:
        """リモートの内容でローカルを上書き(IDとカレンダーは維持)"""
        updated = remote.copy_with(
            id=local.id,
            calendar_id=local.calendar_id,
            external_id=self._external_id(remote),
            metadata=dict(local.metadata),
            attendees=remote.attendees if remote.attendees is not None else local.attendees,
            attachments=remote.attachments if remote.attachments is not None else local.attachments,
            created_at=local.created_at,
            updated_at=self._clock(),
            is_deleted=False,
        )
        await self.local_store.update_local_event_data(local.id, updated)
        run.touched_event_ids.add(local.id)
        return updated

    # ------------------------------------------------------------------
    # 1. オフラインキュー再実行
    # ------------------------------------------------------------------

    async def _drain_offline_queue(self, run: _SyncRun):
        operations = await self.offline_queue.due_operations(run.connection_id)
        if not operations:
            return

        logger.info("Replaying queued operations", connection_id=run.connection_id,
                    count=len(operations))
        # 再試行回数の上限は接続ごとの設定に従う
        policy = RetryPolicy(run.settings.max_retries, self.offline_queue.policy.base_delay_minutes)
        for operation in operations:
            try:
                await self._replay(run, operation)
            except _SyncAborted:
                raise
            except Exception as e:
                sync_error = self.error_handler.to_sync_error(
                    e, run.connection_id, operation.local_event_id, operation.retry_count
                )
                terminal = await self.offline_queue.record_failure(operation, sync_error, policy)
                if terminal:
                    run.errors.append(terminal)
                    if operation.local_event_id:
                        # 打ち切った変更は同じ実行のエクスポートで再送しない
                        run.touched_event_ids.add(operation.local_event_id)
            else:
                await self.offline_queue.complete(operation)

    async def _replay(self, run: _SyncRun, operation: QueuedOperation):
        """キュー操作の再実行(ローカルに現行版があればそちらを送信)"""
        adapter = run.adapter
        event = operation.event
        if operation.local_event_id:
            current = await self.local_store.get_local_event(operation.local_event_id)
            if current is not None:
                event = current

        if operation.operation_type == OperationType.CREATE:
            existing = await self.state_store.get_mapping_by_local(run.connection_id,
                                                                   operation.local_event_id)
            if existing is not None:
                # 待機中に同一内容のリモートイベントへ紐付け済み
                logger.info("Queued create already mapped, skipping", connection_id=run.connection_id,
                            local_event_id=operation.local_event_id,
                            external_id=existing.external_event_id)
                return
            calendar_id = operation.calendar_id or self._export_calendar_id(run)
            external_id = await self._call(
                run, lambda: adapter.create_event(calendar_id, event, run.account.auth_info)
            )
            await self._save_mapping(run, operation.local_event_id, external_id,
                                     calendar_id, event.calculate_sync_hash())
            run.events_exported += 1

        elif operation.operation_type == OperationType.UPDATE:
            mapping = await self.state_store.get_mapping_by_local(run.connection_id,
                                                                  operation.local_event_id)
            external_id = operation.external_event_id or (mapping.external_event_id if mapping else None)
            calendar_id = operation.calendar_id or (mapping.calendar_id if mapping else None)
            await self._call(
                run, lambda: adapter.update_event(calendar_id, external_id, event, run.account.auth_info)
            )
            if mapping:
                await self._touch_mapping(mapping, event.calculate_sync_hash())
            run.events_updated += 1

        elif operation.operation_type == OperationType.DELETE:
            await self._call(
                run, lambda: adapter.delete_event(operation.calendar_id, operation.external_event_id,
                                                  run.account.auth_info)
            )
            await self.state_store.delete_mapping(run.connection_id, operation.external_event_id)
            run.events_deleted += 1

    # ------------------------------------------------------------------
    # 2. インポート
    # ------------------------------------------------------------------

    async def _import(self, run: _SyncRun):
        """リモート → ローカル"""
        adapter = run.adapter
        run.metadata = await self.state_store.get_sync_metadata(run.connection_id)

        sync_token = run.metadata.sync_token if run.capabilities.incremental_sync else None
        time_min = None
        if sync_token is None:
            time_min = run.started_at - timedelta(days=run.settings.initial_sync_window_days)

        try:
            fetch = await self._call(run, lambda: adapter.perform_sync(
                run.connection, run.account, sync_token=sync_token, time_min=time_min
            ))
        except _SyncAborted:
            raise
        except Exception as e:
            self._record_error(run, e)
            return

        await self.scheduler.update_from_headers(run.connection.provider_id, fetch.response_headers)
        for error in fetch.errors:
            if error.connection_id is None:
                error.connection_id = run.connection_id
            run.errors.append(error)

        events = fetch.events
        max_events = run.settings.max_events_per_sync
        truncated = len(events) > max_events
        if truncated:
            # 残りは次回取得(トークンは進めない)
            logger.warning("Remote change set truncated", connection_id=run.connection_id,
                           fetched=len(events), max_events=max_events)
            events = events[:max_events]
        run.next_sync_token = fetch.next_sync_token
        run.fetch_complete = not truncated

        mapped_local_ids = {m.local_event_id for m in await self.state_store.get_mappings(run.connection_id)}
        unmapped_locals: Dict[Tuple[str, datetime], CalendarEvent] = {}
        for local in await self.local_store.list_local_events(run.connection.local_calendar_id):
            if local.id not in mapped_local_ids and not local.metadata.get("unmanaged"):
                unmapped_locals.setdefault((local.title, local.start), local)

        for remote in events:
            external_id = self._external_id(remote)
            try:
                await self._import_event(run, remote, external_id, unmapped_locals)
            except _SyncAborted:
                raise
            except Exception as e:
                self._record_error(run, e, external_id)

        logger.info("Import completed", connection_id=run.connection_id, fetched=len(events),
                    imported=run.events_imported, updated=run.events_updated,
                    deleted=run.events_deleted)

    async def _import_event(self, run: _SyncRun, remote: CalendarEvent, external_id: str,
                            unmapped_locals: Dict[Tuple[str, datetime], CalendarEvent]):
        mapping = await self.state_store.get_mapping_by_external(run.connection_id, external_id)

        if remote.is_deleted:
            await self._import_tombstone(run, mapping)
            return

        if remote.visibility == "private" and not run.settings.sync_private_events:
            run.events_skipped += 1
            self.private_events_skipped += 1
            logger.info("Skipped private remote event", connection_id=run.connection_id,
                        external_id=external_id, reason="sync_private_events disabled")
            return

        # ハッシュ対象外のフィールド(場所・参加者など)の変更は更新時刻で判定
        if (mapping and remote.calculate_sync_hash() == mapping.sync_hash
                and not self.detector.remote_changed(remote, mapping)):
            return

        if mapping and mapping.local_event_id in run.open_conflicts:
            await self._refresh_open_conflict(run, mapping.local_event_id, remote)
            return

        await self._enrich(run, remote, external_id)

        validation = self.validator.validate_event(remote)
        if not validation.is_valid:
            self._validation_error(run, external_id,
                                   f"Remote event '{remote.title}' rejected: {validation.summary()}")
            return

        if mapping is None:
            await self._import_unmapped(run, remote, external_id, unmapped_locals)
            return

        local = await self.local_store.get_local_event(mapping.local_event_id)
        if local is None:
            conflict = self.detector.build_conflict(run.connection_id, mapping.local_event_id,
                                                    ConflictType.DELETED_LOCAL, None, remote)
            run.add_conflict(conflict)
            return

        conflict = self.detector.detect(local, remote, mapping)
        if conflict:
            blocking = (conflict.conflict_type == ConflictType.MODIFIED_BOTH
                        or run.settings.conflict_resolution == ConflictStrategy.MANUAL_RESOLUTION)
            if blocking:
                run.add_conflict(conflict)
                return
            # 補助的な競合は報告のみ(変更された側を採用)
            conflict.is_resolved = True
            conflict.resolution = ConflictResolution(strategy=run.settings.conflict_resolution,
                                                     resolved_at=self._clock())
            run.add_conflict(conflict, blocking=False)

        if self.detector.local_changed(local, mapping):
            # ローカル側のみ更新 → エクスポートで送信
            return

        await self._apply_remote_to_local(run, local, remote)
        await self._touch_mapping(mapping, remote.calculate_sync_hash())
        run.events_updated += 1

    async def _import_tombstone(self, run: _SyncRun, mapping: Optional[ExternalEventMapping]):
        """リモートで削除されたイベント"""
        if mapping is None:
            return
        if mapping.local_event_id in run.open_conflicts:
            return

        local = await self.local_store.get_local_event(mapping.local_event_id)
        if local is None:
            await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
            return

        if self.detector.local_changed(local, mapping):
            conflict = self.detector.build_conflict(run.connection_id, local.id,
                                                    ConflictType.DELETED_REMOTE, local, None)
            run.add_conflict(conflict)
            return

        await self.local_store.delete_local_event(local.id)
        await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
        run.events_deleted += 1

    async def _import_unmapped(self, run: _SyncRun, remote: CalendarEvent, external_id: str,
                               unmapped_locals: Dict[Tuple[str, datetime], CalendarEvent]):
        """マッピングのないリモートイベント"""
        calendar_id = remote.calendar_id or self._export_calendar_id(run) or ""
        candidate = unmapped_locals.pop((remote.title, remote.start), None)

        if candidate is not None:
            if candidate.id in run.open_conflicts:
                await self._refresh_open_conflict(run, candidate.id, remote)
                return
            if candidate.calculate_sync_hash() == remote.calculate_sync_hash():
                # 同一内容のローカルイベントを紐付け
                await self._save_mapping(run, candidate.id, external_id, calendar_id,
                                         remote.calculate_sync_hash())
                run.touched_event_ids.add(candidate.id)
                logger.info("Adopted existing local event", connection_id=run.connection_id,
                            local_event_id=candidate.id, external_id=external_id)
                return
            conflict = self.detector.build_conflict(run.connection_id, candidate.id,
                                                    ConflictType.DUPLICATE_EVENT, candidate, remote)
            run.add_conflict(conflict)
            return

        local_id = await self._create_local_from_remote(run, remote)
        try:
            await self._save_mapping(run, local_id, external_id, calendar_id,
                                     remote.calculate_sync_hash())
        except MappingConflictError:
            await self.local_store.delete_local_event(local_id)
            raise
        run.events_imported += 1

    async def _refresh_open_conflict(self, run: _SyncRun, event_id: str, remote: CalendarEvent):
        """未解決競合のリモート側スナップショットを更新"""
        conflict = run.open_conflicts[event_id]
        conflict.remote_event = remote
        conflict.differences = self.detector.compare_fields(conflict.local_event, remote)
        await self.state_store.save_conflict(conflict)

    async def _enrich(self, run: _SyncRun, remote: CalendarEvent, external_id: str):
        """機能と設定が許す場合に参加者・添付を取得"""
        adapter = run.adapter
        capabilities = run.capabilities
        settings = run.settings

        if remote.attendees is None and capabilities.attendee_management and settings.sync_attendees:
            try:
                remote.attendees = await self._call(run, lambda: adapter.get_event_attendees(
                    remote.calendar_id, external_id, run.account.auth_info
                ))
            except _SyncAborted:
                raise
            except Exception as e:
                logger.warning("Failed to load attendees", connection_id=run.connection_id,
                               external_id=external_id, error_message=str(e))

        if remote.attachments is None and capabilities.attachment_support and settings.sync_attachments:
            try:
                remote.attachments = await self._call(run, lambda: adapter.get_event_attachments(
                    remote.calendar_id, external_id, run.account.auth_info
                ))
            except _SyncAborted:
                raise
            except Exception as e:
                logger.warning("Failed to load attachments", connection_id=run.connection_id,
                               external_id=external_id, error_message=str(e))

    # ------------------------------------------------------------------
    # 3. エクスポート
    # ------------------------------------------------------------------

    async def _export(self, run: _SyncRun):
        """ローカル → リモート"""
        calendar_id = self._export_calendar_id(run)
        if calendar_id is None:
            logger.warning("No writable calendar for export", connection_id=run.connection_id)
            return

        local_events = await self.local_store.list_local_events(run.connection.local_calendar_id)
        mappings = {m.local_event_id: m for m in await self.state_store.get_mappings(run.connection_id)}
        pending = await self.offline_queue.pending_local_event_ids(run.connection_id)
        # 報告のみの補助的競合はエクスポートを妨げない
        blocked = {c.event_id for c in run.new_conflicts} | set(run.open_conflicts)

        to_create: List[CalendarEvent] = []
        for local in local_events:
            if (local.metadata.get("unmanaged") or local.is_deleted or local.id in blocked
                    or local.id in pending or local.id in run.touched_event_ids):
                continue

            mapping = mappings.get(local.id)
            if mapping is not None and not self.detector.local_changed(local, mapping):
                continue
            if not self._exportable(run, local):
                continue

            if mapping is None:
                to_create.append(local)
            elif run.can_update_remote:
                await self._push_update(run, local, mapping)
            else:
                await self._unsupported_write(run, "update_event", mapping)

        if len(to_create) > run.settings.max_events_per_sync:
            to_create = to_create[:run.settings.max_events_per_sync]
        await self._create_remote_events(run, calendar_id, to_create)

        local_ids = {e.id for e in local_events}
        for local_id, mapping in mappings.items():
            if local_id in local_ids or local_id in blocked or local_id in pending:
                continue
            if run.can_delete_remote:
                await self._delete_remote(run, mapping)
            else:
                await self._unsupported_write(run, "delete_event", mapping)

    async def _unsupported_write(self, run: _SyncRun, operation: str,
                                 mapping: ExternalEventMapping):
        """
        プロバイダーが対応していない書き込み

        リトライ不可のエラーとして1回だけ報告する。更新はハッシュを据え置いて同期済みにし、
        削除はマッピングを外す(リモート側のイベントは残る)。
        """
        self.error_handler.record(SyncErrorType.API_ERROR)
        run.errors.append(SyncError(
            error_type=SyncErrorType.API_ERROR,
            message=f"{run.connection.provider_id} does not support {operation}; "
                    f"local change was not sent",
            connection_id=run.connection_id,
            event_id=mapping.local_event_id,
            can_retry=False,
        ))
        logger.warning("Provider does not support operation", connection_id=run.connection_id,
                       operation=operation, local_event_id=mapping.local_event_id,
                       external_id=mapping.external_event_id)

        if operation == "delete_event":
            await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
        else:
            await self._touch_mapping(mapping, mapping.sync_hash)

    def _exportable(self, run: _SyncRun, local: CalendarEvent) -> bool:
        """プロバイダーが受け付けられる内容か"""
        capabilities = run.capabilities
        if local.recurrence and not capabilities.supports_recurrence(local.recurrence.frequency):
            self._validation_error(run, local.id,
                                   f"Recurrence pattern '{local.recurrence.frequency}' "
                                   f"is not supported by {run.connection.provider_id}")
            return False

        if run.settings.sync_attachments and capabilities.attachment_support and local.attachments:
            limit = run.settings.max_attachment_size_mb
            if capabilities.max_attachment_size_mb:
                limit = min(limit, capabilities.max_attachment_size_mb)
            oversized = [a.name for a in local.attachments if a.size_mb > limit]
            if oversized:
                self._validation_error(run, local.id,
                                       f"Attachments exceed {limit} MB: {', '.join(oversized)}")
                return False
        return True

    async def _export_failed(self, run: _SyncRun, error: BaseException,
                             operation_type: OperationType, local_event_id: Optional[str],
                             event: Optional[CalendarEvent], external_event_id: Optional[str],
                             calendar_id: Optional[str]):
        """一時的な失敗はオフラインキューへ、それ以外はエラーとして記録"""
        error_type = self.error_handler.classify(error)
        if not self.error_handler.is_retryable(error) or error_type == SyncErrorType.AUTHENTICATION_FAILED:
            self._record_error(run, error, local_event_id)
            return

        self.error_handler.record(error_type)
        await self.offline_queue.enqueue(
            run.connection_id, operation_type,
            local_event_id=local_event_id,
            external_event_id=external_event_id,
            calendar_id=calendar_id,
            event=event,
            error=str(error) or error.__class__.__name__,
        )

    async def _push_update(self, run: _SyncRun, local: CalendarEvent, mapping: ExternalEventMapping):
        adapter = run.adapter
        try:
            await self._call(run, lambda: adapter.update_event(
                mapping.calendar_id, mapping.external_event_id, local, run.account.auth_info
            ))
        except _SyncAborted:
            raise
        except Exception as e:
            await self._export_failed(run, e, OperationType.UPDATE, local.id, local,
                                      mapping.external_event_id, mapping.calendar_id)
            return

        await self._upload_attachments(run, local, mapping.calendar_id, mapping.external_event_id)
        await self._touch_mapping(mapping, local.calculate_sync_hash())
        run.events_updated += 1

    async def _create_remote_events(self, run: _SyncRun, calendar_id: str, events: List[CalendarEvent]):
        """未マッピングのローカルイベントをバッチで作成"""
        if not events:
            return

        adapter = run.adapter

        def creator(event: CalendarEvent) -> Callable[[], Awaitable[str]]:
            return lambda: adapter.create_event(calendar_id, event, run.account.auth_info)

        creators = [creator(event) for event in events]
        results = await self.scheduler.batch_requests(
            run.connection.provider_id,
            [self._timed(run, fn) for fn in creators],
            batch_size=self.config.rate_limits.batch_size,
            delay_between_batches=self.config.rate_limits.delay_between_batches,
            options=run.options,
        )

        for item in results:
            local = events[item.index]
            if item.success:
                external_id = item.result
            elif self.error_handler.classify(item.error) == SyncErrorType.AUTHENTICATION_FAILED:
                try:
                    external_id = await self._call(run, creators[item.index])
                except _SyncAborted:
                    raise
                except Exception as e:
                    await self._export_failed(run, e, OperationType.CREATE, local.id, local,
                                              None, calendar_id)
                    continue
            else:
                await self._export_failed(run, item.error, OperationType.CREATE, local.id, local,
                                          None, calendar_id)
                continue

            try:
                await self._save_mapping(run, local.id, external_id, calendar_id,
                                         local.calculate_sync_hash())
            except MappingConflictError as e:
                self._record_error(run, e, local.id)
                continue
            await self._upload_attachments(run, local, calendar_id, external_id)
            run.events_exported += 1

    async def _upload_attachments(self, run: _SyncRun, local: CalendarEvent,
                                  calendar_id: str, external_event_id: str):
        if not (run.settings.sync_attachments and run.capabilities.attachment_support
                and local.attachments):
            return

        adapter = run.adapter
        for attachment in local.attachments:
            try:
                await self._call(run, lambda: adapter.upload_attachment(
                    calendar_id, external_event_id, attachment, run.account.auth_info
                ))
            except _SyncAborted:
                raise
            except Exception as e:
                self._record_error(run, e, local.id)

    async def _delete_remote(self, run: _SyncRun, mapping: ExternalEventMapping):
        """ローカルで削除されたイベントをリモートからも削除"""
        adapter = run.adapter
        try:
            await self._call(run, lambda: adapter.delete_event(
                mapping.calendar_id, mapping.external_event_id, run.account.auth_info
            ))
        except _SyncAborted:
            raise
        except Exception as e:
            await self._export_failed(run, e, OperationType.DELETE, mapping.local_event_id, None,
                                      mapping.external_event_id, mapping.calendar_id)
            return

        await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
        run.events_deleted += 1

    # ------------------------------------------------------------------
    # 4. 競合解決
    # ------------------------------------------------------------------

    async def _resolve(self, run: _SyncRun):
        """検出済み競合と記録済みの手動解決を適用"""
        resolver = ConflictResolver(run.settings.conflict_resolution, run.settings.merge_rules)

        for conflict in run.open_conflicts.values():
            if conflict.has_pending_override:
                current = await self.local_store.get_local_event(conflict.event_id)
                if current is not None:
                    conflict.local_event = current
                plan = resolver.resolve(conflict, conflict.resolution.strategy)
                await self._apply_resolution(run, conflict, plan, user_choice=True)
            run.conflicts.append(conflict)

        for conflict in run.new_conflicts:
            self.conflicts_detected += 1
            plan = resolver.resolve(conflict)
            if plan.is_deferred:
                await self._defer(run, conflict)
            else:
                await self._apply_resolution(run, conflict, plan, user_choice=False)

    async def _defer(self, run: _SyncRun, conflict: SyncConflict):
        """手動解決待ちとして保存"""
        mapping = await self.state_store.get_mapping_by_local(run.connection_id, conflict.event_id)
        if mapping:
            mapping.conflict_status = ConflictStatus.DETECTED
            await self.state_store.save_mapping(mapping)
        await self.state_store.save_conflict(conflict)
        logger.info("Conflict awaiting manual resolution", connection_id=run.connection_id,
                    conflict_id=conflict.id, conflict_type=conflict.conflict_type.value,
                    event_id=conflict.event_id)

    async def _apply_resolution(self, run: _SyncRun, conflict: SyncConflict,
                                plan: ResolutionPlan, user_choice: bool):
        try:
            await self._apply_plan(run, conflict, plan)
        except _SyncAborted:
            raise
        except Exception as e:
            self._record_error(run, e, conflict.event_id)
            return

        conflict.is_resolved = True
        conflict.resolution = ConflictResolution(
            strategy=plan.strategy,
            resolved_at=self._clock(),
            user_choice=user_choice,
            resolved_event=plan.event,
        )
        if user_choice:
            await self.state_store.save_conflict(conflict)

    async def _apply_plan(self, run: _SyncRun, conflict: SyncConflict, plan: ResolutionPlan):
        """解決アクションの実行"""
        adapter = run.adapter
        action = plan.action
        local = conflict.local_event
        remote = conflict.remote_event
        mapping = await self.state_store.get_mapping_by_local(run.connection_id, conflict.event_id)

        if action == ResolutionAction.PUSH_LOCAL:
            if run.can_update_remote:
                await self._call(run, lambda: adapter.update_event(
                    mapping.calendar_id, mapping.external_event_id, local, run.account.auth_info
                ))
                run.events_updated += 1
            await self._touch_mapping(mapping, local.calculate_sync_hash()
                                      if run.can_update_remote else remote.calculate_sync_hash(),
                                      ConflictStatus.RESOLVED)

        elif action == ResolutionAction.APPLY_REMOTE:
            if mapping is None:
                # 重複イベントを紐付けてリモート版を採用
                mapping = await self._save_mapping(run, local.id, self._external_id(remote),
                                                   remote.calendar_id or self._export_calendar_id(run) or "",
                                                   remote.calculate_sync_hash())
            await self._apply_remote_to_local(run, local, remote)
            await self._touch_mapping(mapping, remote.calculate_sync_hash(), ConflictStatus.RESOLVED)
            run.events_updated += 1

        elif action == ResolutionAction.APPLY_MERGED:
            merged = plan.event.copy_with(updated_at=self._clock())
            await self.local_store.update_local_event_data(local.id, merged)
            run.touched_event_ids.add(local.id)
            sync_hash = remote.calculate_sync_hash()
            if run.can_update_remote:
                await self._call(run, lambda: adapter.update_event(
                    mapping.calendar_id, mapping.external_event_id, merged, run.account.auth_info
                ))
                sync_hash = merged.calculate_sync_hash()
            await self._touch_mapping(mapping, sync_hash, ConflictStatus.RESOLVED)
            run.events_updated += 1

        elif action == ResolutionAction.DUPLICATE_REMOTE:
            # 複製はマッピングを持たない独立イベント
            await self._create_local_from_remote(run, remote, managed=False)
            await self._touch_mapping(mapping, remote.calculate_sync_hash(), ConflictStatus.RESOLVED)
            run.events_imported += 1

        elif action == ResolutionAction.DELETE_LOCAL:
            await self.local_store.delete_local_event(conflict.event_id)
            if mapping:
                await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
            run.events_deleted += 1

        elif action == ResolutionAction.DELETE_REMOTE:
            if run.can_delete_remote:
                await self._call(run, lambda: adapter.delete_event(
                    mapping.calendar_id, mapping.external_event_id, run.account.auth_info
                ))
                run.events_deleted += 1
            await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)

        elif action == ResolutionAction.RECREATE_LOCAL:
            if mapping:
                await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
            local_id = await self._create_local_from_remote(run, remote)
            await self._save_mapping(run, local_id, self._external_id(remote),
                                     remote.calendar_id or self._export_calendar_id(run) or "",
                                     remote.calculate_sync_hash())
            run.events_imported += 1

        elif action == ResolutionAction.RECREATE_REMOTE:
            await self.state_store.delete_mapping(run.connection_id, mapping.external_event_id)
            if run.remote_writable:
                calendar_id = self._export_calendar_id(run) or mapping.calendar_id
                external_id = await self._call(run, lambda: adapter.create_event(
                    calendar_id, local, run.account.auth_info
                ))
                await self._save_mapping(run, local.id, external_id, calendar_id,
                                         local.calculate_sync_hash())
                run.events_exported += 1

        elif action == ResolutionAction.LINK:
            external_id = self._external_id(remote)
            calendar_id = remote.calendar_id or self._export_calendar_id(run) or ""
            sync_hash = remote.calculate_sync_hash()
            if run.can_update_remote:
                await self._call(run, lambda: adapter.update_event(
                    calendar_id, external_id, local, run.account.auth_info
                ))
                sync_hash = local.calculate_sync_hash()
                run.events_updated += 1
            await self._save_mapping(run, local.id, external_id, calendar_id, sync_hash,
                                     ConflictStatus.RESOLVED)

    # ------------------------------------------------------------------
    # 5. メタデータ保存
    # ------------------------------------------------------------------

    async def _persist_metadata(self, run: _SyncRun):
        if run.metadata is None:
            return
        metadata = run.metadata
        if run.fetch_complete and run.next_sync_token is not None:
            metadata.sync_token = run.next_sync_token
        metadata.last_modified = self._clock()
        metadata.sync_version += 1
        await self.state_store.save_sync_metadata(metadata)

    # ------------------------------------------------------------------
    # 競合管理・状態参照
    # ------------------------------------------------------------------

    async def resolve_conflict(self, connection_id: str, conflict_id: str,
                               strategy: ConflictStrategy) -> SyncConflict:
        """手動解決方法の記録(次回同期で適用)"""
        self._require_connection(connection_id)
        if strategy == ConflictStrategy.MANUAL_RESOLUTION:
            raise ValueError("manual_resolution cannot be recorded as a resolution")

        conflict = await self.state_store.get_conflict(conflict_id)
        if conflict is None or conflict.connection_id != connection_id:
            raise NotFoundError(f"Conflict not found: {conflict_id}")
        if conflict.is_resolved:
            return conflict

        conflict.resolution = ConflictResolution(strategy=strategy, user_choice=True)
        await self.state_store.save_conflict(conflict)
        logger.info("Conflict resolution recorded", connection_id=connection_id,
                    conflict_id=conflict_id, strategy=strategy.value)
        return conflict

    async def get_conflicts(self, connection_id: str, include_resolved: bool = False) -> List[SyncConflict]:
        self._require_connection(connection_id)
        return await self.state_store.get_conflicts(connection_id, include_resolved)

    async def get_sync_status(self, connection_id: str) -> Dict[str, Any]:
        connection = self._require_connection(connection_id)
        status = {
            "connection_id": connection.id,
            "provider_id": connection.provider_id,
            "auth_status": connection.auth_status.value,
            "health_status": connection.health_status.value,
            "is_active": connection.is_active,
            "last_sync_time": connection.last_sync_time.isoformat() if connection.last_sync_time else None,
            "next_sync_time": connection.next_sync_time.isoformat() if connection.next_sync_time else None,
            "consecutive_failures": connection.consecutive_failures,
            "is_syncing": self._lock_for(connection_id).locked(),
            "queued_operations": await self.offline_queue.size(connection_id),
            "open_conflicts": len(await self.state_store.get_conflicts(connection_id)),
            "rate_limited": self.scheduler.is_rate_limited(connection.provider_id),
        }
        if self.monitor:
            status["recent"] = self.monitor.get_sync_status(connection_id)
        return status

    def get_statistics(self) -> Dict[str, Any]:
        """同期エンジン統計情報"""
        total = self.total_syncs
        return {
            "connections": len(self.connections),
            "total_syncs": total,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "success_rate": (self.successful_syncs / total * 100) if total > 0 else 0.0,
            "conflicts_detected": self.conflicts_detected,
            "private_events_skipped": self.private_events_skipped,
            "errors": self.error_handler.get_statistics(),
            "offline_queue": self.offline_queue.get_statistics(),
            "scheduler": self.scheduler.get_statistics(),
        }
