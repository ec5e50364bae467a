"""
ICS購読管理
公開カレンダーフィードの登録・定期更新・健全性監視

購読1件につき ics_subscription アカウントと取り込み専用の同期接続を1つ作成し、
イベントの取り込み・更新・削除は同期エンジンに任せる。
"""

import asyncio
import ipaddress
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from ...core.errors import NotFoundError, SubscriptionError
from ...core.models import (AuthInfo, ConflictStrategy, HealthStatus, SyncDirection, SyncError,
                            SyncErrorType, SyncResult, SyncSettings, generate_id, utc_now)
from ...core.notifications import NotificationBus, SubscriptionRefreshed
from ...utils.enhanced_logger import get_logger
from ..provider_layer.adapter import FeedSnapshot
from ..provider_layer.content_validator import IcsValidationResult
from ..sync_layer.sync_engine import SynchronizationEngine

logger = get_logger(__name__)

# 更新間隔の下限(分)
MIN_REFRESH_INTERVAL = 5
# 購読ごとに保持する更新履歴の件数
REFRESH_HISTORY_LIMIT = 100
# 次回更新予定からこの倍数(更新間隔比)以上遅れたら警告
OVERDUE_FACTOR = 2

CONTENT_TYPE_KEYWORDS = (
    ("education", ("school", "class", "homework")),
    ("holidays", ("holiday", "vacation")),
    ("sports", ("sport", "game", "match")),
    ("business", ("meeting", "conference")),
)


@dataclass
class FeedSubscription:
    """ICSフィード購読"""
    id: str
    url: str
    name: str
    user_id: str
    account_id: str
    connection_id: str
    refresh_interval_minutes: int = 60
    is_active: bool = True
    health_status: HealthStatus = HealthStatus.HEALTHY
    event_count: int = 0
    last_refresh: Optional[datetime] = None
    next_refresh: Optional[datetime] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_length: Optional[int] = None
    content_type: str = "unknown"
    last_error: Optional[SyncError] = None
    created_at: datetime = field(default_factory=utc_now)
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def auto_refresh(self) -> bool:
        return bool(self.options.get("auto_refresh", True))


@dataclass
class RefreshResult:
    subscription_id: str
    success: bool
    events_updated: int = 0
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RefreshRecord:
    timestamp: datetime
    success: bool
    duration: float = 0.0
    error: Optional[str] = None


def detect_content_type(titles: List[str]) -> str:
    """イベントタイトルから購読内容の種類を推定"""
    if not titles:
        return "unknown"
    text = " ".join(title.lower() for title in titles)
    for content_type, keywords in CONTENT_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return content_type
    return "general"


def is_private_host(hostname: str) -> bool:
    """ローカル・プライベートネットワーク宛てかどうか"""
    hostname = hostname.lower().rstrip(".")
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return (address.is_private or address.is_loopback
            or address.is_link_local or address.is_unspecified)


class SubscriptionManager:
    """ICS購読の登録・更新・削除"""

    def __init__(self, engine: SynchronizationEngine,
                 provider_id: str = "ics_subscription",
                 notifications: Optional[NotificationBus] = None,
                 clock: Callable[[], datetime] = utc_now,
                 min_valid_ratio: float = 0.8,
                 check_interval: float = 300.0):
        self.engine = engine
        self.account_manager = engine.account_manager
        self.validator = engine.validator
        self.provider_id = provider_id
        self.notifications = notifications or engine.notifications
        self.min_valid_ratio = min_valid_ratio
        self.check_interval = check_interval
        self._clock = clock

        self.subscriptions: Dict[str, FeedSubscription] = {}
        self.refresh_history: Dict[str, List[RefreshRecord]] = {}

        self._monitor_task: Optional[asyncio.Task] = None
        self.is_running = False

    def _require(self, subscription_id: str) -> FeedSubscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    # ------------------------------------------------------------------
    # 登録・変更・削除
    # ------------------------------------------------------------------

    def validate_subscription_url(self, url: str):
        """HTTP(S)以外とローカルネットワーク宛てのURLを拒否"""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise SubscriptionError("Only HTTP and HTTPS URLs are allowed")
        if not parsed.hostname:
            raise SubscriptionError("Invalid URL format")
        if is_private_host(parsed.hostname):
            raise SubscriptionError("Private network addresses are not allowed")

        path = parsed.path.lower()
        if not (path.endswith(".ics") or path.endswith(".ical") or "calendar" in path
                or "format=ics" in parsed.query):
            logger.warning("URL does not look like an ICS feed", url=url)

    async def create_subscription(self, url: str, name: str, refresh_interval: int = 60,
                                  user_id: str = "", **options: Any) -> FeedSubscription:
        """
        購読作成

        URL検証 → アカウント作成 → 取得とICS構造チェック → 取り込み専用接続で初回同期。
        途中で失敗した場合はアカウント・接続・取り込んだイベントを残さない。
        """
        self.validate_subscription_url(url)
        op_ctx = logger.log_operation_start("create_subscription", url=url, user_id=user_id)

        account = await self.account_manager.add_account(self.provider_id, {"url": url, "name": name},
                                                         user_id)
        interval = max(int(refresh_interval), MIN_REFRESH_INTERVAL)
        connection_id = None

        try:
            snapshot = await self._fetch(account.auth_info)
            ics = self._check_feed(snapshot)

            connection = self.engine.create_connection(account.id, self._connection_settings(interval, options))
            connection_id = connection.id
            result = await self.engine.sync(connection_id)

            failure = self._sync_failure(result)
            if failure:
                raise SubscriptionError(f"Initial import failed: {failure.message}")
            ratio = self._valid_ratio(ics, result)
            if ratio < self.min_valid_ratio:
                raise SubscriptionError(
                    f"Content validation failed: {self._rejected(result)} of {ics.event_count} events rejected"
                )
        except Exception as e:
            await self._discard(account.id, connection_id)
            logger.log_operation_end(op_ctx, success=False, error_message=str(e))
            if isinstance(e, SubscriptionError):
                raise
            raise SubscriptionError(f"Failed to fetch calendar: {e}") from e

        now = self._clock()
        subscription = FeedSubscription(
            id=generate_id("sub"),
            url=url,
            name=name,
            user_id=user_id,
            account_id=account.id,
            connection_id=connection_id,
            refresh_interval_minutes=interval,
            event_count=ics.event_count,
            last_refresh=now,
            created_at=now,
            options=dict(options),
        )
        self._store_snapshot(subscription, snapshot)
        subscription.content_type = await self._detect_content_type(subscription)
        self._schedule_next(subscription, now)
        self.subscriptions[subscription.id] = subscription

        logger.log_operation_end(op_ctx, success=True, subscription_id=subscription.id,
                                 events_imported=result.events_imported,
                                 content_type=subscription.content_type)
        return subscription

    def _connection_settings(self, interval: int, options: Dict[str, Any]) -> SyncSettings:
        settings = SyncSettings(
            direction=SyncDirection.IMPORT_ONLY,
            conflict_resolution=ConflictStrategy.KEEP_REMOTE,
            sync_frequency_minutes=interval,
        )
        if options.get("max_events"):
            settings.max_events_per_sync = int(options["max_events"])
        return settings

    async def update_subscription(self, subscription_id: str, name: Optional[str] = None,
                                  url: Optional[str] = None, refresh_interval: Optional[int] = None,
                                  is_active: Optional[bool] = None) -> FeedSubscription:
        """
        購読設定の変更

        URLを変更した場合は旧フィードのイベントと同期状態を破棄して強制更新する。
        """
        subscription = self._require(subscription_id)
        if url is not None and url != subscription.url:
            self.validate_subscription_url(url)

        if name is not None:
            subscription.name = name
        if is_active is not None:
            subscription.is_active = is_active
            connection = self.engine.get_connection(subscription.connection_id)
            if connection:
                connection.is_active = is_active
        if refresh_interval is not None:
            subscription.refresh_interval_minutes = max(int(refresh_interval), MIN_REFRESH_INTERVAL)
            connection = self.engine.get_connection(subscription.connection_id)
            if connection:
                connection.settings.sync_frequency_minutes = subscription.refresh_interval_minutes
            self._schedule_next(subscription, subscription.last_refresh or self._clock())

        if url is not None and url != subscription.url:
            await self.account_manager.update_auth_info(subscription.account_id, server_url=url)
            await self._clear_events(subscription.connection_id)
            await self.engine.state_store.delete_connection_state(subscription.connection_id)
            subscription.url = url
            subscription.etag = None
            subscription.last_modified = None
            subscription.content_length = None
            logger.info("Subscription URL changed", subscription_id=subscription_id, url=url)
            await self.refresh_subscription(subscription_id, force=True)

        return subscription

    async def delete_subscription(self, subscription_id: str):
        """購読と取り込んだイベントの削除"""
        subscription = self._require(subscription_id)
        await self._discard(subscription.account_id, subscription.connection_id)
        del self.subscriptions[subscription_id]
        self.refresh_history.pop(subscription_id, None)
        logger.info("Subscription deleted", subscription_id=subscription_id,
                    connection_id=subscription.connection_id)

    async def _discard(self, account_id: str, connection_id: Optional[str]):
        if connection_id and self.engine.get_connection(connection_id):
            await self._clear_events(connection_id)
            await self.engine.remove_connection(connection_id)
        if self.account_manager.get_account(account_id):
            await self.account_manager.remove_account(account_id)

    async def _clear_events(self, connection_id: str):
        connection = self.engine.get_connection(connection_id)
        local_store = self.engine.local_store
        for event in await local_store.list_local_events(connection.local_calendar_id):
            await local_store.delete_local_event(event.id)

    # ------------------------------------------------------------------
    # 更新
    # ------------------------------------------------------------------

    async def refresh_subscription(self, subscription_id: str, force: bool = False) -> RefreshResult:
        """購読の更新(force時は更新時刻と変更検出を無視)"""
        subscription = self._require(subscription_id)
        if not force and not self._should_refresh(subscription):
            return RefreshResult(subscription_id, success=True, message="Refresh not needed yet")

        started = time.monotonic()
        result = await self._refresh(subscription, force)
        self._record_refresh(subscription_id, result, time.monotonic() - started)

        if result.success:
            logger.info("Subscription refreshed", subscription_id=subscription_id,
                        events_updated=result.events_updated, detail=result.message)
        else:
            logger.warning("Subscription refresh failed", subscription_id=subscription_id,
                           error_message=result.error)
        if self.notifications:
            await self.notifications.publish(SubscriptionRefreshed(
                subscription_id=subscription_id,
                success=result.success,
                events_updated=result.events_updated,
                message=result.message or result.error or "",
            ))
        return result

    async def _refresh(self, subscription: FeedSubscription, force: bool) -> RefreshResult:
        account = self.account_manager.get_account(subscription.account_id)
        if account is None:
            return self._failed(subscription, HealthStatus.ERROR, SyncError(
                SyncErrorType.API_ERROR, f"Account not found: {subscription.account_id}",
                subscription.connection_id, can_retry=False,
            ))

        try:
            if force:
                snapshot = await self._fetch(account.auth_info)
            else:
                snapshot = await self._fetch(account.auth_info, subscription.etag, subscription.last_modified)
        except Exception as e:
            error = self.engine.error_handler.to_sync_error(e, subscription.connection_id)
            return self._failed(subscription, HealthStatus.ERROR, error)

        now = self._clock()
        if not force and not self._has_content_changed(subscription, snapshot):
            subscription.last_refresh = now
            self._schedule_next(subscription, now)
            return RefreshResult(subscription.id, success=True, message="No changes detected")

        ics = self.validator.validate_ics_content(snapshot.content)
        if not ics.is_valid:
            return self._failed(subscription, HealthStatus.WARNING, SyncError(
                SyncErrorType.VALIDATION_ERROR, f"Invalid calendar feed: {'; '.join(ics.issues)}",
                subscription.connection_id, can_retry=False,
            ))

        try:
            result = await self.engine.sync(subscription.connection_id, force=force)
        except Exception as e:
            error = self.engine.error_handler.to_sync_error(e, subscription.connection_id)
            return self._failed(subscription, HealthStatus.ERROR, error)

        failure = self._sync_failure(result)
        if failure:
            return self._failed(subscription, HealthStatus.ERROR, failure)

        self._store_snapshot(subscription, snapshot)
        subscription.event_count = ics.event_count
        subscription.last_refresh = now
        self._schedule_next(subscription, now)
        events_updated = result.events_imported + result.events_updated + result.events_deleted

        if self._valid_ratio(ics, result) < self.min_valid_ratio:
            subscription.health_status = HealthStatus.WARNING
            message = f"Content validation failed: {self._rejected(result)} of {ics.event_count} events rejected"
            subscription.last_error = SyncError(SyncErrorType.VALIDATION_ERROR, message,
                                                subscription.connection_id, can_retry=False)
            return RefreshResult(subscription.id, success=False, events_updated=events_updated, error=message)

        subscription.health_status = HealthStatus.HEALTHY
        subscription.last_error = None
        return RefreshResult(subscription.id, success=True, events_updated=events_updated,
                             message=f"Successfully updated {events_updated} events")

    def _failed(self, subscription: FeedSubscription, health: HealthStatus, error: SyncError) -> RefreshResult:
        subscription.health_status = health
        subscription.last_error = error
        return RefreshResult(subscription.id, success=False, error=error.message)

    async def _fetch(self, auth_info: AuthInfo, etag: Optional[str] = None,
                     last_modified: Optional[str] = None) -> FeedSnapshot:
        """レート制限に従ってフィードを取得"""
        adapter = self.engine.registry.get_adapter(self.provider_id)
        return await self.engine.scheduler.make_request(
            self.provider_id,
            lambda: adapter.fetch_feed(auth_info, etag=etag, last_modified=last_modified)
        )

    def _check_feed(self, snapshot: FeedSnapshot) -> IcsValidationResult:
        ics = self.validator.validate_ics_content(snapshot.content)
        if not ics.is_valid:
            raise SubscriptionError(f"Invalid calendar feed: {'; '.join(ics.issues)}")
        return ics

    def _sync_failure(self, result: SyncResult) -> Optional[SyncError]:
        """内容検証以外の同期エラー"""
        for error in result.errors:
            if error.error_type != SyncErrorType.VALIDATION_ERROR:
                return error
        return None

    def _rejected(self, result: SyncResult) -> int:
        return sum(1 for e in result.errors if e.error_type == SyncErrorType.VALIDATION_ERROR)

    def _valid_ratio(self, ics: IcsValidationResult, result: SyncResult) -> float:
        if ics.event_count == 0:
            return 1.0
        return max(ics.event_count - self._rejected(result), 0) / ics.event_count

    def _has_content_changed(self, subscription: FeedSubscription, snapshot: FeedSnapshot) -> bool:
        """ETag → Last-Modified → Content-Length の順で比較。判定できなければ変更あり"""
        if snapshot.not_modified:
            return False
        if subscription.etag and snapshot.etag:
            return subscription.etag != snapshot.etag
        if subscription.last_modified and snapshot.last_modified:
            return subscription.last_modified != snapshot.last_modified
        if subscription.content_length and snapshot.content_length:
            return subscription.content_length != snapshot.content_length
        return True

    def _store_snapshot(self, subscription: FeedSubscription, snapshot: FeedSnapshot):
        subscription.etag = snapshot.etag
        subscription.last_modified = snapshot.last_modified
        subscription.content_length = snapshot.content_length

    def _should_refresh(self, subscription: FeedSubscription) -> bool:
        return subscription.next_refresh is None or self._clock() >= subscription.next_refresh

    def _schedule_next(self, subscription: FeedSubscription, now: datetime):
        subscription.next_refresh = now + timedelta(minutes=subscription.refresh_interval_minutes)

    def _record_refresh(self, subscription_id: str, result: RefreshResult, duration: float):
        history = self.refresh_history.setdefault(subscription_id, [])
        history.append(RefreshRecord(timestamp=self._clock(), success=result.success,
                                     duration=duration, error=result.error))
        if len(history) > REFRESH_HISTORY_LIMIT:
            del history[0]

    async def _detect_content_type(self, subscription: FeedSubscription) -> str:
        connection = self.engine.get_connection(subscription.connection_id)
        events = await self.engine.local_store.list_local_events(connection.local_calendar_id)
        return detect_content_type([e.title for e in events])

    # ------------------------------------------------------------------
    # 定期実行・監視
    # ------------------------------------------------------------------

    async def refresh_due_subscriptions(self) -> List[RefreshResult]:
        """更新時刻に達した自動更新対象の購読を更新"""
        results = []
        for subscription in list(self.subscriptions.values()):
            if subscription.is_active and subscription.auto_refresh and self._should_refresh(subscription):
                results.append(await self.refresh_subscription(subscription.id))
        return results

    def perform_health_check(self) -> List[str]:
        """更新が大幅に遅れている購読を WARNING にする。戻り値は該当する購読ID"""
        now = self._clock()
        overdue = []
        for subscription in self.subscriptions.values():
            if not subscription.is_active or subscription.next_refresh is None:
                continue
            late = now - subscription.next_refresh
            if late > timedelta(minutes=subscription.refresh_interval_minutes * OVERDUE_FACTOR):
                subscription.health_status = HealthStatus.WARNING
                overdue.append(subscription.id)
                logger.warning("Subscription refresh overdue", subscription_id=subscription.id,
                               overdue_minutes=int(late.total_seconds() // 60))
        return overdue

    async def start(self):
        """バックグラウンド監視開始"""
        if self.is_running:
            return
        self.is_running = True
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info("Subscription monitor started", check_interval=self.check_interval)

    async def stop(self):
        self.is_running = False
        if self._monitor_task:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None
        logger.info("Subscription monitor stopped")

    async def _monitor_loop(self):
        while self.is_running:
            try:
                await self.refresh_due_subscriptions()
                self.perform_health_check()
            except Exception as e:
                logger.error("Error in subscription monitor", error=e)
            await asyncio.sleep(self.check_interval)

    # ------------------------------------------------------------------
    # 参照
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Optional[FeedSubscription]:
        return self.subscriptions.get(subscription_id)

    def get_user_subscriptions(self, user_id: str) -> List[FeedSubscription]:
        return [s for s in self.subscriptions.values() if s.user_id == user_id]

    def get_active_subscriptions(self) -> List[FeedSubscription]:
        return [s for s in self.subscriptions.values() if s.is_active]

    def get_subscription_stats(self, subscription_id: str) -> Dict[str, Any]:
        subscription = self._require(subscription_id)
        history = self.refresh_history.get(subscription_id, [])
        successful = sum(1 for r in history if r.success)

        return {
            "subscription_id": subscription.id,
            "name": subscription.name,
            "url": subscription.url,
            "is_active": subscription.is_active,
            "health_status": subscription.health_status.value,
            "event_count": subscription.event_count,
            "refresh_interval_minutes": subscription.refresh_interval_minutes,
            "last_refresh": subscription.last_refresh.isoformat() if subscription.last_refresh else None,
            "next_refresh": subscription.next_refresh.isoformat() if subscription.next_refresh else None,
            "uptime": successful / len(history) * 100 if history else 100.0,
            "average_refresh_time": sum(r.duration for r in history) / len(history) if history else 0.0,
            "total_refreshes": len(history),
            "successful_refreshes": successful,
        }
