"""
通知バス
同期結果・競合・アカウント異常をコールバックまたはチャンネル(asyncio.Queue)へ配信
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type

from .models import (AuthStatus, SyncConflict, SyncErrorType, SyncResult, utc_now)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncNotification:
    """通知基底クラス"""
    timestamp: datetime = field(default_factory=utc_now, compare=False)


@dataclass(frozen=True)
class SyncCompleted(SyncNotification):
    result: Optional[SyncResult] = None


@dataclass(frozen=True)
class ConflictDetected(SyncNotification):
    connection_id: str = ""
    conflict: Optional[SyncConflict] = None


@dataclass(frozen=True)
class AccountAdded(SyncNotification):
    account_id: str = ""
    provider_id: str = ""
    user_id: str = ""


@dataclass(frozen=True)
class AccountRemoved(SyncNotification):
    account_id: str = ""
    provider_id: str = ""


@dataclass(frozen=True)
class AccountError(SyncNotification):
    account_id: str = ""
    error_type: SyncErrorType = SyncErrorType.AUTHENTICATION_FAILED
    message: str = ""


@dataclass(frozen=True)
class AuthStatusChanged(SyncNotification):
    connection_id: str = ""
    status: AuthStatus = AuthStatus.AUTHENTICATED


@dataclass(frozen=True)
class RateLimitHit(SyncNotification):
    provider_id: str = ""
    reset_time: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionRefreshed(SyncNotification):
    subscription_id: str = ""
    success: bool = True
    events_updated: int = 0
    message: str = ""


Subscriber = Callable[[SyncNotification], Any]


class NotificationBus:
    """購読者とチャンネルへの通知配信"""

    def __init__(self):
        self._subscribers: List[Tuple[Subscriber, Optional[Tuple[Type[SyncNotification], ...]]]] = []
        self._channels: Set[asyncio.Queue] = set()

        # 統計情報
        self.total_published = 0
        self.subscriber_failures = 0
        self.dropped_channel_messages = 0

    def subscribe(self, callback: Subscriber,
                  kinds: Optional[Tuple[Type[SyncNotification], ...]] = None) -> Callable[[], None]:
        """購読登録。戻り値は購読解除関数"""
        entry = (callback, tuple(kinds) if kinds else None)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def open_channel(self, maxsize: int = 0) -> asyncio.Queue:
        """メッセージチャンネル方式で受け取るためのキュー"""
        channel: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._channels.add(channel)
        return channel

    def close_channel(self, channel: asyncio.Queue):
        self._channels.discard(channel)

    async def publish(self, notification: SyncNotification):
        """通知配信(購読者の例外は伝播させない)"""
        self.total_published += 1

        for callback, kinds in list(self._subscribers):
            if kinds and not isinstance(notification, kinds):
                continue
            try:
                outcome = callback(notification)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.subscriber_failures += 1
                logger.error(f"Notification subscriber failed for {type(notification).__name__}: {e}")

        for channel in list(self._channels):
            try:
                channel.put_nowait(notification)
            except asyncio.QueueFull:
                self.dropped_channel_messages += 1
                logger.warning(f"Notification channel full, dropped {type(notification).__name__}")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "subscribers": len(self._subscribers),
            "channels": len(self._channels),
            "total_published": self.total_published,
            "subscriber_failures": self.subscriber_failures,
            "dropped_channel_messages": self.dropped_channel_messages,
        }
