"""
プロバイダーアダプター契約
OAuth2サービス・CalDAV・ICS購読など各プロトコル実装が満たすインターフェース
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ...core.errors import UnsupportedOperationError
from ...core.models import (Attachment, Attendee, AuthenticationType, AuthInfo,
                            CalendarAccount, CalendarEvent, SyncConnection,
                            SyncError, utc_now)


@dataclass(frozen=True)
class RateLimitSpec:
    """レート制限の静的定義"""
    type: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class ProviderCapabilities:
    """プロバイダー機能記述子"""
    auth_type: AuthenticationType = AuthenticationType.OAUTH2
    bidirectional_sync: bool = True
    supports_update: bool = True
    supports_delete: bool = True
    incremental_sync: bool = False
    attendee_management: bool = False
    attachment_support: bool = False
    max_attachment_size_mb: int = 0
    feed_subscription: bool = False
    supported_recurrence_patterns: frozenset = frozenset({"daily", "weekly", "monthly", "yearly"})
    rate_limits: tuple = ()

    def supports_recurrence(self, frequency: str) -> bool:
        return frequency in self.supported_recurrence_patterns


@dataclass
class AuthResult:
    success: bool
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    auth_info: Optional[AuthInfo] = None
    error: Optional[str] = None


@dataclass
class DiscoveredCalendar:
    """検出されたリモートカレンダー"""
    id: str
    name: str
    description: str = ""
    color: Optional[str] = None
    is_writable: bool = True
    is_primary: bool = False


@dataclass
class FetchResult:
    """performSync の結果"""
    events: List[CalendarEvent] = field(default_factory=list)
    next_sync_token: Optional[str] = None
    errors: List[SyncError] = field(default_factory=list)
    response_headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class FeedSnapshot:
    """購読フィードの取得結果"""
    content: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_length: Optional[int] = None
    not_modified: bool = False  # 条件付きリクエストで304が返った


class ProviderAdapter(ABC):
    """プロバイダーアダプター抽象基底クラス"""

    provider_id: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()

    @abstractmethod
    async def authenticate(self, credentials: Dict[str, Any]) -> AuthResult:
        """資格情報で認証"""

    @abstractmethod
    async def refresh_access_token(self, auth_info: AuthInfo) -> AuthInfo:
        """リフレッシュトークンでアクセストークンを更新"""

    @abstractmethod
    async def discover_calendars(self, auth_info: AuthInfo) -> List[DiscoveredCalendar]:
        pass

    @abstractmethod
    async def perform_sync(self, connection: SyncConnection, account: CalendarAccount,
                           sync_token: Optional[str] = None,
                           time_min: Optional[datetime] = None) -> FetchResult:
        """
        リモートイベント取得

        sync_token があれば差分取得、なければ time_min 以降の範囲取得。
        差分取得で削除されたイベントは is_deleted=True で返す。
        """

    @abstractmethod
    async def create_event(self, calendar_id: str, event: CalendarEvent, auth_info: AuthInfo) -> str:
        """イベント作成。外部イベントIDを返す"""

    # --- capabilities で制御されるオプション操作 ---

    async def update_event(self, calendar_id: str, external_event_id: str,
                           event: CalendarEvent, auth_info: AuthInfo) -> None:
        raise UnsupportedOperationError(f"{self.provider_id} does not support update_event")

    async def delete_event(self, calendar_id: str, external_event_id: str, auth_info: AuthInfo) -> None:
        raise UnsupportedOperationError(f"{self.provider_id} does not support delete_event")

    async def get_event_attendees(self, calendar_id: str, external_event_id: str,
                                  auth_info: AuthInfo) -> List[Attendee]:
        raise UnsupportedOperationError(f"{self.provider_id} does not support attendees")

    async def get_event_attachments(self, calendar_id: str, external_event_id: str,
                                    auth_info: AuthInfo) -> List[Attachment]:
        raise UnsupportedOperationError(f"{self.provider_id} does not support attachments")

    async def upload_attachment(self, calendar_id: str, external_event_id: str,
                                attachment: Attachment, auth_info: AuthInfo) -> str:
        raise UnsupportedOperationError(f"{self.provider_id} does not support attachments")

    async def fetch_feed(self, auth_info: AuthInfo, etag: Optional[str] = None,
                         last_modified: Optional[str] = None) -> FeedSnapshot:
        """
        購読フィード本文の取得

        フィードURLは auth_info.server_url。etag / last_modified があれば条件付きで取得する。
        """
        raise UnsupportedOperationError(f"{self.provider_id} does not support feed subscriptions")

    # --- デフォルト実装 ---

    async def validate_auth(self, auth_info: AuthInfo) -> bool:
        """軽量な認証チェック(デフォルトはトークン期限のみ)"""
        if not auth_info.is_valid:
            return False
        return not auth_info.expires_within(timedelta(0), utc_now())

    async def revoke_tokens(self, auth_info: AuthInfo) -> None:
        return None
