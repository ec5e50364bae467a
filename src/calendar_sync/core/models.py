"""データモデル定義"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    """タイムゾーン付きの現在時刻(UTC)"""
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str_to_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AuthenticationType(Enum):
    """認証方式"""
    OAUTH2 = "oauth2"
    BASIC_AUTH = "basic_auth"
    APP_PASSWORD = "app_password"
    NONE = "none"


class SyncDirection(Enum):
    """同期方向"""
    BIDIRECTIONAL = "bidirectional"
    IMPORT_ONLY = "import_only"
    EXPORT_ONLY = "export_only"


class ConflictStrategy(Enum):
    """競合解決戦略"""
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"
    CREATE_BOTH = "create_both"
    MANUAL_RESOLUTION = "manual_resolution"


class ConflictType(Enum):
    """競合タイプ"""
    MODIFIED_BOTH = "modified_both"
    DELETED_LOCAL = "deleted_local"
    DELETED_REMOTE = "deleted_remote"
    DUPLICATE_EVENT = "duplicate_event"
    TIMEZONE_MISMATCH = "timezone_mismatch"
    ATTENDEE_MISMATCH = "attendee_mismatch"


class ConflictStatus(Enum):
    """マッピングの競合状態"""
    NONE = "none"
    DETECTED = "detected"
    RESOLVED = "resolved"


class AuthStatus(Enum):
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    INVALID = "invalid"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


class OperationType(Enum):
    """オフラインキューの操作種別"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncErrorType(Enum):
    """同期エラー分類"""
    AUTHENTICATION_FAILED = "authentication_failed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"
    VALIDATION_ERROR = "validation_error"
    PERMISSION_DENIED = "permission_denied"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"

    @property
    def is_retryable(self) -> bool:
        """ポリシー判断によるエラーはリトライしない"""
        return self not in (SyncErrorType.VALIDATION_ERROR, SyncErrorType.PERMISSION_DENIED)


# ---------------------------------------------------------------------------
# イベント
# ---------------------------------------------------------------------------

@dataclass
class Attendee:
    """参加者"""
    email: str
    name: str = ""
    status: str = "needs_action"  # accepted, declined, tentative, needs_action
    is_organizer: bool = False


@dataclass
class Reminder:
    minutes_before: int
    method: str = "popup"


@dataclass
class Attachment:
    """添付ファイル"""
    name: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    url: Optional[str] = None

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)


@dataclass
class RecurrenceRule:
    """繰り返しルール"""
    frequency: str  # daily, weekly, monthly, yearly
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_day: List[str] = field(default_factory=list)


@dataclass
class CalendarEvent:
    """正規化されたカレンダーイベント"""
    id: str
    title: str
    start: datetime
    end: datetime
    calendar_id: str = ""
    external_id: Optional[str] = None
    description: str = ""
    all_day: bool = False
    location: str = ""
    attendees: Optional[List[Attendee]] = None  # None = 未取得
    recurrence: Optional[RecurrenceRule] = None
    category: Optional[str] = None
    priority: str = "normal"
    visibility: str = "default"
    reminders: List[Reminder] = field(default_factory=list)
    attachments: Optional[List[Attachment]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False

    def calculate_sync_hash(self) -> str:
        """同期用ハッシュ計算(タイトル・開始・終了・説明)"""
        content = "|".join([
            self.title or "",
            self.start.isoformat() if self.start else "",
            self.end.isoformat() if self.end else "",
            self.description or "",
        ])
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @property
    def attendee_emails(self) -> Optional[frozenset]:
        if self.attendees is None:
            return None
        return frozenset(a.email.lower() for a in self.attendees)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def copy_with(self, **changes: Any) -> "CalendarEvent":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """JSON化可能な辞書に変換"""
        data = asdict(self)
        data["start"] = _dt_to_str(self.start)
        data["end"] = _dt_to_str(self.end)
        data["created_at"] = _dt_to_str(self.created_at)
        data["updated_at"] = _dt_to_str(self.updated_at)
        if self.recurrence:
            data["recurrence"]["until"] = _dt_to_str(self.recurrence.until)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalendarEvent":
        data = dict(data)
        recurrence = data.get("recurrence")
        if recurrence:
            recurrence = dict(recurrence)
            recurrence["until"] = _str_to_dt(recurrence.get("until"))
            data["recurrence"] = RecurrenceRule(**recurrence)
        if data.get("attendees") is not None:
            data["attendees"] = [Attendee(**a) for a in data["attendees"]]
        if data.get("attachments") is not None:
            data["attachments"] = [Attachment(**a) for a in data["attachments"]]
        data["reminders"] = [Reminder(**r) for r in data.get("reminders") or []]
        for key in ("start", "end", "created_at", "updated_at"):
            data[key] = _str_to_dt(data.get(key))
        return cls(**data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, payload: str) -> "CalendarEvent":
        return cls.from_dict(json.loads(payload))


# ---------------------------------------------------------------------------
# アカウント・接続
# ---------------------------------------------------------------------------

@dataclass
class AuthInfo:
    """認証情報"""
    auth_type: AuthenticationType
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    username: Optional[str] = None
    password: Optional[str] = None
    server_url: Optional[str] = None
    is_valid: bool = True
    last_auth_time: Optional[datetime] = None
    last_validated_at: Optional[datetime] = None

    @property
    def supports_refresh(self) -> bool:
        return self.auth_type == AuthenticationType.OAUTH2 and bool(self.refresh_token)

    def expires_within(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """有効期限が window 以内に切れるかどうか"""
        if self.token_expiry is None:
            return False
        return self.token_expiry <= (now or utc_now()) + window

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["auth_type"] = self.auth_type.value
        for key in ("token_expiry", "last_auth_time", "last_validated_at"):
            data[key] = _dt_to_str(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthInfo":
        data = dict(data)
        data["auth_type"] = AuthenticationType(data["auth_type"])
        for key in ("token_expiry", "last_auth_time", "last_validated_at"):
            data[key] = _str_to_dt(data.get(key))
        return cls(**data)


@dataclass
class MergeRules:
    """フィールド単位のマージルール"""
    title: str = "newest_wins"        # newest_wins, keep_local, keep_remote
    description: str = "combine"      # combine, newest_wins, keep_local, keep_remote
    location: str = "non_empty"       # non_empty, newest_wins, keep_local, keep_remote
    attendees: str = "union"          # union, keep_local, keep_remote
    fallback: str = "keep_remote"


@dataclass
class SyncSettings:
    """同期設定"""
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictStrategy = ConflictStrategy.KEEP_REMOTE
    merge_rules: MergeRules = field(default_factory=MergeRules)
    max_retries: int = 3
    sync_frequency_minutes: int = 15
    max_events_per_sync: int = 500
    sync_attendees: bool = False
    sync_attachments: bool = False
    max_attachment_size_mb: int = 25
    sync_private_events: bool = False
    initial_sync_window_days: int = 30
    request_timeout_seconds: float = 30.0
    export_calendar_id: Optional[str] = None
    local_calendar_id: Optional[str] = None

    @property
    def can_import(self) -> bool:
        return self.direction in (SyncDirection.BIDIRECTIONAL, SyncDirection.IMPORT_ONLY)

    @property
    def can_export(self) -> bool:
        return self.direction in (SyncDirection.BIDIRECTIONAL, SyncDirection.EXPORT_ONLY)

    def copy(self, **changes: Any) -> "SyncSettings":
        changes.setdefault("merge_rules", replace(self.merge_rules))
        return replace(self, **changes)


@dataclass
class CalendarInfo:
    """外部カレンダー情報"""
    id: str
    name: str
    description: str = ""
    color: str = "#1976D2"
    is_writable: bool = True
    is_primary: bool = False
    sync_enabled: bool = False
    is_visible: bool = True
    event_count: int = 0
    last_sync_time: Optional[datetime] = None


@dataclass
class CalendarAccount:
    """プロバイダー上の認証済みアカウント"""
    id: str
    provider_id: str
    user_id: str
    account_name: str
    auth_info: AuthInfo
    calendars: List[CalendarInfo] = field(default_factory=list)
    sync_settings: SyncSettings = field(
        default_factory=lambda: SyncSettings(conflict_resolution=ConflictStrategy.MANUAL_RESOLUTION)
    )
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    last_sync_time: Optional[datetime] = None

    def get_calendar(self, calendar_id: str) -> Optional[CalendarInfo]:
        for calendar in self.calendars:
            if calendar.id == calendar_id:
                return calendar
        return None

    @property
    def sync_enabled_calendars(self) -> List[CalendarInfo]:
        return [c for c in self.calendars if c.sync_enabled and c.is_visible]


@dataclass
class SyncConnection:
    """同期単位(アカウント + 同期設定)"""
    id: str
    account_id: str
    user_id: str
    provider_id: str
    settings: SyncSettings = field(default_factory=SyncSettings)
    auth_status: AuthStatus = AuthStatus.AUTHENTICATED
    health_status: HealthStatus = HealthStatus.HEALTHY
    last_sync_time: Optional[datetime] = None
    next_sync_time: Optional[datetime] = None
    is_active: bool = True
    consecutive_failures: int = 0

    @property
    def local_calendar_id(self) -> str:
        return self.settings.local_calendar_id or self.id


@dataclass
class ExternalEventMapping:
    """ローカルイベントと外部イベントの対応付け"""
    connection_id: str
    local_event_id: str
    external_event_id: str
    calendar_id: str
    last_sync_time: datetime
    sync_hash: str
    conflict_status: ConflictStatus = ConflictStatus.NONE


@dataclass
class SyncMetadata:
    """接続ごとの同期メタデータ"""
    connection_id: str
    sync_token: Optional[str] = None
    last_modified: Optional[datetime] = None
    sync_version: int = 0
    provider_data: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# 競合・エラー・結果
# ---------------------------------------------------------------------------

@dataclass
class FieldDifference:
    """フィールド単位の差分"""
    field_name: str
    local_value: Any
    remote_value: Any

    def __str__(self) -> str:
        return f"{self.field_name}: local='{self.local_value}' vs remote='{self.remote_value}'"


@dataclass
class ConflictResolution:
    strategy: ConflictStrategy
    resolved_at: Optional[datetime] = None
    user_choice: bool = False
    resolved_event: Optional[CalendarEvent] = None


@dataclass
class SyncConflict:
    """検出された競合"""
    id: str
    connection_id: str
    event_id: str
    conflict_type: ConflictType
    local_event: Optional[CalendarEvent]
    remote_event: Optional[CalendarEvent]
    differences: List[FieldDifference] = field(default_factory=list)
    resolution_options: List[ConflictStrategy] = field(default_factory=lambda: list(ConflictStrategy))
    is_resolved: bool = False
    resolution: Optional[ConflictResolution] = None
    detected_at: datetime = field(default_factory=utc_now)

    @property
    def has_pending_override(self) -> bool:
        """ユーザーが解決方法を記録済みで未適用かどうか"""
        return (not self.is_resolved and self.resolution is not None
                and self.resolution.user_choice)

    def summary(self) -> str:
        return (f"Conflict {self.conflict_type.value} on {self.event_id}: "
                f"{len(self.differences)} differing fields")


@dataclass
class SyncError:
    """同期エラー"""
    error_type: SyncErrorType
    message: str
    connection_id: Optional[str] = None
    event_id: Optional[str] = None
    retry_count: int = 0
    can_retry: Optional[bool] = None
    id: str = field(default_factory=lambda: generate_id("err"))
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.can_retry is None:
            self.can_retry = self.error_type.is_retryable


@dataclass(frozen=True)
class SyncResult:
    """同期結果(発行後は不変)"""
    connection_id: str
    events_imported: int = 0
    events_exported: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_skipped: int = 0  # 非公開などフィルタで除外されたリモートイベント
    conflicts: Tuple[SyncConflict, ...] = ()
    errors: Tuple[SyncError, ...] = ()
    duration_seconds: float = 0.0
    last_sync_time: Optional[datetime] = None
    next_sync_time: Optional[datetime] = None
    queued_operations: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def total_changes(self) -> int:
        return self.events_imported + self.events_exported + self.events_updated + self.events_deleted

    def summary(self) -> str:
        status = "success" if self.success else "failed"
        return (f"Sync {status}: "
                f"{self.events_imported} imported, "
                f"{self.events_exported} exported, "
                f"{self.events_updated} updated, "
                f"{self.events_deleted} deleted, "
                f"{self.events_skipped} skipped, "
                f"{len(self.conflicts)} conflicts, "
                f"{len(self.errors)} errors")


# ---------------------------------------------------------------------------
# レート制限・オフラインキュー
# ---------------------------------------------------------------------------

@dataclass
class RateLimit:
    """プロバイダー・制限種別ごとのウィンドウ状態"""
    type: str
    limit: int
    window_seconds: int
    current_usage: int = 0
    reset_time: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_usage)


@dataclass
class QueuedOperation:
    """遅延実行される同期操作"""
    connection_id: str
    operation_type: OperationType
    local_event_id: Optional[str] = None
    external_event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    event: Optional[CalendarEvent] = None
    retry_count: int = 1
    next_retry_at: datetime = field(default_factory=utc_now)
    last_error: Optional[str] = None
    id: str = field(default_factory=lambda: generate_id("op"))
    created_at: datetime = field(default_factory=utc_now)
