"""同期エンジンの例外定義"""

from datetime import datetime
from typing import Dict, Optional

from .models import SyncErrorType


class SyncEngineError(Exception):
    """同期エンジン基底例外"""
    error_type: SyncErrorType = SyncErrorType.API_ERROR
    # 再試行しても結果が変わらない例外は False
    retryable: bool = True

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class AuthenticationError(SyncEngineError):
    error_type = SyncErrorType.AUTHENTICATION_FAILED


class DiscoveryError(SyncEngineError):
    """カレンダー検出失敗"""


class NotFoundError(SyncEngineError):
    pass


class UnknownProviderError(NotFoundError):
    pass


class UnsupportedOperationError(SyncEngineError):
    """プロバイダーが対応していない操作"""
    error_type = SyncErrorType.API_ERROR
    retryable = False


class MappingConflictError(SyncEngineError):
    """マッピングの一意性違反"""
    retryable = False


class CredentialStorageError(SyncEngineError):
    pass


class ConfigurationError(SyncEngineError):
    pass


class SubscriptionError(SyncEngineError):
    """フィード購読の検証・取得失敗"""
    error_type = SyncErrorType.VALIDATION_ERROR
    retryable = False


class SchedulerStoppedError(SyncEngineError):
    """スケジューラ停止により破棄されたリクエスト"""
    error_type = SyncErrorType.SERVICE_UNAVAILABLE


class RateLimitExceeded(SyncEngineError):
    """レート制限超過"""
    error_type = SyncErrorType.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str = "Rate limit exceeded",
                 reset_time: Optional[datetime] = None,
                 usage: Optional[Dict[str, int]] = None,
                 provider_id: Optional[str] = None):
        super().__init__(message)
        self.reset_time = reset_time
        self.usage = usage or {}
        self.provider_id = provider_id


class ProviderError(SyncEngineError):
    """アダプターが返すプロバイダー側のエラー"""

    def __init__(self, message: str,
                 error_type: SyncErrorType = SyncErrorType.API_ERROR,
                 status: Optional[int] = None,
                 retry_after: Optional[float] = None,
                 headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.status = status
        self.retry_after = retry_after
        self.headers = headers or {}
