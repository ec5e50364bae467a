"""
エラーハンドリング
プロバイダー呼び出しで発生した例外を同期エラー分類へ変換
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from ...core.errors import ProviderError, SyncEngineError
from ...core.models import SyncError, SyncErrorType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorStrategy:
    """エラー対応戦略設定"""
    retry_attempts: int
    backoff_multiplier: float
    escalation: Optional[str] = None
    alert_threshold: int = 1


class ErrorHandler:
    """例外の分類と同期エラー生成"""

    # エラータイプ別の対応戦略
    STRATEGIES: Dict[SyncErrorType, ErrorStrategy] = {
        SyncErrorType.NETWORK_ERROR: ErrorStrategy(
            retry_attempts=3, backoff_multiplier=2.0, alert_threshold=3
        ),
        SyncErrorType.API_ERROR: ErrorStrategy(
            retry_attempts=3, backoff_multiplier=2.0, alert_threshold=3
        ),
        SyncErrorType.RATE_LIMIT_EXCEEDED: ErrorStrategy(
            retry_attempts=3, backoff_multiplier=2.0, alert_threshold=10
        ),
        SyncErrorType.SERVICE_UNAVAILABLE: ErrorStrategy(
            retry_attempts=3, backoff_multiplier=2.0, alert_threshold=3
        ),
        SyncErrorType.QUOTA_EXCEEDED: ErrorStrategy(
            retry_attempts=3, backoff_multiplier=2.0, alert_threshold=1
        ),
        # 1回だけトークン更新を試みてからエスカレーション
        SyncErrorType.AUTHENTICATION_FAILED: ErrorStrategy(
            retry_attempts=1, backoff_multiplier=1.0, escalation='mark_invalid'
        ),
        SyncErrorType.VALIDATION_ERROR: ErrorStrategy(
            retry_attempts=0, backoff_multiplier=1.0
        ),
        SyncErrorType.PERMISSION_DENIED: ErrorStrategy(
            retry_attempts=0, backoff_multiplier=1.0, escalation='notify'
        ),
    }

    STATUS_TYPES = {
        401: SyncErrorType.AUTHENTICATION_FAILED,
        403: SyncErrorType.PERMISSION_DENIED,
        429: SyncErrorType.RATE_LIMIT_EXCEEDED,
        502: SyncErrorType.SERVICE_UNAVAILABLE,
        503: SyncErrorType.SERVICE_UNAVAILABLE,
        504: SyncErrorType.SERVICE_UNAVAILABLE,
    }

    KEYWORDS = (
        (SyncErrorType.RATE_LIMIT_EXCEEDED, ('rate limit', '429', 'too many requests')),
        (SyncErrorType.QUOTA_EXCEEDED, ('quota',)),
        (SyncErrorType.AUTHENTICATION_FAILED, ('unauthorized', '401', 'authentication', 'invalid_grant', 'token expired')),
        (SyncErrorType.PERMISSION_DENIED, ('forbidden', '403', 'permission', 'access denied')),
        (SyncErrorType.SERVICE_UNAVAILABLE, ('service unavailable', '503', 'maintenance')),
        (SyncErrorType.NETWORK_ERROR, ('connection', 'timeout', 'timed out', 'network', 'dns')),
        (SyncErrorType.VALIDATION_ERROR, ('invalid event', 'validation')),
    )

    def __init__(self):
        self.error_counts: Dict[SyncErrorType, int] = {}

    def classify(self, error: BaseException) -> SyncErrorType:
        """例外をエラータイプへ分類"""
        if isinstance(error, SyncEngineError):
            return error.error_type

        if isinstance(error, aiohttp.ClientResponseError):
            return self._classify_status(error.status, str(error.message or ""))

        if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError,
                              asyncio.TimeoutError, ConnectionError)):
            return SyncErrorType.NETWORK_ERROR

        error_message = str(error).lower()
        for error_type, keywords in self.KEYWORDS:
            if any(keyword in error_message for keyword in keywords):
                return error_type

        if isinstance(error, OSError):
            return SyncErrorType.NETWORK_ERROR

        return SyncErrorType.API_ERROR

    def _classify_status(self, status: int, message: str) -> SyncErrorType:
        if status == 403 and 'quota' in message.lower():
            return SyncErrorType.QUOTA_EXCEEDED
        if status in self.STATUS_TYPES:
            return self.STATUS_TYPES[status]
        return SyncErrorType.API_ERROR

    def is_retryable(self, error: BaseException) -> bool:
        """オフラインキューで再実行する価値があるか"""
        if not getattr(error, "retryable", True):
            return False
        return self.classify(error).is_retryable

    def to_provider_error(self, error: BaseException) -> ProviderError:
        """任意の例外を ProviderError に正規化"""
        if isinstance(error, ProviderError):
            return error

        error_type = self.classify(error)
        status = None
        headers: Dict[str, str] = {}
        retry_after = None
        if isinstance(error, aiohttp.ClientResponseError):
            status = error.status
            if error.headers:
                headers = {k.lower(): v for k, v in error.headers.items()}
            retry_after = extract_retry_after(headers)

        message = str(error) or error.__class__.__name__
        if isinstance(error, asyncio.TimeoutError):
            message = "Provider request timed out"
        return ProviderError(message, error_type, status=status,
                             retry_after=retry_after, headers=headers)

    def to_sync_error(self, error: BaseException,
                      connection_id: Optional[str] = None,
                      event_id: Optional[str] = None,
                      retry_count: int = 0,
                      can_retry: Optional[bool] = None) -> SyncError:
        """例外から SyncError を生成して記録"""
        error_type = self.classify(error)
        self.record(error_type)
        message = str(error) or error.__class__.__name__
        if can_retry is None and not getattr(error, "retryable", True):
            can_retry = False
        return SyncError(
            error_type=error_type,
            message=message,
            connection_id=connection_id,
            event_id=event_id,
            retry_count=retry_count,
            can_retry=can_retry,
        )

    def record(self, error_type: SyncErrorType):
        """エラーカウント更新"""
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
        strategy = self.get_strategy(error_type)
        if self.error_counts[error_type] == strategy.alert_threshold:
            logger.warning(f"Error threshold reached for {error_type.value}: "
                           f"{self.error_counts[error_type]} occurrences")

    def get_strategy(self, error_type: SyncErrorType) -> ErrorStrategy:
        return self.STRATEGIES[error_type]

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_errors": sum(self.error_counts.values()),
            "errors_by_type": {k.value: v for k, v in self.error_counts.items()},
        }


def extract_retry_after(headers: Dict[str, str]) -> Optional[float]:
    """retry-after ヘッダーを秒数で取得"""
    value = headers.get('retry-after')
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None
