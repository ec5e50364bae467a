"""
レート制限管理
プロバイダーごとに複数ウィンドウ(分・時・日)の使用量を追跡
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from ...core.models import RateLimit, utc_now
from ..provider_layer.adapter import RateLimitSpec

logger = logging.getLogger(__name__)

# これより小さい x-ratelimit-reset は「現在からの秒数」とみなす
RELATIVE_RESET_THRESHOLD = 10 ** 9


class ProviderRateLimiter:
    """プロバイダー単位のレート制限器"""

    def __init__(self, provider_id: str, specs: Iterable[RateLimitSpec],
                 clock: Callable[[], datetime] = utc_now):
        self.provider_id = provider_id
        self._clock = clock
        now = clock()
        self.limits: Dict[str, RateLimit] = {
            spec.type: RateLimit(
                type=spec.type,
                limit=spec.limit,
                window_seconds=spec.window_seconds,
                current_usage=0,
                reset_time=now + timedelta(seconds=spec.window_seconds),
            )
            for spec in specs
        }
        if not self.limits:
            raise ValueError(f"No rate limits configured for {provider_id}")

        # 統計情報
        self.total_recorded = 0
        self.times_exhausted = 0

    def _selected(self, limit_type: Optional[str]) -> List[RateLimit]:
        if limit_type is None:
            return list(self.limits.values())
        if limit_type not in self.limits:
            raise KeyError(f"Unknown rate limit type for {self.provider_id}: {limit_type}")
        return [self.limits[limit_type]]

    def _roll(self, limit: RateLimit, now: datetime):
        """reset_time を過ぎていれば使用量を0に戻し、次のリセット時刻へ進める"""
        if limit.reset_time is None or now < limit.reset_time:
            return
        window = timedelta(seconds=limit.window_seconds)
        elapsed_windows = int((now - limit.reset_time) / window) + 1
        limit.current_usage = 0
        limit.reset_time = limit.reset_time + window * elapsed_windows

    def can_make_request(self, limit_type: Optional[str] = None) -> bool:
        now = self._clock()
        for limit in self._selected(limit_type):
            self._roll(limit, now)
            if limit.current_usage >= limit.limit:
                return False
        return True

    def record_request(self, limit_type: Optional[str] = None):
        """実際に送信したリクエストのみ記録"""
        now = self._clock()
        for limit in self._selected(limit_type):
            self._roll(limit, now)
            limit.current_usage += 1
        self.total_recorded += 1

    def is_rate_limited(self) -> bool:
        return not self.can_make_request()

    def get_next_reset_time(self) -> Optional[datetime]:
        """使い切ったウィンドウのうち最も遅いリセット時刻"""
        now = self._clock()
        exhausted = []
        for limit in self.limits.values():
            self._roll(limit, now)
            if limit.current_usage >= limit.limit:
                exhausted.append(limit.reset_time)
        if exhausted:
            return max(exhausted)
        return min(limit.reset_time for limit in self.limits.values())

    def get_usage(self) -> Dict[str, int]:
        return {limit_type: limit.current_usage for limit_type, limit in self.limits.items()}

    def _primary(self) -> RateLimit:
        """ヘッダーが対象とするウィンドウ(最短ウィンドウ)"""
        return min(self.limits.values(), key=lambda l: l.window_seconds)

    def update_from_headers(self, headers: Dict[str, str]):
        """プロバイダーの応答ヘッダーで状態を上書き"""
        if not headers:
            return
        normalized = {k.lower(): v for k, v in headers.items()}
        limit = self._primary()
        now = self._clock()

        try:
            if 'x-ratelimit-limit' in normalized:
                limit.limit = int(normalized['x-ratelimit-limit'])
            if 'x-ratelimit-remaining' in normalized:
                remaining = int(normalized['x-ratelimit-remaining'])
                limit.current_usage = max(0, limit.limit - remaining)
            if 'x-ratelimit-reset' in normalized:
                reset_value = float(normalized['x-ratelimit-reset'])
                if reset_value < RELATIVE_RESET_THRESHOLD:
                    limit.reset_time = now + timedelta(seconds=reset_value)
                else:
                    limit.reset_time = datetime.fromtimestamp(reset_value, tz=timezone.utc)
        except ValueError:
            logger.warning(f"Ignoring malformed rate limit headers from {self.provider_id}: {normalized}")
            return

        if 'retry-after' in normalized:
            try:
                retry_after = float(normalized['retry-after'])
            except ValueError:
                retry_after = None
            self.handle_rate_limit_exceeded(retry_after)

    def handle_rate_limit_exceeded(self, retry_after: Optional[float] = None):
        """429受信時: 使用量を上限まで引き上げる"""
        limit = self._primary()
        limit.current_usage = limit.limit
        if retry_after is not None:
            limit.reset_time = self._clock() + timedelta(seconds=retry_after)
        self.times_exhausted += 1
        logger.warning(f"Rate limit exhausted for {self.provider_id}, "
                       f"reset at {self.get_next_reset_time()}")

    def get_status(self) -> Dict[str, Dict]:
        now = self._clock()
        status = {}
        for limit_type, limit in self.limits.items():
            self._roll(limit, now)
            status[limit_type] = {
                "limit": limit.limit,
                "current_usage": limit.current_usage,
                "remaining": limit.remaining,
                "window_seconds": limit.window_seconds,
                "reset_time": limit.reset_time.isoformat() if limit.reset_time else None,
            }
        return status
