"""
レート制限層 - プロバイダー別のレート制限とリクエストスケジューリング
"""

from .rate_limiter import ProviderRateLimiter
from .request_scheduler import (RequestScheduler, RequestOptions, RequestPriority,
                                BatchItemResult)

__all__ = [
    'ProviderRateLimiter',
    'RequestScheduler', 'RequestOptions', 'RequestPriority', 'BatchItemResult'
]
