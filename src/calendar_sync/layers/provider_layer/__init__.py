"""
プロバイダー層 - アダプター契約・レジストリ・エラー分類・コンテンツ検証
"""

from .adapter import (ProviderAdapter, ProviderCapabilities, RateLimitSpec, AuthResult,
                      DiscoveredCalendar, FetchResult, FeedSnapshot)
from .registry import ProviderRegistry, DEFAULT_RATE_LIMITS
from .error_handler import ErrorHandler
from .content_validator import ContentValidator, KeywordContentValidator, ValidationResult

__all__ = [
    'ProviderAdapter', 'ProviderCapabilities', 'RateLimitSpec', 'AuthResult',
    'DiscoveredCalendar', 'FetchResult', 'FeedSnapshot',
    'ProviderRegistry', 'DEFAULT_RATE_LIMITS',
    'ErrorHandler',
    'ContentValidator', 'KeywordContentValidator', 'ValidationResult'
]
