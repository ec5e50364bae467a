"""
プロバイダーレジストリ
明示的に生成してアカウント管理・スケジューラ・同期エンジンへ渡す
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ...core.errors import UnknownProviderError
from .adapter import ProviderAdapter, ProviderCapabilities, RateLimitSpec

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 3600
DAY = 86400

# プロバイダー別の既定レート制限
DEFAULT_RATE_LIMITS: Dict[str, Tuple[RateLimitSpec, ...]] = {
    "google_calendar": (
        RateLimitSpec("requests_per_minute", 100, MINUTE),
        RateLimitSpec("requests_per_day", 1_000_000, DAY),
    ),
    "outlook_calendar": (
        RateLimitSpec("requests_per_minute", 60, MINUTE),
        RateLimitSpec("requests_per_day", 10_000, DAY),
    ),
    "icloud_calendar": (
        RateLimitSpec("requests_per_minute", 30, MINUTE),
    ),
    "caldav_generic": (
        RateLimitSpec("requests_per_minute", 20, MINUTE),
    ),
    "ics_subscription": (
        RateLimitSpec("requests_per_hour", 12, HOUR),
    ),
}

FALLBACK_RATE_LIMITS = (RateLimitSpec("requests_per_minute", 60, MINUTE),)


@dataclass
class RegisteredProvider:
    provider_id: str
    name: str
    adapter: ProviderAdapter
    rate_limits: Tuple[RateLimitSpec, ...]


class ProviderRegistry:
    """プロバイダー登録簿"""

    def __init__(self):
        self._providers: Dict[str, RegisteredProvider] = {}

    def register(self, adapter: ProviderAdapter, name: Optional[str] = None,
                 rate_limits: Optional[List[RateLimitSpec]] = None) -> RegisteredProvider:
        """
        アダプター登録

        レート制限の優先順位: 引数 > アダプターのcapabilities > 既定値
        """
        provider_id = adapter.provider_id
        if not provider_id:
            raise ValueError("Adapter must define provider_id")

        limits = tuple(rate_limits or ()) or tuple(adapter.capabilities.rate_limits) \
            or DEFAULT_RATE_LIMITS.get(provider_id, FALLBACK_RATE_LIMITS)

        registered = RegisteredProvider(
            provider_id=provider_id,
            name=name or provider_id,
            adapter=adapter,
            rate_limits=limits,
        )
        if provider_id in self._providers:
            logger.warning(f"Replacing registered provider: {provider_id}")
        self._providers[provider_id] = registered
        logger.info(f"Registered provider: {provider_id} ({len(limits)} rate limit windows)")
        return registered

    def unregister(self, provider_id: str):
        self._providers.pop(provider_id, None)

    def apply_rate_limit_overrides(self, overrides: Dict[str, object]):
        """設定ファイルからのレート制限上書き(ProviderRateLimitConfig)"""
        for provider_id, override in overrides.items():
            provider = self._providers.get(provider_id)
            if provider is None:
                logger.warning(f"Rate limit override for unknown provider: {provider_id}")
                continue

            by_type = {spec.type: spec for spec in provider.rate_limits}
            for limit_type, window in (("requests_per_minute", MINUTE),
                                       ("requests_per_hour", HOUR),
                                       ("requests_per_day", DAY)):
                value = getattr(override, limit_type, None)
                if value is not None:
                    by_type[limit_type] = RateLimitSpec(limit_type, int(value), window)
            provider.rate_limits = tuple(by_type.values())

    def _get(self, provider_id: str) -> RegisteredProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProviderError(f"Provider not registered: {provider_id}")
        return provider

    def get_adapter(self, provider_id: str) -> ProviderAdapter:
        return self._get(provider_id).adapter

    def get_capabilities(self, provider_id: str) -> ProviderCapabilities:
        return self._get(provider_id).adapter.capabilities

    def get_rate_limits(self, provider_id: str) -> Tuple[RateLimitSpec, ...]:
        return self._get(provider_id).rate_limits

    def get_name(self, provider_id: str) -> str:
        return self._get(provider_id).name

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def list_providers(self) -> List[str]:
        return list(self._providers.keys())
