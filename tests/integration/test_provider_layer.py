"""
プロバイダー層テスト
レジストリ・エラー分類・コンテンツ検証
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import aiohttp
import pytest

from calendar_sync.config.enhanced_config import ProviderRateLimitConfig
from calendar_sync.core.errors import (AuthenticationError, ProviderError, RateLimitExceeded,
                                       SubscriptionError, UnknownProviderError,
                                       UnsupportedOperationError)
from calendar_sync.core.models import AuthenticationType, AuthInfo, CalendarEvent, SyncErrorType
from calendar_sync.layers.provider_layer import (DEFAULT_RATE_LIMITS, ErrorHandler,
                                                 KeywordContentValidator, ProviderAdapter,
                                                 ProviderCapabilities, ProviderRegistry,
                                                 RateLimitSpec)
from calendar_sync.layers.provider_layer.content_validator import Severity

from fakes import EVENT_DAY, FakeProviderAdapter


def response_error(status: int, message: str = "", headers=None) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(
        request_info=Mock(), history=(), status=status, message=message, headers=headers
    )


def make_event(title="定例ミーティング", start=EVENT_DAY, **kwargs) -> CalendarEvent:
    kwargs.setdefault("end", start + timedelta(hours=1))
    return CalendarEvent(id="evt_1", title=title, start=start, **kwargs)


class TestProviderRegistry:
    """レジストリのテスト"""

    def test_rate_limit_precedence(self, clock):
        """引数 > capabilities > 既定値"""
        registry = ProviderRegistry()

        adapter = FakeProviderAdapter(clock, provider_id="google_calendar",
                                      capabilities=ProviderCapabilities())
        registry.register(adapter)
        assert registry.get_rate_limits("google_calendar") == DEFAULT_RATE_LIMITS["google_calendar"]

        custom = FakeProviderAdapter(clock, provider_id="custom")
        registry.register(custom)
        assert registry.get_rate_limits("custom") == custom.capabilities.rate_limits

        explicit = [RateLimitSpec("requests_per_minute", 5, 60)]
        registry.register(custom, rate_limits=explicit)
        assert registry.get_rate_limits("custom") == tuple(explicit)

    def test_unknown_provider(self):
        registry = ProviderRegistry()
        with pytest.raises(UnknownProviderError):
            registry.get_adapter("nope")
        assert not registry.is_registered("nope")

    def test_config_overrides(self, clock):
        registry = ProviderRegistry()
        registry.register(FakeProviderAdapter(clock, provider_id="outlook_calendar",
                                              capabilities=ProviderCapabilities()))
        registry.apply_rate_limit_overrides({
            "outlook_calendar": ProviderRateLimitConfig(requests_per_minute=10, requests_per_hour=300),
            "unknown": ProviderRateLimitConfig(requests_per_minute=1),
        })

        limits = {spec.type: spec for spec in registry.get_rate_limits("outlook_calendar")}
        assert limits["requests_per_minute"].limit == 10
        assert limits["requests_per_hour"] == RateLimitSpec("requests_per_hour", 300, 3600)
        assert limits["requests_per_day"].limit == 10_000

    def test_register_requires_provider_id(self, clock):
        with pytest.raises(ValueError):
            ProviderRegistry().register(FakeProviderAdapter(clock, provider_id=""))

    @pytest.mark.asyncio
    async def test_optional_operations_unsupported_by_default(self, clock):
        adapter = FakeProviderAdapter(clock)
        auth_info = AuthInfo(AuthenticationType.OAUTH2, access_token="token_0")
        with pytest.raises(UnsupportedOperationError):
            await adapter.get_event_attachments("primary", "ext_1", auth_info)

    @pytest.mark.asyncio
    async def test_default_validate_auth_checks_expiry(self, clock):
        adapter = FakeProviderAdapter(clock)
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        expired = AuthInfo(AuthenticationType.OAUTH2, token_expiry=past)
        assert not await ProviderAdapter.validate_auth(adapter, expired)
        assert await ProviderAdapter.validate_auth(adapter, AuthInfo(AuthenticationType.BASIC_AUTH, username="u"))


class TestErrorHandler:
    """エラー分類のテスト"""

    @pytest.fixture
    def handler(self):
        return ErrorHandler()

    @pytest.mark.parametrize("status,message,expected", [
        (401, "", SyncErrorType.AUTHENTICATION_FAILED),
        (403, "Forbidden", SyncErrorType.PERMISSION_DENIED),
        (403, "Daily quota exceeded", SyncErrorType.QUOTA_EXCEEDED),
        (429, "", SyncErrorType.RATE_LIMIT_EXCEEDED),
        (503, "", SyncErrorType.SERVICE_UNAVAILABLE),
        (500, "", SyncErrorType.API_ERROR),
    ])
    def test_http_status_classification(self, handler, status, message, expected):
        assert handler.classify(response_error(status, message)) == expected

    def test_engine_errors_keep_their_type(self, handler):
        assert handler.classify(AuthenticationError("expired")) == SyncErrorType.AUTHENTICATION_FAILED
        assert handler.classify(RateLimitExceeded()) == SyncErrorType.RATE_LIMIT_EXCEEDED
        assert handler.classify(ProviderError("x", SyncErrorType.QUOTA_EXCEEDED)) == SyncErrorType.QUOTA_EXCEEDED

    def test_network_and_keyword_classification(self, handler):
        assert handler.classify(asyncio.TimeoutError()) == SyncErrorType.NETWORK_ERROR
        assert handler.classify(ConnectionResetError()) == SyncErrorType.NETWORK_ERROR
        assert handler.classify(RuntimeError("Too Many Requests")) == SyncErrorType.RATE_LIMIT_EXCEEDED
        assert handler.classify(RuntimeError("token expired")) == SyncErrorType.AUTHENTICATION_FAILED
        assert handler.classify(RuntimeError("something odd")) == SyncErrorType.API_ERROR

    def test_to_provider_error_extracts_retry_after(self, handler):
        error = handler.to_provider_error(response_error(429, "slow down", {"Retry-After": "12"}))
        assert error.error_type == SyncErrorType.RATE_LIMIT_EXCEEDED
        assert error.status == 429
        assert error.retry_after == 12.0

        timeout = handler.to_provider_error(asyncio.TimeoutError())
        assert timeout.message == "Provider request timed out"

    def test_to_sync_error_and_statistics(self, handler):
        """リトライ可否はエラータイプで決まる"""
        validation = handler.to_sync_error(ProviderError("invalid event", SyncErrorType.VALIDATION_ERROR),
                                           "conn_1", "evt_1")
        network = handler.to_sync_error(ConnectionError("reset"), "conn_1")

        assert validation.can_retry is False
        assert validation.event_id == "evt_1"
        assert network.can_retry is True

        stats = handler.get_statistics()
        assert stats["total_errors"] == 2
        assert stats["errors_by_type"]["validation_error"] == 1

    def test_unsupported_operations_are_not_retried(self, handler):
        """API_ERROR 扱いでも再実行しても結果が変わらない例外"""
        error = UnsupportedOperationError("fake_calendar does not support update_event")

        assert handler.classify(error) == SyncErrorType.API_ERROR
        assert not handler.is_retryable(error)
        assert handler.to_sync_error(error, "conn_1").can_retry is False
        assert not handler.is_retryable(SubscriptionError("Invalid URL format"))
        assert handler.is_retryable(ProviderError("Service Unavailable", SyncErrorType.SERVICE_UNAVAILABLE))
        assert handler.is_retryable(RuntimeError("something odd"))


class TestKeywordContentValidator:
    """コンテンツ検証のテスト"""

    @pytest.fixture
    def validator(self):
        return KeywordContentValidator()

    def test_ordinary_event_is_approved(self, validator):
        result = validator.validate_event(make_event(location="会議室A"))
        assert result.is_valid
        assert result.recommendation == "approve"
        assert result.summary() == "no issues"

    def test_inappropriate_keyword_blocks(self, validator):
        result = validator.validate_event(make_event(title="Gambling night"))
        assert not result.is_valid
        assert result.severity == Severity.HIGH
        assert result.recommendation == "block"

    def test_blocked_domain(self, validator):
        result = validator.validate_event(make_event(description="詳細: https://www.casino.com/event"))
        assert not result.is_valid

    def test_medium_issues_need_review_but_stay_valid(self, validator):
        late = EVENT_DAY.replace(hour=23)
        result = validator.validate_event(make_event(start=late, location="Sports bar"))
        assert result.is_valid
        assert result.severity == Severity.MEDIUM
        assert result.recommendation == "review"
        assert len(result.issues) == 2

    def test_long_event_is_low_severity(self, validator):
        result = validator.validate_event(make_event(end=EVENT_DAY + timedelta(hours=13)))
        assert result.is_valid
        assert result.severity == Severity.LOW

    def test_ics_structure(self, validator):
        good = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nSUMMARY:x\nEND:VEVENT\nEND:VCALENDAR\n"
        bad = "BEGIN:VCALENDAR\nBEGIN:VEVENT\nSUMMARY:x\n"

        assert validator.validate_ics_content(good).event_count == 1
        result = validator.validate_ics_content(bad)
        assert not result.is_valid
        assert len(result.issues) == 2


class TestErrorStrategies:
    """エラータイプ別の対応戦略"""

    def test_authentication_refreshes_once_then_escalates(self):
        strategy = ErrorHandler().get_strategy(SyncErrorType.AUTHENTICATION_FAILED)
        assert strategy.retry_attempts == 1
        assert strategy.escalation == "mark_invalid"

    def test_policy_errors_are_not_retried(self):
        handler = ErrorHandler()
        assert handler.get_strategy(SyncErrorType.VALIDATION_ERROR).retry_attempts == 0
        assert handler.get_strategy(SyncErrorType.PERMISSION_DENIED).escalation == "notify"
