"""
購読層テスト
ICSフィードの登録・定期更新・URL変更・削除・健全性監視
"""

import pytest

from calendar_sync.core.errors import NotFoundError, ProviderError, SubscriptionError
from calendar_sync.core.models import HealthStatus, SyncDirection, SyncErrorType
from calendar_sync.core.notifications import SubscriptionRefreshed, SyncCompleted
from calendar_sync.layers.subscription_layer import detect_content_type, is_private_host

FEED_URL = "https://example.com/team/calendar.ics"
OTHER_URL = "https://example.org/league.ics"


async def subscribed(env, *titles, **kwargs):
    """フィードを公開して購読済みの状態にする"""
    manager = env.add_subscriptions()
    env.feed.publish(FEED_URL, *titles)
    subscription = await manager.create_subscription(FEED_URL, "Team", kwargs.pop("refresh_interval", 60),
                                                     "user_1", **kwargs)
    env.drain_notifications()
    return manager, subscription


async def local_titles(env, subscription):
    connection = env.engine.get_connection(subscription.connection_id)
    return sorted(e.title for e in await env.local_events(connection))


class TestSubscriptionUrls:
    """購読URLの検証"""

    @pytest.mark.parametrize("url", [
        "ftp://example.com/calendar.ics",
        "file:///etc/calendar.ics",
        "http://localhost/calendar.ics",
        "http://127.0.0.1/calendar.ics",
        "http://10.0.0.5/calendar.ics",
        "http://172.20.1.1/calendar.ics",
        "http://192.168.1.10/calendar.ics",
        "http://169.254.169.254/latest",
        "http://[::1]/calendar.ics",
        "https:///calendar.ics",
    ])
    @pytest.mark.asyncio
    async def test_rejected_urls_create_nothing(self, env, url):
        manager = env.add_subscriptions()

        with pytest.raises(SubscriptionError):
            await manager.create_subscription(url, "Team", 60, "user_1")

        assert env.account_manager.get_accounts(provider_id="ics_subscription") == []
        assert manager.subscriptions == {}

    def test_private_host_detection(self):
        assert is_private_host("LOCALHOST")
        assert is_private_host("printer.localhost")
        assert is_private_host("fd00::1")
        assert not is_private_host("8.8.8.8")
        assert not is_private_host("calendar.example.com")


class TestCreateSubscription:
    """購読作成"""

    @pytest.mark.asyncio
    async def test_create_imports_feed_events(self, env):
        manager, subscription = await subscribed(env, "Team meeting", "Quarterly conference")

        assert subscription.event_count == 2
        assert subscription.health_status == HealthStatus.HEALTHY
        assert subscription.content_type == "business"
        assert subscription.etag == '"v3"'
        assert subscription.last_refresh == env.clock()
        assert (subscription.next_refresh - env.clock()).total_seconds() == 3600

        assert await local_titles(env, subscription) == ["Quarterly conference", "Team meeting"]
        connection = env.engine.get_connection(subscription.connection_id)
        assert connection.settings.direction == SyncDirection.IMPORT_ONLY
        assert connection.settings.sync_frequency_minutes == 60

        account = env.account_manager.get_account(subscription.account_id)
        assert account.auth_info.server_url == FEED_URL
        assert manager.get_user_subscriptions("user_1") == [subscription]
        assert manager.get_active_subscriptions() == [subscription]

    @pytest.mark.asyncio
    async def test_refresh_interval_has_a_floor(self, env):
        _, subscription = await subscribed(env, "Team meeting", refresh_interval=1)

        assert subscription.refresh_interval_minutes == 5

    @pytest.mark.asyncio
    async def test_malformed_feed_is_rolled_back(self, env):
        manager = env.add_subscriptions()
        env.feed.publish(FEED_URL, "Team meeting")
        env.feed.broken.add(FEED_URL)

        with pytest.raises(SubscriptionError, match="Missing END:VCALENDAR"):
            await manager.create_subscription(FEED_URL, "Team", 60, "user_1")

        assert env.account_manager.get_accounts(provider_id="ics_subscription") == []
        assert env.engine.get_connections() == []

    @pytest.mark.asyncio
    async def test_unreachable_feed_is_rolled_back(self, env):
        manager = env.add_subscriptions()

        with pytest.raises(SubscriptionError, match="Failed to fetch calendar"):
            await manager.create_subscription(FEED_URL, "Team", 60, "user_1")

        assert env.account_manager.get_accounts(provider_id="ics_subscription") == []

    @pytest.mark.asyncio
    async def test_mostly_rejected_feed_is_rolled_back(self, env):
        """検証を通るイベントが8割未満なら購読しない"""
        manager = env.add_subscriptions()
        env.feed.publish(FEED_URL, "Team meeting", "Gambling night")

        with pytest.raises(SubscriptionError, match="1 of 2 events rejected"):
            await manager.create_subscription(FEED_URL, "Team", 60, "user_1")

        # 取り込み済みのイベントも削除される
        [completed] = [n for n in env.drain_notifications() if isinstance(n, SyncCompleted)]
        assert completed.result.events_imported == 1
        assert await env.local_store.list_local_events(completed.result.connection_id) == []
        assert env.engine.get_connections() == []
        assert env.account_manager.get_accounts(provider_id="ics_subscription") == []


class TestRefresh:
    """購読の更新"""

    @pytest.mark.asyncio
    async def test_refresh_waits_for_interval(self, env):
        manager, subscription = await subscribed(env, "Team meeting")

        result = await manager.refresh_subscription(subscription.id)

        assert result.success
        assert result.message == "Refresh not needed yet"
        assert env.feed.calls.count("fetch_feed") == 1

    @pytest.mark.asyncio
    async def test_unchanged_feed_skips_sync(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        env.clock.advance(minutes=60)

        result = await manager.refresh_subscription(subscription.id)

        assert result.success
        assert result.message == "No changes detected"
        assert env.feed.calls.count("perform_sync") == 1
        assert subscription.last_refresh == env.clock()
        assert (subscription.next_refresh - env.clock()).total_seconds() == 3600

    @pytest.mark.asyncio
    async def test_changed_feed_updates_local_events(self, env):
        manager, subscription = await subscribed(env, "Team meeting", "Quarterly conference")
        env.clock.advance(minutes=60)
        uid_meeting, uid_conference = sorted(env.feed.feeds[FEED_URL])
        env.feed.modify_feed_event(FEED_URL, uid_meeting, title="Team meeting (moved)")
        env.feed.remove_feed_event(FEED_URL, uid_conference)
        env.feed.add_feed_event(FEED_URL, "Planning session")

        result = await manager.refresh_subscription(subscription.id)

        assert result.success
        assert result.events_updated == 3
        assert await local_titles(env, subscription) == ["Planning session", "Team meeting (moved)"]
        assert subscription.event_count == 2
        assert subscription.health_status == HealthStatus.HEALTHY

        [refreshed] = [n for n in env.drain_notifications() if isinstance(n, SubscriptionRefreshed)]
        assert refreshed.subscription_id == subscription.id
        assert refreshed.events_updated == 3

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_error(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        env.feed.fail_next("fetch_feed", ProviderError("Service Unavailable",
                                                       SyncErrorType.SERVICE_UNAVAILABLE, status=503))

        result = await manager.refresh_subscription(subscription.id, force=True)

        assert not result.success
        assert subscription.health_status == HealthStatus.ERROR
        assert subscription.last_error.error_type == SyncErrorType.SERVICE_UNAVAILABLE
        assert await local_titles(env, subscription) == ["Team meeting"]

        stats = manager.get_subscription_stats(subscription.id)
        assert stats["total_refreshes"] == 1
        assert stats["successful_refreshes"] == 0
        assert stats["uptime"] == 0

        # 次の更新で回復
        recovered = await manager.refresh_subscription(subscription.id, force=True)
        assert recovered.success
        assert subscription.health_status == HealthStatus.HEALTHY
        assert subscription.last_error is None

    @pytest.mark.asyncio
    async def test_malformed_update_keeps_events(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        env.clock.advance(minutes=60)
        env.feed.add_feed_event(FEED_URL, "Planning session")
        env.feed.broken.add(FEED_URL)

        result = await manager.refresh_subscription(subscription.id)

        assert not result.success
        assert subscription.health_status == HealthStatus.WARNING
        assert subscription.last_error.error_type == SyncErrorType.VALIDATION_ERROR
        assert env.feed.calls.count("perform_sync") == 1
        assert await local_titles(env, subscription) == ["Team meeting"]

    @pytest.mark.asyncio
    async def test_rejected_events_lower_health(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        env.clock.advance(minutes=60)
        env.feed.add_feed_event(FEED_URL, "Gambling night")

        result = await manager.refresh_subscription(subscription.id)

        assert not result.success
        assert "1 of 2 events rejected" in result.error
        assert subscription.health_status == HealthStatus.WARNING
        assert await local_titles(env, subscription) == ["Team meeting"]

    @pytest.mark.asyncio
    async def test_refresh_unknown_subscription(self, env):
        manager = env.add_subscriptions()

        with pytest.raises(NotFoundError):
            await manager.refresh_subscription("sub_missing")


class TestUpdateAndDelete:
    """設定変更・削除"""

    @pytest.mark.asyncio
    async def test_url_change_replaces_events(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        env.feed.publish(OTHER_URL, "League match")

        await manager.update_subscription(subscription.id, url=OTHER_URL)

        assert subscription.url == OTHER_URL
        assert env.account_manager.get_account(subscription.account_id).auth_info.server_url == OTHER_URL
        stored = await env.account_manager.get_credentials(subscription.account_id)
        assert stored.server_url == OTHER_URL
        assert await local_titles(env, subscription) == ["League match"]

    @pytest.mark.asyncio
    async def test_url_change_is_validated(self, env):
        manager, subscription = await subscribed(env, "Team meeting")

        with pytest.raises(SubscriptionError):
            await manager.update_subscription(subscription.id, url="http://192.168.0.2/cal.ics")

        assert subscription.url == FEED_URL
        assert await local_titles(env, subscription) == ["Team meeting"]

    @pytest.mark.asyncio
    async def test_settings_update(self, env):
        manager, subscription = await subscribed(env, "Team meeting")

        await manager.update_subscription(subscription.id, name="Renamed", refresh_interval=30,
                                          is_active=False)

        connection = env.engine.get_connection(subscription.connection_id)
        assert subscription.name == "Renamed"
        assert subscription.refresh_interval_minutes == 30
        assert connection.settings.sync_frequency_minutes == 30
        assert not connection.is_active
        assert manager.get_active_subscriptions() == []

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        connection = env.engine.get_connection(subscription.connection_id)

        await manager.delete_subscription(subscription.id)

        assert manager.get_subscription(subscription.id) is None
        assert env.engine.get_connection(subscription.connection_id) is None
        assert env.account_manager.get_account(subscription.account_id) is None
        assert await env.local_events(connection) == []
        with pytest.raises(NotFoundError):
            manager.get_subscription_stats(subscription.id)


class TestScheduling:
    """定期更新・健全性監視"""

    @pytest.mark.asyncio
    async def test_due_subscriptions_are_refreshed(self, env):
        manager, subscription = await subscribed(env, "Team meeting")
        env.feed.publish(OTHER_URL, "League match")
        manual = await manager.create_subscription(OTHER_URL, "League", 60, "user_1", auto_refresh=False)

        assert await manager.refresh_due_subscriptions() == []

        env.clock.advance(minutes=61)
        results = await manager.refresh_due_subscriptions()

        assert [r.subscription_id for r in results] == [subscription.id]
        assert manual.next_refresh < env.clock()

    @pytest.mark.asyncio
    async def test_overdue_subscription_is_flagged(self, env):
        manager, subscription = await subscribed(env, "Team meeting", refresh_interval=10)

        env.clock.advance(minutes=25)
        assert manager.perform_health_check() == []
        assert subscription.health_status == HealthStatus.HEALTHY

        env.clock.advance(minutes=10)
        assert manager.perform_health_check() == [subscription.id]
        assert subscription.health_status == HealthStatus.WARNING

    @pytest.mark.asyncio
    async def test_start_and_stop(self, env):
        manager = env.add_subscriptions(check_interval=0.01)

        await manager.start()
        assert manager.is_running
        await manager.stop()

        assert not manager.is_running
        assert manager._monitor_task is None


class TestContentType:
    """購読内容の推定"""

    @pytest.mark.parametrize("titles, expected", [
        ([], "unknown"),
        (["Math class", "Homework due"], "education"),
        (["Winter holiday"], "holidays"),
        (["League match"], "sports"),
        (["Board meeting"], "business"),
        (["Birthday"], "general"),
    ])
    def test_detect_content_type(self, titles, expected):
        assert detect_content_type(titles) == expected
