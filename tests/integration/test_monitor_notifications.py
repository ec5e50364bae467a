"""
同期モニター・通知バステスト
"""

import dataclasses

import pytest

from calendar_sync.core.models import HealthStatus, SyncError, SyncErrorType, SyncResult
from calendar_sync.core.notifications import (AccountAdded, AccountRemoved, NotificationBus,
                                              SyncCompleted)
from calendar_sync.layers.sync_layer import SyncMonitor


def success(connection_id="conn_1", imported=0) -> SyncResult:
    return SyncResult(connection_id, events_imported=imported, duration_seconds=0.5)


def failure(connection_id="conn_1") -> SyncResult:
    return SyncResult(connection_id, errors=(SyncError(SyncErrorType.NETWORK_ERROR, "offline"),))


class TestSyncMonitor:
    """同期監視のテスト"""

    def test_health_escalates_after_threshold(self):
        monitor = SyncMonitor(failure_threshold=3)

        monitor.record_result(failure())
        monitor.record_result(failure())
        assert monitor.get_connection_health("conn_1") == HealthStatus.WARNING

        monitor.record_result(failure())
        assert monitor.get_connection_health("conn_1") == HealthStatus.ERROR
        assert monitor.get_statistics()["unhealthy_connections"] == ["conn_1"]

        monitor.record_result(success())
        assert monitor.get_connection_health("conn_1") == HealthStatus.HEALTHY
        assert monitor.get_sync_status("conn_1")["consecutive_failures"] == 0

    def test_recent_results_newest_first(self):
        monitor = SyncMonitor(history_size=3)
        for imported in range(5):
            monitor.record_result(success(imported=imported))

        recent = monitor.get_recent_results("conn_1", limit=2)

        assert [r.events_imported for r in recent] == [4, 3]
        assert monitor.get_sync_status("conn_1")["total_syncs"] == 3

    def test_unknown_connection_status(self):
        status = SyncMonitor().get_sync_status("conn_x")
        assert status["health"] == HealthStatus.HEALTHY.value
        assert status["total_syncs"] == 0
        assert status["last_result"] is None

    def test_statistics_and_metrics(self):
        monitor = SyncMonitor()
        monitor.record_result(success(imported=2))
        monitor.record_result(failure("conn_2"))

        stats = monitor.get_statistics()

        assert stats["connections"] == 2
        assert stats["success_rate"] == 50.0
        assert stats["metrics"]["counters"]["events_imported"] == 2
        assert stats["metrics"]["error_rates_by_type"]["sync:network_error"] == 50.0

    @pytest.mark.asyncio
    async def test_attach_to_bus(self):
        bus = NotificationBus()
        monitor = SyncMonitor()
        detach = monitor.attach(bus)

        await bus.publish(SyncCompleted(result=success()))
        await bus.publish(AccountAdded(account_id="acc_1"))
        assert monitor.get_sync_status("conn_1")["total_syncs"] == 1

        detach()
        await bus.publish(SyncCompleted(result=success()))
        assert monitor.get_sync_status("conn_1")["total_syncs"] == 1


class TestNotificationBus:
    """通知バスのテスト"""

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self):
        bus = NotificationBus()
        received = []

        def broken(notification):
            raise RuntimeError("subscriber bug")

        async def collector(notification):
            received.append(notification)

        bus.subscribe(broken)
        bus.subscribe(collector)
        channel = bus.open_channel()

        notification = AccountAdded(account_id="acc_1", provider_id="fake_calendar")
        await bus.publish(notification)

        assert received == [notification]
        assert channel.get_nowait() == notification
        assert bus.get_statistics()["subscriber_failures"] == 1

    @pytest.mark.asyncio
    async def test_kind_filter(self):
        bus = NotificationBus()
        received = []
        bus.subscribe(received.append, kinds=(AccountRemoved,))

        await bus.publish(AccountAdded(account_id="acc_1"))
        await bus.publish(AccountRemoved(account_id="acc_1"))

        assert [type(n) for n in received] == [AccountRemoved]

    @pytest.mark.asyncio
    async def test_full_channel_drops_messages(self):
        """満杯のチャンネルは発行側を止めない"""
        bus = NotificationBus()
        channel = bus.open_channel(maxsize=1)

        await bus.publish(AccountAdded(account_id="acc_1"))
        await bus.publish(AccountAdded(account_id="acc_2"))

        assert channel.qsize() == 1
        assert channel.get_nowait().account_id == "acc_1"
        assert bus.get_statistics()["dropped_channel_messages"] == 1

        bus.close_channel(channel)
        await bus.publish(AccountAdded(account_id="acc_3"))
        assert channel.empty()

    def test_results_and_notifications_are_immutable(self):
        result = success()
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.events_imported = 5
        with pytest.raises(dataclasses.FrozenInstanceError):
            SyncCompleted(result=result).result = None
