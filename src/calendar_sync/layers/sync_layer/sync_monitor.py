"""
同期モニター
接続ごとの同期履歴と健全性を追跡
"""

from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

from ...core.models import HealthStatus, SyncResult
from ...core.notifications import NotificationBus, SyncCompleted
from ...utils.enhanced_logger import MetricsCollector, get_logger

logger = get_logger(__name__)


class SyncMonitor:
    """同期結果の監視"""

    def __init__(self, history_size: int = 100,
                 metrics: Optional[MetricsCollector] = None,
                 failure_threshold: int = 3):
        self.history_size = history_size
        self.failure_threshold = failure_threshold
        self.metrics = metrics or MetricsCollector()

        self._history: Dict[str, Deque[SyncResult]] = defaultdict(lambda: deque(maxlen=self.history_size))
        self._consecutive_failures: Dict[str, int] = defaultdict(int)
        self._health: Dict[str, HealthStatus] = {}

    def attach(self, bus: NotificationBus) -> Callable[[], None]:
        """通知バスの SyncCompleted を購読"""
        return bus.subscribe(self._on_sync_completed, kinds=(SyncCompleted,))

    def _on_sync_completed(self, notification: SyncCompleted):
        if notification.result is not None:
            self.record_result(notification.result)

    def record_result(self, result: SyncResult):
        connection_id = result.connection_id
        self._history[connection_id].append(result)

        if result.success:
            self._consecutive_failures[connection_id] = 0
            self._health[connection_id] = HealthStatus.HEALTHY
            self.metrics.record_success("sync", result.duration_seconds)
        else:
            self._consecutive_failures[connection_id] += 1
            failures = self._consecutive_failures[connection_id]
            self._health[connection_id] = (
                HealthStatus.ERROR if failures >= self.failure_threshold else HealthStatus.WARNING
            )
            for error in result.errors:
                self.metrics.record_error("sync", error.error_type.value)
            if failures == self.failure_threshold:
                logger.warning("Connection sync failing repeatedly",
                               connection_id=connection_id, consecutive_failures=failures)

        self.metrics.record_event("events_imported", result.events_imported)
        self.metrics.record_event("events_exported", result.events_exported)
        self.metrics.record_event("events_updated", result.events_updated)
        self.metrics.record_event("events_deleted", result.events_deleted)
        self.metrics.record_event("conflicts", len(result.conflicts))
        self.metrics.set_gauge(f"queued_operations.{connection_id}", result.queued_operations)

    def get_connection_health(self, connection_id: str) -> HealthStatus:
        return self._health.get(connection_id, HealthStatus.HEALTHY)

    def get_recent_results(self, connection_id: str, limit: int = 10) -> List[SyncResult]:
        """新しい順"""
        history = list(self._history.get(connection_id, ()))
        return list(reversed(history))[:limit]

    def get_sync_status(self, connection_id: str) -> Dict[str, Any]:
        history = self._history.get(connection_id)
        last = history[-1] if history else None
        return {
            "health": self.get_connection_health(connection_id).value,
            "consecutive_failures": self._consecutive_failures.get(connection_id, 0),
            "total_syncs": len(history) if history else 0,
            "last_result": last.summary() if last else None,
            "last_sync_time": last.last_sync_time.isoformat() if last and last.last_sync_time else None,
            "next_sync_time": last.next_sync_time.isoformat() if last and last.next_sync_time else None,
        }

    def get_statistics(self) -> Dict[str, Any]:
        """監視統計情報"""
        results = [r for history in self._history.values() for r in history]
        total = len(results)
        successes = sum(1 for r in results if r.success)
        return {
            "connections": len(self._history),
            "total_syncs": total,
            "successful_syncs": successes,
            "success_rate": (successes / total * 100) if total > 0 else 100.0,
            "average_duration_seconds": (sum(r.duration_seconds for r in results) / total) if total > 0 else 0.0,
            "unhealthy_connections": [
                cid for cid, health in self._health.items() if health != HealthStatus.HEALTHY
            ],
            "metrics": self.metrics.get_health_summary(),
        }
