"""
同期層 - 同期エンジン・競合解決・同期状態の永続化
"""

from .conflict_resolver import ConflictDetector, ConflictResolver, ResolutionAction, ResolutionPlan
from .event_storage import SyncStateStore
from .local_calendar_store import LocalCalendarStore, SQLiteLocalCalendarStore
from .offline_queue import OfflineQueue, RetryPolicy
from .sync_engine import SynchronizationEngine
from .sync_monitor import SyncMonitor

__all__ = [
    'ConflictDetector', 'ConflictResolver', 'ResolutionAction', 'ResolutionPlan',
    'SyncStateStore',
    'LocalCalendarStore', 'SQLiteLocalCalendarStore',
    'OfflineQueue', 'RetryPolicy',
    'SynchronizationEngine',
    'SyncMonitor'
]
