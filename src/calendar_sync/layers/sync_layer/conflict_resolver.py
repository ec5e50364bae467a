"""
競合検出・解決システム
マッピングの最終同期時刻を基準にローカルとリモートの競合を判定し、戦略に従って解決方法を決める
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ...core.models import (Attendee, CalendarEvent, ConflictStrategy, ConflictType,
                            ExternalEventMapping, FieldDifference, MergeRules,
                            SyncConflict, generate_id, utc_now)

logger = logging.getLogger(__name__)

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)

DESCRIPTION_SEPARATOR = "\n---\n"


class ResolutionAction:
    """解決アクション"""
    PUSH_LOCAL = "push_local"            # ローカルをリモートへ送信
    APPLY_REMOTE = "apply_remote"        # リモートでローカルを上書き
    APPLY_MERGED = "apply_merged"        # マージ結果を両側へ反映
    DUPLICATE_REMOTE = "duplicate_remote"  # リモートを非管理ローカルイベントとして複製
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    RECREATE_LOCAL = "recreate_local"    # リモートをローカルに新規作成しマッピング
    RECREATE_REMOTE = "recreate_remote"  # ローカルをリモートに新規作成しマッピング
    LINK = "link"                        # 既存ローカルと紐付けてローカルを送信
    DEFER = "defer"                      # 手動解決待ち


@dataclass
class ResolutionPlan:
    """競合の解決方法"""
    action: str
    strategy: ConflictStrategy
    event: Optional[CalendarEvent] = None
    create_duplicate: bool = False

    @property
    def is_deferred(self) -> bool:
        return self.action == ResolutionAction.DEFER


def _updated(event: Optional[CalendarEvent]) -> datetime:
    if event is None or event.updated_at is None:
        return _MIN_TIME
    return event.updated_at


class ConflictDetector:
    """競合検出(副作用なし)"""

    COMPARED_FIELDS = ("title", "start", "end", "all_day", "description", "location")

    def __init__(self, clock=utc_now):
        self._clock = clock

    def local_changed(self, local: CalendarEvent, mapping: ExternalEventMapping) -> bool:
        return local.updated_at is not None and local.updated_at > mapping.last_sync_time

    def remote_changed(self, remote: CalendarEvent, mapping: ExternalEventMapping) -> bool:
        # 更新時刻を返さないプロバイダーはハッシュ差分で変更済みとみなす
        if remote.updated_at is None:
            return remote.calculate_sync_hash() != mapping.sync_hash
        return remote.updated_at > mapping.last_sync_time

    def detect(self, local: CalendarEvent, remote: CalendarEvent,
               mapping: ExternalEventMapping) -> Optional[SyncConflict]:
        """
        マッピング済みイベントの競合判定

        両側が最終同期後に更新されていれば modified_both。
        片側のみの更新では参加者・タイムゾーンの差異を補助的に分類する。
        1イベントにつき競合は最大1件。
        """
        local_changed = self.local_changed(local, mapping)
        remote_changed = self.remote_changed(remote, mapping)

        if local_changed and remote_changed:
            conflict_type = ConflictType.MODIFIED_BOTH
        elif local_changed or remote_changed:
            conflict_type = self._classify_supplementary(local, remote)
            if conflict_type is None:
                return None
        else:
            return None

        return self.build_conflict(mapping.connection_id, mapping.local_event_id,
                                   conflict_type, local, remote)

    def _classify_supplementary(self, local: CalendarEvent,
                                remote: CalendarEvent) -> Optional[ConflictType]:
        local_emails = local.attendee_emails
        remote_emails = remote.attendee_emails
        if local_emails is not None and remote_emails is not None and local_emails != remote_emails:
            return ConflictType.ATTENDEE_MISMATCH
        if local.start.utcoffset() != remote.start.utcoffset():
            return ConflictType.TIMEZONE_MISMATCH
        return None

    def compare_fields(self, local: Optional[CalendarEvent],
                       remote: Optional[CalendarEvent]) -> List[FieldDifference]:
        """フィールド単位の差分"""
        if local is None or remote is None:
            return []

        differences = []
        for field_name in self.COMPARED_FIELDS:
            local_value = getattr(local, field_name)
            remote_value = getattr(remote, field_name)
            if local_value != remote_value:
                differences.append(FieldDifference(field_name, local_value, remote_value))

        # 時刻が同じでもオフセットが異なる場合
        if local.start == remote.start and local.start.utcoffset() != remote.start.utcoffset():
            differences.append(FieldDifference(
                "timezone", str(local.start.tzinfo), str(remote.start.tzinfo)
            ))

        local_emails = local.attendee_emails
        remote_emails = remote.attendee_emails
        if local_emails is not None and remote_emails is not None and local_emails != remote_emails:
            differences.append(FieldDifference(
                "attendees", sorted(local_emails), sorted(remote_emails)
            ))
        return differences

    def build_conflict(self, connection_id: str, event_id: str, conflict_type: ConflictType,
                       local: Optional[CalendarEvent],
                       remote: Optional[CalendarEvent]) -> SyncConflict:
        return SyncConflict(
            id=generate_id("conflict"),
            connection_id=connection_id,
            event_id=event_id,
            conflict_type=conflict_type,
            local_event=local,
            remote_event=remote,
            differences=self.compare_fields(local, remote),
            detected_at=self._clock(),
        )


class ConflictResolver:
    """競合解決エンジン"""

    # 内容をマージできない競合タイプ
    UNMERGEABLE = (ConflictType.DELETED_LOCAL, ConflictType.DELETED_REMOTE,
                   ConflictType.DUPLICATE_EVENT)

    def __init__(self, strategy: ConflictStrategy = ConflictStrategy.KEEP_REMOTE,
                 merge_rules: Optional[MergeRules] = None):
        self.strategy = strategy
        self.merge_rules = merge_rules or MergeRules()

        # 統計情報
        self.conflicts_resolved = 0
        self.manual_reviews_required = 0
        self.strategy_counts: Dict[str, int] = {}

    def resolve(self, conflict: SyncConflict,
                strategy: Optional[ConflictStrategy] = None) -> ResolutionPlan:
        """戦略に基づく解決方法の決定"""
        strategy = strategy or self.strategy

        if strategy == ConflictStrategy.MERGE and conflict.conflict_type in self.UNMERGEABLE:
            strategy = ConflictStrategy.KEEP_REMOTE

        if strategy == ConflictStrategy.MANUAL_RESOLUTION:
            self.manual_reviews_required += 1
            logger.info(f"Manual resolution required: {conflict.summary()}")
            return ResolutionPlan(ResolutionAction.DEFER, strategy)

        if conflict.conflict_type == ConflictType.DELETED_REMOTE:
            plan = self._resolve_deleted_remote(conflict, strategy)
        elif conflict.conflict_type == ConflictType.DELETED_LOCAL:
            plan = self._resolve_deleted_local(conflict, strategy)
        elif conflict.conflict_type == ConflictType.DUPLICATE_EVENT:
            plan = self._resolve_duplicate(conflict, strategy)
        else:
            plan = self._resolve_modified(conflict, strategy)

        self.conflicts_resolved += 1
        self.strategy_counts[strategy.value] = self.strategy_counts.get(strategy.value, 0) + 1
        logger.info(f"Conflict resolved using {strategy.value} ({plan.action}): {conflict.summary()}")
        return plan

    def _resolve_modified(self, conflict: SyncConflict, strategy: ConflictStrategy) -> ResolutionPlan:
        if strategy == ConflictStrategy.KEEP_LOCAL:
            return ResolutionPlan(ResolutionAction.PUSH_LOCAL, strategy, conflict.local_event)
        if strategy == ConflictStrategy.MERGE:
            merged = self.merge_events(conflict.local_event, conflict.remote_event)
            return ResolutionPlan(ResolutionAction.APPLY_MERGED, strategy, merged)
        if strategy == ConflictStrategy.CREATE_BOTH:
            return ResolutionPlan(ResolutionAction.DUPLICATE_REMOTE, strategy,
                                  conflict.remote_event, create_duplicate=True)
        return ResolutionPlan(ResolutionAction.APPLY_REMOTE, strategy, conflict.remote_event)

    def _resolve_deleted_remote(self, conflict: SyncConflict, strategy: ConflictStrategy) -> ResolutionPlan:
        """リモート削除 × ローカル更新"""
        if strategy in (ConflictStrategy.KEEP_LOCAL, ConflictStrategy.CREATE_BOTH):
            return ResolutionPlan(ResolutionAction.RECREATE_REMOTE, strategy, conflict.local_event)
        return ResolutionPlan(ResolutionAction.DELETE_LOCAL, strategy, conflict.local_event)

    def _resolve_deleted_local(self, conflict: SyncConflict, strategy: ConflictStrategy) -> ResolutionPlan:
        """ローカル削除 × リモート更新"""
        if strategy == ConflictStrategy.KEEP_LOCAL:
            return ResolutionPlan(ResolutionAction.DELETE_REMOTE, strategy, conflict.remote_event)
        return ResolutionPlan(ResolutionAction.RECREATE_LOCAL, strategy, conflict.remote_event)

    def _resolve_duplicate(self, conflict: SyncConflict, strategy: ConflictStrategy) -> ResolutionPlan:
        """未マッピングの同名・同時刻イベント"""
        if strategy == ConflictStrategy.KEEP_LOCAL:
            return ResolutionPlan(ResolutionAction.LINK, strategy, conflict.local_event)
        if strategy == ConflictStrategy.CREATE_BOTH:
            return ResolutionPlan(ResolutionAction.RECREATE_LOCAL, strategy, conflict.remote_event)
        return ResolutionPlan(ResolutionAction.APPLY_REMOTE, strategy, conflict.remote_event)

    # ------------------------------------------------------------------
    # マージ
    # ------------------------------------------------------------------

    def merge_events(self, local: CalendarEvent, remote: CalendarEvent) -> CalendarEvent:
        """
        フィールド単位のマージ

        ルールのないフィールドは fallback (既定 keep_remote) に従う。
        IDとカレンダーはローカル側を維持する。
        """
        rules = self.merge_rules
        local_is_newer = _updated(local) > _updated(remote)

        base = local if rules.fallback == "keep_local" else remote
        return base.copy_with(
            id=local.id,
            calendar_id=local.calendar_id,
            external_id=remote.external_id or local.external_id,
            created_at=local.created_at,
            metadata={**remote.metadata, **local.metadata},
            title=self._merge_value(rules.title, local.title, remote.title, local_is_newer),
            description=self._merge_description(rules.description, local.description,
                                                remote.description, local_is_newer),
            location=self._merge_value(rules.location, local.location, remote.location, local_is_newer),
            attendees=self._merge_attendees(rules.attendees, local.attendees, remote.attendees),
        )

    def _merge_value(self, rule: str, local_value: Any, remote_value: Any, local_is_newer: bool) -> Any:
        if rule == "keep_local":
            return local_value
        if rule == "keep_remote":
            return remote_value
        if rule == "newest_wins":
            return local_value if local_is_newer else remote_value
        if rule == "non_empty":
            if not local_value:
                return remote_value
            if not remote_value:
                return local_value
            return self._merge_value(self.merge_rules.fallback, local_value, remote_value, local_is_newer)
        logger.warning(f"Unknown merge rule '{rule}', using remote value")
        return remote_value

    def _merge_description(self, rule: str, local_value: str, remote_value: str,
                           local_is_newer: bool) -> str:
        if rule != "combine":
            return self._merge_value(rule, local_value, remote_value, local_is_newer)

        local_value = (local_value or "").strip()
        remote_value = (remote_value or "").strip()
        if not local_value or local_value in remote_value:
            return remote_value
        if not remote_value or remote_value in local_value:
            return local_value
        return f"{local_value}{DESCRIPTION_SEPARATOR}{remote_value}"

    def _merge_attendees(self, rule: str, local_value: Optional[List[Attendee]],
                         remote_value: Optional[List[Attendee]]) -> Optional[List[Attendee]]:
        if rule == "keep_local":
            return local_value
        if rule == "keep_remote" or local_value is None:
            return remote_value
        if remote_value is None:
            return local_value

        # メールアドレス単位の和集合(リモート優先)
        merged = {a.email.lower(): a for a in local_value}
        merged.update({a.email.lower(): a for a in remote_value})
        return list(merged.values())

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        total = self.conflicts_resolved + self.manual_reviews_required
        return {
            "conflicts_handled": total,
            "conflicts_resolved": self.conflicts_resolved,
            "manual_reviews_required": self.manual_reviews_required,
            "auto_resolution_rate": (self.conflicts_resolved / total * 100) if total > 0 else 0.0,
            "strategy_used": self.strategy.value,
            "strategy_counts": dict(self.strategy_counts),
        }
