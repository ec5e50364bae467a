"""
競合検出・解決テスト
"""

from datetime import timedelta, timezone

import pytest

from calendar_sync.core.models import (Attendee, CalendarEvent, ConflictStrategy, ConflictType,
                                       ExternalEventMapping, MergeRules)
from calendar_sync.layers.sync_layer import (ConflictDetector, ConflictResolver, ResolutionAction)
from calendar_sync.layers.sync_layer.conflict_resolver import DESCRIPTION_SEPARATOR

from fakes import EVENT_DAY

JST = timezone(timedelta(hours=9))


class ConflictFixture:
    """ローカル・リモート・マッピングの組"""

    def __init__(self, clock):
        self.clock = clock
        self.synced_at = clock()
        base = CalendarEvent(
            id="evt_1", title="週次レビュー", start=EVENT_DAY, end=EVENT_DAY + timedelta(hours=1),
            calendar_id="local", description="議題A", location="会議室", updated_at=self.synced_at,
        )
        self.local = base
        self.remote = base.copy_with(id="ext_1", external_id="ext_1", calendar_id="primary")
        self.mapping = ExternalEventMapping(
            connection_id="conn_1", local_event_id="evt_1", external_event_id="ext_1",
            calendar_id="primary", last_sync_time=self.synced_at,
            sync_hash=base.calculate_sync_hash(),
        )

    def edit_local(self, **changes):
        self.local = self.local.copy_with(updated_at=self.clock.advance(minutes=1), **changes)

    def edit_remote(self, **changes):
        self.remote = self.remote.copy_with(updated_at=self.clock.advance(minutes=1), **changes)


@pytest.fixture
def pair(clock):
    return ConflictFixture(clock)


@pytest.fixture
def detector(clock):
    return ConflictDetector(clock)


class TestConflictDetector:
    """競合検出のテスト"""

    def test_no_changes_no_conflict(self, detector, pair):
        assert detector.detect(pair.local, pair.remote, pair.mapping) is None

    def test_single_side_change_is_not_a_conflict(self, detector, pair):
        pair.edit_remote(title="週次レビュー(変更)")
        assert detector.remote_changed(pair.remote, pair.mapping)
        assert not detector.local_changed(pair.local, pair.mapping)
        assert detector.detect(pair.local, pair.remote, pair.mapping) is None

    def test_both_sides_changed(self, detector, pair):
        """両側が最終同期後に更新されていれば modified_both"""
        pair.edit_local(title="ローカル版")
        pair.edit_remote(title="リモート版", location="オンライン")

        conflict = detector.detect(pair.local, pair.remote, pair.mapping)

        assert conflict.conflict_type == ConflictType.MODIFIED_BOTH
        assert conflict.event_id == "evt_1"
        assert conflict.connection_id == "conn_1"
        assert {d.field_name for d in conflict.differences} == {"title", "location"}
        assert conflict.detected_at == pair.clock()

    def test_both_changed_with_identical_content_still_conflicts(self, detector, pair):
        """タイムスタンプ規則が優先(フィールド差分は分類のみ)"""
        pair.edit_local()
        pair.edit_remote()

        conflict = detector.detect(pair.local, pair.remote, pair.mapping)
        assert conflict.conflict_type == ConflictType.MODIFIED_BOTH
        assert conflict.differences == []

    def test_remote_without_timestamp_uses_hash(self, detector, pair):
        pair.remote = pair.remote.copy_with(updated_at=None)
        assert not detector.remote_changed(pair.remote, pair.mapping)

        pair.remote = pair.remote.copy_with(description="議題B")
        assert detector.remote_changed(pair.remote, pair.mapping)

    def test_attendee_mismatch(self, detector, pair):
        pair.local = pair.local.copy_with(attendees=[Attendee("a@example.com")])
        pair.edit_remote(attendees=[Attendee("A@example.com"), Attendee("b@example.com")])

        conflict = detector.detect(pair.local, pair.remote, pair.mapping)

        assert conflict.conflict_type == ConflictType.ATTENDEE_MISMATCH
        attendees = [d for d in conflict.differences if d.field_name == "attendees"][0]
        assert attendees.remote_value == ["a@example.com", "b@example.com"]

    def test_unloaded_attendees_are_not_compared(self, detector, pair):
        pair.edit_remote(attendees=[Attendee("b@example.com")])
        assert detector.detect(pair.local, pair.remote, pair.mapping) is None

    def test_timezone_mismatch(self, detector, pair):
        """同一時刻でもオフセットが異なる"""
        pair.edit_remote(start=EVENT_DAY.astimezone(JST))

        conflict = detector.detect(pair.local, pair.remote, pair.mapping)

        assert conflict.conflict_type == ConflictType.TIMEZONE_MISMATCH
        assert [d.field_name for d in conflict.differences] == ["timezone"]


class TestConflictResolver:
    """競合解決のテスト"""

    def conflict(self, detector, pair, conflict_type=ConflictType.MODIFIED_BOTH, local=True, remote=True):
        return detector.build_conflict("conn_1", "evt_1", conflict_type,
                                       pair.local if local else None,
                                       pair.remote if remote else None)

    @pytest.mark.parametrize("strategy,action", [
        (ConflictStrategy.KEEP_LOCAL, ResolutionAction.PUSH_LOCAL),
        (ConflictStrategy.KEEP_REMOTE, ResolutionAction.APPLY_REMOTE),
        (ConflictStrategy.MERGE, ResolutionAction.APPLY_MERGED),
        (ConflictStrategy.CREATE_BOTH, ResolutionAction.DUPLICATE_REMOTE),
        (ConflictStrategy.MANUAL_RESOLUTION, ResolutionAction.DEFER),
    ])
    def test_modified_both_strategies(self, detector, pair, strategy, action):
        plan = ConflictResolver(strategy).resolve(self.conflict(detector, pair))
        assert plan.action == action
        assert plan.strategy == strategy

    def test_explicit_strategy_overrides_default(self, detector, pair):
        resolver = ConflictResolver(ConflictStrategy.MANUAL_RESOLUTION)
        plan = resolver.resolve(self.conflict(detector, pair), ConflictStrategy.KEEP_LOCAL)
        assert plan.action == ResolutionAction.PUSH_LOCAL
        assert plan.event is pair.local

    @pytest.mark.parametrize("conflict_type,strategy,action", [
        (ConflictType.DELETED_REMOTE, ConflictStrategy.KEEP_REMOTE, ResolutionAction.DELETE_LOCAL),
        (ConflictType.DELETED_REMOTE, ConflictStrategy.KEEP_LOCAL, ResolutionAction.RECREATE_REMOTE),
        (ConflictType.DELETED_REMOTE, ConflictStrategy.CREATE_BOTH, ResolutionAction.RECREATE_REMOTE),
        (ConflictType.DELETED_LOCAL, ConflictStrategy.KEEP_REMOTE, ResolutionAction.RECREATE_LOCAL),
        (ConflictType.DELETED_LOCAL, ConflictStrategy.KEEP_LOCAL, ResolutionAction.DELETE_REMOTE),
        (ConflictType.DUPLICATE_EVENT, ConflictStrategy.KEEP_LOCAL, ResolutionAction.LINK),
        (ConflictType.DUPLICATE_EVENT, ConflictStrategy.CREATE_BOTH, ResolutionAction.RECREATE_LOCAL),
        (ConflictType.DUPLICATE_EVENT, ConflictStrategy.KEEP_REMOTE, ResolutionAction.APPLY_REMOTE),
    ])
    def test_structural_conflicts(self, detector, pair, conflict_type, strategy, action):
        conflict = self.conflict(detector, pair, conflict_type,
                                 local=conflict_type != ConflictType.DELETED_LOCAL,
                                 remote=conflict_type != ConflictType.DELETED_REMOTE)
        assert ConflictResolver(strategy).resolve(conflict).action == action

    def test_merge_falls_back_for_deletions(self, detector, pair):
        """削除系はマージできないので keep_remote 扱い"""
        conflict = self.conflict(detector, pair, ConflictType.DELETED_REMOTE, remote=False)
        plan = ConflictResolver(ConflictStrategy.MERGE).resolve(conflict)
        assert plan.action == ResolutionAction.DELETE_LOCAL
        assert plan.strategy == ConflictStrategy.KEEP_REMOTE

    def test_statistics(self, detector, pair):
        resolver = ConflictResolver(ConflictStrategy.KEEP_REMOTE)
        resolver.resolve(self.conflict(detector, pair))
        resolver.resolve(self.conflict(detector, pair), ConflictStrategy.MANUAL_RESOLUTION)

        stats = resolver.get_statistics()
        assert stats["conflicts_resolved"] == 1
        assert stats["manual_reviews_required"] == 1
        assert stats["auto_resolution_rate"] == 50.0
        assert stats["strategy_counts"] == {"keep_remote": 1}


class TestMergeEvents:
    """フィールド単位マージのテスト"""

    def test_default_rules(self, pair):
        pair.edit_remote(title="リモート題", description="議題B", location="", attendees=[Attendee("b@example.com")])
        pair.edit_local(title="ローカル題", description="議題A\n補足", location="会議室3",
                        attendees=[Attendee("a@example.com"), Attendee("B@example.com", name="Bob")])

        merged = ConflictResolver(ConflictStrategy.MERGE).merge_events(pair.local, pair.remote)

        # ローカルの方が新しい
        assert merged.title == "ローカル題"
        assert merged.description == f"議題A\n補足{DESCRIPTION_SEPARATOR}議題B"
        assert merged.location == "会議室3"
        assert sorted(a.email.lower() for a in merged.attendees) == ["a@example.com", "b@example.com"]
        assert merged.id == "evt_1"
        assert merged.calendar_id == "local"
        assert merged.external_id == "ext_1"

    def test_newest_wins_prefers_remote_when_newer(self, pair):
        pair.edit_local(title="ローカル題")
        pair.edit_remote(title="リモート題")
        merged = ConflictResolver(ConflictStrategy.MERGE).merge_events(pair.local, pair.remote)
        assert merged.title == "リモート題"

    def test_combine_skips_contained_description(self, pair):
        pair.edit_remote(description="議題A と 議題B")
        merged = ConflictResolver(ConflictStrategy.MERGE).merge_events(pair.local, pair.remote)
        assert merged.description == "議題A と 議題B"

    def test_keep_local_fallback(self, pair):
        rules = MergeRules(title="keep_remote", description="keep_local", fallback="keep_local")
        pair.edit_local(title="ローカル題", end=EVENT_DAY + timedelta(hours=2))
        pair.edit_remote(title="リモート題", description="議題B")

        merged = ConflictResolver(ConflictStrategy.MERGE, rules).merge_events(pair.local, pair.remote)

        assert merged.title == "リモート題"
        assert merged.description == "議題A"
        assert merged.end == EVENT_DAY + timedelta(hours=2)
