"""
同期状態ストレージテスト
マッピングの一意性・メタデータ・オフラインキュー・競合・ローカルストアの永続化確認
"""

from datetime import timedelta

import pytest

from calendar_sync.core.errors import MappingConflictError, NotFoundError
from calendar_sync.core.models import (CalendarEvent, ConflictResolution, ConflictStatus,
                                       ConflictStrategy, ConflictType, ExternalEventMapping,
                                       FieldDifference, OperationType, SyncConflict, SyncError,
                                       SyncErrorType, SyncMetadata, SyncResult)
from calendar_sync.layers.sync_layer import (OfflineQueue, RetryPolicy, SQLiteLocalCalendarStore,
                                             SyncStateStore)

from fakes import EVENT_DAY


def make_event(event_id="evt_1", title="テストイベント", calendar_id="local", **kwargs) -> CalendarEvent:
    kwargs.setdefault("end", EVENT_DAY + timedelta(hours=1))
    return CalendarEvent(id=event_id, title=title, start=EVENT_DAY, calendar_id=calendar_id, **kwargs)


def make_mapping(clock, local_id="evt_1", external_id="ext_1", connection_id="conn_1") -> ExternalEventMapping:
    return ExternalEventMapping(
        connection_id=connection_id,
        local_event_id=local_id,
        external_event_id=external_id,
        calendar_id="primary",
        last_sync_time=clock(),
        sync_hash="hash_1",
    )


class TestSyncStateStore:
    """同期状態ストアのテスト"""

    @pytest.fixture
    async def store(self, temp_dir):
        state_store = SyncStateStore(temp_dir / "sync.db")
        await state_store.initialize()
        return state_store

    @pytest.mark.asyncio
    async def test_mapping_lookup_both_directions(self, store, clock):
        await store.save_mapping(make_mapping(clock))

        by_external = await store.get_mapping_by_external("conn_1", "ext_1")
        by_local = await store.get_mapping_by_local("conn_1", "evt_1")

        assert by_external == by_local
        assert by_external.last_sync_time == clock()
        assert by_external.conflict_status == ConflictStatus.NONE
        assert await store.get_mapping_by_external("conn_2", "ext_1") is None

    @pytest.mark.asyncio
    async def test_mapping_is_injective_per_connection(self, store, clock):
        """同一ローカルIDを別の外部IDへ対応付けることはできない"""
        await store.save_mapping(make_mapping(clock))

        with pytest.raises(MappingConflictError):
            await store.save_mapping(make_mapping(clock, external_id="ext_2"))

        # 別接続なら同じローカルIDも可
        await store.save_mapping(make_mapping(clock, external_id="ext_2", connection_id="conn_2"))
        assert len(await store.get_mappings("conn_1")) == 1

    @pytest.mark.asyncio
    async def test_mapping_upsert_by_external_id(self, store, clock):
        mapping = make_mapping(clock)
        await store.save_mapping(mapping)

        mapping.sync_hash = "hash_2"
        mapping.conflict_status = ConflictStatus.DETECTED
        await store.save_mapping(mapping)

        stored = await store.get_mapping_by_external("conn_1", "ext_1")
        assert stored.sync_hash == "hash_2"
        assert stored.conflict_status == ConflictStatus.DETECTED
        assert await store.delete_mapping("conn_1", "ext_1")
        assert not await store.delete_mapping("conn_1", "ext_1")

    @pytest.mark.asyncio
    async def test_sync_metadata_defaults_and_roundtrip(self, store, clock):
        metadata = await store.get_sync_metadata("conn_1")
        assert metadata == SyncMetadata(connection_id="conn_1")

        await store.save_sync_metadata(SyncMetadata("conn_1", sync_token="tok_5", last_modified=clock(),
                                                    sync_version=2, provider_data={"etag": "abc"}))
        stored = await store.get_sync_metadata("conn_1")
        assert stored.sync_token == "tok_5"
        assert stored.sync_version == 2
        assert stored.provider_data == {"etag": "abc"}

    @pytest.mark.asyncio
    async def test_conflict_roundtrip(self, store, clock):
        """競合は解決状態と差分ごと保存される"""
        conflict = SyncConflict(
            id="conflict_1",
            connection_id="conn_1",
            event_id="evt_1",
            conflict_type=ConflictType.MODIFIED_BOTH,
            local_event=make_event(title="ローカル"),
            remote_event=make_event(event_id="ext_1", title="リモート"),
            differences=[FieldDifference("title", "ローカル", "リモート")],
            detected_at=clock(),
        )
        await store.save_conflict(conflict)

        open_conflicts = await store.get_conflicts("conn_1")
        assert len(open_conflicts) == 1
        assert open_conflicts[0].local_event.title == "ローカル"
        assert open_conflicts[0].differences[0].remote_value == "リモート"
        assert (await store.find_open_conflict("conn_1", "evt_1")).id == "conflict_1"

        conflict.resolution = ConflictResolution(ConflictStrategy.KEEP_LOCAL, user_choice=True)
        await store.save_conflict(conflict)
        pending = await store.get_conflict("conflict_1")
        assert pending.has_pending_override

        conflict.is_resolved = True
        await store.save_conflict(conflict)
        assert await store.get_conflicts("conn_1") == []
        assert len(await store.get_conflicts("conn_1", include_resolved=True)) == 1

    @pytest.mark.asyncio
    async def test_delete_connection_state(self, store, clock):
        await store.save_mapping(make_mapping(clock))
        await store.save_sync_metadata(SyncMetadata("conn_1", sync_token="tok_1"))
        await OfflineQueue(store, clock=clock).enqueue("conn_1", OperationType.DELETE,
                                                       external_event_id="ext_1")

        await store.delete_connection_state("conn_1")

        assert await store.get_mappings("conn_1") == []
        assert (await store.get_sync_metadata("conn_1")).sync_token is None
        assert await store.get_queued_operations("conn_1") == []

    @pytest.mark.asyncio
    async def test_sync_logs_newest_first(self, store, clock):
        await store.log_sync_result(SyncResult("conn_1", events_imported=2, last_sync_time=clock()))
        await store.log_sync_result(SyncResult(
            "conn_1", errors=(SyncError(SyncErrorType.NETWORK_ERROR, "offline"),),
            last_sync_time=clock() + timedelta(minutes=1)
        ))

        logs = await store.get_sync_logs("conn_1")
        assert [log["status"] for log in logs] == ["failed", "success"]
        assert logs[0]["error_message"] == "offline"

        stats = await store.get_storage_statistics()
        assert stats["sync_logs"] == 2
        assert stats["total_mappings"] == 0


class TestOfflineQueue:
    """オフラインキューのテスト"""

    @pytest.fixture
    async def queue(self, temp_dir, clock):
        store = SyncStateStore(temp_dir / "sync.db")
        await store.initialize()
        return OfflineQueue(store, RetryPolicy(max_retries=3, base_delay_minutes=1), clock)

    def retryable(self) -> SyncError:
        return SyncError(SyncErrorType.SERVICE_UNAVAILABLE, "503 Service Unavailable", "conn_1")

    @pytest.mark.asyncio
    async def test_exponential_backoff_then_terminal(self, queue, clock):
        """1分 → 2分 → 4分 の後、上限で終端エラー"""
        start = clock()
        operation = await queue.enqueue("conn_1", OperationType.UPDATE, local_event_id="evt_1",
                                        event=make_event(), error="503")
        assert operation.retry_count == 1
        assert operation.next_retry_at == start + timedelta(minutes=1)
        assert await queue.due_operations("conn_1") == []

        clock.advance(minutes=1)
        [due] = await queue.due_operations("conn_1")
        assert due.event.title == "テストイベント"
        assert await queue.record_failure(due, self.retryable()) is None
        assert due.retry_count == 2
        assert due.next_retry_at == clock() + timedelta(minutes=2)

        clock.advance(minutes=2)
        [due] = await queue.due_operations("conn_1")
        assert await queue.record_failure(due, self.retryable()) is None
        assert due.retry_count == 3
        assert due.next_retry_at == clock() + timedelta(minutes=4)

        clock.advance(minutes=4)
        [due] = await queue.due_operations("conn_1")
        terminal = await queue.record_failure(due, self.retryable())

        assert terminal is not None
        assert terminal.can_retry is False
        assert terminal.retry_count == 3
        assert "Gave up" in terminal.message
        assert await queue.size("conn_1") == 0
        assert queue.get_statistics()["dropped_total"] == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_drops_immediately(self, queue, clock):
        operation = await queue.enqueue("conn_1", OperationType.CREATE, local_event_id="evt_1")
        terminal = await queue.record_failure(
            operation, SyncError(SyncErrorType.PERMISSION_DENIED, "403 Forbidden", "conn_1")
        )
        assert terminal.error_type == SyncErrorType.PERMISSION_DENIED
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_pending_ids_and_completion(self, queue, clock):
        first = await queue.enqueue("conn_1", OperationType.UPDATE, local_event_id="evt_1")
        clock.advance(seconds=1)
        await queue.enqueue("conn_1", OperationType.DELETE, local_event_id="evt_2",
                            external_event_id="ext_2")
        await queue.enqueue("conn_2", OperationType.CREATE, local_event_id="evt_3")

        assert await queue.pending_local_event_ids("conn_1") == {"evt_1", "evt_2"}

        clock.advance(minutes=5)
        due = await queue.due_operations("conn_1")
        assert [op.operation_type for op in due] == [OperationType.UPDATE, OperationType.DELETE]

        await queue.complete(first)
        assert await queue.size("conn_1") == 1
        assert await queue.size() == 2
        assert await queue.clear("conn_1") == 1


class TestSQLiteLocalCalendarStore:
    """ローカルカレンダーストアのテスト"""

    @pytest.fixture
    async def local_store(self, temp_dir, clock):
        store = SQLiteLocalCalendarStore(temp_dir / "local.db", clock=clock)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_create_generates_id_and_timestamps(self, local_store, clock):
        event_id = await local_store.create_local_event(make_event(event_id=""))

        assert event_id.startswith("evt_")
        stored = await local_store.get_local_event(event_id)
        assert stored.created_at == clock()
        assert stored.updated_at == clock()

    @pytest.mark.asyncio
    async def test_update_delete_and_list(self, local_store, clock):
        await local_store.create_local_event(make_event("evt_1"))
        clock.advance(seconds=1)
        await local_store.create_local_event(make_event("evt_2", title="二件目"))
        await local_store.create_local_event(make_event("evt_3", calendar_id="other"))

        assert [e.id for e in await local_store.list_local_events("local")] == ["evt_1", "evt_2"]

        event = await local_store.get_local_event("evt_1")
        await local_store.update_local_event_data("evt_1", event.copy_with(title="変更後"))
        assert (await local_store.get_local_event("evt_1")).title == "変更後"

        assert await local_store.delete_local_event("evt_1")
        assert not await local_store.delete_local_event("evt_1")
        assert await local_store.get_local_event("evt_1") is None

    @pytest.mark.asyncio
    async def test_update_missing_event(self, local_store):
        with pytest.raises(NotFoundError):
            await local_store.update_local_event_data("missing", make_event("missing"))
