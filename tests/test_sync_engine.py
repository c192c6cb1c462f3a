"""Tests for mode selection and end-to-end sync runs."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from structlog.testing import capture_logs

from members_sync.config.settings import AppSettings, SyncSettings
from members_sync.core.sync_engine import (
    MembersSyncEngine,
    InvalidSyncModeError,
    UNFILTERED_SIGNATURE,
    field_selection_signature,
    parse_mode,
    select_effective_mode
)
from members_sync.database.models import SyncMode, SyncState
from members_sync.utils.timestamps import utc_now

from conftest import FakeCaspioClient, TEST_FIELDS, make_record


WATERMARK = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_engine(store, fields_config, client, page_size=2, max_pages=20, chunk_size=2):
    settings = AppSettings(sync=SyncSettings(page_size=page_size, max_pages=max_pages, chunk_size=chunk_size))
    return MembersSyncEngine(
        store=store,
        fields_config=fields_config,
        client_factory=lambda: client,
        settings=settings
    )


def seed_records():
    return [
        make_record("C1", "2024-06-01T08:00:00"),
        make_record("C2", "2024-06-01T09:30:00", Senior_First="Ana", Senior_Last="Ruiz"),
        make_record("C3", "2024-06-01T12:00:00"),
    ]


class TestFieldSelectionSignature:
    """Order- and case-independent fingerprints."""

    def test_order_and_case_do_not_matter(self):
        assert field_selection_signature(["B", "a"]) == field_selection_signature(["A", "b"])

    def test_different_sets_differ(self):
        assert field_selection_signature(["A", "B"]) != field_selection_signature(["A", "C"])

    def test_unfiltered(self):
        assert field_selection_signature(None) == UNFILTERED_SIGNATURE

    def test_short_hex(self):
        signature = field_selection_signature(["Client_ID2"])
        assert len(signature) == 16
        int(signature, 16)


class TestModeSelection:
    """Effective mode decisions."""

    signature = field_selection_signature(TEST_FIELDS)

    def state(self, **overrides):
        values = {"last_sync_at": WATERMARK, "last_select_signature": self.signature}
        values.update(overrides)
        return SyncState(**values)

    def test_no_state_forces_full(self):
        decision = select_effective_mode(SyncMode.INCREMENTAL, None, self.signature)
        assert decision.mode == SyncMode.FULL
        assert decision.since is None

    def test_state_without_watermark_forces_full(self):
        decision = select_effective_mode(SyncMode.INCREMENTAL, self.state(last_sync_at=None), self.signature)
        assert decision.mode == SyncMode.FULL

    def test_full_requested(self):
        assert select_effective_mode(SyncMode.FULL, self.state(), self.signature).mode == SyncMode.FULL

    def test_incremental(self):
        decision = select_effective_mode(SyncMode.INCREMENTAL, self.state(), self.signature)
        assert decision.mode == SyncMode.INCREMENTAL
        assert decision.since == WATERMARK

    def test_changed_selection_forces_backfill(self):
        decision = select_effective_mode(
            SyncMode.INCREMENTAL, self.state(), field_selection_signature(TEST_FIELDS + ["SW_ID"])
        )
        assert decision.mode == SyncMode.FULL
        assert decision.reason == "field selection changed"

    def test_missing_stored_signature_forces_backfill(self):
        decision = select_effective_mode(
            SyncMode.INCREMENTAL, self.state(last_select_signature=None), self.signature
        )
        assert decision.mode == SyncMode.FULL

    def test_unfiltered_run_is_not_compared(self):
        decision = select_effective_mode(SyncMode.INCREMENTAL, self.state(), UNFILTERED_SIGNATURE)
        assert decision.mode == SyncMode.INCREMENTAL


@pytest.mark.parametrize("value,expected", [
    (None, SyncMode.INCREMENTAL),
    ("full", SyncMode.FULL),
    (" Incremental ", SyncMode.INCREMENTAL),
    (SyncMode.FULL, SyncMode.FULL),
])
def test_parse_mode(value, expected):
    assert parse_mode(value) == expected


def test_parse_mode_rejects_unknown():
    with pytest.raises(InvalidSyncModeError):
        parse_mode("partial")


@pytest.mark.integration
class TestMembersSyncEngine:
    """Full runs against the fake remote and the in-memory store."""

    @pytest.mark.asyncio
    async def test_first_run_is_full(self, store, fields_config):
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("incremental", caller_id="admin-1")

        assert result.success
        assert result.mode == SyncMode.FULL
        assert result.fetched == 3
        assert result.upserted == 3
        assert result.events_emitted == 1
        assert result.last_sync_at == WATERMARK
        assert client.requests[0]["where"] is None
        assert client.closed

        state = store.get_sync_state()
        assert state.last_sync_at == WATERMARK
        assert state.last_mode == SyncMode.FULL
        assert state.last_run_by == "admin-1"
        assert state.last_select_signature == field_selection_signature(TEST_FIELDS)
        assert state.last_run_summary.upserted == 3

        summary = store.get_recent_activities()
        assert [event.activity_type for event in summary] == ["sync_summary"]

    @pytest.mark.asyncio
    async def test_second_run_without_changes_is_a_no_op(self, store, fields_config):
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)
        await engine.run("full")
        before = store.get_member("C2")

        started = utc_now()
        result = await engine.run("incremental")

        assert result.success
        assert result.mode == SyncMode.INCREMENTAL
        assert result.since == WATERMARK
        assert result.fetched == 0
        assert result.upserted == 0
        assert result.events_emitted == 0
        # nothing observed, so the watermark moves up to the run time
        assert result.last_sync_at >= started
        assert store.get_member("C2") == before
        assert store.get_sync_state().last_sync_at == result.last_sync_at

        third = await engine.run("incremental")
        assert third.since == result.last_sync_at
        assert third.fetched == 0

    @pytest.mark.asyncio
    async def test_incremental_emits_one_event_per_changed_member(self, store, fields_config):
        records = seed_records()
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)
        await engine.run("full")

        records[0].update(Kaiser_Status="Authorized", Pathway="Community", Date_Modified="2024-06-02T10:00:00")
        records.append(make_record("C4", "2024-06-02T11:00:00"))
        result = await engine.run("incremental", caller_id="admin-2")

        assert result.fetched == 2
        assert result.upserted == 2
        assert result.events_emitted == 1
        assert result.last_sync_at == datetime(2024, 6, 2, 11, 0, tzinfo=timezone.utc)

        events = [event for event in store.get_recent_activities() if event.activity_type != "sync_summary"]
        assert len(events) == 1
        assert events[0].client_key == "C1"
        assert events[0].field_changed == "kaiser_status"
        assert events[0].changed_fields == ["kaiser_status", "pathway"]
        assert events[0].changed_by == "admin-2"

    @pytest.mark.asyncio
    async def test_status_change_produces_one_event_with_old_and_new_values(self, store, fields_config):
        records = seed_records()
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)
        await engine.run("full")

        records[1].update(Kaiser_Status="Tier Level Requested", Date_Modified="2024-06-02T10:00:00")
        result = await engine.run("incremental")

        assert result.mode == SyncMode.INCREMENTAL
        assert result.to_response()["eventsEmitted"] == 1

        events = [event for event in store.get_recent_activities() if event.activity_type != "sync_summary"]
        assert len(events) == 1
        assert events[0].client_key == "C2"
        assert events[0].field_changed == "kaiser_status"
        assert events[0].old_value == "T2038 Requested"
        assert events[0].new_value == "Tier Level Requested"
        assert events[0].changed_fields == ["kaiser_status"]

    @pytest.mark.asyncio
    async def test_full_run_does_not_diff(self, store, fields_config):
        records = seed_records()
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)
        await engine.run("full")

        records[1]["Kaiser_Status"] = "Authorized"
        result = await engine.run("full")

        assert result.events_emitted == 1
        types = [event.activity_type for event in store.get_recent_activities()]
        assert types == ["sync_summary", "sync_summary"]

    @pytest.mark.asyncio
    async def test_watermark_never_moves_backwards(self, store, fields_config):
        later = datetime(2024, 7, 1, tzinfo=timezone.utc)
        store.save_sync_state(SyncState(
            last_sync_at=later,
            last_select_signature=field_selection_signature(TEST_FIELDS)
        ))
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("full")

        assert result.upserted == 3
        assert result.last_sync_at == later
        assert store.get_sync_state().last_sync_at == later

    @pytest.mark.asyncio
    async def test_missing_keys_are_counted(self, store, fields_config):
        records = seed_records() + [make_record(None, "2024-06-05T00:00:00")]
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("full")

        assert result.fetched == 4
        assert result.upserted == 3
        assert result.skipped_missing_id == 1
        assert result.last_sync_at == WATERMARK
        assert store.count_members() == 3

    @pytest.mark.asyncio
    async def test_changed_field_selection_forces_backfill(self, store, fields_config):
        store.save_sync_state(SyncState(
            last_sync_at=WATERMARK,
            last_select_signature=field_selection_signature(["Client_ID2", "Date_Modified"])
        ))
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("incremental")

        assert result.mode == SyncMode.FULL
        assert result.fetched == 3
        assert store.get_sync_state().last_select_signature == field_selection_signature(TEST_FIELDS)

    @pytest.mark.asyncio
    async def test_backfill_over_existing_cache_emits_only_summary(self, store, fields_config):
        records = seed_records()
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)
        await engine.run("full")

        state = store.get_sync_state()
        store.save_sync_state(state.model_copy(update={
            "last_select_signature": field_selection_signature(["Client_ID2", "Date_Modified"])
        }))
        records[0].update(Kaiser_Status="Authorized", Date_Modified="2024-06-02T10:00:00")

        result = await engine.run("incremental")

        assert result.mode == SyncMode.FULL
        assert result.reason == "field selection changed"
        assert result.fetched == 3
        assert result.events_emitted == 1
        types = [event.activity_type for event in store.get_recent_activities()]
        assert types == ["sync_summary", "sync_summary"]
        assert store.get_sync_state().last_select_signature == field_selection_signature(TEST_FIELDS)

    @pytest.mark.asyncio
    async def test_schema_failure_runs_unfiltered_without_backfill(self, store, fields_config):
        stored_signature = field_selection_signature(TEST_FIELDS)
        store.save_sync_state(SyncState(last_sync_at=WATERMARK, last_select_signature=stored_signature))
        client = FakeCaspioClient(seed_records(), fields=None)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("incremental")

        assert result.success
        assert result.mode == SyncMode.INCREMENTAL
        assert result.fetched == 3
        assert all(request["where"] is None and request["select"] is None for request in client.requests)
        assert store.get_sync_state().last_select_signature == stored_signature

    @pytest.mark.asyncio
    async def test_schema_rejection_degrades_pages(self, store, fields_config):
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS, reject_select=True)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("full")

        assert result.success
        assert result.upserted == 3

    @pytest.mark.asyncio
    async def test_auth_failure_leaves_state_untouched(self, store, fields_config):
        store.save_sync_state(SyncState(last_sync_at=WATERMARK, last_select_signature="abc"))
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS, fail_auth=True)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("incremental")

        assert not result.success
        assert "401" in result.error_message
        state = store.get_sync_state()
        assert state.last_sync_at == WATERMARK
        assert state.last_select_signature == "abc"
        assert state.last_run_at is None

        history = store.get_sync_history()
        assert history[0].status == "failed"

    @pytest.mark.asyncio
    async def test_fetch_failure_reports_failure(self, store, fields_config):
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS, fail_status=500)
        engine = make_engine(store, fields_config, client)

        result = await engine.run("full")

        assert not result.success
        assert store.get_sync_state() is None
        response = result.to_response()
        assert response["success"] is False
        assert response["fetched"] == 0

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_committed_chunks(self, store, fields_config):
        records = [make_record(f"C{i}", "2024-06-01T00:00:00") for i in range(5)]
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client, page_size=10, chunk_size=2)

        real_upsert = store.upsert_members
        calls = {"count": 0}

        def failing_upsert(members):
            calls["count"] += 1
            if calls["count"] == 3:
                raise RuntimeError("write rejected")
            return real_upsert(members)

        with patch.object(store, "upsert_members", side_effect=failing_upsert):
            result = await engine.run("full")

        assert not result.success
        assert result.upserted == 4
        assert result.to_response()["upserted"] == 4
        assert store.count_members() == 4
        assert store.get_sync_state() is None

    @pytest.mark.asyncio
    async def test_committed_chunks_emit_events_when_a_later_chunk_fails(self, store, fields_config):
        records = seed_records()
        client = FakeCaspioClient(records, fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client, page_size=10, chunk_size=1)
        await engine.run("full")

        for index, record in enumerate(records):
            record.update(Kaiser_Status="Authorized", Date_Modified=f"2024-06-02T1{index}:00:00")

        real_upsert = store.upsert_members
        calls = {"count": 0}

        def failing_upsert(members):
            calls["count"] += 1
            if calls["count"] == 3:
                raise RuntimeError("write rejected")
            return real_upsert(members)

        with patch.object(store, "upsert_members", side_effect=failing_upsert):
            failed = await engine.run("incremental")

        assert not failed.success
        assert failed.upserted == 2
        assert failed.events_emitted == 2
        assert store.get_sync_state().last_sync_at == WATERMARK

        retried = await engine.run("incremental")

        assert retried.success
        assert retried.upserted == 3
        assert retried.events_emitted == 1
        changed = sorted(
            event.client_key for event in store.get_recent_activities()
            if event.activity_type == "status_change"
        )
        assert changed == ["C1", "C2", "C3"]

    @pytest.mark.asyncio
    async def test_success_response_shape(self, store, fields_config):
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)

        response = (await engine.run("full")).to_response()

        assert response == {
            "success": True,
            "mode": "full",
            "since": None,
            "lastSyncAt": "2024-06-01T12:00:00+00:00",
            "fetched": 3,
            "upserted": 3,
            "skippedMissingId": 0,
            "eventsEmitted": 1,
            "truncated": False,
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_logs_traceback(self, store, fields_config):
        client = FakeCaspioClient(seed_records(), fields=TEST_FIELDS)
        engine = make_engine(store, fields_config, client)

        with patch.object(client, "authenticate", side_effect=RuntimeError("boom")):
            with capture_logs() as logs:
                result = await engine.run("full")

        assert not result.success
        assert result.error_message == "Unexpected error during sync: boom"
        failures = [entry for entry in logs if entry["event"] == "Members sync failed with unexpected error"]
        assert failures and failures[0]["exc_info"] is True

    @pytest.mark.asyncio
    async def test_invalid_mode_raises(self, store, fields_config):
        engine = make_engine(store, fields_config, FakeCaspioClient([], fields=TEST_FIELDS))
        with pytest.raises(InvalidSyncModeError):
            await engine.run("sometimes")
