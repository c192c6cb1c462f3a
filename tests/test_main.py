"""Tests for the HTTP surface of the sync service."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from members_sync.core.sync_engine import SyncRunResult
from members_sync.database.models import RunStatus, SyncMode, SyncState
from members_sync.main import CALLER_ID_HEADER, MembersSyncApp, SYNC_ROUTE


def successful_result(mode=SyncMode.INCREMENTAL):
    return SyncRunResult(
        success=True,
        requested_mode=mode,
        mode=mode,
        since=datetime(2024, 6, 1, tzinfo=timezone.utc),
        last_sync_at=datetime(2024, 6, 2, tzinfo=timezone.utc),
        fetched=4,
        upserted=3,
        skipped_missing_id=1,
        events_emitted=2
    )


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.run = AsyncMock(return_value=successful_result())
    return engine


async def make_client(app: MembersSyncApp) -> TestClient:
    client = TestClient(TestServer(app.build_web_app()))
    await client.start_server()
    return client


class TestSyncRoute:
    """POST trigger for a sync run."""

    @pytest.mark.asyncio
    async def test_default_mode_is_incremental(self, engine, store):
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.post(SYNC_ROUTE, headers={CALLER_ID_HEADER: "staff-42"})
            body = await response.json()
        finally:
            await client.close()

        assert response.status == 200
        assert body["success"] is True
        assert body["mode"] == "incremental"
        assert body["since"] == "2024-06-01T00:00:00+00:00"
        assert body["skippedMissingId"] == 1
        assert body["eventsEmitted"] == 2
        engine.run.assert_awaited_once_with(SyncMode.INCREMENTAL, caller_id="staff-42")

    @pytest.mark.asyncio
    async def test_full_mode(self, engine, store):
        engine.run.return_value = successful_result(SyncMode.FULL)
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.post(SYNC_ROUTE, json={"mode": "full"})
        finally:
            await client.close()

        assert response.status == 200
        engine.run.assert_awaited_once_with(SyncMode.FULL, caller_id=None)

    @pytest.mark.asyncio
    async def test_invalid_mode(self, engine, store):
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.post(SYNC_ROUTE, json={"mode": "sometimes"})
            body = await response.json()
        finally:
            await client.close()

        assert response.status == 400
        assert body["success"] is False
        engine.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json(self, engine, store):
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.post(
                SYNC_ROUTE, data="{mode", headers={"Content-Type": "application/json"}
            )
        finally:
            await client.close()

        assert response.status == 400
        engine.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_object_body(self, engine, store):
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.post(SYNC_ROUTE, json=["full"])
        finally:
            await client.close()

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_failed_run_returns_500_with_counts(self, engine, store):
        engine.run.return_value = SyncRunResult(
            success=False,
            requested_mode=SyncMode.FULL,
            mode=SyncMode.FULL,
            upserted=800,
            error_message="Failed to write cache chunk at offset 800: write rejected"
        )
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.post(SYNC_ROUTE, json={"mode": "full"})
            body = await response.json()
        finally:
            await client.close()

        assert response.status == 500
        assert body == {
            "success": False,
            "error": "Failed to write cache chunk at offset 800: write rejected",
            "mode": "full",
            "fetched": 0,
            "upserted": 800,
            "skippedMissingId": 0,
        }


class TestHealthAndStatus:
    """Operational endpoints."""

    @pytest.mark.asyncio
    async def test_health_when_not_running(self, engine, store):
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.get("/health")
            body = await response.json()
        finally:
            await client.close()

        assert response.status == 503
        assert body["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_health_when_running(self, engine, store):
        app = MembersSyncApp(engine=engine, store=store)
        app.running = True
        client = await make_client(app)
        try:
            response = await client.get("/health")
        finally:
            await client.close()

        assert response.status == 200

    @pytest.mark.asyncio
    async def test_status(self, engine, store):
        store.save_sync_state(SyncState(
            last_sync_at=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
            last_mode=SyncMode.FULL
        ))
        store.log_sync_run(
            started_at=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
            requested_mode="full",
            status=RunStatus.SUCCESS
        )
        client = await make_client(MembersSyncApp(engine=engine, store=store))
        try:
            response = await client.get("/status")
            body = await response.json()
        finally:
            await client.close()

        assert response.status == 200
        assert body["sync_state"]["last_mode"] == "full"
        assert body["sync_state"]["last_sync_at"].startswith("2024-06-01T12:00:00")
        assert body["cached_members"] == 0
        assert len(body["recent_runs"]) == 1
        assert body["scheduler"] == {"running": False, "jobs": []}
