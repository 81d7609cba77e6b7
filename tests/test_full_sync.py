from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from upsync.config import settings
from upsync.models import CachedTransaction, SyncStatus
from upsync.remote.errors import AuthFailure, RemoteApiError
from upsync.remote.models import TransactionPage
from upsync.security.tokens import TokenProvider
from upsync.sync.full_sync import STALE_RESET_MESSAGE, FullSync, time_range_to_since
from upsync.sync.state import SyncProgressStore


@pytest.fixture
def pages(remote_txn):
    """Three pages of history: 100, 100 and 40 records, newest first."""
    newest = datetime(2026, 3, 1, tzinfo=timezone.utc)

    def page(start, count, next_cursor):
        records = [
            remote_txn(f"txn-{n}", created_at=newest - timedelta(hours=n))
            for n in range(start, start + count)
        ]
        return TransactionPage(records=records, next_cursor=next_cursor)

    return {None: page(0, 100, "c1"), "c1": page(100, 100, "c2"), "c2": page(200, 40, None)}


@pytest.fixture
def progress(session_factory, clock):
    return SyncProgressStore(session_factory, clock=clock)


@pytest.fixture
def full_sync(budget, tokens, store, progress, gateway, pages, clock):
    gateway.pages = pages
    return FullSync(budget, tokens, store, progress, gateway_factory=lambda token: gateway, clock=clock)


async def _cached_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(CachedTransaction))).scalar()


@pytest.mark.asyncio
class TestFullSyncRun:
    async def test_walks_every_page_to_completion(self, full_sync, progress, gateway, budget,
                                                  session_factory, clock):
        summary = await full_sync.run()

        assert summary.status == SyncStatus.COMPLETED.value
        assert summary.pages == 3
        assert summary.records == 240
        assert [c[1] for c in gateway.calls] == [None, "c1", "c2"]
        assert (await budget.usage_stats()).calls_used == 3
        assert await _cached_count(session_factory) == 240

        snap = await progress.snapshot()
        assert snap["status"] == "completed"
        assert snap["total_synced"] == 240
        assert snap["current_batch"] == 3
        assert snap["last_synced_cursor"] is None
        assert snap["completed_at"] == clock.now().isoformat()
        # Oldest record of the last page: txn-239
        assert snap["last_synced_date"] == (datetime(2026, 3, 1, tzinfo=timezone.utc)
                                            - timedelta(hours=239)).isoformat()

    async def test_resumes_from_persisted_cursor(self, full_sync, progress, gateway, monkeypatch):
        monkeypatch.setattr(settings, "full_sync_max_calls_per_run", 2)
        monkeypatch.setattr(settings, "full_sync_min_calls", 1)

        summary = await full_sync.run()
        assert summary.status == SyncStatus.RUNNING.value
        assert summary.pages == 2
        snap = await progress.snapshot()
        assert snap["status"] == "running"
        assert snap["last_synced_cursor"] == "c2"
        assert snap["total_synced"] == 200
        started_at = snap["started_at"]

        summary = await full_sync.run()
        assert summary.status == SyncStatus.COMPLETED.value
        # Strictly the next page, nothing refetched
        assert [c[1] for c in gateway.calls] == [None, "c1", "c2"]
        snap = await progress.snapshot()
        assert snap["total_synced"] == 240
        assert snap["started_at"] == started_at

    async def test_low_budget_pauses_then_resumes(self, full_sync, progress, budget, gateway, clock):
        await budget.track_call(cost=950)
        summary = await full_sync.run()

        assert summary.status == SyncStatus.PAUSED.value
        assert summary.skipped_reason == "capacity"
        assert gateway.calls == []
        assert (await progress.snapshot())["status"] == "paused"

        clock.advance(hours=1)
        summary = await full_sync.run()
        assert summary.status == SyncStatus.COMPLETED.value

    async def test_available_calls_respect_reserve(self, full_sync, budget, gateway):
        # 105 remaining, 100 reserved: 5 is below the minimum batch
        await budget.track_call(cost=895)
        summary = await full_sync.run()
        assert summary.status == SyncStatus.PAUSED.value
        assert gateway.calls == []

    async def test_page_error_keeps_last_good_cursor(self, full_sync, progress, gateway, monkeypatch):
        monkeypatch.setattr(settings, "full_sync_max_calls_per_run", 1)
        monkeypatch.setattr(settings, "full_sync_min_calls", 1)
        await full_sync.run()

        gateway.errors["list_transactions"] = RemoteApiError("Up Bank API error: HTTP 502: Bad Gateway", 502)
        summary = await full_sync.run()
        assert summary.status == SyncStatus.ERROR.value
        snap = await progress.snapshot()
        assert snap["status"] == "error"
        assert "502" in snap["error"]
        assert snap["last_synced_cursor"] == "c1"

        del gateway.errors["list_transactions"]
        summary = await full_sync.run()
        assert summary.status == SyncStatus.RUNNING.value
        assert gateway.calls[-1][1] == "c1"
        assert (await progress.snapshot())["error"] is None

    async def test_auth_failure_sets_error(self, full_sync, progress, gateway):
        gateway.errors["list_transactions"] = AuthFailure("Authentication failed: invalid or expired Up Bank token", 401)
        summary = await full_sync.run()
        assert summary.status == SyncStatus.ERROR.value
        assert "Authentication failed" in (await progress.snapshot())["error"]

    async def test_no_token_leaves_status_alone(self, session_factory, budget, store, progress, gateway, clock):
        sync = FullSync(budget, TokenProvider(session_factory), store, progress,
                        gateway_factory=lambda token: gateway, clock=clock)
        summary = await sync.run()
        assert summary.skipped_reason == "no_token"
        assert summary.status == SyncStatus.IDLE.value
        assert gateway.calls == []

    async def test_repeated_passes_do_not_duplicate(self, full_sync, progress, session_factory):
        await full_sync.run()
        summary = await full_sync.run()

        assert summary.status == SyncStatus.COMPLETED.value
        assert await _cached_count(session_factory) == 240
        assert (await progress.snapshot())["total_synced"] == 240

    async def test_since_horizon_is_passed_to_every_page(self, full_sync, gateway, clock):
        result = await full_sync.trigger("3-months")
        await full_sync.run()
        assert {c[2] for c in gateway.calls} == {result.since}
        assert result.since == datetime(2025, 12, 10, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestTrigger:
    async def test_trigger_resets_progress(self, full_sync, progress, clock):
        await full_sync.run()
        clock.advance(hours=2)

        result = await full_sync.trigger("all-time")
        assert result.accepted is True
        assert result.since is None

        snap = await progress.snapshot()
        assert snap["status"] == "running"
        assert snap["total_synced"] == 0
        assert snap["current_batch"] == 0
        assert snap["last_synced_cursor"] is None
        assert snap["started_at"] == clock.now().isoformat()
        assert snap["completed_at"] is None

    async def test_running_sync_is_not_restarted(self, full_sync, progress, monkeypatch):
        monkeypatch.setattr(settings, "full_sync_max_calls_per_run", 1)
        monkeypatch.setattr(settings, "full_sync_min_calls", 1)
        await full_sync.run()

        result = await full_sync.trigger("1-year")
        assert result.accepted is False
        assert result.reason == "already_running"
        assert (await progress.snapshot())["last_synced_cursor"] == "c1"

    async def test_stale_run_is_reset(self, full_sync, progress, clock):
        await progress.load_or_create()
        await progress.update(status=SyncStatus.RUNNING.value, started_at=clock.now(), total_synced=0)

        clock.advance(minutes=5)
        assert (await full_sync.trigger("all-time")).accepted is False

        clock.advance(minutes=6)
        assert full_sync.is_stale(await progress.load_or_create()) is True
        result = await full_sync.trigger("all-time")
        assert result.accepted is True
        assert (await progress.snapshot())["status"] == "running"

    async def test_stale_reset_records_reason(self, full_sync, progress, clock, monkeypatch):
        await progress.load_or_create()
        await progress.update(status=SyncStatus.RUNNING.value, started_at=clock.now() - timedelta(minutes=30))
        seen = []
        original = progress.update

        async def spy(**fields):
            seen.append(fields)
            await original(**fields)

        monkeypatch.setattr(progress, "update", spy)
        await full_sync.trigger("all-time")
        assert seen[0] == {"status": "idle", "error": STALE_RESET_MESSAGE}

    async def test_unknown_range(self, full_sync):
        with pytest.raises(ValueError):
            await full_sync.trigger("forever")


class TestTimeRange:
    def test_three_months_clamps_day(self):
        now = datetime(2026, 5, 31, 8, 0, tzinfo=timezone.utc)
        assert time_range_to_since("3-months", now) == datetime(2026, 2, 28, 8, 0, tzinfo=timezone.utc)

    def test_three_months_crosses_year(self):
        now = datetime(2026, 1, 15, tzinfo=timezone.utc)
        assert time_range_to_since("3-months", now) == datetime(2025, 10, 15, tzinfo=timezone.utc)

    def test_one_year_from_leap_day(self):
        now = datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert time_range_to_since("1-year", now) == datetime(2023, 2, 28, tzinfo=timezone.utc)

    def test_all_time(self):
        assert time_range_to_since("all-time", datetime(2026, 1, 1, tzinfo=timezone.utc)) is None

    def test_invalid(self):
        with pytest.raises(ValueError):
            time_range_to_since("2-weeks", datetime(2026, 1, 1, tzinfo=timezone.utc))
