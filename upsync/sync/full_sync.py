"""
Resumable full-history sync.

Walks the Up Bank transaction list page by page, persisting the cursor after
every page so that a run cut short by the call budget (or a restart) picks up
exactly where it stopped on the next tick.
"""

import asyncio
import calendar
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Literal

from upsync.budget.tracker import BudgetTracker
from upsync.config import settings
from upsync.core.clock import Clock, system_clock
from upsync.models import SyncProgress, SyncStatus
from upsync.observability.logger import get_logger
from upsync.remote.errors import AuthFailure
from upsync.remote.gateway import UpBankGateway
from upsync.security.tokens import TokenProvider
from upsync.sync.state import SyncProgressStore
from upsync.sync.store import TransactionStore

log = get_logger("sync.full")

TimeRange = Literal["3-months", "1-year", "all-time"]
TIME_RANGES = ("3-months", "1-year", "all-time")

STALE_RESET_MESSAGE = "Auto-reset: stale sync detected"


@dataclass
class FullSyncSummary:
    status: str = SyncStatus.IDLE.value
    pages: int = 0
    records: int = 0
    cursor: str | None = None
    skipped_reason: str | None = None
    usage: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TriggerResult:
    accepted: bool
    time_range: str
    since: datetime | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["since"] = self.since.isoformat() if self.since else None
        return data


def _months_back(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def time_range_to_since(time_range: str, now: datetime) -> datetime | None:
    """Oldest point of history a manually triggered run should cover."""
    if time_range == "3-months":
        return _months_back(now, 3)
    if time_range == "1-year":
        return _months_back(now, 12)
    if time_range == "all-time":
        return None
    raise ValueError(f"Unknown time range: {time_range!r} (expected one of {', '.join(TIME_RANGES)})")


class FullSync:
    def __init__(
        self,
        budget: BudgetTracker,
        token_provider: TokenProvider,
        store: TransactionStore,
        progress: SyncProgressStore,
        gateway_factory=None,
        clock: Clock = None,
    ):
        self.budget = budget
        self.token_provider = token_provider
        self.store = store
        self.progress = progress
        self.gateway_factory = gateway_factory or (lambda token: UpBankGateway(token, clock=self.clock))
        self.clock = clock or system_clock
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def is_stale(self, progress: SyncProgress, now: datetime = None) -> bool:
        """Running with nothing synced for longer than the stale threshold."""
        now = now or self.clock.now()
        if progress.status != SyncStatus.RUNNING.value or progress.total_synced != 0:
            return False
        if progress.started_at is None:
            return True
        return progress.started_at < now - timedelta(minutes=settings.full_sync_stale_minutes)

    # ── Manual trigger ───────────────────────────────────────────────────

    async def trigger(self, time_range: TimeRange) -> TriggerResult:
        """Reset progress for a fresh run covering `time_range`.

        Refused while another run is in flight, unless that run is stale.
        """
        now = self.clock.now()
        since = time_range_to_since(time_range, now)
        progress = await self.progress.load_or_create()

        if progress.status == SyncStatus.RUNNING.value or self.is_running:
            if not self.is_running and self.is_stale(progress, now):
                log.warning("full_sync_stale_reset", started_at=progress.started_at.isoformat()
                            if progress.started_at else None)
                await self.progress.update(status=SyncStatus.IDLE.value, error=STALE_RESET_MESSAGE)
            else:
                log.info("full_sync_trigger_ignored", reason="already_running", time_range=time_range)
                return TriggerResult(accepted=False, time_range=time_range, since=since, reason="already_running")

        await self.progress.update(
            status=SyncStatus.RUNNING.value,
            last_synced_cursor=None,
            last_synced_date=None,
            total_synced=0,
            current_batch=0,
            since=since,
            started_at=now,
            completed_at=None,
            error=None,
        )
        log.info("full_sync_triggered", time_range=time_range, since=since.isoformat() if since else None)
        return TriggerResult(accepted=True, time_range=time_range, since=since)

    # ── Scheduled run ────────────────────────────────────────────────────

    async def run(self) -> FullSyncSummary:
        if self._lock.locked():
            log.info("full_sync_skipped", reason="already_running")
            return FullSyncSummary(status=SyncStatus.RUNNING.value, skipped_reason="already_running")
        async with self._lock:
            summary = await self._run()
        summary.usage = (await self.budget.usage_stats()).model_dump(mode="json")
        log.info("full_sync_complete", status=summary.status, pages=summary.pages,
                 records=summary.records, skipped=summary.skipped_reason,
                 calls_used=summary.usage["calls_used"], calls_limit=summary.usage["calls_limit"])
        return summary

    async def _run(self) -> FullSyncSummary:
        progress = await self.progress.load_or_create()
        summary = FullSyncSummary(status=progress.status, cursor=progress.last_synced_cursor)

        stats = await self.budget.usage_stats()
        available = min(settings.full_sync_max_calls_per_run, stats.remaining - settings.full_sync_reserve_calls)
        if available < settings.full_sync_min_calls:
            log.info("full_sync_paused", remaining=stats.remaining, available=available)
            await self.progress.update(status=SyncStatus.PAUSED.value)
            summary.status = SyncStatus.PAUSED.value
            summary.skipped_reason = "capacity"
            return summary

        token = await self.token_provider.get_decrypted_token()
        if not token:
            log.error("full_sync_no_token")
            summary.skipped_reason = "no_token"
            return summary

        now = self.clock.now()
        fields = {"status": SyncStatus.RUNNING.value, "error": None}
        if progress.status in (SyncStatus.IDLE.value, SyncStatus.COMPLETED.value):
            # Previous pass finished (or never started): begin a new pass from the newest page
            fields.update(last_synced_cursor=None, total_synced=0, current_batch=0,
                          started_at=now, completed_at=None)
            cursor, total, batch = None, 0, 0
        else:
            fields["started_at"] = progress.started_at or now
            cursor, total, batch = progress.last_synced_cursor, progress.total_synced, progress.current_batch
        await self.progress.update(**fields)
        summary.status = SyncStatus.RUNNING.value
        log.info("full_sync_started", budget=available, cursor=cursor or "initial", resumed_total=total)

        page_size = settings.full_sync_page_size
        async with self.gateway_factory(token) as gateway:
            while summary.pages < available and await self.budget.can_make_call():
                try:
                    try:
                        page = await gateway.list_transactions(
                            page_size=page_size, page_after=cursor, since=progress.since,
                        )
                    finally:
                        await self.budget.track_call()
                    observed = await self.store.upsert_remote(page.records)
                except AuthFailure as e:
                    log.error("full_sync_auth_failure", status_code=e.status_code, error=str(e))
                    await self.progress.update(status=SyncStatus.ERROR.value, error=str(e))
                    summary.status = SyncStatus.ERROR.value
                    break
                except Exception as e:
                    log.error("full_sync_page_failed", cursor=cursor, error=str(e) or type(e).__name__)
                    await self.progress.update(status=SyncStatus.ERROR.value, error=str(e) or type(e).__name__)
                    summary.status = SyncStatus.ERROR.value
                    break

                summary.pages += 1
                summary.records += observed
                total += observed
                batch += 1
                cursor = page.next_cursor
                update = {"current_batch": batch, "total_synced": total, "last_synced_cursor": cursor}
                if page.oldest_created_at:
                    update["last_synced_date"] = page.oldest_created_at
                log.info("full_sync_page", batch=batch, records=observed, total=total, cursor=cursor)

                if cursor is None or len(page.records) < page_size:
                    update.update(status=SyncStatus.COMPLETED.value, completed_at=self.clock.now(),
                                  last_synced_cursor=None)
                    await self.progress.update(**update)
                    summary.status = SyncStatus.COMPLETED.value
                    cursor = None
                    log.info("full_sync_reached_end", total=total)
                    break
                await self.progress.update(**update)

        summary.cursor = cursor
        return summary
