from sqlalchemy import select
from upsync.config import settings
from upsync.core.clock import Clock, system_clock
from upsync.models import SyncProgress, SyncStatus
from upsync.observability.logger import get_logger

log = get_logger("sync.state")


class SyncProgressStore:
    """Persisted progress of the full-history sync, one row per owner."""

    def __init__(self, session_factory, owner_id: str = None, clock: Clock = None):
        self.session_factory = session_factory
        self.owner_id = owner_id or settings.owner_id
        self.clock = clock or system_clock

    async def _get(self, session) -> SyncProgress | None:
        result = await session.execute(
            select(SyncProgress).where(SyncProgress.owner_id == self.owner_id)
        )
        return result.scalar_one_or_none()

    async def load_or_create(self) -> SyncProgress:
        async with self.session_factory() as session:
            progress = await self._get(session)
            if not progress:
                now = self.clock.now()
                progress = SyncProgress(
                    owner_id=self.owner_id,
                    status=SyncStatus.IDLE.value,
                    total_synced=0,
                    current_batch=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(progress)
                await session.commit()
                log.info("sync_progress_created", owner_id=self.owner_id)
            return progress

    async def update(self, **fields):
        async with self.session_factory() as session:
            progress = await self._get(session)
            if not progress:
                return
            for key, value in fields.items():
                if hasattr(progress, key):
                    setattr(progress, key, value)
            progress.updated_at = self.clock.now()
            await session.commit()

    async def snapshot(self) -> dict:
        progress = await self.load_or_create()
        return {
            "owner_id": progress.owner_id,
            "status": progress.status,
            "last_synced_cursor": progress.last_synced_cursor,
            "last_synced_date": _iso(progress.last_synced_date),
            "total_synced": progress.total_synced,
            "current_batch": progress.current_batch,
            "since": _iso(progress.since),
            "started_at": _iso(progress.started_at),
            "completed_at": _iso(progress.completed_at),
            "error": progress.error,
            "updated_at": _iso(progress.updated_at),
        }


def _iso(value):
    return value.isoformat() if value else None
