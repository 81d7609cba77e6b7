from datetime import timedelta
from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from upsync.budget.models import UsageStats
from upsync.config import settings
from upsync.core.clock import Clock, hour_window, system_clock
from upsync.models import UsageWindow
from upsync.observability.logger import get_logger
from upsync.remote.errors import TrackingFailure

log = get_logger("budget")


class BudgetTracker:
    """Hourly call budget against the Up Bank API.

    One UsageWindow row per wall-clock hour. Every tracked call is persisted
    immediately, so a restart loses nothing.
    """

    def __init__(self, session_factory, limit: int = None, safety_margin: int = None, clock: Clock = None):
        self.session_factory = session_factory
        self.limit = limit if limit is not None else settings.api_hourly_limit
        self.safety_margin = safety_margin if safety_margin is not None else settings.api_safety_margin
        self.clock = clock or system_clock

    def _current_window(self):
        return hour_window(self.clock.now())

    async def track_call(self, cost: int = 1):
        """Add `cost` calls to the current hour. Never raises."""
        try:
            used = await self._increment(cost)
            log.info("api_call_tracked", cost=cost, used=used, limit=self.limit)
        except TrackingFailure as e:
            log.error("api_call_tracking_failed", cost=cost, error=str(e))

    async def _increment(self, cost: int) -> int:
        window = self._current_window()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(UsageWindow)
                    .where(UsageWindow.window_start == window)
                    .values(calls_used=UsageWindow.calls_used + cost, updated_at=self.clock.now())
                )
                if result.rowcount == 0:
                    session.add(UsageWindow(
                        window_start=window,
                        calls_used=cost,
                        calls_limit=self.limit,
                        created_at=self.clock.now(),
                        updated_at=self.clock.now(),
                    ))
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Another task created the window first
                        await session.rollback()
                        await session.execute(
                            update(UsageWindow)
                            .where(UsageWindow.window_start == window)
                            .values(calls_used=UsageWindow.calls_used + cost, updated_at=self.clock.now())
                        )
                        await session.commit()
                else:
                    await session.commit()
                return await self._used_in(session, window)
        except SQLAlchemyError as e:
            raise TrackingFailure(str(e)) from e

    @staticmethod
    async def _used_in(session, window) -> int:
        result = await session.execute(
            select(UsageWindow.calls_used).where(UsageWindow.window_start == window)
        )
        return result.scalar_one_or_none() or 0

    async def _calls_used(self) -> int:
        try:
            async with self.session_factory() as session:
                return await self._used_in(session, self._current_window())
        except SQLAlchemyError as e:
            raise TrackingFailure(str(e)) from e

    async def remaining_calls(self) -> int:
        try:
            used = await self._calls_used()
        except TrackingFailure as e:
            log.error("remaining_calls_failed", error=str(e))
            return 0  # Assume the limit is reached
        return max(0, self.limit - used)

    async def can_make_call(self, cost: int = 1) -> bool:
        return await self.remaining_calls() >= cost + self.safety_margin

    async def check_capacity(self, required: int) -> bool:
        """Like can_make_call, for callers that defer work instead of skipping it."""
        remaining = await self.remaining_calls()
        if remaining >= required + self.safety_margin:
            return True
        log.info("api_capacity_low", remaining=remaining, required=required,
                 safety_margin=self.safety_margin)
        return False

    async def usage_stats(self) -> UsageStats:
        window = self._current_window()
        try:
            used = await self._calls_used()
        except TrackingFailure as e:
            log.error("usage_stats_failed", error=str(e))
            used = self.limit
        return UsageStats(
            calls_used=used,
            calls_limit=self.limit,
            remaining=max(0, self.limit - used),
            percent_used=round(used / self.limit * 100) if self.limit > 0 else 100,
            window_start=window,
        )

    async def is_high_usage(self) -> bool:
        stats = await self.usage_stats()
        return stats.calls_used > settings.high_usage_threshold

    async def cleanup_old_windows(self) -> int:
        """Delete windows older than the retention period. Safe to repeat."""
        cutoff = self._current_window() - timedelta(hours=settings.usage_retention_hours)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(UsageWindow).where(UsageWindow.window_start < cutoff)
                )
                await session.commit()
        except SQLAlchemyError as e:
            log.error("usage_cleanup_failed", error=str(e))
            return 0
        log.info("usage_cleanup", removed=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount

    async def reset_usage(self):
        """Drop the current window. Development and testing only."""
        if settings.environment == "production":
            raise RuntimeError("Cannot reset usage in production")
        async with self.session_factory() as session:
            await session.execute(
                delete(UsageWindow).where(UsageWindow.window_start == self._current_window())
            )
            await session.commit()
        log.info("usage_reset")
