import asyncio
from datetime import datetime, timezone


class Clock:
    """Time source for jobs that compare timestamps or wait between attempts."""

    def now(self) -> datetime:
        raise NotImplementedError

    async def sleep(self, seconds: float):
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)


def hour_window(moment: datetime) -> datetime:
    """Truncate to the start of the hour: 03:45:12 -> 03:00:00."""
    return moment.replace(minute=0, second=0, microsecond=0)


system_clock = SystemClock()
