from datetime import datetime

from pydantic import BaseModel


class UsageStats(BaseModel):
    calls_used: int
    calls_limit: int
    remaining: int
    percent_used: int
    window_start: datetime | None = None
