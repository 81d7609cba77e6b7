from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class FullSyncRequest(BaseModel):
    time_range: Literal["3-months", "1-year", "all-time"] = "all-time"


class TransactionEdit(BaseModel):
    category: str | None = None
    tags: list[str] | None = None


class TokenUpdate(BaseModel):
    token: str


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int | None
    remote_id: str
    field: str
    old_value: str | None
    new_value: str | None
    status: str
    attempts: int
    last_attempt: datetime | None = None
    scheduled_for: datetime | None = None
    error: str | None = None
    created_at: datetime
