import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, Numeric, ForeignKey, UniqueConstraint, types,
)
from upsync.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(types.TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite drops tzinfo on the way in and returns naive values on the way out;
    normalising both directions keeps every comparison in aware UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class QueueField(str, enum.Enum):
    CATEGORY = "category"
    TAGS = "tags"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class RecordSyncStatus(str, enum.Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class UsageWindow(Base):
    __tablename__ = "api_usage_windows"

    window_start = Column(UTCDateTime, primary_key=True)  # Truncated to the hour
    calls_used = Column(Integer, nullable=False, default=0)
    calls_limit = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class CachedTransaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    remote_id = Column(String(100), unique=True, nullable=True)  # None for local-only records
    account_id = Column(String(100), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="AUD")
    description = Column(Text, nullable=False)
    status = Column(String(20), default="SETTLED")  # HELD or SETTLED
    category = Column(String(100), nullable=True)
    tags = Column(Text, default="")  # Comma-separated tag ids
    occurred_at = Column(UTCDateTime, nullable=False)
    remote_updated_at = Column(UTCDateTime, nullable=True)
    sync_status = Column(String(20), default=RecordSyncStatus.SYNCED.value)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class QueueItem(Base):
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    remote_id = Column(String(100), nullable=False)
    field = Column(String(20), nullable=False)  # category or tags
    old_value = Column(Text, nullable=True)  # Local value when the edit was queued
    new_value = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt = Column(UTCDateTime, nullable=True)
    scheduled_for = Column(UTCDateTime, nullable=True)  # Retry not before this time
    error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class SyncProgress(Base):
    __tablename__ = "sync_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(100), unique=True, nullable=False)
    status = Column(String(20), nullable=False, default=SyncStatus.IDLE.value)
    last_synced_cursor = Column(Text, nullable=True)
    last_synced_date = Column(UTCDateTime, nullable=True)  # Oldest record seen in the latest page
    total_synced = Column(Integer, nullable=False, default=0)
    current_batch = Column(Integer, nullable=False, default=0)
    since = Column(UTCDateTime, nullable=True)  # Horizon of the current run
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Setting(Base):
    __tablename__ = "settings"
    __table_args__ = (UniqueConstraint("owner_id", "key", name="uq_settings_owner_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(100), nullable=False)
    key = Column(String(100), nullable=False)
    value_encrypted = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
