from sqlalchemy import select, update

from upsync.core.clock import Clock, system_clock
from upsync.models import CachedTransaction, QueueField, QueueItem, QueueStatus, RecordSyncStatus
from upsync.observability.logger import get_logger
from upsync.remote.models import RemoteTransaction

log = get_logger("store")

_UNSET = object()

# Records with an unpushed or disputed local edit keep their local category/tags
_LOCAL_EDIT_STATUSES = (RecordSyncStatus.PENDING.value, RecordSyncStatus.CONFLICT.value)

# Queue items a newer edit of the same field replaces
_SUPERSEDABLE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.FAILED.value, QueueStatus.CONFLICT.value)


def split_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def join_tags(tags: list[str]) -> str:
    return ",".join(tags)


class TransactionStore:
    """Local mirror of Up Bank transactions."""

    def __init__(self, session_factory, clock: Clock = None):
        self.session_factory = session_factory
        self.clock = clock or system_clock

    async def get(self, transaction_id: int) -> CachedTransaction | None:
        async with self.session_factory() as session:
            return await session.get(CachedTransaction, transaction_id)

    async def get_by_remote_id(self, remote_id: str) -> CachedTransaction | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CachedTransaction).where(CachedTransaction.remote_id == remote_id)
            )
            return result.scalar_one_or_none()

    async def upsert_remote(self, records: list[RemoteTransaction]) -> int:
        """Insert or update each record by remote id. Returns how many were observed."""
        inserted = 0
        async with self.session_factory() as session:
            for record in records:
                result = await session.execute(
                    select(CachedTransaction).where(CachedTransaction.remote_id == record.id)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = CachedTransaction(remote_id=record.id, created_at=self.clock.now())
                    session.add(row)
                    inserted += 1
                self._apply_remote(row, record)
            await session.commit()
        log.info("transactions_upserted", observed=len(records), inserted=inserted)
        return len(records)

    def _apply_remote(self, row: CachedTransaction, record: RemoteTransaction):
        row.account_id = record.account_id
        row.amount = record.amount
        row.currency = record.currency
        row.description = record.description
        row.status = record.status
        row.occurred_at = record.created_at
        row.remote_updated_at = record.modified_at
        row.raw_data = record.raw
        row.updated_at = self.clock.now()
        if row.sync_status not in _LOCAL_EDIT_STATUSES:
            row.category = record.category
            row.tags = record.tags_value
            row.sync_status = RecordSyncStatus.SYNCED.value

    async def apply_local_edit(self, transaction_id: int, category=_UNSET, tags=_UNSET) -> list[QueueItem] | None:
        """Record a user edit and queue it for Up Bank.

        Returns the queued items, or None when the transaction does not exist.
        Records without a remote id are edited locally only.
        """
        now = self.clock.now()
        queued = []
        async with self.session_factory() as session:
            row = await session.get(CachedTransaction, transaction_id)
            if row is None:
                return None

            changes = []
            if category is not _UNSET and (category or None) != (row.category or None):
                changes.append((QueueField.CATEGORY, row.category, category or None))
                row.category = category or None
            if tags is not _UNSET:
                new_tags = join_tags(tags) if isinstance(tags, list) else join_tags(split_tags(tags))
                if sorted(split_tags(new_tags)) != sorted(split_tags(row.tags)):
                    changes.append((QueueField.TAGS, row.tags or "", new_tags))
                    row.tags = new_tags

            superseded = 0
            if changes and row.remote_id:
                for field, old_value, new_value in changes:
                    result = await session.execute(
                        update(QueueItem)
                        .where(
                            QueueItem.transaction_id == row.id,
                            QueueItem.field == field.value,
                            QueueItem.status.in_(_SUPERSEDABLE_STATUSES),
                        )
                        .values(status=QueueStatus.COMPLETED.value, error="superseded", updated_at=now)
                    )
                    superseded += result.rowcount
                    item = QueueItem(
                        transaction_id=row.id,
                        remote_id=row.remote_id,
                        field=field.value,
                        old_value=old_value,
                        new_value=new_value,
                        status=QueueStatus.PENDING.value,
                        attempts=0,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(item)
                    queued.append(item)
                row.sync_status = RecordSyncStatus.PENDING.value
            row.updated_at = now
            await session.commit()

        log.info("local_edit_applied", transaction_id=transaction_id,
                 fields=[c[0].value for c in changes], queued=len(queued), superseded=superseded)
        return queued

    async def restore_field(self, transaction_id: int | None, field: str, value: str | None, expected: str | None):
        """Put `value` back on a record whose `field` still holds `expected`.

        A record edited again since then keeps its newer value.
        """
        if transaction_id is None:
            return False
        async with self.session_factory() as session:
            row = await session.get(CachedTransaction, transaction_id)
            if row is None:
                return False
            if field == QueueField.TAGS.value:
                if sorted(split_tags(row.tags)) != sorted(split_tags(expected)):
                    return False
                row.tags = join_tags(split_tags(value))
            else:
                if (row.category or None) != (expected or None):
                    return False
                row.category = value or None
            row.updated_at = self.clock.now()
            await session.commit()
        log.info("local_edit_restored", transaction_id=transaction_id, field=field)
        return True

    async def set_sync_status(self, transaction_id: int | None, status: RecordSyncStatus, **fields):
        if transaction_id is None:
            return
        async with self.session_factory() as session:
            row = await session.get(CachedTransaction, transaction_id)
            if row is None:
                return
            row.sync_status = status.value
            for key, value in fields.items():
                setattr(row, key, value)
            await session.commit()
