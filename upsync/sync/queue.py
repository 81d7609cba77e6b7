"""
Outbound queue: pushes local category/tag edits to Up Bank.

A category item costs two calls (fetch for the conflict check, then the write).
A tag item can cost three, since removals and additions are separate writes.
An item whose remote value moved after it was queued is parked as a
conflict and never retried automatically.
"""

from dataclasses import asdict, dataclass
from datetime import timedelta

from sqlalchemy import and_, func, or_, select, update

from upsync.budget.tracker import BudgetTracker
from upsync.config import settings
from upsync.core.clock import Clock, system_clock
from upsync.models import QueueField, QueueItem, QueueStatus, RecordSyncStatus
from upsync.observability.logger import get_logger
from upsync.remote.errors import AuthFailure, ConflictDetected
from upsync.remote.gateway import UpBankGateway
from upsync.remote.models import RemoteTransaction
from upsync.security.tokens import TokenProvider
from upsync.sync.store import TransactionStore, split_tags

log = get_logger("sync.queue")

CATEGORY_CALL_COST = 2  # get_transaction + PATCH
TAGS_CALL_COST = 3  # get_transaction + DELETE + POST
UNCATEGORIZED = "uncategorized"

_OPEN_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value, QueueStatus.FAILED.value)


@dataclass
class QueueRunSummary:
    processed: int = 0
    conflicts: int = 0
    failed: int = 0
    deferred: int = 0
    skipped_reason: str | None = None
    usage: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def call_cost(item: QueueItem) -> int:
    return TAGS_CALL_COST if item.field == QueueField.TAGS.value else CATEGORY_CALL_COST


def category_target(value: str | None) -> str | None:
    """Category id to send; empty and 'uncategorized' clear it."""
    return value if value and value != UNCATEGORIZED else None


def detect_conflict(item: QueueItem, remote: RemoteTransaction) -> ConflictDetected | None:
    """Conflict iff the remote value is not one we account for and changed after queueing.

    Accounted for: the old value, the new value (an earlier attempt already
    landed), and for tags any state between the two that a partly applied
    push leaves behind.
    """
    if item.field == QueueField.TAGS.value:
        remote_value = remote.tags_value
        remote_tags = set(remote.tags)
        old, new = set(split_tags(item.old_value)), set(split_tags(item.new_value))
        if old & new <= remote_tags <= old | new:
            return None
    else:
        remote_value = remote.category
        if (remote_value or None) in (category_target(item.old_value), category_target(item.new_value)):
            return None

    modified_at = remote.modified_at
    # Unknown modification time: the differing value alone decides
    if modified_at is None or modified_at > item.created_at:
        return ConflictDetected(item.field, remote_value, item.old_value, item.new_value)
    return None


class OutboundQueueProcessor:
    def __init__(
        self,
        session_factory,
        budget: BudgetTracker,
        token_provider: TokenProvider,
        store: TransactionStore,
        gateway_factory=None,
        clock: Clock = None,
    ):
        self.session_factory = session_factory
        self.budget = budget
        self.token_provider = token_provider
        self.store = store
        self.gateway_factory = gateway_factory or (lambda token: UpBankGateway(token, clock=self.clock))
        self.clock = clock or system_clock

    # ── Enqueue / selection ─────────────────────────────────────────────

    async def enqueue(self, remote_id: str, field: QueueField | str, old_value: str | None,
                      new_value: str | None, transaction_id: int = None) -> QueueItem:
        field = QueueField(field)
        now = self.clock.now()
        item = QueueItem(
            transaction_id=transaction_id,
            remote_id=remote_id,
            field=field.value,
            old_value=old_value,
            new_value=new_value,
            status=QueueStatus.PENDING.value,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(item)
            await session.commit()
        log.info("queue_item_enqueued", item_id=item.id, remote_id=remote_id, field=field.value)
        return item

    async def select_due(self, limit: int) -> list[QueueItem]:
        """Pending items, plus failed items whose retry time has passed. Oldest first."""
        now = self.clock.now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueItem)
                .where(or_(
                    QueueItem.status == QueueStatus.PENDING.value,
                    and_(
                        QueueItem.status == QueueStatus.FAILED.value,
                        QueueItem.scheduled_for <= now,
                    ),
                ))
                .order_by(QueueItem.created_at, QueueItem.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def recover_stuck(self) -> int:
        """Return items left in processing by a crashed run to pending."""
        cutoff = self.clock.now() - timedelta(minutes=settings.queue_stuck_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                update(QueueItem)
                .where(QueueItem.status == QueueStatus.PROCESSING.value, QueueItem.updated_at < cutoff)
                .values(status=QueueStatus.PENDING.value, updated_at=self.clock.now())
            )
            await session.commit()
        if result.rowcount:
            log.warning("queue_items_recovered", count=result.rowcount)
        return result.rowcount

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(self) -> QueueRunSummary:
        summary = QueueRunSummary()
        log.info("queue_run_started")

        if not await self.budget.check_capacity(settings.queue_min_capacity):
            log.info("queue_run_deferred", reason="capacity")
            summary.skipped_reason = "capacity"
            return await self._finish(summary)

        token = await self.token_provider.get_decrypted_token()
        if not token:
            log.error("queue_no_token")
            summary.skipped_reason = "no_token"
            return await self._finish(summary)

        await self.recover_stuck()
        items = await self.select_due(settings.queue_batch_size)
        if not items:
            log.info("queue_empty")
            summary.skipped_reason = "empty"
            return await self._finish(summary)

        log.info("queue_items_found", count=len(items))
        async with self.gateway_factory(token) as gateway:
            for index, item in enumerate(items):
                if not await self.budget.can_make_call(call_cost(item)):
                    summary.deferred = len(items) - index
                    log.info("queue_budget_exhausted", deferred=summary.deferred)
                    break
                try:
                    outcome = await self._process_item(gateway, item)
                except AuthFailure as e:
                    await self._update_item(item.id, status=QueueStatus.PENDING.value)
                    summary.deferred = len(items) - index
                    summary.skipped_reason = "auth_failure"
                    log.error("queue_auth_failure", item_id=item.id, status_code=e.status_code, error=str(e))
                    break

                if outcome == QueueStatus.COMPLETED:
                    summary.processed += 1
                elif outcome == QueueStatus.CONFLICT:
                    summary.conflicts += 1
                else:
                    summary.failed += 1

        return await self._finish(summary)

    async def _finish(self, summary: QueueRunSummary) -> QueueRunSummary:
        summary.usage = (await self.budget.usage_stats()).model_dump(mode="json")
        log.info(
            "queue_run_complete",
            processed=summary.processed,
            conflicts=summary.conflicts,
            failed=summary.failed,
            deferred=summary.deferred,
            skipped=summary.skipped_reason,
            calls_used=summary.usage["calls_used"],
            calls_limit=summary.usage["calls_limit"],
        )
        return summary

    async def _process_item(self, gateway, item: QueueItem) -> QueueStatus:
        await self._update_item(item.id, status=QueueStatus.PROCESSING.value)
        try:
            try:
                remote = await gateway.get_transaction(item.remote_id)
            finally:
                await self.budget.track_call()

            conflict = detect_conflict(item, remote)
            if conflict:
                raise conflict

            await self._push(gateway, item, remote)
        except ConflictDetected as e:
            await self._update_item(item.id, status=QueueStatus.CONFLICT.value, error=str(e))
            await self.store.set_sync_status(item.transaction_id, RecordSyncStatus.CONFLICT)
            log.warning("queue_item_conflict", item_id=item.id, remote_id=item.remote_id,
                        field=item.field, remote_value=e.remote_value, old_value=item.old_value)
            return QueueStatus.CONFLICT
        except AuthFailure:
            raise
        except Exception as e:
            await self._mark_failed(item, e)
            return QueueStatus.FAILED

        now = self.clock.now()
        await self._update_item(item.id, status=QueueStatus.COMPLETED.value, last_attempt=now, error=None)
        await self._settle_record(item)
        log.info("queue_item_completed", item_id=item.id, remote_id=item.remote_id,
                 field=item.field, new_value=item.new_value)
        return QueueStatus.COMPLETED

    async def _push(self, gateway, item: QueueItem, remote: RemoteTransaction):
        if item.field == QueueField.CATEGORY.value:
            target = category_target(item.new_value)
            if (remote.category or None) == target:
                return
            try:
                await gateway.update_category(item.remote_id, target)
            finally:
                await self.budget.track_call()
        elif item.field == QueueField.TAGS.value:
            wanted = split_tags(item.new_value)
            to_remove = [t for t in remote.tags if t not in wanted]
            to_add = [t for t in wanted if t not in remote.tags]
            if to_remove:
                try:
                    await gateway.remove_tags(item.remote_id, to_remove)
                finally:
                    await self.budget.track_call()
            if to_add:
                try:
                    await gateway.add_tags(item.remote_id, to_add)
                finally:
                    await self.budget.track_call()
        else:
            raise ValueError(f"Unsupported queue field: {item.field}")

    async def _mark_failed(self, item: QueueItem, error: Exception):
        now = self.clock.now()
        message = str(error) or type(error).__name__
        await self._update_item(
            item.id,
            status=QueueStatus.FAILED.value,
            attempts=item.attempts + 1,
            last_attempt=now,
            scheduled_for=now + timedelta(minutes=settings.queue_retry_delay_minutes),
            error=message,
        )
        log.error("queue_item_failed", item_id=item.id, remote_id=item.remote_id,
                  attempts=item.attempts + 1, error=message)

    async def _update_item(self, item_id: int, **fields):
        fields.setdefault("updated_at", self.clock.now())
        async with self.session_factory() as session:
            await session.execute(update(QueueItem).where(QueueItem.id == item_id).values(**fields))
            await session.commit()

    async def _settle_record(self, item: QueueItem):
        """Mark the cached record synced once none of its edits are still open."""
        if item.transaction_id is None:
            return
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(QueueItem).where(
                    QueueItem.transaction_id == item.transaction_id,
                    QueueItem.status.in_(_OPEN_STATUSES + (QueueStatus.CONFLICT.value,)),
                )
            )
            open_items = result.scalar()
        if open_items == 0:
            await self.store.set_sync_status(item.transaction_id, RecordSyncStatus.SYNCED)

    # ── Manual resolution ────────────────────────────────────────────────

    async def get_item(self, item_id: int) -> QueueItem | None:
        async with self.session_factory() as session:
            return await session.get(QueueItem, item_id)

    async def requeue(self, item_id: int) -> QueueItem | None:
        """Push a conflicted or failed item again.

        created_at moves to now, so only remote changes made after the requeue
        count as a conflict on the next attempt.
        """
        async with self.session_factory() as session:
            item = await session.get(QueueItem, item_id)
            if item is None:
                return None
            if item.status not in (QueueStatus.CONFLICT.value, QueueStatus.FAILED.value):
                raise ValueError(f"Queue item {item_id} is {item.status}, only conflict or failed items can be requeued")
            now = self.clock.now()
            item.status = QueueStatus.PENDING.value
            item.created_at = now
            item.scheduled_for = None
            item.error = None
            item.updated_at = now
            await session.commit()
        await self.store.set_sync_status(item.transaction_id, RecordSyncStatus.PENDING)
        log.info("queue_item_requeued", item_id=item_id)
        return item

    async def discard(self, item_id: int) -> QueueItem | None:
        """Drop a conflicted or failed item and let the remote value stand.

        The cached record goes back to the value it had before the edit; the
        next full sync pass brings it level with the remote.
        """
        async with self.session_factory() as session:
            item = await session.get(QueueItem, item_id)
            if item is None:
                return None
            if item.status not in (QueueStatus.CONFLICT.value, QueueStatus.FAILED.value):
                raise ValueError(f"Queue item {item_id} is {item.status}, only conflict or failed items can be discarded")
            item.status = QueueStatus.COMPLETED.value
            item.error = "discarded"
            item.updated_at = self.clock.now()
            await session.commit()
        await self.store.restore_field(item.transaction_id, item.field, item.old_value, item.new_value)
        await self._settle_record(item)
        log.info("queue_item_discarded", item_id=item_id)
        return item

    async def counts(self) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueItem.status, func.count()).group_by(QueueItem.status)
            )
            found = dict(result.all())
        return {status.value: found.get(status.value, 0) for status in QueueStatus}

    async def list_items(self, status: str = None, limit: int = 50) -> list[QueueItem]:
        async with self.session_factory() as session:
            query = select(QueueItem).order_by(QueueItem.created_at.desc(), QueueItem.id.desc()).limit(limit)
            if status:
                query = query.where(QueueItem.status == status)
            result = await session.execute(query)
            return list(result.scalars().all())
