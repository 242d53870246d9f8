"""
Batch sync: push many records in small chunks and record one BATCH history item.
"""

import asyncio
from datetime import date
from datetime import datetime

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.hebrew import HebrewCalendarOracle
from hebbirthday_sync.hebrew import refresh_hebrew_data
from hebbirthday_sync.models import MAX_SYNC_RETRIES
from hebbirthday_sync.models import CalendarSyncError
from hebbirthday_sync.models import FailedItem
from hebbirthday_sync.models import Group
from hebbirthday_sync.models import HistoryType
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncHistoryItem
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.models import Tenant
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.status import mark_pending
from hebbirthday_sync.status import tenant_transition
from hebbirthday_sync.sync.record import push_record
from hebbirthday_sync.sync.record import should_skip


def chunked(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), max(1, size))]


async def run_batch(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    client: GoogleCalendarClient,
    state_db: StateDatabase,
    binding: TenantCalendarBinding,
    record_ids: list[str],
    tenant: Tenant | None,
    groups: list[Group],
    today: date | None = None,
    oracle: HebrewCalendarOracle | None = None,
) -> SyncHistoryItem:
    """
    Sync ``record_ids`` chunk by chunk, then settle the tenant back to IDLE.

    Each record is marked as wanted in the calendar before it is pushed, so a
    crash mid-batch leaves the remaining records Pending rather than Idle. One
    record failing never stops the batch. The tenant status returns to IDLE
    and a BATCH history item is written even if the batch itself is cut short.
    """
    today = today or date.today()
    failed: list[FailedItem] = []
    chunks = chunked(record_ids, config.chunk_size)
    logger.info(f"Syncing {len(record_ids)} record(s) in {len(chunks)} chunk(s)")

    try:
        for index, chunk in enumerate(chunks):
            if index > 0 and config.chunk_delay > 0:
                await asyncio.sleep(config.chunk_delay)
            for record_id in chunk:
                record = state_db.get_birthday(record_id)
                if record is None:
                    logger.warning(f"Record {record_id} not found, skipping")
                    failed.append(FailedItem(name=record_id, reason="Record not found"))
                    continue
                name = record.display_name or record.id
                changed = refresh_hebrew_data(record, oracle, today)
                if not config.dry_run and not should_skip(record, tenant, groups, today):
                    mark_pending(record)
                    changed = True
                if changed and not config.dry_run:
                    state_db.save_birthday(record)
                    state_db.commit()
                try:
                    result = await push_record(
                        config, stats, logger, client, state_db, binding, record, tenant, groups,
                        today=today,
                    )
                except CalendarSyncError as e:
                    logger.error(f"Sync of {name} failed: {e}")
                    failed.append(FailedItem(name=name, reason=str(e)))
                    continue
                if not result.success:
                    failed.append(FailedItem(name=name, reason=result.error or "Sync failed"))
            logger.debug(f"Chunk {index + 1}/{len(chunks)} done")
    finally:
        item = SyncHistoryItem.from_results(
            HistoryType.BATCH, len(record_ids), failed, timestamp=datetime.now()
        )
        if not config.dry_run:
            state_db.set_sync_status(
                binding.user_id, tenant_transition(binding.sync_status, TenantSyncStatus.IDLE)
            )
            state_db.add_history(binding.user_id, item, config.history_limit)
            state_db.commit()

    logger.info(
        f"Batch finished: {item.success_count} succeeded, {item.failed_count} failed "
        f"({item.status.value})"
    )
    return item


def failed_record_ids(state_db: StateDatabase, tenant_id: str) -> list[str]:
    """Ids of failed records that still have retries left."""
    return [r.id for r in state_db.get_failed_birthdays(tenant_id, MAX_SYNC_RETRIES)]
