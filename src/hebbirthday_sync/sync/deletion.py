"""
Deletion preview and delete-all: remove every synced event of a tenant.
"""

import asyncio

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.events import parse_event_key
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import CalendarApiError
from hebbirthday_sync.models import DeleteAllResult
from hebbirthday_sync.models import DeletionPreview
from hebbirthday_sync.models import DeletionSummaryItem
from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.status import has_events
from hebbirthday_sync.status import mark_failed
from hebbirthday_sync.status import mark_removed
from hebbirthday_sync.status import tenant_transition
from hebbirthday_sync.sync.utils import is_not_found_error
from hebbirthday_sync.sync.utils import with_retry


def summarize_deletion(records: list[BirthdayRecord], calendar_name: str) -> DeletionPreview:
    """
    Count what delete-all would remove, from local event maps only.

    Records without events are left out. Keys are split into Hebrew and
    Gregorian by their prefix; anything else counts as Gregorian.
    """
    summary = []
    for record in records:
        if not has_events(record):
            continue
        hebrew = sum(
            1 for key in record.google_calendar_events_map if parse_event_key(key)[0] == "hebrew"
        )
        gregorian = len(record.google_calendar_events_map) - hebrew
        summary.append(
            DeletionSummaryItem(
                name=record.display_name or record.id,
                hebrew_events=hebrew,
                gregorian_events=gregorian,
            )
        )
    return DeletionPreview(
        calendar_name=calendar_name,
        records_count=len(summary),
        total_count=sum(item.count for item in summary),
        summary=tuple(summary),
    )


async def delete_all(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    client: GoogleCalendarClient,
    state_db: StateDatabase,
    binding: TenantCalendarBinding,
    tenant_id: str,
) -> DeleteAllResult:
    """
    Delete every event in every event map of the tenant and clear sync fields.

    The tenant is DELETING for the duration and IDLE afterwards, whatever
    happens. Events that could not be deleted stay in their record's map and
    that record is marked ERROR.
    """
    records = state_db.get_synced_birthdays(tenant_id)
    preview = summarize_deletion(records, binding.calendar_name)
    logger.warning(
        f"Deleting {preview.total_count} event(s) of {preview.records_count} record(s) "
        f"from '{binding.calendar_name}'"
    )

    if config.dry_run:
        logger.info(f"[DRY RUN] Would delete {preview.total_count} event(s)")
        return DeleteAllResult(
            total_deleted=preview.total_count, failed_count=0, calendar_name=binding.calendar_name
        )

    status = tenant_transition(binding.sync_status, TenantSyncStatus.DELETING)
    state_db.set_sync_status(binding.user_id, status)
    state_db.commit()

    total_deleted = failed_count = 0
    try:
        for record in records:
            remaining = dict(record.google_calendar_events_map)
            failed_keys = []
            last_error = None
            for key, event_id in list(remaining.items()):
                try:
                    await with_retry(lambda: client.delete_event(binding.calendar_id, event_id))
                    total_deleted += 1
                except CalendarApiError as e:
                    if not is_not_found_error(e):
                        failed_count += 1
                        failed_keys.append(key)
                        last_error = str(e)
                        logger.warning(f"Failed to delete {key} of {record.display_name}: {e}")
                        continue
                    total_deleted += 1
                remaining.pop(key)
                if config.delete_pause > 0:
                    await asyncio.sleep(config.delete_pause)

            if failed_keys:
                mark_failed(record, RecordSyncStatus.ERROR, remaining, failed_keys, last_error)
            else:
                mark_removed(record)
            state_db.save_birthday(record)
            state_db.commit()

        for record in state_db.get_birthdays(tenant_id):
            if not has_events(record) and (record.is_synced or record.sync_metadata.status):
                mark_removed(record)
                state_db.save_birthday(record)
        state_db.commit()
    finally:
        state_db.set_sync_status(binding.user_id, tenant_transition(status, TenantSyncStatus.IDLE))
        state_db.commit()

    stats.deleted += total_deleted
    stats.errors += failed_count
    logger.info(f"Delete-all finished: {total_deleted} deleted, {failed_count} failed")
    return DeleteAllResult(
        total_deleted=total_deleted, failed_count=failed_count, calendar_name=binding.calendar_name
    )
