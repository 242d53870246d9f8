"""
Orphan detection and cleanup: app-managed events that no record references.
"""

import asyncio
from typing import Any

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.models import CalendarApiError
from hebbirthday_sync.models import OrphanCleanupResult
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.status import tenant_transition
from hebbirthday_sync.sync.utils import is_not_found_error
from hebbirthday_sync.sync.utils import with_retry


def referenced_event_ids(state_db: StateDatabase, tenant_id: str) -> set[str]:
    """Every event id held in any of the tenant's event maps."""
    referenced: set[str] = set()
    for record in state_db.get_birthdays(tenant_id):
        referenced.update(record.google_calendar_events_map.values())
    return referenced


async def find_orphans(
    logger,
    client: GoogleCalendarClient,
    state_db: StateDatabase,
    binding: TenantCalendarBinding,
    tenant_id: str,
) -> list[dict[str, Any]]:
    """Managed events in the bound calendar that no record references."""
    managed = await client.list_managed_events(binding.calendar_id, tenant_id)
    referenced = referenced_event_ids(state_db, tenant_id)
    orphans = [event for event in managed if event.get("id") and event["id"] not in referenced]
    logger.info(
        f"Found {len(managed)} managed event(s) in '{binding.calendar_name}', "
        f"{len(orphans)} orphaned"
    )
    return orphans


async def cleanup_orphans(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    client: GoogleCalendarClient,
    state_db: StateDatabase,
    binding: TenantCalendarBinding,
    tenant_id: str,
) -> OrphanCleanupResult:
    """
    Delete every orphaned event, one at a time with a short pause between calls.

    The scan is repeated here rather than trusting an earlier preview, so events
    adopted by a record in the meantime are never deleted.
    """
    orphans = await find_orphans(logger, client, state_db, binding, tenant_id)

    if config.dry_run:
        logger.info(f"[DRY RUN] Would delete {len(orphans)} orphaned event(s)")
        for event in orphans:
            logger.debug(f"[DRY RUN] Would delete: {event['id']} {event.get('summary', '')}")
        return OrphanCleanupResult(
            deleted_count=len(orphans), failed_count=0, calendar_name=binding.calendar_name
        )

    status = tenant_transition(binding.sync_status, TenantSyncStatus.IN_PROGRESS)
    state_db.set_sync_status(binding.user_id, status)
    state_db.commit()

    deleted = failed = 0
    try:
        for event in orphans:
            event_id = event["id"]
            try:
                await with_retry(lambda: client.delete_event(binding.calendar_id, event_id))
                deleted += 1
                logger.debug(f"Deleted orphan {event_id}")
            except CalendarApiError as e:
                if is_not_found_error(e):
                    deleted += 1
                else:
                    failed += 1
                    logger.warning(f"Failed to delete orphan {event_id}: {e}")
            if config.delete_pause > 0:
                await asyncio.sleep(config.delete_pause)
    finally:
        state_db.set_sync_status(binding.user_id, tenant_transition(status, TenantSyncStatus.IDLE))
        state_db.commit()

    stats.deleted += deleted
    stats.errors += failed
    logger.info(f"Orphan cleanup: deleted {deleted}, failed {failed}")
    return OrphanCleanupResult(
        deleted_count=deleted, failed_count=failed, calendar_name=binding.calendar_name
    )
