"""
Single-record sync: diff a record's desired events against its event map and
push the difference to the bound calendar.
"""

from dataclasses import dataclass
from datetime import date
from datetime import datetime
from typing import Any

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.events import EventBuilder
from hebbirthday_sync.events import parse_event_key
from hebbirthday_sync.fingerprint import compute_fingerprint
from hebbirthday_sync.fingerprint import compute_schedule_hash
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import CalendarApiError
from hebbirthday_sync.models import Group
from hebbirthday_sync.models import PrimaryCalendarError
from hebbirthday_sync.models import RecordSyncResult
from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.models import Tenant
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.status import has_events
from hebbirthday_sync.status import mark_failed
from hebbirthday_sync.status import mark_removed
from hebbirthday_sync.status import mark_synced
from hebbirthday_sync.sync.utils import deterministic_event_id
from hebbirthday_sync.sync.utils import is_conflict_error
from hebbirthday_sync.sync.utils import is_not_found_error
from hebbirthday_sync.sync.utils import with_retry


@dataclass
class SyncPlan:
    creates: list[tuple[str, dict[str, Any]]]
    updates: list[tuple[str, str, dict[str, Any]]]
    deletes: list[tuple[str, str]]


def _hebrew_threshold(record: BirthdayRecord) -> int | None:
    """Hebrew year from which stale events count as current or future."""
    if record.next_upcoming_hebrew_year:
        return record.next_upcoming_hebrew_year
    years = [f.hebrew_year for f in record.future_hebrew_birthdays]
    return min(years) if years else None


def is_current_or_future(record: BirthdayRecord, key: str, today: date) -> bool:
    """
    Whether a stale event key may be deleted.

    Past events are left in the calendar as history. Keys whose year cannot be
    read, or Hebrew keys on a record with no known Hebrew year, count as
    current.
    """
    kind, year = parse_event_key(key)
    if year is None:
        return True
    if kind == "gregorian":
        return year >= today.year
    if kind == "hebrew":
        threshold = _hebrew_threshold(record)
        return threshold is None or year >= threshold
    return True


def plan_sync(
    record: BirthdayRecord,
    tenant: Tenant | None,
    groups: list[Group],
    today: date,
) -> SyncPlan:
    """Split desired events into creates and updates, and pick stale keys to delete."""
    desired = {event.key: event for event in EventBuilder.build(record, tenant, groups, today)}
    current = record.google_calendar_events_map

    creates = []
    updates = []
    for key, event in desired.items():
        if key in current:
            updates.append((key, current[key], event.body))
        else:
            creates.append((key, event.body))

    deletes = []
    for key, event_id in current.items():
        if key in desired:
            continue
        if record.archived or is_current_or_future(record, key, today):
            deletes.append((key, event_id))

    return SyncPlan(creates=creates, updates=updates, deletes=deletes)


def _is_settled(record: BirthdayRecord, plan: SyncPlan, force: bool) -> bool:
    """
    Nothing to do: events exist, content and schedule unchanged, status settled,
    and the plan neither creates nor deletes anything.

    The plan check catches a year rollover (a new Gregorian year enters the
    window) and archiving, neither of which touches either hash.
    """
    return (
        not force
        and not record.archived
        and has_events(record)
        and not plan.creates
        and not plan.deletes
        and record.synced_data_hash == compute_fingerprint(record)
        and record.synced_schedule_hash == compute_schedule_hash(record)
        and record.sync_metadata.status is None
    )


def should_skip(
    record: BirthdayRecord,
    tenant: Tenant | None,
    groups: list[Group],
    today: date,
    force: bool = False,
) -> bool:
    return _is_settled(record, plan_sync(record, tenant, groups, today), force)


async def _create(
    client: GoogleCalendarClient,
    calendar_id: str,
    record_id: str,
    key: str,
    body: dict[str, Any],
    logger,
) -> str:
    """Create with the deterministic id; a 409 means it already exists, so patch it."""
    event_id = deterministic_event_id(record_id, key)
    try:
        return await with_retry(lambda: client.create_event(calendar_id, body, event_id))
    except CalendarApiError as e:
        if not is_conflict_error(e):
            raise
        logger.info(f"Event {key} already exists (409), reconciling {event_id}")
        await with_retry(lambda: client.update_event(calendar_id, event_id, body))
        return event_id


async def push_record(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    client: GoogleCalendarClient,
    state_db: StateDatabase,
    binding: TenantCalendarBinding,
    record: BirthdayRecord,
    tenant: Tenant | None,
    groups: list[Group],
    today: date | None = None,
    force: bool = False,
) -> RecordSyncResult:
    """
    Bring the bound calendar in line with one record and persist the outcome.

    Calls run one at a time. Per-event failures are collected rather than
    raised; the record ends Synced, PARTIAL_SYNC or ERROR accordingly.

    Raises:
        PrimaryCalendarError: if the binding points at the primary calendar
    """
    if binding.is_primary_calendar:
        logger.error("Syncing to the primary calendar is not allowed")
        raise PrimaryCalendarError("Select or create a dedicated calendar before syncing")

    today = today or date.today()
    name = record.display_name or record.id

    plan = plan_sync(record, tenant, groups, today)
    if _is_settled(record, plan, force):
        logger.info(f"No changes for {name}, skipping")
        return RecordSyncResult(record_id=record.id, success=True, skipped=True)

    logger.debug(
        f"{name}: {len(plan.creates)} to create, {len(plan.updates)} to update, "
        f"{len(plan.deletes)} to delete"
    )

    if config.dry_run:
        logger.info(
            f"[DRY RUN] Would create {len(plan.creates)}, update {len(plan.updates)} "
            f"and delete {len(plan.deletes)} event(s) for {name}"
        )
        return RecordSyncResult(
            record_id=record.id,
            success=True,
            created=len(plan.creates),
            updated=len(plan.updates),
            deleted=len(plan.deletes),
        )

    calendar_id = binding.calendar_id
    events_map = dict(record.google_calendar_events_map)
    result = RecordSyncResult(record_id=record.id, success=False)
    errors: list[CalendarApiError] = []
    calendar_gone = False

    for key, body in plan.creates:
        try:
            events_map[key] = await _create(client, calendar_id, record.id, key, body, logger)
            result.created += 1
            logger.debug(f"Created {key} for {name}")
        except CalendarApiError as e:
            # A 404 on insert means the calendar itself no longer exists.
            calendar_gone = calendar_gone or e.not_found
            result.failed_keys.append(key)
            errors.append(e)
            logger.warning(f"Failed to create {key} for {name}: {e}")

    for key, event_id, body in plan.updates:
        try:
            await with_retry(lambda: client.update_event(calendar_id, event_id, body))
            result.updated += 1
            logger.debug(f"Updated {key} for {name}")
        except CalendarApiError as e:
            if not is_not_found_error(e):
                result.failed_keys.append(key)
                errors.append(e)
                logger.warning(f"Failed to update {key} for {name}: {e}")
                continue
            logger.info(f"Event {event_id} was deleted externally, recreating {key}")
            try:
                new_id = deterministic_event_id(record.id, key)
                events_map[key] = await with_retry(
                    lambda: client.create_event(calendar_id, body, new_id)
                )
                result.created += 1
            except CalendarApiError as e2:
                calendar_gone = calendar_gone or e2.not_found
                result.failed_keys.append(key)
                errors.append(e2)
                logger.warning(f"Failed to recreate {key} for {name}: {e2}")

    for key, event_id in plan.deletes:
        try:
            await with_retry(lambda: client.delete_event(calendar_id, event_id))
            result.deleted += 1
            logger.debug(f"Deleted stale {key} for {name}")
        except CalendarApiError as e:
            if not is_not_found_error(e):
                result.failed_keys.append(key)
                errors.append(e)
                logger.warning(f"Failed to delete {key} for {name}: {e}")
                continue
        events_map.pop(key, None)

    stats.created += result.created
    stats.updated += result.updated
    stats.deleted += result.deleted
    stats.errors += len(result.failed_keys)

    now = datetime.now()
    attempted = len(plan.creates) + len(plan.updates) + len(plan.deletes)
    if not result.failed_keys:
        mark_synced(record, events_map, now)
        result.success = True
        logger.info(f"Synced {name}")
    else:
        all_failed = len(result.failed_keys) >= attempted
        status = (
            RecordSyncStatus.ERROR if calendar_gone or all_failed else RecordSyncStatus.PARTIAL_SYNC
        )
        result.error = str(errors[0]) if errors else None
        result.retryable = not calendar_gone and all(e.retryable for e in errors)
        if calendar_gone:
            result.error = f"Calendar not found: {result.error}"
        mark_failed(record, status, events_map, result.failed_keys, result.error, now)
        logger.warning(f"Sync of {name} ended {status.value}: {len(result.failed_keys)} failure(s)")

    if not result.failed_keys and events_map:
        result.event_id = next(iter(events_map.values()))

    state_db.save_birthday(record)
    state_db.commit()
    return result


async def remove_record_events(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    client: GoogleCalendarClient,
    state_db: StateDatabase,
    binding: TenantCalendarBinding,
    record: BirthdayRecord,
) -> RecordSyncResult:
    """
    Delete every event of a record and return it to Idle.

    Events already gone count as deleted, so removing twice is harmless.
    Events that could not be deleted stay in the map and the record is marked
    ERROR so a later removal can finish the job.
    """
    name = record.display_name or record.id
    if not has_events(record) and not record.is_synced:
        logger.info(f"{name} has no events, nothing to remove")
        return RecordSyncResult(record_id=record.id, success=True, skipped=True)

    if config.dry_run:
        logger.info(
            f"[DRY RUN] Would delete {len(record.google_calendar_events_map)} event(s) for {name}"
        )
        return RecordSyncResult(
            record_id=record.id, success=True, deleted=len(record.google_calendar_events_map)
        )

    remaining = dict(record.google_calendar_events_map)
    result = RecordSyncResult(record_id=record.id, success=False)
    for key, event_id in list(remaining.items()):
        try:
            await with_retry(lambda: client.delete_event(binding.calendar_id, event_id))
            result.deleted += 1
        except CalendarApiError as e:
            if not is_not_found_error(e):
                result.failed_keys.append(key)
                result.error = str(e)
                result.retryable = e.retryable
                logger.warning(f"Failed to delete {key} for {name}: {e}")
                continue
        remaining.pop(key)

    stats.deleted += result.deleted
    stats.errors += len(result.failed_keys)

    if result.failed_keys:
        mark_failed(
            record, RecordSyncStatus.ERROR, remaining, result.failed_keys, result.error
        )
    else:
        mark_removed(record)
        result.success = True
        logger.info(f"Removed {result.deleted} event(s) for {name}")

    state_db.save_birthday(record)
    state_db.commit()
    return result
