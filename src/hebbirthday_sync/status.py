"""
Sync state machines: per-record effective state and tenant-wide status.

``effective_sync_state`` is the single place the Idle / Pending / Synced /
Drifted / Failed state of a record is derived. Everything else (CLI, service,
orchestrator) must go through it rather than poking at the flag, the event
map or the status field individually.
"""

import logging
from datetime import datetime

from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import SyncMetadata
from hebbirthday_sync.models import SyncState
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.fingerprint import compute_fingerprint
from hebbirthday_sync.fingerprint import compute_schedule_hash

logger = logging.getLogger(__name__)

_FAILED_STATUSES = (RecordSyncStatus.ERROR, RecordSyncStatus.PARTIAL_SYNC)

_TENANT_TRANSITIONS = {
    (TenantSyncStatus.IDLE, TenantSyncStatus.IN_PROGRESS),
    (TenantSyncStatus.IDLE, TenantSyncStatus.DELETING),
    (TenantSyncStatus.IN_PROGRESS, TenantSyncStatus.IDLE),
    (TenantSyncStatus.DELETING, TenantSyncStatus.IDLE),
}


def has_events(record: BirthdayRecord) -> bool:
    return bool(record.google_calendar_events_map)


def is_effectively_synced(record: BirthdayRecord) -> bool:
    """Events in the calendar are ground truth; the flag only expresses intent."""
    return has_events(record) or bool(record.is_synced)


def is_drifted(record: BirthdayRecord) -> bool:
    """True when pushed events no longer match the record's current content.

    Events without a stored hash count as drifted: nothing says they match.
    """
    if not has_events(record):
        return False
    return compute_fingerprint(record) != record.synced_data_hash


def effective_sync_state(record: BirthdayRecord) -> SyncState:
    status = record.sync_metadata.status
    if status in _FAILED_STATUSES:
        return SyncState.FAILED

    if has_events(record):
        if status is RecordSyncStatus.PENDING:
            return SyncState.PENDING
        if is_drifted(record):
            return SyncState.DRIFTED
        return SyncState.SYNCED

    if status is RecordSyncStatus.PENDING or record.is_synced:
        return SyncState.PENDING
    return SyncState.IDLE


# ---------------------------------------------------------------------------
# Record transitions
# ---------------------------------------------------------------------------


def mark_pending(record: BirthdayRecord, now: datetime | None = None) -> None:
    """User asked for a (re-)sync: Idle, Drifted or Failed → Pending."""
    record.is_synced = True
    record.sync_metadata.status = RecordSyncStatus.PENDING
    record.sync_metadata.last_attempt_at = now or datetime.now()


def mark_synced(
    record: BirthdayRecord,
    events_map: dict[str, str],
    now: datetime | None = None,
) -> None:
    """Successful push: store the fingerprint and the event map, clear the status."""
    now = now or datetime.now()
    record.google_calendar_events_map = dict(events_map)
    record.synced_data_hash = compute_fingerprint(record)
    record.synced_schedule_hash = compute_schedule_hash(record)
    record.is_synced = True
    record.sync_metadata = SyncMetadata(status=None, last_attempt_at=now, retry_count=0)
    record.last_synced_at = now


def mark_failed(
    record: BirthdayRecord,
    status: RecordSyncStatus,
    events_map: dict[str, str],
    failed_keys: list[str],
    message: str | None,
    now: datetime | None = None,
) -> None:
    """Failed or partial push.

    The event map still records whatever did reach the calendar. The retry
    counter only grows when the record was already failing, including a
    failed record that was marked pending for a retry.
    """
    if status not in _FAILED_STATUSES:
        raise ValueError(f"not a failure status: {status}")
    previous = record.sync_metadata
    retry_count = previous.retry_count
    if previous.status in _FAILED_STATUSES or previous.failed_keys:
        retry_count += 1
    record.google_calendar_events_map = dict(events_map)
    record.sync_metadata = SyncMetadata(
        status=status,
        last_attempt_at=now or datetime.now(),
        failed_keys=list(failed_keys),
        last_error_message=message,
        retry_count=retry_count,
    )


def mark_removed(record: BirthdayRecord) -> None:
    """Explicit removal: back to Idle."""
    record.google_calendar_events_map = {}
    record.synced_data_hash = None
    record.synced_schedule_hash = None
    record.is_synced = False
    record.sync_metadata = SyncMetadata()
    record.last_synced_at = None


def reset_sync_data(record: BirthdayRecord) -> None:
    """Forget what was pushed without touching the user's intent flag.

    Recovery path for records stuck in ERROR, e.g. after the bound calendar
    was deleted outside the app.
    """
    record.google_calendar_events_map = {}
    record.synced_data_hash = None
    record.synced_schedule_hash = None
    record.sync_metadata = SyncMetadata()
    record.last_synced_at = None


# ---------------------------------------------------------------------------
# Tenant transitions
# ---------------------------------------------------------------------------


def tenant_transition(current: TenantSyncStatus, target: TenantSyncStatus) -> TenantSyncStatus:
    """Return the new tenant status.

    Tenant status is advisory. An unexpected move (two initiators racing) is
    logged and accepted so that state converges on the last writer.
    """
    if current != target and (current, target) not in _TENANT_TRANSITIONS:
        logger.warning(f"Unexpected tenant status change {current.value} -> {target.value}")
    return target
