"""
Integration tests: single-record push and removal.

All tests use FakeCalendarClient (in-memory) + a real SQLite StateDatabase so
push_record and remove_record_events run end-to-end without Google.

make_record() wants 13 events as of TODAY: gregorian_2026 … gregorian_2036
and hebrew_5786, hebrew_5787.
"""

import asyncio
import dataclasses
from datetime import date

import pytest

from hebbirthday_sync.fingerprint import compute_fingerprint
from hebbirthday_sync.models import PRIMARY_CALENDAR_ID
from hebbirthday_sync.models import PrimaryCalendarError
from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import SyncState
from hebbirthday_sync.status import effective_sync_state
from hebbirthday_sync.status import is_drifted
from hebbirthday_sync.sync.record import is_current_or_future
from hebbirthday_sync.sync.record import push_record
from hebbirthday_sync.sync.record import remove_record_events
from hebbirthday_sync.sync.utils import deterministic_event_id
from tests.conftest import CALENDAR_ID
from tests.conftest import TODAY
from tests.conftest import make_record
from tests.fake_client import FakeCalendarClient

WANTED = 13

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _push(ctx, record, force=False, today=TODAY):
    config, stats, logger, client, state_db, binding, tenant = ctx
    return asyncio.run(
        push_record(
            config, stats, logger, client, state_db, binding, record, tenant, [],
            today=today, force=force,
        )
    )


def _remove(ctx, record):
    config, stats, logger, client, state_db, binding, _ = ctx
    return asyncio.run(
        remove_record_events(config, stats, logger, client, state_db, binding, record)
    )


@pytest.fixture
def client():
    return FakeCalendarClient()


@pytest.fixture
def ctx(sync_config, sync_stats, sync_logger, client, state_db, binding, tenant):
    return sync_config, sync_stats, sync_logger, client, state_db, binding, tenant


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def test_first_push_creates_every_event(ctx, client, state_db, sync_stats):
    record = make_record()
    result = _push(ctx, record)

    assert result.success
    assert result.created == WANTED
    assert client.event_count == WANTED
    assert sync_stats.created == WANTED

    stored = state_db.get_birthday("r1")
    assert set(stored.google_calendar_events_map) == {
        *(f"gregorian_{y}" for y in range(2026, 2037)),
        "hebrew_5786",
        "hebrew_5787",
    }
    assert stored.google_calendar_events_map["gregorian_2026"] == deterministic_event_id(
        "r1", "gregorian_2026"
    )
    assert effective_sync_state(stored) is SyncState.SYNCED


def test_push_then_fingerprint_matches(ctx, state_db):
    record = make_record()
    _push(ctx, record)
    stored = state_db.get_birthday("r1")
    assert stored.synced_data_hash == compute_fingerprint(stored)
    assert not is_drifted(stored)


def test_unchanged_record_is_skipped_without_calls(ctx, client):
    record = make_record()
    _push(ctx, record)
    calls = client.calls

    result = _push(ctx, record)
    assert result.skipped
    assert client.calls == calls


def test_force_pushes_unchanged_record(ctx, client):
    record = make_record()
    _push(ctx, record)
    result = _push(ctx, record, force=True)
    assert not result.skipped
    assert result.updated == WANTED
    assert result.created == 0


def test_edit_updates_in_place(ctx, client):
    record = make_record()
    _push(ctx, record)
    record.notes = "Loves books"

    result = _push(ctx, record)
    assert result.success
    assert (result.created, result.updated, result.deleted) == (0, WANTED, 0)
    body = client.events_in(CALENDAR_ID)[0]
    assert "Loves books" in body["description"]


def test_birth_date_edit_moves_events(ctx, client):
    record = make_record()
    _push(ctx, record)
    record.gregorian_month, record.gregorian_day = 8, 1

    result = _push(ctx, record)
    assert not result.skipped
    assert (result.created, result.updated, result.deleted) == (0, WANTED, 0)
    gregorian_id = record.google_calendar_events_map["gregorian_2026"]
    (body,) = [e for e in client.events_in(CALENDAR_ID) if e["id"] == gregorian_id]
    assert body["start"]["date"] == "2026-08-01"


def test_sunset_flag_edit_is_pushed(ctx):
    record = make_record()
    _push(ctx, record)
    record.after_sunset = True
    assert not _push(ctx, record).skipped


def test_new_hebrew_occurrence_is_pushed(ctx, client):
    record = make_record()
    _push(ctx, record)
    longer = make_record(hebrew_years=(5786, 5787, 5788))
    record.future_hebrew_birthdays = longer.future_hebrew_birthdays

    result = _push(ctx, record)
    assert result.created == 1
    assert "hebrew_5788" in record.google_calendar_events_map


def test_new_year_extends_the_gregorian_window(ctx, client):
    record = make_record()
    _push(ctx, record)

    result = _push(ctx, record, today=date(2027, 3, 1))
    assert not result.skipped
    assert result.created == 1
    assert result.deleted == 0
    assert "gregorian_2037" in record.google_calendar_events_map
    # Last year's event stays as history
    assert "gregorian_2026" in record.google_calendar_events_map

    assert _push(ctx, record, today=date(2027, 3, 1)).skipped


def test_timeout_keeps_local_state(ctx, client, state_db):
    record = make_record()
    _push(ctx, record)
    before = dict(state_db.get_birthday("r1").google_calendar_events_map)
    client.time_out = True

    result = _push(ctx, record, force=True)
    assert not result.success
    assert result.retryable
    stored = state_db.get_birthday("r1")
    assert stored.google_calendar_events_map == before
    assert stored.sync_metadata.status is RecordSyncStatus.ERROR


def test_primary_calendar_is_refused_without_calls(ctx, client):
    config, stats, logger, _, state_db, binding, tenant = ctx
    primary = dataclasses.replace(binding, calendar_id=PRIMARY_CALENDAR_ID)
    with pytest.raises(PrimaryCalendarError):
        asyncio.run(
            push_record(
                config, stats, logger, client, state_db, primary, make_record(), tenant, [],
                today=TODAY,
            )
        )
    assert client.calls == 0


def test_email_calendar_counts_as_primary(binding):
    assert dataclasses.replace(binding, calendar_id=binding.email).is_primary_calendar


def test_conflict_on_create_reconciles_existing_event(ctx, client):
    event_id = deterministic_event_id("r1", "gregorian_2026")
    client.add_event(CALENDAR_ID, event_id, {"summary": "left over from a crash"})

    result = _push(ctx, make_record())
    assert result.success
    assert result.created == WANTED
    assert event_id in client.updates
    assert client.event_count == WANTED


def test_externally_deleted_event_is_recreated(ctx, client, state_db):
    record = make_record()
    _push(ctx, record)
    gone = record.google_calendar_events_map["hebrew_5786"]
    asyncio.run(client.delete_event(CALENDAR_ID, gone))
    record.notes = "edited"

    result = _push(ctx, record)
    assert result.success
    assert result.created == 1
    assert result.updated == WANTED - 1
    assert client.has_event(CALENDAR_ID, gone)


def test_one_failed_create_is_partial_and_retryable(ctx, client, state_db):
    bad = deterministic_event_id("r1", "hebrew_5787")
    client.fail_create[bad] = 500

    result = _push(ctx, make_record())
    assert not result.success
    assert result.created == WANTED - 1
    assert result.failed_keys == ["hebrew_5787"]
    assert result.retryable

    stored = state_db.get_birthday("r1")
    assert stored.sync_metadata.status is RecordSyncStatus.PARTIAL_SYNC
    assert len(stored.google_calendar_events_map) == WANTED - 1
    assert effective_sync_state(stored) is SyncState.FAILED

    # The next attempt finishes the job
    del client.fail_create[bad]
    result = _push(ctx, stored)
    assert result.success
    assert state_db.get_birthday("r1").sync_metadata.status is None


def test_deleted_calendar_is_fatal_error(ctx, client, state_db):
    client.fail_all = 404

    result = _push(ctx, make_record())
    assert not result.success
    assert not result.retryable
    assert result.error.startswith("Calendar not found")
    assert state_db.get_birthday("r1").sync_metadata.status is RecordSyncStatus.ERROR


def test_preference_change_deletes_future_events_only(ctx, client):
    record = make_record()
    _push(ctx, record)
    record.google_calendar_events_map["gregorian_2020"] = "ancient"
    record.calendar_preference_override = "hebrew"

    result = _push(ctx, record)
    assert result.success
    assert result.deleted == 11
    assert set(record.google_calendar_events_map) == {
        "gregorian_2020",
        "hebrew_5786",
        "hebrew_5787",
    }
    assert "ancient" not in client.removes


def test_archiving_deletes_everything_current(ctx, client):
    record = make_record()
    _push(ctx, record)
    record.archived = True

    result = _push(ctx, record)
    assert result.deleted == WANTED
    assert client.event_count == 0


def test_dry_run_counts_without_calls(ctx, client, state_db):
    config = ctx[0]
    config.dry_run = True
    result = _push(ctx, make_record())
    assert result.created == WANTED
    assert client.calls == 0
    assert state_db.get_birthday("r1") is None


def test_stale_key_classification():
    record = make_record()
    assert is_current_or_future(record, "gregorian_2026", TODAY)
    assert not is_current_or_future(record, "gregorian_2025", TODAY)
    assert not is_current_or_future(record, "hebrew_5785", TODAY)
    assert is_current_or_future(record, "hebrew_5786", TODAY)
    assert is_current_or_future(record, "weird", TODAY)
    assert is_current_or_future(make_record(hebrew_years=()), "hebrew_5700", TODAY)


# ---------------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------------


def test_remove_twice_is_idempotent(ctx, client, state_db):
    record = make_record()
    _push(ctx, record)

    first = _remove(ctx, record)
    assert first.success
    assert first.deleted == WANTED
    assert client.event_count == 0
    after_first = state_db.get_birthday("r1")

    second = _remove(ctx, after_first)
    assert second.success
    assert second.skipped
    assert state_db.get_birthday("r1") == after_first
    assert effective_sync_state(after_first) is SyncState.IDLE


def test_remove_counts_already_gone_events(ctx, client):
    record = make_record()
    _push(ctx, record)
    asyncio.run(client.delete_event(CALENDAR_ID, record.google_calendar_events_map["hebrew_5786"]))

    result = _remove(ctx, record)
    assert result.success
    assert result.deleted == WANTED - 1


def test_remove_keeps_undeleted_events(ctx, client, state_db):
    record = make_record()
    _push(ctx, record)
    stuck = record.google_calendar_events_map["gregorian_2030"]
    client.fail_delete[stuck] = 503

    result = _remove(ctx, record)
    assert not result.success
    assert result.retryable
    stored = state_db.get_birthday("r1")
    assert stored.google_calendar_events_map == {"gregorian_2030": stuck}
    assert stored.sync_metadata.status is RecordSyncStatus.ERROR
