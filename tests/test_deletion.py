"""
Integration tests: deletion preview and delete-all.
"""

import asyncio
from datetime import date

import pytest

from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import SyncState
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.status import effective_sync_state
from hebbirthday_sync.sync import CalendarSyncService
from hebbirthday_sync.sync.deletion import summarize_deletion
from tests.conftest import TENANT_ID
from tests.conftest import USER_ID
from tests.conftest import make_record
from tests.fake_client import FakeCalendarClient

WANTED = 13


@pytest.fixture
def client():
    return FakeCalendarClient()


@pytest.fixture
def service(sync_config, state_db, binding, client):
    return CalendarSyncService(sync_config, state_db, client)


def _sync(service, *record_ids):
    for record_id in record_ids:
        assert asyncio.run(service.sync_one(record_id)).success


def test_preview_counts_only_records_with_events():
    with_events = make_record(
        "a", "Avi", google_calendar_events_map={"gregorian_2026": "e1", "hebrew_5786": "e2"}
    )
    without = make_record("b", "Bat")

    preview = summarize_deletion([with_events, without], "Birthdays")
    assert preview.records_count == 1
    assert preview.total_count == 2
    (item,) = preview.summary
    assert (item.name, item.hebrew_events, item.gregorian_events) == ("Avi Levi", 1, 1)


def test_service_preview_reads_stored_maps(service, state_db):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.save_birthday(make_record("b", "Bat"))
    state_db.commit()
    _sync(service, "a")

    preview = asyncio.run(service.preview_deletion(TENANT_ID))
    assert preview.calendar_name == "Birthdays"
    assert preview.records_count == 1
    assert preview.total_count == WANTED
    assert preview.summary[0].hebrew_events == 2
    assert preview.summary[0].gregorian_events == 11


def test_delete_all_clears_events_and_sync_fields(service, state_db, client):
    for rid, name in (("a", "Avi"), ("b", "Bat")):
        state_db.save_birthday(make_record(rid, name))
    state_db.commit()
    _sync(service, "a", "b")

    result = asyncio.run(service.delete_all(TENANT_ID))
    assert result.total_deleted == 2 * WANTED
    assert result.failed_count == 0
    assert client.event_count == 0
    for record in state_db.get_birthdays(TENANT_ID):
        assert effective_sync_state(record) is SyncState.IDLE
    assert state_db.get_binding(USER_ID).sync_status is TenantSyncStatus.IDLE


def test_delete_all_keeps_failed_keys(service, state_db, client):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    _sync(service, "a")
    stuck_key = f"gregorian_{date.today().year + 5}"
    stuck = state_db.get_birthday("a").google_calendar_events_map[stuck_key]
    client.fail_delete[stuck] = 500

    result = asyncio.run(service.delete_all(TENANT_ID))
    assert result.total_deleted == WANTED - 1
    assert result.failed_count == 1

    record = state_db.get_birthday("a")
    assert record.google_calendar_events_map == {stuck_key: stuck}
    assert record.sync_metadata.status is RecordSyncStatus.ERROR
    assert state_db.get_binding(USER_ID).sync_status is TenantSyncStatus.IDLE


def test_delete_all_counts_already_gone_events(service, state_db, client):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    _sync(service, "a")
    client.fail_delete[state_db.get_birthday("a").google_calendar_events_map["hebrew_5786"]] = 404

    result = asyncio.run(service.delete_all(TENANT_ID))
    assert result.total_deleted == WANTED
    assert result.failed_count == 0


def test_delete_all_settles_flagged_records_without_events(service, state_db):
    state_db.save_birthday(make_record("p", "Pending", is_synced=True))
    state_db.commit()

    asyncio.run(service.delete_all(TENANT_ID))
    record = state_db.get_birthday("p")
    assert record.is_synced is False
    assert effective_sync_state(record) is SyncState.IDLE


def test_delete_all_dry_run(service, state_db, client, sync_config):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    _sync(service, "a")
    sync_config.dry_run = True

    result = asyncio.run(service.delete_all(TENANT_ID))
    assert result.total_deleted == WANTED
    assert client.event_count == WANTED
