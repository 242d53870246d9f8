"""
Integration tests: batch sync through CalendarSyncService.

The service runs batches as background asyncio tasks, so every test drives one
event loop that enqueues, waits for the job, and inspects the stored result.
"""

import asyncio

import pytest

from hebbirthday_sync.events import generate_event_key
from hebbirthday_sync.models import PRIMARY_CALENDAR_ID
from hebbirthday_sync.models import HistoryStatus
from hebbirthday_sync.models import HistoryType
from hebbirthday_sync.models import NotConnectedError
from hebbirthday_sync.models import PrimaryCalendarError
from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.sync import CalendarSyncService
from hebbirthday_sync.sync.bulk import chunked
from hebbirthday_sync.sync.utils import deterministic_event_id
from tests.conftest import CALENDAR_ID
from tests.conftest import TENANT_ID
from tests.conftest import USER_ID
from tests.conftest import make_record
from tests.fake_client import FakeCalendarClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail_every_create(client: FakeCalendarClient, record_id: str, status: int = 500):
    years = [("gregorian", y) for y in range(2020, 2050)] + [
        ("hebrew", y) for y in range(5780, 5800)
    ]
    for kind, year in years:
        client.fail_create[deterministic_event_id(record_id, generate_event_key(kind, year))] = (
            status
        )


def _sync_many_and_wait(service, record_ids):
    async def run():
        accepted = await service.sync_many(record_ids)
        await service.wait_for_jobs()
        return accepted

    return asyncio.run(run())


@pytest.fixture
def client():
    return FakeCalendarClient()


@pytest.fixture
def service(sync_config, state_db, binding, client):
    return CalendarSyncService(sync_config, state_db, client)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_chunked():
    assert chunked(["a", "b", "c", "d", "e", "f", "g"], 5) == [
        ["a", "b", "c", "d", "e"],
        ["f", "g"],
    ]
    assert chunked([], 5) == []


def test_one_success_one_failure_is_partial(service, state_db, client):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.save_birthday(make_record("b", "Bat"))
    state_db.commit()
    _fail_every_create(client, "b")

    accepted = _sync_many_and_wait(service, ["a", "b"])
    assert accepted.accepted
    assert accepted.queued_count == 2

    (item,) = state_db.get_history(USER_ID)
    assert item.type is HistoryType.BATCH
    assert item.status is HistoryStatus.PARTIAL
    assert (item.success_count, item.failed_count) == (1, 1)
    assert len(item.failed_items) == 1
    assert item.failed_items[0].name == "Bat Levi"

    assert state_db.get_birthday("a").sync_metadata.status is None
    assert state_db.get_birthday("b").sync_metadata.status is RecordSyncStatus.ERROR
    assert state_db.get_binding(USER_ID).sync_status is TenantSyncStatus.IDLE


def test_all_succeed(service, state_db):
    for rid, name in (("a", "Avi"), ("b", "Bat"), ("c", "Gal")):
        state_db.save_birthday(make_record(rid, name))
    state_db.commit()

    _sync_many_and_wait(service, ["a", "b", "c"])
    (item,) = state_db.get_history(USER_ID)
    assert item.status is HistoryStatus.SUCCESS
    assert item.success_count == 3


def test_missing_record_is_a_failed_item(service, state_db):
    _sync_many_and_wait(service, ["ghost"])
    (item,) = state_db.get_history(USER_ID)
    assert item.status is HistoryStatus.FAILED
    assert item.failed_items[0].reason == "Record not found"


def test_empty_batch_is_not_accepted(service, state_db):
    accepted = _sync_many_and_wait(service, [])
    assert not accepted.accepted
    assert accepted.queued_count == 0
    assert state_db.get_history(USER_ID) == []


def test_tenant_in_progress_while_batch_runs(service, state_db):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()

    async def run():
        await service.sync_many(["a"])
        during = state_db.get_binding(USER_ID)
        await service.wait_for_jobs()
        return during

    during = asyncio.run(run())
    assert during.sync_status is TenantSyncStatus.IN_PROGRESS
    assert during.last_sync_start is not None
    assert state_db.get_binding(USER_ID).sync_status is TenantSyncStatus.IDLE


def test_primary_calendar_blocks_bulk_sync(sync_config, state_db, client):
    state_db.save_binding(TenantCalendarBinding(user_id=USER_ID, calendar_id=PRIMARY_CALENDAR_ID))
    state_db.commit()
    service = CalendarSyncService(sync_config, state_db, client)

    with pytest.raises(PrimaryCalendarError):
        asyncio.run(service.sync_many(["a"]))
    assert client.calls == 0


def test_no_binding_is_not_connected(sync_config, state_db, client):
    service = CalendarSyncService(sync_config, state_db, client)
    with pytest.raises(NotConnectedError):
        asyncio.run(service.sync_one("a"))


def test_retry_failed_picks_up_failed_records(service, state_db, client):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    _fail_every_create(client, "a")
    asyncio.run(service.sync_one("a"))
    assert state_db.get_birthday("a").sync_metadata.status is RecordSyncStatus.ERROR

    client.fail_create.clear()
    item = asyncio.run(service.retry_failed(TENANT_ID))
    assert item.status is HistoryStatus.SUCCESS
    assert state_db.get_birthday("a").sync_metadata.status is None


def test_retry_failed_with_nothing_to_do(service):
    assert asyncio.run(service.retry_failed(TENANT_ID)) is None


def test_sync_one_writes_single_history(service, state_db):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    result = asyncio.run(service.sync_one("a"))
    assert result.success
    (item,) = state_db.get_history(USER_ID)
    assert item.type is HistoryType.SINGLE

    # A skipped second sync leaves no trace in history
    assert asyncio.run(service.sync_one("a")).skipped
    assert len(state_db.get_history(USER_ID)) == 1


def test_sync_one_pushes_birth_date_edit(service, state_db, client):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    assert asyncio.run(service.sync_one("a")).success

    record = state_db.get_birthday("a")
    record.gregorian_month, record.gregorian_day = 8, 1
    state_db.save_birthday(record)
    state_db.commit()

    result = asyncio.run(service.sync_one("a"))
    assert result.success
    assert not result.skipped
    assert any(e["start"]["date"].endswith("-08-01") for e in client.events_in(CALENDAR_ID))
