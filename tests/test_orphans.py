"""
Integration tests: orphan detection and cleanup.
"""

import asyncio

import pytest

from hebbirthday_sync.models import MANAGED_APP_TAG
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.sync import CalendarSyncService
from tests.conftest import CALENDAR_ID
from tests.conftest import TENANT_ID
from tests.conftest import USER_ID
from tests.conftest import make_record
from tests.fake_client import FakeCalendarClient


def _managed(tenant_id: str = TENANT_ID) -> dict:
    return {
        "summary": "Someone | 40 | Birthday 🎂",
        "extendedProperties": {
            "private": {"createdByApp": MANAGED_APP_TAG, "tenantId": tenant_id, "birthdayId": "x"}
        },
    }


@pytest.fixture
def client():
    return FakeCalendarClient()


@pytest.fixture
def service(sync_config, state_db, binding, client):
    return CalendarSyncService(sync_config, state_db, client)


@pytest.fixture
def synced(service, state_db):
    state_db.save_birthday(make_record("a", "Avi"))
    state_db.commit()
    assert asyncio.run(service.sync_one("a")).success


def test_referenced_events_are_not_orphans(service, synced):
    preview = asyncio.run(service.preview_orphans(TENANT_ID))
    assert preview.found_count == 0
    assert preview.calendar_name == "Birthdays"


def test_unreferenced_managed_events_are_found(service, client, synced):
    client.add_event(CALENDAR_ID, "orphan1", _managed())
    client.add_event(CALENDAR_ID, "orphan2", _managed())
    client.add_event(CALENDAR_ID, "foreign", _managed("other-tenant"))
    client.add_event(CALENDAR_ID, "personal", {"summary": "Dentist"})

    assert asyncio.run(service.preview_orphans(TENANT_ID)).found_count == 2


def test_cleanup_deletes_only_orphans(service, client, state_db, synced):
    client.add_event(CALENDAR_ID, "orphan1", _managed())
    before = client.event_count

    result = asyncio.run(service.cleanup_orphans(TENANT_ID))
    assert result.deleted_count == 1
    assert result.failed_count == 0
    assert client.event_count == before - 1
    assert not client.has_event(CALENDAR_ID, "orphan1")
    assert state_db.get_binding(USER_ID).sync_status is TenantSyncStatus.IDLE


def test_cleanup_reports_failures(service, client, synced):
    client.add_event(CALENDAR_ID, "orphan1", _managed())
    client.add_event(CALENDAR_ID, "orphan2", _managed())
    client.fail_delete["orphan2"] = 500

    result = asyncio.run(service.cleanup_orphans(TENANT_ID))
    assert (result.deleted_count, result.failed_count) == (1, 1)


def test_cleanup_dry_run_deletes_nothing(service, client, sync_config, synced):
    client.add_event(CALENDAR_ID, "orphan1", _managed())
    sync_config.dry_run = True

    result = asyncio.run(service.cleanup_orphans(TENANT_ID))
    assert result.deleted_count == 1
    assert client.has_event(CALENDAR_ID, "orphan1")
