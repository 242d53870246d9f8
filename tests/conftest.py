"""
Shared pytest fixtures and record helpers.
"""

import logging
from datetime import date

import pytest

from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import HebrewOccurrence
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.models import Tenant
from hebbirthday_sync.models import TenantCalendarBinding

USER_ID = "user-1"
TENANT_ID = "tenant-1"
CALENDAR_ID = "birthdays@group.calendar.google.com"
TODAY = date(2026, 3, 1)


def make_record(
    record_id: str = "r1",
    first_name: str = "Dana",
    last_name: str = "Levi",
    birth: date | None = date(1990, 5, 15),
    hebrew_years: tuple = (5786, 5787),
    **kwargs,
) -> BirthdayRecord:
    """Return a non-archived record with a birth date and a few Hebrew occurrences.

    ``hebrew_years`` are turned into one occurrence per year, each landing on
    15 May of the matching Gregorian year (3760 years apart).
    """
    futures = [
        HebrewOccurrence(gregorian=date(y - 3760, 5, 15), hebrew_year=y) for y in hebrew_years
    ]
    fields = {
        "id": record_id,
        "tenant_id": TENANT_ID,
        "first_name": first_name,
        "last_name": last_name,
        "gregorian_year": birth.year if birth else None,
        "gregorian_month": birth.month if birth else None,
        "gregorian_day": birth.day if birth else None,
        "hebrew_year": 5750 if futures else None,
        "hebrew_month": "Iyyar" if futures else None,
        "hebrew_day": 20 if futures else None,
        "hebrew_date_string": "כ׳ באייר תש״ן" if futures else None,
        "next_upcoming_hebrew_birthday": futures[0].gregorian if futures else None,
        "next_upcoming_hebrew_year": futures[0].hebrew_year if futures else None,
        "future_hebrew_birthdays": futures,
    }
    fields.update(kwargs)
    return BirthdayRecord(**fields)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        db.save_tenant(Tenant(id=TENANT_ID, owner_id=USER_ID, default_language="en"))
        db.commit()
        yield db


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(
        user_id=USER_ID,
        tenant_id=TENANT_ID,
        state_db_path=db_path,
        chunk_delay=0,
        delete_pause=0,
        dry_run=False,
        verbose=False,
    )


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_stats():
    return SyncStats()


@pytest.fixture
def binding(state_db):
    """A connected binding on a dedicated calendar, stored in the DB."""
    b = TenantCalendarBinding(
        user_id=USER_ID,
        calendar_id=CALENDAR_ID,
        calendar_name="Birthdays",
        email="dana@example.com",
        name="Dana Levi",
    )
    state_db.save_binding(b)
    state_db.commit()
    return b


@pytest.fixture
def tenant(state_db):
    return state_db.get_tenant(TENANT_ID)
