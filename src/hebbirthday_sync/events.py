"""
Desired calendar events for a birthday record.

The builder is pure: given a record, its tenant and groups, and "today", it
returns every event the calendar should hold for that record, keyed the same
way as ``BirthdayRecord.google_calendar_events_map``.
"""

from dataclasses import dataclass
from datetime import date
from datetime import timedelta
from typing import Any

from hebbirthday_sync.dates import occurrence_in_year
from hebbirthday_sync.models import GREGORIAN_YEARS_AHEAD
from hebbirthday_sync.models import MANAGED_APP_TAG
from hebbirthday_sync.models import MAX_HEBREW_OCCURRENCES
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import Group
from hebbirthday_sync.models import Tenant
from hebbirthday_sync.zodiac import gregorian_sign
from hebbirthday_sync.zodiac import hebrew_sign
from hebbirthday_sync.zodiac import sign_name

PREFERENCES = ("gregorian", "hebrew", "both")
EVENT_KINDS = ("gregorian", "hebrew")

_LABELS = {
    "en": {
        "gregorian_title": "Birthday",
        "hebrew_title": "Hebrew Birthday",
        "gregorian_date": "Gregorian Birth Date",
        "hebrew_date": "Hebrew Birth Date",
        "after_sunset": "⚠️ After Sunset",
        "groups": "Groups",
        "notes": "Notes",
        "zodiac": "Zodiac Sign",
    },
    "he": {
        "gregorian_title": "יום הולדת לועזי",
        "hebrew_title": "יום הולדת עברי",
        "gregorian_date": "תאריך לידה לועזי",
        "hebrew_date": "תאריך לידה עברי",
        "after_sunset": "⚠️ לאחר השקיעה",
        "groups": "קבוצות",
        "notes": "הערות",
        "zodiac": "מזל",
    },
}

_REMINDERS = {
    "useDefault": False,
    "overrides": [
        {"method": "popup", "minutes": 1440},
        {"method": "popup", "minutes": 60},
    ],
}


def generate_event_key(kind: str, year: int) -> str:
    """Map key for one event: ``"{kind}_{year}"``, e.g. ``gregorian_2026``."""
    return f"{kind}_{year}"


def parse_event_key(key: str) -> tuple[str, int | None]:
    """Split an event map key into ``(kind, year)``; the year is None if unreadable."""
    kind, _, year = key.partition("_")
    try:
        return kind, int(year)
    except ValueError:
        return kind, None


@dataclass(frozen=True)
class DesiredEvent:
    """One event the calendar should contain, plus the Google request body."""

    key: str
    kind: str
    year: int
    body: dict[str, Any]


def effective_preference(record: BirthdayRecord, tenant: Tenant | None) -> str:
    """Record override, then tenant default, then ``"both"``."""
    for candidate in (
        record.calendar_preference_override,
        tenant.default_calendar_preference if tenant else None,
    ):
        if candidate in PREFERENCES:
            return candidate
    return "both"


class EventBuilder:
    """Builds Google Calendar event bodies for a birthday record."""

    @staticmethod
    def _labels(language: str) -> dict[str, str]:
        return _LABELS["en"] if language == "en" else _LABELS["he"]

    @classmethod
    def describe(
        cls, record: BirthdayRecord, groups: list[Group], language: str
    ) -> str:
        """Shared description text: birth dates, sunset marker, groups, notes."""
        labels = cls._labels(language)
        birth = record.birth_date
        lines = [
            f"{labels['gregorian_date']}: {birth.isoformat() if birth else ''}",
            f"{labels['hebrew_date']}: {record.hebrew_date_string or ''}",
        ]
        description = "\n".join(lines) + "\n"
        if record.after_sunset:
            description += labels["after_sunset"] + "\n"

        by_id = {g.id: g for g in groups}
        names = [by_id[gid].label for gid in record.group_ids if gid in by_id]
        if names:
            description += f"\n{labels['groups']}: {', '.join(names)}"
        if record.notes:
            description += f"\n\n{labels['notes']}: {record.notes}"
        return description

    @classmethod
    def _with_zodiac(cls, description: str, sign: str | None, language: str) -> str:
        if not sign:
            return description
        labels = cls._labels(language)
        return f"{description}\n\n{labels['zodiac']}: {sign_name(sign, language)}"

    @staticmethod
    def _event_body(
        record: BirthdayRecord, title: str, day: date, description: str
    ) -> dict[str, Any]:
        return {
            "summary": title,
            "description": description,
            "start": {"date": day.isoformat()},
            "end": {"date": (day + timedelta(days=1)).isoformat()},
            "extendedProperties": {
                "private": {
                    "createdByApp": MANAGED_APP_TAG,
                    "tenantId": record.tenant_id,
                    "birthdayId": record.id or "unknown",
                }
            },
            "reminders": _REMINDERS,
            "status": "confirmed",
        }

    @classmethod
    def build(
        cls,
        record: BirthdayRecord,
        tenant: Tenant | None,
        groups: list[Group],
        today: date,
    ) -> list[DesiredEvent]:
        """
        Return every event the calendar should hold for ``record``.

        Gregorian events cover ``today.year`` through ten years ahead. Hebrew
        events come from the first ten precomputed future occurrences. Which
        of the two sets is produced follows the effective preference.
        Archived records produce nothing.
        """
        if record.archived:
            return []

        language = tenant.default_language if tenant else "he"
        labels = cls._labels(language)
        preference = effective_preference(record, tenant)
        description = cls.describe(record, groups, language)
        name = record.display_name
        events: list[DesiredEvent] = []

        birth = record.birth_date
        if preference in ("gregorian", "both") and birth:
            greg_desc = cls._with_zodiac(
                description, gregorian_sign(birth.month, birth.day), language
            )
            for year in range(today.year, today.year + GREGORIAN_YEARS_AHEAD + 1):
                age = year - birth.year
                title = f"{name} | {age} | {labels['gregorian_title']} 🎂"
                day = occurrence_in_year(year, birth.month, birth.day)
                events.append(
                    DesiredEvent(
                        key=generate_event_key("gregorian", year),
                        kind="gregorian",
                        year=year,
                        body=cls._event_body(record, title, day, greg_desc),
                    )
                )

        if preference in ("hebrew", "both"):
            heb_desc = cls._with_zodiac(description, hebrew_sign(record.hebrew_month), language)
            for occurrence in record.future_hebrew_birthdays[:MAX_HEBREW_OCCURRENCES]:
                age = occurrence.hebrew_year - record.hebrew_year if record.hebrew_year else 0
                title = f"{name} | {age} | {labels['hebrew_title']} 🎂"
                events.append(
                    DesiredEvent(
                        key=generate_event_key("hebrew", occurrence.hebrew_year),
                        kind="hebrew",
                        year=occurrence.hebrew_year,
                        body=cls._event_body(record, title, occurrence.gregorian, heb_desc),
                    )
                )

        return events
