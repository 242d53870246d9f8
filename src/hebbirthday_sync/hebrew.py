"""
Hebrew calendar data supplied by an external conversion oracle.

Hebrew date arithmetic is not done here. An oracle (Hebcal or anything with
the same answers) converts dates; this module only asks it the right
questions and stores the answers on a record.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Protocol

from hebbirthday_sync.models import MAX_HEBREW_OCCURRENCES
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import HebrewOccurrence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HebrewDate:
    year: int
    month: str
    day: int
    rendered: str  # e.g. "כ״ו בכסלו תשע״ו"


class HebrewCalendarOracle(Protocol):
    def gregorian_to_hebrew(self, day: date, after_sunset: bool) -> HebrewDate:
        """Hebrew date of a Gregorian day; after sunset means the following Hebrew day."""
        ...

    def current_hebrew_year(self, today: date) -> int: ...

    def next_hebrew_occurrences(
        self, from_year: int, month: str, day: int, count: int
    ) -> list[HebrewOccurrence]:
        """Occurrences of (month, day) in ``from_year`` onward, ascending."""
        ...


def apply_hebrew_data(
    record: BirthdayRecord, oracle: HebrewCalendarOracle, today: date
) -> bool:
    """
    Fill the Hebrew fields of ``record`` from the oracle.

    The next upcoming occurrence is the first one on or after ``today``, or
    the first one returned when all are in the past. Returns False (and leaves
    the record untouched) when the record has no valid Gregorian birth date.
    """
    birth = record.birth_date
    if birth is None:
        logger.debug(f"No valid birth date for {record.id}, skipping Hebrew calculation")
        return False

    hebrew = oracle.gregorian_to_hebrew(birth, record.after_sunset)
    current_year = oracle.current_hebrew_year(today)
    futures = oracle.next_hebrew_occurrences(
        current_year, hebrew.month, hebrew.day, MAX_HEBREW_OCCURRENCES
    )[:MAX_HEBREW_OCCURRENCES]

    record.hebrew_year = hebrew.year
    record.hebrew_month = hebrew.month
    record.hebrew_day = hebrew.day
    record.hebrew_date_string = hebrew.rendered
    record.future_hebrew_birthdays = list(futures)

    if futures:
        upcoming = next((f for f in futures if f.gregorian >= today), futures[0])
        record.next_upcoming_hebrew_birthday = upcoming.gregorian
        record.next_upcoming_hebrew_year = upcoming.hebrew_year
    else:
        record.next_upcoming_hebrew_birthday = None
        record.next_upcoming_hebrew_year = None

    logger.debug(
        f"Hebrew data for {record.id}: {hebrew.day} {hebrew.month} {hebrew.year}, "
        f"{len(futures)} future occurrence(s)"
    )
    return True


def has_hebrew_data(record: BirthdayRecord) -> bool:
    return bool(record.hebrew_date_string and record.future_hebrew_birthdays)


def needs_hebrew_recalculation(before: BirthdayRecord | None, after: BirthdayRecord) -> bool:
    """True when the birth date or sunset flag changed, or Hebrew data is missing."""
    if before is None:
        return not has_hebrew_data(after)
    date_changed = before.birth_date != after.birth_date
    sunset_changed = before.after_sunset != after.after_sunset
    if date_changed or sunset_changed:
        return True
    return not has_hebrew_data(after)


def refresh_hebrew_data(
    record: BirthdayRecord,
    oracle: HebrewCalendarOracle | None,
    today: date,
    before: BirthdayRecord | None = None,
) -> bool:
    """Recompute Hebrew fields when an oracle is available and they are stale.

    ``before`` is the stored version of an edited record; without it only
    missing Hebrew data triggers a recalculation. Returns True when the
    record was changed.
    """
    if oracle is None or not needs_hebrew_recalculation(before, record):
        return False
    return apply_hebrew_data(record, oracle, today)
