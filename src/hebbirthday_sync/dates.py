"""
Birthday arithmetic for both calendars.

Every function here is pure and total: a record with a missing or invalid
Gregorian date degrades to age 0 and a one-year-out fallback occurrence, and
missing Hebrew data degrades to None. Nothing raises for well-formed input.
"""

import math
from dataclasses import dataclass
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta

from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.zodiac import gregorian_sign
from hebbirthday_sync.zodiac import hebrew_sign

_SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class BirthdayComputation:
    current_gregorian_age: int
    current_hebrew_age: int
    hebrew_age_known: bool
    next_gregorian_birthday: date
    age_at_next_gregorian_birthday: int
    next_hebrew_birthday: date | None
    age_at_next_hebrew_birthday: int | None
    days_until_gregorian_birthday: int
    days_until_hebrew_birthday: int | None
    next_birthday_type: str  # 'gregorian', 'hebrew' or 'same'
    gregorian_zodiac: str | None
    hebrew_zodiac: str | None


def _as_datetime(reference: date | datetime) -> datetime:
    """Normalise a reference to a naive datetime in its own wall-clock time."""
    if isinstance(reference, datetime):
        return reference.replace(tzinfo=None)
    return datetime.combine(reference, time())


def _as_date(reference: date | datetime) -> date:
    if isinstance(reference, datetime):
        return reference.date()
    return reference


def occurrence_in_year(year: int, month: int, day: int) -> date:
    """The birthday's date in ``year``; 29 February rolls to 1 March in common years."""
    try:
        return date(year, month, day)
    except ValueError:
        return date(year, month, 1) + timedelta(days=day - 1)


def _valid_month_day(month: int | None, day: int | None) -> bool:
    if not month or not day:
        return False
    try:
        date(2000, month, day)  # leap year: accepts 29 February
    except (TypeError, ValueError):
        return False
    return True


def days_until(target: date, reference: date | datetime) -> int:
    """Whole days from reference to target, rounded up and never negative."""
    delta = datetime.combine(target, time()) - _as_datetime(reference)
    return max(0, math.ceil(delta.total_seconds() / _SECONDS_PER_DAY))


def gregorian_age(
    birth_year: int | None,
    birth_month: int | None,
    birth_day: int | None,
    reference: date | datetime,
) -> int:
    """Completed years; the birthday itself counts as already reached."""
    if not birth_year or not _valid_month_day(birth_month, birth_day):
        return 0
    today = _as_date(reference)
    age = today.year - birth_year
    if (today.month, today.day) < (birth_month, birth_day):
        age -= 1
    return age


def next_gregorian_birthday(
    birth_month: int | None, birth_day: int | None, reference: date | datetime
) -> date:
    """Next occurrence strictly after the reference day.

    An occurrence falling on the reference day counts as already passed.
    """
    today = _as_date(reference)
    if not _valid_month_day(birth_month, birth_day):
        return occurrence_in_year(today.year + 1, today.month, today.day)

    passed = (today.month, today.day) >= (birth_month, birth_day)
    year = today.year + 1 if passed else today.year
    return occurrence_in_year(year, birth_month, birth_day)


def hebrew_age(
    hebrew_birth_year: int | None,
    next_hebrew_birthday: date | None,
    next_hebrew_year: int | None,
    reference: date | datetime,
) -> tuple[int, bool]:
    """Return ``(age, known)``.

    Without the oracle-supplied next occurrence the age is reported as 0
    and flagged unknown instead of guessed.
    """
    if not hebrew_birth_year or not next_hebrew_birthday or not next_hebrew_year:
        return 0, False

    age = next_hebrew_year - hebrew_birth_year
    if not next_hebrew_birthday <= _as_date(reference):
        age -= 1
    return max(0, age), True


def next_birthday_type(next_gregorian: date, next_hebrew: date | None) -> str:
    """Which calendar's birthday comes first; 'same' when under a day apart."""
    if next_hebrew is None:
        return "gregorian"
    if abs((next_gregorian - next_hebrew).days) < 1:
        return "same"
    return "gregorian" if next_gregorian < next_hebrew else "hebrew"


def compute_all(record: BirthdayRecord, reference: date | datetime) -> BirthdayComputation:
    """Compute every displayable birthday figure for ``record`` as of ``reference``."""
    greg_age = gregorian_age(
        record.gregorian_year, record.gregorian_month, record.gregorian_day, reference
    )
    next_greg = next_gregorian_birthday(record.gregorian_month, record.gregorian_day, reference)

    heb_age, heb_known = hebrew_age(
        record.hebrew_year,
        record.next_upcoming_hebrew_birthday,
        record.next_upcoming_hebrew_year,
        reference,
    )
    next_heb = record.next_upcoming_hebrew_birthday
    if next_heb and record.hebrew_year and record.next_upcoming_hebrew_year:
        age_at_next_heb = record.next_upcoming_hebrew_year - record.hebrew_year
    else:
        age_at_next_heb = None

    if _valid_month_day(record.gregorian_month, record.gregorian_day):
        greg_sign = gregorian_sign(record.gregorian_month, record.gregorian_day)
    else:
        greg_sign = None

    return BirthdayComputation(
        current_gregorian_age=greg_age,
        current_hebrew_age=heb_age,
        hebrew_age_known=heb_known,
        next_gregorian_birthday=next_greg,
        age_at_next_gregorian_birthday=greg_age + 1,
        next_hebrew_birthday=next_heb,
        age_at_next_hebrew_birthday=age_at_next_heb,
        days_until_gregorian_birthday=days_until(next_greg, reference),
        days_until_hebrew_birthday=days_until(next_heb, reference) if next_heb else None,
        next_birthday_type=next_birthday_type(next_greg, next_heb),
        gregorian_zodiac=greg_sign,
        hebrew_zodiac=hebrew_sign(record.hebrew_month),
    )


def upcoming_birthdays(
    records: list[BirthdayRecord],
    reference: date | datetime,
    within_days: int | None = None,
) -> list[tuple[BirthdayRecord, BirthdayComputation]]:
    """Records paired with their computation, nearest next birthday first.

    The nearest birthday is whichever calendar's occurrence comes first.
    ``within_days`` drops records whose nearest birthday is further away.
    """
    rows = []
    for record in records:
        calc = compute_all(record, reference)
        nearest = calc.days_until_gregorian_birthday
        if calc.days_until_hebrew_birthday is not None:
            nearest = min(nearest, calc.days_until_hebrew_birthday)
        if within_days is not None and nearest > within_days:
            continue
        rows.append((nearest, record.display_name, record, calc))
    rows.sort(key=lambda row: (row[0], row[1]))
    return [(record, calc) for _, _, record, calc in rows]
