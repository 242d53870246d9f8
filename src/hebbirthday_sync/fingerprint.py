"""
Content fingerprint used to detect drift between a record and its calendar events.
"""

import hashlib

from hebbirthday_sync.models import BirthdayRecord

FIELD_SEPARATOR = "|"


def compute_fingerprint(record: BirthdayRecord) -> str:
    """
    Generate a SHA-256 fingerprint of the calendar-relevant fields of a record.

    Covers first name, last name, notes, the group set and the calendar
    preference override, pipe-separated in that order. Groups are sorted so
    membership order does not matter. Sync bookkeeping fields are never
    included: the fingerprint answers "did the user change something that the
    calendar should show?".
    """
    groups = ",".join(sorted(record.group_ids or []))
    payload = FIELD_SEPARATOR.join(
        [
            record.first_name or "",
            record.last_name or "",
            record.notes or "",
            groups,
            record.calendar_preference_override or "",
        ]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_schedule_hash(record: BirthdayRecord) -> str:
    """
    SHA-256 of the fields that decide when events fall.

    Kept apart from the content fingerprint: birth date, the after-sunset flag
    and every precomputed Hebrew occurrence (date and Hebrew year). A change
    here moves events even though the record's content looks the same.
    """
    birth = record.birth_date
    occurrences = ",".join(
        f"{o.gregorian.isoformat()}:{o.hebrew_year}" for o in record.future_hebrew_birthdays
    )
    payload = FIELD_SEPARATOR.join(
        [
            birth.isoformat() if birth else "",
            "1" if record.after_sunset else "0",
            occurrences,
        ]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
