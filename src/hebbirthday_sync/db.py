"""
SQLite persistence for birthday records, tenants, calendar bindings and sync history.
"""

import json
import logging
import sqlite3
from datetime import date
from datetime import datetime
from pathlib import Path

from hebbirthday_sync.models import HISTORY_LIMIT
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import CalendarSyncError
from hebbirthday_sync.models import FailedItem
from hebbirthday_sync.models import Group
from hebbirthday_sync.models import HebrewOccurrence
from hebbirthday_sync.models import HistoryStatus
from hebbirthday_sync.models import HistoryType
from hebbirthday_sync.models import RecordSyncStatus
from hebbirthday_sync.models import SyncHistoryItem
from hebbirthday_sync.models import SyncMetadata
from hebbirthday_sync.models import Tenant
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus

logger = logging.getLogger(__name__)

_BIRTHDAY_COLUMNS = (
    "id",
    "tenant_id",
    "first_name",
    "last_name",
    "gregorian_year",
    "gregorian_month",
    "gregorian_day",
    "after_sunset",
    "hebrew_year",
    "hebrew_month",
    "hebrew_day",
    "hebrew_date_string",
    "next_upcoming_hebrew_birthday",
    "next_upcoming_hebrew_year",
    "future_hebrew_birthdays",
    "notes",
    "group_ids",
    "calendar_preference_override",
    "archived",
    "events_map",
    "synced_data_hash",
    "synced_schedule_hash",
    "is_synced",
    "sync_status",
    "last_attempt_at",
    "failed_keys",
    "last_error_message",
    "retry_count",
    "last_synced_at",
)


def _ts(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value else None


def _dt(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value) if value is not None else None


def _bool_or_none(value: int | None) -> bool | None:
    return None if value is None else bool(value)


class StateDatabase:
    """Manages the SQLite database holding records and sync state."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS tenants (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                default_language TEXT NOT NULL DEFAULT 'he',
                default_calendar_preference TEXT NOT NULL DEFAULT 'both'
            );
            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                parent_name TEXT
            );
            CREATE TABLE IF NOT EXISTS birthdays (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                gregorian_year INTEGER,
                gregorian_month INTEGER,
                gregorian_day INTEGER,
                after_sunset INTEGER NOT NULL DEFAULT 0,
                hebrew_year INTEGER,
                hebrew_month TEXT,
                hebrew_day INTEGER,
                hebrew_date_string TEXT,
                next_upcoming_hebrew_birthday TEXT,
                next_upcoming_hebrew_year INTEGER,
                future_hebrew_birthdays TEXT NOT NULL DEFAULT '[]',
                notes TEXT NOT NULL DEFAULT '',
                group_ids TEXT NOT NULL DEFAULT '[]',
                calendar_preference_override TEXT,
                archived INTEGER NOT NULL DEFAULT 0,
                events_map TEXT NOT NULL DEFAULT '{}',
                synced_data_hash TEXT,
                synced_schedule_hash TEXT,
                is_synced INTEGER,
                sync_status TEXT,
                last_attempt_at INTEGER,
                failed_keys TEXT NOT NULL DEFAULT '[]',
                last_error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_synced_at INTEGER
            );
            CREATE INDEX IF NOT EXISTS birthdays_tenant ON birthdays(tenant_id);
            CREATE TABLE IF NOT EXISTS calendar_bindings (
                user_id TEXT PRIMARY KEY,
                calendar_id TEXT NOT NULL,
                calendar_name TEXT NOT NULL,
                email TEXT NOT NULL DEFAULT '',
                name TEXT NOT NULL DEFAULT '',
                picture TEXT NOT NULL DEFAULT '',
                sync_status TEXT NOT NULL DEFAULT 'IDLE',
                last_sync_start INTEGER,
                created_calendars TEXT NOT NULL DEFAULT '[]'
            );
            CREATE TABLE IF NOT EXISTS sync_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                total INTEGER NOT NULL,
                success_count INTEGER NOT NULL,
                failed_count INTEGER NOT NULL,
                failed_items TEXT NOT NULL DEFAULT '[]',
                timestamp INTEGER NOT NULL
            );
        """)
        self._add_missing_columns()
        self.conn.commit()

    def _add_missing_columns(self):
        """Bring a birthdays table created by an older version up to date."""
        existing = {row["name"] for row in self.conn.execute("PRAGMA table_info(birthdays)")}
        if "synced_schedule_hash" not in existing:
            logger.info("Migrating state DB: adding birthdays.synced_schedule_hash")
            self.conn.execute("ALTER TABLE birthdays ADD COLUMN synced_schedule_hash TEXT")

    # ------------------------------------------------------------------ #
    # Tenants and groups                                                 #
    # ------------------------------------------------------------------ #

    def save_tenant(self, tenant: Tenant):
        self.conn.execute(
            "INSERT OR REPLACE INTO tenants "
            "(id, owner_id, name, default_language, default_calendar_preference) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                tenant.id,
                tenant.owner_id,
                tenant.name,
                tenant.default_language,
                tenant.default_calendar_preference,
            ),
        )

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = self.conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
        if row is None:
            return None
        return Tenant(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            default_language=row["default_language"],
            default_calendar_preference=row["default_calendar_preference"],
        )

    def save_group(self, group: Group):
        self.conn.execute(
            "INSERT OR REPLACE INTO groups (id, tenant_id, name, parent_name) VALUES (?, ?, ?, ?)",
            (group.id, group.tenant_id, group.name, group.parent_name),
        )

    def get_groups(self, tenant_id: str) -> list[Group]:
        cursor = self.conn.execute(
            "SELECT * FROM groups WHERE tenant_id = ? ORDER BY name", (tenant_id,)
        )
        return [
            Group(
                id=row["id"],
                tenant_id=row["tenant_id"],
                name=row["name"],
                parent_name=row["parent_name"],
            )
            for row in cursor.fetchall()
        ]

    # ------------------------------------------------------------------ #
    # Birthday records                                                   #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _record_to_row(record: BirthdayRecord) -> tuple:
        meta = record.sync_metadata
        upcoming = record.next_upcoming_hebrew_birthday
        futures = [
            {"gregorian": f.gregorian.isoformat(), "hebrewYear": f.hebrew_year}
            for f in record.future_hebrew_birthdays
        ]
        return (
            record.id,
            record.tenant_id,
            record.first_name,
            record.last_name,
            record.gregorian_year,
            record.gregorian_month,
            record.gregorian_day,
            int(record.after_sunset),
            record.hebrew_year,
            record.hebrew_month,
            record.hebrew_day,
            record.hebrew_date_string,
            upcoming.isoformat() if upcoming else None,
            record.next_upcoming_hebrew_year,
            json.dumps(futures),
            record.notes,
            json.dumps(list(record.group_ids)),
            record.calendar_preference_override,
            int(record.archived),
            json.dumps(record.google_calendar_events_map),
            record.synced_data_hash,
            record.synced_schedule_hash,
            None if record.is_synced is None else int(record.is_synced),
            meta.status.value if meta.status else None,
            _ts(meta.last_attempt_at),
            json.dumps(list(meta.failed_keys)),
            meta.last_error_message,
            meta.retry_count,
            _ts(record.last_synced_at),
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> BirthdayRecord:
        upcoming = row["next_upcoming_hebrew_birthday"]
        futures = [
            HebrewOccurrence(
                gregorian=date.fromisoformat(item["gregorian"]),
                hebrew_year=item["hebrewYear"],
            )
            for item in json.loads(row["future_hebrew_birthdays"])
        ]
        status = row["sync_status"]
        return BirthdayRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            gregorian_year=row["gregorian_year"],
            gregorian_month=row["gregorian_month"],
            gregorian_day=row["gregorian_day"],
            after_sunset=bool(row["after_sunset"]),
            hebrew_year=row["hebrew_year"],
            hebrew_month=row["hebrew_month"],
            hebrew_day=row["hebrew_day"],
            hebrew_date_string=row["hebrew_date_string"],
            next_upcoming_hebrew_birthday=date.fromisoformat(upcoming) if upcoming else None,
            next_upcoming_hebrew_year=row["next_upcoming_hebrew_year"],
            future_hebrew_birthdays=futures,
            notes=row["notes"],
            group_ids=json.loads(row["group_ids"]),
            calendar_preference_override=row["calendar_preference_override"],
            archived=bool(row["archived"]),
            google_calendar_events_map=json.loads(row["events_map"]),
            synced_data_hash=row["synced_data_hash"],
            synced_schedule_hash=row["synced_schedule_hash"],
            is_synced=_bool_or_none(row["is_synced"]),
            sync_metadata=SyncMetadata(
                status=RecordSyncStatus(status) if status else None,
                last_attempt_at=_dt(row["last_attempt_at"]),
                failed_keys=json.loads(row["failed_keys"]),
                last_error_message=row["last_error_message"],
                retry_count=row["retry_count"],
            ),
            last_synced_at=_dt(row["last_synced_at"]),
        )

    def save_birthday(self, record: BirthdayRecord):
        """Insert or fully replace a record."""
        placeholders = ", ".join("?" for _ in _BIRTHDAY_COLUMNS)
        self.conn.execute(
            f"INSERT OR REPLACE INTO birthdays ({', '.join(_BIRTHDAY_COLUMNS)}) "
            f"VALUES ({placeholders})",
            self._record_to_row(record),
        )

    def get_birthday(self, record_id: str) -> BirthdayRecord | None:
        row = self.conn.execute("SELECT * FROM birthdays WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def get_birthdays(self, tenant_id: str, include_archived: bool = True) -> list[BirthdayRecord]:
        """All records of a tenant, ordered by name."""
        query = "SELECT * FROM birthdays WHERE tenant_id = ?"
        if not include_archived:
            query += " AND archived = 0"
        query += " ORDER BY first_name, last_name"
        return [self._row_to_record(row) for row in self.conn.execute(query, (tenant_id,))]

    def get_failed_birthdays(self, tenant_id: str, max_retries: int) -> list[BirthdayRecord]:
        """Non-archived records in ERROR or PARTIAL_SYNC that may still be retried."""
        cursor = self.conn.execute(
            "SELECT * FROM birthdays WHERE tenant_id = ? AND archived = 0 "
            "AND sync_status IN (?, ?) AND retry_count < ? ORDER BY first_name, last_name",
            (
                tenant_id,
                RecordSyncStatus.ERROR.value,
                RecordSyncStatus.PARTIAL_SYNC.value,
                max_retries,
            ),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_synced_birthdays(self, tenant_id: str) -> list[BirthdayRecord]:
        """Records whose event map is non-empty."""
        cursor = self.conn.execute(
            "SELECT * FROM birthdays WHERE tenant_id = ? AND events_map != '{}' "
            "ORDER BY first_name, last_name",
            (tenant_id,),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def delete_birthday(self, record_id: str):
        self.conn.execute("DELETE FROM birthdays WHERE id = ?", (record_id,))

    # ------------------------------------------------------------------ #
    # Calendar binding and history                                       #
    # ------------------------------------------------------------------ #

    def get_binding(self, user_id: str) -> TenantCalendarBinding | None:
        """The stored binding for ``user_id`` with its recent activity, or None."""
        row = self.conn.execute(
            "SELECT * FROM calendar_bindings WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None
        return TenantCalendarBinding(
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            calendar_name=row["calendar_name"],
            email=row["email"],
            name=row["name"],
            picture=row["picture"],
            sync_status=TenantSyncStatus(row["sync_status"]),
            recent_activity=self.get_history(user_id),
            last_sync_start=_dt(row["last_sync_start"]),
            created_calendars=json.loads(row["created_calendars"]),
            is_connected=True,
        )

    def save_binding(self, binding: TenantCalendarBinding):
        if not binding.is_connected:
            raise CalendarSyncError("Refusing to store a disconnected calendar binding")
        self.conn.execute(
            "INSERT OR REPLACE INTO calendar_bindings "
            "(user_id, calendar_id, calendar_name, email, name, picture, "
            " sync_status, last_sync_start, created_calendars) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                binding.user_id,
                binding.calendar_id,
                binding.calendar_name,
                binding.email,
                binding.name,
                binding.picture,
                binding.sync_status.value,
                _ts(binding.last_sync_start),
                json.dumps(binding.created_calendars),
            ),
        )

    def set_sync_status(
        self, user_id: str, status: TenantSyncStatus, last_sync_start: datetime | None = None
    ):
        """Update only the tenant-wide status (and optionally the start time)."""
        if last_sync_start is not None:
            self.conn.execute(
                "UPDATE calendar_bindings SET sync_status = ?, last_sync_start = ? "
                "WHERE user_id = ?",
                (status.value, _ts(last_sync_start), user_id),
            )
        else:
            self.conn.execute(
                "UPDATE calendar_bindings SET sync_status = ? WHERE user_id = ?",
                (status.value, user_id),
            )

    def delete_binding(self, user_id: str):
        self.conn.execute("DELETE FROM calendar_bindings WHERE user_id = ?", (user_id,))

    def add_history(self, user_id: str, item: SyncHistoryItem, limit: int = HISTORY_LIMIT):
        """Append a history item and trim the user's history to ``limit`` rows."""
        failed = [{"name": f.name, "reason": f.reason} for f in item.failed_items]
        self.conn.execute(
            "INSERT INTO sync_history "
            "(user_id, type, status, total, success_count, failed_count, failed_items, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                user_id,
                item.type.value,
                item.status.value,
                item.total,
                item.success_count,
                item.failed_count,
                json.dumps(failed, ensure_ascii=False),
                _ts(item.timestamp),
            ),
        )
        self.conn.execute(
            "DELETE FROM sync_history WHERE user_id = ? AND id NOT IN ("
            " SELECT id FROM sync_history WHERE user_id = ? ORDER BY id DESC LIMIT ?)",
            (user_id, user_id, limit),
        )

    def get_history(self, user_id: str, limit: int = HISTORY_LIMIT) -> list[SyncHistoryItem]:
        """History items, newest first."""
        cursor = self.conn.execute(
            "SELECT * FROM sync_history WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [
            SyncHistoryItem(
                type=HistoryType(row["type"]),
                status=HistoryStatus(row["status"]),
                total=row["total"],
                success_count=row["success_count"],
                failed_count=row["failed_count"],
                failed_items=tuple(
                    FailedItem(name=f["name"], reason=f["reason"])
                    for f in json.loads(row["failed_items"])
                ),
                timestamp=_dt(row["timestamp"]),
            )
            for row in cursor.fetchall()
        ]

    def clear_history(self, user_id: str):
        self.conn.execute("DELETE FROM sync_history WHERE user_id = ?", (user_id,))

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_tenant_summary(db_path: Path, tenant_id: str) -> sqlite3.Row | None:
    """
    Aggregate counts for a tenant's records, for the status view.

    Exposes: total, archived, with_events, failed. Returns None when the DB file
    does not exist yet.
    """
    if not db_path.exists():
        return None
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute(
            """
            SELECT
                COUNT(*)                                         AS total,
                COALESCE(SUM(archived), 0)                       AS archived,
                COALESCE(SUM(events_map != '{}'), 0)             AS with_events,
                COALESCE(SUM(sync_status IN ('ERROR', 'PARTIAL_SYNC')), 0) AS failed
            FROM birthdays
            WHERE tenant_id = ?
            """,
            (tenant_id,),
        ).fetchone()
    except sqlite3.OperationalError as e:
        logger.debug(f"Tenant summary unavailable: {e}")
        return None
    finally:
        conn.close()
