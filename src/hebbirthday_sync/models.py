"""
Plain data types shared by every layer. Nothing here imports the Google client or sqlite3.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_STATE_DB = Path.home() / ".local/share/hebbirthday-sync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/hebbirthday-sync.conf"
DEFAULT_TOKEN_FILE = Path.home() / ".local/share/hebbirthday-sync-token.json"

PRIMARY_CALENDAR_ID = "primary"
MANAGED_APP_TAG = "hebbirthday"

MAX_HEBREW_OCCURRENCES = 10
GREGORIAN_YEARS_AHEAD = 10
HISTORY_LIMIT = 20
MAX_SYNC_RETRIES = 3


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class CalendarApiError(CalendarSyncError):
    """A Google Calendar request failed.

    ``status`` is the HTTP status code when the server answered, or None for
    network failures and timeouts.
    """

    def __init__(self, message: str, status: int | None = None, timed_out: bool = False):
        super().__init__(message)
        self.status = status
        self.timed_out = timed_out

    @property
    def not_found(self) -> bool:
        return self.status in (404, 410)

    @property
    def conflict(self) -> bool:
        return self.status == 409

    @property
    def rate_limited(self) -> bool:
        return self.status in (403, 429)

    @property
    def retryable(self) -> bool:
        """True for failures worth a manual retry: network, timeout, rate limit, 5xx."""
        if self.status is None:
            return True
        return self.rate_limited or self.status >= 500


class NotConnectedError(CalendarSyncError):
    """No Google Calendar binding exists for the user."""

    pass


class PrimaryCalendarError(CalendarSyncError):
    """The binding still points at the user's primary calendar."""

    pass


class RecordNotFoundError(CalendarSyncError):
    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RecordSyncStatus(str, Enum):
    """Stored ``syncMetadata.status``; absent (None) means settled."""

    PENDING = "PENDING"
    ERROR = "ERROR"
    PARTIAL_SYNC = "PARTIAL_SYNC"


class SyncState(str, Enum):
    """Effective per-record sync state, always derived, never stored."""

    IDLE = "idle"
    PENDING = "pending"
    SYNCED = "synced"
    DRIFTED = "drifted"
    FAILED = "failed"


class TenantSyncStatus(str, Enum):
    IDLE = "IDLE"
    IN_PROGRESS = "IN_PROGRESS"
    DELETING = "DELETING"


class HistoryType(str, Enum):
    SINGLE = "SINGLE"
    BATCH = "BATCH"


class HistoryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FailureKind(str, Enum):
    NOT_CONNECTED = "not_connected"
    PRIMARY_CALENDAR_BLOCKED = "primary_calendar_blocked"
    ALREADY_IN_FLIGHT = "already_in_flight"
    TENANT_BUSY = "tenant_busy"
    NOT_FOUND = "not_found"
    NOTHING_TO_CLEAN = "nothing_to_clean"
    PREVIEW_REQUIRED = "preview_required"
    TRANSIENT = "transient"
    FATAL = "fatal"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HebrewOccurrence:
    """One future Hebrew birthday: the Gregorian date it falls on and its Hebrew year."""

    gregorian: date
    hebrew_year: int


@dataclass
class SyncMetadata:
    status: RecordSyncStatus | None = None
    last_attempt_at: datetime | None = None
    failed_keys: list[str] = field(default_factory=list)
    last_error_message: str | None = None
    retry_count: int = 0


@dataclass
class BirthdayRecord:
    """A person's birthday with precomputed Hebrew data and sync bookkeeping."""

    id: str
    tenant_id: str
    first_name: str = ""
    last_name: str = ""
    gregorian_year: int | None = None
    gregorian_month: int | None = None
    gregorian_day: int | None = None
    after_sunset: bool = False
    hebrew_year: int | None = None
    hebrew_month: str | None = None
    hebrew_day: int | None = None
    hebrew_date_string: str | None = None
    next_upcoming_hebrew_birthday: date | None = None
    next_upcoming_hebrew_year: int | None = None
    future_hebrew_birthdays: list[HebrewOccurrence] = field(default_factory=list)
    notes: str = ""
    group_ids: list[str] = field(default_factory=list)
    calendar_preference_override: str | None = None
    archived: bool = False
    # Sync bookkeeping
    google_calendar_events_map: dict[str, str] = field(default_factory=dict)
    synced_data_hash: str | None = None
    synced_schedule_hash: str | None = None
    is_synced: bool | None = None
    sync_metadata: SyncMetadata = field(default_factory=SyncMetadata)
    last_synced_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def birth_date(self) -> date | None:
        """The Gregorian birth date, or None when missing or invalid."""
        try:
            return date(self.gregorian_year, self.gregorian_month, self.gregorian_day)
        except (TypeError, ValueError):
            return None


@dataclass
class Tenant:
    id: str
    owner_id: str
    name: str = ""
    default_language: str = "he"
    default_calendar_preference: str = "both"


@dataclass
class Group:
    id: str
    tenant_id: str
    name: str
    parent_name: str | None = None

    @property
    def label(self) -> str:
        return f"{self.parent_name}: {self.name}" if self.parent_name else self.name


# ---------------------------------------------------------------------------
# Tenant-side sync state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FailedItem:
    name: str
    reason: str


@dataclass(frozen=True)
class SyncHistoryItem:
    """Immutable audit entry for one single or batch sync."""

    type: HistoryType
    status: HistoryStatus
    total: int
    success_count: int
    failed_count: int
    failed_items: tuple[FailedItem, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_results(
        cls,
        history_type: HistoryType,
        total: int,
        failed_items: list[FailedItem],
        timestamp: datetime | None = None,
    ) -> "SyncHistoryItem":
        """Build an item, deriving SUCCESS / PARTIAL / FAILED from the counts."""
        failed_count = len(failed_items)
        success_count = total - failed_count
        if failed_count == 0:
            status = HistoryStatus.SUCCESS
        elif success_count > 0:
            status = HistoryStatus.PARTIAL
        else:
            status = HistoryStatus.FAILED
        return cls(
            type=history_type,
            status=status,
            total=total,
            success_count=success_count,
            failed_count=failed_count,
            failed_items=tuple(failed_items),
            timestamp=timestamp or datetime.now(),
        )


@dataclass
class TenantCalendarBinding:
    """The Google account connection for a tenant-owning user."""

    user_id: str
    calendar_id: str = PRIMARY_CALENDAR_ID
    calendar_name: str = "Primary Calendar"
    email: str = ""
    name: str = ""
    picture: str = ""
    sync_status: TenantSyncStatus = TenantSyncStatus.IDLE
    recent_activity: list[SyncHistoryItem] = field(default_factory=list)
    last_sync_start: datetime | None = None
    created_calendars: list[dict[str, str]] = field(default_factory=list)
    is_connected: bool = True

    @property
    def is_primary_calendar(self) -> bool:
        return self.calendar_id == PRIMARY_CALENDAR_ID or (
            bool(self.email) and self.calendar_id == self.email
        )

    @classmethod
    def disconnected(cls, user_id: str) -> "TenantCalendarBinding":
        return cls(user_id=user_id, calendar_id="", calendar_name="", is_connected=False)


@dataclass(frozen=True)
class CalendarInfo:
    id: str
    summary: str
    description: str = ""
    primary: bool = False


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class RecordSyncResult:
    """Result of pushing one record to the calendar."""

    record_id: str
    success: bool
    skipped: bool = False
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed_keys: list[str] = field(default_factory=list)
    error: str | None = None
    event_id: str | None = None
    retryable: bool = False


@dataclass(frozen=True)
class BulkSyncAccepted:
    accepted: bool
    queued_count: int


@dataclass(frozen=True)
class DeletionSummaryItem:
    name: str
    hebrew_events: int
    gregorian_events: int

    @property
    def count(self) -> int:
        return self.hebrew_events + self.gregorian_events


@dataclass(frozen=True)
class DeletionPreview:
    calendar_name: str
    records_count: int
    total_count: int
    summary: tuple[DeletionSummaryItem, ...] = ()


@dataclass(frozen=True)
class DeleteAllResult:
    total_deleted: int
    failed_count: int
    calendar_name: str


@dataclass(frozen=True)
class OrphanPreview:
    found_count: int
    calendar_name: str


@dataclass(frozen=True)
class OrphanCleanupResult:
    deleted_count: int
    failed_count: int
    calendar_name: str


@dataclass
class Outcome:
    """Typed result of an externally visible operation."""

    status: OutcomeStatus
    value: Any = None
    failure: FailureKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "Outcome":
        return cls(OutcomeStatus.SUCCESS, value=value, message=message)

    @classmethod
    def partial(cls, value: Any = None, message: str = "") -> "Outcome":
        return cls(OutcomeStatus.PARTIAL, value=value, message=message)

    @classmethod
    def failed(cls, failure: FailureKind, message: str = "", value: Any = None) -> "Outcome":
        return cls(OutcomeStatus.FAILED, value=value, failure=failure, message=message)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class SyncConfig:
    """Configuration for calendar sync operation."""

    user_id: str
    tenant_id: str
    state_db_path: Path
    token_file: Path = DEFAULT_TOKEN_FILE
    client_secrets_file: Path | None = None
    language: str = "he"
    request_timeout: float = 300.0
    poll_delay: float = 3.0
    chunk_size: int = 5
    chunk_delay: float = 1.0
    delete_pause: float = 0.15
    history_limit: int = HISTORY_LIMIT
    dry_run: bool = False
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting


@dataclass
class SyncStats:
    """Event-level statistics for a sync operation."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
