"""
CalendarSyncService: the service side of every sync operation, delegating to sync submodules.
"""

import asyncio
import logging
from datetime import date
from datetime import datetime

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.hebrew import HebrewCalendarOracle
from hebbirthday_sync.hebrew import refresh_hebrew_data
from hebbirthday_sync.models import PRIMARY_CALENDAR_ID
from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import BulkSyncAccepted
from hebbirthday_sync.models import CalendarInfo
from hebbirthday_sync.models import DeleteAllResult
from hebbirthday_sync.models import DeletionPreview
from hebbirthday_sync.models import FailedItem
from hebbirthday_sync.models import HistoryType
from hebbirthday_sync.models import NotConnectedError
from hebbirthday_sync.models import OrphanCleanupResult
from hebbirthday_sync.models import OrphanPreview
from hebbirthday_sync.models import PrimaryCalendarError
from hebbirthday_sync.models import RecordNotFoundError
from hebbirthday_sync.models import RecordSyncResult
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncHistoryItem
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus
from hebbirthday_sync.status import mark_pending
from hebbirthday_sync.status import reset_sync_data
from hebbirthday_sync.status import tenant_transition
from hebbirthday_sync.sync.bulk import failed_record_ids
from hebbirthday_sync.sync.bulk import run_batch
from hebbirthday_sync.sync.deletion import delete_all
from hebbirthday_sync.sync.deletion import summarize_deletion
from hebbirthday_sync.sync.orphans import cleanup_orphans
from hebbirthday_sync.sync.orphans import find_orphans
from hebbirthday_sync.sync.record import push_record
from hebbirthday_sync.sync.record import remove_record_events
from hebbirthday_sync.sync.record import should_skip


class CalendarSyncService:
    """Sync engine bound to one user's Google account and local state database."""

    def __init__(
        self,
        config: SyncConfig,
        state_db: StateDatabase,
        client: GoogleCalendarClient | None = None,
        oracle: HebrewCalendarOracle | None = None,
    ):
        self.config = config
        self.state_db = state_db
        self.client = client
        self.oracle = oracle
        self.logger = logging.getLogger(__name__)
        self.stats = SyncStats()
        self._jobs: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #

    def _require_client(self) -> GoogleCalendarClient:
        if self.client is None:
            raise NotConnectedError("Not connected to Google Calendar")
        return self.client

    def _binding(self) -> TenantCalendarBinding:
        binding = self.state_db.get_binding(self.config.user_id)
        if binding is None:
            raise NotConnectedError("Not connected to Google Calendar")
        self._require_client()
        return binding

    def _dedicated_binding(self) -> TenantCalendarBinding:
        binding = self._binding()
        if binding.is_primary_calendar:
            raise PrimaryCalendarError("Select or create a dedicated calendar before syncing")
        return binding

    def _record(self, record_id: str) -> BirthdayRecord:
        record = self.state_db.get_birthday(record_id)
        if record is None:
            raise RecordNotFoundError(f"Birthday record {record_id} not found")
        return record

    def _tenant_context(self, tenant_id: str):
        return self.state_db.get_tenant(tenant_id), self.state_db.get_groups(tenant_id)

    # ------------------------------------------------------------------ #
    # Connection                                                         #
    # ------------------------------------------------------------------ #

    async def get_status(self, user_id: str | None = None) -> TenantCalendarBinding:
        """The user's binding, or a disconnected placeholder."""
        user_id = user_id or self.config.user_id
        binding = self.state_db.get_binding(user_id)
        return binding or TenantCalendarBinding.disconnected(user_id)

    async def connect(self) -> TenantCalendarBinding:
        """
        Bind the authorised Google account.

        A fresh binding points at the primary calendar, which stays blocked
        for sync until a dedicated calendar is selected. Reconnecting keeps
        the existing calendar selection.
        """
        client = self._require_client()
        info = await client.get_user_info()
        binding = self.state_db.get_binding(self.config.user_id) or TenantCalendarBinding(
            user_id=self.config.user_id
        )
        binding.email = info.get("email", "")
        binding.name = info.get("name", "")
        binding.picture = info.get("picture", "")
        self.state_db.save_binding(binding)
        self.state_db.commit()
        self.logger.info(f"Connected Google account {binding.email}")
        return self.state_db.get_binding(self.config.user_id)

    async def disconnect(self):
        """Revoke the grant and forget the binding; record sync fields are kept."""
        if self.client is not None:
            await self.client.revoke()
        self.state_db.delete_binding(self.config.user_id)
        self.state_db.clear_history(self.config.user_id)
        self.state_db.commit()
        self.logger.info("Disconnected from Google Calendar")

    # ------------------------------------------------------------------ #
    # Record sync                                                        #
    # ------------------------------------------------------------------ #

    async def sync_one(self, record_id: str, force: bool = False) -> RecordSyncResult:
        """Push one record now and append a SINGLE history item."""
        binding = self._dedicated_binding()
        record = self._record(record_id)
        tenant, groups = self._tenant_context(record.tenant_id)
        today = date.today()

        changed = refresh_hebrew_data(record, self.oracle, today)
        if not self.config.dry_run and not should_skip(record, tenant, groups, today, force):
            mark_pending(record)
            changed = True
        if changed and not self.config.dry_run:
            self.state_db.save_birthday(record)
            self.state_db.commit()

        result = await push_record(
            self.config,
            self.stats,
            self.logger,
            self.client,
            self.state_db,
            binding,
            record,
            tenant,
            groups,
            today=today,
            force=force,
        )

        if not self.config.dry_run and not result.skipped:
            failed = []
            if not result.success:
                failed.append(
                    FailedItem(name=record.display_name, reason=result.error or "Sync failed")
                )
            item = SyncHistoryItem.from_results(HistoryType.SINGLE, 1, failed)
            self.state_db.add_history(binding.user_id, item, self.config.history_limit)
            self.state_db.commit()
        return result

    async def sync_many(self, record_ids: list[str]) -> BulkSyncAccepted:
        """
        Accept a batch and run it as a background job.

        The tenant becomes IN_PROGRESS immediately and returns to IDLE when
        the job finishes; progress is observed by polling ``get_status``.
        """
        binding = self._dedicated_binding()
        if not record_ids:
            return BulkSyncAccepted(accepted=False, queued_count=0)

        if not self.config.dry_run:
            binding.sync_status = tenant_transition(
                binding.sync_status, TenantSyncStatus.IN_PROGRESS
            )
            binding.last_sync_start = datetime.now()
            self.state_db.set_sync_status(
                binding.user_id, binding.sync_status, binding.last_sync_start
            )
            self.state_db.commit()

        tenant_id = self.config.tenant_id
        tenant, groups = self._tenant_context(tenant_id)
        job = asyncio.create_task(
            run_batch(
                self.config,
                self.stats,
                self.logger,
                self.client,
                self.state_db,
                binding,
                list(record_ids),
                tenant,
                groups,
                oracle=self.oracle,
            )
        )
        self._jobs.add(job)
        job.add_done_callback(self._job_done)
        self.logger.info(f"Queued {len(record_ids)} record(s) for sync")
        return BulkSyncAccepted(accepted=True, queued_count=len(record_ids))

    def _job_done(self, job: asyncio.Task):
        self._jobs.discard(job)
        if not job.cancelled() and job.exception() is not None:
            self.logger.error(f"Background sync job failed: {job.exception()}")

    async def wait_for_jobs(self):
        """Wait for every background job started by this service."""
        while True:
            pending = [job for job in self._jobs if not job.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def retry_failed(self, tenant_id: str) -> SyncHistoryItem | None:
        """Re-sync failed records with retries left; None when there are none."""
        record_ids = failed_record_ids(self.state_db, tenant_id)
        if not record_ids:
            self.logger.info("No failed records to retry")
            return None
        binding = self._dedicated_binding()
        if not self.config.dry_run:
            binding.sync_status = tenant_transition(
                binding.sync_status, TenantSyncStatus.IN_PROGRESS
            )
            self.state_db.set_sync_status(binding.user_id, binding.sync_status, datetime.now())
            self.state_db.commit()
        tenant, groups = self._tenant_context(tenant_id)
        return await run_batch(
            self.config,
            self.stats,
            self.logger,
            self.client,
            self.state_db,
            binding,
            record_ids,
            tenant,
            groups,
            oracle=self.oracle,
        )

    async def remove(self, record_id: str) -> RecordSyncResult:
        binding = self._binding()
        record = self._record(record_id)
        return await remove_record_events(
            self.config, self.stats, self.logger, self.client, self.state_db, binding, record
        )

    async def reset_sync_data(self, record_id: str) -> BirthdayRecord:
        """Discard what was pushed for a record without touching the calendar."""
        record = self._record(record_id)
        reset_sync_data(record)
        self.state_db.save_birthday(record)
        self.state_db.commit()
        self.logger.info(f"Reset sync data for {record.display_name}")
        return record

    async def save_birthday(self, record: BirthdayRecord) -> BirthdayRecord:
        """
        Store a new or edited record.

        Hebrew data is recomputed through the oracle when the birth date or
        the sunset flag changed against the stored version, or is missing.
        """
        before = self.state_db.get_birthday(record.id)
        if refresh_hebrew_data(record, self.oracle, date.today(), before=before):
            self.logger.info(f"Recalculated Hebrew data for {record.display_name}")
        self.state_db.save_birthday(record)
        self.state_db.commit()
        return record

    # ------------------------------------------------------------------ #
    # Bulk deletion and orphans                                          #
    # ------------------------------------------------------------------ #

    async def preview_deletion(self, tenant_id: str) -> DeletionPreview:
        binding = self._binding()
        records = self.state_db.get_synced_birthdays(tenant_id)
        return summarize_deletion(records, binding.calendar_name)

    async def delete_all(self, tenant_id: str) -> DeleteAllResult:
        binding = self._binding()
        return await delete_all(
            self.config, self.stats, self.logger, self.client, self.state_db, binding, tenant_id
        )

    async def preview_orphans(self, tenant_id: str) -> OrphanPreview:
        binding = self._dedicated_binding()
        orphans = await find_orphans(self.logger, self.client, self.state_db, binding, tenant_id)
        return OrphanPreview(found_count=len(orphans), calendar_name=binding.calendar_name)

    async def cleanup_orphans(self, tenant_id: str) -> OrphanCleanupResult:
        binding = self._dedicated_binding()
        return await cleanup_orphans(
            self.config, self.stats, self.logger, self.client, self.state_db, binding, tenant_id
        )

    # ------------------------------------------------------------------ #
    # Calendars                                                          #
    # ------------------------------------------------------------------ #

    async def list_calendars(self) -> list[CalendarInfo]:
        self._binding()
        return await self.client.list_calendars()

    async def create_calendar(self, name: str) -> TenantCalendarBinding:
        """Create a dedicated calendar and bind it."""
        binding = self._binding()
        calendar = await self.client.create_calendar(name)
        binding.calendar_id = calendar.id
        binding.calendar_name = calendar.summary
        binding.created_calendars.append(
            {
                "calendarId": calendar.id,
                "calendarName": calendar.summary,
                "createdAt": datetime.now().isoformat(timespec="seconds"),
            }
        )
        self.state_db.save_binding(binding)
        self.state_db.commit()
        self.logger.info(f"Created and selected calendar '{calendar.summary}'")
        return binding

    async def select_calendar(self, calendar_id: str, name: str) -> TenantCalendarBinding:
        binding = self._binding()
        binding.calendar_id = calendar_id
        binding.calendar_name = name
        self.state_db.save_binding(binding)
        self.state_db.commit()
        self.logger.info(f"Selected calendar '{name}' ({calendar_id})")
        return binding

    async def delete_calendar(self, calendar_id: str):
        """
        Delete a calendar at Google.

        Deleting the bound calendar falls back to the primary binding and
        resets sync data of the tenant's records, whose events went with it.
        """
        binding = self._binding()
        if calendar_id in (PRIMARY_CALENDAR_ID, binding.email):
            raise PrimaryCalendarError("The primary calendar cannot be deleted")
        await self.client.delete_calendar(calendar_id)
        binding.created_calendars = [
            c for c in binding.created_calendars if c.get("calendarId") != calendar_id
        ]
        if binding.calendar_id == calendar_id:
            binding.calendar_id = PRIMARY_CALENDAR_ID
            binding.calendar_name = "Primary Calendar"
            for record in self.state_db.get_synced_birthdays(self.config.tenant_id):
                reset_sync_data(record)
                self.state_db.save_birthday(record)
        self.state_db.save_binding(binding)
        self.state_db.commit()
        self.logger.info(f"Deleted calendar {calendar_id}")
