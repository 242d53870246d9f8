"""
Client-side sync orchestration.

``SyncOrchestrator`` owns the caller's view of the tenant binding. It applies
the connection and primary-calendar guards before anything reaches the sync
service, turns every service exception into an ``Outcome``, and follows
fire-and-forget bulk jobs with a background polling task that publishes each
status change to subscribers.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Protocol

from hebbirthday_sync.models import BirthdayRecord
from hebbirthday_sync.models import BulkSyncAccepted
from hebbirthday_sync.models import CalendarApiError
from hebbirthday_sync.models import CalendarInfo
from hebbirthday_sync.models import CalendarSyncError
from hebbirthday_sync.models import DeleteAllResult
from hebbirthday_sync.models import DeletionPreview
from hebbirthday_sync.models import FailureKind
from hebbirthday_sync.models import NotConnectedError
from hebbirthday_sync.models import OrphanCleanupResult
from hebbirthday_sync.models import OrphanPreview
from hebbirthday_sync.models import Outcome
from hebbirthday_sync.models import PrimaryCalendarError
from hebbirthday_sync.models import RecordNotFoundError
from hebbirthday_sync.models import RecordSyncResult
from hebbirthday_sync.models import SyncHistoryItem
from hebbirthday_sync.models import TenantCalendarBinding
from hebbirthday_sync.models import TenantSyncStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[[TenantCalendarBinding], None]


class SyncBoundary(Protocol):
    """The remote calendar-sync operations the orchestrator drives."""

    async def get_status(self, user_id: str | None = None) -> TenantCalendarBinding: ...
    async def connect(self) -> TenantCalendarBinding: ...
    async def disconnect(self): ...
    async def sync_one(self, record_id: str, force: bool = False) -> RecordSyncResult: ...
    async def sync_many(self, record_ids: list[str]) -> BulkSyncAccepted: ...
    async def retry_failed(self, tenant_id: str) -> SyncHistoryItem | None: ...
    async def remove(self, record_id: str) -> RecordSyncResult: ...
    async def reset_sync_data(self, record_id: str) -> BirthdayRecord: ...
    async def preview_deletion(self, tenant_id: str) -> DeletionPreview: ...
    async def delete_all(self, tenant_id: str) -> DeleteAllResult: ...
    async def preview_orphans(self, tenant_id: str) -> OrphanPreview: ...
    async def cleanup_orphans(self, tenant_id: str) -> OrphanCleanupResult: ...
    async def list_calendars(self) -> list[CalendarInfo]: ...
    async def create_calendar(self, name: str) -> TenantCalendarBinding: ...
    async def select_calendar(self, calendar_id: str, name: str) -> TenantCalendarBinding: ...
    async def delete_calendar(self, calendar_id: str): ...


def failure_from_exception(e: Exception) -> Outcome:
    """Map a service exception onto a failed Outcome."""
    if isinstance(e, NotConnectedError):
        return Outcome.failed(FailureKind.NOT_CONNECTED, str(e))
    if isinstance(e, PrimaryCalendarError):
        return Outcome.failed(FailureKind.PRIMARY_CALENDAR_BLOCKED, str(e))
    if isinstance(e, RecordNotFoundError):
        return Outcome.failed(FailureKind.NOT_FOUND, str(e))
    if isinstance(e, CalendarApiError) and e.retryable:
        return Outcome.failed(FailureKind.TRANSIENT, str(e))
    return Outcome.failed(FailureKind.FATAL, str(e))


class SyncOrchestrator:
    """Guards, optimistic updates and polling around a ``SyncBoundary``."""

    def __init__(
        self,
        boundary: SyncBoundary,
        user_id: str,
        tenant_id: str,
        poll_delay: float = 3.0,
        max_poll_delay: float = 30.0,
    ):
        self.boundary = boundary
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.poll_delay = poll_delay
        self.max_poll_delay = max_poll_delay
        self.binding = TenantCalendarBinding.disconnected(user_id)
        self.orphans = OrphanReconciler(self)
        self._in_flight: set[str] = set()
        self._subscribers: list[Subscriber] = []
        self._poll_task: asyncio.Task | None = None

    # ------------------------------------------------------------------ #
    # Binding state                                                      #
    # ------------------------------------------------------------------ #

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for binding updates; returns an unsubscribe function."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def _publish(self, binding: TenantCalendarBinding):
        self.binding = binding
        for callback in list(self._subscribers):
            callback(binding)

    async def refresh(self) -> Outcome:
        """Pull the binding from the service and publish it."""
        try:
            binding = await self.boundary.get_status(self.user_id)
        except CalendarSyncError as e:
            return failure_from_exception(e)
        self._publish(binding)
        return Outcome.success(binding)

    def is_in_flight(self, record_id: str) -> bool:
        return record_id in self._in_flight

    # ------------------------------------------------------------------ #
    # Guards                                                             #
    # ------------------------------------------------------------------ #

    def _check_connected(self) -> Outcome | None:
        if not self.binding.is_connected:
            return Outcome.failed(FailureKind.NOT_CONNECTED, "Connect a Google account first")
        return None

    def _check_dedicated(self) -> Outcome | None:
        blocked = self._check_connected()
        if blocked:
            return blocked
        if self.binding.is_primary_calendar:
            return Outcome.failed(
                FailureKind.PRIMARY_CALENDAR_BLOCKED,
                "Syncing to your primary calendar is not allowed. "
                "Create or select a dedicated calendar.",
            )
        return None

    def _check_idle(self) -> Outcome | None:
        if self.binding.sync_status is not TenantSyncStatus.IDLE:
            return Outcome.failed(
                FailureKind.TENANT_BUSY,
                f"Another operation is running ({self.binding.sync_status.value})",
            )
        return None

    async def _call(self, operation: Callable[[], Awaitable]) -> tuple[object, Outcome | None]:
        try:
            return await operation(), None
        except CalendarSyncError as e:
            logger.debug(f"Sync operation failed: {e}")
            return None, failure_from_exception(e)

    # ------------------------------------------------------------------ #
    # Connection                                                         #
    # ------------------------------------------------------------------ #

    async def connect(self) -> Outcome:
        binding, failure = await self._call(self.boundary.connect)
        if failure:
            return failure
        self._publish(binding)
        return Outcome.success(binding)

    async def disconnect(self) -> Outcome:
        _, failure = await self._call(self.boundary.disconnect)
        if failure:
            return failure
        self._publish(TenantCalendarBinding.disconnected(self.user_id))
        return Outcome.success()

    # ------------------------------------------------------------------ #
    # Record sync                                                        #
    # ------------------------------------------------------------------ #

    async def sync_one(self, record_id: str, force: bool = False) -> Outcome:
        blocked = self._check_dedicated()
        if blocked:
            return blocked
        if record_id in self._in_flight:
            return Outcome.failed(FailureKind.ALREADY_IN_FLIGHT, "This record is already syncing")

        self._in_flight.add(record_id)
        try:
            result, failure = await self._call(
                lambda: self.boundary.sync_one(record_id, force=force)
            )
        finally:
            self._in_flight.discard(record_id)
        await self.refresh()

        if failure:
            return failure
        if result.success:
            return Outcome.success(result)
        if result.created or result.updated or result.deleted:
            return Outcome.partial(result, result.error or "Some events failed to sync")
        kind = FailureKind.TRANSIENT if result.retryable else FailureKind.FATAL
        return Outcome.failed(kind, result.error or "Sync failed", value=result)

    async def sync_many(self, record_ids: list[str]) -> Outcome:
        """
        Enqueue a batch and return at once.

        Per-record results arrive through the polled binding and its history.
        """
        blocked = self._check_dedicated() or self._check_idle()
        if blocked:
            return blocked

        accepted, failure = await self._call(lambda: self.boundary.sync_many(list(record_ids)))
        if failure:
            return failure
        if accepted.accepted:
            self._publish(
                dataclasses.replace(self.binding, sync_status=TenantSyncStatus.IN_PROGRESS)
            )
            self._start_polling()
        return Outcome.success(accepted)

    async def retry_failed(self) -> Outcome:
        blocked = self._check_dedicated() or self._check_idle()
        if blocked:
            return blocked
        item, failure = await self._call(lambda: self.boundary.retry_failed(self.tenant_id))
        await self.refresh()
        if failure:
            return failure
        return Outcome.success(item)

    async def remove(self, record_id: str) -> Outcome:
        """Remove a record's events; removing an unsynced record succeeds."""
        blocked = self._check_connected()
        if blocked:
            return blocked
        result, failure = await self._call(lambda: self.boundary.remove(record_id))
        if failure:
            return failure
        if result.success:
            return Outcome.success(result)
        kind = FailureKind.TRANSIENT if result.retryable else FailureKind.FATAL
        return Outcome.failed(kind, result.error or "Removal failed", value=result)

    async def reset_sync_data(self, record_id: str) -> Outcome:
        record, failure = await self._call(lambda: self.boundary.reset_sync_data(record_id))
        return failure or Outcome.success(record)

    # ------------------------------------------------------------------ #
    # Polling                                                            #
    # ------------------------------------------------------------------ #

    def _start_polling(self):
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_until_idle())

    async def _poll_until_idle(self):
        """Re-read the binding with growing delays until the tenant is IDLE."""
        delay = self.poll_delay
        while True:
            await asyncio.sleep(delay)
            outcome = await self.refresh()
            if not outcome.ok:
                logger.warning(f"Status refresh failed: {outcome.message}")
            elif self.binding.sync_status is TenantSyncStatus.IDLE:
                logger.debug("Tenant is idle again, polling stopped")
                return
            delay = min(delay * 2, self.max_poll_delay)

    async def wait_until_idle(self):
        """Wait for the current polling task, if any."""
        if self._poll_task is not None:
            await self._poll_task

    # ------------------------------------------------------------------ #
    # Deletion                                                           #
    # ------------------------------------------------------------------ #

    async def preview_deletion(self) -> Outcome:
        blocked = self._check_connected()
        if blocked:
            return blocked
        preview, failure = await self._call(
            lambda: self.boundary.preview_deletion(self.tenant_id)
        )
        return failure or Outcome.success(preview)

    async def delete_all(self) -> Outcome:
        blocked = self._check_connected() or self._check_idle()
        if blocked:
            return blocked
        self._publish(dataclasses.replace(self.binding, sync_status=TenantSyncStatus.DELETING))
        result, failure = await self._call(lambda: self.boundary.delete_all(self.tenant_id))
        await self.refresh()
        if failure:
            return failure
        if result.failed_count == 0:
            return Outcome.success(result)
        if result.total_deleted > 0:
            return Outcome.partial(result, f"{result.failed_count} event(s) could not be deleted")
        return Outcome.failed(FailureKind.TRANSIENT, "No events could be deleted", value=result)

    # ------------------------------------------------------------------ #
    # Calendars                                                          #
    # ------------------------------------------------------------------ #

    async def list_calendars(self) -> Outcome:
        blocked = self._check_connected()
        if blocked:
            return blocked
        calendars, failure = await self._call(self.boundary.list_calendars)
        return failure or Outcome.success(calendars)

    async def create_dedicated_calendar(self, name: str) -> Outcome:
        blocked = self._check_connected()
        if blocked:
            return blocked
        binding, failure = await self._call(lambda: self.boundary.create_calendar(name))
        if failure:
            return failure
        self._publish(binding)
        return Outcome.success(binding)

    async def select_calendar(self, calendar_id: str, calendar_name: str) -> Outcome:
        """
        Switch calendars optimistically.

        The tentative binding is published immediately. The service's answer
        replaces it on success; the snapshot is restored on failure.
        """
        blocked = self._check_connected()
        if blocked:
            return blocked
        snapshot = self.binding
        self._publish(
            dataclasses.replace(snapshot, calendar_id=calendar_id, calendar_name=calendar_name)
        )
        confirmed, failure = await self._call(
            lambda: self.boundary.select_calendar(calendar_id, calendar_name)
        )
        if failure:
            logger.warning(f"Calendar selection failed, restoring '{snapshot.calendar_name}'")
            self._publish(snapshot)
            return failure
        self._publish(confirmed)
        return Outcome.success(confirmed)

    async def delete_calendar(self, calendar_id: str) -> Outcome:
        blocked = self._check_connected()
        if blocked:
            return blocked
        _, failure = await self._call(lambda: self.boundary.delete_calendar(calendar_id))
        await self.refresh()
        return failure or Outcome.success()


class OrphanReconciler:
    """
    Two-phase orphan cleanup.

    ``cleanup`` is only allowed after a ``preview`` that found something. Each
    cleanup consumes the preview, so the next one needs a fresh preview.
    """

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator
        self.last_preview: OrphanPreview | None = None

    async def preview(self) -> Outcome:
        blocked = self.orchestrator._check_dedicated()
        if blocked:
            return blocked
        tenant_id = self.orchestrator.tenant_id
        preview, failure = await self.orchestrator._call(
            lambda: self.orchestrator.boundary.preview_orphans(tenant_id)
        )
        if failure:
            self.last_preview = None
            return failure
        self.last_preview = preview
        return Outcome.success(preview)

    async def cleanup(self) -> Outcome:
        blocked = self.orchestrator._check_dedicated() or self.orchestrator._check_idle()
        if blocked:
            return blocked
        if self.last_preview is None:
            return Outcome.failed(
                FailureKind.PREVIEW_REQUIRED, "Preview orphaned events before cleaning up"
            )
        if self.last_preview.found_count == 0:
            return Outcome.failed(FailureKind.NOTHING_TO_CLEAN, "No orphaned events were found")

        self.last_preview = None
        tenant_id = self.orchestrator.tenant_id
        result, failure = await self.orchestrator._call(
            lambda: self.orchestrator.boundary.cleanup_orphans(tenant_id)
        )
        await self.orchestrator.refresh()
        if failure:
            return failure
        if result.failed_count:
            return Outcome.partial(result, f"{result.failed_count} event(s) could not be deleted")
        return Outcome.success(result)
