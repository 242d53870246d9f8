"""
Stateless helpers shared by the sync routines.
"""

import asyncio
import hashlib
import logging
import random
from collections.abc import Awaitable
from collections.abc import Callable
from typing import TypeVar

from hebbirthday_sync.models import CalendarApiError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def deterministic_event_id(record_id: str, key: str) -> str:
    """Stable Google event id for a record's event.

    Re-creating the same event after a crash or a retry hits the same id, so
    Google answers 409 instead of producing a duplicate. Google requires
    base32hex characters (0-9, a-v); ``hb`` plus an md5 hex digest qualifies.
    """
    digest = hashlib.md5(f"{record_id}_{key}".encode("utf-8")).hexdigest()
    return f"hb{digest}"


def is_not_found_error(e: Exception) -> bool:
    """Return True when Google reports the event (or calendar) does not exist.

    404 and 410 both mean "already gone", which is harmless for deletes and
    triggers a re-create for updates.
    """
    return isinstance(e, CalendarApiError) and e.not_found


def is_conflict_error(e: Exception) -> bool:
    return isinstance(e, CalendarApiError) and e.conflict


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 4,
    base_delay: float = 1.0,
) -> T:
    """
    Run an async operation, retrying on rate-limit responses (403/429).

    Back-off doubles per attempt with up to half a second of jitter. Any
    other error is raised immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except CalendarApiError as e:
            if not e.rate_limited or attempt == max_retries:
                raise
            delay = base_delay * (2**attempt) + random.random() * 0.5
            _logger.warning(
                f"Rate limit hit (code {e.status}). Retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{max_retries})"
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
