"""
Unit tests for how GoogleCalendarClient turns request failures into CalendarApiError.
"""

import asyncio
import time

import httplib2
import pytest
from googleapiclient.errors import HttpError

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.models import CalendarApiError


class StubRequest:
    """Stands in for a googleapiclient HttpRequest."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay

    def execute(self):
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _execute(request, timeout=5.0):
    client = GoogleCalendarClient(credentials=None, timeout=timeout)
    return asyncio.run(client._execute(request, "events.insert"))


def _http_error(status):
    resp = httplib2.Response({"status": str(status)})
    return HttpError(resp, b'{"error": {"message": "boom"}}')


def test_result_is_returned():
    assert _execute(StubRequest(result={"id": "ev1"})) == {"id": "ev1"}


def test_empty_body_becomes_empty_dict():
    assert _execute(StubRequest(result=None)) == {}


def test_slow_request_times_out():
    with pytest.raises(CalendarApiError) as exc:
        _execute(StubRequest(result={}, delay=0.3), timeout=0.01)
    assert exc.value.timed_out
    assert exc.value.status is None
    assert exc.value.retryable


@pytest.mark.parametrize(
    "status, attribute",
    [(404, "not_found"), (410, "not_found"), (409, "conflict"), (429, "rate_limited")],
)
def test_http_error_keeps_status(status, attribute):
    with pytest.raises(CalendarApiError) as exc:
        _execute(StubRequest(error=_http_error(status)))
    assert exc.value.status == status
    assert getattr(exc.value, attribute)
    assert not exc.value.timed_out


def test_server_error_is_retryable_and_client_error_is_not():
    with pytest.raises(CalendarApiError) as server:
        _execute(StubRequest(error=_http_error(503)))
    with pytest.raises(CalendarApiError) as client:
        _execute(StubRequest(error=_http_error(400)))
    assert server.value.retryable
    assert not client.value.retryable


@pytest.mark.parametrize(
    "error", [OSError("connection reset"), httplib2.ServerNotFoundError("no such host")]
)
def test_network_error_has_no_status(error):
    with pytest.raises(CalendarApiError) as exc:
        _execute(StubRequest(error=error))
    assert exc.value.status is None
    assert not exc.value.timed_out
    assert exc.value.retryable
    assert "network error" in str(exc.value)
