from __future__ import annotations

import datetime as dt

import httpx
import pytest

from nexusbot.domain import FetchError
from nexusbot.provider_client import SlotFetcher


def _fetcher(handler, *, retry_attempts: int = 1) -> SlotFetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SlotFetcher(client, base_url="https://example.test/schedulerapi", limit=5, retry_attempts=retry_attempts)


def test_fetch_parses_slots_and_sends_location_query(ny) -> None:
    seen_requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_requests.append(request)
        return httpx.Response(
            200,
            json=[
                {"locationId": 5000, "startTimestamp": "2024-01-05T09:00", "endTimestamp": "2024-01-05T09:15", "active": True},
                {"locationId": 5000, "startTimestamp": "2024-01-06T10:00"},
                {"locationId": 5000, "startTimestamp": "2024-01-07T11:00", "active": False},
            ],
        )

    snapshot = _fetcher(handler).fetch(ny)

    assert {s.key for s in snapshot.slots} == {"2024-01-05T09:00", "2024-01-06T10:00"}
    assert all(s.center_id == "NY" for s in snapshot.slots)
    assert snapshot.center == ny

    request = seen_requests[0]
    assert request.url.path == "/schedulerapi/slots"
    assert request.url.params["locationId"] == "5000"
    assert request.url.params["orderBy"] == "soonest"
    assert request.url.params["limit"] == "5"


def test_fetch_skips_entries_for_other_locations(ny) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"locationId": 1234, "startTimestamp": "2024-01-05T09:00"},
                {"locationId": 5000, "startTimestamp": "2024-01-06T10:00:00"},
            ],
        )

    snapshot = _fetcher(handler).fetch(ny)

    assert [s.start for s in snapshot.slots] == [dt.datetime(2024, 1, 6, 10, 0)]


def test_empty_list_is_a_valid_snapshot(ny) -> None:
    snapshot = _fetcher(lambda request: httpx.Response(200, json=[])).fetch(ny)
    assert snapshot.slots == frozenset()


@pytest.mark.parametrize("status_code", [500, 502, 503, 429])
def test_server_errors_and_rate_limits_are_transient(ny, status_code: int) -> None:
    with pytest.raises(FetchError) as excinfo:
        _fetcher(lambda request: httpx.Response(status_code)).fetch(ny)

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == status_code


@pytest.mark.parametrize("status_code", [302, 400, 403, 404])
def test_client_errors_are_permanent(ny, status_code: int) -> None:
    # A body that would otherwise parse must not be trusted outside 2xx.
    body = [{"locationId": 5000, "startTimestamp": "2024-01-05T09:00"}]

    with pytest.raises(FetchError) as excinfo:
        _fetcher(lambda request: httpx.Response(status_code, json=body)).fetch(ny)

    assert excinfo.value.retryable is False
    assert excinfo.value.status_code == status_code


def test_timeout_is_transient(ny) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(FetchError, match="Timed out") as excinfo:
        _fetcher(handler).fetch(ny)
    assert excinfo.value.retryable is True


def test_connection_error_is_transient(ny) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(FetchError) as excinfo:
        _fetcher(handler).fetch(ny)
    assert excinfo.value.retryable is True


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"slots": []}),
        httpx.Response(200, json=[{"locationId": 5000}]),
        httpx.Response(200, json=[{"locationId": 5000, "startTimestamp": "next tuesday"}]),
        httpx.Response(200, json=["2024-01-05T09:00"]),
    ],
)
def test_schema_mismatch_is_permanent(ny, response: httpx.Response) -> None:
    with pytest.raises(FetchError) as excinfo:
        _fetcher(lambda request: response).fetch(ny)
    assert excinfo.value.retryable is False


def test_retry_attempts_only_retry_transient_errors(ny) -> None:
    calls: list[int] = []

    def flaky(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=[{"locationId": 5000, "startTimestamp": "2024-01-05T09:00"}])

    snapshot = _fetcher(flaky, retry_attempts=2).fetch(ny)
    assert len(calls) == 2
    assert len(snapshot.slots) == 1

    permanent_calls: list[int] = []

    def broken(request: httpx.Request) -> httpx.Response:
        permanent_calls.append(1)
        return httpx.Response(404)

    with pytest.raises(FetchError):
        _fetcher(broken, retry_attempts=3).fetch(ny)
    assert len(permanent_calls) == 1
