from __future__ import annotations

import datetime as dt
import logging
from typing import Any

import httpx
from tenacity import RetryCallState, retry, retry_if_exception, stop_after_attempt, wait_exponential

from nexusbot.domain import Center, FetchError, Slot, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ttp.cbp.dhs.gov/schedulerapi"
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M"


def build_slots_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/slots"


def _parse_timestamp(raw: Any) -> dt.datetime:
    if not isinstance(raw, str):
        raise ValueError(f"expected string timestamp, got {type(raw).__name__}")
    # The API sometimes includes seconds; the natural key is minute precision.
    return dt.datetime.strptime(raw[:16], _TIMESTAMP_FORMAT)


def parse_slots(center: Center, payload: Any) -> frozenset[Slot]:
    if not isinstance(payload, list):
        raise FetchError(
            f"Unexpected response for {center.id}: expected a list, got {type(payload).__name__}",
            retryable=False,
        )

    slots: set[Slot] = set()
    for item in payload:
        if not isinstance(item, dict):
            raise FetchError(f"Unexpected slot entry for {center.id}: {item!r}", retryable=False)
        if item.get("active") is False:
            continue

        location_id = item.get("locationId")
        if location_id is not None and location_id != center.location_code:
            logger.warning(
                "Skipping slot for locationId=%s in response for %s (locationId=%s)",
                location_id,
                center.id,
                center.location_code,
            )
            continue

        try:
            start = _parse_timestamp(item["startTimestamp"])
            end = _parse_timestamp(item["endTimestamp"]) if item.get("endTimestamp") else None
        except (KeyError, ValueError) as e:
            raise FetchError(
                f"Malformed slot entry for {center.id} ({type(e).__name__}: {e})",
                retryable=False,
            ) from e

        slots.add(Slot(center_id=center.id, start=start, end=end))
    return frozenset(slots)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.retryable


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    sleep_seconds = getattr(retry_state.next_action, "sleep", 0.0)
    logger.info(
        "Fetch attempt %s failed (%s), retrying in %.0f sec.",
        retry_state.attempt_number,
        exc,
        sleep_seconds,
    )


class SlotFetcher:
    """Reads open slots for one center from the scheduler API."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        base_url: str = DEFAULT_BASE_URL,
        limit: int = 5,
        retry_attempts: int = 1,
    ):
        self._client = client
        self._url = build_slots_url(base_url)
        self._limit = limit
        self._retry_attempts = retry_attempts

    def fetch(self, center: Center) -> Snapshot:
        if self._retry_attempts <= 1:
            return self._fetch_once(center)

        decorated = retry(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=4),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_before_sleep,
            reraise=True,
        )(self._fetch_once)
        return decorated(center)

    def _fetch_once(self, center: Center) -> Snapshot:
        params = {"orderBy": "soonest", "limit": self._limit, "locationId": center.location_code}

        try:
            r = self._client.get(self._url, params=params)
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching slots for {center.id}", retryable=True) from e
        except httpx.TransportError as e:
            raise FetchError(
                f"Transport error fetching slots for {center.id} ({type(e).__name__}: {e})",
                retryable=True,
            ) from e

        if r.status_code >= 500 or r.status_code == 429:
            raise FetchError(
                f"Provider returned {r.status_code} for {center.id}",
                retryable=True,
                status_code=r.status_code,
            )
        if not r.is_success:
            raise FetchError(
                f"Provider rejected request for {center.id} with {r.status_code}",
                retryable=False,
                status_code=r.status_code,
            )

        try:
            payload = r.json()
        except ValueError as e:
            raise FetchError(f"Response for {center.id} is not JSON", retryable=False) from e

        slots = parse_slots(center, payload)
        logger.debug("Fetched %d slot(s) for %s", len(slots), center.id)
        return Snapshot(center=center, slots=slots, fetched_at=dt.datetime.now())
