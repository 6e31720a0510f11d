from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

SLOT_KEY_FORMAT = "%Y-%m-%dT%H:%M"


@dataclass(frozen=True)
class Center:
    """An enrollment center as listed in centers.toml."""

    id: str
    display_name: str
    location_code: int
    address: str = ""


@dataclass(frozen=True, order=True)
class Slot:
    """A single open appointment time.

    Identity is (center_id, start); `end` is informational only.
    """

    center_id: str
    start: dt.datetime  # local time at the center, minute precision
    end: dt.datetime | None = field(default=None, compare=False)

    @property
    def key(self) -> str:
        return self.start.strftime(SLOT_KEY_FORMAT)


def slot_key(slot: Slot, granularity: str = "slot") -> str:
    if granularity == "day":
        return slot.start.date().isoformat()
    return slot.key


def key_date(key: str) -> dt.date:
    # Both "YYYY-MM-DD" and "YYYY-MM-DDTHH:MM" start with the date.
    return dt.date.fromisoformat(key[:10])


@dataclass(frozen=True)
class Snapshot:
    center: Center
    slots: frozenset[Slot]
    fetched_at: dt.datetime


@dataclass(frozen=True)
class DiffResult:
    center: Center
    new: tuple[Slot, ...] = ()
    new_keys: frozenset[str] = frozenset()
    missing_keys: frozenset[str] = frozenset()
    expired_keys: frozenset[str] = frozenset()

    @property
    def has_new(self) -> bool:
        return bool(self.new)


class FetchError(RuntimeError):
    """The provider could not give us a usable snapshot.

    `retryable` separates transient trouble (timeouts, 5xx, rate limits) from
    permanent trouble (4xx, response shape changed).
    """

    def __init__(self, message: str, *, retryable: bool, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class StoreError(RuntimeError):
    """The persistence backend failed; the center's cycle is abandoned."""


class NotifyError(RuntimeError):
    """Delivery to one destination failed."""

    def __init__(self, chat_id: str, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.chat_id = chat_id
        self.retryable = retryable


@dataclass
class NotifyReport:
    center: Center
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, NotifyError] = field(default_factory=dict)
    messages_sent: int = 0

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failed)

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and not self.delivered

    @property
    def retry_pending(self) -> bool:
        """Nobody got the alert and at least one failure may succeed on a later tick."""
        return self.all_failed and any(e.retryable for e in self.failed.values())
