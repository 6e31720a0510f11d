from __future__ import annotations

import datetime as dt
from typing import AbstractSet, Iterable

from nexusbot.domain import Center, DiffResult, Slot, key_date, slot_key


def filter_window(
    slots: Iterable[Slot],
    *,
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
) -> frozenset[Slot]:
    """Keep slots whose date falls inside [date_from, date_to]; open ends are unbounded."""

    return frozenset(
        s
        for s in slots
        if (date_from is None or s.start.date() >= date_from) and (date_to is None or s.start.date() <= date_to)
    )


def diff(
    center: Center,
    snapshot: Iterable[Slot],
    seen: AbstractSet[str],
    *,
    today: dt.date,
    granularity: str = "slot",
) -> DiffResult:
    """Compare a fetched snapshot against the keys already announced for `center`.

    Pure: the same inputs always give the same result, and nothing is written.
    An empty snapshot yields no new slots and only expires keys whose date has
    already passed; keys that merely went missing are reported separately so the
    caller can decide whether the disappearance is real.
    """

    by_key: dict[str, list[Slot]] = {}
    for s in snapshot:
        by_key.setdefault(slot_key(s, granularity), []).append(s)

    present = set(by_key)
    new_keys = present - set(seen)
    absent = set(seen) - present

    expired = {k for k in absent if key_date(k) < today}
    missing = absent - expired

    new_slots = sorted(s for k in new_keys for s in by_key[k])

    return DiffResult(
        center=center,
        new=tuple(new_slots),
        new_keys=frozenset(new_keys),
        missing_keys=frozenset(missing),
        expired_keys=frozenset(expired),
    )
