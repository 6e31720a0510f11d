from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Sequence

from nexusbot.config import Settings
from nexusbot.diff import diff, filter_window
from nexusbot.domain import Center, FetchError, NotifyReport, StoreError, slot_key
from nexusbot.notifier import Notifier
from nexusbot.provider_client import SlotFetcher
from nexusbot.store import SeenSlotStore
from nexusbot.subscribers import SubscriberRegistry
from nexusbot.telegram_notifier import send_telegram_message

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FETCH_FAILED = "fetch_failed"
STATUS_STORE_FAILED = "store_failed"
STATUS_ERROR = "error"


@dataclass
class CenterReport:
    center: Center
    status: str = STATUS_OK
    new_slots: int = 0
    released: int = 0
    notify: NotifyReport | None = None
    error: Exception | None = None

    @property
    def permanent_failure(self) -> bool:
        return isinstance(self.error, FetchError) and not self.error.retryable


@dataclass
class TickReport:
    generation: int
    started_at: dt.datetime
    reports: dict[str, CenterReport] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


def _send_status_message(settings: Settings, text: str) -> None:
    # Operator-only: subscribers never see status or failure messages.
    if not settings.telegram_admin_chat_id:
        logger.debug("No TELEGRAM_ADMIN_CHAT_ID; status message dropped: %s", text)
        return
    send_telegram_message(
        bot_token=settings.telegram_bot_token,
        chat_id=settings.telegram_admin_chat_id,
        text=text,
    )


def check_center(
    center: Center,
    *,
    settings: Settings,
    fetcher: SlotFetcher,
    store: SeenSlotStore,
    registry: SubscriberRegistry,
    notifier: Notifier,
    today: dt.date,
) -> CenterReport:
    """fetch -> diff -> notify -> store update for one center, in that order.

    FetchError and StoreError propagate; the scheduler turns them into reports.
    """

    snapshot = fetcher.fetch(center)
    slots = filter_window(snapshot.slots, date_from=settings.notify_date_from, date_to=settings.notify_date_to)
    granularity = settings.dedup_granularity
    report = CenterReport(center=center)

    # The lock is held across every send, so its expiry grows with the fan-out.
    subscribers = registry.subscribers_of(center)
    hold = settings.lock_timeout_seconds + len(subscribers) * settings.request_timeout_seconds

    with store.lock(center, timeout=hold):
        seen = store.get(center)
        result = diff(center, slots, seen, today=today, granularity=granularity)
        report.new_slots = len(result.new)

        logger.info(
            "%s: current=%d seen=%d new=%d missing=%d expired=%d",
            center.id,
            len(slots),
            len(seen),
            len(result.new),
            len(result.missing_keys),
            len(result.expired_keys),
        )

        if result.new:
            if settings.delivery_semantics == "at-most-once":
                store.mark_seen(center, result.new_keys)

            report.notify = notifier.notify(center, result, subscribers)

            if settings.delivery_semantics == "at-least-once":
                if report.notify.retry_pending:
                    logger.warning("%s: every delivery failed, new slots stay unseen for the next tick", center.id)
                else:
                    if report.notify.all_failed:
                        logger.warning("%s: every delivery failed permanently, new slots marked seen", center.id)
                    store.mark_seen(center, result.new_keys)

        if settings.release_after_misses:
            present = {slot_key(s, granularity) for s in slots}
            counts = store.record_misses(center, result.missing_keys, present & seen)
            released = {k for k, c in counts.items() if c >= settings.release_after_misses}
            if released:
                store.forget(center, released)
                report.released = len(released)
                logger.info(
                    "%s: released %d slot key(s) missing for %d tick(s)",
                    center.id,
                    len(released),
                    settings.release_after_misses,
                )

        if result.expired_keys:
            store.prune(center, today)

    return report


class Scheduler:
    """Runs one bounded, concurrent fetch/diff/notify pass over all centers per tick."""

    def __init__(
        self,
        settings: Settings,
        centers: Sequence[Center],
        *,
        fetcher: SlotFetcher,
        store: SeenSlotStore,
        registry: SubscriberRegistry,
        notifier: Notifier,
        alert: Callable[[str], None] | None = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        self.settings = settings
        self.centers = tuple(centers)
        self._fetcher = fetcher
        self._store = store
        self._registry = registry
        self._notifier = notifier
        self._alert = alert
        self._today = today

        self._tick_lock = threading.Lock()
        self._generation = 0
        # center id -> ticks left before it is polled again
        self._quarantine: dict[str, int] = {}

    @property
    def generation(self) -> int:
        return self._generation

    def is_quarantined(self, center: Center) -> bool:
        return self._quarantine.get(center.id, 0) > 0

    def run_tick(self) -> TickReport | None:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Tick %d still in progress, not starting another", self._generation)
            return None
        try:
            self._generation += 1
            return self._run_tick(self._generation)
        finally:
            self._tick_lock.release()

    def _run_tick(self, generation: int) -> TickReport:
        tick = TickReport(generation=generation, started_at=dt.datetime.now())
        today = self._today()
        due = self._due_centers(tick)

        logger.info(
            "Tick %d: polling %d center(s), skipped %d",
            generation,
            len(due),
            len(tick.skipped),
        )

        if due:
            workers = min(self.settings.max_concurrency, len(due))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="poll") as pool:
                futures = {pool.submit(self._run_pipeline, center, today): center for center in due}
                for future in as_completed(futures):
                    report = future.result()
                    tick.reports[report.center.id] = report

        for report in tick.reports.values():
            if report.permanent_failure:
                self._handle_permanent_failure(report)

        return tick

    def _due_centers(self, tick: TickReport) -> list[Center]:
        due: list[Center] = []
        for center in self.centers:
            remaining = self._quarantine.get(center.id, 0)
            if remaining > 0:
                if remaining == 1:
                    del self._quarantine[center.id]
                else:
                    self._quarantine[center.id] = remaining - 1
                tick.skipped.append(center.id)
                continue

            try:
                subscribers = self._registry.subscribers_of(center)
            except StoreError as e:
                logger.error("%s: cannot read subscribers (%s)", center.id, e)
                tick.reports[center.id] = CenterReport(center=center, status=STATUS_STORE_FAILED, error=e)
                continue

            if not subscribers:
                logger.debug("%s: no subscribers, not polling", center.id)
                tick.skipped.append(center.id)
                continue
            due.append(center)
        return due

    def _run_pipeline(self, center: Center, today: dt.date) -> CenterReport:
        try:
            return check_center(
                center,
                settings=self.settings,
                fetcher=self._fetcher,
                store=self._store,
                registry=self._registry,
                notifier=self._notifier,
                today=today,
            )
        except FetchError as e:
            if e.retryable:
                logger.warning("%s: fetch failed, will retry next tick (%s)", center.id, e)
            else:
                logger.error("%s: fetch failed permanently (%s)", center.id, e)
            return CenterReport(center=center, status=STATUS_FETCH_FAILED, error=e)
        except StoreError as e:
            logger.error("%s: store failure, skipping this tick (%s)", center.id, e)
            return CenterReport(center=center, status=STATUS_STORE_FAILED, error=e)
        except Exception as e:
            logger.error("%s: unexpected pipeline failure", center.id, exc_info=True)
            return CenterReport(center=center, status=STATUS_ERROR, error=e)

    def _handle_permanent_failure(self, report: CenterReport) -> None:
        center = report.center
        backoff = self.settings.permanent_error_backoff_ticks
        if backoff:
            self._quarantine[center.id] = backoff

        if self._alert is None:
            return
        try:
            self._alert(
                "Provider rejected requests for a center.\n"
                f"Center: {center.id} ({center.display_name}, locationId={center.location_code})\n"
                f"Reason: {report.error}\n"
                f"Paused for {backoff} tick(s)."
            )
        except Exception:
            logger.warning("Failed to send operator alert for %s", center.id, exc_info=True)

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        interval = self.settings.check_interval_seconds
        stop_event = stop_event or threading.Event()
        logger.info("Scheduler started. Interval=%ss centers=%d", interval, len(self.centers))

        next_at = time.monotonic()
        while not stop_event.is_set():
            try:
                self.run_tick()
            except Exception as e:
                logger.error("Tick failed in run_forever (%s: %s)", type(e).__name__, e)

            next_at += interval
            now = time.monotonic()
            if now >= next_at:
                missed = int((now - next_at) // interval) + 1
                logger.warning(
                    "Tick %d overran the %ss interval, skipping %d start(s)",
                    self._generation,
                    interval,
                    missed,
                )
                next_at += missed * interval
            stop_event.wait(next_at - now)
