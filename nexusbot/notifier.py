from __future__ import annotations

import logging
from typing import Callable, Iterable

import httpx

from nexusbot.domain import Center, DiffResult, NotifyError, NotifyReport, Slot
from nexusbot.telegram_notifier import MAX_MESSAGE_LENGTH, TelegramError, send_telegram_message

logger = logging.getLogger(__name__)


def format_slot_time(slot: Slot) -> str:
    start = slot.start
    clock = start.strftime("%I:%M %p").lstrip("0")
    return f"{clock} on {start:%A}, {start:%B} {start.day}, {start.year}"


def _chunk_lines(header: str, lines: list[str], footer: str, limit: int) -> list[str]:
    # Keep everything in one message unless Telegram's size limit forces a split.
    messages: list[str] = []
    current: list[str] = []

    def _render(body: list[str]) -> str:
        return f"{header}\n\n" + "\n".join(body) + f"\n\n{footer}"

    for line in lines:
        if current and len(_render(current + [line])) > limit:
            messages.append(_render(current))
            current = []
        current.append(line)
    messages.append(_render(current))
    return messages


def format_messages(center: Center, slots: Iterable[Slot], schedule_url: str, *, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    ordered = sorted(slots)
    header = (
        f"Appointment available at {center.display_name}"
        if len(ordered) == 1
        else f"{len(ordered)} appointments available at {center.display_name}"
    )
    lines = [f"• {format_slot_time(s)}" for s in ordered]
    footer = f"Schedule: {schedule_url}"
    return _chunk_lines(header, lines, footer, limit)


SendFunc = Callable[..., None]


def _is_retryable_delivery_error(exc: Exception) -> bool:
    if isinstance(exc, TelegramError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    # Timeouts and connection trouble; anything else is not expected to heal by itself.
    return isinstance(exc, httpx.TransportError)


class Notifier:
    """Sends one coalesced alert per destination for a center's new slots."""

    def __init__(
        self,
        *,
        bot_token: str,
        schedule_url: str,
        client: httpx.Client | None = None,
        send: SendFunc = send_telegram_message,
    ):
        self._bot_token = bot_token
        self._schedule_url = schedule_url
        self._client = client
        self._send = send

    def notify(self, center: Center, result: DiffResult, subscribers: Iterable[str]) -> NotifyReport:
        report = NotifyReport(center=center)
        if not result.new:
            return report

        messages = format_messages(center, result.new, self._schedule_url)

        for chat_id in sorted(set(subscribers)):
            try:
                for text in messages:
                    self._send(bot_token=self._bot_token, chat_id=chat_id, text=text, client=self._client)
                    report.messages_sent += 1
            except Exception as e:
                # Best-effort: don't stop sending to other chat_ids.
                logger.warning(
                    "Failed to notify chat_id=%s about %s (%s: %s)", chat_id, center.id, type(e).__name__, e
                )
                report.failed[chat_id] = NotifyError(
                    chat_id, f"{type(e).__name__}: {e}", retryable=_is_retryable_delivery_error(e)
                )
                continue
            report.delivered.append(chat_id)

        logger.info(
            "Notified %s: %d new slot(s), delivered=%d failed=%d",
            center.id,
            len(result.new),
            len(report.delivered),
            len(report.failed),
        )
        return report
