import argparse
import logging

import httpx

from nexusbot.centers import find_center, load_centers
from nexusbot.config import load_settings, parse_chat_id
from nexusbot.notifier import Notifier
from nexusbot.provider_client import SlotFetcher
from nexusbot.store import RedisSeenSlotStore, connect_redis
from nexusbot.subscribers import SubscriberRegistry
from nexusbot.worker import Scheduler, _send_status_message


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    # httpx logs every request at INFO; one line per center per tick is noise.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="NexusPls: enrollment center appointment watcher")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--list-centers", action="store_true", help="Print configured centers and exit")
    parser.add_argument("--subscribe", nargs=2, metavar=("CENTER", "CHAT_ID"), help="Track CENTER for CHAT_ID")
    parser.add_argument("--unsubscribe", nargs=2, metavar=("CENTER", "CHAT_ID"), help="Stop tracking CENTER for CHAT_ID")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)

    settings = load_settings()
    _setup_logging(settings.log_level)
    log = logging.getLogger(__name__)

    centers = load_centers(settings.centers_file)

    if args.list_centers:
        for center in centers:
            print(f"{center.id}\t{center.location_code}\t{center.display_name}")
        return 0

    redis_client = connect_redis(settings.redis_url, attempts=settings.store_connect_attempts)
    registry = SubscriberRegistry(redis_client, key_prefix=settings.redis_key_prefix)

    if args.subscribe or args.unsubscribe:
        center_id, raw_chat_id = args.subscribe or args.unsubscribe
        center = find_center(centers, center_id)
        chat_id = parse_chat_id(raw_chat_id)
        if args.subscribe:
            changed = registry.subscribe(chat_id, center)
            print(f"Now tracking {center.display_name}" if changed else "Already tracking this center.")
        else:
            changed = registry.unsubscribe(chat_id, center)
            print(f"Stopped tracking {center.display_name}" if changed else "Not tracking this center.")
        return 0

    store = RedisSeenSlotStore(
        redis_client,
        key_prefix=settings.redis_key_prefix,
        lock_timeout_seconds=settings.lock_timeout_seconds,
    )

    with httpx.Client(timeout=settings.request_timeout_seconds) as http:
        scheduler = Scheduler(
            settings,
            centers,
            fetcher=SlotFetcher(
                http,
                base_url=settings.provider_base_url,
                limit=settings.slots_per_request,
                retry_attempts=settings.fetch_retry_attempts,
            ),
            store=store,
            registry=registry,
            notifier=Notifier(
                bot_token=settings.telegram_bot_token,
                schedule_url=settings.schedule_url,
                client=http,
            ),
            alert=lambda text: _send_status_message(settings, text),
        )

        # Startup notice (best-effort)
        try:
            _send_status_message(
                settings,
                text=(
                    "NexusPls started.\n"
                    f"Mode: {'once' if args.once else 'forever'}\n"
                    f"centers={len(centers)} interval={settings.check_interval_seconds}s"
                ),
            )
        except Exception:
            log.warning("Failed to send Telegram startup message", exc_info=True)

        try:
            if args.once:
                scheduler.run_tick()
                return 0

            scheduler.run_forever()
            return 0

        except Exception as e:
            # Crash notice (best-effort)
            try:
                _send_status_message(
                    settings,
                    text=f"NexusPls crashed.\nReason: {type(e).__name__}: {e}",
                )
            except Exception:
                log.warning("Failed to send Telegram crash message", exc_info=True)
            raise

        finally:
            try:
                _send_status_message(settings, text="NexusPls stopped (process exit).")
            except Exception:
                log.warning("Failed to send Telegram shutdown message", exc_info=True)


if __name__ == "__main__":
    raise SystemExit(main())
