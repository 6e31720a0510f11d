from __future__ import annotations

import logging

import redis

from nexusbot.domain import Center, StoreError

logger = logging.getLogger(__name__)


class SubscriberRegistry:
    """Which chats want alerts for which centers.

    Two Redis sets are kept in step: center -> chat ids (read by the poller each
    tick) and chat id -> center ids (for listing a chat's subscriptions).
    """

    def __init__(self, client: redis.Redis, *, key_prefix: str = "nexus:"):
        self._redis = client
        self._prefix = key_prefix

    def _subscribers_key(self, center_id: str) -> str:
        return f"{self._prefix}subscribers:{center_id}"

    def _subscriptions_key(self, chat_id: str) -> str:
        return f"{self._prefix}subscriptions:{chat_id}"

    def subscribers_of(self, center: Center) -> set[str]:
        try:
            return {str(c) for c in self._redis.smembers(self._subscribers_key(center.id))}
        except redis.RedisError as e:
            raise StoreError(f"Failed to read subscribers of {center.id}: {e}") from e

    def subscriptions_of(self, chat_id: str) -> set[str]:
        try:
            return {str(c) for c in self._redis.smembers(self._subscriptions_key(chat_id))}
        except redis.RedisError as e:
            raise StoreError(f"Failed to read subscriptions of chat {chat_id}: {e}") from e

    def subscribe(self, chat_id: str, center: Center) -> bool:
        """Returns False if the chat already tracked the center."""
        try:
            with self._redis.pipeline() as pipe:
                pipe.sadd(self._subscribers_key(center.id), chat_id)
                pipe.sadd(self._subscriptions_key(chat_id), center.id)
                added, _ = pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to subscribe chat {chat_id} to {center.id}: {e}") from e

        if added:
            logger.info("Chat %s now tracks %s", chat_id, center.id)
        return bool(added)

    def unsubscribe(self, chat_id: str, center: Center) -> bool:
        """Returns False if the chat was not tracking the center."""
        try:
            with self._redis.pipeline() as pipe:
                pipe.srem(self._subscribers_key(center.id), chat_id)
                pipe.srem(self._subscriptions_key(chat_id), center.id)
                removed, _ = pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to unsubscribe chat {chat_id} from {center.id}: {e}") from e

        if removed:
            logger.info("Chat %s stopped tracking %s", chat_id, center.id)
        return bool(removed)
