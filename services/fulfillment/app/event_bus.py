"""
Fulfillment Service — event bus on Redis Pub/Sub

  publish ──▶ [publishing connection] ──▶ Redis ──▶ [one connection per topic] ──▶ handler

Redis Pub/Sub is fire-and-forget: a message published while nobody is
subscribed to the topic is dropped, and there is no redelivery.

After subscribe() has returned, connection problems on a subscriber are only
logged; its listener keeps retrying with min(attempt * retry_delay, 30s)
between tries.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from . import config
from .errors import EventBusError

logger = logging.getLogger(__name__)

Handler = Callable[[str, str], Awaitable[None]]
ClientFactory = Callable[[], aioredis.Redis]


def reconnect_delay(
    attempt: int,
    retry_delay: float = config.REDIS_RETRY_DELAY,
    cap: float = config.REDIS_RETRY_CAP,
) -> float:
    return min(attempt * retry_delay, cap)


def encode_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, BaseModel):
        return payload.model_dump_json(by_alias=True, exclude_none=True)
    return json.dumps(payload, default=str)


@dataclass
class _Subscription:
    topic: str
    client: aioredis.Redis
    pubsub: Any
    task: asyncio.Task


class EventBus:
    def __init__(
        self,
        redis_url: str = config.REDIS_URL,
        client_factory: ClientFactory | None = None,
        retry_delay: float = config.REDIS_RETRY_DELAY,
    ) -> None:
        self._client_factory = client_factory or (
            lambda: aioredis.from_url(redis_url, decode_responses=True)
        )
        self._retry_delay = retry_delay
        self._client = self._client_factory()
        self._subscriptions: dict[str, _Subscription] = {}
        self._closed = False

    @property
    def topics(self) -> list[str]:
        return list(self._subscriptions)

    async def publish(self, topic: str, payload: Any) -> int:
        """Send to every current subscriber of topic; returns how many received it."""
        message = encode_payload(payload)
        try:
            receivers = await self._client.publish(topic, message)
        except (RedisError, OSError) as e:
            logger.error("Failed to publish to %s: %s", topic, e)
            raise EventBusError(f"Publish failed: {e}") from e

        logger.info("Published to %s: %s", topic, message)
        return receivers

    async def subscribe(self, topic: str, handler: Handler) -> None:
        if topic in self._subscriptions:
            await self.unsubscribe(topic)

        client = self._client_factory()
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(topic)
        except (RedisError, OSError) as e:
            logger.error("Failed to subscribe to %s: %s", topic, e)
            await self._close_connection(topic, pubsub, client)
            raise EventBusError(f"Subscribe failed: {e}") from e

        task = asyncio.create_task(
            self._listen(topic, pubsub, handler), name=f"subscriber:{topic}"
        )
        self._subscriptions[topic] = _Subscription(topic, client, pubsub, task)
        logger.info("Subscribed to %s", topic)

    async def _listen(self, topic: str, pubsub, handler: Handler) -> None:
        attempt = 0
        while True:
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                attempt += 1
                delay = reconnect_delay(attempt, self._retry_delay)
                logger.error(
                    "Redis subscriber error for %s: %s (retry %d in %.1fs)",
                    topic,
                    e,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            attempt = 0
            if not message or message.get("type") != "message":
                continue

            data = message["data"]
            if isinstance(data, bytes):
                data = data.decode()
            logger.info("Received on %s: %s", topic, data)

            try:
                await handler(data, topic)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Handler for %s failed", topic)

    async def unsubscribe(self, topic: str) -> None:
        sub = self._subscriptions.pop(topic, None)
        if sub is None:
            return

        sub.task.cancel()
        await asyncio.gather(sub.task, return_exceptions=True)
        try:
            await sub.pubsub.unsubscribe(topic)
        except Exception as e:
            logger.warning("Failed to unsubscribe from %s: %s", topic, e)
        await self._close_connection(topic, sub.pubsub, sub.client)
        logger.info("Unsubscribed from %s", topic)

    async def _close_connection(self, topic: str, pubsub, client: aioredis.Redis) -> None:
        try:
            await pubsub.aclose()
            await client.aclose()
        except Exception as e:
            logger.warning("Error closing subscriber connection for %s: %s", topic, e)

    async def shutdown(self) -> None:
        """Release every connection. Errors are logged; safe to call more than once."""
        for topic in list(self._subscriptions):
            await self.unsubscribe(topic)

        if self._closed:
            return
        self._closed = True
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing publishing connection: %s", e)
        logger.info("Event bus disconnected")
