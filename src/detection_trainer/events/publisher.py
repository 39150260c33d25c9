from __future__ import annotations

from typing import TYPE_CHECKING, Final, Protocol

from detection_trainer.logging import get_logger

from .training import EventV1, encode_event

EVENTS_CHANNEL: Final[str] = "detector:events"

if TYPE_CHECKING:

    class RedisClient(Protocol):  # pragma: no cover - typing only
        def publish(self, channel: str, message: str) -> int: ...

    def redis_from_url(url: str, *, decode_responses: bool = False) -> RedisClient: ...

else:  # pragma: no cover - runtime only

    def redis_from_url(url: str, *, decode_responses: bool = False) -> RedisClient:
        import redis

        return redis.Redis.from_url(url, decode_responses=decode_responses)


class RedisFactory(Protocol):  # pragma: no cover - typing only
    def __call__(self, url: str, *, decode_responses: bool = False) -> RedisClient: ...


class Publisher(Protocol):
    def publish(self, channel: str, message: str) -> int: ...


class RedisPublisher:
    def __init__(self, url: str, *, redis_factory: RedisFactory | None = None) -> None:
        self._url = url
        self._redis_factory: RedisFactory = redis_factory or redis_from_url
        self._client: RedisClient | None = None

    def publish(self, channel: str, message: str) -> int:
        try:
            if self._client is None:
                self._client = self._redis_factory(self._url, decode_responses=True)
            return int(self._client.publish(channel, message))
        except (OSError, RuntimeError, ValueError, TypeError, ConnectionError) as e:
            get_logger().error("redis_publish_error error=%s", str(e))
            raise


class RedisProgressEmitter:
    """Publishes training events as compact JSON on one channel."""

    def __init__(self, publisher: Publisher, channel: str = EVENTS_CHANNEL) -> None:
        self._publisher = publisher
        self._channel = channel

    def emit(self, event: EventV1) -> None:
        receivers = self._publisher.publish(self._channel, encode_event(event))
        get_logger().debug(f"event_published type={event['type']} receivers={receivers}")


__all__ = [
    "EVENTS_CHANNEL",
    "Publisher",
    "RedisFactory",
    "RedisProgressEmitter",
    "RedisPublisher",
    "redis_from_url",
]
