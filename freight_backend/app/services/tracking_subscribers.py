"""
Tracking fan-out subscribers.

Each accepted position or trip-state change is published to every
subscriber as a plain dict event. Subscribers raise ChannelError on
transport faults; the stream retries and circuit-breaks them.
"""

import abc
import json
from typing import Any, Dict

from redis.exceptions import RedisError

from freight_backend.app.core.redis_client import redis_client
from freight_backend.app.services.notification_channels import ChannelError


class TrackingSubscriber(abc.ABC):
    name = "subscriber"

    @abc.abstractmethod
    async def publish(self, event: Dict[str, Any]) -> None:
        ...


class RedisChannelSubscriber(TrackingSubscriber):
    """
    Live view for one audience, e.g. ``tracking:customer:{customer_id}``.
    """

    def __init__(self, name: str, audience_field: str, redis=None):
        self.name = name
        self.audience_field = audience_field
        self.redis = redis if redis is not None else redis_client

    async def publish(self, event: Dict[str, Any]) -> None:
        channel = f"tracking:{self.name}:{event[self.audience_field]}"
        try:
            await self.redis.publish(channel, json.dumps(event, default=str))
        except (RedisError, OSError) as exc:
            raise ChannelError(f"{self.name} publish failed: {exc}") from exc


class RedisStreamArchiveSubscriber(TrackingSubscriber):
    """Appends every event to a capped per-session Redis stream for replay."""
    name = "archive"

    def __init__(self, redis=None, maxlen: int = 10000):
        self.redis = redis if redis is not None else redis_client
        self.maxlen = maxlen

    async def publish(self, event: Dict[str, Any]) -> None:
        fields = {key: json.dumps(value, default=str) for key, value in event.items()}
        try:
            await self.redis.xadd(
                f"tracking:archive:{event['session_id']}", fields, maxlen=self.maxlen, approximate=True
            )
        except (RedisError, OSError) as exc:
            raise ChannelError(f"archive append failed: {exc}") from exc


def default_subscribers(redis=None):
    return [
        RedisChannelSubscriber("customer", "customer_id", redis=redis),
        RedisChannelSubscriber("transporter", "transporter_id", redis=redis),
        RedisStreamArchiveSubscriber(redis=redis),
    ]
