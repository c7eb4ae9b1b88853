"""
Outbound notification channels.

Channels return a DeliveryResult for outcomes the recipient caused (no
device listening, gateway rejected the number) and raise ChannelError for
transport faults, which the caller's circuit breaker counts.
"""

import abc
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from redis.exceptions import RedisError

from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.core.redis_client import redis_client
from freight_backend.app.models.dispatch_enums import NotificationPriority

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Transport-level failure of a notification channel or subscriber."""


@dataclass
class DeliveryResult:
    delivered: bool
    channel: str
    error: Optional[str] = None


class NotificationChannel(abc.ABC):
    name = "channel"

    @abc.abstractmethod
    async def send(self, target_id: int, payload: Dict[str, Any], priority: NotificationPriority) -> DeliveryResult:
        ...


class RedisPushChannel(NotificationChannel):
    """
    Publishes to ``notify:user:{id}``; the device gateway holds one
    subscription per connected user. Delivered iff a gateway received it.
    """
    name = "push"

    def __init__(self, redis=None, channel_prefix: str = "notify:user"):
        self.redis = redis if redis is not None else redis_client
        self.channel_prefix = channel_prefix

    async def send(self, target_id: int, payload: Dict[str, Any], priority: NotificationPriority) -> DeliveryResult:
        message = json.dumps({"priority": priority.value, **payload}, default=str)
        try:
            receivers = await self.redis.publish(f"{self.channel_prefix}:{target_id}", message)
        except (RedisError, OSError) as exc:
            raise ChannelError(f"push publish failed: {exc}") from exc

        if receivers > 0:
            return DeliveryResult(delivered=True, channel=self.name)
        return DeliveryResult(delivered=False, channel=self.name, error="no connected device")


class SmsChannel(NotificationChannel):
    """HTTP SMS gateway used as the fallback when push cannot reach a driver."""
    name = "sms"

    def __init__(self, settings: Settings = default_settings, client: httpx.AsyncClient = None):
        self.url = settings.sms_gateway_url
        self.token = settings.sms_gateway_token
        self.timeout = settings.sms_gateway_timeout_seconds
        self._client = client

    async def send(self, target_id: int, payload: Dict[str, Any], priority: NotificationPriority) -> DeliveryResult:
        if not self.url:
            return DeliveryResult(delivered=False, channel=self.name, error="sms gateway not configured")

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {
            "recipient_id": target_id,
            "priority": priority.value,
            "text": payload.get("message") or payload.get("title", ""),
            "data": payload,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ChannelError(f"sms gateway unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise ChannelError(f"sms gateway error {response.status_code}")
        if response.status_code >= 400:
            return DeliveryResult(delivered=False, channel=self.name, error=f"rejected ({response.status_code})")
        return DeliveryResult(delivered=True, channel=self.name)
