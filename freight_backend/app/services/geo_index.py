"""
Supply GeoIndex.

Transporters publish their live position here; new broadcasts are alerted
to the candidates near the pickup point. One Redis GEO set per vehicle
class, member = transporter id.
"""

import abc
import logging
from typing import Iterable, List

from redis.exceptions import RedisError

from freight_backend.app.core.redis_client import redis_client
from freight_backend.app.services.notification_channels import ChannelError

logger = logging.getLogger(__name__)

SUPPLY_KEY_PREFIX = "geo:supply"


class GeoIndex(abc.ABC):
    """Candidate lookup by proximity and vehicle class."""

    @abc.abstractmethod
    async def query(self, lat: float, lng: float, radius_km: float, vehicle_class: str) -> List[int]:
        """Candidate ids within ``radius_km``, nearest first."""

    @abc.abstractmethod
    async def update_candidate(self, candidate_id: int, lat: float, lng: float, vehicle_classes: Iterable[str]) -> None:
        ...

    @abc.abstractmethod
    async def remove_candidate(self, candidate_id: int, vehicle_classes: Iterable[str]) -> None:
        ...


class RedisGeoIndex(GeoIndex):

    def __init__(self, redis=None):
        self.redis = redis if redis is not None else redis_client

    @staticmethod
    def _key(vehicle_class: str) -> str:
        return f"{SUPPLY_KEY_PREFIX}:{vehicle_class}"

    async def query(self, lat: float, lng: float, radius_km: float, vehicle_class: str) -> List[int]:
        try:
            members = await self.redis.geosearch(
                self._key(vehicle_class),
                longitude=lng,
                latitude=lat,
                radius=radius_km,
                unit="km",
                sort="ASC",
            )
        except (RedisError, OSError) as exc:
            raise ChannelError(f"supply index unavailable: {exc}") from exc
        return [int(member) for member in members]

    async def update_candidate(self, candidate_id: int, lat: float, lng: float, vehicle_classes: Iterable[str]) -> None:
        for vehicle_class in vehicle_classes:
            await self.redis.geoadd(self._key(vehicle_class), [lng, lat, str(candidate_id)])
        logger.debug("Supply position updated", extra={"transporter_id": candidate_id})

    async def remove_candidate(self, candidate_id: int, vehicle_classes: Iterable[str]) -> None:
        for vehicle_class in vehicle_classes:
            await self.redis.zrem(self._key(vehicle_class), str(candidate_id))
        logger.debug("Supply position removed", extra={"transporter_id": candidate_id})
