"""
Dispatch core: builds and wires the dispatch components.

Registry -> (created) -> transporter alerts
Registry -> (closed)  -> dispatcher timers/notices, tracking aborts
Allocation <-> Dispatcher for notify and resolution
"""

import asyncio
import logging
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from freight_backend.app.core.clock import Clock, system_clock
from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.schemas.admin import ArchivalResponse, SweepResponse
from freight_backend.app.services.allocation_engine import AllocationEngine
from freight_backend.app.services.archival import ArchivalService
from freight_backend.app.services.broadcast_registry import BroadcastRegistry
from freight_backend.app.services.geo_index import GeoIndex, RedisGeoIndex
from freight_backend.app.services.notification_channels import NotificationChannel, RedisPushChannel, SmsChannel
from freight_backend.app.services.notification_dispatcher import NotificationDispatcher
from freight_backend.app.services.tracking_stream import TrackingStream
from freight_backend.app.services.tracking_subscribers import default_subscribers

logger = logging.getLogger(__name__)


class DispatchCore:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
        redis=None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        geo_index: Optional[GeoIndex] = None,
        subscribers=None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings

        if channels is None:
            channels = {"push": RedisPushChannel(redis=redis), "sms": SmsChannel(settings=settings)}
        if subscribers is None:
            subscribers = default_subscribers(redis)
        self.geo_index = geo_index if geo_index is not None else RedisGeoIndex(redis=redis)

        self.registry = BroadcastRegistry(session_factory, clock=clock, settings=settings)
        self.tracking = TrackingStream(session_factory, clock=clock, settings=settings, subscribers=subscribers)
        self.allocation = AllocationEngine(
            session_factory, self.registry, self.tracking, clock=clock, settings=settings
        )
        self.dispatcher = NotificationDispatcher(
            session_factory,
            self.allocation,
            channels,
            self.geo_index,
            clock=clock,
            settings=settings,
        )
        self.allocation.set_dispatcher(self.dispatcher)
        self.archival = ArchivalService(session_factory, clock=clock, settings=settings)

        self.registry.add_created_listener(self.dispatcher.alert_transporters)
        self.registry.add_close_listener(self.dispatcher.on_broadcast_closed)
        self.registry.add_close_listener(self.tracking.on_broadcast_closed)

        self._sweeper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        restored = await self.dispatcher.restore_timers()
        logger.info("Dispatch core started, %s deadline timer(s) restored", restored)
        if self.settings.enable_background_tasks and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def sweep(self) -> SweepResponse:
        """Expire overdue broadcasts, then time out overdue offers."""
        expired = await self.registry.sweep_expired()
        timed_out = await self.dispatcher.sweep_overdue()
        return SweepResponse(expired_broadcasts=expired, timed_out_assignments=timed_out)

    async def archive(self, days_to_keep: Optional[int] = None) -> ArchivalResponse:
        positions = await self.archival.archive_tracking(days_to_keep)
        broadcasts = await self.archival.archive_broadcasts(days_to_keep)
        return ArchivalResponse(
            status="completed",
            positions_archived=positions,
            broadcasts_archived=broadcasts,
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.expiry_sweep_interval_seconds)
            try:
                result = await self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")
                continue
            if result.expired_broadcasts or result.timed_out_assignments:
                logger.info(
                    "Sweep expired %s broadcast(s), timed out %s assignment(s)",
                    len(result.expired_broadcasts), len(result.timed_out_assignments),
                )

    async def drain(self) -> None:
        """Wait until no background delivery or fan-out is in flight."""
        await self.dispatcher.drain()
        await self.tracking.drain()
        await self.dispatcher.drain()

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.dispatcher.shutdown()
        await self.tracking.shutdown()
        logger.info("Dispatch core stopped")
