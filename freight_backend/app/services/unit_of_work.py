"""
Transaction scope shared by the dispatch components.

One ``transaction()`` block is one database transaction: committed when the
block exits normally, rolled back otherwise. An InvariantViolationError
raised inside the block quarantines the offending broadcast in a fresh
transaction before propagating, so the halt survives the rollback.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freight_backend.app.core.clock import utcnow
from freight_backend.app.core.exceptions import InvariantViolationError
from freight_backend.app.models.broadcast import Broadcast
from freight_backend.app.services.audit import log_event, AuditAction

logger = logging.getLogger(__name__)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    try:
        async with session_factory() as db:
            yield db
            await db.commit()
    except InvariantViolationError as exc:
        await quarantine_broadcast(session_factory, exc.broadcast_id, exc.reason)
        raise


async def quarantine_broadcast(
    session_factory: async_sessionmaker,
    broadcast_id: int,
    reason: str,
    actor_id: int = None,
) -> bool:
    """
    Freeze a broadcast against further mutation.

    Returns:
        True if the broadcast was newly quarantined
    """
    async with session_factory() as db:
        result = await db.execute(
            update(Broadcast)
            .where(Broadcast.id == broadcast_id, Broadcast.is_quarantined == False)  # noqa: E712
            .values(is_quarantined=True, quarantine_reason=reason)
            .execution_options(synchronize_session=False)
        )
        newly_quarantined = result.rowcount > 0
        if newly_quarantined:
            await log_event(
                db,
                AuditAction.BROADCAST_QUARANTINED,
                entity_type="broadcast",
                entity_id=broadcast_id,
                actor_id=actor_id,
                metadata={"reason": reason, "at": utcnow().isoformat()},
            )
        await db.commit()

    if newly_quarantined:
        logger.critical(
            "Broadcast %s quarantined: %s", broadcast_id, reason,
            extra={"broadcast_id": broadcast_id},
        )
    return newly_quarantined
