import asyncio
import json
import logging

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractExchange
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.config import settings
from checkout.db import get_session_factory
from checkout.messaging import get_exchange
from checkout.models import NotificationOutbox

logger = logging.getLogger("checkout.workers")


async def publish_pending(session: AsyncSession, exchange: AbstractExchange, batch_size: int = 100) -> int:
    """Publish one batch of unpublished outbox rows. Returns how many went out.

    A row is marked published only after the broker accepted it, so a crash
    between the two re-publishes it: consumers must tolerate duplicates.
    """
    stmt = (
        select(NotificationOutbox)
        .where(NotificationOutbox.published_at.is_(None))
        .order_by(NotificationOutbox.created_at)
        .limit(batch_size)
    )
    events = (await session.execute(stmt)).scalars().all()
    if not events:
        return 0

    for ev in events:
        message = Message(
            body=json.dumps(ev.payload).encode(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=str(ev.id),
        )
        await exchange.publish(message, routing_key=ev.event_type)
        ev.published_at = func.now()
        session.add(ev)

    await session.commit()
    logger.info("Published %d notification(s)", len(events))
    return len(events)


async def outbox_publisher():
    interval = settings.OUTBOX_POLL_INTERVAL
    session_factory = get_session_factory()

    while True:
        try:
            async with session_factory() as session:
                exchange = await get_exchange()
                await publish_pending(session, exchange, settings.OUTBOX_BATCH_SIZE)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Rows stay unpublished and are picked up on the next pass.
            logger.exception("Outbox publish failed")

        await asyncio.sleep(interval)
