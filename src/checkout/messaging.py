import asyncio
import logging
from aio_pika import connect_robust, ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel, AbstractExchange
from checkout.config import settings

logger = logging.getLogger("checkout.messaging")

rabbit_connection: AbstractRobustConnection | None = None
rabbit_channel:    AbstractRobustChannel     | None = None

async def init_rabbit(retry_attempts: int = 5, retry_delay: int = 2) -> None:
    global rabbit_connection, rabbit_channel
    url = f"amqp://{settings.RABBIT_USER}:{settings.RABBIT_PASSWORD}@{settings.RABBIT_HOST}:{settings.RABBIT_PORT}/"

    for attempt in range(1, retry_attempts + 1):
        try:
            logger.info("Connecting to RabbitMQ (attempt %d/%d)", attempt, retry_attempts)
            rabbit_connection = await connect_robust(url)
            rabbit_channel    = await rabbit_connection.channel()
            await get_exchange()
            logger.info("RabbitMQ setup complete")
            return
        except Exception as e:
            logger.error("RabbitMQ init failed: %s", e)
            if attempt < retry_attempts:
                await asyncio.sleep(retry_delay)
            else:
                logger.critical("Could not connect to RabbitMQ, giving up")
                raise

async def get_channel() -> AbstractRobustChannel:
    if rabbit_channel is None:
        await init_rabbit()
    return rabbit_channel

async def get_exchange() -> AbstractExchange:
    """Notifications go to a topic exchange keyed by event type
    (`reservation.confirmed`, ...), so consumers can bind on `reservation.*`."""
    channel = rabbit_channel or await get_channel()
    return await channel.declare_exchange(
        settings.NOTIFICATIONS_EXCHANGE, ExchangeType.TOPIC, durable=True
    )

async def close_rabbit() -> None:
    global rabbit_connection, rabbit_channel
    if rabbit_connection:
        await rabbit_connection.close()
        rabbit_connection = None
        rabbit_channel = None
        logger.info("RabbitMQ connection closed")
