"""
Stock Service entry point.
Starts the message channel, seeds demo stock, then consumes order.created and
order.cancelled until stopped.
"""

import asyncio
import logging

import prometheus_client

from shared.events import ORDER_CANCELLED, ORDER_CREATED
from shared.kafka import KafkaChannel
from shared.logging import setup_logging
from shared.messaging import run_consumer
from shared.tracing import setup_tracing
from stock_service.config import settings
from stock_service.consumer import StockReservationConsumer
from stock_service.database import AsyncSessionLocal, Base, engine
from stock_service.store import StockStore, seed_demo_stock

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

prometheus_client.start_http_server(settings.metrics_port)
setup_tracing("stock-service", settings.otlp_endpoint)


async def main() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    store = StockStore(AsyncSessionLocal)
    if settings.seed_demo_stock:
        await seed_demo_stock(store, settings.default_reorder_level)

    channel = KafkaChannel(
        settings.kafka_bootstrap_servers,
        client_id=settings.kafka_consumer_group,
        max_deliveries=settings.max_deliveries,
        publish_retries=settings.publish_retries,
        publish_backoff=settings.publish_backoff,
    )
    await channel.start()
    consumer = StockReservationConsumer(store, channel)
    logger.info(
        "Stock service started",
        extra={
            "consumer_group": settings.kafka_consumer_group,
            "metrics_port": settings.metrics_port,
        },
    )

    try:
        await asyncio.gather(
            run_consumer(channel, ORDER_CREATED, settings.kafka_consumer_group, consumer.handle),
            run_consumer(channel, ORDER_CANCELLED, settings.kafka_consumer_group, consumer.handle),
        )
    finally:
        await channel.close()
        await engine.dispose()
        logger.info("Stock service stopped")


if __name__ == "__main__":
    asyncio.run(main())
