"""
Notification Service entry point.
Starts the message channel and consumes order outcomes until stopped.
"""

import asyncio
import logging

import prometheus_client

from notification_service.config import settings
from notification_service.consumer import notify
from shared.events import ORDER_CANCELLED, ORDER_CONFIRMED
from shared.kafka import KafkaChannel
from shared.logging import setup_logging
from shared.messaging import run_consumer
from shared.tracing import setup_tracing

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

prometheus_client.start_http_server(settings.metrics_port)
setup_tracing("notification-service", settings.otlp_endpoint)


async def main() -> None:
    channel = KafkaChannel(
        settings.kafka_bootstrap_servers,
        client_id=settings.kafka_consumer_group,
        max_deliveries=settings.max_deliveries,
    )
    await channel.start()
    logger.info(
        "Notification service started",
        extra={
            "consumer_group": settings.kafka_consumer_group,
            "metrics_port": settings.metrics_port,
        },
    )

    try:
        await asyncio.gather(
            run_consumer(channel, ORDER_CONFIRMED, settings.kafka_consumer_group, notify),
            run_consumer(channel, ORDER_CANCELLED, settings.kafka_consumer_group, notify),
        )
    finally:
        await channel.close()
        logger.info("Notification service stopped")


if __name__ == "__main__":
    asyncio.run(main())
