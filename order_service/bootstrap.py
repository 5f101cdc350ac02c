"""Wiring: builds the saga and its collaborators from Settings."""

import asyncio
from functools import partial

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from notification_service.consumer import notify

from order_service.catalog import CatalogClient, HttpCatalogClient, PriceLookup, StaticCatalog
from order_service.circuit_breaker import CircuitBreaker
from order_service.config import Settings
from order_service.payment import MockPaymentGateway, PaymentGateway, PaymentProcessor
from order_service.saga import OrderSagaOrchestrator, ReservationTracker
from order_service.store import OrderStore
from shared.kafka import KafkaChannel
from shared.events import ORDER_CANCELLED, ORDER_CONFIRMED, ORDER_CREATED
from shared.messaging import InMemoryChannel, MessageChannel, run_consumer, run_supervised
from shared.seed import DEMO_PRODUCTS
from stock_service.consumer import StockReservationConsumer
from stock_service.database import Base as StockBase
from stock_service.store import StockStore, seed_demo_stock

LOCAL_STOCK_GROUP = "stock-service"
LOCAL_NOTIFICATION_GROUP = "notification-service"


def reply_queue_for(instance_id: str) -> str:
    return f"stock.reservations.{instance_id}"


def build_channel(settings: Settings) -> MessageChannel:
    options = {
        "max_deliveries": settings.max_deliveries,
        "publish_retries": settings.publish_retries,
        "publish_backoff": settings.publish_backoff,
    }
    if settings.channel_backend == "memory":
        return InMemoryChannel(**options)
    if settings.channel_backend == "kafka":
        return KafkaChannel(settings.kafka_bootstrap_servers, client_id=settings.instance_id, **options)
    raise ValueError(f"Unknown channel backend: {settings.channel_backend}")


def build_catalog(settings: Settings, http_client: httpx.AsyncClient | None = None) -> CatalogClient:
    if settings.catalog_url:
        if http_client is None:
            raise ValueError("An HTTP client is required when catalog_url is set")
        return HttpCatalogClient(http_client)
    return StaticCatalog({p["product_id"]: p["price"] for p in DEMO_PRODUCTS})


def _breaker(settings: Settings, name: str, call_timeout: float) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        call_timeout=call_timeout,
        reset_timeout=settings.circuit_breaker_reset_timeout,
        failure_rate_threshold=settings.circuit_breaker_failure_rate,
        window_size=settings.circuit_breaker_window_size,
        minimum_calls=settings.circuit_breaker_minimum_calls,
    )


def build_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker,
    channel: MessageChannel,
    catalog: CatalogClient,
    gateway: PaymentGateway | None = None,
) -> OrderSagaOrchestrator:
    gateway = gateway or MockPaymentGateway(
        min_latency=settings.payment_min_latency,
        max_latency=settings.payment_max_latency,
        decline_rate=settings.payment_decline_rate,
    )
    prices = PriceLookup(
        catalog,
        _breaker(settings, "catalog", settings.catalog_timeout),
        cache_ttl=settings.price_cache_ttl,
    )
    payments = PaymentProcessor(gateway, _breaker(settings, "payment", settings.payment_timeout))
    return OrderSagaOrchestrator(
        OrderStore(session_factory),
        channel,
        prices,
        payments,
        ReservationTracker(),
        reply_queue=reply_queue_for(settings.instance_id),
        reservation_timeout=settings.reservation_timeout,
    )


async def start_local_workers(
    settings: Settings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker,
    channel: MessageChannel,
) -> list[asyncio.Task]:
    """Run the stock and notification consumers inside this process.

    With the "memory" backend every queue lives in the order service, so the
    workers that normally run as separate services consume here. Stock tables
    share the order database.
    """
    async with engine.begin() as conn:
        await conn.run_sync(StockBase.metadata.create_all)
    store = StockStore(session_factory)
    await seed_demo_stock(store, settings.local_reorder_level)

    stock = StockReservationConsumer(store, channel)
    workers = [
        ("stock-order-created", ORDER_CREATED, LOCAL_STOCK_GROUP, stock.handle),
        ("stock-order-cancelled", ORDER_CANCELLED, LOCAL_STOCK_GROUP, stock.handle),
        ("notify-order-confirmed", ORDER_CONFIRMED, LOCAL_NOTIFICATION_GROUP, notify),
        ("notify-order-cancelled", ORDER_CANCELLED, LOCAL_NOTIFICATION_GROUP, notify),
    ]
    return [
        asyncio.create_task(run_supervised(name, partial(run_consumer, channel, queue, group, handler)))
        for name, queue, group, handler in workers
    ]
