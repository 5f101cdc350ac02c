"""
Shared fixtures: SQLite databases under tmp_path, an in-memory channel and
builders for the saga and the stock worker.
"""

import asyncio
import contextlib

import pytest
import pytest_asyncio

import order_service.models  # noqa: F401  registers order tables
import stock_service.models  # noqa: F401  registers stock tables
from order_service.catalog import PriceLookup, StaticCatalog
from order_service.circuit_breaker import CircuitBreaker
from order_service.consumer import run_reply_consumer
from order_service.database import Base as OrderBase
from order_service.payment import PaymentProcessor
from order_service.saga import OrderSagaOrchestrator, ReservationTracker
from order_service.store import OrderStore
from shared.database import create_engine, create_session_factory
from shared.events import ORDER_CANCELLED, ORDER_CREATED
from shared.messaging import InMemoryChannel, run_consumer
from stock_service.consumer import StockReservationConsumer
from stock_service.database import Base as StockBase
from stock_service.store import StockStore
from tests.fakes import PRICES, REPLY_QUEUE, STOCK, FakePaymentGateway


async def _session_factory(url: str, base):
    engine = create_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)
    return engine, create_session_factory(engine)


@pytest_asyncio.fixture
async def order_sessions(tmp_path):
    engine, factory = await _session_factory(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", OrderBase)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def stock_sessions(tmp_path):
    engine, factory = await _session_factory(f"sqlite+aiosqlite:///{tmp_path / 'stock.db'}", StockBase)
    yield factory
    await engine.dispose()


@pytest.fixture
def order_store(order_sessions) -> OrderStore:
    return OrderStore(order_sessions)


@pytest_asyncio.fixture
async def stock_store(stock_sessions) -> StockStore:
    store = StockStore(stock_sessions)
    for product_id, available in STOCK.items():
        await store.set_stock(product_id, available, reorder_level=1)
    return store


@pytest_asyncio.fixture
async def channel():
    channel = InMemoryChannel(max_deliveries=3, publish_retries=2, publish_backoff=0)
    yield channel
    await channel.close()


@pytest.fixture
def catalog() -> StaticCatalog:
    return StaticCatalog(PRICES)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def make_saga(order_store, catalog, gateway):
    """Build an orchestrator over the test store; override any collaborator per test."""

    def build(
        channel,
        *,
        price_catalog=None,
        payment_gateway=None,
        reservation_timeout=3.0,
        payment_timeout=1.0,
    ):
        prices = PriceLookup(
            price_catalog or catalog,
            CircuitBreaker("catalog", call_timeout=1.0, reset_timeout=30.0),
        )
        payments = PaymentProcessor(
            payment_gateway or gateway,
            CircuitBreaker("payment", call_timeout=payment_timeout, reset_timeout=30.0),
        )
        return OrderSagaOrchestrator(
            order_store,
            channel,
            prices,
            payments,
            ReservationTracker(),
            reply_queue=REPLY_QUEUE,
            reservation_timeout=reservation_timeout,
        )

    return build


@pytest_asyncio.fixture
async def start_workers(stock_store):
    """Start the reply consumer for an orchestrator and, optionally, the stock worker."""
    tasks: list[asyncio.Task] = []

    def start(channel, orchestrator=None, *, stock=True):
        if orchestrator is not None:
            tasks.append(
                asyncio.create_task(
                    run_reply_consumer(channel, orchestrator.reply_queue, "order-test", orchestrator.tracker)
                )
            )
        if stock:
            consumer = StockReservationConsumer(stock_store, channel)
            tasks.append(asyncio.create_task(run_consumer(channel, ORDER_CREATED, "stock-service", consumer.handle)))
            tasks.append(asyncio.create_task(run_consumer(channel, ORDER_CANCELLED, "stock-service", consumer.handle)))

    yield start

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
