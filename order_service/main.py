import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from functools import partial

import httpx
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from order_service.bootstrap import build_catalog, build_channel, build_orchestrator, start_local_workers
from order_service.config import settings
from order_service.consumer import run_reply_consumer
from order_service.database import AsyncSessionLocal, Base, engine
from order_service.middleware.metrics import MetricsMiddleware
from order_service.middleware.request_id import RequestIDMiddleware
from order_service.reconciliation import ReconciliationSweep
from order_service.routers import orders
from shared.logging import setup_logging
from shared.messaging import run_supervised
from shared.tracing import setup_tracing

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

setup_tracing("order-service", settings.otlp_endpoint)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up — creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    channel = build_channel(settings)
    await channel.start()

    http_client = None
    if settings.catalog_url:
        http_client = httpx.AsyncClient(base_url=settings.catalog_url, timeout=settings.catalog_timeout)

    orchestrator = build_orchestrator(
        settings, AsyncSessionLocal, channel, build_catalog(settings, http_client)
    )
    app.state.orchestrator = orchestrator

    sweep = ReconciliationSweep(orchestrator.store, channel)
    tasks = [
        asyncio.create_task(
            run_supervised(
                "reply-consumer",
                partial(
                    run_reply_consumer,
                    channel,
                    orchestrator.reply_queue,
                    settings.instance_id,
                    orchestrator.tracker,
                ),
            )
        ),
        asyncio.create_task(
            run_supervised("reconciliation", partial(sweep.run_forever, settings.reconciliation_interval))
        ),
    ]
    if settings.channel_backend == "memory":
        tasks.extend(await start_local_workers(settings, engine, AsyncSessionLocal, channel))
    logger.info(
        "Startup complete",
        extra={"channel_backend": settings.channel_backend, "reply_queue": orchestrator.reply_queue},
    )

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await channel.close()
    if http_client is not None:
        await http_client.aclose()
    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Order Saga Service",
    description="Orders: price, reserve, pay, confirm or compensate",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)
app.include_router(orders.router, prefix="/orders", tags=["orders"])

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
