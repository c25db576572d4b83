"""
Sales Aggregation Engine Entry Point

Composition root: wires the history source, the aggregate store, the engine
and the Kafka consumer together, then runs until SIGINT/SIGTERM.

Usage:
    sales-aggregation
    sales-aggregation --store redis --log-level DEBUG
"""

import argparse
import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from prometheus_client import start_http_server

from sales_aggregation.aggregation.events import SalesEvent
from sales_aggregation.aggregation.service import SalesAggregationService
from sales_aggregation.aggregation.sources import AggregateStore, HistoricalEventSource
from sales_aggregation.config import Settings, get_settings
from sales_aggregation.config.logging import configure_logging
from sales_aggregation.database.connection import close_database, get_db, init_database
from sales_aggregation.database.repositories import (
    SqlAlchemyAggregateStore,
    SqlAlchemyEventSource,
    record_sales_event,
)
from sales_aggregation.ingestion.stream_consumer import SalesEventConsumer
from sales_aggregation.serving.cache import RedisAggregateStore, close_redis, init_redis

logger = structlog.get_logger(__name__)

STORE_BACKENDS = ("sql", "redis")


def build_service(
    source: HistoricalEventSource,
    store: AggregateStore,
    settings: Optional[Settings] = None,
) -> SalesAggregationService:
    """Create an engine instance over the given collaborators"""
    settings = settings or get_settings()
    return SalesAggregationService(source, store, settings.aggregation)


async def persist_sales_event(event: SalesEvent) -> None:
    """Append a consumed event to the history table before it is aggregated"""
    async with get_db() as db:
        await record_sales_event(db, event)


@asynccontextmanager
async def service_context(
    store_backend: str = "sql",
    settings: Optional[Settings] = None,
) -> AsyncGenerator[SalesAggregationService, None]:
    """
    Open the backing connections and yield an unstarted service.

    Example:
        async with service_context("redis") as service:
            await service.backfill("seller-1", start, end)
    """
    if store_backend not in STORE_BACKENDS:
        raise ValueError(f"Unknown store backend {store_backend!r}, expected one of {STORE_BACKENDS}")

    settings = settings or get_settings()
    await init_database()
    try:
        if store_backend == "redis":
            store: AggregateStore = RedisAggregateStore(await init_redis(), settings.redis.namespace)
        else:
            store = SqlAlchemyAggregateStore()

        yield build_service(SqlAlchemyEventSource(), store, settings)
    finally:
        if store_backend == "redis":
            await close_redis()
        await close_database()


async def run(store_backend: str = "sql") -> None:
    """Run the engine and the consumer until a shutdown signal arrives"""
    settings = get_settings()
    start_http_server(settings.monitoring.prometheus_port)

    async with service_context(store_backend, settings) as service:
        await service.start()
        consumer = SalesEventConsumer(service, recorder=persist_sales_event)
        consumer_task = asyncio.create_task(consumer.start(), name="sales-event-consumer")

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        logger.info(
            "Sales aggregation engine running",
            app=settings.app_name,
            environment=settings.app_env,
            store=store_backend,
            metrics_port=settings.monitoring.prometheus_port,
        )

        stop_waiter = asyncio.create_task(shutdown.wait())
        done, _ = await asyncio.wait({consumer_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)

        logger.info("Shutting down...")
        stop_waiter.cancel()
        await consumer.stop()
        if consumer_task in done and consumer_task.exception() is not None:
            logger.error("Sales event consumer failed", error=str(consumer_task.exception()))
        else:
            await asyncio.gather(consumer_task, return_exceptions=True)

        await service.stop(drain=True)


def cli() -> None:
    parser = argparse.ArgumentParser(description="Real-time sales aggregation engine")
    parser.add_argument("--store", choices=STORE_BACKENDS, default="sql", help="Aggregate store backend")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--log-format", choices=("json", "text"), default=None, help="Override LOG_FORMAT")
    args = parser.parse_args()

    configure_logging(args.log_level, args.log_format)
    asyncio.run(run(args.store))


if __name__ == "__main__":
    cli()
