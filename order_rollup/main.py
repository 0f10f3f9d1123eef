"""
Order Rollup Worker

Main entry point: consumes order changes and keeps the per-event
analytics rollups up to date.
"""

import asyncio

import structlog
from prometheus_client import start_http_server

from order_rollup.config import get_settings
from order_rollup.config.logging import configure_logging
from order_rollup.database import SqlDocumentStore, close_database, get_session_factory, init_database
from order_rollup.ingestion import OrderWriteHandler
from order_rollup.ingestion.stream_consumer import run_consumer

logger = structlog.get_logger(__name__)


async def serve() -> None:
    """Run the worker until cancelled"""
    settings = get_settings()
    
    logger.info("Starting order rollup worker", environment=settings.app_env, version=settings.version)
    
    if settings.monitoring.metrics_port:
        start_http_server(settings.monitoring.metrics_port)
        logger.info("Metrics exporter started", port=settings.monitoring.metrics_port)
    
    await init_database(create_schema=not settings.is_production)
    try:
        store = SqlDocumentStore(get_session_factory())
        handler = OrderWriteHandler.from_settings(store, settings)
        await run_consumer(handler)
    finally:
        logger.info("Shutting down...")
        await close_database()


def run() -> None:
    """Console entry point"""
    configure_logging()
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
