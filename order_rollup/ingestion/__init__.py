"""
Order Change Ingestion Module
"""
from .order_trigger import OrderChange, OrderWriteHandler, ProcessingOutcome
from .stream_consumer import OrderChangeConsumer, ConsumerConfig
from .backfill import rebuild_event_rollup

__all__ = [
    "OrderChange",
    "OrderWriteHandler",
    "ProcessingOutcome",
    "OrderChangeConsumer",
    "ConsumerConfig",
    "rebuild_event_rollup",
]
