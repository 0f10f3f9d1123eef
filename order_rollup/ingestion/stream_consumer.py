"""
Kafka Order-Change Consumer

Delivers order-record writes to the rollup trigger:
- Consumer group management
- Message deserialization and validation
- Manual offset commits after each handled change
- Graceful shutdown
- Metrics and observability

Delivery is at-least-once. A change the handler could not finish in time
is rewound and redelivered; a change dropped after a failed transaction
is committed and only logged.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from aiokafka import AIOKafkaConsumer, TopicPartition
from aiokafka.errors import KafkaConnectionError
from prometheus_client import Counter
from pydantic import ValidationError

from order_rollup.config import get_settings
from order_rollup.ingestion.order_trigger import OrderChange, OrderWriteHandler, ProcessingOutcome

logger = structlog.get_logger(__name__)


MESSAGES_CONSUMED = Counter(
    "order_rollup_messages_consumed_total",
    "Order-change messages consumed",
    ["topic", "status"],
)


@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topic: str
    group_id: str = "order-rollup"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False  # Manual commit after handling
    max_poll_records: int = 100
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000

    @classmethod
    def from_settings(cls) -> "ConsumerConfig":
        kafka = get_settings().kafka
        return cls(
            topic=kafka.topics_order_changes,
            group_id=kafka.consumer_group,
            bootstrap_servers=kafka.bootstrap_servers,
            auto_offset_reset=kafka.auto_offset_reset,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
        )


def parse_change(data: Any) -> Optional[OrderChange]:
    """Validate a decoded message into an OrderChange, None if malformed"""
    if not isinstance(data, dict):
        logger.warning("Order change message is not an object", data_type=type(data).__name__)
        return None
    try:
        return OrderChange.model_validate(data)
    except ValidationError as e:
        logger.warning("Order change validation failed", error=str(e))
        return None


def _decode(raw: Optional[bytes]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Order change message is not valid JSON", error=str(e))
        return None


class OrderChangeConsumer:
    """
    Kafka consumer feeding order changes to an OrderWriteHandler.

    Example:
        consumer = OrderChangeConsumer(handler)
        await consumer.start()
    """

    def __init__(self, handler: OrderWriteHandler, config: Optional[ConsumerConfig] = None):
        self.handler = handler
        self.config = config or ConsumerConfig.from_settings()
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._running = False

    def _create_consumer(self) -> AIOKafkaConsumer:
        """Create and configure Kafka consumer"""
        return AIOKafkaConsumer(
            self.config.topic,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=self.config.enable_auto_commit,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            value_deserializer=_decode,
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    async def process_message(self, value: Any, key: Optional[str] = None) -> bool:
        """
        Handle one decoded message.

        Returns:
            True when the message's offset may be committed
        """
        data = value
        if isinstance(data, dict) and key and "orderId" not in data:
            data = {**data, "orderId": key}

        change = parse_change(data)
        if change is None:
            MESSAGES_CONSUMED.labels(topic=self.config.topic, status="invalid").inc()
            return True

        outcome = await self.handler.handle(change)
        MESSAGES_CONSUMED.labels(topic=self.config.topic, status=outcome.value).inc()
        return outcome != ProcessingOutcome.TIMED_OUT

    async def start(self) -> None:
        """Start consuming order changes"""
        logger.info(
            "Starting order change consumer",
            topic=self.config.topic,
            group_id=self.config.group_id,
        )

        self._consumer = self._create_consumer()
        await self._consumer.start()
        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break

                if await self.process_message(message.value, message.key):
                    await self._consumer.commit()
                else:
                    # Redeliver the change that ran out of time
                    self._consumer.seek(TopicPartition(message.topic, message.partition), message.offset)

        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return
        logger.info("Stopping order change consumer")
        self._running = False

        if self._consumer:
            consumer, self._consumer = self._consumer, None
            await consumer.stop()

        logger.info("Order change consumer stopped")


async def run_consumer(handler: OrderWriteHandler) -> None:
    """Consume order changes until cancelled"""
    consumer = OrderChangeConsumer(handler)
    try:
        await consumer.start()
    except asyncio.CancelledError:
        await consumer.stop()
        raise
