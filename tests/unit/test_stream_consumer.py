"""
Unit Tests - Order Change Consumer
"""
import json

import pytest

from order_rollup.config import get_settings
from order_rollup.ingestion.order_trigger import ProcessingOutcome
from order_rollup.ingestion.stream_consumer import (
    ConsumerConfig,
    OrderChangeConsumer,
    _decode,
    parse_change,
)


class FakeHandler:
    """Records changes and answers with a fixed outcome"""

    def __init__(self, outcome=ProcessingOutcome.APPLIED):
        self.outcome = outcome
        self.changes = []

    async def handle(self, change):
        self.changes.append(change)
        return self.outcome


@pytest.fixture
def consumer_config():
    return ConsumerConfig(topic="finished-orders.changes", group_id="test-group")


class TestDecoding:
    """Tests for message decoding"""

    def test_json_object(self):
        assert _decode(b'{"orderId": "O1"}') == {"orderId": "O1"}

    def test_invalid_json(self):
        assert _decode(b"{not json") is None
        assert _decode(b"\xff\xfe") is None

    def test_tombstone(self):
        assert _decode(None) is None

    def test_parse_change(self):
        change = parse_change({"orderId": "O1", "before": None, "after": {"eventId": "E1"}})
        assert change.order_id == "O1"
        assert change.after == {"eventId": "E1"}

    def test_parse_rejects_malformed(self):
        assert parse_change(["O1"]) is None
        assert parse_change({"after": {"eventId": "E1"}}) is None
        assert parse_change({"orderId": "O1", "after": "paid"}) is None


class TestProcessMessage:
    """Tests for message handling and commit decisions"""

    async def test_change_forwarded(self, consumer_config):
        handler = FakeHandler()
        consumer = OrderChangeConsumer(handler, consumer_config)

        payload = _decode(json.dumps({"orderId": "O1", "after": {"eventId": "E1", "status": "paid"}}).encode())
        assert await consumer.process_message(payload) is True

        assert len(handler.changes) == 1
        assert handler.changes[0].after["status"] == "paid"

    async def test_key_used_as_order_id(self, consumer_config):
        handler = FakeHandler()
        consumer = OrderChangeConsumer(handler, consumer_config)

        await consumer.process_message({"after": {"eventId": "E1"}}, key="O9")

        assert handler.changes[0].order_id == "O9"

    async def test_payload_order_id_wins_over_key(self, consumer_config):
        handler = FakeHandler()
        consumer = OrderChangeConsumer(handler, consumer_config)

        await consumer.process_message({"orderId": "O1", "after": {}}, key="O9")

        assert handler.changes[0].order_id == "O1"

    async def test_invalid_message_is_committed(self, consumer_config):
        handler = FakeHandler()
        consumer = OrderChangeConsumer(handler, consumer_config)

        assert await consumer.process_message(None) is True
        assert await consumer.process_message({"after": {"eventId": "E1"}}) is True
        assert handler.changes == []

    @pytest.mark.parametrize("outcome,commit", [
        (ProcessingOutcome.APPLIED, True),
        (ProcessingOutcome.SKIPPED, True),
        (ProcessingOutcome.DROPPED, True),
        (ProcessingOutcome.TIMED_OUT, False),
    ])
    async def test_commit_decision(self, consumer_config, outcome, commit):
        consumer = OrderChangeConsumer(FakeHandler(outcome), consumer_config)

        assert await consumer.process_message({"orderId": "O1", "after": {}}) is commit


class TestConsumerConfig:
    """Tests for consumer configuration"""

    def test_from_settings(self):
        config = ConsumerConfig.from_settings()
        kafka = get_settings().kafka

        assert config.topic == kafka.topics_order_changes
        assert config.group_id == kafka.consumer_group
        assert config.enable_auto_commit is False

    async def test_stop_before_start(self, consumer_config):
        consumer = OrderChangeConsumer(FakeHandler(), consumer_config)
        await consumer.stop()
        assert consumer._consumer is None
