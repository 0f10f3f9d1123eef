"""
Unit Tests - Order Write Trigger
"""
import asyncio

import pytest
from prometheus_client import REGISTRY

from order_rollup.aggregation.club_resolver import ClubResolver
from order_rollup.aggregation.rollup import RollupWriter
from order_rollup.config import Settings
from order_rollup.config.settings import RollupSettings
from order_rollup.database.store import MemoryDocumentStore
from order_rollup.exceptions import TransactionConflict
from order_rollup.ingestion.order_trigger import OrderChange, OrderWriteHandler, ProcessingOutcome


class ConflictingStore(MemoryDocumentStore):
    """Store on which every transaction attempt loses a race"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.attempts = 0

    async def _attempt(self, callback):
        self.attempts += 1
        raise TransactionConflict("analytics_events", "E1")


class BrokenStore(MemoryDocumentStore):
    """Store that fails with an unexpected error"""

    async def _attempt(self, callback):
        raise RuntimeError("disk full")


class UnreachableStore(MemoryDocumentStore):
    async def get(self, collection, key):
        raise ConnectionError("store unreachable")


class SlowStore(MemoryDocumentStore):
    async def get(self, collection, key):
        await asyncio.sleep(5)
        return None


class RevertFailingWriter(RollupWriter):
    """Writer whose revert-only updates fail with a store error"""

    async def apply(self, event_id, before, after, club_id=None):
        if after is None:
            raise ConnectionError("store unreachable")
        return await super().apply(event_id, before, after, club_id=club_id)


def outcome_count(outcome: str) -> float:
    return REGISTRY.get_sample_value("order_rollup_changes_total", {"outcome": outcome}) or 0.0


@pytest.fixture
def handler(memory_store):
    return OrderWriteHandler(
        writer=RollupWriter(memory_store),
        resolver=ClubResolver(memory_store),
    )


class TestOrderChange:
    """Tests for the change message model"""

    def test_numeric_order_id(self):
        assert OrderChange(orderId=42).order_id == "42"

    def test_images_optional(self):
        change = OrderChange.model_validate({"orderId": "O1", "after": {"status": "paid"}})
        assert change.before is None
        assert change.after == {"status": "paid"}


class TestSkips:
    """Changes that are intentionally not aggregated"""

    async def test_deletion_is_skipped(self, handler, memory_store, order_factory):
        change = OrderChange(orderId="O1", before=order_factory(status="paid"), after=None)

        assert await handler.handle(change) == ProcessingOutcome.SKIPPED
        assert await memory_store.get("analytics_events", "E1") is None

    async def test_order_without_event_is_skipped(self, handler, memory_store, order_factory):
        change = OrderChange(orderId="O1", after=order_factory(event_id=None))

        assert await handler.handle(change) == ProcessingOutcome.SKIPPED
        assert memory_store.commits == 0

    async def test_skip_is_counted(self, handler, order_factory):
        before = outcome_count("skipped")
        await handler.handle(OrderChange(orderId="O1", after=None))
        assert outcome_count("skipped") == before + 1


class TestApply:
    """Changes folded into rollups"""

    async def test_lifecycle(self, handler, memory_store, order_factory):
        pending = order_factory(status="pending")
        paid = order_factory(status="paid")

        assert await handler.handle(OrderChange(orderId="O1", after=pending)) == ProcessingOutcome.APPLIED
        assert await handler.handle(OrderChange(orderId="O1", before=pending, after=paid)) == ProcessingOutcome.APPLIED

        stored = await memory_store.get("analytics_events", "E1")
        assert stored["summary"]["paidCount"] == 1
        assert stored["summary"]["pendingCount"] == 0
        assert stored["summary"]["netRevenue"] == 20000

    async def test_redelivery_is_idempotent(self, handler, memory_store, order_factory):
        pending = order_factory(status="pending")
        paid = order_factory(status="paid")
        change = OrderChange(orderId="O1", before=pending, after=paid)

        await handler.handle(OrderChange(orderId="O1", after=pending))
        await handler.handle(change)
        first = await memory_store.get("analytics_events", "E1")
        await handler.handle(change)
        second = await memory_store.get("analytics_events", "E1")

        first.pop("updatedAt")
        second.pop("updatedAt")
        assert second == first

    async def test_club_on_order_skips_lookup(self, handler, memory_store, order_factory):
        await memory_store.set("evento", "E1", {"clubId": "C-event"})

        await handler.handle(OrderChange(orderId="O1", after=order_factory(clubId="C-order")))

        assert (await memory_store.get("analytics_events", "E1"))["clubId"] == "C-order"

    async def test_missing_club_resolved_from_event(self, handler, memory_store, order_factory):
        await memory_store.set("evento", "E1", {"club": {"id": "C1"}})

        await handler.handle(OrderChange(orderId="O1", after=order_factory()))

        assert (await memory_store.get("analytics_events", "E1"))["clubId"] == "C1"

    async def test_unresolved_club_still_applies(self, memory_store, order_factory):
        handler = OrderWriteHandler(
            writer=RollupWriter(memory_store),
            resolver=ClubResolver(UnreachableStore()),
        )

        outcome = await handler.handle(OrderChange(orderId="O1", after=order_factory(status="paid")))

        stored = await memory_store.get("analytics_events", "E1")
        assert outcome == ProcessingOutcome.APPLIED
        assert "clubId" not in stored
        assert stored["summary"]["paidCount"] == 1

    async def test_document_key_used_as_order_id(self, handler, memory_store, order_factory):
        after = order_factory(order_id=None, status="paid")

        await handler.handle(OrderChange(orderId="doc-7", after=after))

        stored = await memory_store.get("analytics_events", "E1")
        assert stored["recentOrders"][0]["orderId"] == "doc-7"

    async def test_order_moved_between_events(self, handler, memory_store, order_factory):
        on_first = order_factory(event_id="E1", status="paid")
        on_second = order_factory(event_id="E2", status="paid")

        await handler.handle(OrderChange(orderId="O1", after=on_first))
        outcome = await handler.handle(OrderChange(orderId="O1", before=on_first, after=on_second))

        first = await memory_store.get("analytics_events", "E1")
        second = await memory_store.get("analytics_events", "E2")
        assert outcome == ProcessingOutcome.APPLIED
        assert first["summary"]["paidCount"] == 0
        assert first["summary"]["totalPaymentsSeen"] == 0
        assert first["recentOrders"] == []
        assert second["summary"]["paidCount"] == 1

    async def test_failed_revert_still_applies_move(self, memory_store, order_factory):
        """Test the new event is updated even when the old one cannot be reverted"""
        handler = OrderWriteHandler(writer=RevertFailingWriter(memory_store))
        on_first = order_factory(event_id="E1", status="paid", clubId="C1")
        on_second = order_factory(event_id="E2", status="paid", clubId="C1")

        outcome = await handler.handle(OrderChange(orderId="O1", before=on_first, after=on_second))

        assert outcome == ProcessingOutcome.APPLIED
        assert await memory_store.get("analytics_events", "E1") is None
        assert (await memory_store.get("analytics_events", "E2"))["summary"]["paidCount"] == 1

    async def test_order_gaining_event(self, handler, memory_store, order_factory):
        before = order_factory(event_id=None, status="pending")
        after = order_factory(status="paid")

        await handler.handle(OrderChange(orderId="O1", before=before, after=after))

        stored = await memory_store.get("analytics_events", "E1")
        assert stored["summary"]["paidCount"] == 1
        assert stored["summary"]["pendingCount"] == 0


class TestFailures:
    """Changes that could not be folded"""

    async def test_exhausted_retries_drop_change(self, order_factory):
        store = ConflictingStore(max_attempts=5, backoff_seconds=0)
        handler = OrderWriteHandler(writer=RollupWriter(store))
        before = outcome_count("dropped")

        outcome = await handler.handle(OrderChange(orderId="O1", after=order_factory(clubId="C1")))

        assert outcome == ProcessingOutcome.DROPPED
        assert store.attempts == 5
        assert outcome_count("dropped") == before + 1

    async def test_unexpected_error_drops_change(self, order_factory):
        handler = OrderWriteHandler(writer=RollupWriter(BrokenStore(backoff_seconds=0)))

        outcome = await handler.handle(OrderChange(orderId="O1", after=order_factory(clubId="C1")))

        assert outcome == ProcessingOutcome.DROPPED

    async def test_invocation_timeout(self, memory_store, order_factory):
        handler = OrderWriteHandler(
            writer=RollupWriter(memory_store),
            resolver=ClubResolver(SlowStore(), timeout=10),
            invocation_timeout=0.05,
        )

        outcome = await handler.handle(OrderChange(orderId="O1", after=order_factory()))

        assert outcome == ProcessingOutcome.TIMED_OUT
        assert await memory_store.get("analytics_events", "E1") is None


class TestFromSettings:
    """Tests for settings wiring"""

    def test_wiring(self, memory_store):
        settings = Settings(
            app_env="testing",
            rollup=RollupSettings(
                rollup_collection="rollups",
                events_collection="events",
                max_transaction_attempts=7,
                transaction_timeout_seconds=3,
                club_lookup_timeout_seconds=1.5,
                invocation_timeout_seconds=12,
            ),
        )

        handler = OrderWriteHandler.from_settings(memory_store, settings)

        assert handler.writer.collection == "rollups"
        assert handler.resolver.collection == "events"
        assert handler.resolver.timeout == 1.5
        assert handler.invocation_timeout == 12
        assert memory_store.max_attempts == 7
        assert memory_store.attempt_timeout == 3

    async def test_defaults(self, memory_store, order_factory):
        handler = OrderWriteHandler.from_settings(memory_store, Settings(app_env="testing"))

        await handler.handle(OrderChange(orderId="O1", after=order_factory()))

        assert await memory_store.get("analytics_events", "E1") is not None
