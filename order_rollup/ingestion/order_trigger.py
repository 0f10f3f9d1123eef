"""
Order Write Trigger

Entry point invoked once per order-record write with the record's
before and after images. Delivery is at-least-once and unordered, so
each invocation is an independent, bounded unit of work:

- Skips deletions and orders without an event
- Resolves a missing club reference outside the transaction
- Folds the change into the event rollup inside one transaction
- Logs and drops the change when the transaction cannot complete
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ConfigDict, Field, field_validator

from order_rollup.aggregation.club_resolver import ClubResolver
from order_rollup.aggregation.rollup import RollupWriter
from order_rollup.config import Settings, get_settings
from order_rollup.config.logging import order_context
from order_rollup.database.store import DocumentStore
from order_rollup.exceptions import TransactionAborted
from order_rollup.transformation import normalizer

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

ORDER_CHANGES_PROCESSED = Counter(
    "order_rollup_changes_total",
    "Order changes handled by the rollup trigger",
    ["outcome"],
)

ORDER_CHANGE_PROCESSING_TIME = Histogram(
    "order_rollup_processing_seconds",
    "Time spent folding an order change into its event rollup",
)

CLUB_LOOKUPS = Counter(
    "order_rollup_club_lookups_total",
    "Club lookups for orders without a club reference",
    ["result"],
)


# =============================================================================
# MODELS
# =============================================================================

class ProcessingOutcome(str, Enum):
    """Result of handling one order change"""
    APPLIED = "applied"
    SKIPPED = "skipped"
    DROPPED = "dropped"
    TIMED_OUT = "timed_out"


class OrderChange(BaseModel):
    """Before and after images of one order-record write"""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @field_validator("order_id", mode="before")
    @classmethod
    def coerce_order_id(cls, v: Any) -> Any:
        """Accept numeric document keys"""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


# =============================================================================
# HANDLER
# =============================================================================

class OrderWriteHandler:
    """
    Folds order writes into event rollups.

    Example:
        handler = OrderWriteHandler.from_settings(store)
        outcome = await handler.handle(OrderChange(orderId="O1", before=None, after=order))
    """

    def __init__(
        self,
        writer: RollupWriter,
        resolver: Optional[ClubResolver] = None,
        invocation_timeout: float = 30.0,
    ):
        self.writer = writer
        self.resolver = resolver
        self.invocation_timeout = invocation_timeout

    @classmethod
    def from_settings(cls, store: DocumentStore, settings: Optional[Settings] = None) -> "OrderWriteHandler":
        """Build a handler wired to a store with the configured collections and timeouts"""
        settings = settings or get_settings()
        rollup = settings.rollup
        store.max_attempts = rollup.max_transaction_attempts
        store.attempt_timeout = rollup.transaction_timeout_seconds
        return cls(
            writer=RollupWriter(store, collection=rollup.rollup_collection),
            resolver=ClubResolver(
                store,
                collection=rollup.events_collection,
                timeout=rollup.club_lookup_timeout_seconds,
            ),
            invocation_timeout=rollup.invocation_timeout_seconds,
        )

    async def handle(self, change: OrderChange) -> ProcessingOutcome:
        """
        Handle one order write. Never raises.

        Returns:
            ProcessingOutcome describing what happened to the change
        """
        if change.after is None:
            logger.debug("Order deleted, ignoring", order_id=change.order_id)
            return self._record(ProcessingOutcome.SKIPPED)

        event_id = normalizer.event_id(change.after)
        if not event_id:
            logger.debug("Order has no event, ignoring", order_id=change.order_id)
            return self._record(ProcessingOutcome.SKIPPED)

        with order_context(change.order_id, event_id):
            start = time.perf_counter()
            try:
                await asyncio.wait_for(self._process(change, event_id), self.invocation_timeout)
            except asyncio.TimeoutError:
                logger.error("Order change timed out", timeout=self.invocation_timeout)
                return self._record(ProcessingOutcome.TIMED_OUT)
            except TransactionAborted as e:
                logger.error("Rollup transaction failed", attempts=e.attempts, error=str(e.cause))
                return self._record(ProcessingOutcome.DROPPED)
            except Exception as e:
                logger.error("Rollup update failed", error=str(e), error_type=type(e).__name__)
                return self._record(ProcessingOutcome.DROPPED)
            finally:
                ORDER_CHANGE_PROCESSING_TIME.observe(time.perf_counter() - start)

            logger.info("Order change processed")
            return self._record(ProcessingOutcome.APPLIED)

    async def _process(self, change: OrderChange, event_id: str) -> None:
        now_ms = int(time.time() * 1000)
        before = normalizer.normalize_order(change.before, order_id=change.order_id, now_ms=now_ms)
        after = normalizer.normalize_order(change.after, order_id=change.order_id, now_ms=now_ms)

        club_id = after.club_id
        if not club_id and self.resolver is not None:
            club_id = await self.resolver.resolve(event_id)
            CLUB_LOOKUPS.labels(result="resolved" if club_id else "missing").inc()

        if before is not None and before.event_id != event_id:
            if before.event_id:
                await self._revert_moved(before)
            before = None

        await self.writer.apply(event_id, before, after, club_id=club_id)

    async def _revert_moved(self, before: normalizer.NormalizedOrder) -> None:
        """Remove an order's contribution from the event it moved away from"""
        try:
            await self.writer.apply(before.event_id, before, None)
            logger.info("Order moved between events", from_event=before.event_id)
        except Exception as e:
            logger.error(
                "Could not revert order from previous event",
                from_event=before.event_id,
                error=str(e) or type(e).__name__,
            )

    @staticmethod
    def _record(outcome: ProcessingOutcome) -> ProcessingOutcome:
        ORDER_CHANGES_PROCESSED.labels(outcome=outcome.value).inc()
        return outcome
