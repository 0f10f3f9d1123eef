"""
Rollup Writer

Applies order changes to the per-event aggregate document inside a
document-store transaction: read the current rollup, fold the change in
with the delta aggregator, merge the result back.
"""

from typing import Any, Dict, Optional

import structlog

from order_rollup.aggregation.delta import apply_order_change
from order_rollup.aggregation.models import EventRollup
from order_rollup.database.store import SERVER_TIMESTAMP, DocumentStore, Transaction
from order_rollup.transformation.normalizer import NormalizedOrder

logger = structlog.get_logger(__name__)


class RollupWriter:
    """
    Transactional access to event rollup documents.

    Example:
        writer = RollupWriter(store)
        rollup = await writer.apply("E1", before, after, club_id="C1")
    """

    def __init__(
        self,
        store: DocumentStore,
        collection: str = "analytics_events",
        max_attempts: Optional[int] = None,
    ):
        self.store = store
        self.collection = collection
        self.max_attempts = max_attempts

    def _payload(self, event_id: str, rollup: EventRollup, club_id: Optional[str]) -> Dict[str, Any]:
        payload = rollup.to_document()
        payload["eventId"] = event_id
        payload["updatedAt"] = SERVER_TIMESTAMP
        if club_id:
            payload["clubId"] = club_id
        return payload

    async def apply(
        self,
        event_id: str,
        before: Optional[NormalizedOrder],
        after: Optional[NormalizedOrder],
        club_id: Optional[str] = None,
    ) -> EventRollup:
        """
        Fold one order change into the event's rollup atomically.

        The document is created on first write and merged afterwards.
        The callback is a pure function of the state it reads, so the
        store may re-run it on conflicts.

        Returns:
            The rollup as committed (without server-assigned fields)

        Raises:
            TransactionAborted: When the store gives up retrying
        """
        async def fold(tx: Transaction) -> EventRollup:
            current = EventRollup.from_document(await tx.get(self.collection, event_id))
            updated = apply_order_change(current, before, after)
            tx.set(self.collection, event_id, self._payload(event_id, updated, club_id), merge=True)
            return updated

        return await self.store.run_transaction(fold, max_attempts=self.max_attempts)

    async def replace(self, event_id: str, rollup: EventRollup, club_id: Optional[str] = None) -> None:
        """Overwrite the event's rollup document wholesale"""
        async def write(tx: Transaction) -> None:
            tx.set(self.collection, event_id, self._payload(event_id, rollup, club_id), merge=False)

        await self.store.run_transaction(write, max_attempts=self.max_attempts)
        logger.info("Event rollup replaced", event_id=event_id, paid_count=rollup.summary.paid_count)

    async def fetch(self, event_id: str) -> Optional[EventRollup]:
        """Read the current rollup of an event, None if it has none yet"""
        document = await self.store.get(self.collection, event_id)
        if document is None:
            return None
        return EventRollup.from_document(document)
