"""
Club Resolver

Best-effort lookup of the club an event belongs to, used when an order
arrives without a club reference. Never raises and never retries.
"""

import asyncio
from typing import Optional

import structlog

from order_rollup.database.store import DocumentStore
from order_rollup.transformation.normalizer import club_id as club_id_of

logger = structlog.get_logger(__name__)


class ClubResolver:
    """
    Resolves an event's club from its event record.

    Example:
        resolver = ClubResolver(store, collection="evento")
        club_id = await resolver.resolve("E1")
    """

    def __init__(self, store: DocumentStore, collection: str = "evento", timeout: float = 2.0):
        self.store = store
        self.collection = collection
        self.timeout = timeout

    async def resolve(self, event_id: str) -> Optional[str]:
        """
        Look up the club of an event.

        Returns:
            The club identifier, or None when the event record or its club
            reference is missing, or the lookup fails
        """
        try:
            event = await asyncio.wait_for(self.store.get(self.collection, str(event_id)), self.timeout)
        except Exception as e:
            logger.warning(
                "Could not read event for club lookup",
                event_id=event_id,
                error=str(e) or type(e).__name__,
            )
            return None

        if event is None:
            logger.debug("Event record not found for club lookup", event_id=event_id)
            return None
        return club_id_of(event)
