"""
Rollup Backfill

Rebuilds an event's rollup from a full snapshot of its order records.
Each order is folded in as a first sighting, and the resulting rollup
replaces the stored document. Used to repair a rollup left stale by
dropped trigger invocations.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

import structlog
from pydantic import BaseModel

from order_rollup.aggregation.delta import apply_order_change
from order_rollup.aggregation.models import EventRollup
from order_rollup.aggregation.rollup import RollupWriter
from order_rollup.exceptions import TransactionAborted
from order_rollup.transformation.normalizer import normalize_order

logger = structlog.get_logger(__name__)


class RebuildStatus(str, Enum):
    """Rollup rebuild status"""
    COMPLETED = "completed"
    FAILED = "failed"


class RebuildResult(BaseModel):
    """Result of a rollup rebuild"""
    event_id: str
    status: RebuildStatus
    orders_folded: int = 0
    orders_skipped: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


def fold_orders(
    event_id: str,
    orders: Mapping[str, Mapping[str, Any]],
) -> Tuple[EventRollup, int, int, Optional[str]]:
    """
    Fold a snapshot of order records into a fresh rollup.

    Args:
        event_id: Event whose rollup is built
        orders: Order records keyed by order document id

    Returns:
        Tuple of (rollup, folded count, skipped count, first club id seen)
    """
    rollup = EventRollup()
    folded = skipped = 0
    club_id = None

    for order_id, record in orders.items():
        order = normalize_order(record, order_id=order_id)
        if order is None or order.event_id != event_id:
            skipped += 1
            continue
        rollup = apply_order_change(rollup, None, order)
        club_id = club_id or order.club_id
        folded += 1

    return rollup, folded, skipped, club_id


async def rebuild_event_rollup(
    writer: RollupWriter,
    event_id: str,
    orders: Mapping[str, Mapping[str, Any]],
    club_id: Optional[str] = None,
) -> RebuildResult:
    """
    Rebuild and store the rollup of one event.

    Orders that belong to other events, or to no event, are skipped.

    Example:
        result = await rebuild_event_rollup(writer, "E1", {"O1": order, "O2": other})
    """
    result = RebuildResult(
        event_id=event_id,
        status=RebuildStatus.COMPLETED,
        started_at=datetime.now(timezone.utc),
    )

    rollup, result.orders_folded, result.orders_skipped, seen_club = fold_orders(event_id, orders)

    try:
        await writer.replace(event_id, rollup, club_id=club_id or seen_club)
    except TransactionAborted as e:
        logger.error("Rollup rebuild failed", event_id=event_id, error=str(e.cause))
        result.status = RebuildStatus.FAILED
        result.error_message = str(e)

    result.completed_at = datetime.now(timezone.utc)
    logger.info(
        "Rollup rebuild finished",
        event_id=event_id,
        status=result.status.value,
        orders_folded=result.orders_folded,
        orders_skipped=result.orders_skipped,
    )
    return result
