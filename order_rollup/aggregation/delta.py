"""
Delta Aggregator

Folds one order write into an event rollup with revert-then-apply:
the previous observed state of the order is fully reverted before the
new state is applied, so replays and corrections converge instead of
compounding.

Contributions are plain signed sums with no clamping, so the changes of
an order commute: a revert delivered before its apply leaves a negative
row until the apply arrives, and the end state does not depend on
delivery order. Rows are dropped once every counter is exactly zero.

The functions here are pure. A rollup transaction may be retried any
number of times and simply calls them again on the freshly read state.
"""

from typing import Any, Dict, List, Optional

from order_rollup.aggregation.models import DailyStat, EventRollup, RecentOrder, TicketStat
from order_rollup.transformation.normalizer import NormalizedOrder, OrderStatus

RECENT_ORDERS_LIMIT = 300
TOP_BUYERS_LIMIT = 20


def _contribute(rollup: EventRollup, order: NormalizedOrder, sign: int) -> None:
    """Add (sign=+1) or remove (sign=-1) one order state's contribution"""
    summary = rollup.summary

    if order.status == OrderStatus.PAID:
        summary.net_revenue += sign * order.net_revenue
        summary.paid_count += sign
        summary.ticket_count += sign * order.quantity
        _add_to_row(rollup.series_daily, order.day_key, DailyStat, order, sign)
        _add_to_row(rollup.tickets_by_type, order.ticket_type, TicketStat, order, sign)
        rollup.buyers.add(order, sign)
    elif order.status == OrderStatus.FAILED:
        summary.failed_count += sign
    else:
        summary.pending_count += sign


def _add_to_row(rows: Dict[str, Any], key: str, factory, order: NormalizedOrder, sign: int) -> None:
    row = rows.get(key)
    if row is None:
        row = rows[key] = factory()
    row.add(order, sign)
    if row.is_empty:
        del rows[key]


def _merge_recent(
    entries: List[RecentOrder],
    before: Optional[NormalizedOrder],
    after: Optional[NormalizedOrder],
    limit: int,
) -> List[RecentOrder]:
    """Replace the order's snapshot, newest first, capped at limit"""
    replaced = {order.order_id for order in (before, after) if order is not None}
    kept = [entry for entry in entries if entry.order_id not in replaced]
    if after is not None:
        kept.insert(0, RecentOrder.from_order(after))
    kept.sort(key=lambda entry: entry.created_at, reverse=True)
    return kept[:limit]


def apply_order_change(
    rollup: EventRollup,
    before: Optional[NormalizedOrder],
    after: Optional[NormalizedOrder],
    recent_limit: int = RECENT_ORDERS_LIMIT,
    top_buyers: int = TOP_BUYERS_LIMIT,
) -> EventRollup:
    """
    Compute the rollup that results from one order write.

    Args:
        rollup: Current aggregate state (not modified)
        before: Previous normalized state of the order, None on first sight
        after: New normalized state, None to only revert the order
        recent_limit: Maximum number of recent order snapshots kept
        top_buyers: Size of the buyer leaderboard

    Returns:
        New EventRollup with the order's previous contribution reverted
        and its new contribution applied
    """
    result = rollup.model_copy(deep=True)

    if before is not None:
        _contribute(result, before, -1)
    if after is not None:
        _contribute(result, after, +1)

    result.summary.refresh()
    result.buyers.refresh(top_buyers)
    result.recent_orders = _merge_recent(result.recent_orders, before, after, recent_limit)
    return result
