"""
Rollup Document Models

Typed schema of the per-event aggregate document read by the sales
dashboards. Field names serialize to camelCase to match the stored layout:

- summary: revenue, status counters and average order value
- seriesDaily: per-day revenue and ticket counts
- ticketsByType: per-ticket-type quantity and revenue
- buyers: per-buyer ledger with derived unique/repeat counts and top spenders
- recentOrders: capped list of the latest order snapshots
"""

from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from order_rollup.transformation.normalizer import NormalizedOrder, round_half_up

Number = Union[int, float]


class RollupModel(BaseModel):
    """Base model with camelCase aliases"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# BUCKETS
# =============================================================================

class Summary(RollupModel):
    """Event-wide sales summary"""
    net_revenue: int = 0
    paid_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    ticket_count: Number = 0
    avg_order_value: int = 0
    total_payments_seen: int = 0

    def refresh(self) -> None:
        """Recompute the derived fields"""
        self.total_payments_seen = self.paid_count + self.failed_count + self.pending_count
        self.avg_order_value = (
            round_half_up(self.net_revenue / self.paid_count) if self.paid_count > 0 else 0
        )


class DailyStat(RollupModel):
    """Paid sales for one calendar day"""
    net_revenue: int = 0
    paid_count: int = 0
    ticket_count: Number = 0

    def add(self, order: NormalizedOrder, sign: int) -> None:
        self.net_revenue += sign * order.net_revenue
        self.paid_count += sign
        self.ticket_count += sign * order.quantity

    @property
    def is_empty(self) -> bool:
        return not (self.net_revenue or self.paid_count or self.ticket_count)


class TicketStat(RollupModel):
    """Paid sales for one ticket type"""
    qty: Number = 0
    net_revenue: int = 0

    def add(self, order: NormalizedOrder, sign: int) -> None:
        self.qty += sign * order.quantity
        self.net_revenue += sign * order.net_revenue

    @property
    def is_empty(self) -> bool:
        return not (self.qty or self.net_revenue)


class BuyerStat(RollupModel):
    """Paid purchases of one buyer"""
    purchase_count: int = 0
    total_spent: int = 0
    email: Optional[str] = None

    def add(self, order: NormalizedOrder, sign: int) -> None:
        self.purchase_count += sign
        self.total_spent += sign * order.net_revenue
        if sign > 0 and order.buyer_email:
            self.email = order.buyer_email

    @property
    def is_empty(self) -> bool:
        return not (self.purchase_count or self.total_spent)


class TopBuyer(BuyerStat):
    """Leaderboard row, a BuyerStat tagged with its buyer key"""
    buyer_key: str


class BuyerLedger(RollupModel):
    """Per-buyer ledger and its derived projections"""
    unique_count: int = 0
    repeat_count: int = 0
    per_buyer: Dict[str, BuyerStat] = Field(default_factory=dict)
    top20_by_score: List[TopBuyer] = Field(default_factory=list, alias="top20ByScore")

    def add(self, order: NormalizedOrder, sign: int) -> None:
        stat = self.per_buyer.setdefault(order.buyer_key, BuyerStat())
        stat.add(order, sign)
        if stat.is_empty:
            del self.per_buyer[order.buyer_key]

    def refresh(self, top_limit: int) -> None:
        """Recompute unique/repeat counts and the top buyers by spend"""
        # Rows can be transiently negative while a revert waits for its apply
        buyers = [(key, stat) for key, stat in self.per_buyer.items() if stat.purchase_count > 0]
        self.unique_count = len(buyers)
        self.repeat_count = sum(1 for _, stat in buyers if stat.purchase_count >= 2)
        ranked = sorted(buyers, key=lambda item: (-item[1].total_spent, item[0]))
        self.top20_by_score = [
            TopBuyer(buyer_key=key, **stat.model_dump())
            for key, stat in ranked[:top_limit]
        ]


class RecentOrder(RollupModel):
    """Snapshot of an order's latest state"""
    created_at: int
    payment_id: Optional[str] = None
    order_id: str
    status: str
    net: int = 0

    @classmethod
    def from_order(cls, order: NormalizedOrder) -> "RecentOrder":
        return cls(
            created_at=order.reference_timestamp,
            payment_id=order.payment_id,
            order_id=order.order_id,
            status=order.status.value,
            net=order.net_revenue,
        )


# =============================================================================
# AGGREGATE DOCUMENT
# =============================================================================

class EventRollup(RollupModel):
    """
    Aggregate document for one sellable event.

    Every bucket holds exactly the sum of the contributions of the
    currently-known order states.
    """
    event_id: Optional[str] = None
    club_id: Optional[str] = None
    summary: Summary = Field(default_factory=Summary)
    series_daily: Dict[str, DailyStat] = Field(default_factory=dict)
    tickets_by_type: Dict[str, TicketStat] = Field(default_factory=dict)
    buyers: BuyerLedger = Field(default_factory=BuyerLedger)
    recent_orders: List[RecentOrder] = Field(default_factory=list)
    updated_at: Optional[Any] = None

    @classmethod
    def from_document(cls, data: Optional[Mapping[str, Any]]) -> "EventRollup":
        """Load a stored document; a missing document is an empty rollup"""
        if not data:
            return cls()
        return cls.model_validate(dict(data))

    def to_document(self) -> Dict[str, Any]:
        """Serialize the aggregate buckets for a merge write"""
        return self.model_dump(
            by_alias=True,
            exclude={"event_id", "club_id", "updated_at"},
        )
