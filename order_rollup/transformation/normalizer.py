"""
Order Normalizer

Turns a raw, loosely-typed order record into the normalized values the
rollup aggregator works with. Pure functions, no I/O.

Handles:
- Field aliasing (first populated alias wins)
- Numeric coercion of formatted amounts ("$12.000", "1,500.50")
- Timestamp coercion (epoch millis, ISO-8601, {seconds} structs, datetimes)
- Net revenue derivation with service fee removal
"""

import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple


# Fee charged on top of the seller's price; gross = net * (1 + SERVICE_FEE_RATE)
SERVICE_FEE_RATE = 0.12

DEFAULT_TICKET_TYPE = "General"
ANONYMOUS_BUYER = "anon"

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


class OrderStatus(str, Enum):
    """Payment status of an order as counted by the rollup"""
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


# =============================================================================
# FIELD RULES
# =============================================================================

@dataclass(frozen=True)
class FieldRule:
    """Ordered alias paths for one logical order field"""
    name: str
    paths: Tuple[str, ...]
    default: Any = None

    def lookup(self, record: Optional[Mapping[str, Any]]) -> Any:
        """Return the first populated alias value, or the default"""
        for path in self.paths:
            value = _resolve_path(record, path)
            if _is_populated(value):
                return value
        return self.default

    def values(self, record: Optional[Mapping[str, Any]]):
        """Yield every populated alias value in rule order"""
        for path in self.paths:
            value = _resolve_path(record, path)
            if _is_populated(value):
                yield value


EVENT_ID = FieldRule("event_id", ("eventId", "eventID", "event_id"))
CLUB_ID = FieldRule("club_id", ("clubId", "club.id"))
STATUS = FieldRule("status", ("status", "Status"), default="")
PRICE = FieldRule("price", ("price",))
QTY = FieldRule("qty", ("qty",))
GROSS_AMOUNT = FieldRule("amount", ("amount", "Amount", "webhook.paymentData.amount"))
TICKET_TYPE = FieldRule("ticket_type", ("ticketName", "ticketType"), default=DEFAULT_TICKET_TYPE)
BUYER_KEY = FieldRule("buyer_key", ("buyerUid", "email", "payer"), default=ANONYMOUS_BUYER)
BUYER_EMAIL = FieldRule("email", ("email",))
REFERENCE_TIME = FieldRule("reference_time", ("paidAt", "createdAt"))
COMMERCE_ORDER = FieldRule("order_id", ("commerceOrder", "CommerceOrder", "orderId"))
PAYMENT_ID = FieldRule("payment_id", ("paymentId", "PaymentID", "flowOrder"))


def _resolve_path(record: Optional[Mapping[str, Any]], path: str) -> Any:
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _is_populated(value: Any) -> bool:
    return value is not None and value != ""


# =============================================================================
# COERCION
# =============================================================================

def as_number(value: Any, default: Optional[float] = 0) -> Optional[float]:
    """
    Coerce a loosely-typed value to a number.

    Strings are stripped of everything except digits, '.' and '-' so
    currency symbols and thousands separators are tolerated.

    Args:
        value: Raw field value
        default: Returned when the value is missing or unparsable

    Returns:
        Parsed number or the default
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else default

    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return default
    try:
        number = float(cleaned)
    except ValueError:
        return default
    return number if math.isfinite(number) else default


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward positive infinity"""
    return int(math.floor(value + 0.5))


def to_millis(value: Any) -> Optional[int]:
    """
    Normalize a timestamp to epoch milliseconds.

    Accepts epoch millis, ISO-8601 strings (naive values are UTC),
    {"seconds": ...} structs, objects exposing a numeric ``seconds``
    attribute and datetime instances. Anything else yields None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            return int(seconds * 1000)
        return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return to_millis(parsed)

    seconds = getattr(value, "seconds", None)
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
        return int(seconds * 1000)
    return None


# =============================================================================
# FIELD EXTRACTORS
# =============================================================================

def event_id(order: Optional[Mapping[str, Any]]) -> Optional[str]:
    value = EVENT_ID.lookup(order)
    return str(value) if value is not None else None


def club_id(order: Optional[Mapping[str, Any]]) -> Optional[str]:
    value = CLUB_ID.lookup(order)
    return str(value) if value is not None else None


def net_revenue(order: Optional[Mapping[str, Any]]) -> int:
    """
    Seller's net revenue for an order line.

    Prefers price * qty. Otherwise takes the first parsable gross amount
    alias and strips the service fee. Returns 0 when neither is available.
    """
    price = as_number(PRICE.lookup(order), None)
    qty = as_number(QTY.lookup(order), None)
    if price is not None and qty is not None:
        return round_half_up(price * qty)

    for raw in GROSS_AMOUNT.values(order):
        gross = as_number(raw, None)
        if gross is not None:
            return round_half_up(gross / (1 + SERVICE_FEE_RATE))
    return 0


def quantity(order: Optional[Mapping[str, Any]]) -> float:
    qty = as_number(QTY.lookup(order), 1)
    return int(qty) if float(qty).is_integer() else qty


def reference_timestamp(order: Optional[Mapping[str, Any]], now_ms: Optional[int] = None) -> int:
    """Paid-at, else created-at, else now, in epoch millis"""
    for raw in REFERENCE_TIME.values(order):
        millis = to_millis(raw)
        if millis is not None:
            return millis
    return now_ms if now_ms is not None else int(time.time() * 1000)


def day_key(timestamp_ms: int) -> str:
    """UTC calendar date (YYYY-MM-DD) of an epoch-millis timestamp"""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def status(order: Optional[Mapping[str, Any]]) -> OrderStatus:
    """Lower-cased status; unrecognized or missing values count as pending"""
    raw = str(STATUS.lookup(order)).strip().lower()
    try:
        return OrderStatus(raw)
    except ValueError:
        return OrderStatus.PENDING


def ticket_type_label(order: Optional[Mapping[str, Any]]) -> str:
    return str(TICKET_TYPE.lookup(order))


def buyer_key(order: Optional[Mapping[str, Any]]) -> str:
    return str(BUYER_KEY.lookup(order))


def buyer_email(order: Optional[Mapping[str, Any]]) -> Optional[str]:
    value = BUYER_EMAIL.lookup(order)
    return str(value) if value is not None else None


def commerce_order_id(order: Optional[Mapping[str, Any]]) -> Optional[str]:
    value = COMMERCE_ORDER.lookup(order)
    return str(value) if value is not None else None


def payment_id(order: Optional[Mapping[str, Any]]) -> Optional[str]:
    value = PAYMENT_ID.lookup(order)
    return str(value) if value is not None else None


# =============================================================================
# NORMALIZED ORDER
# =============================================================================

@dataclass(frozen=True)
class NormalizedOrder:
    """Normalized view of one order record"""
    order_id: str
    event_id: Optional[str]
    club_id: Optional[str]
    status: OrderStatus
    net_revenue: int
    quantity: float
    reference_timestamp: int
    day_key: str
    ticket_type: str
    buyer_key: str
    buyer_email: Optional[str] = None
    payment_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.PAID


def normalize_order(
    order: Optional[Mapping[str, Any]],
    *,
    order_id: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> Optional[NormalizedOrder]:
    """
    Normalize a raw order record.

    Args:
        order: Raw order record, or None for an absent image
        order_id: Document key of the order, used when the record
            carries no order identifier of its own
        now_ms: Clock reading used when the record has no timestamp

    Returns:
        NormalizedOrder, or None when no record was given
    """
    if order is None:
        return None

    ts = reference_timestamp(order, now_ms)
    return NormalizedOrder(
        order_id=commerce_order_id(order) or order_id or "",
        event_id=event_id(order),
        club_id=club_id(order),
        status=status(order),
        net_revenue=net_revenue(order),
        quantity=quantity(order),
        reference_timestamp=ts,
        day_key=day_key(ts),
        ticket_type=ticket_type_label(order),
        buyer_key=buyer_key(order),
        buyer_email=buyer_email(order),
        payment_id=payment_id(order),
    )
