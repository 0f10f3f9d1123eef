"""
Rollup Aggregation Module
"""
from .club_resolver import ClubResolver
from .delta import apply_order_change
from .models import EventRollup
from .rollup import RollupWriter

__all__ = [
    "ClubResolver",
    "apply_order_change",
    "EventRollup",
    "RollupWriter",
]
