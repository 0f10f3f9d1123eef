"""
Order Transformation Module
"""
from .normalizer import NormalizedOrder, OrderStatus, normalize_order

__all__ = [
    "NormalizedOrder",
    "OrderStatus",
    "normalize_order",
]
