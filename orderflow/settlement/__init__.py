"""
Settlement - money split between platform, sellers and couriers.
"""

from .calculator import (
    DEFAULT_PLATFORM_FEE_BPS,
    build_payment_split,
    calculate_multi_seller_split,
    calculate_split
)

__all__ = [
    "DEFAULT_PLATFORM_FEE_BPS",
    "build_payment_split",
    "calculate_multi_seller_split",
    "calculate_split"
]
