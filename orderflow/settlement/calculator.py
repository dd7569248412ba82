"""
Settlement calculator.

Pure functions over integer minor units. The SettlementSplit returned here is
the only place an order's money is divided; nothing else recomputes fees.
"""

from typing import Dict, Iterable, Mapping, Optional

import structlog

from ..gateways.exceptions import ValidationError
from ..gateways.models import (
    CartLine,
    PaymentSplit,
    SettlementSplit,
    SplitShare,
    require_minor_units
)

logger = structlog.get_logger(__name__)


DEFAULT_PLATFORM_FEE_BPS = 1000      # 10%
BPS_DENOMINATOR = 10_000


def calculate_split(
    subtotal: int,
    delivery_fee: int,
    platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS
) -> SettlementSplit:
    """
    Split an order's money.

    The platform fee is floored; the remainder of the subtotal goes to the
    seller, so platform_fee + seller_amount == subtotal exactly.

    Args:
        subtotal: Item total in minor units
        delivery_fee: Delivery fee in minor units, passed through untouched
        platform_fee_bps: Platform fee in basis points

    Returns:
        SettlementSplit

    Raises:
        ValidationError: On non-integer or negative amounts, or a rate
            outside 0..10000 bps

    Example:
        >>> calculate_split(1000, 250)
        SettlementSplit(platform_fee=100, seller_amount=900, delivery_fee=250)
    """
    require_minor_units("subtotal", subtotal)
    require_minor_units("delivery_fee", delivery_fee)
    if isinstance(platform_fee_bps, bool) or not isinstance(platform_fee_bps, int) \
            or not 0 <= platform_fee_bps <= BPS_DENOMINATOR:
        raise ValidationError(f"platform_fee_bps must be an integer in 0..{BPS_DENOMINATOR}")

    platform_fee = subtotal * platform_fee_bps // BPS_DENOMINATOR
    return SettlementSplit(
        platform_fee=platform_fee,
        seller_amount=subtotal - platform_fee,
        delivery_fee=delivery_fee
    )


def calculate_multi_seller_split(
    lines: Iterable[CartLine],
    delivery_fees: Optional[Mapping[str, int]] = None,
    platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS
) -> Dict[str, SettlementSplit]:
    """
    Group a cart by seller and split each seller's subtotal.

    Args:
        lines: Cart lines
        delivery_fees: seller_id -> delivery fee (missing sellers pay 0)
        platform_fee_bps: Platform fee in basis points

    Returns:
        seller_id -> SettlementSplit, in order of first appearance
    """
    delivery_fees = delivery_fees or {}
    subtotals: Dict[str, int] = {}
    for line in lines:
        subtotals[line.seller_id] = subtotals.get(line.seller_id, 0) + line.line_total

    if not subtotals:
        raise ValidationError("Cart is empty")

    unknown = set(delivery_fees) - set(subtotals)
    if unknown:
        raise ValidationError(f"Delivery fees given for sellers not in cart: {sorted(unknown)}")

    return {
        seller_id: calculate_split(subtotal, delivery_fees.get(seller_id, 0), platform_fee_bps)
        for seller_id, subtotal in subtotals.items()
    }


def build_payment_split(
    splits: Mapping[str, SettlementSplit],
    subaccounts: Mapping[str, str]
) -> PaymentSplit:
    """
    Turn per-seller splits into payment-processor routing.

    Each seller with a payout subaccount receives a flat share equal to its
    seller_amount. The platform keeps fees, delivery fees and the amounts of
    sellers without a subaccount (paid out later).

    Args:
        splits: seller_id -> SettlementSplit
        subaccounts: seller_id -> payout subaccount code

    Returns:
        PaymentSplit whose shares plus platform_amount equal the charged total
    """
    shares = []
    platform_amount = 0
    for seller_id, split in splits.items():
        subaccount = subaccounts.get(seller_id)
        if subaccount and split.seller_amount > 0:
            shares.append(SplitShare(seller_id=seller_id, subaccount=subaccount, share=split.seller_amount))
            platform_amount += split.platform_fee + split.delivery_fee
        else:
            if not subaccount:
                logger.warning("Seller has no payout subaccount, holding share", seller_id=seller_id)
            platform_amount += split.total

    return PaymentSplit(shares=shares, platform_amount=platform_amount)
