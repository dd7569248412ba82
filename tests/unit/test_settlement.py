"""
Unit tests for the settlement calculator.
"""

import pytest

from orderflow.gateways.exceptions import ValidationError
from orderflow.gateways.models import CartLine
from orderflow.settlement import (
    DEFAULT_PLATFORM_FEE_BPS,
    build_payment_split,
    calculate_multi_seller_split,
    calculate_split
)


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def two_seller_cart():
    """Cart with two sellers, one of them with two lines."""
    return [
        CartLine(item_id="a1", seller_id="seller_a", price=1000),
        CartLine(item_id="a2", seller_id="seller_a", price=500, quantity=2),
        CartLine(item_id="b1", seller_id="seller_b", price=333),
    ]


# ============================================================================
# Single Split Tests
# ============================================================================

@pytest.mark.unit
def test_default_split():
    """Test 10% platform fee with delivery passed through."""
    split = calculate_split(1000, 250)

    assert DEFAULT_PLATFORM_FEE_BPS == 1000
    assert split.platform_fee == 100
    assert split.seller_amount == 900
    assert split.delivery_fee == 250
    assert split.total == 1250


@pytest.mark.unit
def test_fee_is_floored_and_parts_sum_exactly():
    """Test rounding never loses or creates a cent."""
    for subtotal in (1, 9, 333, 1999, 123457):
        split = calculate_split(subtotal, 0, 1234)

        assert split.platform_fee == subtotal * 1234 // 10000
        assert split.platform_fee + split.seller_amount == subtotal


@pytest.mark.unit
def test_fee_bounds():
    """Test 0 and 10000 bps edge rates."""
    assert calculate_split(1000, 0, 0).platform_fee == 0
    assert calculate_split(1000, 0, 10000).seller_amount == 0


@pytest.mark.unit
@pytest.mark.parametrize("subtotal,delivery_fee,bps", [
    (10.5, 0, 1000),
    (-1, 0, 1000),
    (1000, -5, 1000),
    (1000, 0, 10001),
    (1000, 0, -1),
])
def test_invalid_inputs(subtotal, delivery_fee, bps):
    """Test non-integer or out-of-range inputs are rejected."""
    with pytest.raises(ValidationError):
        calculate_split(subtotal, delivery_fee, bps)


# ============================================================================
# Multi-Seller Tests
# ============================================================================

@pytest.mark.unit
def test_multi_seller_split(two_seller_cart):
    """Test cart grouped per seller with per-seller delivery fees."""
    splits = calculate_multi_seller_split(two_seller_cart, {"seller_a": 6500, "seller_b": 5000})

    assert list(splits) == ["seller_a", "seller_b"]
    assert splits["seller_a"].subtotal == 2000
    assert splits["seller_a"].platform_fee == 200
    assert splits["seller_a"].delivery_fee == 6500
    assert splits["seller_b"].platform_fee == 33
    assert splits["seller_b"].seller_amount == 300


@pytest.mark.unit
def test_multi_seller_missing_fee_defaults_to_zero(two_seller_cart):
    """Test sellers without a delivery fee pay none."""
    splits = calculate_multi_seller_split(two_seller_cart, {"seller_a": 6500})

    assert splits["seller_b"].delivery_fee == 0


@pytest.mark.unit
def test_multi_seller_rejects_empty_cart_and_unknown_fees(two_seller_cart):
    """Test empty carts and fees for absent sellers are rejected."""
    with pytest.raises(ValidationError):
        calculate_multi_seller_split([])

    with pytest.raises(ValidationError):
        calculate_multi_seller_split(two_seller_cart, {"seller_c": 100})


# ============================================================================
# Payment Split Tests
# ============================================================================

@pytest.mark.unit
def test_payment_split_routes_seller_amounts(two_seller_cart):
    """Test subaccount sellers get flat shares, platform keeps the rest."""
    splits = calculate_multi_seller_split(two_seller_cart, {"seller_a": 6500, "seller_b": 5000})

    payment_split = build_payment_split(splits, {"seller_a": "ACCT_a"})

    assert len(payment_split.shares) == 1
    assert payment_split.shares[0].subaccount == "ACCT_a"
    assert payment_split.shares[0].share == 1800
    total = sum(s.total for s in splits.values())
    assert payment_split.seller_total + payment_split.platform_amount == total
