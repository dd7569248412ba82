"""
Unit tests for the normalized order models.
"""

import pytest

from orderflow.gateways.exceptions import ValidationError
from orderflow.gateways.models import (
    CartLine,
    DeliveryQuote,
    Order,
    OrderStatus,
    Parcel,
    PaymentVerification,
    PayoutStatus,
    RefundReason,
    RefundRecord,
    RefundStatus,
    SettlementSplit,
    ShipmentStatus
)


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def sample_order():
    """Create sample order."""
    return Order(
        order_id="ord_1",
        buyer_id="buyer_1",
        seller_id="seller_1",
        items=["item_1"],
        subtotal=1000,
        delivery_fee=250,
        total_amount=1250,
        payment_reference="ref_1"
    )


# ============================================================================
# Order Tests
# ============================================================================

@pytest.mark.unit
def test_order_defaults(sample_order):
    """Test new orders start pending commit with no refund."""
    assert sample_order.status == OrderStatus.PENDING_COMMIT
    assert sample_order.shipment_status == ShipmentStatus.NOT_REQUESTED
    assert sample_order.refund_status == RefundStatus.NONE
    assert not sample_order.is_refunded


@pytest.mark.unit
def test_order_coerces_enum_strings():
    """Test string statuses are coerced to enums."""
    order = Order(
        order_id="ord_2",
        buyer_id="b",
        seller_id="s",
        items=[],
        subtotal=100,
        delivery_fee=0,
        total_amount=100,
        status="committed",
        refund_status="pending"
    )

    assert order.status == OrderStatus.COMMITTED
    assert order.refund_status == RefundStatus.PENDING
    assert order.is_refunded


@pytest.mark.unit
def test_order_total_must_match_parts():
    """Test total_amount = subtotal + delivery_fee is enforced."""
    with pytest.raises(ValidationError):
        Order(
            order_id="ord_3",
            buyer_id="b",
            seller_id="s",
            items=[],
            subtotal=1000,
            delivery_fee=250,
            total_amount=1200
        )


@pytest.mark.unit
def test_order_rejects_float_money():
    """Test money must be integer minor units."""
    with pytest.raises(ValidationError):
        Order(
            order_id="ord_4",
            buyer_id="b",
            seller_id="s",
            items=[],
            subtotal=10.5,
            delivery_fee=0,
            total_amount=10.5
        )


@pytest.mark.unit
def test_refund_amount_cannot_exceed_total(sample_order):
    """Test refund_amount <= total_amount on every copy."""
    with pytest.raises(ValidationError):
        sample_order.with_changes(refund_amount=1251)

    refunded = sample_order.with_changes(refund_amount=1250, refund_status=RefundStatus.PROCESSED)
    assert refunded.refund_amount == 1250
    assert sample_order.refund_amount == 0


@pytest.mark.unit
def test_order_parcel(sample_order):
    """Test parcel derived from order weight and subtotal."""
    parcel = sample_order.parcel

    assert parcel.weight_grams == 500
    assert parcel.weight_kg == 0.5
    assert parcel.declared_value == 1000


@pytest.mark.unit
def test_order_refund_key(sample_order):
    """Test the refund key depends only on whether the payment is shared."""
    shared = sample_order.with_changes(payment_shared=True)
    unpaid = sample_order.with_changes(payment_reference=None)

    assert sample_order.refund_key == "ref_1"
    assert shared.refund_key == "ref_1:ord_1"
    assert unpaid.refund_key == "ord_1"
    assert sample_order.payout_status == PayoutStatus.NONE
    assert sample_order.reminder_sent_at is None


# ============================================================================
# Supporting Model Tests
# ============================================================================

@pytest.mark.unit
def test_refund_record_key_defaults_to_payment_reference():
    """Test ledger key defaults to the payment reference."""
    record = RefundRecord(payment_reference="ref_1", order_id="ord_1", amount=500, reason="expiry")

    assert record.refund_key == "ref_1"
    assert record.reason == RefundReason.EXPIRY
    assert record.status == RefundStatus.PENDING


@pytest.mark.unit
def test_refund_record_explicit_key():
    """Test shared payments use an order-qualified key."""
    record = RefundRecord(
        payment_reference="ref_1",
        order_id="ord_1",
        amount=500,
        reason=RefundReason.SELLER_DECLINE,
        refund_key="ref_1:ord_1"
    )

    assert record.refund_key == "ref_1:ord_1"


@pytest.mark.unit
def test_settlement_split_totals():
    """Test split totals add up."""
    split = SettlementSplit(platform_fee=100, seller_amount=900, delivery_fee=250)

    assert split.subtotal == 1000
    assert split.total == 1250


@pytest.mark.unit
def test_cart_line_validation():
    """Test cart line quantity and price validation."""
    assert CartLine(item_id="i", seller_id="s", price=300, quantity=2).line_total == 600

    with pytest.raises(ValidationError):
        CartLine(item_id="i", seller_id="s", price=300, quantity=0)

    with pytest.raises(ValidationError):
        CartLine(item_id="i", seller_id="s", price=-1)


@pytest.mark.unit
def test_parcel_requires_positive_weight():
    """Test parcel weight validation."""
    with pytest.raises(ValidationError):
        Parcel(weight_grams=0)


@pytest.mark.unit
def test_quote_sort_key():
    """Test cheapest quote wins, fewer days breaks ties."""
    quotes = [
        DeliveryQuote(courier_id="a", service_code="x", price=9000, estimated_days=2),
        DeliveryQuote(courier_id="b", service_code="x", price=8000, estimated_days=4),
        DeliveryQuote(courier_id="c", service_code="x", price=8000, estimated_days=3),
    ]

    quotes.sort(key=lambda q: q.sort_key)

    assert [q.courier_id for q in quotes] == ["c", "b", "a"]


@pytest.mark.unit
def test_payment_verification_metadata():
    """Test metadata parsed from dicts and JSON strings."""
    as_dict = PaymentVerification(reference="r", status="success", raw_data={"metadata": {"buyer_id": "b"}})
    as_json = PaymentVerification(reference="r", status="success", raw_data={"metadata": '{"buyer_id": "b"}'})
    broken = PaymentVerification(reference="r", status="success", raw_data={"metadata": "{not json"})

    assert as_dict.metadata == {"buyer_id": "b"}
    assert as_json.metadata == {"buyer_id": "b"}
    assert broken.metadata == {}
    assert as_dict.is_successful
