"""
Unit tests for collection, delivery and cancellation actions.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from orderflow.gateways.exceptions import ErrorCategory, UpstreamUnavailable
from orderflow.gateways.models import Order, OrderStatus, RefundReason, RefundResult, RefundStatus
from orderflow.gateways.sandbox import SandboxPaymentGateway
from orderflow.oms.fulfillment import FulfillmentCoordinator
from orderflow.oms.refund_coordinator import RefundCoordinator
from orderflow.oms.repository import InMemoryOrderRepository
from orderflow.oms.state_machine import OrderStateMachine


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def payment_gateway():
    gateway = SandboxPaymentGateway()
    gateway.payments["ref_1"] = 1250
    return gateway


@pytest.fixture
def fulfillment(repository, payment_gateway):
    return FulfillmentCoordinator(
        repository,
        OrderStateMachine(repository),
        RefundCoordinator(repository, payment_gateway)
    )


async def add_order(repository, **overrides):
    values = dict(
        order_id="ord_1",
        buyer_id="buyer_1",
        seller_id="seller_1",
        items=["item_1"],
        subtotal=1000,
        delivery_fee=250,
        total_amount=1250,
        payment_reference="ref_1"
    )
    values.update(overrides)
    return await repository.add(Order(**values))


# ============================================================================
# Collection And Delivery Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_collected_then_delivered(fulfillment, repository):
    """Test courier collection followed by buyer confirmation."""
    await add_order(repository, status=OrderStatus.COURIER_SCHEDULED)

    collected = await fulfillment.mark_collected("ord_1")
    delivered = await fulfillment.mark_delivered("ord_1", buyer_id="buyer_1")

    assert collected.order.status == OrderStatus.COLLECTED
    assert collected.order.collected_at is not None
    assert delivered.order.status == OrderStatus.DELIVERED
    assert delivered.order.delivered_at is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delivery_confirmed_only_by_buyer(fulfillment, repository):
    """Test another user cannot confirm delivery."""
    await add_order(repository, status=OrderStatus.COLLECTED)

    result = await fulfillment.mark_delivered("ord_1", buyer_id="someone_else")

    assert not result.success
    assert (await repository.get("ord_1")).status == OrderStatus.COLLECTED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_collect_before_scheduling_rejected(fulfillment, repository):
    """Test collection requires a scheduled courier."""
    await add_order(repository, status=OrderStatus.COMMITTED)

    result = await fulfillment.mark_collected("ord_1")

    assert result.category == ErrorCategory.INVALID_TRANSITION


# ============================================================================
# Buyer Cancellation Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_buyer_cancel_pending_refunds_total(fulfillment, repository, payment_gateway):
    """Test cancel before commit refunds everything."""
    await add_order(repository)

    result = await fulfillment.cancel_by_buyer("ord_1", "buyer_1")

    assert result.success and not result.partial
    order = await repository.get("ord_1")
    assert order.status == OrderStatus.CANCELLED_BY_BUYER
    assert order.refund_amount == 1250
    assert payment_gateway.refunds[0]["amount"] == 1250
    assert (await repository.get_refund("ref_1")).reason == RefundReason.BUYER_CANCEL


@pytest.mark.unit
@pytest.mark.asyncio
async def test_buyer_cancel_committed_keeps_delivery_fee(fulfillment, repository, payment_gateway):
    """Test late cancel refunds the subtotal only."""
    await add_order(repository, status=OrderStatus.COMMITTED)

    await fulfillment.cancel_by_buyer("ord_1", "buyer_1")

    assert (await repository.get("ord_1")).refund_amount == 1000
    assert payment_gateway.refunds[0]["amount"] == 1000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_buyer_cancel_committed_full_refund_when_configured(repository, payment_gateway):
    """Test policy can refund the delivery fee on late cancel."""
    fulfillment = FulfillmentCoordinator(
        repository,
        OrderStateMachine(repository),
        RefundCoordinator(repository, payment_gateway),
        retain_delivery_fee_on_late_cancel=False
    )
    await add_order(repository, status=OrderStatus.COMMITTED)

    await fulfillment.cancel_by_buyer("ord_1", "buyer_1")

    assert payment_gateway.refunds[0]["amount"] == 1250


@pytest.mark.unit
@pytest.mark.asyncio
async def test_buyer_cancel_after_scheduling_rejected(fulfillment, repository, payment_gateway):
    """Test cancel is refused once the courier is booked."""
    await add_order(repository, status=OrderStatus.COURIER_SCHEDULED)

    result = await fulfillment.cancel_by_buyer("ord_1", "buyer_1")

    assert result.category == ErrorCategory.INVALID_TRANSITION
    assert not payment_gateway.refunds


@pytest.mark.unit
@pytest.mark.asyncio
async def test_buyer_cancel_wrong_buyer(fulfillment, repository):
    """Test only the buyer can cancel."""
    await add_order(repository)

    result = await fulfillment.cancel_by_buyer("ord_1", "buyer_2")

    assert result.category == ErrorCategory.VALIDATION


@pytest.mark.unit
@pytest.mark.asyncio
async def test_repeat_cancel_completes_failed_refund(repository):
    """Test a repeated cancel retries the original refund amount."""
    gateway = Mock()
    gateway.name = "mock-payment"
    gateway.refund = AsyncMock(side_effect=UpstreamUnavailable("processor down"))
    fulfillment = FulfillmentCoordinator(
        repository,
        OrderStateMachine(repository),
        RefundCoordinator(repository, gateway)
    )
    await add_order(repository, status=OrderStatus.COMMITTED)

    first = await fulfillment.cancel_by_buyer("ord_1", "buyer_1")
    gateway.refund.side_effect = None
    gateway.refund.return_value = RefundResult(refund_id="rf_1", status="processed")
    second = await fulfillment.cancel_by_buyer("ord_1", "buyer_1")
    third = await fulfillment.cancel_by_buyer("ord_1", "buyer_1")

    assert first.partial
    assert second.success and not second.partial
    assert gateway.refund.await_args_list[-1].args == ("ref_1", 1000)
    assert gateway.refund.await_count == 2
    assert third.success
    assert (await repository.get("ord_1")).refund_status == RefundStatus.PROCESSED


# ============================================================================
# Missed Pickup Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancel_after_missed_pickup(fulfillment, repository, payment_gateway):
    """Test seller cancel after collection timeout refunds in full."""
    await add_order(repository, status=OrderStatus.COLLECTION_TIMEOUT)

    result = await fulfillment.cancel_after_missed_pickup("ord_1", "seller_1")

    assert result.success
    order = await repository.get("ord_1")
    assert order.status == OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP
    assert order.cancelled_at is not None
    assert payment_gateway.refunds[0]["amount"] == 1250
    assert (await repository.get_refund("ref_1")).reason == RefundReason.SELLER_DECLINE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missed_pickup_cancel_requires_timeout(fulfillment, repository):
    """Test the missed-pickup path only follows a collection timeout."""
    await add_order(repository, status=OrderStatus.COURIER_SCHEDULED)

    wrong_status = await fulfillment.cancel_after_missed_pickup("ord_1", "seller_1")
    wrong_seller = await fulfillment.cancel_after_missed_pickup("ord_1", "seller_2")

    assert wrong_status.category == ErrorCategory.INVALID_TRANSITION
    assert wrong_seller.category == ErrorCategory.VALIDATION
