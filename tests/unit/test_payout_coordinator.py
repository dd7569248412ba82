"""
Unit tests for the seller payout coordinator.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from orderflow.gateways.exceptions import ErrorCategory, UpstreamUnavailable
from orderflow.gateways.models import (
    Order,
    OrderStatus,
    PayoutStatus,
    RefundStatus,
    TransferResult,
    utcnow
)
from orderflow.oms.payout_coordinator import PayoutCoordinator, payout_reference
from orderflow.oms.repository import InMemoryOrderRepository


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def gateway():
    mock = Mock()
    mock.name = "mock-payment"
    mock.transfer = AsyncMock(return_value=TransferResult("TRF_1", "payout_ord_1", "success"))
    return mock


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def coordinator(repository, gateway, notifier):
    return PayoutCoordinator(repository, gateway, notifier=notifier)


def make_order(**overrides):
    values = dict(
        order_id="ord_1",
        buyer_id="buyer_1",
        seller_id="seller_1",
        items=["item_1"],
        subtotal=1000,
        delivery_fee=250,
        total_amount=1250,
        status=OrderStatus.DELIVERED,
        payment_reference="ref_1",
        seller_email="seller@example.com",
        payout_recipient="RCP_1",
        delivered_at=utcnow()
    )
    values.update(overrides)
    return Order(**values)


# ============================================================================
# Payout Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_payout_issued(coordinator, repository, gateway, notifier):
    """Test the seller share is transferred and recorded as paid."""
    await repository.add(make_order())

    outcome = await coordinator.pay("ord_1")

    assert outcome.success
    assert outcome.paid
    gateway.transfer.assert_awaited_once_with("RCP_1", 900, "payout_ord_1", reason="Payout for order ord_1")
    payout = await repository.get_payout("ord_1")
    assert payout.status == PayoutStatus.PAID
    assert payout.transfer_id == "TRF_1"
    assert payout.attempts == 1
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.PAID
    notifier.notify.assert_called_once_with("seller@example.com", "seller_payout", {
        "order_id": "ord_1",
        "amount": 900,
        "reference": "payout_ord_1"
    })


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_payout_is_noop(coordinator, repository, gateway):
    """Test paying twice makes one transfer."""
    await repository.add(make_order())

    await coordinator.pay("ord_1")
    second = await coordinator.pay("ord_1")

    assert second.success
    assert second.already_paid
    assert not second.paid
    gateway.transfer.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_platform_fee_withheld(repository, gateway):
    """Test the configured platform fee comes off the seller share."""
    coordinator = PayoutCoordinator(repository, gateway, platform_fee_bps=500)
    await repository.add(make_order())

    outcome = await coordinator.pay("ord_1")

    assert outcome.payout.amount == 950
    assert gateway.transfer.await_args.args[1] == 950


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"status": OrderStatus.COLLECTED},
    {"seller_subaccount": "ACCT_1"},
    {"payout_recipient": None},
    {"refund_status": RefundStatus.PROCESSED, "refund_amount": 1250},
])
async def test_unpayable_orders_rejected(coordinator, repository, gateway, overrides):
    """Test orders that are not delivered, split-settled, refunded or unroutable are not paid."""
    await repository.add(make_order(**overrides))

    outcome = await coordinator.pay("ord_1")

    assert not outcome.success
    assert outcome.category == ErrorCategory.VALIDATION
    gateway.transfer.assert_not_awaited()
    assert await repository.get_payout("ord_1") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_order(coordinator, gateway):
    """Test an unknown order id fails validation."""
    outcome = await coordinator.pay("ord_missing")

    assert not outcome.success
    assert outcome.category == ErrorCategory.VALIDATION
    gateway.transfer.assert_not_awaited()


# ============================================================================
# Failure Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_processor_failure_is_retryable(coordinator, repository, gateway, notifier):
    """Test a processor outage leaves the payout failed and a later call pays it."""
    await repository.add(make_order())
    gateway.transfer.side_effect = [
        UpstreamUnavailable("processor down", provider="mock-payment"),
        TransferResult("TRF_2", "payout_ord_1", "success"),
    ]

    first = await coordinator.pay("ord_1")

    assert not first.success
    assert first.category == ErrorCategory.UPSTREAM_UNAVAILABLE
    assert (await repository.get_payout("ord_1")).last_error == "processor down"
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.FAILED
    notifier.notify.assert_not_called()

    second = await coordinator.pay("ord_1")

    assert second.paid
    assert second.payout.attempts == 2
    assert gateway.transfer.await_args.args[2] == "payout_ord_1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unexpected_error_releases_payout_claim(coordinator, repository, gateway):
    """Test a crash during the transfer call leaves the payout retryable."""
    await repository.add(make_order())
    gateway.transfer.side_effect = [
        AttributeError("'NoneType' object has no attribute 'json'"),
        TransferResult("TRF_2", "payout_ord_1", "success"),
    ]

    with pytest.raises(AttributeError):
        await coordinator.pay("ord_1")

    payout = await repository.get_payout("ord_1")
    assert payout.status == PayoutStatus.FAILED
    assert payout.last_error.startswith("AttributeError")

    outcome = await coordinator.pay("ord_1")

    assert outcome.paid
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.PAID


# ============================================================================
# Transfer Webhook Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_pending_transfer_settled_by_webhook(coordinator, repository, gateway):
    """Test a transfer accepted as pending is confirmed by transfer.success."""
    await repository.add(make_order())
    gateway.transfer.return_value = TransferResult("TRF_1", "payout_ord_1", "pending")

    outcome = await coordinator.pay("ord_1")
    assert outcome.payout.status == PayoutStatus.PENDING

    result = await coordinator.settle_transfer(payout_reference("ord_1"), True, transfer_id="TRF_1")
    again = await coordinator.settle_transfer(payout_reference("ord_1"), True, transfer_id="TRF_1")

    assert result.success
    assert again.message == "Payout already paid"
    assert (await repository.get_payout("ord_1")).status == PayoutStatus.PAID
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.PAID


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_transfer_webhook(coordinator, repository, gateway):
    """Test transfer.failed marks the payout failed so the sweep retries it."""
    await repository.add(make_order())
    gateway.transfer.return_value = TransferResult("TRF_1", "payout_ord_1", "pending")
    await coordinator.pay("ord_1")

    await coordinator.settle_transfer("payout_ord_1", False, error="Account closed")

    payout = await repository.get_payout("ord_1")
    assert payout.status == PayoutStatus.FAILED
    assert payout.last_error == "Account closed"
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.FAILED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_transfer_reference(coordinator, repository):
    """Test transfers we did not make are acknowledged and ignored."""
    result = await coordinator.settle_transfer("payout_ord_other", True)

    assert result.success
    assert result.order is None
    assert await repository.find_payout_by_reference("payout_ord_other") is None
