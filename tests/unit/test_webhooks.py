"""
Unit tests for payment processor webhook handling.
"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, Mock

import pytest

from orderflow.gateways.exceptions import DataIntegrityError, ErrorCategory, ValidationError
from orderflow.gateways.models import (
    Address,
    CartLine,
    Order,
    OrderStatus,
    PayoutRecord,
    PayoutStatus,
    RefundReason,
    RefundResult,
    RefundStatus
)
from orderflow.gateways.sandbox import SandboxPaymentGateway
from orderflow.oms.checkout import CheckoutCoordinator, SellerProfile
from orderflow.oms.payout_coordinator import PayoutCoordinator
from orderflow.oms.refund_coordinator import RefundCoordinator
from orderflow.oms.repository import InMemoryOrderRepository
from orderflow.oms.results import CheckoutResult
from orderflow.oms.webhooks import WebhookHandler, event_key


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def repository():
    return InMemoryOrderRepository()


@pytest.fixture
def payment_gateway():
    return SandboxPaymentGateway(secret_key="sk_sandbox")


@pytest.fixture
def checkout(repository, payment_gateway):
    return CheckoutCoordinator(repository, payment_gateway)


@pytest.fixture
def refunds(repository, payment_gateway):
    return RefundCoordinator(repository, payment_gateway)


@pytest.fixture
def handler(repository, payment_gateway, checkout, refunds):
    return WebhookHandler(repository, payment_gateway, checkout, refunds)


def sign(payload, secret="sk_sandbox"):
    """Serialize payload and compute the processor signature."""
    body = json.dumps(payload).encode()
    return body, hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


async def start_checkout(checkout):
    result = await checkout.initiate(
        "buyer_1",
        "buyer@example.com",
        [CartLine(item_id="item_1", seller_id="seller_1", price=1000)],
        Address(name="Buyer", street="2 Main Rd", city="Durban", postal_code="4001"),
        {"seller_1": SellerProfile(seller_id="seller_1", email="seller@example.com")},
        delivery_fees={"seller_1": 250}
    )
    return result.session.payment.reference


# ============================================================================
# Event Key Tests
# ============================================================================

@pytest.mark.unit
def test_event_key_prefers_object_id():
    """Test de-duplication key composition."""
    assert event_key({"event": "charge.success", "data": {"id": 42, "reference": "ref_1"}}) == "charge.success:42"
    assert event_key({"event": "charge.success", "data": {"reference": "ref_1"}}) == "charge.success:ref_1"
    assert event_key({"event": "refund.processed", "data": {"transaction_reference": "ref_1"}}) \
        == "refund.processed:ref_1"

    with pytest.raises(ValidationError):
        event_key({"event": "charge.success", "data": {}})


# ============================================================================
# Verification Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_bad_signature_rejected(handler, repository):
    """Test unsigned or wrongly signed bodies are rejected."""
    body, _ = sign({"event": "charge.success", "data": {"reference": "ref_1"}})
    _, wrong = sign({"event": "charge.success", "data": {"reference": "ref_1"}}, secret="other")

    assert (await handler.handle(body, wrong)).category == ErrorCategory.VALIDATION
    assert (await handler.handle(body, "")).category == ErrorCategory.VALIDATION
    assert await repository.record_event("charge.success:ref_1")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_malformed_body_rejected(handler, payment_gateway):
    """Test signed but unparsable bodies are rejected."""
    body = b"not json"
    signature = hmac.new(b"sk_sandbox", body, hashlib.sha512).hexdigest()

    result = await handler.handle(body, signature)

    assert result.category == ErrorCategory.VALIDATION


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_event_ignored(handler, repository):
    """Test unhandled event types succeed without side effects."""
    body, signature = sign({"event": "subscription.create", "data": {"id": 7}})

    result = await handler.handle(body, signature)

    assert result.success
    assert "ignored" in result.message
    assert await repository.record_event("subscription.create:7")


# ============================================================================
# Charge Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_charge_success_creates_orders_once(handler, checkout, repository):
    """Test charge.success completes checkout and duplicates are skipped."""
    reference = await start_checkout(checkout)
    body, signature = sign({"event": "charge.success", "data": {"id": 1001, "reference": reference}})

    first = await handler.handle(body, signature)
    duplicate = await handler.handle(body, signature)

    assert first.success
    assert [o.status for o in first.orders] == [OrderStatus.PENDING_COMMIT]
    assert duplicate.success
    assert duplicate.message == "Duplicate event"
    assert repository.order_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_charge_success_after_redirect(handler, checkout, repository):
    """Test webhook arriving after the redirect completion is harmless."""
    reference = await start_checkout(checkout)
    await checkout.complete(reference)
    body, signature = sign({"event": "charge.success", "data": {"id": 1002, "reference": reference}})

    result = await handler.handle(body, signature)

    assert result.success
    assert repository.order_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retryable_failure_releases_event(repository, payment_gateway, refunds):
    """Test a transient failure lets the redelivery run again."""
    checkout = Mock(spec=CheckoutCoordinator)
    checkout.complete = AsyncMock(side_effect=[
        CheckoutResult(success=False, category=ErrorCategory.UPSTREAM_UNAVAILABLE, message="timeout"),
        CheckoutResult(success=True, message="Orders created")
    ])
    handler = WebhookHandler(repository, payment_gateway, checkout, refunds)
    body, signature = sign({"event": "charge.success", "data": {"id": 1003, "reference": "ref_1"}})

    first = await handler.handle(body, signature)
    second = await handler.handle(body, signature)

    assert not first.success
    assert second.success
    assert checkout.complete.await_count == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_permanent_failure_keeps_event(repository, payment_gateway, refunds):
    """Test a validation failure is not redelivered into the handler."""
    checkout = Mock(spec=CheckoutCoordinator)
    checkout.complete = AsyncMock(return_value=CheckoutResult(
        success=False, category=ErrorCategory.VALIDATION, message="amount mismatch"
    ))
    handler = WebhookHandler(repository, payment_gateway, checkout, refunds)
    body, signature = sign({"event": "charge.success", "data": {"id": 1004, "reference": "ref_1"}})

    await handler.handle(body, signature)
    second = await handler.handle(body, signature)

    assert second.message == "Duplicate event"
    checkout.complete.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_handler_exception_releases_event(handler, checkout, repository):
    """Test an exception out of the handler lets the redelivery create the orders."""
    reference = await start_checkout(checkout)
    original_add = repository.add
    calls = []

    async def flaky_add(order):
        calls.append(order.order_id)
        if len(calls) == 1:
            raise DataIntegrityError("database is locked")
        return await original_add(order)

    repository.add = flaky_add
    body, signature = sign({"event": "charge.success", "data": {"id": 1005, "reference": reference}})

    with pytest.raises(DataIntegrityError):
        await handler.handle(body, signature)
    assert repository.order_count == 0

    redelivered = await handler.handle(body, signature)

    assert redelivered.success
    assert redelivered.message != "Duplicate event"
    assert [o.status for o in redelivered.orders] == [OrderStatus.PENDING_COMMIT]
    assert repository.order_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_charge_failed_releases_reservations(handler, checkout, payment_gateway, repository):
    """Test failed charges free the cart for other buyers."""
    reference = await start_checkout(checkout)
    metadata = payment_gateway.metadata[reference]
    body, signature = sign({
        "event": "charge.failed",
        "data": {"id": 2001, "reference": reference, "metadata": json.dumps(metadata)}
    })

    result = await handler.handle(body, signature)

    assert result.success
    assert result.message == "Released 1 reservations"
    assert await repository.get_reservation("item_1") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_charge_failed_without_metadata(handler):
    """Test failed charges not created by checkout are acknowledged."""
    body, signature = sign({"event": "charge.failed", "data": {"id": 2002, "reference": "ref_x"}})

    result = await handler.handle(body, signature)

    assert result.success
    assert result.message == "No reservations referenced"


# ============================================================================
# Refund Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_processed_marks_ledger(repository, payment_gateway, checkout):
    """Test refund.processed confirms a pending refund."""
    payment_gateway.refund = AsyncMock(return_value=RefundResult(refund_id="3001", status="pending"))
    refunds = RefundCoordinator(repository, payment_gateway)
    handler = WebhookHandler(repository, payment_gateway, checkout, refunds)
    await repository.add(Order(
        order_id="ord_1",
        buyer_id="buyer_1",
        seller_id="seller_1",
        items=["item_1"],
        subtotal=1000,
        delivery_fee=250,
        total_amount=1250,
        status=OrderStatus.DECLINED_BY_SELLER,
        payment_reference="ref_1"
    ))
    await refunds.refund("ord_1", RefundReason.SELLER_DECLINE)
    body, signature = sign({
        "event": "refund.processed",
        "data": {"id": 3001, "transaction_reference": "ref_1", "status": "processed"}
    })

    result = await handler.handle(body, signature)

    assert result.message == "Marked 1 refunds processed"
    assert (await repository.get_refund("ref_1")).status == RefundStatus.PROCESSED
    assert (await repository.get("ord_1")).refund_status == RefundStatus.PROCESSED


# ============================================================================
# Transfer Tests
# ============================================================================

def delivered_order():
    return Order(
        order_id="ord_1",
        buyer_id="buyer_1",
        seller_id="seller_1",
        items=["item_1"],
        subtotal=1000,
        delivery_fee=250,
        total_amount=1250,
        status=OrderStatus.DELIVERED,
        payment_reference="ref_1",
        payout_recipient="RCP_1"
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transfer_success_settles_pending_payout(repository, payment_gateway, checkout, refunds):
    """Test transfer.success marks a pending payout paid."""
    payouts = PayoutCoordinator(repository, payment_gateway)
    handler = WebhookHandler(repository, payment_gateway, checkout, refunds, payouts=payouts)
    await repository.add(delivered_order())
    await repository.claim_payout(PayoutRecord(
        order_id="ord_1",
        seller_id="seller_1",
        recipient="RCP_1",
        amount=900,
        reference="payout_ord_1"
    ))
    body, signature = sign({
        "event": "transfer.success",
        "data": {"id": 501, "reference": "payout_ord_1", "transfer_code": "TRF_501", "status": "success"}
    })

    result = await handler.handle(body, signature)

    assert result.success
    payout = await repository.get_payout("ord_1")
    assert payout.status == PayoutStatus.PAID
    assert payout.transfer_id == "TRF_501"
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.PAID


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transfer_reversed_marks_payout_failed(repository, payment_gateway, checkout, refunds):
    """Test a reversed transfer leaves the payout failed for the next sweep."""
    payouts = PayoutCoordinator(repository, payment_gateway)
    handler = WebhookHandler(repository, payment_gateway, checkout, refunds, payouts=payouts)
    await repository.add(delivered_order())
    assert (await payouts.pay("ord_1")).paid
    body, signature = sign({
        "event": "transfer.reversed",
        "data": {"id": 502, "reference": "payout_ord_1", "status": "reversed", "reason": "Account closed"}
    })

    await handler.handle(body, signature)

    payout = await repository.get_payout("ord_1")
    assert payout.status == PayoutStatus.FAILED
    assert payout.last_error == "Account closed"
    assert (await repository.get("ord_1")).payout_status == PayoutStatus.FAILED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transfer_events_ignored_without_payouts(handler, repository):
    """Test transfer events are acknowledged when payouts are not configured."""
    body, signature = sign({"event": "transfer.success", "data": {"id": 503, "reference": "payout_ord_1"}})

    result = await handler.handle(body, signature)

    assert result.success
    assert "ignored" in result.message
