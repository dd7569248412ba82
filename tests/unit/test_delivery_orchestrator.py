"""
Unit tests for the delivery orchestrator.
"""

import asyncio
from typing import List

import pytest

from orderflow.delivery import DeliveryOrchestrator, FallbackQuote
from orderflow.gateways.courier_gateway import CourierGateway
from orderflow.gateways.exceptions import ErrorCategory, UpstreamRejected, UpstreamUnavailable, ValidationError
from orderflow.gateways.models import (
    Address,
    DeliveryMethod,
    DeliveryQuote,
    Order,
    OrderStatus,
    Parcel,
    Shipment,
    ShipmentRequest,
    TrackingEvent
)


class FakeCourier(CourierGateway):
    """Scriptable courier double."""

    def __init__(self, courier_id, price=5000, days=2, quote_delay=0.0, quote_error=None,
                 shipment_errors=None, supports_lockers=True):
        super().__init__(courier_id, supports_lockers=supports_lockers)
        self.price = price
        self.days = days
        self.quote_delay = quote_delay
        self.quote_error = quote_error
        self.shipment_errors = list(shipment_errors or [])
        self.shipment_requests: List[ShipmentRequest] = []

    async def quote(self, origin, destination, parcel):
        if self.quote_delay:
            await asyncio.sleep(self.quote_delay)
        if self.quote_error:
            raise self.quote_error
        return [DeliveryQuote(courier_id=self.courier_id, service_code="std", price=self.price,
                              estimated_days=self.days)]

    async def create_shipment(self, request):
        self.shipment_requests.append(request)
        if self.shipment_errors:
            raise self.shipment_errors.pop(0)
        return Shipment(courier_id=self.courier_id, tracking_reference=f"{self.courier_id}-{request.order_id}")

    async def track(self, tracking_reference):
        return [TrackingEvent(status="in_transit")]


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def addresses():
    """Pickup and delivery addresses."""
    return (
        Address(name="Seller", street="1 Long St", city="Cape Town", postal_code="8001"),
        Address(name="Buyer", street="2 Main Rd", city="Durban", postal_code="4001"),
    )


@pytest.fixture
def committed_order(addresses):
    """Committed home-delivery order."""
    pickup, delivery = addresses
    return Order(
        order_id="ord_1",
        buyer_id="buyer_1",
        seller_id="seller_1",
        items=["item_1"],
        subtotal=1000,
        delivery_fee=250,
        total_amount=1250,
        status=OrderStatus.COMMITTED,
        payment_reference="ref_1",
        pickup_address=pickup,
        delivery_address=delivery,
        delivery_method=DeliveryMethod.HOME
    )


@pytest.fixture
def parcel():
    return Parcel(weight_grams=1000)


# ============================================================================
# Quote Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_cheapest_quote_selected(addresses, parcel):
    """Test lowest price wins, then fewest days."""
    orchestrator = DeliveryOrchestrator([
        FakeCourier("a", price=9000, days=1),
        FakeCourier("b", price=6000, days=4),
        FakeCourier("c", price=6000, days=2),
    ])

    quote = await orchestrator.select_quote(*addresses, parcel)

    assert quote.courier_id == "c"
    assert not quote.is_fallback


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_courier_excluded(addresses, parcel):
    """Test a courier missing the shared deadline is left out."""
    orchestrator = DeliveryOrchestrator(
        [FakeCourier("a", price=1000, quote_delay=5), FakeCourier("b", price=8000)],
        quote_timeout_seconds=0.05
    )

    quotes = await orchestrator.get_quotes(*addresses, parcel)
    quote = await orchestrator.select_quote(*addresses, parcel)

    assert [q.courier_id for q in quotes] == ["b"]
    assert quote.courier_id == "b"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failing_courier_skipped(addresses, parcel):
    """Test courier errors do not fail the fan-out."""
    orchestrator = DeliveryOrchestrator([
        FakeCourier("a", quote_error=UpstreamUnavailable("down")),
        FakeCourier("b", price=7000),
    ])

    quotes = await orchestrator.get_quotes(*addresses, parcel)

    assert [q.courier_id for q in quotes] == ["b"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fallback_quote_when_no_courier_answers(addresses, parcel):
    """Test fallback price when every courier fails."""
    orchestrator = DeliveryOrchestrator(
        [FakeCourier("a", quote_error=UpstreamRejected("bad")), FakeCourier("b", quote_delay=5)],
        quote_timeout_seconds=0.05,
        fallback=FallbackQuote(price=9500, estimated_days=3)
    )

    quote = await orchestrator.select_quote(*addresses, parcel)

    assert quote.is_fallback
    assert quote.price == 9500
    assert quote.estimated_days == 3
    assert quote.courier_id == "a"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fallback_without_couriers(addresses, parcel):
    """Test no couriers configured still yields a quote."""
    quote = await DeliveryOrchestrator([]).select_quote(*addresses, parcel)

    assert quote.is_fallback
    assert quote.courier_id == DeliveryOrchestrator.FALLBACK_COURIER_ID


# ============================================================================
# Shipment Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_shipment_with_selected_quote(committed_order):
    """Test shipment booked with the quoted courier."""
    a, b = FakeCourier("a"), FakeCourier("b")
    orchestrator = DeliveryOrchestrator([a, b])
    quote = DeliveryQuote(courier_id="b", service_code="express", price=8000, estimated_days=1)

    outcome = await orchestrator.create_shipment(committed_order, quote)

    assert outcome.success
    assert outcome.courier_id == "b"
    assert outcome.shipment.tracking_reference == "b-ord_1"
    assert b.shipment_requests[0].service_code == "express"
    assert not a.shipment_requests


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shipment_retries_then_fails_over(committed_order):
    """Test selected courier retried, then the next courier tried."""
    a = FakeCourier("a", shipment_errors=[UpstreamUnavailable("503"), UpstreamUnavailable("503")])
    b = FakeCourier("b")
    orchestrator = DeliveryOrchestrator([a, b], shipment_attempts=2)
    quote = DeliveryQuote(courier_id="a", service_code="std", price=5000, estimated_days=2)

    outcome = await orchestrator.create_shipment(committed_order, quote)

    assert outcome.success
    assert outcome.courier_id == "b"
    assert outcome.attempts == 3
    assert len(a.shipment_requests) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shipment_failure_is_reported_not_raised(committed_order):
    """Test every courier failing yields an unsuccessful outcome."""
    a = FakeCourier("a", shipment_errors=[UpstreamRejected("bad address")] * 3)
    orchestrator = DeliveryOrchestrator([a], failover=False)

    outcome = await orchestrator.create_shipment(
        committed_order,
        DeliveryQuote(courier_id="a", service_code="std", price=5000, estimated_days=2)
    )

    assert not outcome.success
    assert outcome.category == ErrorCategory.UPSTREAM_REJECTED
    assert outcome.error == "bad address"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_adapter_exception_fails_over(committed_order):
    """Test an unexpected courier exception moves on to the next courier."""
    a = FakeCourier("a", shipment_errors=[AttributeError("'NoneType' object has no attribute 'get'")])
    b = FakeCourier("b")
    orchestrator = DeliveryOrchestrator([a, b], shipment_attempts=3)
    quote = DeliveryQuote(courier_id="a", service_code="std", price=5000, estimated_days=2)

    outcome = await orchestrator.create_shipment(committed_order, quote)

    assert outcome.success
    assert outcome.courier_id == "b"
    assert len(a.shipment_requests) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_adapter_exception_reported_not_raised(committed_order):
    """Test an unexpected exception on the only courier is an unsuccessful outcome."""
    a = FakeCourier("a", shipment_errors=[KeyError("waybill")])
    orchestrator = DeliveryOrchestrator([a], failover=False)

    outcome = await orchestrator.create_shipment(
        committed_order,
        DeliveryQuote(courier_id="a", service_code="std", price=5000, estimated_days=2)
    )

    assert not outcome.success
    assert outcome.category == ErrorCategory.UPSTREAM_REJECTED
    assert outcome.error.startswith("KeyError")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_locker_shipment_skips_non_locker_couriers(committed_order):
    """Test locker orders only go to couriers supporting lockers."""
    order = committed_order.with_changes(delivery_method=DeliveryMethod.LOCKER, locker_id="L42")
    plain = FakeCourier("plain", supports_lockers=False)
    lockers = FakeCourier("lockers")
    orchestrator = DeliveryOrchestrator([plain, lockers])

    outcome = await orchestrator.create_shipment(
        order,
        DeliveryQuote(courier_id="plain", service_code="std", price=100, estimated_days=1)
    )

    assert outcome.courier_id == "lockers"
    assert lockers.shipment_requests[0].locker_id == "L42"
    assert not plain.shipment_requests


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shipment_validation(committed_order):
    """Test missing addresses or locker ids fail validation."""
    orchestrator = DeliveryOrchestrator([FakeCourier("a")])

    no_address = await orchestrator.create_shipment(committed_order.with_changes(delivery_address=None))
    no_locker = await orchestrator.create_shipment(committed_order.with_changes(delivery_method=DeliveryMethod.LOCKER))

    assert no_address.category == ErrorCategory.VALIDATION
    assert no_locker.category == ErrorCategory.VALIDATION


@pytest.mark.unit
@pytest.mark.asyncio
async def test_shipment_gathers_quote_when_missing(committed_order):
    """Test create_shipment selects a quote itself when none is given."""
    orchestrator = DeliveryOrchestrator([FakeCourier("a", price=9000), FakeCourier("b", price=4000)])

    outcome = await orchestrator.create_shipment(committed_order)

    assert outcome.quote.courier_id == "b"
    assert outcome.courier_id == "b"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_track():
    """Test tracking routed to the booking courier."""
    orchestrator = DeliveryOrchestrator([FakeCourier("a")])

    events = await orchestrator.track("a", "a-ord_1")

    assert events[0].status == "in_transit"
    with pytest.raises(ValidationError):
        await orchestrator.track("unknown", "x")
