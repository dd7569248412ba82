"""
Delivery orchestrator.

Fans quote requests out to every configured courier under one shared
deadline, picks the cheapest answer and books shipments. Courier outages
never block checkout or commit: quotes degrade to a flagged fallback and
shipment failures are returned as outcomes, not raised.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import structlog

from ..gateways.courier_gateway import CourierGateway
from ..gateways.exceptions import ErrorCategory, UpstreamError, ValidationError
from ..gateways.models import (
    Address,
    DeliveryMethod,
    DeliveryQuote,
    Order,
    Parcel,
    Shipment,
    ShipmentRequest,
    TrackingEvent
)
from ..utils.logger import EventType, log_order_event, log_system_event
from ..utils.retry import with_timeout

logger = structlog.get_logger(__name__)


@dataclass
class FallbackQuote:
    """Fixed delivery price used when no courier answers in time."""
    price: int = 9500
    estimated_days: int = 3
    service_code: str = "standard"

    def to_quote(self, courier_id: str) -> DeliveryQuote:
        return DeliveryQuote(
            courier_id=courier_id,
            service_code=self.service_code,
            price=self.price,
            estimated_days=self.estimated_days,
            is_fallback=True
        )


@dataclass
class ShipmentOutcome:
    """Result of DeliveryOrchestrator.create_shipment."""
    success: bool
    shipment: Optional[Shipment] = None
    quote: Optional[DeliveryQuote] = None
    attempts: int = 0
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None

    @property
    def courier_id(self) -> Optional[str]:
        return self.shipment.courier_id if self.shipment else None


class DeliveryOrchestrator:
    """
    Quote selection and shipment automation over interchangeable couriers.
    """

    FALLBACK_COURIER_ID = "fallback"

    def __init__(
        self,
        couriers: Sequence[CourierGateway],
        quote_timeout_seconds: float = 8.0,
        shipment_timeout_seconds: float = 15.0,
        fallback: Optional[FallbackQuote] = None,
        shipment_attempts: int = 2,
        failover: bool = True
    ):
        """
        Initialize orchestrator.

        Args:
            couriers: Courier gateways, in preference order
            quote_timeout_seconds: Shared deadline for the whole quote fan-out
            shipment_timeout_seconds: Deadline per create_shipment call
            fallback: Price used when no courier quotes in time
            shipment_attempts: Attempts against the selected courier
            failover: Try the other couriers once the selected one gave up
        """
        self.couriers: Dict[str, CourierGateway] = {c.courier_id: c for c in couriers}
        self.quote_timeout_seconds = quote_timeout_seconds
        self.shipment_timeout_seconds = shipment_timeout_seconds
        self.fallback = fallback or FallbackQuote()
        self.shipment_attempts = max(1, shipment_attempts)
        self.failover = failover

        logger.info(
            "DeliveryOrchestrator initialized",
            couriers=list(self.couriers),
            quote_timeout_seconds=quote_timeout_seconds
        )

    # =========================================================================
    # Quotes
    # =========================================================================

    async def get_quotes(self, origin: Address, destination: Address, parcel: Parcel) -> List[DeliveryQuote]:
        """
        Ask every courier for prices concurrently.

        Couriers that error or miss the shared deadline are left out.

        Returns:
            Quotes from the couriers that answered, cheapest first
        """
        if not self.couriers:
            return []

        tasks = {
            asyncio.ensure_future(courier.quote(origin, destination, parcel)): courier_id
            for courier_id, courier in self.couriers.items()
        }
        done, pending = await asyncio.wait(tasks, timeout=self.quote_timeout_seconds)

        for task in pending:
            task.cancel()
            logger.warning(
                "Courier quote timed out",
                courier_id=tasks[task],
                timeout_seconds=self.quote_timeout_seconds
            )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        quotes: List[DeliveryQuote] = []
        for task in done:
            courier_id = tasks[task]
            error = task.exception()
            if error is not None:
                logger.warning(
                    "Courier quote failed",
                    courier_id=courier_id,
                    error=str(error),
                    error_type=type(error).__name__
                )
                continue
            courier_quotes = task.result() or []
            logger.debug("Courier quoted", courier_id=courier_id, count=len(courier_quotes))
            quotes.extend(courier_quotes)

        quotes.sort(key=lambda q: q.sort_key)
        return quotes

    async def select_quote(self, origin: Address, destination: Address, parcel: Parcel) -> DeliveryQuote:
        """
        Get the best delivery quote.

        Lowest price wins, fewer estimated days breaks ties. Never raises for
        courier failures: with no answers a fallback quote flagged
        is_fallback=True is returned.
        """
        quotes = await self.get_quotes(origin, destination, parcel)
        if quotes:
            return quotes[0]

        courier_id = next(iter(self.couriers), self.FALLBACK_COURIER_ID)
        log_system_event(
            logger,
            EventType.FALLBACK_QUOTE,
            "No courier quoted, using fallback price",
            courier_id=courier_id,
            price=self.fallback.price
        )
        return self.fallback.to_quote(courier_id)

    # =========================================================================
    # Shipments
    # =========================================================================

    def _candidates(self, order: Order, quote: DeliveryQuote) -> List[CourierGateway]:
        couriers = list(self.couriers.values())
        if order.delivery_method == DeliveryMethod.LOCKER:
            couriers = [c for c in couriers if c.supports_lockers]

        preferred = self.couriers.get(quote.courier_id)
        if preferred in couriers:
            couriers.remove(preferred)
            couriers.insert(0, preferred)
        return couriers if self.failover else couriers[:1]

    def _validate(self, order: Order) -> None:
        if order.delivery_address is None:
            raise ValidationError(f"Order {order.order_id} has no delivery address")
        if order.delivery_method == DeliveryMethod.LOCKER:
            if not order.locker_id:
                raise ValidationError(f"Locker order {order.order_id} has no locker_id")
        elif order.pickup_address is None:
            raise ValidationError(f"Order {order.order_id} has no pickup address")

    async def create_shipment(self, order: Order, quote: Optional[DeliveryQuote] = None) -> ShipmentOutcome:
        """
        Book a pickup (home) or issue a drop-off code (locker) for an order.

        The selected courier is tried shipment_attempts times; with failover
        enabled the remaining couriers are then tried once each.

        Args:
            order: Committed order
            quote: Previously selected quote; gathered now when omitted

        Returns:
            ShipmentOutcome, success=False on failure (never raises for
            courier errors, including unexpected adapter exceptions)
        """
        try:
            self._validate(order)
        except ValidationError as e:
            return ShipmentOutcome(success=False, error=e.message, category=ErrorCategory.VALIDATION)

        if quote is None:
            origin = order.pickup_address or order.delivery_address
            quote = await self.select_quote(origin, order.delivery_address, order.parcel)

        candidates = self._candidates(order, quote)
        if not candidates:
            log_order_event(logger, EventType.SHIPMENT_FAILED, order.order_id, reason="no_courier")
            return ShipmentOutcome(
                success=False,
                quote=quote,
                error="No courier available for this delivery method",
                category=ErrorCategory.VALIDATION
            )

        attempts = 0
        last_error: Optional[str] = None
        last_category = ErrorCategory.UPSTREAM_UNAVAILABLE
        for position, courier in enumerate(candidates):
            service_code = quote.service_code if courier.courier_id == quote.courier_id else self.fallback.service_code
            request = ShipmentRequest(
                order_id=order.order_id,
                courier_id=courier.courier_id,
                service_code=service_code,
                pickup_address=order.pickup_address,
                delivery_address=order.delivery_address,
                parcel=order.parcel,
                delivery_method=order.delivery_method or DeliveryMethod.HOME,
                locker_id=order.locker_id
            )

            tries = self.shipment_attempts if position == 0 else 1
            for _ in range(tries):
                attempts += 1
                try:
                    shipment = await with_timeout(
                        courier.create_shipment(request),
                        self.shipment_timeout_seconds,
                        operation="create_shipment",
                        provider=courier.courier_id
                    )
                except UpstreamError as e:
                    last_error, last_category = e.message, e.category
                    logger.warning(
                        "Shipment attempt failed",
                        order_id=order.order_id,
                        courier_id=courier.courier_id,
                        attempt=attempts,
                        error=e.message
                    )
                    continue
                except Exception as e:
                    # Adapter faults are not retried on the same courier
                    last_error = f"{type(e).__name__}: {e}"
                    last_category = ErrorCategory.UPSTREAM_REJECTED
                    logger.exception(
                        "Courier adapter raised",
                        order_id=order.order_id,
                        courier_id=courier.courier_id,
                        attempt=attempts
                    )
                    break

                log_order_event(
                    logger,
                    EventType.SHIPMENT_CREATED,
                    order.order_id,
                    courier_id=courier.courier_id,
                    tracking_reference=shipment.tracking_reference,
                    attempts=attempts,
                    fallback_quote=quote.is_fallback
                )
                return ShipmentOutcome(success=True, shipment=shipment, quote=quote, attempts=attempts)

        log_order_event(
            logger,
            EventType.SHIPMENT_FAILED,
            order.order_id,
            attempts=attempts,
            error=last_error
        )
        return ShipmentOutcome(
            success=False,
            quote=quote,
            attempts=attempts,
            error=last_error or "Shipment failed",
            category=last_category
        )

    async def track(self, courier_id: str, tracking_reference: str) -> List[TrackingEvent]:
        """
        Get tracking events from the courier that booked the shipment.

        Raises:
            ValidationError: If courier_id is not configured
            UpstreamError: If the courier call fails
        """
        courier = self.couriers.get(courier_id)
        if courier is None:
            raise ValidationError(f"Unknown courier: {courier_id}")
        return await with_timeout(
            courier.track(tracking_reference),
            self.shipment_timeout_seconds,
            operation="track",
            provider=courier_id
        )

    async def close(self) -> None:
        for courier in self.couriers.values():
            await courier.close()
