"""
Order Management System - Checkout and order intake.

initiate() validates a buyer's cart, reserves its items for the reservation
TTL and initializes one payment split across all sellers. complete() turns a
verified payment into one pending_commit order per seller. The cart is
carried to complete() in the payment metadata, so completion works from the
buyer's redirect and from the processor webhook alike, in either order.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from ..config import ExpiryPolicy
from .repository import OrderRepository
from .results import CheckoutResult
from ..gateways.exceptions import DataIntegrityError, UpstreamError, ValidationError
from ..gateways.models import (
    Address,
    CartLine,
    Order,
    PaymentInitialization,
    PaymentSplit,
    SettlementSplit,
    utcnow
)
from ..gateways.notification_gateway import NotificationDispatcher
from ..gateways.payment_gateway import PaymentGateway
from ..settlement.calculator import (
    DEFAULT_PLATFORM_FEE_BPS,
    build_payment_split,
    calculate_multi_seller_split
)
from ..utils.logger import EventType, log_order_event, log_system_event
from ..utils.retry import with_timeout

logger = structlog.get_logger(__name__)


@dataclass
class SellerProfile:
    """Seller details needed to create and fulfil an order."""
    seller_id: str
    email: str = ""
    subaccount: Optional[str] = None
    recipient_code: Optional[str] = None      # Transfer recipient for platform payouts
    pickup_address: Optional[Address] = None


@dataclass
class CheckoutSession:
    """Initialized checkout awaiting payment."""
    payment: PaymentInitialization
    splits: Dict[str, SettlementSplit]
    payment_split: PaymentSplit
    reserved_until: datetime
    total_amount: int


class CheckoutCoordinator:
    """Cart validation, reservations, payment initialization and order intake."""

    def __init__(
        self,
        repository: OrderRepository,
        payment_gateway: PaymentGateway,
        policy: Optional[ExpiryPolicy] = None,
        platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS,
        notifier: Optional[NotificationDispatcher] = None,
        timeout_seconds: float = 20.0
    ):
        self.repository = repository
        self.payment_gateway = payment_gateway
        self.policy = policy or ExpiryPolicy()
        self.platform_fee_bps = platform_fee_bps
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds

    # =========================================================================
    # Initiation
    # =========================================================================

    async def initiate(
        self,
        buyer_id: str,
        buyer_email: str,
        lines: Iterable[CartLine],
        delivery_address: Address,
        sellers: Mapping[str, SellerProfile],
        delivery_fees: Optional[Mapping[str, int]] = None,
        now: Optional[datetime] = None
    ) -> CheckoutResult:
        """
        Reserve the cart and initialize payment.

        Args:
            buyer_id: Paying buyer
            buyer_email: Receipt address passed to the processor
            lines: Cart lines (one or more sellers)
            delivery_address: Buyer delivery address
            sellers: seller_id -> SellerProfile for every seller in the cart
            delivery_fees: seller_id -> selected delivery quote price
            now: Reference time for the reservation

        Returns:
            CheckoutResult with session set on success. Items held by another
            buyer, own items and empty carts fail with category validation.
        """
        now = now or utcnow()
        lines = list(lines)
        try:
            splits = self._validate_cart(buyer_id, lines, sellers, delivery_fees)
        except ValidationError as e:
            logger.warning("Checkout rejected", buyer_id=buyer_id, error=e.message)
            return CheckoutResult.failure(e)

        subaccounts = {sid: p.subaccount for sid, p in sellers.items() if p.subaccount}
        payment_split = build_payment_split(splits, subaccounts)
        reserved_until = now + self.policy.reservation_ttl

        item_ids = [line.item_id for line in lines]
        reserved, unavailable = await self._reserve(item_ids, buyer_id, reserved_until, now)
        if unavailable:
            await self.repository.release_reservations(reserved, reserved_by=buyer_id)
            error = ValidationError(f"Some items are no longer available: {unavailable}")
            logger.warning("Checkout rejected", buyer_id=buyer_id, unavailable=unavailable)
            return CheckoutResult.failure(error)

        total = sum(split.total for split in splits.values())
        metadata = self._metadata(buyer_id, buyer_email, delivery_address, lines, splits, sellers)

        try:
            payment = await with_timeout(
                self.payment_gateway.initialize(total, buyer_email, split=payment_split, metadata=metadata),
                self.timeout_seconds,
                operation="initialize",
                provider=self.payment_gateway.name
            )
        except UpstreamError as e:
            await self.repository.release_reservations(reserved, reserved_by=buyer_id)
            logger.error("Payment initialization failed", buyer_id=buyer_id, error=e.message)
            return CheckoutResult.failure(e)

        log_system_event(
            logger,
            EventType.PAYMENT_INITIALIZED,
            "Checkout payment initialized",
            buyer_id=buyer_id,
            payment_reference=payment.reference,
            total_amount=total,
            seller_count=len(splits)
        )
        session = CheckoutSession(
            payment=payment,
            splits=splits,
            payment_split=payment_split,
            reserved_until=reserved_until,
            total_amount=total
        )
        return CheckoutResult.ok(message="Payment initialized", session=session)

    def _validate_cart(
        self,
        buyer_id: str,
        lines: List[CartLine],
        sellers: Mapping[str, SellerProfile],
        delivery_fees: Optional[Mapping[str, int]]
    ) -> Dict[str, SettlementSplit]:
        if not lines:
            raise ValidationError("Cart is empty")

        item_ids = [line.item_id for line in lines]
        if len(set(item_ids)) != len(item_ids):
            raise ValidationError("Cart contains the same item more than once")

        own = [line.item_id for line in lines if line.seller_id == buyer_id]
        if own:
            raise ValidationError(f"Cannot purchase your own items: {own}")

        missing = {line.seller_id for line in lines} - set(sellers)
        if missing:
            raise ValidationError(f"Unknown sellers: {sorted(missing)}")

        return calculate_multi_seller_split(lines, delivery_fees, self.platform_fee_bps)

    async def _reserve(
        self,
        item_ids: List[str],
        buyer_id: str,
        reserved_until: datetime,
        now: datetime
    ) -> Tuple[List[str], List[str]]:
        reserved, unavailable = [], []
        for item_id in item_ids:
            if await self.repository.reserve(item_id, buyer_id, reserved_until, now=now):
                reserved.append(item_id)
            else:
                unavailable.append(item_id)
        return reserved, unavailable

    @staticmethod
    def _metadata(
        buyer_id: str,
        buyer_email: str,
        delivery_address: Address,
        lines: List[CartLine],
        splits: Dict[str, SettlementSplit],
        sellers: Mapping[str, SellerProfile]
    ) -> Dict[str, Any]:
        groups = []
        for seller_id, split in splits.items():
            seller_lines = [line for line in lines if line.seller_id == seller_id]
            profile = sellers[seller_id]
            groups.append({
                "seller_id": seller_id,
                "seller_email": profile.email,
                "subaccount": profile.subaccount,
                "recipient_code": profile.recipient_code,
                "pickup_address": profile.pickup_address.to_dict() if profile.pickup_address else None,
                "items": [line.item_id for line in seller_lines],
                "subtotal": split.subtotal,
                "delivery_fee": split.delivery_fee,
                "weight_grams": sum(line.weight_grams * line.quantity for line in seller_lines)
            })

        return {
            "purchase_type": "multi_seller_cart" if len(groups) > 1 else "single_seller",
            "buyer_id": buyer_id,
            "buyer_email": buyer_email,
            "delivery_address": delivery_address.to_dict() if delivery_address else None,
            "sellers": groups
        }

    # =========================================================================
    # Completion
    # =========================================================================

    async def complete(self, payment_reference: str) -> CheckoutResult:
        """
        Create one pending_commit order per seller for a verified payment.

        Idempotent per (payment_reference, seller): order ids are derived
        from both, so repeated calls return the existing orders.

        Returns:
            CheckoutResult with the orders
        """
        try:
            verification = await with_timeout(
                self.payment_gateway.verify(payment_reference),
                self.timeout_seconds,
                operation="verify",
                provider=self.payment_gateway.name
            )
        except UpstreamError as e:
            logger.error("Payment verification failed", payment_reference=payment_reference, error=e.message)
            return CheckoutResult.failure(e)

        if not verification.is_successful:
            return CheckoutResult.failure(ValidationError(
                f"Payment {payment_reference} is not successful: {verification.status}"
            ))

        metadata = verification.metadata
        try:
            orders = self._build_orders(payment_reference, metadata)
        except (ValidationError, KeyError, TypeError) as e:
            message = e.message if isinstance(e, ValidationError) else f"Malformed checkout metadata: {e}"
            logger.error("Cannot create orders from payment", payment_reference=payment_reference, error=message)
            return CheckoutResult.failure(ValidationError(message))

        expected_total = sum(order.total_amount for order in orders)
        if verification.amount != expected_total:
            logger.error(
                "Payment amount mismatch",
                payment_reference=payment_reference,
                paid=verification.amount,
                expected=expected_total
            )
            return CheckoutResult.failure(ValidationError(
                f"Paid amount {verification.amount} does not match cart total {expected_total}"
            ))

        stored = []
        for order in orders:
            stored.append(await self._add_once(order))

        item_ids = [item for order in orders for item in order.items]
        await self.repository.release_reservations(item_ids, reserved_by=metadata.get("buyer_id"))

        return CheckoutResult.ok(message="Orders created", orders=stored)

    def _build_orders(self, payment_reference: str, metadata: Dict[str, Any]) -> List[Order]:
        groups = metadata.get("sellers")
        if not groups:
            raise ValidationError(f"Payment {payment_reference} carries no checkout metadata")

        delivery_address = Address.from_dict(metadata.get("delivery_address"))
        orders = []
        for group in groups:
            subtotal = group["subtotal"]
            delivery_fee = group["delivery_fee"]
            orders.append(Order(
                order_id=f"{payment_reference}-{group['seller_id']}",
                buyer_id=metadata["buyer_id"],
                seller_id=group["seller_id"],
                items=list(group["items"]),
                subtotal=subtotal,
                delivery_fee=delivery_fee,
                total_amount=subtotal + delivery_fee,
                payment_reference=payment_reference,
                payment_shared=len(groups) > 1,
                buyer_email=metadata.get("buyer_email", ""),
                seller_email=group.get("seller_email") or "",
                seller_subaccount=group.get("subaccount"),
                payout_recipient=group.get("recipient_code"),
                pickup_address=Address.from_dict(group.get("pickup_address")),
                delivery_address=delivery_address,
                weight_grams=group.get("weight_grams") or 500
            ))
        return orders

    async def _add_once(self, order: Order) -> Order:
        existing = await self.repository.get(order.order_id)
        if existing is not None:
            return existing

        try:
            created = await self.repository.add(order)
        except DataIntegrityError:
            existing = await self.repository.get(order.order_id)
            if existing is None:
                raise
            return existing

        log_order_event(
            logger,
            EventType.ORDER_CREATED,
            created.order_id,
            status=created.status.value,
            payment_reference=created.payment_reference,
            total_amount=created.total_amount
        )
        if self.notifier:
            data = {"order_id": created.order_id, "total_amount": created.total_amount, "items": created.items}
            self.notifier.notify(created.seller_email, "order_pending_commit", data)
            self.notifier.notify(created.buyer_email, "order_received", data)
        return created

    async def abandon(self, buyer_id: str, item_ids: Iterable[str]) -> int:
        """
        Release a buyer's reservations after a failed payment.

        Returns:
            Number of reservations released
        """
        released = await self.repository.release_reservations(list(item_ids), reserved_by=buyer_id)
        logger.info("Checkout abandoned", buyer_id=buyer_id, released=released)
        return released
