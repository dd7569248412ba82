"""
Order Management System - Fulfillment and cancellation actions.

Collection, delivery confirmation and the cancellation paths that follow
the seller commit.
"""

from typing import Optional

import structlog

from .refund_coordinator import RefundCoordinator
from .repository import OrderRepository
from .results import OperationResult
from .state_machine import OrderStateMachine
from ..gateways.exceptions import InvalidStateTransition, OrderNotFound, ValidationError
from ..gateways.models import Order, OrderStatus, RefundReason

logger = structlog.get_logger(__name__)


class FulfillmentCoordinator:
    """Post-commit order actions by courier, buyer and seller."""

    def __init__(
        self,
        repository: OrderRepository,
        state_machine: OrderStateMachine,
        refunds: RefundCoordinator,
        retain_delivery_fee_on_late_cancel: bool = True
    ):
        """
        Initialize coordinator.

        Args:
            repository: Persistence collaborator
            state_machine: Transition primitive
            refunds: Refund issuance for cancellations
            retain_delivery_fee_on_late_cancel: Refund only the subtotal when
                the buyer cancels an order the seller already committed to
        """
        self.repository = repository
        self.state_machine = state_machine
        self.refunds = refunds
        self.retain_delivery_fee_on_late_cancel = retain_delivery_fee_on_late_cancel

    async def _load(self, order_id: str) -> Order:
        order = await self.repository.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def _move(self, order_id: str, target: OrderStatus, **kwargs) -> OperationResult:
        try:
            outcome = await self.state_machine.transition(order_id, target, **kwargs)
        except (InvalidStateTransition, ValidationError) as e:
            logger.warning("Fulfillment action rejected", order_id=order_id, target=target.value, error=e.message)
            return OperationResult.failure(e)
        return OperationResult.ok(outcome.order)

    async def mark_collected(self, order_id: str) -> OperationResult:
        """Courier picked the parcel up (or the seller dropped it at a locker)."""
        return await self._move(order_id, OrderStatus.COLLECTED)

    async def mark_delivered(self, order_id: str, buyer_id: Optional[str] = None) -> OperationResult:
        """
        Buyer confirms receipt.

        Args:
            order_id: Collected order
            buyer_id: When given, must be the order's buyer
        """
        guards = {"buyer_id": [buyer_id]} if buyer_id is not None else None
        return await self._move(order_id, OrderStatus.DELIVERED, guards=guards)

    async def cancel_by_buyer(self, order_id: str, buyer_id: str) -> OperationResult:
        """
        Buyer cancels before the courier is scheduled.

        The refund is the full total while the order awaits the seller. Once
        committed, the delivery fee is retained when the policy says so.

        Returns:
            OperationResult; partial=True if the refund must be retried
        """
        try:
            order = await self._load(order_id)
            if order.buyer_id != buyer_id:
                raise ValidationError(f"Buyer {buyer_id} does not own order {order_id}")
        except ValidationError as e:
            return OperationResult.failure(e)

        amount = order.total_amount
        if order.status == OrderStatus.COMMITTED and self.retain_delivery_fee_on_late_cancel and order.subtotal > 0:
            amount = order.subtotal

        result = await self._move(
            order_id,
            OrderStatus.CANCELLED_BY_BUYER,
            expected=[order.status],
            guards={"buyer_id": [buyer_id]}
        )
        if not result.success:
            return result

        await self.repository.release_reservations(order.items)
        return await self._refund(
            order_id,
            RefundReason.BUYER_CANCEL,
            amount,
            result.order,
            repeat=order.status == OrderStatus.CANCELLED_BY_BUYER
        )

    async def cancel_after_missed_pickup(self, order_id: str, seller_id: str) -> OperationResult:
        """
        Seller cancels an order whose courier collection timed out.
        The buyer is refunded in full.
        """
        try:
            order = await self._load(order_id)
            if order.seller_id != seller_id:
                raise ValidationError(f"Seller {seller_id} does not own order {order_id}")
        except ValidationError as e:
            return OperationResult.failure(e)

        result = await self._move(
            order_id,
            OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP,
            guards={"seller_id": [seller_id]}
        )
        if not result.success:
            return result

        await self.repository.release_reservations(order.items)
        return await self._refund(order_id, RefundReason.SELLER_DECLINE, None, result.order)

    async def _refund(
        self,
        order_id: str,
        reason: RefundReason,
        amount: Optional[int],
        order: Order,
        repeat: bool = False
    ) -> OperationResult:
        if repeat:
            # Complete the original refund with its recorded amount
            refund = await self.refunds.retry_failed(order_id)
        else:
            refund = await self.refunds.refund(order_id, reason, amount)
        if not refund.success:
            return OperationResult(
                success=True,
                partial=True,
                category=refund.category,
                message=f"Order cancelled; refund pending retry: {refund.message}",
                order=refund.order or order
            )
        return OperationResult.ok(refund.order or order, message="Order cancelled and refunded")
