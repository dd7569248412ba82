"""
Order Management System - Seller commit / decline coordinator.

A commit records the seller's acceptance first and books the courier second.
If the courier cannot be booked the order stays committed with
shipment_status=scheduling_failed and is picked up by the background retry;
it is never rolled back to pending_commit. A booking claim abandoned by a
dead worker is released by reclaim_shipment() once it is stale.
"""

from typing import Any, Dict, Optional

import structlog

from .refund_coordinator import RefundCoordinator
from .repository import OrderRepository
from .results import CommitResult, OperationResult
from .state_machine import OrderStateMachine
from ..delivery.orchestrator import DeliveryOrchestrator
from ..gateways.exceptions import (
    ErrorCategory,
    InvalidStateTransition,
    OrderNotFound,
    ValidationError
)
from ..gateways.models import DeliveryMethod, Order, OrderStatus, RefundReason, ShipmentStatus

logger = structlog.get_logger(__name__)


# Shipment sub-states from which a booking may be (re)started
_SCHEDULABLE = (ShipmentStatus.NOT_REQUESTED, ShipmentStatus.SCHEDULING_FAILED)


class CommitCoordinator:
    """
    Seller commit / decline actions and the courier scheduling that follows.

    No mutex is held: every step is a conditional update, so concurrent or
    repeated calls resolve to the same final state.
    """

    def __init__(
        self,
        repository: OrderRepository,
        state_machine: OrderStateMachine,
        delivery: DeliveryOrchestrator,
        refunds: RefundCoordinator,
        shipment_retry_limit: int = 5
    ):
        """
        Initialize coordinator.

        Args:
            repository: Persistence collaborator
            state_machine: Transition primitive
            delivery: Courier quote / shipment orchestrator
            refunds: Refund issuance for declines and expiries
            shipment_retry_limit: Maximum shipment attempts per order
        """
        self.repository = repository
        self.state_machine = state_machine
        self.delivery = delivery
        self.refunds = refunds
        self.shipment_retry_limit = shipment_retry_limit

    async def _load(self, order_id: str) -> Order:
        order = await self.repository.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    @staticmethod
    def _check_seller(order: Order, seller_id: str) -> None:
        if order.seller_id != seller_id:
            raise ValidationError(f"Seller {seller_id} does not own order {order.order_id}")

    # =========================================================================
    # Commit
    # =========================================================================

    async def commit(
        self,
        order_id: str,
        seller_id: str,
        delivery_method: DeliveryMethod,
        locker_id: Optional[str] = None
    ) -> CommitResult:
        """
        Seller commits to the sale and the courier is booked.

        Args:
            order_id: Order in pending_commit
            seller_id: Calling seller; must own the order
            delivery_method: HOME pickup or LOCKER drop-off
            locker_id: Required for (and only for) LOCKER

        Returns:
            CommitResult. partial=True when the order is committed but the
            courier booking failed (retried in the background).

        Raises:
            DataIntegrityError: On persistence failure
        """
        try:
            delivery_method = DeliveryMethod(delivery_method)
            if delivery_method == DeliveryMethod.LOCKER and not locker_id:
                raise ValidationError("locker_id is required for locker delivery")
            if delivery_method == DeliveryMethod.HOME and locker_id:
                raise ValidationError("locker_id is only valid for locker delivery")

            order = await self._load(order_id)
            self._check_seller(order, seller_id)
        except ValueError:
            return CommitResult.failure(ValidationError(f"Unknown delivery method: {delivery_method!r}"))
        except ValidationError as e:
            logger.warning("Commit rejected", order_id=order_id, seller_id=seller_id, error=e.message)
            return CommitResult.failure(e)

        if order.status in (OrderStatus.COMMITTED, OrderStatus.COURIER_SCHEDULED):
            return await self._resume(order)

        try:
            outcome = await self.state_machine.transition(
                order_id,
                OrderStatus.COMMITTED,
                changes={"delivery_method": delivery_method, "locker_id": locker_id},
                expected=[OrderStatus.PENDING_COMMIT],
                guards={"seller_id": [seller_id]}
            )
        except (InvalidStateTransition, ValidationError) as e:
            logger.warning("Commit rejected", order_id=order_id, seller_id=seller_id, error=e.message)
            return CommitResult.failure(e)

        if not outcome.applied:
            return await self._resume(outcome.order)

        return await self._schedule(outcome.order)

    async def _resume(self, order: Order) -> CommitResult:
        """Repeat commit on an already committed order: no second booking."""
        if order.status == OrderStatus.COMMITTED and order.shipment_status in _SCHEDULABLE:
            logger.info("Resuming courier scheduling", order_id=order.order_id)
            return await self._schedule(order)

        logger.info(
            "Commit already applied",
            order_id=order.order_id,
            status=order.status.value,
            shipment_status=order.shipment_status.value
        )
        return CommitResult.ok(order, message="Order already committed")

    async def _schedule(self, order: Order) -> CommitResult:
        """
        Claim the booking step and create the shipment.

        The claim (shipment_status -> in_progress) is a conditional update, so
        only one caller books a courier for an order. Every exit other than a
        booked shipment moves the claim on to scheduling_failed.
        """
        claimed = await self.repository.conditional_update(
            order.order_id,
            {
                "shipment_status": ShipmentStatus.IN_PROGRESS,
                "shipment_attempts": order.shipment_attempts + 1
            },
            statuses=[OrderStatus.COMMITTED],
            guards={"shipment_status": _SCHEDULABLE}
        )
        if claimed is None:
            current = await self._load(order.order_id)
            logger.info(
                "Courier scheduling already claimed",
                order_id=order.order_id,
                status=current.status.value,
                shipment_status=current.shipment_status.value
            )
            return CommitResult.ok(current, message="Courier scheduling already in progress")

        try:
            shipment = await self.delivery.create_shipment(claimed)
        except BaseException:
            await self._release_claim(order.order_id)
            logger.exception("Courier scheduling raised, claim released", order_id=order.order_id)
            raise

        if not shipment.success:
            failed = await self._release_claim(order.order_id)
            logger.warning(
                "Order committed, courier scheduling failed",
                order_id=order.order_id,
                attempts=claimed.shipment_attempts,
                error=shipment.error
            )
            return CommitResult(
                success=True,
                partial=True,
                category=ErrorCategory.PARTIAL_SUCCESS,
                message="Order committed; courier scheduling will be retried",
                order=failed or claimed,
                shipment_error=shipment.error
            )

        booking = shipment.shipment
        try:
            outcome = await self.state_machine.transition(
                order.order_id,
                OrderStatus.COURIER_SCHEDULED,
                changes={
                    "shipment_status": ShipmentStatus.SCHEDULED,
                    "courier_id": booking.courier_id,
                    "tracking_reference": booking.tracking_reference,
                    "label_url": booking.label_url,
                    "dropoff_code": booking.dropoff_code
                },
                expected=[OrderStatus.COMMITTED],
                guards={"shipment_status": [ShipmentStatus.IN_PROGRESS]}
            )
        except InvalidStateTransition as e:
            # Order left committed (e.g. buyer cancelled) while the courier was booked
            logger.error(
                "Shipment booked for order that is no longer committed",
                order_id=order.order_id,
                courier_id=booking.courier_id,
                tracking_reference=booking.tracking_reference,
                current_status=getattr(e.current_status, "value", None)
            )
            return CommitResult.failure(e)

        return CommitResult.ok(outcome.order, message="Order committed and courier scheduled")

    async def _release_claim(self, order_id: str, guards: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        """Move an in_progress booking claim to scheduling_failed."""
        return await self.repository.conditional_update(
            order_id,
            {"shipment_status": ShipmentStatus.SCHEDULING_FAILED},
            statuses=[OrderStatus.COMMITTED],
            guards={"shipment_status": [ShipmentStatus.IN_PROGRESS], **(guards or {})}
        )

    async def reclaim_shipment(self, order: Order) -> CommitResult:
        """
        Retry a booking whose claim was left in_progress by a dead worker.

        The claim is only released if the row is unchanged since ``order``
        was read (same updated_at), so a booking that finished meanwhile is
        left alone.
        """
        released = await self._release_claim(order.order_id, guards={"updated_at": [order.updated_at]})
        if released is None:
            return CommitResult.ok(order, message="Courier scheduling claim no longer stale")

        logger.warning(
            "Abandoned courier scheduling claim released",
            order_id=order.order_id,
            attempts=order.shipment_attempts
        )
        return await self.retry_shipment(order.order_id)

    async def retry_shipment(self, order_id: str) -> CommitResult:
        """
        Background retry for committed orders whose booking failed.

        Returns:
            CommitResult (partial=True while the courier still fails)
        """
        try:
            order = await self._load(order_id)
        except ValidationError as e:
            return CommitResult.failure(e)

        if order.status != OrderStatus.COMMITTED:
            if order.status == OrderStatus.COURIER_SCHEDULED:
                return CommitResult.ok(order, message="Courier already scheduled")
            return CommitResult.failure(InvalidStateTransition(
                f"Cannot schedule courier for order in {order.status.value}",
                current_status=order.status,
                target_status=OrderStatus.COURIER_SCHEDULED
            ), order=order)

        if order.shipment_attempts >= self.shipment_retry_limit:
            logger.error(
                "Shipment retry limit reached",
                order_id=order_id,
                attempts=order.shipment_attempts
            )
            return CommitResult.failure(
                ValidationError(f"Shipment retry limit reached for order {order_id}"),
                order=order
            )

        return await self._schedule(order)

    # =========================================================================
    # Decline
    # =========================================================================

    async def decline(self, order_id: str, seller_id: str, reason: Optional[str] = None) -> OperationResult:
        """
        Seller declines the sale. The buyer is refunded in full.

        Args:
            order_id: Order in pending_commit
            seller_id: Calling seller; must own the order
            reason: Free-text reason recorded on the order

        Returns:
            OperationResult; partial=True if the decline applied but the
            refund must be retried
        """
        return await self._decline(order_id, seller_id, reason or "seller_declined", RefundReason.SELLER_DECLINE)

    async def expire(self, order_id: str, reason: str = "commit_deadline_passed") -> OperationResult:
        """
        Decline-equivalent applied by the expiry sweeper when the seller
        never acted. Skips the seller ownership check.
        """
        return await self._decline(order_id, None, reason, RefundReason.EXPIRY)

    async def _decline(
        self,
        order_id: str,
        seller_id: Optional[str],
        reason: str,
        refund_reason: RefundReason
    ) -> OperationResult:
        try:
            if seller_id is not None:
                self._check_seller(await self._load(order_id), seller_id)
            outcome = await self.state_machine.transition(
                order_id,
                OrderStatus.DECLINED_BY_SELLER,
                changes={"decline_reason": reason},
                expected=[OrderStatus.PENDING_COMMIT],
                guards={"seller_id": [seller_id]} if seller_id is not None else None
            )
        except (InvalidStateTransition, ValidationError) as e:
            logger.warning("Decline rejected", order_id=order_id, error=e.message)
            return OperationResult.failure(e)

        order = outcome.order
        released = await self.repository.release_reservations(order.items)
        logger.info(
            "Order declined",
            order_id=order_id,
            reason=reason,
            applied=outcome.applied,
            reservations_released=released
        )

        # Refund is idempotent, so a repeated decline also completes a refund
        # that failed the first time.
        refund = await self.refunds.refund(order_id, refund_reason)
        if not refund.success:
            return OperationResult(
                success=True,
                partial=True,
                category=refund.category,
                message=f"Order declined; refund pending retry: {refund.message}",
                order=refund.order or order
            )

        return OperationResult.ok(refund.order or order, message="Order declined and refunded")
