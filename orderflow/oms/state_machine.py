"""
Order Management System - Order state machine.

Provides the legal transition table and the single transition primitive every
coordinator uses to move an order between statuses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Collection, Dict, FrozenSet, List, Optional, Tuple

import structlog

from .repository import OrderRepository
from ..gateways.exceptions import InvalidStateTransition, OrderNotFound
from ..gateways.models import Order, OrderStatus, utcnow
from ..gateways.notification_gateway import NotificationDispatcher
from ..utils.logger import EventType, log_order_event

logger = structlog.get_logger(__name__)


@dataclass
class TransitionOutcome:
    """Result of OrderStateMachine.transition."""
    order: Order
    applied: bool        # False when the order already was in the target status


class OrderStateMachine:
    """
    Order state machine for managing order lifecycle transitions.

    Valid transitions:
    - PENDING_COMMIT → COMMITTED (seller accepted)
    - PENDING_COMMIT → DECLINED_BY_SELLER (seller declined or commit deadline passed)
    - PENDING_COMMIT → CANCELLED_BY_BUYER
    - COMMITTED → COURIER_SCHEDULED (shipment created)
    - COMMITTED → CANCELLED_BY_BUYER
    - COURIER_SCHEDULED → COLLECTED (courier picked up / locker drop-off)
    - COURIER_SCHEDULED → COLLECTION_TIMEOUT (no collection before deadline)
    - COLLECTED → DELIVERED (buyer received, or auto-accepted)
    - COLLECTION_TIMEOUT → CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP
    """

    VALID_TRANSITIONS = {
        OrderStatus.PENDING_COMMIT: [
            OrderStatus.COMMITTED,
            OrderStatus.DECLINED_BY_SELLER,
            OrderStatus.CANCELLED_BY_BUYER
        ],
        OrderStatus.COMMITTED: [
            OrderStatus.COURIER_SCHEDULED,
            OrderStatus.CANCELLED_BY_BUYER
        ],
        OrderStatus.COURIER_SCHEDULED: [
            OrderStatus.COLLECTED,
            OrderStatus.COLLECTION_TIMEOUT
        ],
        OrderStatus.COLLECTED: [
            OrderStatus.DELIVERED
        ],
        OrderStatus.COLLECTION_TIMEOUT: [
            OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP
        ],
        # Terminal states (no transitions out)
        OrderStatus.DELIVERED: [],
        OrderStatus.CANCELLED_BY_BUYER: [],
        OrderStatus.DECLINED_BY_SELLER: [],
        OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP: []
    }

    # Timestamp column stamped when an order enters a status
    STATUS_TIMESTAMPS = {
        OrderStatus.COMMITTED: "committed_at",
        OrderStatus.COURIER_SCHEDULED: "scheduled_at",
        OrderStatus.COLLECTED: "collected_at",
        OrderStatus.DELIVERED: "delivered_at",
        OrderStatus.CANCELLED_BY_BUYER: "cancelled_at",
        OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP: "cancelled_at",
        OrderStatus.DECLINED_BY_SELLER: "declined_at"
    }

    # Who hears about a status change
    STATUS_RECIPIENTS: Dict[OrderStatus, Tuple[str, ...]] = {
        OrderStatus.COMMITTED: ("buyer",),
        OrderStatus.COURIER_SCHEDULED: ("buyer", "seller"),
        OrderStatus.COLLECTED: ("buyer",),
        OrderStatus.DELIVERED: ("buyer", "seller"),
        OrderStatus.DECLINED_BY_SELLER: ("buyer", "seller"),
        OrderStatus.CANCELLED_BY_BUYER: ("seller",),
        OrderStatus.COLLECTION_TIMEOUT: ("buyer", "seller"),
        OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP: ("buyer",)
    }

    STATUS_EVENTS = {
        OrderStatus.COMMITTED: EventType.ORDER_COMMITTED,
        OrderStatus.DECLINED_BY_SELLER: EventType.ORDER_DECLINED,
        OrderStatus.COLLECTION_TIMEOUT: EventType.ORDER_EXPIRED,
        OrderStatus.COLLECTED: EventType.ORDER_COLLECTED,
        OrderStatus.DELIVERED: EventType.ORDER_DELIVERED,
        OrderStatus.CANCELLED_BY_BUYER: EventType.ORDER_CANCELLED,
        OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP: EventType.ORDER_CANCELLED
    }

    def __init__(
        self,
        repository: OrderRepository,
        notifier: Optional[NotificationDispatcher] = None
    ):
        """
        Initialize state machine.

        Args:
            repository: Persistence collaborator providing conditional_update
            notifier: Optional dispatcher for status-change notifications
        """
        self.repository = repository
        self.notifier = notifier
        self._callbacks: List[Callable[[Order], None]] = []

    @staticmethod
    def _parse_status(status) -> OrderStatus:
        return OrderStatus(status) if isinstance(status, str) else status

    @classmethod
    def can_transition(cls, from_status: OrderStatus, to_status: OrderStatus) -> bool:
        """
        Check if transition is valid.

        Args:
            from_status: Current order status
            to_status: Target order status

        Returns:
            True if transition is valid
        """
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: OrderStatus, to_status: OrderStatus):
        """
        Validate state transition and raise exception if invalid.

        Raises:
            InvalidStateTransition: If transition is not allowed
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransition(
                f"Invalid order state transition: {from_status.value} → {to_status.value}",
                current_status=from_status,
                target_status=to_status
            )

    @classmethod
    def is_terminal_state(cls, status: OrderStatus) -> bool:
        """Check if status is a terminal state (no further transitions)."""
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def predecessors(cls, target: OrderStatus) -> FrozenSet[OrderStatus]:
        """Statuses from which target is directly reachable."""
        return frozenset(
            status for status, targets in cls.VALID_TRANSITIONS.items()
            if target in targets
        )

    def register_callback(self, callback: Callable[[Order], None]):
        """
        Register callback for applied transitions.

        Args:
            callback: Function called with the updated order
        """
        self._callbacks.append(callback)
        logger.debug("Transition callback registered", callback=getattr(callback, "__name__", repr(callback)))

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        changes: Optional[Dict[str, Any]] = None,
        expected: Optional[Collection[OrderStatus]] = None,
        guards: Optional[Dict[str, Collection[Any]]] = None,
        now: Optional[datetime] = None
    ) -> TransitionOutcome:
        """
        Move an order to target status with one atomic conditional update.

        The update is guarded by the legal predecessors of target (narrowed
        to expected when given). The order is only read when the guard does
        not match, to tell a missing order, an idempotent repeat and an
        illegal transition apart.

        Args:
            order_id: Order to transition
            target: Target status
            changes: Extra fields written in the same update
            expected: Restrict the allowed current statuses
            guards: Extra field -> allowed current values
            now: Timestamp used for the status column

        Returns:
            TransitionOutcome with applied=False for an idempotent repeat

        Raises:
            OrderNotFound: If the order does not exist
            InvalidStateTransition: If the current status cannot reach target
            DataIntegrityError: On persistence failure
        """
        target = self._parse_status(target)
        allowed = self.predecessors(target)
        if expected is not None:
            allowed = allowed.intersection(self._parse_status(s) for s in expected)

        update: Dict[str, Any] = {"status": target}
        timestamp_field = self.STATUS_TIMESTAMPS.get(target)
        if timestamp_field:
            update[timestamp_field] = now or utcnow()
        update.update(changes or {})

        if allowed:
            updated = await self.repository.conditional_update(
                order_id, update, statuses=allowed, guards=guards
            )
            if updated is not None:
                self._on_applied(updated)
                return TransitionOutcome(order=updated, applied=True)

        current = await self.repository.get(order_id)
        if current is None:
            raise OrderNotFound(f"Order {order_id} not found")

        if current.status == target:
            logger.debug(
                "Transition already applied",
                order_id=order_id,
                status=target.value
            )
            return TransitionOutcome(order=current, applied=False)

        logger.warning(
            "Invalid state transition rejected",
            order_id=order_id,
            current_status=current.status.value,
            target_status=target.value
        )
        raise InvalidStateTransition(
            f"Invalid order state transition: {current.status.value} → {target.value}",
            current_status=current.status,
            target_status=target
        )

    def _on_applied(self, order: Order):
        log_order_event(
            logger,
            self.STATUS_EVENTS.get(order.status, EventType.ORDER_TRANSITION),
            order.order_id,
            status=order.status.value,
            payment_reference=order.payment_reference
        )
        self._notify(order)
        self._emit_callback(order)

    def _notify(self, order: Order):
        if self.notifier is None:
            return
        data = {
            "order_id": order.order_id,
            "status": order.status.value,
            "total_amount": order.total_amount,
            "tracking_reference": order.tracking_reference,
            "dropoff_code": order.dropoff_code,
            "decline_reason": order.decline_reason
        }
        template = f"order_{order.status.value}"
        for party in self.STATUS_RECIPIENTS.get(order.status, ()):
            recipient = order.buyer_email if party == "buyer" else order.seller_email
            self.notifier.notify(recipient, template, {**data, "recipient_role": party})

    def _emit_callback(self, order: Order):
        for callback in self._callbacks:
            try:
                callback(order)
            except Exception as e:
                logger.error(
                    "Error in transition callback",
                    callback=getattr(callback, "__name__", repr(callback)),
                    error=str(e),
                    exc_info=True
                )
