"""
Order Management System - Expiry sweeper.

One call to sweep() is one scheduler tick. Each expiry class queries the
orders stuck in its status past the ExpiryPolicy deadline and applies one
independent compensating action per order. A failing order, or a failing
class query, is counted and logged; it never stops the rest of the pass.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..config import ExpiryPolicy
from .commit_coordinator import CommitCoordinator
from .payout_coordinator import PayoutCoordinator
from .refund_coordinator import RefundCoordinator
from .repository import OrderRepository
from .results import OperationResult
from .state_machine import OrderStateMachine
from ..gateways.exceptions import ErrorCategory, InvalidStateTransition, ValidationError
from ..gateways.models import (
    Order,
    OrderStatus,
    PayoutStatus,
    RefundRecord,
    RefundStatus,
    Reservation,
    ShipmentStatus,
    utcnow
)
from ..gateways.notification_gateway import NotificationDispatcher
from ..utils.logger import EventType, log_order_event, log_system_event

logger = structlog.get_logger(__name__)


@dataclass
class SweepClassReport:
    """Counts for one expiry class."""
    name: str
    found: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)


@dataclass
class SweepReport:
    """Aggregate result of one sweep pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    classes: List[SweepClassReport] = field(default_factory=list)

    @property
    def found(self) -> int:
        return sum(c.found for c in self.classes)

    @property
    def processed(self) -> int:
        return sum(c.processed for c in self.classes)

    @property
    def errors(self) -> int:
        return sum(c.errors for c in self.classes)

    def get(self, name: str) -> Optional[SweepClassReport]:
        return next((c for c in self.classes if c.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "errors": self.errors,
            "classes": [
                {
                    "name": c.name,
                    "found": c.found,
                    "processed": c.processed,
                    "skipped": c.skipped,
                    "errors": c.errors,
                    "error_messages": c.error_messages[:20]
                }
                for c in self.classes
            ]
        }


# Terminal statuses whose refund may need a retry
_REFUNDABLE_TERMINAL = (
    OrderStatus.DECLINED_BY_SELLER,
    OrderStatus.CANCELLED_BY_BUYER,
    OrderStatus.CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP
)


class ExpirySweeper:
    """
    Scheduled batch resolving orders stuck past their deadlines.

    Expiry classes, in run order:
    - commit_expiry: pending_commit older than commit_deadline -> declined + full refund
    - commit_reminder: pending_commit within commit_reminder_before of the deadline ->
      one seller reminder, urgent inside urgent_reminder_within (needs a notifier)
    - collection_timeout: courier_scheduled older than collection_deadline -> collection_timeout
    - auto_delivery: collected older than auto_delivery_after -> delivered (policy gated)
    - seller_payout: delivered longer than payout_after, seller without a split
      subaccount -> balance transfer (needs a payout coordinator)
    - reservation_expiry: checkout reservations past reserved_until -> released
    - shipment_retry: committed orders whose courier booking failed -> booking retried
    - shipment_reclaim: booking claims in_progress past shipment_claim_timeout -> released, retried
    - refund_retry: cancelled / declined orders whose refund failed -> refund retried
    - refund_reclaim: refund claims pending past refund_claim_timeout -> released, re-issued
    """

    def __init__(
        self,
        repository: OrderRepository,
        state_machine: OrderStateMachine,
        commits: CommitCoordinator,
        refunds: RefundCoordinator,
        policy: Optional[ExpiryPolicy] = None,
        notifier: Optional[NotificationDispatcher] = None,
        operations_email: str = "",
        payouts: Optional[PayoutCoordinator] = None
    ):
        """
        Initialize sweeper.

        Args:
            repository: Persistence collaborator (range queries)
            state_machine: Transition primitive
            commits: Expiry decline and shipment retry
            refunds: Failed refund retry
            policy: Deadlines; defaults to 48h / 7d / 14d
            notifier: Dispatcher for seller reminders and the operations summary
            operations_email: Summary recipient; no summary when empty
            payouts: Seller payout coordinator; no payout class when None
        """
        self.repository = repository
        self.state_machine = state_machine
        self.commits = commits
        self.refunds = refunds
        self.policy = policy or ExpiryPolicy()
        self.notifier = notifier
        self.operations_email = operations_email
        self.payouts = payouts

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run every expiry class once.

        Args:
            now: Reference time (default: current UTC time)

        Returns:
            SweepReport with per-class {found, processed, skipped, errors}
        """
        now = now or utcnow()
        report = SweepReport(started_at=utcnow())

        classes = [
            ("commit_expiry", self._find_commit_expired, self._expire_commit),
        ]
        if self.notifier is not None:
            classes.append(("commit_reminder", self._find_reminder_due, self._send_reminder))
        classes.append(("collection_timeout", self._find_collection_expired, self._time_out_collection))
        if self.policy.auto_delivery_enabled:
            classes.append(("auto_delivery", self._find_delivery_due, self._auto_deliver))
        if self.payouts is not None:
            classes.append(("seller_payout", self._find_payout_due, self._pay_seller))
        classes.extend([
            ("reservation_expiry", self._find_expired_reservations, self._release_reservation),
            ("shipment_retry", self._find_failed_shipments, self._retry_shipment),
            ("shipment_reclaim", self._find_abandoned_shipments, self._reclaim_shipment),
            ("refund_retry", self._find_failed_refunds, self._retry_refund),
            ("refund_reclaim", self._find_abandoned_refunds, self._reclaim_refund),
        ])

        for name, find, handle in classes:
            report.classes.append(await self._run_class(name, find, handle, now))

        report.finished_at = utcnow()
        log_system_event(
            logger,
            EventType.SWEEP_COMPLETED,
            "Expiry sweep completed",
            found=report.found,
            processed=report.processed,
            errors=report.errors,
            classes={c.name: {"processed": c.processed, "errors": c.errors} for c in report.classes}
        )
        self._send_summary(report)
        return report

    async def _run_class(
        self,
        name: str,
        find: Callable[[datetime], Awaitable[List[Any]]],
        handle: Callable[[Any, datetime], Awaitable[OperationResult]],
        now: datetime
    ) -> SweepClassReport:
        class_report = SweepClassReport(name=name)
        try:
            candidates = await find(now)
        except Exception as e:
            logger.error("Sweep query failed", sweep_class=name, error=str(e), exc_info=True)
            class_report.record_error(f"query failed: {e}")
            return class_report

        class_report.found = len(candidates)
        for candidate in candidates:
            key = getattr(candidate, "order_id", None) or getattr(candidate, "item_id", "?")
            try:
                result = await handle(candidate, now)
            except Exception as e:
                logger.error(
                    "Sweep item failed",
                    sweep_class=name,
                    key=key,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True
                )
                class_report.record_error(f"{key}: {e}")
                continue

            if result.success and not result.partial:
                class_report.processed += 1
            elif result.category == ErrorCategory.INVALID_TRANSITION:
                # Moved on since the query (e.g. seller committed just in time)
                class_report.skipped += 1
            else:
                class_report.record_error(f"{key}: {result.message}")

        logger.info(
            "Sweep class finished",
            sweep_class=name,
            found=class_report.found,
            processed=class_report.processed,
            skipped=class_report.skipped,
            errors=class_report.errors
        )
        return class_report

    # =========================================================================
    # Commit expiry
    # =========================================================================

    async def _find_commit_expired(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.PENDING_COMMIT,
            "created_at",
            now - self.policy.commit_deadline,
            limit=self.policy.batch_size
        )

    async def _expire_commit(self, order: Order, now: datetime) -> OperationResult:
        hours = int(self.policy.commit_deadline.total_seconds() // 3600)
        return await self.commits.expire(
            order.order_id,
            reason=f"Seller did not commit within {hours} hours"
        )

    # =========================================================================
    # Commit reminder
    # =========================================================================

    async def _find_reminder_due(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.PENDING_COMMIT,
            "created_at",
            now - (self.policy.commit_deadline - self.policy.commit_reminder_before),
            limit=self.policy.batch_size,
            guards={"reminder_sent_at": [None]}
        )

    async def _send_reminder(self, order: Order, now: datetime) -> OperationResult:
        time_left = order.created_at + self.policy.commit_deadline - now
        if time_left <= timedelta(0):
            return OperationResult.failure(InvalidStateTransition(
                f"Commit deadline of order {order.order_id} already passed",
                current_status=order.status
            ))

        # The stamp is the claim: at most one reminder per order
        claimed = await self.repository.conditional_update(
            order.order_id,
            {"reminder_sent_at": now},
            statuses=[OrderStatus.PENDING_COMMIT],
            guards={"reminder_sent_at": [None]}
        )
        if claimed is None:
            return OperationResult.failure(InvalidStateTransition(
                f"Order {order.order_id} committed or reminded concurrently",
                current_status=order.status
            ))

        hours_left = int(time_left.total_seconds() // 3600)
        urgent = time_left <= self.policy.urgent_reminder_within
        self.notifier.notify(order.seller_email, "seller_commit_reminder", {
            "order_id": order.order_id,
            "items": order.items,
            "total_amount": order.total_amount,
            "hours_left": hours_left,
            "urgent": urgent,
            "deadline": (order.created_at + self.policy.commit_deadline).isoformat()
        })
        log_order_event(
            logger,
            EventType.COMMIT_REMINDER_SENT,
            order.order_id,
            seller_id=order.seller_id,
            hours_left=hours_left,
            urgent=urgent
        )
        return OperationResult.ok(claimed, message="Reminder sent")

    # =========================================================================
    # Collection timeout
    # =========================================================================

    async def _find_collection_expired(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.COURIER_SCHEDULED,
            "scheduled_at",
            now - self.policy.collection_deadline,
            limit=self.policy.batch_size
        )

    async def _time_out_collection(self, order: Order, now: datetime) -> OperationResult:
        outcome = await self._transition(order, OrderStatus.COLLECTION_TIMEOUT, now)
        if outcome.success:
            # No refund on this path until the missed-pickup policy is decided
            logger.warning(
                "Collection timed out, no refund issued",
                order_id=order.order_id,
                payment_reference=order.payment_reference,
                scheduled_at=order.scheduled_at.isoformat() if order.scheduled_at else None
            )
        return outcome

    # =========================================================================
    # Auto delivery
    # =========================================================================

    async def _find_delivery_due(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.COLLECTED,
            "collected_at",
            now - self.policy.auto_delivery_after,
            limit=self.policy.batch_size,
            guards={"refund_status": [RefundStatus.NONE]}
        )

    async def _auto_deliver(self, order: Order, now: datetime) -> OperationResult:
        return await self._transition(
            order,
            OrderStatus.DELIVERED,
            now,
            guards={"refund_status": [RefundStatus.NONE]}
        )

    # =========================================================================
    # Seller payouts
    # =========================================================================

    async def _find_payout_due(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.DELIVERED,
            "delivered_at",
            now - self.policy.payout_after,
            limit=self.policy.batch_size,
            guards={
                "seller_subaccount": [None],
                "payout_status": [PayoutStatus.NONE, PayoutStatus.FAILED],
                "refund_status": [RefundStatus.NONE]
            }
        )

    async def _pay_seller(self, order: Order, now: datetime) -> OperationResult:
        return await self.payouts.pay(order.order_id)

    # =========================================================================
    # Reservations
    # =========================================================================

    async def _find_expired_reservations(self, now: datetime) -> List[Reservation]:
        return await self.repository.find_expired_reservations(now, limit=self.policy.batch_size)

    async def _release_reservation(self, reservation: Reservation, now: datetime) -> OperationResult:
        released = await self.repository.release_reservations([reservation.item_id], expired_before=now)
        if released:
            logger.debug("Reservation released", item_id=reservation.item_id, reserved_by=reservation.reserved_by)
            return OperationResult.ok(message="Reservation released")
        return OperationResult(
            success=False,
            category=ErrorCategory.INVALID_TRANSITION,
            message="Reservation renewed or released concurrently"
        )

    # =========================================================================
    # Background retries
    # =========================================================================

    async def _find_failed_shipments(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.COMMITTED,
            "updated_at",
            now - self.policy.shipment_retry_after,
            limit=self.policy.batch_size,
            guards={"shipment_status": [ShipmentStatus.SCHEDULING_FAILED, ShipmentStatus.NOT_REQUESTED]}
        )

    async def _retry_shipment(self, order: Order, now: datetime) -> OperationResult:
        return await self.commits.retry_shipment(order.order_id)

    async def _find_abandoned_shipments(self, now: datetime) -> List[Order]:
        return await self.repository.find_stale(
            OrderStatus.COMMITTED,
            "updated_at",
            now - self.policy.shipment_claim_timeout,
            limit=self.policy.batch_size,
            guards={"shipment_status": [ShipmentStatus.IN_PROGRESS]}
        )

    async def _reclaim_shipment(self, order: Order, now: datetime) -> OperationResult:
        return await self.commits.reclaim_shipment(order)

    async def _find_failed_refunds(self, now: datetime) -> List[Order]:
        orders: List[Order] = []
        for status in _REFUNDABLE_TERMINAL:
            orders.extend(await self.repository.find_stale(
                status,
                "updated_at",
                now,
                limit=self.policy.batch_size,
                guards={"refund_status": [RefundStatus.FAILED]}
            ))
        return orders

    async def _retry_refund(self, order: Order, now: datetime) -> OperationResult:
        return await self.refunds.retry_failed(order.order_id)

    async def _find_abandoned_refunds(self, now: datetime) -> List[RefundRecord]:
        return await self.repository.find_stale_refunds(
            now - self.policy.refund_claim_timeout,
            limit=self.policy.batch_size
        )

    async def _reclaim_refund(self, record: RefundRecord, now: datetime) -> OperationResult:
        return await self.refunds.reclaim(record, now - self.policy.refund_claim_timeout)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _transition(self, order: Order, target: OrderStatus, now: datetime, guards=None) -> OperationResult:
        try:
            outcome = await self.state_machine.transition(
                order.order_id,
                target,
                expected=[order.status],
                guards=guards,
                now=now
            )
        except (InvalidStateTransition, ValidationError) as e:
            return OperationResult.failure(e)
        return OperationResult.ok(outcome.order)

    def _send_summary(self, report: SweepReport) -> None:
        if self.notifier is None or not self.operations_email:
            return
        if not report.processed and not report.errors:
            return
        self.notifier.notify(self.operations_email, "expiry_sweep_summary", report.to_dict())
