"""
Order Management System - Refund coordinator.

Refunds are exactly-once per ledger key. Two layers make that hold:
an in-process asyncio.Lock per key serialises callers in this process,
and the repository's atomic claim_refund (insert or failed -> pending)
serialises callers across processes. The payment processor is only called
by the holder of a fresh claim.

A claim is never left PENDING by an error: any exception out of the
processor call marks it FAILED before propagating. Claims orphaned by a
process that died mid-call are released by reclaim() once they are older
than the claim timeout.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional

import structlog

from .repository import OrderRepository
from .results import RefundOutcome
from ..gateways.exceptions import OrderNotFound, UpstreamError, ValidationError
from ..gateways.models import Order, OrderStatus, RefundReason, RefundRecord, RefundStatus
from ..gateways.notification_gateway import NotificationDispatcher
from ..gateways.payment_gateway import PaymentGateway
from ..utils.logger import EventType, log_order_event
from ..utils.retry import with_timeout

logger = structlog.get_logger(__name__)


# Processor refund statuses that mean the money has left
_PROCESSED_STATUSES = frozenset({"processed", "success", "completed"})


class _KeyLock:
    """asyncio.Lock plus the number of coroutines holding or awaiting it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class RefundCoordinator:
    """
    Idempotent refund issuance against the payment collaborator.
    """

    def __init__(
        self,
        repository: OrderRepository,
        payment_gateway: PaymentGateway,
        notifier: Optional[NotificationDispatcher] = None,
        timeout_seconds: float = 20.0
    ):
        """
        Initialize coordinator.

        Args:
            repository: Persistence collaborator (orders and refund ledger)
            payment_gateway: Payment processor
            notifier: Optional dispatcher for buyer refund notices
            timeout_seconds: Deadline for the processor refund call
        """
        self.repository = repository
        self.payment_gateway = payment_gateway
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def _key_lock(self, refund_key: str) -> AsyncIterator[None]:
        """Hold the per-key lock; the entry is dropped once nobody uses it."""
        entry = self._locks.get(refund_key)
        if entry is None:
            entry = self._locks[refund_key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[refund_key]

    @staticmethod
    def _resolve_amount(order: Order, amount: Optional[int]) -> int:
        if amount is None:
            return order.total_amount
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Refund amount must be an integer in minor units, got {amount!r}")
        if amount <= 0:
            raise ValidationError(f"Refund amount must be > 0, got {amount}")
        if amount > order.total_amount:
            raise ValidationError(
                f"Refund amount {amount} exceeds order total {order.total_amount}"
            )
        return amount

    @staticmethod
    def _check_refundable(order: Order, reason: RefundReason) -> None:
        if not order.payment_reference:
            raise ValidationError(f"Order {order.order_id} has no payment reference")
        if order.status == OrderStatus.DELIVERED and reason != RefundReason.DISPUTE:
            raise ValidationError(f"Delivered order {order.order_id} can only be refunded on dispute")

    async def refund(
        self,
        order_id: str,
        reason: RefundReason,
        amount: Optional[int] = None
    ) -> RefundOutcome:
        """
        Refund an order's payment at most once.

        Args:
            order_id: Order to refund
            reason: Reason code recorded with the attempt
            amount: Partial amount in minor units (default: order total)

        Returns:
            RefundOutcome. A repeat call for an already pending or processed
            refund succeeds with already_refunded=True and no processor call.
            A processor failure leaves the ledger FAILED (retryable).

        Raises:
            DataIntegrityError: On persistence failure
        """
        try:
            reason = RefundReason(reason) if isinstance(reason, str) else reason
            order = await self.repository.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            self._check_refundable(order, reason)
            amount = self._resolve_amount(order, amount)
        except ValueError as e:
            return RefundOutcome.failure(ValidationError(f"Unknown refund reason: {e}"))
        except ValidationError as e:
            logger.warning("Refund rejected", order_id=order_id, reason=getattr(reason, "value", reason), error=e.message)
            return RefundOutcome.failure(e)

        refund_key = order.refund_key
        async with self._key_lock(refund_key):
            return await self._issue(order, refund_key, reason, amount)

    async def _issue(self, order: Order, refund_key: str, reason: RefundReason, amount: int) -> RefundOutcome:
        claimed = await self.repository.claim_refund(RefundRecord(
            payment_reference=order.payment_reference,
            order_id=order.order_id,
            amount=amount,
            reason=reason,
            refund_key=refund_key
        ))

        if claimed is None:
            existing = await self.repository.get_refund(refund_key)
            logger.info(
                "Refund already issued",
                order_id=order.order_id,
                refund_key=refund_key,
                refund_status=existing.status.value if existing else None
            )
            return RefundOutcome.ok(
                order=order,
                message="Refund already issued",
                refund=existing,
                already_refunded=True
            )

        logger.info(
            "Issuing refund",
            order_id=order.order_id,
            payment_reference=order.payment_reference,
            amount=amount,
            reason=reason.value,
            attempt=claimed.attempts
        )
        try:
            await self._update_order(order.order_id, RefundStatus.PENDING, amount)
            result = await with_timeout(
                self.payment_gateway.refund(order.payment_reference, amount),
                self.timeout_seconds,
                operation="refund",
                provider=self.payment_gateway.name
            )
        except UpstreamError as e:
            updated = await self._fail_claim(claimed, order, reason, e.message)
            return RefundOutcome.failure(e, order=updated or order, refund=claimed)
        except BaseException as e:
            # Release the claim so a retry can re-issue, then propagate
            await self._fail_claim(claimed, order, reason, f"{type(e).__name__}: {e}")
            raise

        claimed.refund_id = result.refund_id
        claimed.status = RefundStatus.PROCESSED if result.status in _PROCESSED_STATUSES else RefundStatus.PENDING
        await self.repository.save_refund(claimed)
        updated = await self._update_order(order.order_id, claimed.status, amount)

        log_order_event(
            logger,
            EventType.REFUND_ISSUED,
            order.order_id,
            payment_reference=order.payment_reference,
            refund_id=result.refund_id,
            amount=amount,
            reason=reason.value,
            refund_status=claimed.status.value
        )
        if self.notifier:
            self.notifier.notify(order.buyer_email, "refund_issued", {
                "order_id": order.order_id,
                "amount": amount,
                "reason": reason.value,
                "refund_id": result.refund_id
            })

        return RefundOutcome.ok(order=updated or order, message="Refund issued", refund=claimed, issued=True)

    async def _fail_claim(self, claimed: RefundRecord, order: Order, reason: RefundReason, error: str) -> Optional[Order]:
        """Mark a claimed refund FAILED on the ledger and the order."""
        claimed.status = RefundStatus.FAILED
        claimed.last_error = error
        await self.repository.save_refund(claimed)
        updated = await self._update_order(order.order_id, RefundStatus.FAILED, claimed.amount)
        log_order_event(
            logger,
            EventType.REFUND_FAILED,
            order.order_id,
            payment_reference=order.payment_reference,
            amount=claimed.amount,
            reason=reason.value,
            error=error
        )
        return updated

    async def _update_order(self, order_id: str, status: RefundStatus, amount: int) -> Optional[Order]:
        return await self.repository.conditional_update(
            order_id,
            {"refund_status": status, "refund_amount": amount}
        )

    async def retry_failed(self, order_id: str) -> RefundOutcome:
        """
        Re-issue a refund whose last attempt failed, with the same reason and amount.

        Returns:
            RefundOutcome; a no-op success when nothing is in FAILED state
        """
        order = await self.repository.get(order_id)
        if order is None:
            return RefundOutcome.failure(OrderNotFound(f"Order {order_id} not found"))
        if not order.payment_reference:
            return RefundOutcome.failure(ValidationError(f"Order {order_id} has no payment reference"))

        record = await self.repository.get_refund(order.refund_key)
        if record is None or record.status != RefundStatus.FAILED:
            return RefundOutcome.ok(order=order, message="No failed refund to retry", refund=record)

        return await self.refund(order_id, record.reason, record.amount)

    async def mark_processed(self, payment_reference: str, refund_id: Optional[str] = None) -> int:
        """
        Mark pending refunds of a payment as processed (processor webhook).

        Args:
            payment_reference: Refunded payment
            refund_id: Restrict to one processor refund id

        Returns:
            Number of ledger rows marked processed
        """
        marked = 0
        for record in await self.repository.find_refunds_by_payment(payment_reference):
            if record.status != RefundStatus.PENDING:
                continue
            if refund_id and record.refund_id and record.refund_id != refund_id:
                continue
            async with self._key_lock(record.refund_key):
                record.status = RefundStatus.PROCESSED
                record.refund_id = record.refund_id or refund_id
                await self.repository.save_refund(record)
                await self._update_order(record.order_id, RefundStatus.PROCESSED, record.amount)
            marked += 1

        logger.info("Refunds marked processed", payment_reference=payment_reference, count=marked)
        return marked

    async def reclaim(self, record: RefundRecord, before: datetime) -> RefundOutcome:
        """
        Release a claim abandoned mid-call and re-issue the refund.

        The claim is only released if it is still PENDING with no processor
        refund id and untouched since ``before``; a live holder always
        finishes well within that window.

        Args:
            record: Stale ledger row (from find_stale_refunds)
            before: Claims updated at or after this time are left alone

        Returns:
            RefundOutcome of the re-issue, or a no-op success when the claim
            moved on in the meantime
        """
        async with self._key_lock(record.refund_key):
            released = await self.repository.release_refund_claim(
                record.refund_key,
                before,
                "Claim abandoned before the processor answered"
            )
            if released is None:
                return RefundOutcome.ok(message="Refund claim no longer stale")
            await self._update_order(released.order_id, RefundStatus.FAILED, released.amount)
            logger.warning(
                "Abandoned refund claim released",
                order_id=released.order_id,
                refund_key=released.refund_key,
                attempts=released.attempts
            )

        return await self.retry_failed(released.order_id)
