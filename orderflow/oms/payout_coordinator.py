"""
Order Management System - Seller payout coordinator.

Sellers with a payout subaccount are paid by the payment split at charge
time. Everyone else has their share held on the platform balance until the
order is delivered; this coordinator pays it out with a processor transfer,
at most once per order.

Each payout uses a fixed transfer reference (payout_<order_id>), so the
processor refuses a second transfer for the same order even when the first
one timed out on our side. transfer.* webhooks settle payouts whose status
was still pending when the call returned.
"""

from typing import Optional

import structlog

from .repository import OrderRepository
from .results import OperationResult, PayoutOutcome
from ..gateways.exceptions import OrderNotFound, UpstreamError, ValidationError
from ..gateways.models import Order, OrderStatus, PayoutRecord, PayoutStatus, RefundStatus
from ..gateways.notification_gateway import NotificationDispatcher
from ..gateways.payment_gateway import PaymentGateway
from ..settlement.calculator import DEFAULT_PLATFORM_FEE_BPS, calculate_split
from ..utils.logger import EventType, log_order_event
from ..utils.retry import with_timeout

logger = structlog.get_logger(__name__)


# Processor transfer statuses that mean the money has left
_PAID_STATUSES = frozenset({"success", "successful", "completed"})


def payout_reference(order_id: str) -> str:
    """Transfer reference for an order's payout."""
    return f"payout_{order_id}"


class PayoutCoordinator:
    """
    Exactly-once seller payouts for orders paid through the platform balance.
    """

    def __init__(
        self,
        repository: OrderRepository,
        payment_gateway: PaymentGateway,
        notifier: Optional[NotificationDispatcher] = None,
        platform_fee_bps: int = DEFAULT_PLATFORM_FEE_BPS,
        timeout_seconds: float = 20.0
    ):
        """
        Initialize coordinator.

        Args:
            repository: Persistence collaborator (orders and payout ledger)
            payment_gateway: Payment processor holding the platform balance
            notifier: Optional dispatcher for seller payout notices
            platform_fee_bps: Platform fee withheld from the seller's share
            timeout_seconds: Deadline for the processor transfer call
        """
        self.repository = repository
        self.payment_gateway = payment_gateway
        self.notifier = notifier
        self.platform_fee_bps = platform_fee_bps
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _check_payable(order: Order) -> None:
        if order.status != OrderStatus.DELIVERED:
            raise ValidationError(f"Order {order.order_id} is {order.status.value}, not delivered")
        if order.seller_subaccount:
            raise ValidationError(f"Order {order.order_id} was settled by the payment split")
        if order.refund_status != RefundStatus.NONE:
            raise ValidationError(f"Order {order.order_id} has a refund ({order.refund_status.value})")
        if not order.payout_recipient:
            raise ValidationError(f"Seller {order.seller_id} has no payout recipient")

    async def pay(self, order_id: str) -> PayoutOutcome:
        """
        Transfer the seller's share of a delivered order.

        The amount is the seller_amount of the order's settlement split;
        the delivery fee and the platform fee stay on the balance.

        Returns:
            PayoutOutcome. A repeat call for a pending or paid payout
            succeeds with already_paid=True and no processor call. A
            processor failure leaves the ledger FAILED (retryable).

        Raises:
            DataIntegrityError: On persistence failure
        """
        order = await self.repository.get(order_id)
        if order is None:
            return PayoutOutcome.failure(OrderNotFound(f"Order {order_id} not found"))
        try:
            self._check_payable(order)
        except ValidationError as e:
            logger.warning("Payout rejected", order_id=order_id, error=e.message)
            return PayoutOutcome.failure(e, order=order)

        amount = calculate_split(order.subtotal, order.delivery_fee, self.platform_fee_bps).seller_amount
        claimed = await self.repository.claim_payout(PayoutRecord(
            order_id=order.order_id,
            seller_id=order.seller_id,
            recipient=order.payout_recipient,
            amount=amount,
            reference=payout_reference(order.order_id)
        ))
        if claimed is None:
            existing = await self.repository.get_payout(order.order_id)
            logger.info(
                "Payout already issued",
                order_id=order.order_id,
                payout_status=existing.status.value if existing else None
            )
            return PayoutOutcome.ok(order=order, message="Payout already issued", payout=existing, already_paid=True)

        logger.info(
            "Paying seller",
            order_id=order.order_id,
            seller_id=order.seller_id,
            amount=amount,
            attempt=claimed.attempts
        )
        try:
            await self._update_order(order.order_id, PayoutStatus.PENDING)
            result = await with_timeout(
                self.payment_gateway.transfer(
                    claimed.recipient,
                    amount,
                    claimed.reference,
                    reason=f"Payout for order {order.order_id}"
                ),
                self.timeout_seconds,
                operation="transfer",
                provider=self.payment_gateway.name
            )
        except UpstreamError as e:
            updated = await self._fail_claim(claimed, e.message)
            return PayoutOutcome.failure(e, order=updated or order, payout=claimed)
        except BaseException as e:
            await self._fail_claim(claimed, f"{type(e).__name__}: {e}")
            raise

        claimed.transfer_id = result.transfer_id
        claimed.status = PayoutStatus.PAID if result.status in _PAID_STATUSES else PayoutStatus.PENDING
        await self.repository.save_payout(claimed)
        updated = await self._update_order(order.order_id, claimed.status)

        log_order_event(
            logger,
            EventType.PAYOUT_ISSUED,
            order.order_id,
            seller_id=order.seller_id,
            transfer_id=result.transfer_id,
            amount=amount,
            payout_status=claimed.status.value
        )
        if self.notifier and order.seller_email:
            self.notifier.notify(order.seller_email, "seller_payout", {
                "order_id": order.order_id,
                "amount": amount,
                "reference": claimed.reference
            })

        return PayoutOutcome.ok(order=updated or order, message="Payout issued", payout=claimed, paid=True)

    async def _fail_claim(self, claimed: PayoutRecord, error: str) -> Optional[Order]:
        claimed.status = PayoutStatus.FAILED
        claimed.last_error = error
        await self.repository.save_payout(claimed)
        updated = await self._update_order(claimed.order_id, PayoutStatus.FAILED)
        log_order_event(
            logger,
            EventType.PAYOUT_FAILED,
            claimed.order_id,
            seller_id=claimed.seller_id,
            amount=claimed.amount,
            error=error
        )
        return updated

    async def _update_order(self, order_id: str, status: PayoutStatus) -> Optional[Order]:
        return await self.repository.conditional_update(order_id, {"payout_status": status})

    async def settle_transfer(
        self,
        reference: str,
        succeeded: bool,
        transfer_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> OperationResult:
        """
        Apply a transfer webhook to the payout ledger.

        Args:
            reference: Transfer reference (payout_<order_id>)
            succeeded: transfer.success (True) or transfer.failed / reversed
            transfer_id: Processor transfer code
            error: Failure reason reported by the processor

        Returns:
            OperationResult; success with no change for unknown references
        """
        record = await self.repository.find_payout_by_reference(reference)
        if record is None:
            logger.info("Transfer webhook for unknown payout", reference=reference)
            return OperationResult.ok(message="No payout for transfer reference")

        target = PayoutStatus.PAID if succeeded else PayoutStatus.FAILED
        if record.status == target:
            return OperationResult.ok(message=f"Payout already {target.value}")

        record.status = target
        record.transfer_id = record.transfer_id or transfer_id
        record.last_error = None if succeeded else (error or "Transfer failed")
        await self.repository.save_payout(record)
        updated = await self._update_order(record.order_id, target)

        if succeeded:
            logger.info("Payout confirmed", order_id=record.order_id, reference=reference)
        else:
            log_order_event(
                logger,
                EventType.PAYOUT_FAILED,
                record.order_id,
                seller_id=record.seller_id,
                amount=record.amount,
                error=record.last_error
            )
        return OperationResult.ok(order=updated, message=f"Payout {target.value}")
