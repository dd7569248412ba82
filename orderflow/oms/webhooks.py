"""
Order Management System - Payment processor webhooks.

Processors deliver events at least once and in any order relative to the
buyer's redirect. Each event id is claimed in the repository before it is
handled; a retryable failure or an exception out of the handler releases
the claim so the redelivery runs.
"""

import json
from typing import Any, Dict, List, Optional

import structlog

from .checkout import CheckoutCoordinator
from .payout_coordinator import PayoutCoordinator
from .refund_coordinator import RefundCoordinator
from .repository import OrderRepository
from .results import OperationResult
from ..gateways.exceptions import ValidationError
from ..gateways.payment_gateway import PaymentGateway
from ..utils.logger import EventType, log_system_event

logger = structlog.get_logger(__name__)


def _parse_metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    return metadata if isinstance(metadata, dict) else {}


def event_key(payload: Dict[str, Any]) -> str:
    """
    De-duplication key for a webhook payload.

    The processor's object id when present, otherwise the transaction
    reference, prefixed by the event name.
    """
    event = payload.get("event", "")
    data = payload.get("data") or {}
    identity = data.get("id") or data.get("reference") or data.get("transaction_reference")
    if identity is None:
        raise ValidationError(f"Webhook {event!r} carries no id or reference")
    return f"{event}:{identity}"


class WebhookHandler:
    """Verifies, de-duplicates and dispatches payment processor events."""

    def __init__(
        self,
        repository: OrderRepository,
        payment_gateway: PaymentGateway,
        checkout: CheckoutCoordinator,
        refunds: RefundCoordinator,
        payouts: Optional[PayoutCoordinator] = None
    ):
        self.repository = repository
        self.payment_gateway = payment_gateway
        self.checkout = checkout
        self.refunds = refunds
        self.payouts = payouts
        self._handlers = {
            "charge.success": self._charge_success,
            "charge.failed": self._charge_failed,
            "refund.processed": self._refund_processed,
        }
        if payouts is not None:
            self._handlers.update({
                "transfer.success": self._transfer_success,
                "transfer.failed": self._transfer_failed,
                "transfer.reversed": self._transfer_failed,
            })

    async def handle(self, body: bytes, signature: str) -> OperationResult:
        """
        Handle one raw webhook delivery.

        Args:
            body: Raw request body, exactly as signed
            signature: Signature header value

        Returns:
            OperationResult; category validation for bad signatures or
            payloads, success for duplicates and ignored event types
        """
        if not self.payment_gateway.verify_webhook_signature(body, signature):
            logger.warning("Webhook signature rejected", provider=self.payment_gateway.name)
            return OperationResult.failure(ValidationError("Invalid webhook signature"))

        try:
            payload = json.loads(body)
            if not isinstance(payload, dict):
                raise ValidationError("Webhook body is not a JSON object")
            key = event_key(payload)
        except ValueError as e:
            return OperationResult.failure(ValidationError(f"Malformed webhook body: {e}"))
        except ValidationError as e:
            return OperationResult.failure(e)

        event = payload.get("event", "")
        log_system_event(logger, EventType.WEBHOOK_RECEIVED, "Webhook received", webhook_event=event, event_id=key)

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Webhook event ignored", webhook_event=event)
            return OperationResult.ok(message=f"Event {event} ignored")

        if not await self.repository.record_event(key):
            logger.info("Duplicate webhook skipped", event_id=key)
            return OperationResult.ok(message="Duplicate event")

        try:
            result = await handler(payload.get("data") or {})
        except BaseException:
            await self.repository.forget_event(key)
            logger.exception("Webhook handler raised, awaiting redelivery", event_id=key)
            raise
        if not result.success and result.retryable:
            await self.repository.forget_event(key)
            logger.warning("Webhook handling failed, awaiting redelivery", event_id=key, error=result.message)
        return result

    async def _charge_success(self, data: Dict[str, Any]) -> OperationResult:
        reference = data.get("reference")
        if not reference:
            return OperationResult.failure(ValidationError("charge.success without reference"))
        return await self.checkout.complete(reference)

    async def _charge_failed(self, data: Dict[str, Any]) -> OperationResult:
        metadata = _parse_metadata(data)
        buyer_id = metadata.get("buyer_id")
        items: List[str] = [
            item
            for group in metadata.get("sellers") or []
            for item in group.get("items", [])
        ]
        if not buyer_id or not items:
            return OperationResult.ok(message="No reservations referenced")
        released = await self.checkout.abandon(buyer_id, items)
        return OperationResult.ok(message=f"Released {released} reservations")

    async def _refund_processed(self, data: Dict[str, Any]) -> OperationResult:
        reference = data.get("transaction_reference") or data.get("reference")
        if not reference:
            return OperationResult.failure(ValidationError("refund.processed without transaction reference"))
        refund_id = data.get("id")
        marked = await self.refunds.mark_processed(reference, str(refund_id) if refund_id is not None else None)
        return OperationResult.ok(message=f"Marked {marked} refunds processed")

    async def _transfer_success(self, data: Dict[str, Any]) -> OperationResult:
        reference = data.get("reference")
        if not reference:
            return OperationResult.failure(ValidationError("transfer.success without reference"))
        return await self.payouts.settle_transfer(reference, True, transfer_id=data.get("transfer_code"))

    async def _transfer_failed(self, data: Dict[str, Any]) -> OperationResult:
        reference = data.get("reference")
        if not reference:
            return OperationResult.failure(ValidationError("transfer failure without reference"))
        return await self.payouts.settle_transfer(
            reference,
            False,
            transfer_id=data.get("transfer_code"),
            error=data.get("reason") or data.get("status")
        )
