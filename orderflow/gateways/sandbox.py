"""
Sandbox payment and courier gateways.

In-process stand-ins used only when the configuration explicitly sets
sandbox mode. They never activate because credentials are missing.
"""

import hashlib
import hmac
import uuid
from typing import Any, Dict, List, Optional, Set

from .courier_gateway import CourierGateway
from .payment_gateway import PaymentGateway
from .exceptions import UpstreamRejected
from .models import (
    Address,
    DeliveryMethod,
    DeliveryQuote,
    Parcel,
    PaymentInitialization,
    PaymentSplit,
    PaymentVerification,
    RefundResult,
    Shipment,
    ShipmentRequest,
    TrackingEvent,
    TransferResult,
    utcnow
)
from ..utils.logger import get_logger


logger = get_logger(__name__)


class SandboxPaymentGateway(PaymentGateway):
    """Payment processor double that settles every payment immediately."""

    name = "sandbox-payment"

    def __init__(self, secret_key: str = "sk_sandbox"):
        super().__init__(secret_key, sandbox=True)
        self.payments: Dict[str, int] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.declined: Set[str] = set()
        self.refunds: List[Dict[str, Any]] = []
        self.transfers: List[Dict[str, Any]] = []

    async def initialize(
        self,
        amount: int,
        email: str,
        split: Optional[PaymentSplit] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PaymentInitialization:
        reference = reference or f"sbx_{uuid.uuid4().hex[:16]}"
        self.payments[reference] = amount
        self.metadata[reference] = metadata or {}
        logger.info("Sandbox payment initialized", reference=reference, amount=amount)
        return PaymentInitialization(
            reference=reference,
            authorization_url=f"https://sandbox.invalid/pay/{reference}"
        )

    def decline(self, reference: str) -> None:
        """Make a known payment verify as failed."""
        self.declined.add(reference)

    async def verify(self, reference: str) -> PaymentVerification:
        if reference not in self.payments or reference in self.declined:
            return PaymentVerification(reference=reference, status="failed")
        return PaymentVerification(
            reference=reference,
            status="success",
            amount=self.payments[reference],
            raw_data={
                "reference": reference,
                "amount": self.payments[reference],
                "metadata": self.metadata.get(reference, {})
            }
        )

    async def refund(self, reference: str, amount: Optional[int] = None) -> RefundResult:
        if reference not in self.payments:
            raise UpstreamRejected(f"Unknown transaction {reference}", provider=self.name, status_code=404)
        refund_id = f"rf_{uuid.uuid4().hex[:12]}"
        self.refunds.append({"reference": reference, "amount": amount, "refund_id": refund_id})
        logger.info("Sandbox refund processed", reference=reference, amount=amount, refund_id=refund_id)
        return RefundResult(refund_id=refund_id, status="processed")

    async def transfer(self, recipient: str, amount: int, reference: str, reason: str = "") -> TransferResult:
        if any(t["reference"] == reference for t in self.transfers):
            raise UpstreamRejected(f"Duplicate transfer reference {reference}", provider=self.name, status_code=400)
        transfer_id = f"TRF_{uuid.uuid4().hex[:12]}"
        self.transfers.append({
            "recipient": recipient,
            "amount": amount,
            "reference": reference,
            "transfer_id": transfer_id
        })
        logger.info("Sandbox transfer processed", reference=reference, amount=amount, transfer_id=transfer_id)
        return TransferResult(transfer_id=transfer_id, reference=reference, status="success")

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return bool(signature) and hmac.compare_digest(expected, signature)


class SandboxCourierGateway(CourierGateway):
    """Courier double with a flat price and instant bookings."""

    def __init__(self, courier_id: str = "sandbox", price: int = 6500, estimated_days: int = 3):
        super().__init__(courier_id, supports_lockers=True)
        self.price = price
        self.estimated_days = estimated_days
        self.shipments: List[ShipmentRequest] = []

    async def quote(self, origin: Address, destination: Address, parcel: Parcel) -> List[DeliveryQuote]:
        return [
            DeliveryQuote(
                courier_id=self.courier_id,
                service_code="standard",
                price=self.price,
                estimated_days=self.estimated_days
            )
        ]

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        self.shipments.append(request)
        dropoff_code = None
        if request.delivery_method == DeliveryMethod.LOCKER:
            dropoff_code = uuid.uuid4().hex[:6].upper()
        return Shipment(
            courier_id=self.courier_id,
            tracking_reference=f"SBX-{request.order_id}",
            label_url=f"https://sandbox.invalid/labels/{request.order_id}.pdf",
            dropoff_code=dropoff_code
        )

    async def track(self, tracking_reference: str) -> List[TrackingEvent]:
        return [TrackingEvent(status="created", description="Shipment booked", occurred_at=utcnow())]
