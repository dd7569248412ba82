"""
Normalized data models for the order lifecycle.

These models are shared by the orchestrator and every collaborator adapter
(payment, courier, persistence), so that provider-specific payloads never
leak into the order logic.

All money is held as integer minor units (cents). Floats are rejected.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from enum import Enum

from .exceptions import ValidationError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def require_minor_units(name: str, value: Any, allow_zero: bool = True) -> int:
    """
    Validate an amount expressed in integer minor units.

    Args:
        name: Field name used in the error message
        value: Candidate amount
        allow_zero: Whether 0 is acceptable

    Returns:
        The amount unchanged

    Raises:
        ValidationError: If the amount is not a non-negative integer
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount in minor units, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{name} must be {'>= 0' if allow_zero else '> 0'}, got {value}")
    return value


class OrderStatus(Enum):
    """Canonical order status."""
    PENDING_COMMIT = "pending_commit"     # Paid, waiting for the seller
    COMMITTED = "committed"               # Seller accepted the sale
    COURIER_SCHEDULED = "courier_scheduled"
    COLLECTED = "collected"
    DELIVERED = "delivered"
    DECLINED_BY_SELLER = "declined_by_seller"
    CANCELLED_BY_BUYER = "cancelled_by_buyer"
    COLLECTION_TIMEOUT = "collection_timeout"
    CANCELLED_BY_SELLER_AFTER_MISSED_PICKUP = "cancelled_by_seller_after_missed_pickup"


class DeliveryMethod(Enum):
    """Fulfillment path chosen by the seller at commit time."""
    HOME = "home"          # Courier collects from the seller's address
    LOCKER = "locker"      # Seller drops the parcel at a locker


class ShipmentStatus(Enum):
    """Courier scheduling sub-state of a committed order."""
    NOT_REQUESTED = "not_requested"
    IN_PROGRESS = "in_progress"
    SCHEDULED = "scheduled"
    SCHEDULING_FAILED = "scheduling_failed"


class RefundStatus(Enum):
    """Refund progress for an order / payment reference."""
    NONE = "none"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PayoutStatus(Enum):
    """Seller payout progress for an order paid through the platform balance."""
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class RefundReason(Enum):
    """Reason code recorded with every refund attempt."""
    BUYER_CANCEL = "buyer_cancel"
    SELLER_DECLINE = "seller_decline"
    EXPIRY = "expiry"
    DISPUTE = "dispute"


@dataclass
class Address:
    """Postal address used for pickups and deliveries."""
    name: str
    street: str
    city: str
    postal_code: str
    province: str = ""
    suburb: str = ""
    phone: str = ""
    email: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "street": self.street,
            "city": self.city,
            "postal_code": self.postal_code,
            "province": self.province,
            "suburb": self.suburb,
            "phone": self.phone,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Address"]:
        if not data:
            return None
        return cls(
            name=data.get("name", ""),
            street=data.get("street", ""),
            city=data.get("city", ""),
            postal_code=data.get("postal_code", ""),
            province=data.get("province", ""),
            suburb=data.get("suburb", ""),
            phone=data.get("phone", ""),
            email=data.get("email", ""),
        )


@dataclass
class Parcel:
    """Physical parcel description sent to couriers."""
    weight_grams: int
    length_cm: int = 25
    width_cm: int = 20
    height_cm: int = 5
    declared_value: int = 0          # Minor units
    description: str = ""

    def __post_init__(self):
        if isinstance(self.weight_grams, bool) or not isinstance(self.weight_grams, int) \
                or self.weight_grams <= 0:
            raise ValidationError(f"weight_grams must be a positive integer, got {self.weight_grams!r}")
        require_minor_units("declared_value", self.declared_value)

    @property
    def weight_kg(self) -> float:
        return self.weight_grams / 1000


@dataclass
class DeliveryQuote:
    """
    Delivery price offered by one courier service.

    Ephemeral: only the selected quote is ever persisted (as courier_id and
    the order's delivery fee).
    """
    courier_id: str
    service_code: str
    price: int                       # Minor units
    estimated_days: int
    is_fallback: bool = False

    def __post_init__(self):
        require_minor_units("price", self.price)

    @property
    def sort_key(self):
        """Lowest price first, fewer estimated days breaks ties."""
        return (self.price, self.estimated_days)


@dataclass(frozen=True)
class SettlementSplit:
    """Division of an order's money between platform, seller and courier."""
    platform_fee: int
    seller_amount: int
    delivery_fee: int

    @property
    def subtotal(self) -> int:
        return self.platform_fee + self.seller_amount

    @property
    def total(self) -> int:
        return self.subtotal + self.delivery_fee


@dataclass
class CartLine:
    """One purchasable item in a buyer's cart."""
    item_id: str
    seller_id: str
    price: int                       # Unit price, minor units
    quantity: int = 1
    title: str = ""
    weight_grams: int = 500          # Per unit

    def __post_init__(self):
        require_minor_units("price", self.price)
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity < 1:
            raise ValidationError(f"quantity must be a positive integer, got {self.quantity!r}")

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


@dataclass
class SplitShare:
    """Flat share of a payment routed to one seller's payout account."""
    seller_id: str
    subaccount: str
    share: int                       # Minor units


@dataclass
class PaymentSplit:
    """Per-seller routing of a payment. The platform keeps the remainder."""
    shares: List[SplitShare] = field(default_factory=list)
    platform_amount: int = 0

    @property
    def seller_total(self) -> int:
        return sum(s.share for s in self.shares)


@dataclass
class Reservation:
    """Item-level hold created at checkout initiation."""
    item_id: str
    reserved_by: str
    reserved_until: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.reserved_until <= (now or utcnow())


@dataclass
class ShipmentRequest:
    """Everything a courier needs to create a pickup or locker drop-off."""
    order_id: str
    courier_id: str
    service_code: str
    pickup_address: Optional[Address]
    delivery_address: Optional[Address]
    parcel: Parcel
    delivery_method: DeliveryMethod = DeliveryMethod.HOME
    locker_id: Optional[str] = None


@dataclass
class Shipment:
    """Courier booking returned by create_shipment."""
    courier_id: str
    tracking_reference: str
    label_url: Optional[str] = None
    dropoff_code: Optional[str] = None   # Locker drop-off QR / PIN
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingEvent:
    """Single courier tracking event."""
    status: str
    description: str = ""
    location: str = ""
    occurred_at: Optional[datetime] = None


@dataclass
class PaymentInitialization:
    """Result of initializing a payment with the processor."""
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass
class PaymentVerification:
    """Processor view of a payment reference."""
    reference: str
    status: str                      # "success", "failed", "abandoned", ...
    amount: int = 0
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return self.status == "success"

    @property
    def metadata(self) -> Dict[str, Any]:
        """Metadata attached at initialization (processors may echo it as a JSON string)."""
        metadata = self.raw_data.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                return {}
        return metadata if isinstance(metadata, dict) else {}


@dataclass
class RefundResult:
    """Processor response to a refund request."""
    refund_id: str
    status: str                      # "pending", "processed", ...


@dataclass
class TransferResult:
    """Processor response to a balance transfer (seller payout)."""
    transfer_id: str
    reference: str
    status: str                      # "pending", "success", "failed", ...


@dataclass
class RefundRecord:
    """
    Refund ledger entry.

    The ledger is keyed by refund_key, which is the payment_reference when
    the payment backs a single order and "<payment_reference>:<order_id>"
    when one payment backs several orders (multi-seller checkout).
    """
    payment_reference: str
    order_id: str
    amount: int
    reason: RefundReason
    status: RefundStatus = RefundStatus.PENDING
    refund_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    refund_key: Optional[str] = None

    def __post_init__(self):
        require_minor_units("amount", self.amount)
        if not self.refund_key:
            self.refund_key = self.payment_reference
        if isinstance(self.reason, str):
            self.reason = RefundReason(self.reason)
        if isinstance(self.status, str):
            self.status = RefundStatus(self.status)


@dataclass
class PayoutRecord:
    """
    Payout ledger entry, at most one per order.

    reference is sent to the processor as the transfer reference so a
    repeated transfer for the same order is refused upstream too.
    """
    order_id: str
    seller_id: str
    recipient: str
    amount: int
    reference: str
    status: PayoutStatus = PayoutStatus.PENDING
    transfer_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        require_minor_units("amount", self.amount)
        if isinstance(self.status, str):
            self.status = PayoutStatus(self.status)


@dataclass
class Order:
    """
    Marketplace order, one per (payment, seller).

    Invariants checked on every construction (including dataclasses.replace):
    - total_amount == subtotal + delivery_fee
    - refund_amount <= total_amount
    """
    # Identifiers
    order_id: str
    buyer_id: str
    seller_id: str
    items: List[str]                 # Item ids

    # Money (minor units)
    subtotal: int
    delivery_fee: int
    total_amount: int

    # Lifecycle
    status: OrderStatus = OrderStatus.PENDING_COMMIT
    payment_reference: Optional[str] = None
    payment_shared: bool = False     # One payment backs several orders

    # Parties
    buyer_email: str = ""
    seller_email: str = ""
    seller_subaccount: Optional[str] = None
    payout_recipient: Optional[str] = None
    pickup_address: Optional[Address] = None
    delivery_address: Optional[Address] = None
    weight_grams: int = 500

    # Fulfillment
    delivery_method: Optional[DeliveryMethod] = None
    locker_id: Optional[str] = None
    courier_id: Optional[str] = None
    tracking_reference: Optional[str] = None
    label_url: Optional[str] = None
    dropoff_code: Optional[str] = None
    shipment_status: ShipmentStatus = ShipmentStatus.NOT_REQUESTED
    shipment_attempts: int = 0
    decline_reason: Optional[str] = None

    # Refund
    refund_status: RefundStatus = RefundStatus.NONE
    refund_amount: int = 0

    # Payout (sellers without a split subaccount)
    payout_status: PayoutStatus = PayoutStatus.NONE

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    committed_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None

    def __post_init__(self):
        """Coerce enum fields and enforce money invariants."""
        if isinstance(self.status, str):
            self.status = OrderStatus(self.status)
        if isinstance(self.delivery_method, str):
            self.delivery_method = DeliveryMethod(self.delivery_method)
        if isinstance(self.shipment_status, str):
            self.shipment_status = ShipmentStatus(self.shipment_status)
        if isinstance(self.refund_status, str):
            self.refund_status = RefundStatus(self.refund_status)
        if isinstance(self.payout_status, str):
            self.payout_status = PayoutStatus(self.payout_status)

        require_minor_units("subtotal", self.subtotal)
        require_minor_units("delivery_fee", self.delivery_fee)
        require_minor_units("total_amount", self.total_amount)
        require_minor_units("refund_amount", self.refund_amount)

        if self.total_amount != self.subtotal + self.delivery_fee:
            raise ValidationError(
                f"total_amount {self.total_amount} != subtotal {self.subtotal} "
                f"+ delivery_fee {self.delivery_fee}"
            )
        if self.refund_amount > self.total_amount:
            raise ValidationError(
                f"refund_amount {self.refund_amount} exceeds total_amount {self.total_amount}"
            )

    def with_changes(self, **changes) -> "Order":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def parcel(self) -> Parcel:
        return Parcel(
            weight_grams=self.weight_grams,
            declared_value=self.subtotal,
            description=f"Order {self.order_id}"
        )

    @property
    def is_refunded(self) -> bool:
        return self.refund_status in (RefundStatus.PENDING, RefundStatus.PROCESSED)

    @property
    def refund_key(self) -> str:
        """Refund ledger key, fixed when the order is created."""
        if self.payment_shared:
            return f"{self.payment_reference}:{self.order_id}"
        return self.payment_reference or self.order_id
