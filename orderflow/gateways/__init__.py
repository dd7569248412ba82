"""
External collaborator gateways: payment, couriers, notifications.

Concrete HTTP adapters are imported from their own modules
(e.g. orderflow.gateways.paystack_gateway) to keep this package import light.
"""

from .exceptions import (
    ErrorCategory,
    OrderflowError,
    ValidationError,
    OrderNotFound,
    ConfigurationError,
    InvalidStateTransition,
    UpstreamError,
    UpstreamUnavailable,
    UpstreamRejected,
    DataIntegrityError
)
from .models import (
    Address,
    CartLine,
    DeliveryMethod,
    DeliveryQuote,
    Order,
    OrderStatus,
    Parcel,
    PaymentInitialization,
    PaymentSplit,
    PaymentVerification,
    PayoutRecord,
    PayoutStatus,
    RefundReason,
    RefundRecord,
    RefundResult,
    RefundStatus,
    Reservation,
    SettlementSplit,
    Shipment,
    ShipmentRequest,
    ShipmentStatus,
    SplitShare,
    TrackingEvent,
    TransferResult
)

__all__ = [
    # Exceptions
    "ErrorCategory",
    "OrderflowError",
    "ValidationError",
    "OrderNotFound",
    "ConfigurationError",
    "InvalidStateTransition",
    "UpstreamError",
    "UpstreamUnavailable",
    "UpstreamRejected",
    "DataIntegrityError",

    # Data models
    "Address",
    "CartLine",
    "DeliveryMethod",
    "DeliveryQuote",
    "Order",
    "OrderStatus",
    "Parcel",
    "PaymentInitialization",
    "PaymentSplit",
    "PaymentVerification",
    "PayoutRecord",
    "PayoutStatus",
    "RefundReason",
    "RefundRecord",
    "RefundResult",
    "RefundStatus",
    "Reservation",
    "SettlementSplit",
    "Shipment",
    "ShipmentRequest",
    "ShipmentStatus",
    "SplitShare",
    "TrackingEvent",
    "TransferResult"
]
