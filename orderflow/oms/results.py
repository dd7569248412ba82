"""
Structured results returned by every mutating order operation.

Callers branch on success and category instead of parsing messages:
category.retryable separates "retry later" from "needs manual attention".
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..gateways.exceptions import ErrorCategory, OrderflowError
from ..gateways.models import Order, PayoutRecord, RefundRecord


@dataclass
class OperationResult:
    """Outcome of a mutating operation."""
    success: bool
    category: Optional[ErrorCategory] = None
    message: str = ""
    order: Optional[Order] = None
    partial: bool = False

    @property
    def retryable(self) -> bool:
        return self.category is not None and self.category.retryable

    @classmethod
    def ok(cls, order: Optional[Order] = None, message: str = "", **kwargs):
        return cls(success=True, order=order, message=message, **kwargs)

    @classmethod
    def failure(cls, error: OrderflowError, order: Optional[Order] = None, **kwargs):
        return cls(success=False, category=error.category, message=error.message, order=order, **kwargs)


@dataclass
class CommitResult(OperationResult):
    """
    Seller commit outcome.

    partial=True (category PARTIAL_SUCCESS) means the order is committed but
    courier scheduling failed and will be retried in the background.
    """
    shipment_error: Optional[str] = None


@dataclass
class RefundOutcome(OperationResult):
    """Refund attempt outcome. issued is True only when the processor was called successfully."""
    refund: Optional[RefundRecord] = None
    issued: bool = False
    already_refunded: bool = False


@dataclass
class PayoutOutcome(OperationResult):
    """Seller payout outcome. paid is True only when the transfer was accepted."""
    payout: Optional[PayoutRecord] = None
    paid: bool = False
    already_paid: bool = False


@dataclass
class CheckoutResult(OperationResult):
    """Checkout initiation / completion outcome."""
    session: Optional[Any] = None
    orders: List[Order] = field(default_factory=list)
