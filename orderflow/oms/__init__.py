"""
Order Management System (OMS) module.

Provides the order state machine, persistence, commit/refund coordination
and fulfillment actions. Modules that depend on orderflow.config
(checkout, expiry_sweeper, webhooks) are imported from their own modules.
"""

from .repository import InMemoryOrderRepository, OrderRepository
from .results import CheckoutResult, CommitResult, OperationResult, PayoutOutcome, RefundOutcome
from .state_machine import OrderStateMachine, TransitionOutcome
from .refund_coordinator import RefundCoordinator
from .payout_coordinator import PayoutCoordinator
from .commit_coordinator import CommitCoordinator
from .fulfillment import FulfillmentCoordinator

__all__ = [
    "CheckoutResult",
    "CommitCoordinator",
    "CommitResult",
    "FulfillmentCoordinator",
    "InMemoryOrderRepository",
    "OperationResult",
    "OrderRepository",
    "OrderStateMachine",
    "PayoutCoordinator",
    "PayoutOutcome",
    "RefundCoordinator",
    "RefundOutcome",
    "TransitionOutcome",
]
