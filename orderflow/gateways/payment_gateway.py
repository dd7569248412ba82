"""
Abstract base class for payment processor operations.

This module defines the interface the orchestrator uses to authorize,
verify and refund payments and to pay sellers out of the platform balance.
Implementations map provider payloads to the normalized models in models.py.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .models import PaymentInitialization, PaymentSplit, PaymentVerification, RefundResult, TransferResult


class PaymentGateway(ABC):
    """
    Abstract base class for payment processor operations.

    All payment implementations must inherit from this class and
    implement all abstract methods.
    """

    name = "payment"

    def __init__(self, secret_key: str, sandbox: bool = False):
        """
        Initialize the payment gateway.

        Args:
            secret_key: Processor secret key
            sandbox: Use the processor's test environment
        """
        self.secret_key = secret_key
        self.sandbox = sandbox

    @abstractmethod
    async def initialize(
        self,
        amount: int,
        email: str,
        split: Optional[PaymentSplit] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PaymentInitialization:
        """
        Start a payment the buyer completes on the processor's page.

        Args:
            amount: Total charge in minor units
            email: Buyer email
            split: Per-seller routing of the proceeds
            reference: Caller-chosen reference (processor generates one if None)
            metadata: Opaque data echoed back in webhooks

        Returns:
            PaymentInitialization with reference and authorization URL

        Raises:
            UpstreamUnavailable: Timeout or 5xx
            UpstreamRejected: Request refused by the processor
        """
        pass

    @abstractmethod
    async def verify(self, reference: str) -> PaymentVerification:
        """
        Fetch the processor's view of a payment.

        Args:
            reference: Payment reference

        Returns:
            PaymentVerification

        Raises:
            UpstreamUnavailable: Timeout or 5xx
            UpstreamRejected: Unknown reference
        """
        pass

    @abstractmethod
    async def refund(self, reference: str, amount: Optional[int] = None) -> RefundResult:
        """
        Refund a captured payment, fully or partially.

        Not idempotent on the processor side: callers must deduplicate.

        Args:
            reference: Payment reference
            amount: Partial amount in minor units (None refunds everything)

        Returns:
            RefundResult with processor refund id and status

        Raises:
            UpstreamUnavailable: Timeout or 5xx
            UpstreamRejected: Refund refused
        """
        pass

    @abstractmethod
    async def transfer(self, recipient: str, amount: int, reference: str, reason: str = "") -> TransferResult:
        """
        Pay a seller from the platform balance.

        Used for sellers whose share was not routed by the payment split.

        Args:
            recipient: Processor transfer recipient code
            amount: Amount in minor units
            reference: Caller-chosen unique reference (one per payout)
            reason: Narration shown to the recipient

        Returns:
            TransferResult with processor transfer id and status

        Raises:
            UpstreamUnavailable: Timeout or 5xx
            UpstreamRejected: Transfer refused (duplicate reference, balance)
        """
        pass

    @abstractmethod
    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """
        Check that a webhook body was signed by the processor.

        Args:
            body: Raw request body
            signature: Signature header value

        Returns:
            True if the signature matches
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
