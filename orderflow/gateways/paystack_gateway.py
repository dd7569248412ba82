"""
Paystack payment gateway implementation.

This module implements the PaymentGateway interface for Paystack, converting
Paystack responses to the normalized payment models.
"""

import hashlib
import hmac
from typing import Any, Dict, Optional

import httpx

from .payment_gateway import PaymentGateway
from .exceptions import UpstreamRejected, UpstreamUnavailable
from .gateway_config import PAYSTACK_CONFIG, ProviderConfig, is_transient_status
from .models import PaymentInitialization, PaymentSplit, PaymentVerification, RefundResult, TransferResult
from ..utils.logger import get_logger
from ..utils.retry import retry_on_transient_error


logger = get_logger(__name__)


class PaystackGateway(PaymentGateway):
    """
    Paystack-specific implementation of PaymentGateway.

    Amounts are sent as-is: Paystack expects minor units (kobo / cents),
    which is what the order model stores.
    """

    name = "paystack"

    def __init__(
        self,
        secret_key: str,
        sandbox: bool = False,
        currency: str = "ZAR",
        config: ProviderConfig = PAYSTACK_CONFIG,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Paystack gateway.

        Args:
            secret_key: Paystack secret key (sk_live_... or sk_test_...)
            sandbox: Use test mode
            currency: ISO currency code for charges and refunds
            config: Endpoint configuration
            client: Pre-built HTTP client (tests inject a mock transport)
        """
        super().__init__(secret_key, sandbox)
        self.currency = currency
        self.config = config
        self.base_url = config.sandbox_url if sandbox else config.base_url

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=config.timeout_seconds
        )
        self._headers = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }

        logger.info(
            "Paystack gateway initialized",
            sandbox=sandbox,
            base_url=self.base_url
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a request and unwrap Paystack's {status, message, data} envelope.

        Raises:
            UpstreamUnavailable: Timeout, transport error, 5xx or 429
            UpstreamRejected: Other 4xx or status=false
        """
        try:
            response = await self._client.request(method, path, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.warning("Paystack request timed out", path=path, error=str(e))
            raise UpstreamUnavailable(f"Paystack timeout on {path}", provider=self.name)
        except httpx.TransportError as e:
            logger.warning("Paystack transport error", path=path, error=str(e))
            raise UpstreamUnavailable(f"Paystack unreachable: {e}", provider=self.name)

        if is_transient_status(response.status_code):
            logger.warning("Paystack transient error", path=path, status_code=response.status_code)
            raise UpstreamUnavailable(
                f"Paystack returned {response.status_code} on {path}",
                provider=self.name,
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            raise UpstreamRejected(
                f"Paystack returned a non-JSON body on {path}",
                provider=self.name,
                status_code=response.status_code
            )

        if response.status_code >= 400 or not body.get("status"):
            logger.error(
                "Paystack rejected request",
                path=path,
                status_code=response.status_code,
                message=body.get("message")
            )
            raise UpstreamRejected(
                body.get("message") or f"Paystack rejected {path}",
                provider=self.name,
                status_code=response.status_code
            )

        return body.get("data") or {}

    async def initialize(
        self,
        amount: int,
        email: str,
        split: Optional[PaymentSplit] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PaymentInitialization:
        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount,
            "currency": self.currency,
        }
        if reference:
            payload["reference"] = reference
        if metadata:
            payload["metadata"] = metadata
        if split and split.shares:
            payload["split"] = {
                "type": "flat",
                "bearer_type": "account",
                "subaccounts": [
                    {"subaccount": share.subaccount, "share": share.share}
                    for share in split.shares
                ],
            }

        data = await self._request("POST", "/transaction/initialize", payload)

        logger.info(
            "Paystack payment initialized",
            reference=data.get("reference"),
            amount=amount,
            split_count=len(split.shares) if split else 0
        )

        return PaymentInitialization(
            reference=data["reference"],
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code")
        )

    @retry_on_transient_error(max_attempts=3, backoff_base=2)
    async def verify(self, reference: str) -> PaymentVerification:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return PaymentVerification(
            reference=data.get("reference", reference),
            status=data.get("status", "unknown"),
            amount=int(data.get("amount") or 0),
            raw_data=data
        )

    async def refund(self, reference: str, amount: Optional[int] = None) -> RefundResult:
        payload: Dict[str, Any] = {
            "transaction": reference,
            "currency": self.currency,
        }
        if amount is not None:
            payload["amount"] = amount

        data = await self._request("POST", "/refund", payload)

        logger.info(
            "Paystack refund requested",
            reference=reference,
            amount=amount,
            refund_id=data.get("id"),
            status=data.get("status")
        )

        return RefundResult(
            refund_id=str(data.get("id")),
            status=data.get("status", "pending")
        )

    async def transfer(self, recipient: str, amount: int, reference: str, reason: str = "") -> TransferResult:
        payload: Dict[str, Any] = {
            "source": "balance",
            "amount": amount,
            "recipient": recipient,
            "reference": reference,
            "currency": self.currency,
        }
        if reason:
            payload["reason"] = reason

        data = await self._request("POST", "/transfer", payload)

        logger.info(
            "Paystack transfer queued",
            reference=reference,
            amount=amount,
            transfer_code=data.get("transfer_code"),
            status=data.get("status")
        )

        return TransferResult(
            transfer_id=str(data.get("transfer_code") or data.get("id")),
            reference=data.get("reference", reference),
            status=data.get("status", "pending")
        )

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        if not signature:
            return False
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)
