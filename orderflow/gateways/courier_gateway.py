"""
Abstract base classes for courier network operations.

Every courier satisfies the same contract (quote, create_shipment, track),
so the delivery orchestrator can fan out across interchangeable providers.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from .exceptions import UpstreamRejected, UpstreamUnavailable
from .gateway_config import ProviderConfig, is_transient_status
from .models import Address, DeliveryQuote, Parcel, Shipment, ShipmentRequest, TrackingEvent
from ..utils.logger import get_logger
from ..utils.retry import retry_on_transient_error


logger = get_logger(__name__)


def to_minor_units(value: Any) -> int:
    """Convert a major-unit price ("95.50", 95.5) to integer cents."""
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, tolerating a trailing Z."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class CourierGateway(ABC):
    """
    Abstract base class for courier operations.

    All courier implementations must inherit from this class and
    implement all abstract methods.
    """

    def __init__(self, courier_id: str, supports_lockers: bool = False):
        """
        Initialize the courier gateway.

        Args:
            courier_id: Stable identifier stored on orders
            supports_lockers: Whether locker drop-off codes can be issued
        """
        self.courier_id = courier_id
        self.supports_lockers = supports_lockers

    @abstractmethod
    async def quote(self, origin: Address, destination: Address, parcel: Parcel) -> List[DeliveryQuote]:
        """
        Get delivery prices for a parcel between two addresses.

        Args:
            origin: Seller pickup address
            destination: Buyer delivery address
            parcel: Parcel description

        Returns:
            One DeliveryQuote per available service

        Raises:
            UpstreamUnavailable: Timeout or 5xx
            UpstreamRejected: Route or parcel refused
        """
        pass

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        """
        Book a home pickup or issue a locker drop-off code.

        Args:
            request: Shipment details

        Returns:
            Shipment with tracking reference and label or drop-off code

        Raises:
            UpstreamUnavailable: Timeout or 5xx
            UpstreamRejected: Booking refused
        """
        pass

    @abstractmethod
    async def track(self, tracking_reference: str) -> List[TrackingEvent]:
        """
        Get tracking events for a shipment.

        Args:
            tracking_reference: Courier waybill / tracking number

        Returns:
            Tracking events, oldest first
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class HttpCourierGateway(CourierGateway):
    """
    Courier gateway backed by a JSON REST API.

    Subclasses provide the provider payload builders and response parsers;
    transport, authentication and error mapping live here.
    """

    def __init__(
        self,
        api_key: str,
        config: ProviderConfig,
        sandbox: bool = False,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize HTTP courier gateway.

        Args:
            api_key: Courier API key
            config: Endpoint configuration
            sandbox: Use the courier's sandbox environment
            client: Pre-built HTTP client (tests inject a mock transport)
        """
        super().__init__(config.name, supports_lockers=config.supports_lockers)
        self.api_key = api_key
        self.config = config
        self.sandbox = sandbox
        self.base_url = config.sandbox_url if sandbox else config.base_url

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=config.timeout_seconds
        )
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        logger.info(
            "Courier gateway initialized",
            courier_id=self.courier_id,
            sandbox=sandbox,
            base_url=self.base_url
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a request and map failures onto the upstream error taxonomy.

        Raises:
            UpstreamUnavailable: Timeout, transport error, 5xx or 429
            UpstreamRejected: Other 4xx or unreadable body
        """
        try:
            response = await self._client.request(method, path, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"{self.courier_id} timeout on {path}: {e}", provider=self.courier_id)
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"{self.courier_id} unreachable: {e}", provider=self.courier_id)

        if is_transient_status(response.status_code):
            raise UpstreamUnavailable(
                f"{self.courier_id} returned {response.status_code} on {path}",
                provider=self.courier_id,
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            raise UpstreamRejected(
                f"{self.courier_id} returned a non-JSON body on {path}",
                provider=self.courier_id,
                status_code=response.status_code
            )

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            raise UpstreamRejected(
                message or f"{self.courier_id} rejected {path}",
                provider=self.courier_id,
                status_code=response.status_code
            )

        return body

    async def quote(self, origin: Address, destination: Address, parcel: Parcel) -> List[DeliveryQuote]:
        body = await self._request("POST", self.config.quote_path, self._quote_payload(origin, destination, parcel))
        quotes = self._parse_quotes(body)
        logger.debug("Courier quotes received", courier_id=self.courier_id, count=len(quotes))
        return quotes

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        body = await self._request("POST", self.config.shipment_path, self._shipment_payload(request))
        shipment = self._parse_shipment(body)
        logger.info(
            "Courier shipment created",
            courier_id=self.courier_id,
            order_id=request.order_id,
            tracking_reference=shipment.tracking_reference
        )
        return shipment

    @retry_on_transient_error(max_attempts=2, backoff_base=2)
    async def track(self, tracking_reference: str) -> List[TrackingEvent]:
        path = self.config.track_path.format(tracking_reference=tracking_reference)
        body = await self._request("GET", path)
        return self._parse_tracking(body)

    @abstractmethod
    def _quote_payload(self, origin: Address, destination: Address, parcel: Parcel) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _parse_quotes(self, body: Dict[str, Any]) -> List[DeliveryQuote]:
        pass

    @abstractmethod
    def _shipment_payload(self, request: ShipmentRequest) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _parse_shipment(self, body: Dict[str, Any]) -> Shipment:
        pass

    def _parse_tracking(self, body: Dict[str, Any]) -> List[TrackingEvent]:
        tracking = body.get("data") or body
        events = tracking.get("events") or tracking.get("tracking_events") or []
        return [
            TrackingEvent(
                status=event.get("status", "unknown"),
                description=event.get("description", ""),
                location=event.get("location", ""),
                occurred_at=parse_timestamp(event.get("timestamp") or event.get("date"))
            )
            for event in events
        ]
