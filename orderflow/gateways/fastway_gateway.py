"""
Fastway gateway implementation.

Home pickups only; Fastway does not issue locker drop-off codes.
"""

from typing import Any, Dict, List, Optional

import httpx

from .courier_gateway import HttpCourierGateway, to_minor_units
from .exceptions import UpstreamRejected
from .gateway_config import FASTWAY_CONFIG, ProviderConfig
from .models import Address, DeliveryMethod, DeliveryQuote, Parcel, Shipment, ShipmentRequest


class FastwayGateway(HttpCourierGateway):
    """Fastway REST API (v4)."""

    def __init__(
        self,
        api_key: str,
        sandbox: bool = False,
        config: ProviderConfig = FASTWAY_CONFIG,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(api_key, config, sandbox=sandbox, client=client)

    def _quote_payload(self, origin: Address, destination: Address, parcel: Parcel) -> Dict[str, Any]:
        return {
            "pickup_country": "ZA",
            "pickup_postcode": origin.postal_code,
            "delivery_country": "ZA",
            "delivery_postcode": destination.postal_code,
            "weight_kg": parcel.weight_kg,
            "length_cm": parcel.length_cm,
            "width_cm": parcel.width_cm,
            "height_cm": parcel.height_cm,
            "declared_value": parcel.declared_value / 100,
        }

    def _parse_quotes(self, body: Dict[str, Any]) -> List[DeliveryQuote]:
        quotes = body.get("quotes") or body.get("data") or []
        return [
            DeliveryQuote(
                courier_id=self.courier_id,
                service_code=quote.get("service_name") or quote.get("service") or "standard",
                price=to_minor_units(quote.get("price") or quote.get("total") or 0),
                estimated_days=int(quote.get("estimated_days") or quote.get("transit_days") or 3)
            )
            for quote in quotes
        ]

    def _shipment_payload(self, request: ShipmentRequest) -> Dict[str, Any]:
        if request.delivery_method == DeliveryMethod.LOCKER:
            raise UpstreamRejected("Fastway does not support locker drop-off", provider=self.courier_id)
        if request.pickup_address is None or request.delivery_address is None:
            raise UpstreamRejected("Shipment requires pickup and delivery addresses", provider=self.courier_id)

        return {
            "reference": request.order_id,
            "service": request.service_code,
            "pickup": {
                "contact_name": request.pickup_address.name,
                "address_line": request.pickup_address.street,
                "suburb": request.pickup_address.suburb,
                "city": request.pickup_address.city,
                "postcode": request.pickup_address.postal_code,
                "phone": request.pickup_address.phone,
            },
            "delivery": {
                "contact_name": request.delivery_address.name,
                "address_line": request.delivery_address.street,
                "suburb": request.delivery_address.suburb,
                "city": request.delivery_address.city,
                "postcode": request.delivery_address.postal_code,
                "phone": request.delivery_address.phone,
            },
            "weight_kg": request.parcel.weight_kg,
        }

    def _parse_shipment(self, body: Dict[str, Any]) -> Shipment:
        shipment = body.get("data") or body
        tracking_reference = (
            shipment.get("waybill_number")
            or shipment.get("tracking_number")
            or shipment.get("consignment_number")
        )
        if not tracking_reference:
            raise UpstreamRejected("Fastway response missing tracking number", provider=self.courier_id)

        return Shipment(
            courier_id=self.courier_id,
            tracking_reference=str(tracking_reference),
            label_url=shipment.get("label_url"),
            raw_data=shipment
        )
