"""
Courier Guy gateway implementation.

Supports home pickups and locker drop-offs.
"""

from typing import Any, Dict, List, Optional

import httpx

from .courier_gateway import HttpCourierGateway, to_minor_units
from .exceptions import UpstreamRejected
from .gateway_config import COURIER_GUY_CONFIG, ProviderConfig
from .models import Address, DeliveryMethod, DeliveryQuote, Parcel, Shipment, ShipmentRequest


def _address_payload(address: Address, address_type: str) -> Dict[str, Any]:
    return {
        "type": address_type,
        "company": address.name,
        "street_address": address.street,
        "local_area": address.suburb,
        "city": address.city,
        "zone": address.province,
        "country": "ZA",
        "code": address.postal_code,
        "contact": address.name,
        "phone": address.phone,
        "email": address.email,
    }


def _parcel_payload(parcel: Parcel) -> Dict[str, Any]:
    return {
        "submitted_length_cm": parcel.length_cm,
        "submitted_width_cm": parcel.width_cm,
        "submitted_height_cm": parcel.height_cm,
        "submitted_weight_kg": parcel.weight_kg,
        "parcel_description": parcel.description,
    }


class CourierGuyGateway(HttpCourierGateway):
    """Courier Guy REST API (v2)."""

    def __init__(
        self,
        api_key: str,
        sandbox: bool = False,
        config: ProviderConfig = COURIER_GUY_CONFIG,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(api_key, config, sandbox=sandbox, client=client)

    def _quote_payload(self, origin: Address, destination: Address, parcel: Parcel) -> Dict[str, Any]:
        return {
            "collection_address": _address_payload(origin, "business"),
            "delivery_address": _address_payload(destination, "residential"),
            "parcels": [_parcel_payload(parcel)],
            "declared_value": parcel.declared_value / 100,
        }

    def _parse_quotes(self, body: Dict[str, Any]) -> List[DeliveryQuote]:
        rates = body.get("data") or body.get("rates") or []
        return [
            DeliveryQuote(
                courier_id=self.courier_id,
                service_code=rate.get("service_type") or rate.get("service_level") or "standard",
                price=to_minor_units(rate.get("total_cost") or rate.get("cost") or 0),
                estimated_days=int(rate.get("estimated_delivery_days") or 2)
            )
            for rate in rates
        ]

    def _shipment_payload(self, request: ShipmentRequest) -> Dict[str, Any]:
        if request.delivery_address is None:
            raise UpstreamRejected("Shipment requires a delivery address", provider=self.courier_id)

        payload = {
            "delivery_address": _address_payload(request.delivery_address, "residential"),
            "parcels": [_parcel_payload(request.parcel)],
            "declared_value": request.parcel.declared_value / 100,
            "service_level": request.service_code,
            "custom_tracking_reference": request.order_id,
        }
        if request.delivery_method == DeliveryMethod.LOCKER:
            payload["collection_type"] = "locker"
            payload["locker_id"] = request.locker_id
        else:
            if request.pickup_address is None:
                raise UpstreamRejected("Home pickup requires a pickup address", provider=self.courier_id)
            payload["collection_type"] = "door"
            payload["collection_address"] = _address_payload(request.pickup_address, "business")
        return payload

    def _parse_shipment(self, body: Dict[str, Any]) -> Shipment:
        shipment = body.get("data") or body
        tracking_reference = shipment.get("waybill_number") or shipment.get("tracking_number")
        if not tracking_reference:
            raise UpstreamRejected("Courier Guy response missing waybill number", provider=self.courier_id)

        return Shipment(
            courier_id=self.courier_id,
            tracking_reference=str(tracking_reference),
            label_url=shipment.get("label_url") or shipment.get("waybill_url"),
            dropoff_code=shipment.get("locker_pin") or shipment.get("qr_code"),
            raw_data=shipment
        )
