"""
Delivery - courier quote selection and shipment automation.
"""

from .orchestrator import DeliveryOrchestrator, FallbackQuote, ShipmentOutcome

__all__ = [
    "DeliveryOrchestrator",
    "FallbackQuote",
    "ShipmentOutcome"
]
