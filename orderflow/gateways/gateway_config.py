"""
Provider-specific configurations for payment and courier collaborators.

This module contains provider-specific settings such as:
- API endpoints (production and sandbox)
- Default timeouts
- HTTP status classification (transient statuses)
"""

from dataclasses import dataclass
from enum import Enum


class CourierType(Enum):
    """Supported courier networks."""
    COURIER_GUY = "courier-guy"
    FASTWAY = "fastway"
    SANDBOX = "sandbox"


@dataclass
class ProviderConfig:
    """
    Configuration for one external HTTP collaborator.

    Encapsulates provider-specific endpoints so adding a courier does not
    touch the orchestration logic.
    """
    name: str

    # Endpoints
    base_url: str
    sandbox_url: str

    # Paths
    quote_path: str = ""
    shipment_path: str = ""
    track_path: str = ""

    # Timeouts
    timeout_seconds: float = 10.0

    # Features
    supports_lockers: bool = False


# ============================================================================
# PAYSTACK CONFIGURATION
# ============================================================================

PAYSTACK_CONFIG = ProviderConfig(
    name="paystack",
    base_url="https://api.paystack.co",
    sandbox_url="https://api.paystack.co",   # Test mode is selected by key prefix
    timeout_seconds=15.0
)


# ============================================================================
# COURIER CONFIGURATIONS
# ============================================================================

COURIER_GUY_CONFIG = ProviderConfig(
    name=CourierType.COURIER_GUY.value,
    base_url="https://api.courierguy.co.za",
    sandbox_url="https://sandbox.courierguy.co.za",
    quote_path="/v2/quotes",
    shipment_path="/v2/shipments",
    track_path="/v2/track/{tracking_reference}",
    timeout_seconds=10.0,
    supports_lockers=True
)

FASTWAY_CONFIG = ProviderConfig(
    name=CourierType.FASTWAY.value,
    base_url="https://api.fastway.co.za",
    sandbox_url="https://sandbox.fastway.co.za",
    quote_path="/v4/pudo/quotes",
    shipment_path="/v4/shipments",
    track_path="/v4/track/{tracking_reference}",
    timeout_seconds=10.0,
    supports_lockers=False
)


# ============================================================================
# HTTP STATUS CLASSIFICATION
# ============================================================================

# Statuses that should trigger retry (transient)
TRANSIENT_STATUS_CODES = {
    408,  # Request timeout
    425,  # Too early
    429,  # Too many requests
    500,  # Internal server error
    502,  # Bad gateway
    503,  # Service unavailable
    504,  # Gateway timeout
}


def is_transient_status(status_code: int) -> bool:
    """
    Check if an HTTP status represents a transient (retryable) error.

    Args:
        status_code: HTTP status code

    Returns:
        True if the error is transient and may be retried
    """
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500
