"""
Order lifecycle exception classes and error categories.
"""

from enum import Enum


class ErrorCategory(Enum):
    """Machine-readable failure category returned by mutating operations."""
    VALIDATION = "validation"
    INVALID_TRANSITION = "invalid_transition"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_REJECTED = "upstream_rejected"
    DATA_INTEGRITY = "data_integrity"
    PARTIAL_SUCCESS = "partial_success"

    @property
    def retryable(self) -> bool:
        """True when the caller should retry later rather than escalate."""
        return self in (
            ErrorCategory.UPSTREAM_UNAVAILABLE,
            ErrorCategory.PARTIAL_SUCCESS
        )


class OrderflowError(Exception):
    """Base exception for all order lifecycle errors."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(OrderflowError):
    """Bad input. Raised before any side effect happens."""
    category = ErrorCategory.VALIDATION


class OrderNotFound(ValidationError):
    """Exception raised when an order id does not resolve."""
    pass


class ConfigurationError(ValidationError):
    """Exception raised for missing or inconsistent configuration."""
    pass


class InvalidStateTransition(OrderflowError):
    """Exception raised for invalid state machine transitions."""

    category = ErrorCategory.INVALID_TRANSITION

    def __init__(self, message: str, current_status=None, target_status=None):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(message)


class UpstreamError(OrderflowError):
    """Exception raised when a payment, courier or notification call fails."""

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class UpstreamUnavailable(UpstreamError):
    """Temporary upstream failure that can be retried (5xx, 429, timeouts)."""
    category = ErrorCategory.UPSTREAM_UNAVAILABLE


class UpstreamRejected(UpstreamError):
    """Permanent upstream failure that should not be retried (4xx)."""
    category = ErrorCategory.UPSTREAM_REJECTED


class DataIntegrityError(OrderflowError):
    """Unexpected persistence failure or broken invariant. Always fatal."""
    category = ErrorCategory.DATA_INTEGRITY
