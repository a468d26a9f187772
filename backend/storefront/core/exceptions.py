"""
Storefront Exception Hierarchy

Structured exception classes for the shipping subsystem. All exceptions carry
code, message and details so routes can log the full context while returning
only the generic message to callers.

Exception Hierarchy:
    StorefrontError
    └── ShippingError
        ├── CarrierError
        │   ├── CarrierConfigurationError
        │   ├── CarrierAuthError
        │   ├── CarrierAPIError
        │   ├── CarrierResponseError
        │   └── UnsupportedOperationError
        ├── UnsupportedCarrierError
        ├── ShippingConfigError
        └── ShipmentNotFoundError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """
    Base exception for all storefront custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "STOREFRONT_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# SHIPPING ERRORS
# =============================================================================

class ShippingError(StorefrontError):
    """Base exception for shipping-related errors."""
    default_code = "SHIPPING_ERROR"
    default_severity = "P1"


class CarrierError(ShippingError):
    """Error raised by a carrier client. Carries the carrier code in details."""
    default_code = "CARRIER_ERROR"

    def __init__(self, message: str, carrier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if carrier:
            details.setdefault("carrier", carrier)
        super().__init__(message, details=details, **kwargs)
        self.carrier = carrier


class CarrierConfigurationError(CarrierError):
    """Required carrier credentials are missing."""
    default_code = "CARRIER_NOT_CONFIGURED"
    default_severity = "P1"


class CarrierAuthError(CarrierError):
    """Carrier rejected our credentials or returned no token."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P0"


class CarrierAPIError(CarrierError):
    """Carrier answered with a non-2xx status or the request never completed."""
    default_code = "CARRIER_API_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code


class CarrierResponseError(CarrierError):
    """Carrier answered 2xx but the body is missing required fields."""
    default_code = "CARRIER_INVALID_RESPONSE"


class UnsupportedOperationError(CarrierError):
    """Carrier client does not implement the requested operation."""
    default_code = "CARRIER_OPERATION_UNSUPPORTED"
    default_severity = "P3"


class UnsupportedCarrierError(ShippingError):
    """No client is registered for the requested carrier code."""
    default_code = "CARRIER_UNSUPPORTED"
    default_severity = "P3"


class ShippingConfigError(ShippingError):
    """Carrier is not configured or not active in the shipping config store."""
    default_code = "CARRIER_NOT_ACTIVE"
    default_severity = "P2"


class ShipmentNotFoundError(ShippingError):
    """Shipment record lookup failed."""
    default_code = "SHIPMENT_NOT_FOUND"
    default_severity = "P3"
