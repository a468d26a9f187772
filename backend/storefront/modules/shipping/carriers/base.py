"""
Carrier-agnostic shipping types and the carrier client contract.

Every carrier client satisfies ShippingCarrierClient structurally; there is
no shared base class. Clients share the small helpers at the bottom of this
module (status checking, raw-response serialization) by calling them.
"""
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from storefront.core.exceptions import CarrierAPIError, CarrierResponseError
from storefront.models.carrier import CarrierCode
from storefront.models.shipment import ShipmentStatus

logger = logging.getLogger(__name__)

# Carrier error bodies are logged, truncated to this many characters
MAX_LOGGED_BODY = 500


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class Address:
    """Postal address in storefront layout."""
    address_line1: str
    city: str
    state: str
    postal_code: str
    country: str = "US"
    name: Optional[str] = None
    company: Optional[str] = None
    address_line2: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_residential: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Package:
    """Package dimensions and weight."""
    weight: float  # pounds
    length: Optional[float] = None  # inches
    width: Optional[float] = None  # inches
    height: Optional[float] = None  # inches
    insured_value: Optional[float] = None
    description: Optional[str] = None
    contents_type: Optional[str] = None  # merchandise, documents, gift, sample

    @property
    def has_dimensions(self) -> bool:
        return bool(self.length and self.width and self.height)


@dataclass
class ShipmentRequest:
    """Request to purchase a label."""
    carrier: CarrierCode
    service_code: str
    origin: Optional[Address]  # None: use the carrier config origin
    destination: Address
    packages: List[Package]
    reference_number: Optional[str] = None
    order_id: Optional[str] = None
    label_format: str = "PDF"  # PDF, PNG, ZPL
    signature_required: bool = False
    saturday_delivery: bool = False
    insurance_amount: Optional[float] = None
    is_return_label: bool = False
    pickup_account_number: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RateRequest:
    """Request for rate quotes."""
    origin: Address
    destination: Address
    packages: List[Package]
    carriers: Optional[List[CarrierCode]] = None
    service_types: Optional[List[str]] = None


@dataclass
class TrackingRequest:
    """Request for tracking details."""
    carrier: CarrierCode
    tracking_number: str


@dataclass
class ShippingRate:
    """Shipping rate quote."""
    carrier: CarrierCode
    service_code: str
    service_name: str
    rate: float
    currency: str = "USD"
    delivery_days: Optional[int] = None
    delivery_date: Optional[str] = None  # ISO date
    delivery_guarantee: bool = False
    billable_weight: Optional[float] = None
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["carrier"] = self.carrier.value
        return data


@dataclass
class Shipment:
    """Purchased label as returned by a carrier client."""
    carrier: CarrierCode
    service_code: str
    service_name: str
    tracking_number: str
    label_data: str  # base64
    label_format: str
    rate: float
    currency: str
    origin: Address
    destination: Address
    status: ShipmentStatus = ShipmentStatus.LABEL_CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    carrier_shipment_id: Optional[str] = None
    reference_number: Optional[str] = None
    label_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Opaque audit blob; kept out of repr and never parsed again
    raw_response: Optional[str] = field(default=None, repr=False)


@dataclass
class TrackingEvent:
    """A single tracking event."""
    timestamp: str
    status: str  # carrier-specific status
    description: str
    location: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrackingInfo:
    """Full tracking information, rebuilt on every poll."""
    carrier: CarrierCode
    tracking_number: str
    status: ShipmentStatus
    events: List[TrackingEvent] = field(default_factory=list)
    estimated_delivery_date: Optional[str] = None
    actual_delivery_date: Optional[str] = None
    delivery_signature: Optional[str] = None
    current_location: Optional[str] = None
    tracking_url: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_response: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier": self.carrier.value,
            "tracking_number": self.tracking_number,
            "status": self.status.value,
            "events": [event.to_dict() for event in self.events],
            "estimated_delivery_date": self.estimated_delivery_date,
            "actual_delivery_date": self.actual_delivery_date,
            "delivery_signature": self.delivery_signature,
            "current_location": self.current_location,
            "tracking_url": self.tracking_url,
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Carrier Client Contract
# =============================================================================

@runtime_checkable
class ShippingCarrierClient(Protocol):
    """Capability set every carrier client provides."""

    carrier_code: CarrierCode

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        ...

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        ...

    async def track_shipment(self, request: TrackingRequest) -> TrackingInfo:
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# Shared helpers
# =============================================================================

def ensure_success(response: httpx.Response, carrier: CarrierCode, message: str) -> None:
    """
    Raise CarrierAPIError with a generic message for non-2xx responses.

    The raw body is logged (truncated) and never placed on the exception.
    """
    if response.is_success:
        return
    logger.error(
        f"{carrier.value} API error {response.status_code}: "
        f"{response.text[:MAX_LOGGED_BODY]}"
    )
    raise CarrierAPIError(message, carrier=carrier.value, status_code=response.status_code)


def serialize_raw(data: Any) -> Optional[str]:
    """Turn a parsed or textual vendor response into the opaque audit string."""
    if data is None:
        return None
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        return data
    return json.dumps(data, default=str)


def first_present(*values: Any) -> Any:
    """Return the first value that is not None or empty."""
    for value in values:
        if value not in (None, "", [], {}):
            return value
    return None


def parse_json(response: httpx.Response, carrier: CarrierCode, message: str) -> Any:
    """Decode a JSON body, raising CarrierResponseError when it is not JSON."""
    try:
        return response.json()
    except ValueError:
        logger.error(f"{carrier.value} returned non-JSON body: {response.text[:MAX_LOGGED_BODY]}")
        raise CarrierResponseError(message, carrier=carrier.value)
