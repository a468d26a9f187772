"""
Shipping Schemas

Pydantic models for the public rate/tracking endpoints and the admin
label/config endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator
import re

from storefront.models.carrier import CarrierCode
from storefront.modules.shipping.carriers.base import (
    Address,
    Package,
    RateRequest,
    ShipmentRequest,
)

US_ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")


# ==================== Address / Package Schemas ====================


class AddressIn(BaseModel):
    """Postal address."""
    name: Optional[str] = Field(None, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    address_line1: str = Field(..., min_length=1, max_length=100)
    address_line2: Optional[str] = Field(None, max_length=100)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field(..., min_length=3, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=100)
    is_residential: bool = False

    @field_validator("country")
    @classmethod
    def validate_country(cls, v):
        return v.upper()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v:
            digits = re.sub(r'\D', '', v)
            if len(digits) < 10 or len(digits) > 15:
                raise ValueError("Phone number must be 10-15 digits")
        return v

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class PackageIn(BaseModel):
    """Package details. Weight in pounds, dimensions in inches."""
    weight: float = Field(..., gt=0, le=150, description="Weight in LBS")
    length: Optional[float] = Field(None, gt=0, le=108, description="Length in inches")
    width: Optional[float] = Field(None, gt=0, le=108, description="Width in inches")
    height: Optional[float] = Field(None, gt=0, le=108, description="Height in inches")
    insured_value: Optional[float] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=100)
    contents_type: Optional[str] = Field(None, pattern="^(merchandise|documents|gift|sample)$")

    def to_package(self) -> Package:
        return Package(**self.model_dump())


# ==================== Rate Schemas ====================


class RateQuoteRequest(BaseModel):
    """Request rates from active carriers."""
    origin: AddressIn
    destination: AddressIn
    packages: List[PackageIn] = Field(..., min_length=1, max_length=10)
    carriers: Optional[List[CarrierCode]] = None
    service_types: Optional[List[str]] = None

    @model_validator(mode="after")
    def validate_destination_zip(self):
        if self.destination.country == "US" and not US_ZIP_RE.match(self.destination.postal_code):
            raise ValueError("Invalid postal code format")
        return self

    def to_rate_request(self) -> RateRequest:
        return RateRequest(
            origin=self.origin.to_address(),
            destination=self.destination.to_address(),
            packages=[p.to_package() for p in self.packages],
            carriers=self.carriers,
            service_types=self.service_types,
        )


class RateOut(BaseModel):
    """A single shipping rate option."""
    carrier: str
    service_code: str
    service_name: str
    rate: float
    currency: str
    delivery_days: Optional[int] = None
    delivery_date: Optional[str] = None
    delivery_guarantee: bool = False
    billable_weight: Optional[float] = None
    is_fallback: bool = False


class RateErrorOut(BaseModel):
    carrier: str
    error: str


class RateQuoteResponse(BaseModel):
    """Combined rates, cheapest first, and carriers that failed."""
    rates: List[RateOut]
    errors: List[RateErrorOut] = []


# ==================== Tracking Schemas ====================


class TrackRequestIn(BaseModel):
    """Track a shipment by carrier and tracking number."""
    carrier: CarrierCode
    tracking_number: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9]+$")


class TrackingEventOut(BaseModel):
    timestamp: str
    status: str
    description: str
    location: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class TrackingResponse(BaseModel):
    """Complete tracking information."""
    carrier: str
    tracking_number: str
    status: str
    events: List[TrackingEventOut] = []
    estimated_delivery_date: Optional[str] = None
    actual_delivery_date: Optional[str] = None
    delivery_signature: Optional[str] = None
    current_location: Optional[str] = None
    tracking_url: Optional[str] = None
    updated_at: datetime


# ==================== Label Schemas ====================


class CreateLabelRequest(BaseModel):
    """Purchase a shipping label."""
    carrier: CarrierCode
    service_code: str = Field(..., min_length=1, max_length=50)
    order_id: str = Field(..., min_length=1, max_length=100)
    reference_number: Optional[str] = Field(None, max_length=100)
    origin: Optional[AddressIn] = None
    destination: AddressIn
    packages: List[PackageIn] = Field(..., min_length=1, max_length=10)
    label_format: str = Field("PDF", pattern="^(PDF|PNG|ZPL)$")
    signature_required: bool = False
    saturday_delivery: bool = False
    insurance_amount: Optional[float] = Field(None, ge=0)
    is_return_label: bool = False
    pickup_account_number: Optional[str] = Field(None, max_length=50)
    metadata: Dict[str, str] = {}

    @field_validator("label_format", mode="before")
    @classmethod
    def normalize_label_format(cls, v):
        return v.upper() if isinstance(v, str) else v

    def to_shipment_request(self) -> ShipmentRequest:
        """Origin stays None when omitted; the label service fills it from config."""
        return ShipmentRequest(
            carrier=self.carrier,
            service_code=self.service_code,
            origin=self.origin.to_address() if self.origin else None,
            destination=self.destination.to_address(),
            packages=[p.to_package() for p in self.packages],
            reference_number=self.reference_number or self.order_id,
            order_id=self.order_id,
            label_format=self.label_format,
            signature_required=self.signature_required,
            saturday_delivery=self.saturday_delivery,
            insurance_amount=self.insurance_amount,
            is_return_label=self.is_return_label,
            pickup_account_number=self.pickup_account_number,
            metadata=dict(self.metadata),
        )


class ShipmentOut(BaseModel):
    """Stored shipment. Label bytes are served separately."""
    id: int
    order_id: Optional[str] = None
    carrier: str
    service_code: str
    service_name: Optional[str] = None
    tracking_number: str
    label_url: Optional[str] = None
    label_format: Optional[str] = None
    rate: float
    currency: str
    status: str
    origin_address: Optional[Dict[str, Any]] = None
    destination_address: Optional[Dict[str, Any]] = None
    carrier_shipment_id: Optional[str] = None
    reference_number: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_tracked_at: Optional[str] = None


class ShipmentCreatedResponse(ShipmentOut):
    """Returned once at purchase time, with the label."""
    label_data: Optional[str] = None


class ShipmentListResponse(BaseModel):
    data: List[ShipmentOut]


class RefreshTrackingResponse(BaseModel):
    shipment: ShipmentOut
    tracking: TrackingResponse


# ==================== Carrier Config Schemas ====================


class FallbackRateIn(BaseModel):
    """Static price quoted when a carrier has no live rate."""
    service_code: str = Field(..., min_length=1, max_length=50)
    service_name: str = Field(..., min_length=1, max_length=200)
    rate: float = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    delivery_days: Optional[int] = Field(None, ge=0)


class CarrierConfigUpdate(BaseModel):
    """Create or update a carrier config. Omitted fields are left unchanged."""
    is_active: Optional[bool] = None
    origin_address: Optional[AddressIn] = None
    default_package_dimensions: Optional[Dict[str, float]] = None
    markup_percentage: Optional[float] = Field(None, ge=0, le=100)
    markup_fixed: Optional[float] = Field(None, ge=0)
    free_shipping_threshold: Optional[float] = Field(None, ge=0)
    fallback_rates: Optional[List[FallbackRateIn]] = None

    def to_values(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CarrierConfigResponse(BaseModel):
    carrier: CarrierCode
    is_active: bool
    origin_address: Optional[Dict[str, Any]] = None
    default_package_dimensions: Optional[Dict[str, Any]] = None
    markup_percentage: float = 0.0
    markup_fixed: float = 0.0
    free_shipping_threshold: Optional[float] = None
    fallback_rates: Optional[List[Dict[str, Any]]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
