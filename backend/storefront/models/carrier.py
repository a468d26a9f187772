"""
Carrier configuration model

One row per carrier in the shipping config store. Credentials stay in the
environment; this table only holds business settings (activation, origin,
markup, fallback rate table).
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Float, JSON, Index, Enum as SQLEnum
)
import enum

from storefront.core.database import Base


class CarrierCode(str, enum.Enum):
    """Supported shipping carriers."""
    DHL = "dhl"
    CANADA_POST = "canada_post"
    UPS = "ups"
    USPS = "usps"
    FEDEX = "fedex"


class CarrierConfig(Base):
    """
    Per-carrier shipping configuration.

    fallback_rates is a list of {"service_code", "service_name", "rate",
    "currency", "delivery_days"} entries quoted when the carrier has no live
    rate API or returns nothing.
    """
    __tablename__ = "shipping_configs"
    __table_args__ = (
        Index("ix_shipping_configs_active", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)

    carrier = Column(SQLEnum(CarrierCode), unique=True, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)

    # Origin address used when a label request does not provide one
    origin_address = Column(JSON, nullable=True)
    default_package_dimensions = Column(JSON, nullable=True)  # {"length", "width", "height"}

    # Pricing
    markup_percentage = Column(Float, default=0.0, nullable=False)
    markup_fixed = Column(Float, default=0.0, nullable=False)
    free_shipping_threshold = Column(Float, nullable=True)
    fallback_rates = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def apply_markup(self, rate: float) -> float:
        """Percentage markup first, then the flat amount, rounded to cents."""
        marked_up = rate
        if self.markup_percentage:
            marked_up = marked_up * (1 + self.markup_percentage / 100)
        if self.markup_fixed:
            marked_up = marked_up + self.markup_fixed
        return round(marked_up, 2)

    def __repr__(self):
        return f"<CarrierConfig(carrier={self.carrier}, active={self.is_active})>"
