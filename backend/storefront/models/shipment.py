"""
Shipment history model

One row per purchased label. Everything except status is written once;
tracking refreshes only move status and updated_at, and every poll
stamps last_tracked_at.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, DateTime,
    Float, Text, JSON, Index, Enum as SQLEnum
)
import enum

from storefront.core.database import Base
from storefront.models.carrier import CarrierCode


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status. Every carrier status maps into this set."""
    LABEL_CREATED = "label_created"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class ShipmentRecord(Base):
    """Persisted label purchase."""
    __tablename__ = "shipment_history"
    __table_args__ = (
        Index("ix_shipment_history_order_id", "order_id"),
        Index("ix_shipment_history_tracking_number", "tracking_number"),
        Index("ix_shipment_history_status", "status"),
        Index("ix_shipment_history_carrier", "carrier"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(100), nullable=True)

    carrier = Column(SQLEnum(CarrierCode), nullable=False)
    service_code = Column(String(50), nullable=False)
    service_name = Column(String(200), nullable=True)

    tracking_number = Column(String(100), nullable=False)
    label_data = Column(Text, nullable=True)  # base64
    label_url = Column(Text, nullable=True)
    label_format = Column(String(10), nullable=True)

    rate = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(SQLEnum(ShipmentStatus), nullable=False, default=ShipmentStatus.LABEL_CREATED)

    origin_address = Column(JSON, nullable=True)
    destination_address = Column(JSON, nullable=True)

    carrier_shipment_id = Column(String(100), nullable=True)
    reference_number = Column(String(100), nullable=True)
    shipment_metadata = Column("metadata", JSON, nullable=True)
    # Opaque audit blob, never parsed back
    raw_response = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    # Set on every carrier poll, successful or not
    last_tracked_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        """Serialize for admin listings. The raw vendor payload is left out."""
        return {
            "id": self.id,
            "order_id": self.order_id,
            "carrier": self.carrier.value if self.carrier else None,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "tracking_number": self.tracking_number,
            "label_url": self.label_url,
            "label_format": self.label_format,
            "rate": self.rate,
            "currency": self.currency,
            "status": self.status.value if self.status else None,
            "origin_address": self.origin_address,
            "destination_address": self.destination_address,
            "carrier_shipment_id": self.carrier_shipment_id,
            "reference_number": self.reference_number,
            "metadata": self.shipment_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_tracked_at": self.last_tracked_at.isoformat() if self.last_tracked_at else None,
        }

    def __repr__(self):
        return f"<ShipmentRecord(id={self.id}, carrier={self.carrier}, tracking={self.tracking_number}, status={self.status})>"
