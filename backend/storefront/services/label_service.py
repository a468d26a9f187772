"""
Label purchase and shipment history

create_label buys a label through the carrier client and records it in
shipment_history. refresh_tracking polls the carrier and moves only the
stored status; everything else on the record is written once.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple, Union

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.core.exceptions import ShipmentNotFoundError, ShippingConfigError
from storefront.models.carrier import CarrierCode
from storefront.models.shipment import ShipmentRecord, ShipmentStatus
from storefront.modules.shipping import get_carrier_client
from storefront.modules.shipping.carriers.base import (
    Address,
    ShipmentRequest,
    TrackingInfo,
    TrackingRequest,
)
from storefront.services.shipping_config_service import ShippingConfigService, to_carrier_code

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


async def track_shipment(
    carrier: Union[CarrierCode, str],
    tracking_number: str,
    client_factory: Optional[Callable[..., Any]] = None,
    settings: Optional[Settings] = None,
) -> TrackingInfo:
    """Look up tracking with a short-lived carrier client."""
    code = to_carrier_code(carrier)
    client = (client_factory or get_carrier_client)(code, settings)
    try:
        return await client.track_shipment(TrackingRequest(carrier=code, tracking_number=tracking_number))
    finally:
        await client.close()


class LabelService:
    """Creates labels and manages shipment history."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: Optional[Callable[..., Any]] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.config_service = ShippingConfigService(db)
        self._client_factory = client_factory or get_carrier_client
        self._settings = settings

    async def create_label(self, request: ShipmentRequest) -> ShipmentRecord:
        """
        Purchase a label and persist it.

        The origin falls back to the carrier config's origin address.

        Raises:
            ShippingConfigError: carrier not configured, inactive, or no origin
            CarrierError: the carrier rejected the request
        """
        carrier = request.carrier.value
        config = await self.config_service.get_config(request.carrier)
        if not config or not config.is_active:
            raise ShippingConfigError(f"{carrier} is not configured or active", details={"carrier": carrier})

        if request.origin is None:
            if not config.origin_address:
                raise ShippingConfigError(
                    f"No origin address provided or configured for {carrier}",
                    code="ORIGIN_ADDRESS_MISSING",
                    details={"carrier": carrier},
                )
            request.origin = Address.from_dict(config.origin_address)

        client = self._client_factory(request.carrier, self._settings)
        try:
            shipment = await client.create_shipment(request)
        finally:
            await client.close()

        record = ShipmentRecord(
            order_id=request.order_id,
            carrier=shipment.carrier,
            service_code=shipment.service_code,
            service_name=shipment.service_name,
            tracking_number=shipment.tracking_number,
            label_data=shipment.label_data,
            label_url=shipment.label_url,
            label_format=shipment.label_format,
            rate=shipment.rate,
            currency=shipment.currency,
            status=shipment.status,
            origin_address=shipment.origin.to_dict(),
            destination_address=shipment.destination.to_dict(),
            carrier_shipment_id=shipment.carrier_shipment_id,
            reference_number=shipment.reference_number or request.reference_number,
            shipment_metadata=shipment.metadata or request.metadata or None,
            raw_response=shipment.raw_response,
        )
        self.db.add(record)
        await self.db.flush()

        logger.info(
            f"Label created: carrier={carrier} tracking={shipment.tracking_number} "
            f"order={request.order_id} rate={shipment.rate} {shipment.currency}"
        )
        return record

    async def list_shipments(
        self,
        order_id: Optional[str] = None,
        carrier: Optional[CarrierCode] = None,
        status: Optional[ShipmentStatus] = None,
        search: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[ShipmentRecord]:
        """Shipment history, newest first."""
        query = select(ShipmentRecord)

        if order_id:
            query = query.where(ShipmentRecord.order_id == order_id)
        if carrier:
            query = query.where(ShipmentRecord.carrier == carrier)
        if status:
            query = query.where(ShipmentRecord.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(
                ShipmentRecord.tracking_number.ilike(pattern),
                ShipmentRecord.order_id.ilike(pattern),
                ShipmentRecord.reference_number.ilike(pattern),
            ))
        if date_from:
            query = query.where(ShipmentRecord.created_at >= date_from)
        if date_to:
            query = query.where(ShipmentRecord.created_at <= date_to)

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        query = query.order_by(ShipmentRecord.created_at.desc()).limit(limit).offset(max(offset, 0))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_shipment(self, shipment_id: int) -> ShipmentRecord:
        result = await self.db.execute(select(ShipmentRecord).where(ShipmentRecord.id == shipment_id))
        record = result.scalar_one_or_none()
        if not record:
            raise ShipmentNotFoundError(f"Shipment {shipment_id} not found", details={"shipment_id": shipment_id})
        return record

    async def track(self, carrier: Union[CarrierCode, str], tracking_number: str) -> TrackingInfo:
        return await track_shipment(carrier, tracking_number, self._client_factory, self._settings)

    async def refresh_tracking(self, shipment_id: int) -> Tuple[ShipmentRecord, TrackingInfo]:
        """Poll the carrier and store the normalized status if it moved."""
        record = await self.get_shipment(shipment_id)
        info = await self.refresh_record(record)
        return record, info

    async def refresh_record(self, record: ShipmentRecord) -> TrackingInfo:
        """Poll one record. The attempt is stamped even when the carrier call fails."""
        record.last_tracked_at = datetime.now(timezone.utc)
        info = await self.track(record.carrier, record.tracking_number)

        if info.status != record.status:
            logger.info(
                f"Shipment {record.id} status {record.status.value if record.status else None} -> {info.status.value}"
            )
            record.status = info.status
            record.updated_at = record.last_tracked_at

        await self.db.flush()
        return info
