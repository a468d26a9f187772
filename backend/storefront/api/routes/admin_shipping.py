"""
Admin Shipping API Routes

Label purchase, shipment history and per-carrier configuration. Every route
requires the X-Admin-Key header.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from storefront.api.deps import get_config_service, get_label_service, require_admin
from storefront.core.error_handler import sanitize_error_message
from storefront.core.exceptions import (
    CarrierError,
    ShipmentNotFoundError,
    ShippingConfigError,
    UnsupportedCarrierError,
)
from storefront.models.carrier import CarrierCode
from storefront.models.shipment import ShipmentStatus
from storefront.schemas.shipping import (
    CarrierConfigResponse,
    CarrierConfigUpdate,
    CreateLabelRequest,
    RefreshTrackingResponse,
    ShipmentCreatedResponse,
    ShipmentListResponse,
)
from storefront.services.label_service import LabelService
from storefront.services.shipping_config_service import ShippingConfigService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/shipping",
    tags=["admin-shipping"],
    dependencies=[Depends(require_admin)],
)


# ==================== Label Endpoints ====================


@router.get("/labels", response_model=ShipmentListResponse)
async def list_labels(
    order_id: Optional[str] = Query(None, max_length=100),
    carrier: Optional[CarrierCode] = None,
    shipment_status: Optional[ShipmentStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=100),
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    label_service: LabelService = Depends(get_label_service),
):
    """Shipment history, newest first."""
    try:
        shipments = await label_service.list_shipments(
            order_id=order_id,
            carrier=carrier,
            status=shipment_status,
            search=search,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    except Exception as e:
        logger.error(f"Failed to list shipments: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch shipment history")

    return {"data": [s.to_dict() for s in shipments]}


@router.post("/labels", response_model=ShipmentCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_label(
    payload: CreateLabelRequest,
    label_service: LabelService = Depends(get_label_service),
):
    """
    Purchase a shipping label.

    The carrier must be configured and active. The response includes the
    base64 label once; history listings leave it out.
    """
    try:
        record = await label_service.create_label(payload.to_shipment_request())
    except ShippingConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except CarrierError as e:
        logger.error(f"Label purchase failed: {e.to_dict()}")
        raise HTTPException(status_code=502, detail=sanitize_error_message(e.message))
    except Exception as e:
        logger.error(f"Create shipping label error: {e}")
        raise HTTPException(status_code=500, detail="Failed to create shipping label")

    return {**record.to_dict(), "label_data": record.label_data}


@router.post("/labels/{shipment_id}/refresh", response_model=RefreshTrackingResponse)
async def refresh_label_tracking(
    shipment_id: int,
    label_service: LabelService = Depends(get_label_service),
):
    """Poll the carrier and update the stored status."""
    try:
        record, info = await label_service.refresh_tracking(shipment_id)
    except ShipmentNotFoundError:
        raise HTTPException(status_code=404, detail="Shipment not found")
    except Exception as e:
        logger.error(f"Tracking refresh failed for shipment {shipment_id}: {e}")
        raise HTTPException(status_code=500, detail="Unable to retrieve tracking information")

    return {"shipment": record.to_dict(), "tracking": info.to_dict()}


# ==================== Config Endpoints ====================


@router.get("/configs", response_model=List[CarrierConfigResponse])
async def list_configs(config_service: ShippingConfigService = Depends(get_config_service)):
    return await config_service.list_configs()


@router.get("/configs/{carrier}", response_model=CarrierConfigResponse)
async def get_config(carrier: str, config_service: ShippingConfigService = Depends(get_config_service)):
    try:
        config = await config_service.get_config(carrier)
    except UnsupportedCarrierError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if not config:
        raise HTTPException(status_code=404, detail="Carrier config not found")
    return config


@router.put("/configs/{carrier}", response_model=CarrierConfigResponse)
async def upsert_config(
    carrier: str,
    payload: CarrierConfigUpdate,
    config_service: ShippingConfigService = Depends(get_config_service),
):
    """Create or update a carrier config. Omitted fields keep their stored value."""
    try:
        return await config_service.upsert_config(carrier, payload.to_values())
    except UnsupportedCarrierError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.delete("/configs/{carrier}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_config(carrier: str, config_service: ShippingConfigService = Depends(get_config_service)):
    try:
        deleted = await config_service.delete_config(carrier)
    except UnsupportedCarrierError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if not deleted:
        raise HTTPException(status_code=404, detail="Carrier config not found")
