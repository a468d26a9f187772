"""
Public Shipping API Routes

Provides endpoints for:
- Rate quoting across active carriers
- Tracking by carrier and tracking number (GET and POST)

Both are rate limited per client IP. Carrier failures are logged in full and
answered with generic messages.
"""
import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from storefront.api.deps import get_client_factory, get_rate_service
from storefront.core.config import settings
from storefront.core.rate_limit import limiter
from storefront.models.carrier import CarrierCode
from storefront.schemas.shipping import (
    RateQuoteRequest,
    RateQuoteResponse,
    TrackRequestIn,
    TrackingResponse,
)
from storefront.services.label_service import track_shipment
from storefront.services.rate_service import ShippingRateService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])

TRACKING_ERROR_MESSAGE = "Unable to retrieve tracking information"


# ==================== Rate Endpoints ====================


@router.post("/rates", response_model=RateQuoteResponse)
@limiter.limit(settings.RATE_LIMIT_SHIPPING_RATES)
async def get_shipping_rates(
    request: Request,
    payload: RateQuoteRequest,
    rate_service: ShippingRateService = Depends(get_rate_service),
):
    """
    Get shipping rates from all active carriers.

    Carriers that fail are listed under errors; the rest of the quote is
    still returned. With no active carriers the response carries a single
    "system" error and no rates.
    """
    try:
        result = await rate_service.get_rates(payload.to_rate_request())
    except Exception as e:
        logger.error(f"Shipping rates lookup failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch shipping rates")

    return result.to_dict()


# ==================== Tracking Endpoints ====================


async def _track(carrier: CarrierCode, tracking_number: str, client_factory: Callable[..., Any]) -> dict:
    try:
        info = await track_shipment(carrier, tracking_number, client_factory)
    except Exception as e:
        logger.error(f"Tracking failed for {carrier.value} {tracking_number}: {e}")
        raise HTTPException(status_code=500, detail=TRACKING_ERROR_MESSAGE)
    return info.to_dict()


@router.get("/track", response_model=TrackingResponse)
@limiter.limit(settings.RATE_LIMIT_SHIPPING_TRACK)
async def track_by_query(
    request: Request,
    carrier: CarrierCode = Query(..., description="dhl, canada_post, ups, usps or fedex"),
    tracking_number: str = Query(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9]+$"),
    client_factory: Callable[..., Any] = Depends(get_client_factory),
):
    """Track a shipment, e.g. /shipping/track?carrier=ups&tracking_number=1Z999AA10123456784"""
    return await _track(carrier, tracking_number, client_factory)


@router.post("/track", response_model=TrackingResponse)
@limiter.limit(settings.RATE_LIMIT_SHIPPING_TRACK)
async def track_by_body(
    request: Request,
    payload: TrackRequestIn,
    client_factory: Callable[..., Any] = Depends(get_client_factory),
):
    """Track a shipment by carrier and tracking number."""
    return await _track(payload.carrier, payload.tracking_number, client_factory)
