"""
DHL eCommerce carrier client

Label creation (outbound and return labels) and tracking over the DHL
eCommerce REST API. DHL eCommerce sells pre-negotiated products, so there is
no live rating; get_rates returns an empty list and callers fall back to the
static rate table.

Auth is OAuth client-credentials. The token is cached per client instance and
refreshed 60 seconds before the provider's expiry. A static access token in
the credentials skips the token endpoint entirely.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from storefront.core.config import Settings, settings as default_settings
from storefront.core.exceptions import (
    CarrierAPIError,
    CarrierAuthError,
    CarrierConfigurationError,
    CarrierResponseError,
)
from storefront.models.carrier import CarrierCode
from storefront.models.shipment import ShipmentStatus
from storefront.modules.shipping.carriers import register_carrier
from storefront.modules.shipping.carriers.base import (
    MAX_LOGGED_BODY,
    Address,
    Package,
    RateRequest,
    Shipment,
    ShipmentRequest,
    ShippingRate,
    TrackingEvent,
    TrackingInfo,
    TrackingRequest,
    ensure_success,
    first_present,
    parse_json,
    serialize_raw,
)
from storefront.modules.shipping.carriers.status import build_keyword_table, normalize_status
from storefront.modules.shipping.carriers.token_cache import TokenCache

logger = logging.getLogger(__name__)

DHL_PRODUCTION_URL = "https://api.dhlecs.com"
DHL_SANDBOX_URL = "https://api-sandbox.dhlecs.com"

AUTH_PATH = "/auth/v4/token"
LABEL_PATH = "/shipping/v1/labels/merchant"
RETURN_LABEL_PATH = "/returns/v4/label"
TRACKING_PATH = "/tracking/shipments/{tracking_number}"

TOKEN_SAFETY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3500
MIN_WEIGHT_LB = 0.1
PLACEHOLDER_PHONE = "0000000000"

SERVICE_ALIASES = {
    "RLT": "DLH_SM_RETURN_LIGHT",
    "RGN": "DLH_SM_RETURN_GROUND",
    "PARCEL_DIRECT": "DLH_ECOM_PARCL_DIRECT",
    "PARCEL_EXPRESS": "DLH_ECOM_PARCEL_EXPRESS",
}

SERVICE_NAMES = {
    "DLH_SM_RETURN_LIGHT": "DHL eCommerce Return Light",
    "DLH_SM_RETURN_GROUND": "DHL eCommerce Return Ground",
    "DLH_EXPRESS_WORLDWIDE": "DHL Express Worldwide",
    "DLH_EXPRESS_12": "DHL Express 12:00",
    "DLH_EXPRESS_9": "DHL Express 9:00",
    "DLH_ECOM_PARCL_DIRECT": "DHL eCommerce Parcel Direct",
    "DLH_ECOM_PARCEL_EXPRESS": "DHL eCommerce Parcel Express",
    "DLH_ECOM_PARCEL_PLUS": "DHL eCommerce Parcel Plus",
}

DHL_STATUS_KEYWORDS = build_keyword_table({
    ShipmentStatus.RETURNED: ("return",),
})


@dataclass
class DHLCredentials:
    """DHL eCommerce API credentials."""
    client_id: str
    client_secret: str
    pickup_account: Optional[str] = None
    merchant_id: Optional[str] = None
    access_token: Optional[str] = None
    use_sandbox: bool = True

    @property
    def base_url(self) -> str:
        return DHL_SANDBOX_URL if self.use_sandbox else DHL_PRODUCTION_URL


def map_service_code(code: str) -> str:
    """Resolve storefront aliases to DHL ordered product ids."""
    normalized = code.upper()
    return SERVICE_ALIASES.get(normalized, normalized)


def get_service_name(code: str) -> str:
    normalized = code.upper()
    return SERVICE_NAMES.get(normalized, f"DHL {normalized}")


def _first_entry(value: Any) -> dict:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


class DHLClient:
    """DHL eCommerce API client."""

    carrier_code = CarrierCode.DHL

    def __init__(
        self,
        credentials: DHLCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        timeout: float = 30.0,
    ):
        self.credentials = credentials
        self.token_cache = token_cache or TokenCache(margin_seconds=TOKEN_SAFETY_MARGIN_SECONDS)
        self._timeout = timeout
        self._http_client = http_client
        self._owns_http_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_http_client = True
        return self._http_client

    async def close(self):
        """Close HTTP client if this instance created it."""
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ==================== Authentication ====================

    async def _get_access_token(self) -> str:
        if self.credentials.access_token:
            return self.credentials.access_token

        cached = self.token_cache.get(self.carrier_code.value)
        if cached:
            return cached

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self.credentials.base_url}{AUTH_PATH}",
                json={
                    "clientId": self.credentials.client_id,
                    "clientSecret": self.credentials.client_secret,
                    "grantType": "client_credentials",
                },
                headers={"Content-Type": "application/json"},
            )
        except httpx.RequestError as e:
            logger.error(f"DHL authentication request failed: {e}")
            raise CarrierAuthError("DHL authentication failed", carrier=self.carrier_code.value)

        if not response.is_success:
            logger.error(f"DHL authentication error {response.status_code}: {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierAuthError(
                "DHL authentication failed",
                carrier=self.carrier_code.value,
                details={"status_code": response.status_code},
            )

        data = parse_json(response, self.carrier_code, "DHL authentication failed")
        token = data.get("accessToken") or data.get("access_token")
        if not token:
            raise CarrierAuthError(
                "DHL authentication response missing access token",
                carrier=self.carrier_code.value,
            )

        expires_in = float(data.get("expiresIn") or data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        self.token_cache.set(self.carrier_code.value, token, expires_in)
        logger.info(f"DHL OAuth token obtained, expires in {int(expires_in)}s")
        return token

    async def _request(self, method: str, path: str, error_message: str, **kwargs) -> httpx.Response:
        """Authenticated request; non-2xx and transport failures raise CarrierAPIError."""
        token = await self._get_access_token()
        client = await self._get_http_client()
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))

        try:
            response = await client.request(method, f"{self.credentials.base_url}{path}", headers=headers, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"DHL {method} {path} failed: {e}")
            raise CarrierAPIError(error_message, carrier=self.carrier_code.value)

        logger.debug(f"DHL API {method} {path} -> {response.status_code}")
        ensure_success(response, self.carrier_code, error_message)
        return response

    # ==================== Mappers ====================

    @staticmethod
    def _map_address(address: Address) -> Dict[str, Any]:
        return {
            "name": address.name or address.company or "Recipient",
            "companyName": address.company or None,
            "address1": address.address_line1,
            "address2": address.address_line2 or "",
            "city": address.city,
            "state": address.state,
            "country": address.country,
            "postalCode": address.postal_code,
            "phone": address.phone or PLACEHOLDER_PHONE,
        }

    @staticmethod
    def _map_package(package: Package, index: int) -> Dict[str, Any]:
        weight = max(package.weight or 0, MIN_WEIGHT_LB)
        mapped: Dict[str, Any] = {
            "reference": f"PKG-{index + 1}",
            "weight": {"value": round(weight, 2), "unitOfMeasure": "LB"},
            "description": package.description or package.contents_type or "General Merchandise",
        }
        if package.has_dimensions:
            mapped["dimensions"] = {
                "length": round(package.length, 2),
                "width": round(package.width, 2),
                "height": round(package.height, 2),
                "unitOfMeasure": "IN",
            }
        if package.insured_value:
            mapped["insuredValue"] = {"amount": package.insured_value, "currency": "USD"}
        return mapped

    def build_shipment_payload(self, request: ShipmentRequest) -> Dict[str, Any]:
        """Return labels ship from the customer back to the storefront origin."""
        shipper = request.destination if request.is_return_label else request.origin
        recipient = request.origin if request.is_return_label else request.destination

        payload: Dict[str, Any] = {
            "pickup": self.credentials.pickup_account or request.pickup_account_number,
            "orderedProductId": map_service_code(request.service_code),
            "shipmentDetails": {
                "orderNumber": request.reference_number,
                "isReturn": bool(request.is_return_label),
            },
            "shipperAddress": self._map_address(shipper),
            "recipientAddress": self._map_address(recipient),
            "packageDetails": [self._map_package(p, i) for i, p in enumerate(request.packages)],
        }
        if self.credentials.merchant_id:
            payload["merchantId"] = self.credentials.merchant_id
        return payload

    # ==================== Operations ====================

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        """
        Purchase a label.

        Raises:
            CarrierAPIError: DHL answered non-2xx ("DHL shipment creation failed")
            CarrierResponseError: tracking number or label missing from the answer
        """
        if request.is_return_label:
            path, params = RETURN_LABEL_PATH, {"format": "PNG"}
        else:
            path, params = LABEL_PATH, None

        response = await self._request(
            "POST",
            path,
            "DHL shipment creation failed",
            json=self.build_shipment_payload(request),
            params=params,
            headers={"Content-Type": "application/json"},
        )
        data = parse_json(response, self.carrier_code, "Invalid DHL shipment response")
        return self._parse_shipment_response(data, request)

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        """DHL eCommerce has no live rating; callers use the fallback rate table."""
        return []

    async def track_shipment(self, request: TrackingRequest) -> TrackingInfo:
        path = TRACKING_PATH.format(tracking_number=quote(request.tracking_number, safe=""))
        response = await self._request("GET", path, "Failed to retrieve DHL tracking information")
        data = parse_json(response, self.carrier_code, "Invalid DHL tracking response")
        return self._parse_tracking_response(data, request.tracking_number)

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.dhl.com/us-en/home/tracking.html?tracking-id={tracking_number}"

    # ==================== Parsers ====================

    def _parse_shipment_response(self, data: Any, request: ShipmentRequest) -> Shipment:
        result = data
        if isinstance(data, dict) and isinstance(data.get("data"), list) and data["data"]:
            result = data["data"][0]
        if not isinstance(result, dict):
            result = {}

        shipment = _first_entry(result.get("shipments"))
        tracking_number = first_present(
            result.get("trackingNumber"),
            result.get("parcelNumber"),
            shipment.get("trackingNumber"),
        )

        label = result.get("label")
        label_data = first_present(
            label.get("content") if isinstance(label, dict) else None,
            label if isinstance(label, str) else None,
            _first_entry(result.get("labels")).get("content"),
            _first_entry(result.get("shipmentLabels")).get("content"),
        )

        if not tracking_number or not label_data:
            logger.error(f"Unexpected DHL shipment response: {str(data)[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid DHL shipment response", carrier=self.carrier_code.value)

        pricing = result.get("pricing")
        pricing_total = pricing.get("total") if isinstance(pricing, dict) else None
        if not isinstance(pricing_total, dict):
            pricing_total = {}
        price = result.get("price")
        if not isinstance(price, dict):
            price = {}
        currency = first_present(pricing_total.get("currency"), price.get("currency")) or "USD"
        amount = pricing_total.get("amount")
        if amount is None:
            amount = price.get("total")
        try:
            rate = float(amount) if amount is not None else 0.0
        except (TypeError, ValueError):
            rate = 0.0

        return Shipment(
            carrier=self.carrier_code,
            service_code=request.service_code,
            service_name=get_service_name(request.service_code),
            tracking_number=str(tracking_number),
            label_data=label_data,
            label_format=request.label_format or "PNG",
            rate=rate,
            currency=currency,
            origin=request.origin,
            destination=request.destination,
            status=ShipmentStatus.LABEL_CREATED,
            carrier_shipment_id=first_present(result.get("shipmentId"), result.get("shipmentIdNumber")),
            reference_number=request.reference_number,
            metadata=dict(request.metadata),
            raw_response=serialize_raw(data),
        )

    def _parse_tracking_response(self, data: Any, tracking_number: str) -> TrackingInfo:
        shipments = data.get("shipments") if isinstance(data, dict) else None
        shipment = shipments[0] if isinstance(shipments, list) and shipments else shipments
        if not isinstance(shipment, dict):
            logger.error(f"Unexpected DHL tracking response: {str(data)[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid DHL tracking response", carrier=self.carrier_code.value)

        events_data = shipment.get("events") or shipment.get("trackingEvents") or []
        events = []
        for event in events_data:
            location = event.get("location") or {}
            events.append(TrackingEvent(
                timestamp=event.get("timestamp") or "",
                status=event.get("status") or event.get("description") or "Update",
                description=event.get("description") or event.get("status") or "Shipment update",
                location=location.get("addressLocality"),
                city=location.get("addressLocality"),
                state=location.get("administrativeArea"),
                postal_code=location.get("postalCode"),
                country=location.get("countryCode"),
            ))

        delivery = shipment.get("delivery") or {}
        status_text = shipment.get("status") or shipment.get("statusCode") or ""
        if isinstance(status_text, dict):
            status_text = status_text.get("description") or status_text.get("status") or ""

        return TrackingInfo(
            carrier=self.carrier_code,
            tracking_number=tracking_number,
            status=normalize_status(status_text, DHL_STATUS_KEYWORDS),
            events=events,
            estimated_delivery_date=shipment.get("estimatedDeliveryDate"),
            actual_delivery_date=delivery.get("date"),
            delivery_signature=delivery.get("signedBy"),
            current_location=events[0].location if events else None,
            tracking_url=self.get_tracking_url(tracking_number),
            raw_response=serialize_raw(data),
        )


def get_dhl_credentials(settings: Optional[Settings] = None) -> DHLCredentials:
    """
    Read DHL credentials from configuration.

    Raises:
        CarrierConfigurationError: DHL_CLIENT_ID or DHL_CLIENT_SECRET missing
    """
    settings = settings or default_settings
    if not settings.DHL_CLIENT_ID or not settings.DHL_CLIENT_SECRET:
        raise CarrierConfigurationError("DHL API credentials not configured", carrier=CarrierCode.DHL.value)

    return DHLCredentials(
        client_id=settings.DHL_CLIENT_ID,
        client_secret=settings.DHL_CLIENT_SECRET,
        pickup_account=settings.DHL_PICKUP_ACCOUNT or None,
        merchant_id=settings.DHL_MERCHANT_ID or None,
        access_token=settings.DHL_ACCESS_TOKEN or None,
        use_sandbox=settings.DHL_USE_SANDBOX or not settings.is_production,
    )


@register_carrier(CarrierCode.DHL)
def create_dhl_client(settings: Optional[Settings] = None, **kwargs) -> DHLClient:
    """Build a DHL client from configuration. kwargs go to DHLClient."""
    settings = settings or default_settings
    kwargs.setdefault("timeout", settings.SHIPPING_HTTP_TIMEOUT_SECONDS)
    return DHLClient(get_dhl_credentials(settings), **kwargs)
