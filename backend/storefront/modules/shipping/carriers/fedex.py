"""
FedEx carrier client

FedEx REST APIs behind OAuth 2.0 client credentials: rate quotes, ship
(label creation) and track. Sandbox hosts are used outside production unless
the environment says otherwise.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

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
    first_present,
    parse_json,
    serialize_raw,
)
from storefront.modules.shipping.carriers.status import normalize_status
from storefront.modules.shipping.carriers.token_cache import TokenCache

logger = logging.getLogger(__name__)

FEDEX_PRODUCTION_URL = "https://apis.fedex.com"
FEDEX_SANDBOX_URL = "https://apis-sandbox.fedex.com"

OAUTH_TOKEN_PATH = "/oauth/token"
RATE_PATH = "/rate/v1/rates/quotes"
SHIP_PATH = "/ship/v1/shipments"
TRACK_PATH = "/track/v1/trackingnumbers"

# Refresh 5 minutes before expiry
TOKEN_SAFETY_MARGIN_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 3600

FEDEX_SERVICE_NAMES = {
    "FEDEX_GROUND": "FedEx Ground",
    "GROUND_HOME_DELIVERY": "FedEx Home Delivery",
    "FEDEX_EXPRESS_SAVER": "FedEx Express Saver",
    "FEDEX_2_DAY": "FedEx 2Day",
    "FEDEX_2_DAY_AM": "FedEx 2Day AM",
    "STANDARD_OVERNIGHT": "FedEx Standard Overnight",
    "PRIORITY_OVERNIGHT": "FedEx Priority Overnight",
    "FIRST_OVERNIGHT": "FedEx First Overnight",
    "INTERNATIONAL_ECONOMY": "FedEx International Economy",
    "INTERNATIONAL_PRIORITY": "FedEx International Priority",
    "INTERNATIONAL_FIRST": "FedEx International First",
}

# Rate replies spell transit time out as an enum
TRANSIT_DAYS = {
    "ONE_DAY": 1,
    "TWO_DAYS": 2,
    "THREE_DAYS": 3,
    "FOUR_DAYS": 4,
    "FIVE_DAYS": 5,
    "SIX_DAYS": 6,
    "SEVEN_DAYS": 7,
    "EIGHT_DAYS": 8,
    "NINE_DAYS": 9,
    "TEN_DAYS": 10,
}

# latestStatusDetail.derivedCode
FEDEX_STATUS_CODES = {
    "DL": ShipmentStatus.DELIVERED,
    "OD": ShipmentStatus.OUT_FOR_DELIVERY,
    "IT": ShipmentStatus.IN_TRANSIT,
    "PU": ShipmentStatus.IN_TRANSIT,
    "DE": ShipmentStatus.EXCEPTION,
    "SE": ShipmentStatus.EXCEPTION,
    "RS": ShipmentStatus.RETURNED,
    "CA": ShipmentStatus.CANCELLED,
    "OC": ShipmentStatus.LABEL_CREATED,
}

LABEL_IMAGE_TYPES = {
    "PDF": "PDF",
    "PNG": "PNG",
    "ZPL": "ZPLII",
}


@dataclass
class FedExCredentials:
    """FedEx developer portal project credentials."""
    api_key: str
    api_secret: str
    account_number: str
    use_sandbox: bool = True

    @property
    def base_url(self) -> str:
        return FEDEX_SANDBOX_URL if self.use_sandbox else FEDEX_PRODUCTION_URL


def get_service_name(code: str) -> str:
    return FEDEX_SERVICE_NAMES.get(code, f"FedEx {code}")


def map_status(code: Optional[str], description: Optional[str] = None) -> ShipmentStatus:
    """Derived status code first, locale text as fallback."""
    if code and code.upper() in FEDEX_STATUS_CODES:
        return FEDEX_STATUS_CODES[code.upper()]
    return normalize_status(description or code)


def parse_transit_days(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str) and value.upper() in TRANSIT_DAYS:
        return TRANSIT_DAYS[value.upper()]
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_fedex_address(address: Address, residential: Optional[bool] = None) -> Dict[str, Any]:
    street_lines = [address.address_line1]
    if address.address_line2:
        street_lines.append(address.address_line2)
    is_residential = address.is_residential if residential is None else residential
    return {
        "streetLines": street_lines,
        "city": address.city,
        "stateOrProvinceCode": address.state,
        "postalCode": address.postal_code,
        "countryCode": address.country,
        "residential": bool(is_residential),
    }


def to_fedex_contact(address: Address, default_name: str) -> Dict[str, Any]:
    contact = {
        "personName": address.name or default_name,
        "phoneNumber": address.phone or "0000000000",
    }
    if address.company:
        contact["companyName"] = address.company
    if address.email:
        contact["emailAddress"] = address.email
    return contact


def to_fedex_package(package: Package) -> Dict[str, Any]:
    """Pounds and inches. Dimensions only when all three are known."""
    line_item: Dict[str, Any] = {
        "weight": {"units": "LB", "value": round(max(package.weight, 0.1), 1)},
    }
    if package.has_dimensions:
        line_item["dimensions"] = {
            "length": round(package.length),
            "width": round(package.width),
            "height": round(package.height),
            "units": "IN",
        }
    if package.insured_value:
        line_item["declaredValue"] = {"amount": round(package.insured_value, 2), "currency": "USD"}
    return line_item


def _first(value: Any) -> Dict[str, Any]:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _location(scan_location: Any) -> Dict[str, Optional[str]]:
    if not isinstance(scan_location, dict):
        scan_location = {}
    city = scan_location.get("city")
    state = scan_location.get("stateOrProvinceCode")
    return {
        "location": f"{city}, {state}" if city and state else city,
        "city": city,
        "state": state,
        "postal_code": scan_location.get("postalCode"),
        "country": scan_location.get("countryCode"),
    }


class FedExClient:
    """
    FedEx REST API client.

    Access tokens are cached per client and refreshed five minutes before
    they expire.
    """

    carrier_code = CarrierCode.FEDEX

    def __init__(
        self,
        credentials: FedExCredentials,
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
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_http_client = True
        return self._http_client

    async def close(self):
        """Close HTTP client if this instance created it."""
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _ensure_token(self) -> str:
        cached = self.token_cache.get(self.carrier_code.value)
        if cached:
            return cached

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self.credentials.base_url}{OAUTH_TOKEN_PATH}",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.credentials.api_key,
                    "client_secret": self.credentials.api_secret,
                },
            )
        except httpx.RequestError as e:
            logger.error(f"FedEx OAuth request failed: {e}")
            raise CarrierAuthError("FedEx authentication failed", carrier=self.carrier_code.value)

        if response.status_code != 200:
            logger.error(f"FedEx OAuth failed: {response.status_code} - {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierAuthError(
                "FedEx authentication failed",
                carrier=self.carrier_code.value,
                details={"status_code": response.status_code},
            )

        data = parse_json(response, self.carrier_code, "FedEx authentication failed")
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise CarrierAuthError("FedEx authentication response missing access token", carrier=self.carrier_code.value)

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        self.token_cache.set(self.carrier_code.value, token, expires_in)
        logger.info(f"FedEx OAuth token obtained, expires in {expires_in}s")
        return token

    async def _post(self, path: str, body: Dict[str, Any], error_message: str) -> Dict[str, Any]:
        token = await self._ensure_token()
        client = await self._get_http_client()

        try:
            response = await client.post(
                f"{self.credentials.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "X-locale": "en_US",
                },
                json=body,
            )
        except httpx.RequestError as e:
            logger.error(f"FedEx API request failed: {e}")
            raise CarrierAPIError(error_message, carrier=self.carrier_code.value)

        logger.debug(f"FedEx API POST {path} -> {response.status_code}")

        if response.status_code >= 400:
            error_code = str(response.status_code)
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                error_code = _first(payload.get("errors")).get("code", error_code)
            logger.error(f"FedEx API error: {error_code} - {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierAPIError(
                error_message,
                carrier=self.carrier_code.value,
                status_code=response.status_code,
                details={"fedex_code": error_code},
            )

        data = parse_json(response, self.carrier_code, error_message)
        if not isinstance(data, dict):
            logger.error(f"Unexpected FedEx response: {str(data)[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError(error_message, carrier=self.carrier_code.value)
        return data

    # ==================== Rates ====================

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        """Account and list rates for every service FedEx offers on the lane, cheapest first."""
        body = {
            "accountNumber": {"value": self.credentials.account_number},
            "rateRequestControlParameters": {"returnTransitTimes": True},
            "requestedShipment": {
                "shipper": {"address": to_fedex_address(request.origin, residential=False)},
                "recipient": {"address": to_fedex_address(request.destination)},
                "pickupType": "USE_SCHEDULED_PICKUP",
                "rateRequestType": ["ACCOUNT", "LIST"],
                "requestedPackageLineItems": [to_fedex_package(p) for p in request.packages],
            },
        }

        data = await self._post(RATE_PATH, body, "FedEx rate calculation failed")
        details = (data.get("output") or {}).get("rateReplyDetails") or []

        rates = []
        for detail in details:
            if not isinstance(detail, dict):
                continue
            service_code = detail.get("serviceType", "")
            rated = _first(detail.get("ratedShipmentDetails"))
            amount = _to_float(rated.get("totalNetCharge"))
            if amount is None:
                logger.warning(f"FedEx rate for service {service_code} has no usable amount, skipping")
                continue

            commit = detail.get("commit") or {}
            date_detail = commit.get("dateDetail") or {}
            transit = first_present(commit.get("transitDays"), date_detail.get("transitDays"))
            if isinstance(transit, dict):
                transit = transit.get("minimumTransitTime")

            rates.append(ShippingRate(
                carrier=self.carrier_code,
                service_code=service_code,
                service_name=first_present(detail.get("serviceName"), get_service_name(service_code)),
                rate=amount,
                currency=rated.get("currency") or "USD",
                delivery_days=parse_transit_days(transit),
                delivery_date=date_detail.get("dayFormat"),
                billable_weight=_to_float((rated.get("totalBillingWeight") or {}).get("value")),
            ))

        return sorted(rates, key=lambda r: r.rate)

    # ==================== Ship ====================

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        label_format = (request.label_format or "PDF").upper()
        image_type = LABEL_IMAGE_TYPES.get(label_format, "PDF")
        if image_type == "PDF":
            label_format = "PDF"

        package_items = [to_fedex_package(p) for p in request.packages]
        if request.signature_required:
            for item in package_items:
                item["packageSpecialServices"] = {
                    "specialServiceTypes": ["SIGNATURE_OPTION"],
                    "signatureOptionType": "DIRECT",
                }
        if request.reference_number:
            for item in package_items:
                item["customerReferences"] = [
                    {"customerReferenceType": "CUSTOMER_REFERENCE", "value": request.reference_number[:30]}
                ]

        requested_shipment: Dict[str, Any] = {
            "shipper": {
                "contact": to_fedex_contact(request.origin, "Shipping Department"),
                "address": to_fedex_address(request.origin, residential=False),
            },
            "recipients": [{
                "contact": to_fedex_contact(request.destination, "Customer"),
                "address": to_fedex_address(request.destination),
            }],
            "shipDatestamp": date.today().isoformat(),
            "serviceType": request.service_code,
            "packagingType": "YOUR_PACKAGING",
            "pickupType": "USE_SCHEDULED_PICKUP",
            "blockInsightVisibility": False,
            "shippingChargesPayment": {"paymentType": "SENDER"},
            "labelSpecification": {"imageType": image_type, "labelStockType": "PAPER_4X6"},
            "requestedPackageLineItems": package_items,
        }
        if request.saturday_delivery:
            requested_shipment["shipmentSpecialServices"] = {"specialServiceTypes": ["SATURDAY_DELIVERY"]}

        body = {
            "labelResponseOptions": "LABEL",
            "requestedShipment": requested_shipment,
            "accountNumber": {"value": self.credentials.account_number},
        }

        data = await self._post(SHIP_PATH, body, "FedEx shipment creation failed")

        shipment_output = _first((data.get("output") or {}).get("transactionShipments"))
        piece = _first(shipment_output.get("pieceResponses"))
        tracking_number = first_present(piece.get("trackingNumber"), shipment_output.get("masterTrackingNumber"))
        document = _first(piece.get("packageDocuments"))
        label_data = document.get("encodedLabel")

        if not tracking_number or not (label_data or document.get("url")):
            logger.error(f"Unexpected FedEx shipment response: {str(data)[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Failed to create FedEx shipment", carrier=self.carrier_code.value)

        advisory = shipment_output.get("shipmentAdvisoryDetails") or {}
        rate = first_present(
            _to_float(piece.get("netRateAmount")),
            _to_float(advisory.get("totalNetCharge")),
        ) or 0.0

        return Shipment(
            carrier=self.carrier_code,
            service_code=request.service_code,
            service_name=get_service_name(request.service_code),
            tracking_number=tracking_number,
            label_data=label_data or "",
            label_format=label_format,
            rate=rate,
            currency=piece.get("currency") or "USD",
            origin=request.origin,
            destination=request.destination,
            status=ShipmentStatus.LABEL_CREATED,
            carrier_shipment_id=shipment_output.get("masterTrackingNumber"),
            reference_number=request.reference_number,
            label_url=document.get("url"),
            metadata=dict(request.metadata),
            raw_response=serialize_raw(data),
        )

    # ==================== Track ====================

    async def track_shipment(self, request: TrackingRequest) -> TrackingInfo:
        body = {
            "includeDetailedScans": True,
            "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": request.tracking_number}}],
        }
        data = await self._post(TRACK_PATH, body, "FedEx tracking request failed")

        complete = _first((data.get("output") or {}).get("completeTrackResults"))
        result = _first(complete.get("trackResults"))
        if not result or result.get("error"):
            logger.warning(
                f"FedEx returned no tracking for {request.tracking_number}: "
                f"{str(result.get('error'))[:MAX_LOGGED_BODY]}"
            )
            raise CarrierResponseError("No FedEx tracking information found", carrier=self.carrier_code.value)

        events = []
        for scan in result.get("scanEvents") or []:
            if not isinstance(scan, dict):
                continue
            events.append(TrackingEvent(
                timestamp=scan.get("date", ""),
                status=first_present(scan.get("derivedStatusCode"), scan.get("eventType")) or "",
                description=scan.get("eventDescription") or "",
                **_location(scan.get("scanLocation")),
            ))

        latest = result.get("latestStatusDetail") or {}
        status = map_status(
            first_present(latest.get("derivedCode"), latest.get("code")),
            first_present(latest.get("statusByLocale"), latest.get("description")),
        )

        delivery = result.get("deliveryDetails") or {}
        times = {
            entry.get("type"): entry.get("dateTime")
            for entry in result.get("dateAndTimes") or []
            if isinstance(entry, dict)
        }

        return TrackingInfo(
            carrier=self.carrier_code,
            tracking_number=request.tracking_number,
            status=status,
            events=events,
            estimated_delivery_date=first_present(
                delivery.get("estimatedDeliveryTimestamp"), times.get("ESTIMATED_DELIVERY")
            ),
            actual_delivery_date=first_present(
                delivery.get("actualDeliveryTimestamp"), times.get("ACTUAL_DELIVERY")
            ),
            delivery_signature=delivery.get("receivedByName") or None,
            current_location=_location(latest.get("scanLocation"))["location"],
            tracking_url=self.get_tracking_url(request.tracking_number),
            raw_response=serialize_raw(data),
        )

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.fedex.com/fedextrack/?trknbr={tracking_number}"


def get_fedex_credentials(settings: Optional[Settings] = None) -> FedExCredentials:
    """
    Read FedEx credentials from configuration.

    Raises:
        CarrierConfigurationError: API key, secret or account number missing
    """
    settings = settings or default_settings
    if not (settings.FEDEX_API_KEY and settings.FEDEX_API_SECRET and settings.FEDEX_ACCOUNT_NUMBER):
        raise CarrierConfigurationError("FedEx API credentials not configured", carrier=CarrierCode.FEDEX.value)

    return FedExCredentials(
        api_key=settings.FEDEX_API_KEY,
        api_secret=settings.FEDEX_API_SECRET,
        account_number=settings.FEDEX_ACCOUNT_NUMBER,
        use_sandbox=settings.FEDEX_USE_SANDBOX or not settings.is_production,
    )


@register_carrier(CarrierCode.FEDEX)
def create_fedex_client(settings: Optional[Settings] = None, **kwargs) -> FedExClient:
    """Build a FedEx client from configuration. kwargs go to FedExClient."""
    settings = settings or default_settings
    kwargs.setdefault("timeout", settings.SHIPPING_HTTP_TIMEOUT_SECONDS)
    return FedExClient(get_fedex_credentials(settings), **kwargs)
