"""
UPS carrier client

OAuth 2.0 client-credentials auth plus the Rating (Shop), Shipping and
Tracking REST APIs. Unlike DHL and Canada Post, UPS quotes live rates.
"""
import base64
import logging
from dataclasses import dataclass
from datetime import datetime
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
    first_present,
    parse_json,
    serialize_raw,
)
from storefront.modules.shipping.carriers.status import normalize_status
from storefront.modules.shipping.carriers.token_cache import TokenCache

logger = logging.getLogger(__name__)

# UPS API URLs
UPS_PRODUCTION_URL = "https://onlinetools.ups.com"
UPS_SANDBOX_URL = "https://wwwcie.ups.com"

OAUTH_TOKEN_PATH = "/security/v1/oauth/token"
RATING_PATH = "/api/rating/v2403/Rate"
SHIPPING_PATH = "/api/shipments/v2403/ship"
TRACKING_PATH = "/api/track/v1/details"

# Refresh 5 minutes before expiry
TOKEN_SAFETY_MARGIN_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 3600

UPS_SERVICE_NAMES = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "07": "UPS Worldwide Express",
    "08": "UPS Worldwide Expedited",
    "11": "UPS Standard",
    "12": "UPS 3 Day Select",
    "13": "UPS Next Day Air Saver",
    "14": "UPS Next Day Air Early",
    "54": "UPS Worldwide Express Plus",
    "59": "UPS 2nd Day Air A.M.",
    "65": "UPS Express Saver",
    "96": "UPS Worldwide Express Freight",
}

# Used when the rating response carries no time-in-transit block
UPS_DELIVERY_DAYS = {
    "01": 1,
    "13": 1,
    "14": 1,
    "02": 2,
    "59": 2,
    "12": 3,
    "03": 5,
}

UPS_STATUS_CODES = {
    "D": ShipmentStatus.DELIVERED,
    "I": ShipmentStatus.IN_TRANSIT,
    "P": ShipmentStatus.IN_TRANSIT,
    "O": ShipmentStatus.OUT_FOR_DELIVERY,
    "X": ShipmentStatus.EXCEPTION,
    "RS": ShipmentStatus.RETURNED,
    "M": ShipmentStatus.LABEL_CREATED,
    "MV": ShipmentStatus.CANCELLED,
}

LABEL_IMAGE_FORMATS = {
    "ZPL": {"Code": "ZPL", "Description": "ZPL"},
    "GIF": {"Code": "GIF", "Description": "GIF"},
    "PNG": {"Code": "PNG", "Description": "PNG"},
    "EPL": {"Code": "EPL", "Description": "EPL2"},
}


@dataclass
class UPSCredentials:
    """UPS API credentials."""
    client_id: str
    client_secret: str
    account_number: str
    use_sandbox: bool = False

    @property
    def base_url(self) -> str:
        return UPS_SANDBOX_URL if self.use_sandbox else UPS_PRODUCTION_URL


def map_status(code: Optional[str], description: Optional[str] = None) -> ShipmentStatus:
    """Status type code first, description text as fallback."""
    if code and code.upper() in UPS_STATUS_CODES:
        return UPS_STATUS_CODES[code.upper()]
    return normalize_status(description or code)


def to_ups_address(address: Address, residential: Optional[bool] = None) -> Dict[str, Any]:
    """Convert to UPS API format."""
    name = address.name or address.company or "Customer"
    ups_address: Dict[str, Any] = {
        "Name": name[:35],  # UPS limit
        "Address": {
            "AddressLine": [address.address_line1],
            "City": address.city,
            "StateProvinceCode": address.state[:5] if address.state else "",
            "PostalCode": address.postal_code,
            "CountryCode": address.country,
        },
    }
    if address.address_line2:
        ups_address["Address"]["AddressLine"].append(address.address_line2)
    if address.company:
        ups_address["AttentionName"] = name[:35]
        ups_address["Name"] = address.company[:35]
    if address.phone:
        ups_address["Phone"] = {"Number": address.phone[:15]}
    if address.email:
        ups_address["EMailAddress"] = address.email[:50]
    is_residential = address.is_residential if residential is None else residential
    if is_residential:
        ups_address["Address"]["ResidentialAddressIndicator"] = ""
    return ups_address


def to_ups_package(package: Package) -> Dict[str, Any]:
    """Convert to UPS API format. Customer-supplied packaging, pounds and inches."""
    ups_package: Dict[str, Any] = {
        "PackagingType": {"Code": "02"},
        "PackageWeight": {
            "UnitOfMeasurement": {"Code": "LBS"},
            "Weight": str(round(max(package.weight, 0.1), 1)),
        },
    }
    if package.has_dimensions:
        ups_package["Dimensions"] = {
            "UnitOfMeasurement": {"Code": "IN"},
            "Length": str(round(package.length, 1)),
            "Width": str(round(package.width, 1)),
            "Height": str(round(package.height, 1)),
        }
    if package.insured_value:
        ups_package["PackageServiceOptions"] = {
            "DeclaredValue": {
                "CurrencyCode": "USD",
                "MonetaryValue": str(round(package.insured_value, 2)),
            }
        }
    return ups_package


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


class UPSClient:
    """
    UPS API Client with OAuth 2.0 authentication.

    Handles token refresh and provides methods for all shipping operations.
    """

    carrier_code = CarrierCode.UPS

    def __init__(
        self,
        credentials: UPSCredentials,
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
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
            )
            self._owns_http_client = True
        return self._http_client

    async def close(self):
        """Close HTTP client if this instance created it."""
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _ensure_token(self) -> str:
        """Ensure we have a valid OAuth token."""
        cached = self.token_cache.get(self.carrier_code.value)
        if cached:
            return cached

        client = await self._get_http_client()
        auth_string = f"{self.credentials.client_id}:{self.credentials.client_secret}"
        auth_header = base64.b64encode(auth_string.encode()).decode()

        try:
            response = await client.post(
                f"{self.credentials.base_url}{OAUTH_TOKEN_PATH}",
                headers={
                    "Authorization": f"Basic {auth_header}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={"grant_type": "client_credentials"},
            )
        except httpx.RequestError as e:
            logger.error(f"UPS OAuth request failed: {e}")
            raise CarrierAuthError("Failed to authenticate with UPS", carrier=self.carrier_code.value)

        if response.status_code != 200:
            logger.error(f"UPS OAuth failed: {response.status_code} - {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierAuthError(
                "Failed to authenticate with UPS",
                carrier=self.carrier_code.value,
                details={"status_code": response.status_code},
            )

        data = parse_json(response, self.carrier_code, "Failed to authenticate with UPS")
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise CarrierAuthError("UPS authentication response missing access token", carrier=self.carrier_code.value)

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        self.token_cache.set(self.carrier_code.value, token, expires_in)
        logger.info(f"UPS OAuth token obtained, expires in {expires_in}s")
        return token

    async def _make_request(
        self,
        method: str,
        path: str,
        error_message: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict:
        """Make authenticated API request."""
        token = await self._ensure_token()
        client = await self._get_http_client()

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "transId": f"sf_{datetime.now().strftime('%Y%m%d%H%M%S%f')}",
            "transactionSrc": "Storefront",
        }

        try:
            response = await client.request(
                method.upper(),
                f"{self.credentials.base_url}{path}",
                headers=headers,
                json=data,
                params=params,
            )
        except httpx.RequestError as e:
            logger.error(f"UPS API request failed: {e}")
            raise CarrierAPIError(error_message, carrier=self.carrier_code.value)

        logger.debug(f"UPS API {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            error_code = str(response.status_code)
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                errors = body.get("response", {}).get("errors", [])
                if errors:
                    error_code = errors[0].get("code", error_code)
            logger.error(f"UPS API error: {error_code} - {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierAPIError(
                error_message,
                carrier=self.carrier_code.value,
                status_code=response.status_code,
                details={"ups_code": error_code},
            )

        return parse_json(response, self.carrier_code, error_message)

    # ==================== Rating ====================

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        """Shop rates for every available service, cheapest first."""
        shipper = to_ups_address(request.origin, residential=False)
        shipper["ShipperNumber"] = self.credentials.account_number
        package_list = [to_ups_package(p) for p in request.packages]

        request_data = {
            "RateRequest": {
                "Request": {
                    "RequestOption": "Shop",
                    "SubVersion": "2403",
                    "TransactionReference": {"CustomerContext": f"Rate {datetime.now().isoformat()}"},
                },
                "Shipment": {
                    "Shipper": shipper,
                    "ShipTo": to_ups_address(request.destination),
                    "ShipFrom": to_ups_address(request.origin, residential=False),
                    "Package": package_list if len(package_list) > 1 else package_list[0],
                },
            }
        }

        response = await self._make_request("POST", RATING_PATH, "UPS rate request failed", data=request_data)

        rates = []
        for rated in _as_list(response.get("RateResponse", {}).get("RatedShipment")):
            service_code = rated.get("Service", {}).get("Code", "")
            total = rated.get("NegotiatedRateCharges", {}).get("TotalCharge") or rated.get("TotalCharges", {})
            try:
                amount = float(total.get("MonetaryValue", 0))
            except (TypeError, ValueError):
                logger.warning(f"UPS rate for service {service_code} has no usable amount, skipping")
                continue

            arrival = (rated.get("TimeInTransit") or {}).get("ServiceSummary", {}).get("EstimatedArrival", {})
            business_days = arrival.get("BusinessDaysInTransit")
            delivery_date = arrival.get("Arrival", {}).get("Date") or arrival.get("Date")

            try:
                billable_weight = float(rated.get("BillingWeight", {}).get("Weight", 0)) or None
            except (TypeError, ValueError):
                billable_weight = None

            rates.append(ShippingRate(
                carrier=self.carrier_code,
                service_code=service_code,
                service_name=UPS_SERVICE_NAMES.get(service_code, f"UPS Service {service_code}"),
                rate=amount,
                currency=total.get("CurrencyCode", "USD"),
                delivery_days=int(business_days) if business_days else UPS_DELIVERY_DAYS.get(service_code),
                delivery_date=delivery_date,
                delivery_guarantee=arrival.get("Guarantee") is not None,
                billable_weight=billable_weight,
            ))

        return sorted(rates, key=lambda r: r.rate)

    # ==================== Shipping (Label Creation) ====================

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        shipper = to_ups_address(request.origin, residential=False)
        shipper["ShipperNumber"] = self.credentials.account_number
        package_list = [to_ups_package(p) for p in request.packages]

        if request.signature_required:
            for pkg in package_list:
                pkg.setdefault("PackageServiceOptions", {})["DeliveryConfirmation"] = {"DCISType": "2"}

        label_format = (request.label_format or "ZPL").upper()
        shipment_body: Dict[str, Any] = {
            "Description": "Merchandise",
            "Shipper": shipper,
            "ShipTo": to_ups_address(request.destination),
            "ShipFrom": to_ups_address(request.origin, residential=False),
            "PaymentInformation": {
                "ShipmentCharge": {
                    "Type": "01",  # Transportation
                    "BillShipper": {"AccountNumber": self.credentials.account_number},
                },
            },
            "Service": {"Code": request.service_code},
            "Package": package_list if len(package_list) > 1 else package_list[0],
        }
        if request.reference_number:
            shipment_body["ReferenceNumber"] = {"Code": "01", "Value": request.reference_number[:35]}
        if request.saturday_delivery:
            shipment_body["ShipmentServiceOptions"] = {"SaturdayDeliveryIndicator": ""}

        request_data = {
            "ShipmentRequest": {
                "Request": {
                    "SubVersion": "2403",
                    "TransactionReference": {
                        "CustomerContext": request.reference_number or f"Ship {datetime.now().isoformat()}",
                    },
                },
                "Shipment": shipment_body,
                "LabelSpecification": {
                    "LabelImageFormat": LABEL_IMAGE_FORMATS.get(label_format, LABEL_IMAGE_FORMATS["ZPL"]),
                    "LabelStockSize": {"Height": "6", "Width": "4"},
                },
            }
        }

        response = await self._make_request("POST", SHIPPING_PATH, "UPS shipment creation failed", data=request_data)

        results = response.get("ShipmentResponse", {}).get("ShipmentResults", {})
        package_results = _as_list(results.get("PackageResults"))
        first_package = package_results[0] if package_results else {}
        tracking_number = first_package.get("TrackingNumber")
        label_data = (first_package.get("ShippingLabel") or {}).get("GraphicImage")

        if not tracking_number or not label_data:
            logger.error(f"Unexpected UPS shipment response: {str(response)[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid UPS shipment response", carrier=self.carrier_code.value)

        total_charges = results.get("ShipmentCharges", {}).get("TotalCharges", {})
        try:
            rate = float(total_charges.get("MonetaryValue", 0))
        except (TypeError, ValueError):
            rate = 0.0

        return Shipment(
            carrier=self.carrier_code,
            service_code=request.service_code,
            service_name=UPS_SERVICE_NAMES.get(request.service_code, f"UPS Service {request.service_code}"),
            tracking_number=tracking_number,
            label_data=label_data,
            label_format=label_format if label_format in LABEL_IMAGE_FORMATS else "ZPL",
            rate=rate,
            currency=total_charges.get("CurrencyCode", "USD"),
            origin=request.origin,
            destination=request.destination,
            status=ShipmentStatus.LABEL_CREATED,
            carrier_shipment_id=results.get("ShipmentIdentificationNumber"),
            reference_number=request.reference_number,
            metadata=dict(request.metadata),
            raw_response=serialize_raw(response),
        )

    # ==================== Tracking ====================

    async def track_shipment(self, request: TrackingRequest) -> TrackingInfo:
        response = await self._make_request(
            "GET",
            f"{TRACKING_PATH}/{quote(request.tracking_number, safe='')}",
            "Failed to retrieve UPS tracking information",
            params={"locale": "en_US", "returnSignature": "true"},
        )

        shipments = _as_list(response.get("trackResponse", {}).get("shipment"))
        packages = _as_list(shipments[0].get("package")) if shipments else []
        if not packages:
            logger.error(f"Unexpected UPS tracking response: {str(response)[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid UPS tracking response", carrier=self.carrier_code.value)
        package = packages[0]

        activities = _as_list(package.get("activity"))
        events = []
        for activity in activities:
            status_info = activity.get("status", {})
            location = activity.get("location", {}).get("address", {})
            date_str = activity.get("date", "")
            time_str = activity.get("time", "")
            timestamp = date_str
            if date_str:
                try:
                    timestamp = datetime.strptime(
                        f"{date_str} {time_str or '000000'}", "%Y%m%d %H%M%S"
                    ).isoformat()
                except ValueError:
                    pass
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=status_info.get("type") or status_info.get("code", ""),
                description=status_info.get("description", ""),
                location=location.get("city"),
                city=location.get("city"),
                state=location.get("stateProvince"),
                postal_code=location.get("postalCode"),
                country=location.get("country") or location.get("countryCode"),
            ))

        current = package.get("currentStatus", {})
        latest_type = activities[0].get("status", {}).get("type") if activities else None
        status = map_status(first_present(current.get("type"), latest_type), current.get("description"))

        delivery_dates = {d.get("type"): d.get("date") for d in _as_list(package.get("deliveryDate"))}
        signature = (package.get("deliveryInformation") or {}).get("receivedBy") or (
            (package.get("deliveryInformation") or {}).get("signature") or {}
        ).get("name")

        return TrackingInfo(
            carrier=self.carrier_code,
            tracking_number=request.tracking_number,
            status=status,
            events=events,
            estimated_delivery_date=first_present(delivery_dates.get("SDD"), delivery_dates.get("RDD")),
            actual_delivery_date=delivery_dates.get("DEL"),
            delivery_signature=signature or None,
            current_location=events[0].city if events else None,
            tracking_url=self.get_tracking_url(request.tracking_number),
            raw_response=serialize_raw(response),
        )

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.ups.com/track?tracknum={tracking_number}"


def get_ups_credentials(settings: Optional[Settings] = None) -> UPSCredentials:
    """
    Read UPS credentials from configuration.

    Raises:
        CarrierConfigurationError: client id, secret or account number missing
    """
    settings = settings or default_settings
    if not (settings.UPS_CLIENT_ID and settings.UPS_CLIENT_SECRET and settings.UPS_ACCOUNT_NUMBER):
        raise CarrierConfigurationError("UPS API credentials not configured", carrier=CarrierCode.UPS.value)

    return UPSCredentials(
        client_id=settings.UPS_CLIENT_ID,
        client_secret=settings.UPS_CLIENT_SECRET,
        account_number=settings.UPS_ACCOUNT_NUMBER,
        use_sandbox=settings.UPS_USE_SANDBOX,
    )


@register_carrier(CarrierCode.UPS)
def create_ups_client(settings: Optional[Settings] = None, **kwargs) -> UPSClient:
    """Build a UPS client from configuration. kwargs go to UPSClient."""
    settings = settings or default_settings
    kwargs.setdefault("timeout", settings.SHIPPING_HTTP_TIMEOUT_SECONDS)
    return UPSClient(get_ups_credentials(settings), **kwargs)
