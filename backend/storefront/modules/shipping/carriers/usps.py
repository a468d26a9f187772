"""
USPS carrier client (Web Tools XML API)

Live rates through RateV4 (domestic) and IntlRateV2 (international), and
tracking through TrackV2. Web Tools has no label purchase for this account
type, so create_shipment raises UnsupportedOperationError.
"""
import html
import logging
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional

import httpx

from storefront.core.config import Settings, settings as default_settings
from storefront.core.exceptions import (
    CarrierAPIError,
    CarrierConfigurationError,
    CarrierResponseError,
    UnsupportedOperationError,
)
from storefront.models.carrier import CarrierCode
from storefront.modules.shipping.carriers import register_carrier
from storefront.modules.shipping.carriers.base import (
    MAX_LOGGED_BODY,
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
)
from storefront.modules.shipping.carriers.status import normalize_status

logger = logging.getLogger(__name__)

USPS_API_URL = "https://secure.shippingapis.com/ShippingAPI.dll"
USPS_TEST_URL = "https://secure.shippingapis.com/ShippingAPITest.dll"

# Countries rated through the domestic API
DOMESTIC_COUNTRIES = {"US", "PR", "VI", "GU", "AS", "MP"}

SERVICE_CODES = (
    ("Priority Mail Express", "PRIORITY_EXPRESS"),
    ("Priority Mail", "PRIORITY"),
    ("First-Class Package Service", "FIRST_CLASS"),
    ("Parcel Select Ground", "PARCEL_SELECT"),
    ("Media Mail", "MEDIA_MAIL"),
    ("Library Mail", "LIBRARY_MAIL"),
)

DELIVERY_DAYS = (
    ("Priority Mail Express", 1),
    ("Priority Mail", 2),
    ("First-Class", 3),
    ("Parcel Select", 5),
)

_MARKUP_RE = re.compile(r"<[^>]+>")
_SUP_RE = re.compile(r"<sup>.*?</sup>", re.IGNORECASE | re.DOTALL)


@dataclass
class USPSCredentials:
    """USPS Web Tools credentials."""
    user_id: str
    password: Optional[str] = None
    use_test_server: bool = False

    @property
    def api_url(self) -> str:
        return USPS_TEST_URL if self.use_test_server else USPS_API_URL


def clean_service_name(name: str) -> str:
    """Web Tools embeds escaped HTML (<sup>&#8482;</sup>) in service names.

    The markup may arrive escaped once or twice depending on how the XML was
    decoded, so unescape until stable before dropping the superscripts.
    """
    text = name or ""
    while True:
        unescaped = html.unescape(text)
        if unescaped == text:
            break
        text = unescaped
    text = _MARKUP_RE.sub("", _SUP_RE.sub("", text))
    return " ".join(text.split())


def map_service_code(service_name: str) -> str:
    for prefix, code in SERVICE_CODES:
        if prefix in service_name:
            return code
    return re.sub(r"\s+", "_", service_name.upper())


def delivery_days_for(service_name: str) -> Optional[int]:
    for prefix, days in DELIVERY_DAYS:
        if prefix in service_name:
            return days
    return None


def determine_size(package: Package) -> str:
    """REGULAR, LARGE (length + girth over 84in) or OVERSIZE (over 108in)."""
    if not package.has_dimensions:
        return "REGULAR"
    girth = (package.width + package.height) * 2
    length_plus_girth = package.length + girth
    if length_plus_girth > 108:
        return "OVERSIZE"
    if length_plus_girth > 84:
        return "LARGE"
    return "REGULAR"


def split_weight(weight: float):
    """Pounds and ounces as Web Tools expects them."""
    pounds = math.floor(weight)
    ounces = round((weight - pounds) * 16)
    if ounces == 16:
        pounds, ounces = pounds + 1, 0
    return pounds, ounces


def _text(elem: Optional[ET.Element], path: str) -> Optional[str]:
    if elem is None:
        return None
    found = elem.find(path)
    if found is None or found.text is None:
        return None
    value = found.text.strip()
    return value or None


def _sub(parent: ET.Element, tag: str, text=None) -> ET.Element:
    child = ET.SubElement(parent, tag)
    if text is not None:
        child.text = str(text)
    return child


class USPSClient:
    """USPS Web Tools client."""

    carrier_code = CarrierCode.USPS

    def __init__(
        self,
        credentials: USPSCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.credentials = credentials
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

    async def _call(self, api: str, document: ET.Element, error_message: str) -> ET.Element:
        """GET ShippingAPI.dll?API=...&XML=... and return the parsed root element."""
        client = await self._get_http_client()
        xml_body = ET.tostring(document, encoding="unicode")
        try:
            response = await client.get(self.credentials.api_url, params={"API": api, "XML": xml_body})
        except httpx.RequestError as e:
            logger.error(f"USPS {api} request failed: {e}")
            raise CarrierAPIError(error_message, carrier=self.carrier_code.value)

        logger.debug(f"USPS API {api} -> {response.status_code}")
        ensure_success(response, self.carrier_code, error_message)

        try:
            root = ET.fromstring(response.text)
        except ET.ParseError:
            logger.error(f"USPS {api} returned malformed XML: {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError(error_message, carrier=self.carrier_code.value)

        # Web Tools reports request-level failures as a 200 with an <Error> root
        if root.tag == "Error":
            logger.error(f"USPS {api} error: {_text(root, 'Number')} {_text(root, 'Description')}")
            raise CarrierAPIError(error_message, carrier=self.carrier_code.value)
        return root

    # ==================== Rates ====================

    def build_domestic_rate_xml(self, request: RateRequest) -> ET.Element:
        root = ET.Element("RateV4Request", {"USERID": self.credentials.user_id})
        _sub(root, "Revision", "2")
        for index, package in enumerate(request.packages):
            pounds, ounces = split_weight(package.weight)
            node = _sub(root, "Package")
            node.set("ID", str(index))
            _sub(node, "Service", "ALL")
            _sub(node, "ZipOrigination", request.origin.postal_code[:5])
            _sub(node, "ZipDestination", request.destination.postal_code[:5])
            _sub(node, "Pounds", pounds)
            _sub(node, "Ounces", ounces)
            _sub(node, "Container", "VARIABLE")
            if package.has_dimensions:
                _sub(node, "Width", package.width)
                _sub(node, "Length", package.length)
                _sub(node, "Height", package.height)
            _sub(node, "Size", determine_size(package))
            _sub(node, "Machinable", "true")
        return root

    def build_international_rate_xml(self, request: RateRequest) -> ET.Element:
        root = ET.Element("IntlRateV2Request", {"USERID": self.credentials.user_id})
        _sub(root, "Revision", "2")
        for index, package in enumerate(request.packages):
            pounds, ounces = split_weight(package.weight)
            node = _sub(root, "Package")
            node.set("ID", str(index))
            _sub(node, "Pounds", pounds)
            _sub(node, "Ounces", ounces)
            _sub(node, "Machinable", "True")
            _sub(node, "MailType", "Package")
            gxg = _sub(node, "GXG")
            _sub(gxg, "POBoxFlag", "N")
            _sub(gxg, "GiftFlag", "N")
            _sub(node, "ValueOfContents", package.insured_value or 0)
            _sub(node, "Country", request.destination.country)
            _sub(node, "Container", "RECTANGULAR")
            _sub(node, "Size", determine_size(package))
            if package.has_dimensions:
                _sub(node, "Width", package.width)
                _sub(node, "Length", package.length)
                _sub(node, "Height", package.height)
                _sub(node, "Girth", (package.width + package.height) * 2)
            _sub(node, "OriginZip", request.origin.postal_code[:5])
        return root

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        if request.destination.country.upper() in DOMESTIC_COUNTRIES:
            root = await self._call("RateV4", self.build_domestic_rate_xml(request), "USPS rate calculation failed")
            rates = self._parse_domestic_rates(root)
        else:
            root = await self._call(
                "IntlRateV2", self.build_international_rate_xml(request), "USPS rate calculation failed"
            )
            rates = self._parse_international_rates(root)
        return sorted(rates, key=lambda r: r.rate)

    def _parse_domestic_rates(self, root: ET.Element) -> List[ShippingRate]:
        rates = []
        for package in root.findall("Package"):
            if package.find("Error") is not None:
                logger.warning(f"USPS package {package.get('ID')} error: {_text(package, 'Error/Description')}")
                continue
            for postage in package.findall("Postage"):
                service_name = clean_service_name(_text(postage, "MailService") or "")
                rate = _text(postage, "Rate")
                if not rate:
                    continue
                rates.append(ShippingRate(
                    carrier=self.carrier_code,
                    service_code=map_service_code(service_name),
                    service_name=f"USPS {service_name}",
                    rate=float(rate),
                    currency="USD",
                    delivery_days=delivery_days_for(service_name),
                ))
        return rates

    def _parse_international_rates(self, root: ET.Element) -> List[ShippingRate]:
        rates = []
        for package in root.findall("Package"):
            if package.find("Error") is not None:
                logger.warning(f"USPS package {package.get('ID')} error: {_text(package, 'Error/Description')}")
                continue
            for service in package.findall("Service"):
                service_name = clean_service_name(_text(service, "SvcDescription") or "")
                postage = _text(service, "Postage")
                if not postage:
                    continue
                rates.append(ShippingRate(
                    carrier=self.carrier_code,
                    service_code=service.get("ID") or map_service_code(service_name),
                    service_name=f"USPS {service_name}",
                    rate=float(postage),
                    currency="USD",
                    delivery_days=delivery_days_for(service_name),
                ))
        return rates

    # ==================== Labels ====================

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        raise UnsupportedOperationError(
            "USPS label creation is not supported",
            carrier=self.carrier_code.value,
        )

    # ==================== Tracking ====================

    def build_tracking_xml(self, tracking_number: str) -> ET.Element:
        attrs = {"USERID": self.credentials.user_id}
        if self.credentials.password:
            attrs["PASSWORD"] = self.credentials.password
        root = ET.Element("TrackFieldRequest", attrs)
        _sub(root, "Revision", "1")
        _sub(root, "ClientIp", "127.0.0.1")
        _sub(root, "SourceId", "Storefront")
        track_id = _sub(root, "TrackID")
        track_id.set("ID", tracking_number)
        return root

    async def track_shipment(self, request: TrackingRequest) -> TrackingInfo:
        root = await self._call(
            "TrackV2",
            self.build_tracking_xml(request.tracking_number),
            "Failed to retrieve USPS tracking information",
        )

        track_info = root.find("TrackInfo")
        if track_info is None or track_info.find("Error") is not None:
            logger.error(f"Unexpected USPS tracking response: {ET.tostring(root, encoding='unicode')[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid USPS tracking response", carrier=self.carrier_code.value)

        events = []
        summary = track_info.find("TrackSummary")
        if summary is not None:
            events.append(self._parse_event(summary))
        events.extend(self._parse_event(detail) for detail in track_info.findall("TrackDetail"))

        status_text = first_present(
            _text(track_info, "Status"),
            _text(track_info, "StatusSummary"),
            events[0].status if events else None,
        )

        delivered_event = next((e for e in events if "delivered" in e.status.lower()), None)

        return TrackingInfo(
            carrier=self.carrier_code,
            tracking_number=request.tracking_number,
            status=normalize_status(status_text),
            events=events,
            estimated_delivery_date=first_present(
                _text(track_info, "ExpectedDeliveryDate"),
                _text(track_info, "PredictedDeliveryDate"),
            ),
            actual_delivery_date=delivered_event.timestamp if delivered_event else None,
            current_location=events[0].location if events else None,
            tracking_url=self.get_tracking_url(request.tracking_number),
            raw_response=ET.tostring(root, encoding="unicode"),
        )

    @staticmethod
    def _parse_event(node: ET.Element) -> TrackingEvent:
        date = _text(node, "EventDate")
        time = _text(node, "EventTime")
        city = _text(node, "EventCity")
        state = _text(node, "EventState")
        zip_code = _text(node, "EventZIPCode")
        location = None
        if city:
            location = ", ".join(filter(None, [city, " ".join(filter(None, [state, zip_code]))]))
        status = first_present(_text(node, "Event"), _text(node, "EventCode")) or "Unknown"
        return TrackingEvent(
            timestamp=" ".join(filter(None, [date, time])),
            status=status,
            description=first_present(_text(node, "EventSummary"), _text(node, "Event")) or "",
            location=location,
            city=city,
            state=state,
            postal_code=zip_code,
            country=_text(node, "EventCountry") or "US",
        )

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://tools.usps.com/go/TrackConfirmAction?tLabels={tracking_number}"


def get_usps_credentials(settings: Optional[Settings] = None) -> USPSCredentials:
    """
    Read USPS credentials from configuration.

    Raises:
        CarrierConfigurationError: USPS_USER_ID missing
    """
    settings = settings or default_settings
    if not settings.USPS_USER_ID:
        raise CarrierConfigurationError("USPS API credentials not configured", carrier=CarrierCode.USPS.value)

    return USPSCredentials(
        user_id=settings.USPS_USER_ID,
        password=settings.USPS_PASSWORD or None,
        use_test_server=settings.USPS_USE_TEST_SERVER,
    )


@register_carrier(CarrierCode.USPS)
def create_usps_client(settings: Optional[Settings] = None, **kwargs) -> USPSClient:
    """Build a USPS client from configuration. kwargs go to USPSClient."""
    settings = settings or default_settings
    kwargs.setdefault("timeout", settings.SHIPPING_HTTP_TIMEOUT_SECONDS)
    return USPSClient(get_usps_credentials(settings), **kwargs)
