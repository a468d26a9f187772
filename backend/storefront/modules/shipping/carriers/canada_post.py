"""
Canada Post carrier client

Contract shipments (shipment-v8) and tracking (track-v2) over the Canada Post
REST/XML web services with HTTP Basic auth. Creating a shipment is two calls:
the shipment POST, then a GET on the returned label link for the PDF.

Canada Post rating requires separate certification, so get_rates returns an
empty list and callers fall back to the static rate table.
"""
import base64
import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, List, Optional
from urllib.parse import quote

import httpx

from storefront.core.config import Settings, settings as default_settings
from storefront.core.exceptions import (
    CarrierAPIError,
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
)
from storefront.modules.shipping.carriers.status import build_keyword_table, normalize_status

logger = logging.getLogger(__name__)

CANADAPOST_PRODUCTION_URL = "https://soa-gw.canadapost.ca"
CANADAPOST_STAGING_URL = "https://ct.soa-gw.canadapost.ca"

SHIPMENT_NAMESPACE = "http://www.canadapost.ca/ws/shipment-v8"
SHIPMENT_MEDIA_TYPE = "application/vnd.cpc.shipment-v8+xml"
TRACK_MEDIA_TYPE = "application/vnd.cpc.track-v2+xml"
TRACKING_ROOTS = ("tracking-detail", "track-detail")

LB_TO_KG = 0.45359237
IN_TO_CM = 2.54
MIN_WEIGHT_LB = 0.1
PLACEHOLDER_PHONE = "0000000000"

SERVICE_ALIASES = {
    "EXPEDITED_PARCEL": "DOM.EP",
    "XPRESSPOST": "DOM.XP",
    "PRIORITY": "DOM.PC",
    "REGULAR_PARCEL": "DOM.RP",
    "XPRESSPOST_USA": "USA.XP",
    "EXPEDITED_PARCEL_USA": "USA.EP",
    "XPRESSPOST_INTL": "INT.XP",
}

SERVICE_NAMES = {
    "DOM.EP": "Expedited Parcel",
    "DOM.XP": "Xpresspost",
    "DOM.PC": "Priority",
    "DOM.RP": "Regular Parcel",
    "USA.EP": "Expedited Parcel USA",
    "USA.XP": "Xpresspost USA",
    "INT.XP": "Xpresspost International",
}

CANADA_POST_STATUS_KEYWORDS = build_keyword_table({
    ShipmentStatus.EXCEPTION: ("attempted", "notice card left"),
})


@dataclass
class CanadaPostCredentials:
    """Canada Post API credentials."""
    username: str
    password: str
    customer_number: str
    contract_id: Optional[str] = None
    environment: str = "staging"

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return CANADAPOST_PRODUCTION_URL
        return CANADAPOST_STAGING_URL

    @property
    def mailed_by(self) -> str:
        return self.contract_id or self.customer_number

    @property
    def auth_header(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return f"Basic {token}"


def map_service_code(code: str) -> str:
    normalized = code.upper()
    return SERVICE_ALIASES.get(normalized, normalized)


def get_service_name(code: str) -> str:
    normalized = map_service_code(code)
    return SERVICE_NAMES.get(normalized, f"Canada Post {normalized}")


# ==================== XML helpers ====================

def _strip_namespaces(root: ET.Element) -> ET.Element:
    """Drop {namespace} prefixes in place so lookups can use bare tag names."""
    for elem in root.iter():
        if isinstance(elem.tag, str) and elem.tag.startswith("{"):
            elem.tag = elem.tag.split("}", 1)[1]
    return root


def _text(elem: Optional[ET.Element], path: str) -> Optional[str]:
    if elem is None:
        return None
    found = elem.find(path)
    if found is None or found.text is None:
        return None
    value = found.text.strip()
    return value or None


def _sub(parent: ET.Element, tag: str, text: Optional[Any] = None) -> ET.Element:
    child = ET.SubElement(parent, tag)
    if text is not None:
        child.text = str(text)
    return child


def parse_xml(body: str) -> Optional[ET.Element]:
    """Parse an XML body, returning None when it is not well-formed."""
    try:
        return _strip_namespaces(ET.fromstring(body))
    except ET.ParseError:
        logger.error(f"Canada Post returned malformed XML: {body[:MAX_LOGGED_BODY]}")
        return None


class CanadaPostClient:
    """Canada Post web services client."""

    carrier_code = CarrierCode.CANADA_POST

    def __init__(
        self,
        credentials: CanadaPostCredentials,
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

    async def _request(self, method: str, url: str, error_message: str, **kwargs) -> httpx.Response:
        client = await self._get_http_client()
        headers = {"Authorization": self.credentials.auth_header}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Canada Post {method} {url} failed: {e}")
            raise CarrierAPIError(error_message, carrier=self.carrier_code.value)

        logger.debug(f"Canada Post API {method} {url} -> {response.status_code}")
        ensure_success(response, self.carrier_code, error_message)
        return response

    # ==================== Endpoints ====================

    @property
    def shipment_url(self) -> str:
        return (
            f"{self.credentials.base_url}/rs/{self.credentials.mailed_by}/"
            f"{self.credentials.customer_number}/shipment"
        )

    def tracking_endpoint(self, tracking_number: str) -> str:
        return (
            f"{self.credentials.base_url}/rs/{self.credentials.mailed_by}/track/pin/"
            f"{quote(tracking_number, safe='')}"
        )

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://www.canadapost-postescanada.ca/track-reperage/en#/details/{tracking_number}"

    # ==================== Request builder ====================

    @staticmethod
    def _add_address(parent: ET.Element, tag: str, address: Address, fallback_name: str, is_sender: bool):
        node = _sub(parent, tag)
        _sub(node, "name", address.name or address.company or fallback_name)
        if address.company:
            _sub(node, "company", address.company)
        if is_sender:
            _sub(node, "contact-phone", address.phone or PLACEHOLDER_PHONE)
        elif address.phone:
            _sub(node, "client-voice-number", address.phone)
        details = _sub(node, "address-details")
        _sub(details, "address-line-1", address.address_line1)
        if address.address_line2:
            _sub(details, "address-line-2", address.address_line2)
        _sub(details, "city", address.city)
        _sub(details, "prov-state", address.state)
        if not is_sender:
            _sub(details, "country-code", address.country)
        _sub(details, "postal-zip-code", (address.postal_code or "").replace(" ", "").upper())

    @staticmethod
    def _add_parcel(parent: ET.Element, package: Package):
        parcel = _sub(parent, "parcel-characteristics")
        weight_lb = max(package.weight or 0, MIN_WEIGHT_LB)
        _sub(parcel, "weight", f"{weight_lb * LB_TO_KG:.3f}")
        if package.has_dimensions:
            dimensions = _sub(parcel, "dimensions")
            _sub(dimensions, "length", f"{package.length * IN_TO_CM:.1f}")
            _sub(dimensions, "width", f"{package.width * IN_TO_CM:.1f}")
            _sub(dimensions, "height", f"{package.height * IN_TO_CM:.1f}")

    @staticmethod
    def _add_options(parent: ET.Element, request: ShipmentRequest):
        codes = []
        if request.signature_required:
            codes.append(("SO", None))
        if request.saturday_delivery:
            codes.append(("SD", None))
        if request.insurance_amount and request.insurance_amount > 0:
            codes.append(("COV", f"{request.insurance_amount:.2f}"))
        if not codes:
            return
        options = _sub(parent, "options")
        for code, amount in codes:
            option = _sub(options, "option")
            _sub(option, "option-code", code)
            if amount is not None:
                _sub(option, "option-amount", amount)

    def build_shipment_xml(self, request: ShipmentRequest) -> bytes:
        """Render the shipment-v8 request body. Only the first package is shipped."""
        sender = request.destination if request.is_return_label else request.origin
        destination = request.origin if request.is_return_label else request.destination

        root = ET.Element("shipment", {"xmlns": SHIPMENT_NAMESPACE})
        _sub(root, "customer-request-id", request.reference_number or uuid.uuid4().hex)
        pickup = not request.is_return_label
        _sub(root, "pickup-indicator", "true" if pickup else "false")
        if not pickup:
            _sub(root, "requested-shipping-point", (sender.postal_code or "").replace(" ", "").upper())

        delivery_spec = _sub(root, "delivery-spec")
        _sub(delivery_spec, "service-code", map_service_code(request.service_code))
        self._add_address(delivery_spec, "sender", sender, "Sender", is_sender=True)
        self._add_address(delivery_spec, "destination", destination, "Recipient", is_sender=False)
        self._add_options(delivery_spec, request)
        if request.packages:
            self._add_parcel(delivery_spec, request.packages[0])

        notification_email = request.metadata.get("notification_email")
        if notification_email:
            notification = _sub(delivery_spec, "notification")
            _sub(notification, "email", notification_email)
            _sub(notification, "on-shipment", "true")
            _sub(notification, "on-exception", "true")
            _sub(notification, "on-delivery", "true")

        _sub(_sub(delivery_spec, "print-preferences"), "output-format", "4x6")

        if request.reference_number:
            _sub(_sub(delivery_spec, "references"), "customer-ref-1", request.reference_number)

        if self.credentials.contract_id:
            settlement = _sub(delivery_spec, "settlement-info")
            _sub(settlement, "contract-id", self.credentials.contract_id)
            _sub(settlement, "intended-method-of-payment", "Account")

        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    # ==================== Operations ====================

    async def create_shipment(self, request: ShipmentRequest) -> Shipment:
        """
        Create a contract shipment and download its label.

        Raises:
            CarrierAPIError: shipment POST or label GET answered non-2xx
            CarrierResponseError: no shipment-info, tracking pin or label link
        """
        response = await self._request(
            "POST",
            self.shipment_url,
            "Canada Post shipment creation failed",
            content=self.build_shipment_xml(request),
            headers={"Content-Type": SHIPMENT_MEDIA_TYPE, "Accept": SHIPMENT_MEDIA_TYPE},
        )

        root = parse_xml(response.text)
        if root is None or root.tag != "shipment-info":
            logger.error(f"Unexpected Canada Post shipment response: {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid Canada Post shipment response", carrier=self.carrier_code.value)

        tracking_number = _text(root, "tracking-pin")
        label_link = None
        for link in root.findall("links/link"):
            if link.get("rel") == "label" and link.get("href"):
                label_link = link.get("href")
                break

        if not tracking_number or not label_link:
            raise CarrierResponseError(
                "Canada Post response missing tracking number or label link",
                carrier=self.carrier_code.value,
            )

        label_data = await self._fetch_label(label_link)

        rate_text = first_present(
            _text(root, "shipment-price/due-amount"),
            _text(root, "shipment-price/due/amount"),
        )
        try:
            rate = float(rate_text) if rate_text else 0.0
        except ValueError:
            rate = 0.0

        return Shipment(
            carrier=self.carrier_code,
            service_code=request.service_code,
            service_name=get_service_name(request.service_code),
            tracking_number=tracking_number,
            label_data=label_data,
            label_format="PDF",
            rate=rate,
            currency=_text(root, "shipment-price/due/currency") or "CAD",
            origin=request.origin,
            destination=request.destination,
            status=ShipmentStatus.LABEL_CREATED,
            carrier_shipment_id=_text(root, "shipment-id"),
            reference_number=request.reference_number,
            label_url=label_link,
            metadata=dict(request.metadata),
            raw_response=response.text,
        )

    async def _fetch_label(self, url: str) -> str:
        response = await self._request(
            "GET",
            url,
            "Failed to download Canada Post label",
            headers={"Accept": "application/pdf"},
        )
        return base64.b64encode(response.content).decode()

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        """Rating needs separate certification; callers use the fallback rate table."""
        return []

    async def track_shipment(self, request: TrackingRequest) -> TrackingInfo:
        response = await self._request(
            "GET",
            self.tracking_endpoint(request.tracking_number),
            "Failed to retrieve Canada Post tracking information",
            headers={"Accept": TRACK_MEDIA_TYPE},
        )

        root = parse_xml(response.text)
        details = None
        if root is not None:
            if root.tag in TRACKING_ROOTS:
                details = root
            else:
                details = next((d for d in map(root.find, TRACKING_ROOTS) if d is not None), None)
        if details is None:
            logger.error(f"Unexpected Canada Post tracking response: {response.text[:MAX_LOGGED_BODY]}")
            raise CarrierResponseError("Invalid Canada Post tracking response", carrier=self.carrier_code.value)

        events = self._parse_events(details)
        status_text = first_present(
            _text(details, "event-description"),
            _text(details, "status-description"),
            events[0].description if events else None,
        )

        return TrackingInfo(
            carrier=self.carrier_code,
            tracking_number=request.tracking_number,
            status=normalize_status(status_text, CANADA_POST_STATUS_KEYWORDS),
            events=events,
            estimated_delivery_date=_text(details, "expected-delivery-date"),
            actual_delivery_date=_text(details, "actual-delivery-date"),
            delivery_signature=_text(details, "signatory-name"),
            current_location=first_present(
                _text(details, "event-location"),
                events[0].location if events else None,
            ),
            tracking_url=self.get_tracking_url(request.tracking_number),
            raw_response=response.text,
        )

    @staticmethod
    def _parse_events(details: ET.Element) -> List[TrackingEvent]:
        """Newest first, as Canada Post returns them."""
        nodes = (
            details.findall("significant-events/occurrence")
            or details.findall("events/event")
            or details.findall("event")
        )
        events = []
        for node in nodes:
            date = _text(node, "event-date")
            time = _text(node, "event-time")
            timestamp = first_present(
                _text(node, "datetime"),
                f"{date}T{time}" if date and time else date,
            )
            description = first_present(
                _text(node, "event-description"),
                _text(node, "description"),
                _text(node, "event-type"),
            ) or "Shipment update"
            city = first_present(_text(node, "event-site"), _text(node, "city"))
            events.append(TrackingEvent(
                timestamp=timestamp or "",
                status=description,
                description=description,
                location=first_present(_text(node, "location"), city),
                city=city,
                state=first_present(_text(node, "event-province"), _text(node, "province")),
                postal_code=_text(node, "postal-code"),
                country=_text(node, "country"),
            ))
        return events


def get_canada_post_credentials(settings: Optional[Settings] = None) -> CanadaPostCredentials:
    """
    Read Canada Post credentials from configuration.

    Raises:
        CarrierConfigurationError: username, password or customer number missing
    """
    settings = settings or default_settings
    if not (settings.CANADAPOST_USERNAME and settings.CANADAPOST_PASSWORD and settings.CANADAPOST_CUSTOMER_NUMBER):
        raise CarrierConfigurationError(
            "Canada Post API credentials not configured",
            carrier=CarrierCode.CANADA_POST.value,
        )

    return CanadaPostCredentials(
        username=settings.CANADAPOST_USERNAME,
        password=settings.CANADAPOST_PASSWORD,
        customer_number=settings.CANADAPOST_CUSTOMER_NUMBER,
        contract_id=settings.CANADAPOST_CONTRACT_ID or None,
        environment=settings.CANADAPOST_ENVIRONMENT,
    )


@register_carrier(CarrierCode.CANADA_POST)
def create_canada_post_client(settings: Optional[Settings] = None, **kwargs) -> CanadaPostClient:
    """Build a Canada Post client from configuration. kwargs go to CanadaPostClient."""
    settings = settings or default_settings
    kwargs.setdefault("timeout", settings.SHIPPING_HTTP_TIMEOUT_SECONDS)
    return CanadaPostClient(get_canada_post_credentials(settings), **kwargs)
