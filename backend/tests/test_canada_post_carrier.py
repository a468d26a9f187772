"""
Tests for the Canada Post client.
"""
import base64
import xml.etree.ElementTree as ET

import httpx
import pytest

from storefront.core.exceptions import (
    CarrierAPIError,
    CarrierConfigurationError,
    CarrierResponseError,
)
from storefront.models.carrier import CarrierCode
from storefront.models.shipment import ShipmentStatus
from storefront.modules.shipping.carriers.base import (
    Address,
    RateRequest,
    ShipmentRequest,
    TrackingRequest,
)
from storefront.modules.shipping.carriers.canada_post import (
    CANADAPOST_STAGING_URL,
    SHIPMENT_NAMESPACE,
    CanadaPostClient,
    CanadaPostCredentials,
    create_canada_post_client,
    get_canada_post_credentials,
)

from carrier_fakes import RecordingHandler, mock_http_client

LABEL_HREF = f"{CANADAPOST_STAGING_URL}/ers/artifact/76108cb5192002d5/10238/0"
PDF_BYTES = b"%PDF-1.4 test label"

SHIPMENT_INFO_XML = f"""<?xml version="1.0" encoding="UTF-8"?>
<shipment-info xmlns="{SHIPMENT_NAMESPACE}">
  <shipment-id>347881315405043891</shipment-id>
  <shipment-status>created</shipment-status>
  <tracking-pin>123456789012</tracking-pin>
  <links>
    <link rel="self" href="{CANADAPOST_STAGING_URL}/rs/0040000000/0001234567/shipment/347881315405043891" media-type="application/vnd.cpc.shipment-v8+xml"/>
    <link rel="label" href="{LABEL_HREF}" media-type="application/pdf" index="0"/>
  </links>
  <shipment-price>
    <due-amount>18.42</due-amount>
  </shipment-price>
</shipment-info>"""

TRACKING_XML_EVENTS_ONLY = """<?xml version="1.0" encoding="UTF-8"?>
<tracking-detail xmlns="http://www.canadapost.ca/ws/track-v2">
  <pin>123456789012</pin>
  <expected-delivery-date>2024-05-03</expected-delivery-date>
  <significant-events>
    <occurrence>
      <event-date>2024-05-02</event-date>
      <event-time>08:15:00</event-time>
      <event-description>Item out for delivery</event-description>
      <event-site>OTTAWA</event-site>
      <event-province>ON</event-province>
    </occurrence>
    <occurrence>
      <event-date>2024-05-01</event-date>
      <event-time>19:02:00</event-time>
      <event-description>Item processed</event-description>
      <event-site>MISSISSAUGA</event-site>
      <event-province>ON</event-province>
    </occurrence>
  </significant-events>
</tracking-detail>"""

TRACKING_XML_TOP_LEVEL = """<tracking-detail>
  <pin>123456789012</pin>
  <event-description>Item out for delivery</event-description>
  <actual-delivery-date></actual-delivery-date>
</tracking-detail>"""


def make_client(handler, contract_id="0040000000") -> CanadaPostClient:
    credentials = CanadaPostCredentials(
        username="cp-user",
        password="cp-pass",
        customer_number="0001234567",
        contract_id=contract_id,
        environment="staging",
    )
    return CanadaPostClient(credentials, http_client=mock_http_client(handler))


@pytest.fixture
def ca_destination():
    return Address(
        name="Sam Reader",
        address_line1="200 Bank St",
        city="Ottawa",
        state="ON",
        postal_code="k1p 5n2",
        country="CA",
    )


@pytest.fixture
def shipment_request(origin_address, ca_destination, package):
    return ShipmentRequest(
        carrier=CarrierCode.CANADA_POST,
        service_code="EXPEDITED_PARCEL_USA",
        origin=origin_address,
        destination=ca_destination,
        packages=[package],
        reference_number="ORD-2002",
        signature_required=True,
        insurance_amount=100,
        metadata={"notification_email": "buyer@example.com"},
    )


def shipment_routes(shipment_response):
    return RecordingHandler({
        "/rs/0040000000/0001234567/shipment": shipment_response,
        "/ers/artifact/": lambda r: httpx.Response(200, content=PDF_BYTES),
    })


class TestCanadaPostCreateShipment:
    """Shipment creation and label download."""

    @pytest.mark.asyncio
    async def test_creates_shipment_and_downloads_label(self, shipment_request):
        handler = shipment_routes(lambda r: httpx.Response(200, text=SHIPMENT_INFO_XML))
        client = make_client(handler)

        shipment = await client.create_shipment(shipment_request)

        assert shipment.tracking_number == "123456789012"
        assert base64.b64decode(shipment.label_data) == PDF_BYTES
        assert shipment.label_format == "PDF"
        assert shipment.label_url == LABEL_HREF
        assert shipment.rate == 18.42
        assert shipment.currency == "CAD"
        assert shipment.carrier_shipment_id == "347881315405043891"
        assert shipment.raw_response == SHIPMENT_INFO_XML
        assert [r.method for r in handler.requests] == ["POST", "GET"]

    @pytest.mark.asyncio
    async def test_request_headers_and_auth(self, shipment_request):
        handler = shipment_routes(lambda r: httpx.Response(200, text=SHIPMENT_INFO_XML))
        client = make_client(handler)

        await client.create_shipment(shipment_request)

        post = handler.requests[0]
        expected = base64.b64encode(b"cp-user:cp-pass").decode()
        assert post.headers["Authorization"] == f"Basic {expected}"
        assert post.headers["Content-Type"] == "application/vnd.cpc.shipment-v8+xml"

    def test_shipment_xml(self, shipment_request):
        client = make_client(RecordingHandler({}))

        root = ET.fromstring(client.build_shipment_xml(shipment_request))
        ns = {"cp": SHIPMENT_NAMESPACE}

        assert root.tag == f"{{{SHIPMENT_NAMESPACE}}}shipment"
        assert root.findtext("cp:customer-request-id", namespaces=ns) == "ORD-2002"
        assert root.findtext("cp:delivery-spec/cp:service-code", namespaces=ns) == "USA.EP"
        destination = root.find("cp:delivery-spec/cp:destination/cp:address-details", ns)
        assert destination.findtext("cp:country-code", namespaces=ns) == "CA"
        assert destination.findtext("cp:postal-zip-code", namespaces=ns) == "K1P5N2"
        option_codes = [e.text for e in root.iterfind(".//cp:option-code", ns)]
        assert option_codes == ["SO", "COV"]
        assert root.findtext(".//cp:option-amount", namespaces=ns) == "100.00"
        # 2.5 lb -> kg
        assert root.findtext(".//cp:parcel-characteristics/cp:weight", namespaces=ns) == "1.134"
        assert root.findtext(".//cp:notification/cp:email", namespaces=ns) == "buyer@example.com"
        assert root.findtext(".//cp:settlement-info/cp:contract-id", namespaces=ns) == "0040000000"

    def test_return_label_xml(self, shipment_request):
        shipment_request.is_return_label = True
        client = make_client(RecordingHandler({}))

        root = ET.fromstring(client.build_shipment_xml(shipment_request))
        ns = {"cp": SHIPMENT_NAMESPACE}

        assert root.findtext("cp:pickup-indicator", namespaces=ns) == "false"
        assert root.findtext("cp:requested-shipping-point", namespaces=ns) == "K1P5N2"
        sender_city = root.findtext("cp:delivery-spec/cp:sender/cp:address-details/cp:city", namespaces=ns)
        assert sender_city == "Ottawa"

    @pytest.mark.asyncio
    async def test_missing_label_link_raises(self, shipment_request):
        body = SHIPMENT_INFO_XML.replace('rel="label"', 'rel="commercialInvoice"')
        handler = shipment_routes(lambda r: httpx.Response(200, text=body))
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="missing tracking number or label link"):
            await client.create_shipment(shipment_request)

    @pytest.mark.asyncio
    async def test_unexpected_root_raises(self, shipment_request):
        handler = shipment_routes(lambda r: httpx.Response(200, text="<messages><message/></messages>"))
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="Invalid Canada Post shipment response"):
            await client.create_shipment(shipment_request)

    @pytest.mark.asyncio
    async def test_error_status_raises(self, shipment_request):
        handler = shipment_routes(lambda r: httpx.Response(
            400, text="<messages><message><code>9111</code></message></messages>"
        ))
        client = make_client(handler)

        with pytest.raises(CarrierAPIError, match="Canada Post shipment creation failed"):
            await client.create_shipment(shipment_request)

    @pytest.mark.asyncio
    async def test_label_download_failure(self, shipment_request):
        handler = RecordingHandler({
            "/rs/0040000000/0001234567/shipment": lambda r: httpx.Response(200, text=SHIPMENT_INFO_XML),
            "/ers/artifact/": lambda r: httpx.Response(500, text="boom"),
        })
        client = make_client(handler)

        with pytest.raises(CarrierAPIError, match="Failed to download Canada Post label"):
            await client.create_shipment(shipment_request)


class TestCanadaPostTracking:
    """Tracking detail parsing."""

    @pytest.mark.asyncio
    async def test_status_from_latest_event(self):
        handler = RecordingHandler({"/rs/0040000000/track/pin/": lambda r: httpx.Response(200, text=TRACKING_XML_EVENTS_ONLY)})
        client = make_client(handler)

        info = await client.track_shipment(
            TrackingRequest(carrier=CarrierCode.CANADA_POST, tracking_number="123456789012")
        )

        assert info.status == ShipmentStatus.OUT_FOR_DELIVERY
        assert len(info.events) == 2
        assert info.events[0].timestamp == "2024-05-02T08:15:00"
        assert info.events[0].city == "OTTAWA"
        assert info.events[1].description == "Item processed"
        assert info.estimated_delivery_date == "2024-05-03"
        assert info.current_location == "OTTAWA"
        assert info.tracking_url == "https://www.canadapost-postescanada.ca/track-reperage/en#/details/123456789012"

    @pytest.mark.asyncio
    async def test_status_from_top_level_description(self):
        handler = RecordingHandler({"/rs/0040000000/track/pin/": lambda r: httpx.Response(200, text=TRACKING_XML_TOP_LEVEL)})
        client = make_client(handler)

        info = await client.track_shipment(
            TrackingRequest(carrier=CarrierCode.CANADA_POST, tracking_number="123456789012")
        )

        assert info.status == ShipmentStatus.OUT_FOR_DELIVERY
        assert info.events == []
        assert info.actual_delivery_date is None

    @pytest.mark.asyncio
    async def test_attempted_delivery_is_exception(self):
        body = TRACKING_XML_TOP_LEVEL.replace("Item out for delivery", "Delivery attempted; notice card left")
        handler = RecordingHandler({"/rs/0040000000/track/pin/": lambda r: httpx.Response(200, text=body)})
        client = make_client(handler)

        info = await client.track_shipment(
            TrackingRequest(carrier=CarrierCode.CANADA_POST, tracking_number="123456789012")
        )

        assert info.status == ShipmentStatus.EXCEPTION

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self):
        handler = RecordingHandler({"/rs/0040000000/track/pin/": lambda r: httpx.Response(200, text="not xml")})
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="Invalid Canada Post tracking response"):
            await client.track_shipment(
                TrackingRequest(carrier=CarrierCode.CANADA_POST, tracking_number="123456789012")
            )


class TestCanadaPostConfig:
    """Rates and credentials."""

    @pytest.mark.asyncio
    async def test_get_rates_returns_empty(self, origin_address, ca_destination, package):
        client = make_client(RecordingHandler({}))
        rates = await client.get_rates(RateRequest(origin=origin_address, destination=ca_destination, packages=[package]))
        assert rates == []

    def test_missing_credentials(self, test_settings):
        settings = test_settings.model_copy(update={"CANADAPOST_CUSTOMER_NUMBER": ""})
        with pytest.raises(CarrierConfigurationError, match="Canada Post API credentials not configured"):
            get_canada_post_credentials(settings)

    def test_factory_uses_staging(self, test_settings):
        client = create_canada_post_client(test_settings)
        assert client.credentials.base_url == CANADAPOST_STAGING_URL
        assert client.shipment_url == f"{CANADAPOST_STAGING_URL}/rs/0040000000/0001234567/shipment"
