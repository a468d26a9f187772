"""
Tests for the DHL eCommerce client.

HTTP is served by httpx.MockTransport; no network access.
"""
import json

import httpx
import pytest

from storefront.core.exceptions import (
    CarrierAPIError,
    CarrierAuthError,
    CarrierConfigurationError,
    CarrierResponseError,
)
from storefront.models.carrier import CarrierCode
from storefront.models.shipment import ShipmentStatus
from storefront.modules.shipping.carriers.base import RateRequest, ShipmentRequest, TrackingRequest
from storefront.modules.shipping.carriers.dhl import (
    AUTH_PATH,
    DHL_SANDBOX_URL,
    LABEL_PATH,
    RETURN_LABEL_PATH,
    DHLClient,
    DHLCredentials,
    create_dhl_client,
    get_dhl_credentials,
    map_service_code,
)
from storefront.modules.shipping.carriers.token_cache import TokenCache

from carrier_fakes import RecordingHandler, mock_http_client

LABEL_RESPONSE = {
    "trackingNumber": "1Z999",
    "label": {"content": "BASE64LABEL"},
    "pricing": {"total": {"amount": "12.50", "currency": "USD"}},
}

TRACKING_RESPONSE = {
    "shipments": [{
        "id": "GM605112270084510370",
        "status": {"description": "Delivered"},
        "estimatedDeliveryDate": "2024-05-03",
        "delivery": {"date": "2024-05-02T14:10:00", "signedBy": "J BUYER"},
        "events": [
            {
                "timestamp": "2024-05-02T14:10:00",
                "status": "DELIVERED",
                "description": "Delivered",
                "location": {"addressLocality": "Portland", "administrativeArea": "OR", "postalCode": "97201"},
            },
            {
                "timestamp": "2024-05-01T06:00:00",
                "status": "PROCESSED",
                "description": "Processed at facility",
                "location": {"addressLocality": "Salt Lake City", "administrativeArea": "UT"},
            },
        ],
    }],
}


def token_response(request):
    return httpx.Response(200, json={"accessToken": "dhl-token", "expiresIn": 3600})


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_client(handler, clock=None, **credential_overrides) -> DHLClient:
    credentials = DHLCredentials(
        client_id="dhl-client",
        client_secret="dhl-secret",
        pickup_account="5351244",
        **credential_overrides,
    )
    return DHLClient(
        credentials,
        http_client=mock_http_client(handler),
        token_cache=TokenCache(margin_seconds=60, clock=clock or FakeClock()),
    )


@pytest.fixture
def shipment_request(origin_address, destination_address, package):
    return ShipmentRequest(
        carrier=CarrierCode.DHL,
        service_code="PARCEL_EXPRESS",
        origin=origin_address,
        destination=destination_address,
        packages=[package],
        reference_number="ORD-1001",
        order_id="1001",
        label_format="PNG",
    )


class TestDHLCreateShipment:
    """Label purchase."""

    @pytest.mark.asyncio
    async def test_parses_tracking_label_and_price(self, shipment_request):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(200, json=LABEL_RESPONSE),
        })
        client = make_client(handler)

        shipment = await client.create_shipment(shipment_request)

        assert shipment.tracking_number == "1Z999"
        assert shipment.label_data == "BASE64LABEL"
        assert shipment.rate == 12.50
        assert shipment.currency == "USD"
        assert shipment.status == ShipmentStatus.LABEL_CREATED
        assert shipment.service_code == "PARCEL_EXPRESS"
        assert json.loads(shipment.raw_response)["trackingNumber"] == "1Z999"

    @pytest.mark.asyncio
    async def test_payload_and_headers(self, shipment_request):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(200, json=LABEL_RESPONSE),
        })
        client = make_client(handler)

        await client.create_shipment(shipment_request)

        label_call = handler.requests[-1]
        assert str(label_call.url).startswith(DHL_SANDBOX_URL)
        assert label_call.headers["Authorization"] == "Bearer dhl-token"
        body = json.loads(label_call.content)
        assert body["pickup"] == "5351244"
        assert body["orderedProductId"] == "DLH_ECOM_PARCEL_EXPRESS"
        assert body["shipperAddress"]["postalCode"] == "78701"
        assert body["recipientAddress"]["city"] == "Portland"
        assert body["packageDetails"][0]["weight"] == {"value": 2.5, "unitOfMeasure": "LB"}
        assert "merchantId" not in body

    @pytest.mark.asyncio
    async def test_return_label_swaps_addresses(self, shipment_request):
        shipment_request.is_return_label = True
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            RETURN_LABEL_PATH: lambda r: httpx.Response(200, json={"data": [LABEL_RESPONSE]}),
        })
        client = make_client(handler)

        shipment = await client.create_shipment(shipment_request)

        label_call = handler.requests[-1]
        assert label_call.url.path == RETURN_LABEL_PATH
        assert label_call.url.params["format"] == "PNG"
        body = json.loads(label_call.content)
        assert body["shipperAddress"]["city"] == "Portland"
        assert body["recipientAddress"]["city"] == "Austin"
        assert shipment.tracking_number == "1Z999"

    @pytest.mark.asyncio
    async def test_missing_label_raises(self, shipment_request):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(200, json={"trackingNumber": "1Z999"}),
        })
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="Invalid DHL shipment response"):
            await client.create_shipment(shipment_request)

    @pytest.mark.asyncio
    async def test_missing_tracking_number_raises(self, shipment_request):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(200, json={"label": {"content": "X"}}),
        })
        client = make_client(handler)

        with pytest.raises(CarrierResponseError):
            await client.create_shipment(shipment_request)

    @pytest.mark.parametrize("body", [
        {"shipments": ["1Z999"], "labels": [{"content": "X"}]},
        {"trackingNumber": "1Z999", "labels": ["JVBERi0="]},
        {"trackingNumber": "1Z999", "shipmentLabels": [None]},
        {"data": ["not-a-shipment"]},
    ])
    @pytest.mark.asyncio
    async def test_malformed_list_entries_raise(self, shipment_request, body):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(200, json=body),
        })
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="Invalid DHL shipment response"):
            await client.create_shipment(shipment_request)

    @pytest.mark.asyncio
    async def test_non_dict_pricing_defaults_to_zero(self, shipment_request):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(
                200, json={"trackingNumber": "1Z999", "label": "JVBERi0=", "pricing": "n/a", "price": [1]}
            ),
        })
        client = make_client(handler)

        shipment = await client.create_shipment(shipment_request)

        assert shipment.rate == 0.0
        assert shipment.currency == "USD"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_generic_message(self, shipment_request):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            LABEL_PATH: lambda r: httpx.Response(400, json={"detail": "pickup account 5351244 invalid"}),
        })
        client = make_client(handler)

        with pytest.raises(CarrierAPIError) as exc_info:
            await client.create_shipment(shipment_request)

        assert exc_info.value.message == "DHL shipment creation failed"
        assert exc_info.value.status_code == 400
        assert "5351244" not in exc_info.value.message


class TestDHLAuthentication:
    """Token reuse and refresh."""

    @pytest.mark.asyncio
    async def test_token_reused_within_window(self):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            "/tracking/shipments/": lambda r: httpx.Response(200, json=TRACKING_RESPONSE),
        })
        client = make_client(handler)
        request = TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM605112270084510370")

        await client.track_shipment(request)
        await client.track_shipment(request)

        assert handler.count(AUTH_PATH) == 1

    @pytest.mark.asyncio
    async def test_token_refetched_after_expiry(self):
        clock = FakeClock()
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            "/tracking/shipments/": lambda r: httpx.Response(200, json=TRACKING_RESPONSE),
        })
        client = make_client(handler, clock=clock)
        request = TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM605112270084510370")

        await client.track_shipment(request)
        await client.track_shipment(request)
        clock.now += 3600 - 60
        await client.track_shipment(request)

        assert handler.count(AUTH_PATH) == 2

    @pytest.mark.asyncio
    async def test_static_access_token_skips_auth(self):
        handler = RecordingHandler({
            "/tracking/shipments/": lambda r: httpx.Response(200, json=TRACKING_RESPONSE),
        })
        client = make_client(handler, access_token="static-token")

        await client.track_shipment(TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM1"))

        assert handler.count(AUTH_PATH) == 0
        assert handler.requests[0].headers["Authorization"] == "Bearer static-token"

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        handler = RecordingHandler({AUTH_PATH: lambda r: httpx.Response(401, json={"error": "invalid_client"})})
        client = make_client(handler)

        with pytest.raises(CarrierAuthError, match="DHL authentication failed"):
            await client.track_shipment(TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM1"))

    @pytest.mark.asyncio
    async def test_auth_response_without_token(self):
        handler = RecordingHandler({AUTH_PATH: lambda r: httpx.Response(200, json={"expiresIn": 3600})})
        client = make_client(handler)

        with pytest.raises(CarrierAuthError, match="missing access token"):
            await client.track_shipment(TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM1"))


class TestDHLTracking:
    """Tracking response parsing."""

    @pytest.mark.asyncio
    async def test_delivered(self):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            "/tracking/shipments/": lambda r: httpx.Response(200, json=TRACKING_RESPONSE),
        })
        client = make_client(handler)

        info = await client.track_shipment(
            TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM605112270084510370")
        )

        assert info.status == ShipmentStatus.DELIVERED
        assert len(info.events) == 2
        assert info.events[0].city == "Portland"
        assert info.events[1].state == "UT"
        assert info.actual_delivery_date == "2024-05-02T14:10:00"
        assert info.delivery_signature == "J BUYER"
        assert info.current_location == "Portland"
        assert info.tracking_url.endswith("tracking-id=GM605112270084510370")
        assert info.to_dict()["tracking_url"] == info.tracking_url

    @pytest.mark.asyncio
    async def test_tracking_number_is_path_escaped(self):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            "/tracking/shipments/": lambda r: httpx.Response(200, json=TRACKING_RESPONSE),
        })
        client = make_client(handler)

        await client.track_shipment(TrackingRequest(carrier=CarrierCode.DHL, tracking_number="AB/12"))

        assert handler.requests[-1].url.raw_path.decode().endswith("/tracking/shipments/AB%2F12")

    @pytest.mark.asyncio
    async def test_missing_shipment_raises(self):
        handler = RecordingHandler({
            AUTH_PATH: token_response,
            "/tracking/shipments/": lambda r: httpx.Response(200, json={"shipments": []}),
        })
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="Invalid DHL tracking response"):
            await client.track_shipment(TrackingRequest(carrier=CarrierCode.DHL, tracking_number="GM1"))


class TestDHLRatesAndConfig:
    """Rates and factory wiring."""

    @pytest.mark.asyncio
    async def test_get_rates_returns_empty(self, origin_address, destination_address, package):
        handler = RecordingHandler({})
        client = make_client(handler)

        rates = await client.get_rates(RateRequest(
            origin=origin_address, destination=destination_address, packages=[package]
        ))

        assert rates == []
        assert handler.requests == []

    def test_service_aliases(self):
        assert map_service_code("rlt") == "DLH_SM_RETURN_LIGHT"
        assert map_service_code("DLH_EXPRESS_12") == "DLH_EXPRESS_12"

    def test_missing_credentials(self, test_settings):
        settings = test_settings.model_copy(update={"DHL_CLIENT_SECRET": ""})
        with pytest.raises(CarrierConfigurationError, match="DHL API credentials not configured"):
            get_dhl_credentials(settings)

    def test_non_production_uses_sandbox(self, test_settings):
        client = create_dhl_client(test_settings)
        assert client.credentials.base_url == DHL_SANDBOX_URL
        assert client.credentials.pickup_account == "5351244"
        assert client.credentials.access_token is None

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        http_client = mock_http_client(RecordingHandler({}))
        client = DHLClient(DHLCredentials(client_id="a", client_secret="b"), http_client=http_client)

        await client.close()

        assert not http_client.is_closed
        await http_client.aclose()
