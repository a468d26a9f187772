"""
Tests for the FedEx client.
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
from storefront.modules.shipping.carriers.fedex import (
    FEDEX_PRODUCTION_URL,
    FEDEX_SANDBOX_URL,
    OAUTH_TOKEN_PATH,
    RATE_PATH,
    SHIP_PATH,
    TRACK_PATH,
    FedExClient,
    FedExCredentials,
    get_fedex_credentials,
    map_status,
    parse_transit_days,
)
from storefront.modules.shipping.carriers.token_cache import TokenCache

from carrier_fakes import RecordingHandler, mock_http_client

RATE_RESPONSE = {
    "output": {
        "rateReplyDetails": [
            {
                "serviceType": "FEDEX_2_DAY",
                "serviceName": "FedEx 2Day",
                "ratedShipmentDetails": [{
                    "totalNetCharge": 27.84,
                    "currency": "USD",
                    "totalBillingWeight": {"units": "LB", "value": 3},
                }],
                "commit": {"transitDays": {"minimumTransitTime": "TWO_DAYS"}},
            },
            {
                "serviceType": "FEDEX_GROUND",
                "ratedShipmentDetails": [{"totalNetCharge": "12.31", "currency": "USD"}],
                "commit": {"dateDetail": {"dayFormat": "2024-05-06T23:59:00"}, "transitDays": "FOUR_DAYS"},
            },
            {
                "serviceType": "PRIORITY_OVERNIGHT",
                "ratedShipmentDetails": [],
            },
        ]
    }
}

SHIP_RESPONSE = {
    "output": {
        "transactionShipments": [{
            "masterTrackingNumber": "794953555571",
            "shipmentAdvisoryDetails": {},
            "pieceResponses": [{
                "trackingNumber": "794953555571",
                "netRateAmount": 14.62,
                "currency": "USD",
                "packageDocuments": [{"contentType": "LABEL", "encodedLabel": "JVBERi0xLjQK"}],
            }],
        }]
    }
}

TRACK_RESPONSE = {
    "output": {
        "completeTrackResults": [{
            "trackingNumber": "794953555571",
            "trackResults": [{
                "latestStatusDetail": {
                    "code": "DL",
                    "derivedCode": "DL",
                    "statusByLocale": "Delivered",
                    "scanLocation": {"city": "PORTLAND", "stateOrProvinceCode": "OR"},
                },
                "deliveryDetails": {"receivedByName": "J.BUYER"},
                "dateAndTimes": [
                    {"type": "ACTUAL_DELIVERY", "dateTime": "2024-05-03T14:10:00-07:00"},
                    {"type": "SHIP", "dateTime": "2024-05-01T00:00:00-06:00"},
                ],
                "scanEvents": [
                    {
                        "date": "2024-05-03T14:10:00-07:00",
                        "eventType": "DL",
                        "eventDescription": "Delivered",
                        "derivedStatusCode": "DL",
                        "scanLocation": {"city": "PORTLAND", "stateOrProvinceCode": "OR", "postalCode": "97201", "countryCode": "US"},
                    },
                    {
                        "date": "2024-05-02T06:02:00-07:00",
                        "eventType": "AR",
                        "eventDescription": "Arrived at FedEx location",
                        "scanLocation": {"city": "TROUTDALE"},
                    },
                ],
            }],
        }]
    }
}


def token_response(request):
    return httpx.Response(200, json={"access_token": "fedex-token", "token_type": "bearer", "expires_in": 3599})


def make_client(handler, use_sandbox=True) -> FedExClient:
    credentials = FedExCredentials(
        api_key="fedex-key",
        api_secret="fedex-secret",
        account_number="740561073",
        use_sandbox=use_sandbox,
    )
    return FedExClient(credentials, http_client=mock_http_client(handler), token_cache=TokenCache(margin_seconds=300))


class TestFedExRates:
    """Rate quotes."""

    @pytest.mark.asyncio
    async def test_rates_sorted_with_transit_days(self, origin_address, destination_address, package):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            RATE_PATH: lambda r: httpx.Response(200, json=RATE_RESPONSE),
        })
        client = make_client(handler)

        rates = await client.get_rates(RateRequest(
            origin=origin_address, destination=destination_address, packages=[package]
        ))

        assert [r.service_code for r in rates] == ["FEDEX_GROUND", "FEDEX_2_DAY"]
        ground = rates[0]
        assert ground.service_name == "FedEx Ground"
        assert ground.rate == 12.31
        assert ground.delivery_days == 4
        assert ground.delivery_date == "2024-05-06T23:59:00"
        assert rates[1].delivery_days == 2
        assert rates[1].billable_weight == 3.0
        assert all(r.carrier == CarrierCode.FEDEX for r in rates)

    @pytest.mark.asyncio
    async def test_rate_request_body(self, origin_address, destination_address, package):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            RATE_PATH: lambda r: httpx.Response(200, json=RATE_RESPONSE),
        })
        client = make_client(handler)

        await client.get_rates(RateRequest(origin=origin_address, destination=destination_address, packages=[package]))

        sent = handler.requests[-1]
        body = json.loads(sent.content)
        shipment = body["requestedShipment"]
        assert str(sent.url).startswith(FEDEX_SANDBOX_URL)
        assert sent.headers["Authorization"] == "Bearer fedex-token"
        assert sent.headers["X-locale"] == "en_US"
        assert body["accountNumber"] == {"value": "740561073"}
        assert shipment["rateRequestType"] == ["ACCOUNT", "LIST"]
        assert shipment["shipper"]["address"]["residential"] is False
        assert shipment["recipient"]["address"]["residential"] is True
        assert shipment["recipient"]["address"]["streetLines"] == ["42 Elm St", "Apt 3"]
        line_item = shipment["requestedPackageLineItems"][0]
        assert line_item["weight"] == {"units": "LB", "value": 2.5}
        assert line_item["dimensions"]["units"] == "IN"

    @pytest.mark.asyncio
    async def test_token_form_and_cache(self, origin_address, destination_address, package):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            RATE_PATH: lambda r: httpx.Response(200, json=RATE_RESPONSE),
        })
        client = make_client(handler)
        request = RateRequest(origin=origin_address, destination=destination_address, packages=[package])

        await client.get_rates(request)
        await client.get_rates(request)

        assert handler.count(OAUTH_TOKEN_PATH) == 1
        form = handler.requests[0].content.decode()
        assert "grant_type=client_credentials" in form
        assert "client_id=fedex-key" in form

    @pytest.mark.asyncio
    async def test_auth_failure(self, origin_address, destination_address, package):
        handler = RecordingHandler({OAUTH_TOKEN_PATH: lambda r: httpx.Response(401, json={"errors": []})})
        client = make_client(handler)

        with pytest.raises(CarrierAuthError, match="FedEx authentication failed"):
            await client.get_rates(RateRequest(origin=origin_address, destination=destination_address, packages=[package]))

    @pytest.mark.asyncio
    async def test_error_response(self, origin_address, destination_address, package):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            RATE_PATH: lambda r: httpx.Response(
                400, json={"errors": [{"code": "RATE.LOCATION.NOSERVICE", "message": "no service to 97201"}]}
            ),
        })
        client = make_client(handler)

        with pytest.raises(CarrierAPIError) as exc_info:
            await client.get_rates(RateRequest(origin=origin_address, destination=destination_address, packages=[package]))

        assert exc_info.value.message == "FedEx rate calculation failed"
        assert exc_info.value.details["fedex_code"] == "RATE.LOCATION.NOSERVICE"
        assert "97201" not in exc_info.value.message


class TestFedExShipments:
    """Label creation."""

    @pytest.fixture
    def shipment_request(self, origin_address, destination_address, package):
        return ShipmentRequest(
            carrier=CarrierCode.FEDEX,
            service_code="FEDEX_GROUND",
            origin=origin_address,
            destination=destination_address,
            packages=[package],
            reference_number="ORD-4004",
            label_format="ZPL",
            signature_required=True,
        )

    @pytest.mark.asyncio
    async def test_create_shipment(self, shipment_request):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            SHIP_PATH: lambda r: httpx.Response(200, json=SHIP_RESPONSE),
        })
        client = make_client(handler)

        shipment = await client.create_shipment(shipment_request)

        assert shipment.tracking_number == "794953555571"
        assert shipment.label_data == "JVBERi0xLjQK"
        assert shipment.label_format == "ZPL"
        assert shipment.rate == 14.62
        assert shipment.service_name == "FedEx Ground"
        assert shipment.carrier_shipment_id == "794953555571"
        assert shipment.status == ShipmentStatus.LABEL_CREATED

    @pytest.mark.asyncio
    async def test_ship_request_body(self, shipment_request):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            SHIP_PATH: lambda r: httpx.Response(200, json=SHIP_RESPONSE),
        })
        client = make_client(handler)

        await client.create_shipment(shipment_request)

        body = json.loads(handler.requests[-1].content)
        shipment = body["requestedShipment"]
        assert body["labelResponseOptions"] == "LABEL"
        assert shipment["serviceType"] == "FEDEX_GROUND"
        assert shipment["labelSpecification"] == {"imageType": "ZPLII", "labelStockType": "PAPER_4X6"}
        assert shipment["shipper"]["contact"]["companyName"] == "Storefront LLC"
        assert shipment["recipients"][0]["contact"]["phoneNumber"] == "0000000000"
        line_item = shipment["requestedPackageLineItems"][0]
        assert line_item["customerReferences"][0]["value"] == "ORD-4004"
        assert line_item["packageSpecialServices"]["specialServiceTypes"] == ["SIGNATURE_OPTION"]

    @pytest.mark.asyncio
    async def test_missing_piece_raises(self, shipment_request):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            SHIP_PATH: lambda r: httpx.Response(200, json={"output": {"transactionShipments": [{"pieceResponses": ["x"]}]}}),
        })
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="Failed to create FedEx shipment"):
            await client.create_shipment(shipment_request)


class TestFedExTracking:
    """Track by number."""

    @pytest.mark.asyncio
    async def test_delivered(self):
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            TRACK_PATH: lambda r: httpx.Response(200, json=TRACK_RESPONSE),
        })
        client = make_client(handler)

        info = await client.track_shipment(TrackingRequest(carrier=CarrierCode.FEDEX, tracking_number="794953555571"))

        assert info.status == ShipmentStatus.DELIVERED
        assert info.actual_delivery_date == "2024-05-03T14:10:00-07:00"
        assert info.delivery_signature == "J.BUYER"
        assert info.current_location == "PORTLAND, OR"
        assert info.events[0].postal_code == "97201"
        assert info.events[1].location == "TROUTDALE"
        assert info.events[1].status == "AR"
        assert info.tracking_url == "https://www.fedex.com/fedextrack/?trknbr=794953555571"
        sent = json.loads(handler.requests[-1].content)
        assert sent["trackingInfo"][0]["trackingNumberInfo"]["trackingNumber"] == "794953555571"
        assert sent["includeDetailedScans"] is True

    @pytest.mark.asyncio
    async def test_not_found_raises(self):
        body = {"output": {"completeTrackResults": [{"trackResults": [{
            "error": {"code": "TRACKING.TRACKINGNUMBER.NOTFOUND", "message": "Tracking number cannot be found."},
        }]}]}}
        handler = RecordingHandler({
            OAUTH_TOKEN_PATH: token_response,
            TRACK_PATH: lambda r: httpx.Response(200, json=body),
        })
        client = make_client(handler)

        with pytest.raises(CarrierResponseError, match="No FedEx tracking information found"):
            await client.track_shipment(TrackingRequest(carrier=CarrierCode.FEDEX, tracking_number="000000000000"))

    @pytest.mark.parametrize("code,description,expected", [
        ("DL", None, ShipmentStatus.DELIVERED),
        ("OD", None, ShipmentStatus.OUT_FOR_DELIVERY),
        ("DE", None, ShipmentStatus.EXCEPTION),
        ("RS", None, ShipmentStatus.RETURNED),
        ("CA", None, ShipmentStatus.CANCELLED),
        ("OC", None, ShipmentStatus.LABEL_CREATED),
        ("PU", None, ShipmentStatus.IN_TRANSIT),
        (None, "On FedEx vehicle for delivery, out for delivery", ShipmentStatus.OUT_FOR_DELIVERY),
        ("ZZ", "Delivered", ShipmentStatus.DELIVERED),
    ])
    def test_map_status(self, code, description, expected):
        assert map_status(code, description) == expected

    @pytest.mark.parametrize("value,expected", [
        ("TWO_DAYS", 2),
        ("3", 3),
        (5, 5),
        ("SOMEDAY", None),
        (None, None),
    ])
    def test_parse_transit_days(self, value, expected):
        assert parse_transit_days(value) == expected


class TestFedExConfig:
    def test_requires_account_number(self, test_settings):
        settings = test_settings.model_copy(update={"FEDEX_ACCOUNT_NUMBER": ""})
        with pytest.raises(CarrierConfigurationError, match="FedEx API credentials not configured"):
            get_fedex_credentials(settings)

    def test_sandbox_outside_production(self, test_settings):
        assert get_fedex_credentials(test_settings).base_url == FEDEX_SANDBOX_URL

    def test_production_host(self, test_settings):
        settings = test_settings.model_copy(update={"ENVIRONMENT": "production"})
        assert get_fedex_credentials(settings).base_url == FEDEX_PRODUCTION_URL
