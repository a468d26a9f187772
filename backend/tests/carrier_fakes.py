"""
In-memory carrier client and HTTP helpers shared by service and route tests.
"""
from typing import Callable, Dict, List, Optional

import httpx

from storefront.models.carrier import CarrierCode


class FakeCarrierClient:
    """Records calls and answers from canned data."""

    def __init__(
        self,
        carrier_code: CarrierCode,
        rates: Optional[List] = None,
        shipment=None,
        tracking=None,
        error: Optional[Exception] = None,
    ):
        self.carrier_code = carrier_code
        self.rates = rates or []
        self.shipment = shipment
        self.tracking = tracking
        self.error = error
        self.calls: List[str] = []
        self.closed = False

    async def get_rates(self, request):
        self.calls.append("get_rates")
        if self.error:
            raise self.error
        return list(self.rates)

    async def create_shipment(self, request):
        self.calls.append("create_shipment")
        if self.error:
            raise self.error
        return self.shipment

    async def track_shipment(self, request):
        self.calls.append("track_shipment")
        if self.error:
            raise self.error
        return self.tracking

    async def close(self):
        self.closed = True


def factory_for(clients: Dict[CarrierCode, FakeCarrierClient]) -> Callable:
    """A client_factory that hands out the given fakes by carrier code."""
    def factory(carrier_code, settings=None, **kwargs):
        return clients[CarrierCode(carrier_code)]
    return factory


class RecordingHandler:
    """httpx.MockTransport handler that routes by path and records requests."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for path, responder in self.routes.items():
            if request.url.path == path or request.url.path.startswith(path):
                return responder(request)
        return httpx.Response(404, text="not found")

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
