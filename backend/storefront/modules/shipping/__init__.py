"""
Shipping module

Carrier clients live under storefront.modules.shipping.carriers and are built
through the registry there. Import from this package in application code.
"""
from storefront.modules.shipping.carriers import (
    CarrierFactory,
    get_carrier_client,
)
from storefront.modules.shipping.carriers.base import ShippingCarrierClient

__all__ = [
    "CarrierFactory",
    "get_carrier_client",
    "ShippingCarrierClient",
]
