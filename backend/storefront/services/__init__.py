"""
Shipping services
"""
from storefront.services.shipping_config_service import ShippingConfigService
from storefront.services.rate_service import ShippingRateService, RateQuoteResult, RateError
from storefront.services.label_service import LabelService, track_shipment

__all__ = [
    "ShippingConfigService",
    "ShippingRateService",
    "RateQuoteResult",
    "RateError",
    "LabelService",
    "track_shipment",
]
