"""
Carrier Registry and Factory

- Each carrier module registers a factory function keyed by CarrierCode
- Factories read credentials from Settings and raise CarrierConfigurationError
  when required values are missing
- Carriers share helpers from base.py; there is no carrier base class
"""
from typing import Callable, Dict, List, Optional, Union
import logging

from storefront.core.config import Settings
from storefront.core.exceptions import UnsupportedCarrierError
from storefront.models.carrier import CarrierCode
from storefront.modules.shipping.carriers.base import ShippingCarrierClient

logger = logging.getLogger(__name__)

CarrierClientFactory = Callable[..., ShippingCarrierClient]

# Registry of carrier client factories
_CARRIER_REGISTRY: Dict[CarrierCode, CarrierClientFactory] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier client factory.

    Usage:
        @register_carrier(CarrierCode.DHL)
        def create_dhl_client(settings=None, **kwargs) -> DHLClient:
            ...
    """
    def decorator(factory: CarrierClientFactory):
        _CARRIER_REGISTRY[carrier_code] = factory
        logger.debug(f"Registered carrier: {carrier_code.value} -> {factory.__name__}")
        return factory
    return decorator


class CarrierFactory:
    """Factory for creating carrier clients by code."""

    @classmethod
    def get_carrier_client(
        cls,
        carrier_code: Union[CarrierCode, str],
        settings: Optional[Settings] = None,
        **kwargs,
    ) -> ShippingCarrierClient:
        """
        Build a client for a carrier.

        Args:
            carrier_code: CarrierCode or its string value
            settings: Settings to read credentials from (module settings by default)
            **kwargs: Passed to the client constructor (http_client, token_cache, ...)

        Raises:
            UnsupportedCarrierError: no factory registered for the code
            CarrierConfigurationError: credentials missing
        """
        try:
            code = CarrierCode(carrier_code)
        except ValueError:
            raise UnsupportedCarrierError(
                f"Unsupported carrier: {carrier_code}",
                details={"carrier": str(carrier_code)},
            )

        factory = _CARRIER_REGISTRY.get(code)
        if not factory:
            logger.warning(f"No implementation registered for carrier: {code.value}")
            raise UnsupportedCarrierError(f"Unsupported carrier: {code.value}", details={"carrier": code.value})

        return factory(settings, **kwargs)

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


def get_carrier_client(
    carrier_code: Union[CarrierCode, str],
    settings: Optional[Settings] = None,
    **kwargs,
) -> ShippingCarrierClient:
    """
    Convenience function to get a carrier client.

    Equivalent to CarrierFactory.get_carrier_client().
    """
    return CarrierFactory.get_carrier_client(carrier_code, settings, **kwargs)


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from storefront.modules.shipping.carriers.dhl import DHLClient, create_dhl_client  # noqa: E402, F401
from storefront.modules.shipping.carriers.canada_post import CanadaPostClient, create_canada_post_client  # noqa: E402, F401
from storefront.modules.shipping.carriers.ups import UPSClient, create_ups_client  # noqa: E402, F401
from storefront.modules.shipping.carriers.usps import USPSClient, create_usps_client  # noqa: E402, F401
from storefront.modules.shipping.carriers.fedex import FedExClient, create_fedex_client  # noqa: E402, F401
