"""
Multi-carrier rate aggregation

- Queries every active carrier (optionally narrowed by the request) concurrently
- Applies the carrier's configured markup to live rates
- Falls back to the carrier's static rate table when it quotes nothing
- A failing carrier becomes an error entry instead of failing the request
- Returns the combined list sorted by price, lowest first

Usage:
    service = ShippingRateService(db)
    result = await service.get_rates(rate_request)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.models.carrier import CarrierConfig
from storefront.modules.shipping import get_carrier_client
from storefront.modules.shipping.carriers.base import RateRequest, ShippingRate
from storefront.services.shipping_config_service import ShippingConfigService

logger = logging.getLogger(__name__)

CARRIER_ERROR_MESSAGE = "Unable to fetch rates from carrier"
NO_CARRIERS_MESSAGE = "No shipping carriers are configured"


@dataclass
class RateError:
    """A carrier that could not be quoted."""
    carrier: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"carrier": self.carrier, "error": self.error}


@dataclass
class RateQuoteResult:
    rates: List[ShippingRate] = field(default_factory=list)
    errors: List[RateError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rates": [rate.to_dict() for rate in self.rates],
            "errors": [error.to_dict() for error in self.errors],
        }


def fallback_rates(config: CarrierConfig) -> List[ShippingRate]:
    """Build rates from the carrier's static fallback table."""
    rates = []
    for entry in config.fallback_rates or []:
        try:
            rate = float(entry["rate"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping malformed fallback rate for {config.carrier.value}: {entry}")
            continue
        rates.append(ShippingRate(
            carrier=config.carrier,
            service_code=str(entry.get("service_code", "STANDARD")),
            service_name=entry.get("service_name") or entry.get("service_code", "Standard"),
            rate=rate,
            currency=entry.get("currency", "USD"),
            delivery_days=entry.get("delivery_days"),
            is_fallback=True,
        ))
    return rates


class ShippingRateService:
    """Aggregates rate quotes across active carriers."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: Optional[Callable[..., Any]] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.config_service = ShippingConfigService(db)
        self._client_factory = client_factory or get_carrier_client
        self._settings = settings

    async def get_rates(self, request: RateRequest) -> RateQuoteResult:
        """
        Get rates from all active carriers.

        Args:
            request: Origin, destination, packages and optional carrier and
                service-type filters

        Returns:
            RateQuoteResult with rates sorted ascending and per-carrier errors
        """
        configs = await self.config_service.get_active_configs()
        if not configs:
            logger.warning("No carriers active for rate lookup")
            return RateQuoteResult(errors=[RateError(carrier="system", error=NO_CARRIERS_MESSAGE)])

        if request.carriers:
            wanted = set(request.carriers)
            configs = [c for c in configs if c.carrier in wanted]

        results = await asyncio.gather(*(self._rates_for_carrier(config, request) for config in configs))

        quote = RateQuoteResult()
        for result in results:
            if isinstance(result, RateError):
                quote.errors.append(result)
            else:
                quote.rates.extend(result)

        if request.service_types:
            service_types = {s.upper() for s in request.service_types}
            quote.rates = [r for r in quote.rates if r.service_code.upper() in service_types]

        quote.rates.sort(key=lambda r: r.rate)
        return quote

    async def _rates_for_carrier(
        self, config: CarrierConfig, request: RateRequest
    ) -> Union[List[ShippingRate], RateError]:
        carrier = config.carrier.value
        client = None
        try:
            client = self._client_factory(config.carrier, self._settings)
            logger.info(f"Fetching rates from {carrier}")
            rates = await client.get_rates(request)

            if not rates:
                rates = fallback_rates(config)
                logger.info(f"No live rates from {carrier}, using {len(rates)} fallback rates")
                return rates

            for rate in rates:
                rate.rate = config.apply_markup(rate.rate)
            logger.info(f"Got {len(rates)} rates from {carrier}")
            return rates

        except Exception as e:
            logger.error(f"Error getting rates from {carrier}: {e}")
            return RateError(carrier=carrier, error=CARRIER_ERROR_MESSAGE)

        finally:
            if client is not None:
                await client.close()
