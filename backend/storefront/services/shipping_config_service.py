"""
Shipping config store

CRUD over CarrierConfig rows. The rate and label services read activation,
origin address, markup and fallback rates from here.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import UnsupportedCarrierError
from storefront.models.carrier import CarrierCode, CarrierConfig

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "is_active",
    "origin_address",
    "default_package_dimensions",
    "markup_percentage",
    "markup_fixed",
    "free_shipping_threshold",
    "fallback_rates",
)


def to_carrier_code(carrier: Union[CarrierCode, str]) -> CarrierCode:
    try:
        return CarrierCode(carrier)
    except ValueError:
        raise UnsupportedCarrierError(f"Unsupported carrier: {carrier}", details={"carrier": str(carrier)})


class ShippingConfigService:
    """Read and write per-carrier shipping configuration."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_configs(self) -> List[CarrierConfig]:
        result = await self.db.execute(select(CarrierConfig).order_by(CarrierConfig.carrier))
        return list(result.scalars().all())

    async def get_config(self, carrier: Union[CarrierCode, str]) -> Optional[CarrierConfig]:
        code = to_carrier_code(carrier)
        result = await self.db.execute(select(CarrierConfig).where(CarrierConfig.carrier == code))
        return result.scalar_one_or_none()

    async def get_active_configs(self) -> List[CarrierConfig]:
        result = await self.db.execute(
            select(CarrierConfig)
            .where(CarrierConfig.is_active == True)  # noqa: E712
            .order_by(CarrierConfig.carrier)
        )
        return list(result.scalars().all())

    async def upsert_config(self, carrier: Union[CarrierCode, str], values: Dict[str, Any]) -> CarrierConfig:
        """
        Create or update the config row for a carrier.

        Only keys in UPDATABLE_FIELDS are applied; None values leave the
        stored value unchanged.
        """
        code = to_carrier_code(carrier)
        config = await self.get_config(code)
        created = config is None
        if created:
            config = CarrierConfig(
                carrier=code,
                is_active=False,
                markup_percentage=0.0,
                markup_fixed=0.0,
            )
            self.db.add(config)

        for key in UPDATABLE_FIELDS:
            if key in values and values[key] is not None:
                setattr(config, key, values[key])

        await self.db.flush()
        logger.info(f"Shipping config {'created' if created else 'updated'} for {code.value} (active={config.is_active})")
        return config

    async def delete_config(self, carrier: Union[CarrierCode, str]) -> bool:
        config = await self.get_config(carrier)
        if not config:
            return False
        await self.db.delete(config)
        await self.db.flush()
        logger.info(f"Shipping config deleted for {config.carrier.value}")
        return True
