"""
API dependencies
"""
import hmac
from typing import Any, Callable, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.database import get_db
from storefront.modules.shipping import get_carrier_client
from storefront.services.label_service import LabelService
from storefront.services.rate_service import ShippingRateService
from storefront.services.shipping_config_service import ShippingConfigService


async def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    """Require the admin API key header"""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled"
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )


def get_client_factory() -> Callable[..., Any]:
    """Carrier client factory used by the routes (overridden in tests)"""
    return get_carrier_client


async def get_rate_service(
    db: AsyncSession = Depends(get_db),
    client_factory: Callable[..., Any] = Depends(get_client_factory),
) -> ShippingRateService:
    return ShippingRateService(db, client_factory=client_factory)


async def get_label_service(
    db: AsyncSession = Depends(get_db),
    client_factory: Callable[..., Any] = Depends(get_client_factory),
) -> LabelService:
    return LabelService(db, client_factory=client_factory)


async def get_config_service(db: AsyncSession = Depends(get_db)) -> ShippingConfigService:
    return ShippingConfigService(db)
