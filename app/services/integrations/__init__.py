"""Platform integration services."""

from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import UnsupportedPlatformError
from app.models import IntegrationAccount, Platform
from app.services.integrations.base import PLATFORM_CONFIGS, BaseIntegrationService
from app.services.integrations.courier import CourierService
from app.services.integrations.facebook import FacebookMarketplaceService
from app.services.integrations.ikman import IkmanService
from app.services.integrations.whatsapp import WhatsAppBusinessService

SERVICES: dict[Platform, type[BaseIntegrationService]] = {
    Platform.FACEBOOK_MARKETPLACE: FacebookMarketplaceService,
    Platform.WHATSAPP_BUSINESS: WhatsAppBusinessService,
    Platform.IKMAN_LK: IkmanService,
    Platform.ARAMEX: CourierService,
    Platform.DHL: CourierService,
    Platform.DOMEX: CourierService,
}


def create_service(
    platform,
    db: AsyncSession,
    account: IntegrationAccount,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseIntegrationService:
    """Service instance for ``platform`` bound to ``account``."""
    try:
        key = platform if isinstance(platform, Platform) else Platform.parse(platform)
    except ValueError:
        raise UnsupportedPlatformError(str(platform))
    return SERVICES[key](db, account, transport)


__all__ = [
    "PLATFORM_CONFIGS",
    "BaseIntegrationService",
    "CourierService",
    "FacebookMarketplaceService",
    "IkmanService",
    "WhatsAppBusinessService",
    "create_service",
]
