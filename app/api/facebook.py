"""Facebook Marketplace configuration and sync."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import first_active_account
from app.api.integrations import account_out
from app.database import get_db
from app.models import IntegrationAccount, Platform, Tenant
from app.schemas import FacebookConfig
from app.services.crypto import EncryptionService
from app.services.integrations import FacebookMarketplaceService
from app.services.tenant import current_tenant

router = APIRouter(prefix="/integrations/facebook", tags=["facebook"])


async def _service(db: AsyncSession, tenant: Tenant) -> FacebookMarketplaceService:
    account = await first_active_account(db, tenant.id, Platform.FACEBOOK_MARKETPLACE)
    if not account:
        raise HTTPException(404, "Facebook integration not configured")
    return FacebookMarketplaceService(db, account)


@router.get("")
async def facebook_status(tenant: Tenant = Depends(current_tenant), db: AsyncSession = Depends(get_db)):
    service = await _service(db, tenant)
    return await service.get_status()


@router.post("")
async def configure_facebook(
    data: FacebookConfig,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Create or update the page account, then test the connection."""
    result = await db.execute(
        select(IntegrationAccount).where(
            IntegrationAccount.tenant_id == tenant.id,
            IntegrationAccount.platform == Platform.FACEBOOK_MARKETPLACE.value,
            IntegrationAccount.account_id == data.page_id,
        )
    )
    account = result.scalar_one_or_none()
    if not account:
        account = IntegrationAccount(
            tenant_id=tenant.id,
            platform=Platform.FACEBOOK_MARKETPLACE.value,
            account_id=data.page_id,
            settings={},
        )
        db.add(account)
    account.account_name = data.account_name
    account.access_token = EncryptionService.encrypt(data.access_token)
    if data.webhook_secret is not None:
        account.webhook_secret = EncryptionService.encrypt_optional(data.webhook_secret)
    account.settings = {**(account.settings or {}), "page_id": data.page_id}
    account.is_active = True
    await db.commit()
    await db.refresh(account)

    connected = await FacebookMarketplaceService(db, account).test_connection()
    return {"integration": await account_out(db, account), "connected": connected}


@router.put("")
async def sync_facebook(tenant: Tenant = Depends(current_tenant), db: AsyncSession = Depends(get_db)):
    service = await _service(db, tenant)
    return await service.sync_data()
