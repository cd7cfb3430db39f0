"""WhatsApp Business status, sending and sync."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import first_active_account, get_tenant_account
from app.database import get_db
from app.models import Platform, Tenant
from app.schemas import WhatsAppSendRequest
from app.services.integrations import WhatsAppBusinessService
from app.services.tenant import current_tenant

router = APIRouter(prefix="/integrations/whatsapp", tags=["whatsapp"])


async def _service(db: AsyncSession, tenant: Tenant, integration_id=None) -> WhatsAppBusinessService:
    if integration_id:
        account = await get_tenant_account(
            db, tenant.id, integration_id, platforms=[Platform.WHATSAPP_BUSINESS], active_only=True,
        )
    else:
        account = await first_active_account(db, tenant.id, Platform.WHATSAPP_BUSINESS)
    if not account:
        raise HTTPException(404, "WhatsApp integration not configured")
    return WhatsAppBusinessService(db, account)


@router.get("")
async def whatsapp_status(tenant: Tenant = Depends(current_tenant), db: AsyncSession = Depends(get_db)):
    service = await _service(db, tenant)
    return await service.get_status()


@router.post("/send")
async def send_whatsapp_message(
    data: WhatsAppSendRequest,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    service = await _service(db, tenant, data.integration_id)
    message_id = await service.send_message(data.to, data.message, data.message_type)
    return {"message_id": message_id, "to": data.to, "status": "SENT"}


@router.put("")
async def sync_whatsapp(tenant: Tenant = Depends(current_tenant), db: AsyncSession = Depends(get_db)):
    service = await _service(db, tenant)
    return await service.sync_data()
