"""Integration account management API."""

import uuid
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import get_tenant_account, paginate, parse_platform
from app.database import get_db
from app.models import (
    IntegrationAccount,
    IntegrationLog,
    ListingLink,
    Message,
    Platform,
    Shipment,
    Tenant,
)
from app.schemas import (
    ConnectionTestOut,
    IntegrationCreate,
    IntegrationLogOut,
    IntegrationOut,
    IntegrationUpdate,
    Page,
)
from app.services.crypto import EncryptionService
from app.services.integrations import create_service
from app.services.tenant import current_tenant

router = APIRouter(prefix="/integrations", tags=["integrations"])

SECRET_FIELDS = ("access_token", "refresh_token", "api_key", "api_secret", "webhook_secret")


def default_account_id(platform: Platform, settings: dict) -> str:
    if platform == Platform.FACEBOOK_MARKETPLACE and settings.get("page_id"):
        return str(settings["page_id"])
    if platform == Platform.WHATSAPP_BUSINESS and settings.get("phone_number_id"):
        return str(settings["phone_number_id"])
    return f"{platform.value.lower()}_{uuid.uuid4().hex[:12]}"


async def account_out(db: AsyncSession, account: IntegrationAccount) -> IntegrationOut:
    logs = await db.execute(
        select(IntegrationLog)
        .where(IntegrationLog.integration_account_id == account.id)
        .order_by(IntegrationLog.created_at.desc())
        .limit(5)
    )
    counts = {}
    for name, model in (("logs", IntegrationLog), ("shipments", Shipment), ("messages", Message)):
        counts[name] = (await db.execute(
            select(func.count()).select_from(model).where(model.integration_account_id == account.id)
        )).scalar_one()
    return IntegrationOut.from_account(account, recent_logs=logs.scalars().all(), counts=counts)


@router.get("", response_model=list[IntegrationOut])
async def list_integrations(
    platform: str | None = None,
    status: str | None = Query(None, pattern="^(active|inactive)$"),
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(IntegrationAccount).where(IntegrationAccount.tenant_id == tenant.id)
    if platform:
        stmt = stmt.where(IntegrationAccount.platform == parse_platform(platform).value)
    if status:
        stmt = stmt.where(IntegrationAccount.is_active.is_(status == "active"))
    result = await db.execute(stmt.order_by(IntegrationAccount.created_at.desc()))
    return [await account_out(db, account) for account in result.scalars().all()]


@router.post("", response_model=IntegrationOut, status_code=201)
async def create_integration(
    data: IntegrationCreate,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    platform = parse_platform(data.platform)
    account_id = data.account_id or default_account_id(platform, data.settings)
    existing = await db.execute(
        select(IntegrationAccount.id).where(
            IntegrationAccount.tenant_id == tenant.id,
            IntegrationAccount.platform == platform.value,
            IntegrationAccount.account_id == account_id,
        )
    )
    if existing.first():
        raise HTTPException(409, "Integration account already exists")

    account = IntegrationAccount(
        tenant_id=tenant.id,
        platform=platform.value,
        account_id=account_id,
        account_name=data.account_name,
        settings=data.settings,
        expires_at=data.expires_at,
        **{name: EncryptionService.encrypt_optional(getattr(data, name)) for name in SECRET_FIELDS},
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return await account_out(db, account)


@router.get("/{integration_id}", response_model=IntegrationOut)
async def get_integration(
    integration_id: UUID,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    account = await get_tenant_account(db, tenant.id, integration_id)
    return await account_out(db, account)


@router.patch("/{integration_id}", response_model=IntegrationOut)
async def update_integration(
    integration_id: UUID,
    data: IntegrationUpdate,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Partial update. ``settings`` is merged; an empty string clears a secret."""
    account = await get_tenant_account(db, tenant.id, integration_id)
    updates = data.model_dump(exclude_unset=True)
    for name in SECRET_FIELDS:
        if name in updates:
            setattr(account, name, EncryptionService.encrypt_optional(updates.pop(name)))
    if updates.get("settings") is not None:
        account.settings = {**(account.settings or {}), **updates.pop("settings")}
    for key, val in updates.items():
        if val is not None:
            setattr(account, key, val)
    await db.commit()
    await db.refresh(account)
    return await account_out(db, account)


@router.delete("/{integration_id}", status_code=204)
async def delete_integration(
    integration_id: UUID,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    account = await get_tenant_account(db, tenant.id, integration_id)
    shipments = (await db.execute(
        select(func.count()).select_from(Shipment).where(Shipment.integration_account_id == account.id)
    )).scalar_one()
    if shipments:
        raise HTTPException(409, "Integration has shipments; deactivate it instead")
    await db.execute(delete(ListingLink).where(ListingLink.integration_account_id == account.id))
    await db.delete(account)
    await db.commit()


@router.post("/{integration_id}/test", response_model=ConnectionTestOut)
async def test_integration(
    integration_id: UUID,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    account = await get_tenant_account(db, tenant.id, integration_id)
    service = create_service(account.platform, db, account)
    connected = await service.test_connection()
    return ConnectionTestOut(integration_id=integration_id, platform=account.platform, connected=connected)


@router.get("/{integration_id}/status")
async def integration_status(
    integration_id: UUID,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    account = await get_tenant_account(db, tenant.id, integration_id)
    return await create_service(account.platform, db, account).get_status()


@router.get("/{integration_id}/logs", response_model=Page[IntegrationLogOut])
async def integration_logs(
    integration_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: str | None = None,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    account = await get_tenant_account(db, tenant.id, integration_id)
    stmt = select(IntegrationLog).where(IntegrationLog.integration_account_id == account.id)
    if status:
        stmt = stmt.where(IntegrationLog.status == status.upper())
    return await paginate(db, stmt.order_by(IntegrationLog.created_at.desc()), page, limit)
