"""Courier accounts and shipments."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import get_tenant_account, paginate, parse_platform
from app.api.integrations import account_out, default_account_id
from app.database import get_db
from app.errors import IntegrationError
from app.models import COURIER_PLATFORMS, IntegrationAccount, Shipment, ShipmentStatus, Tenant
from app.schemas import (
    CourierCreate,
    IntegrationOut,
    Page,
    ShipmentCreate,
    ShipmentCreated,
    ShipmentOut,
)
from app.services.crypto import EncryptionService
from app.services.integrations import CourierService
from app.services.integrations.courier import PackageSpec, ShipmentRequest
from app.services.tenant import current_tenant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["couriers"])

_COURIER_VALUES = [p.value for p in COURIER_PLATFORMS]


def _courier_platform(value: str):
    platform = parse_platform(value)
    if platform not in COURIER_PLATFORMS:
        raise HTTPException(400, f"{platform.value} is not a courier platform")
    return platform


# ── Courier accounts ─────────────────────────────────────

@router.get("/couriers", response_model=list[IntegrationOut])
async def list_couriers(
    platform: str | None = None,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(IntegrationAccount).where(IntegrationAccount.tenant_id == tenant.id)
    if platform:
        stmt = stmt.where(IntegrationAccount.platform == _courier_platform(platform).value)
    else:
        stmt = stmt.where(IntegrationAccount.platform.in_(_COURIER_VALUES))
    result = await db.execute(stmt.order_by(IntegrationAccount.created_at.desc()))
    return [await account_out(db, account) for account in result.scalars().all()]


@router.post("/couriers", response_model=IntegrationOut, status_code=201)
async def create_courier(
    data: CourierCreate,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    platform = _courier_platform(data.platform)
    account_id = data.account_id or default_account_id(platform, {})
    existing = await db.execute(
        select(IntegrationAccount.id).where(
            IntegrationAccount.tenant_id == tenant.id,
            IntegrationAccount.platform == platform.value,
            IntegrationAccount.account_id == account_id,
        )
    )
    if existing.first():
        raise HTTPException(409, "Courier account already exists")
    account = IntegrationAccount(
        tenant_id=tenant.id,
        platform=platform.value,
        account_id=account_id,
        account_name=data.account_name,
        api_key=EncryptionService.encrypt_optional(data.api_key),
        api_secret=EncryptionService.encrypt_optional(data.api_secret),
        webhook_secret=EncryptionService.encrypt_optional(data.webhook_secret),
        settings={
            "origin_country": data.origin_country,
            "origin_city": data.origin_city,
            "account_number": data.account_number,
        },
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return await account_out(db, account)


# ── Shipments ────────────────────────────────────────────

@router.post("/shipments", response_model=ShipmentCreated, status_code=201)
async def create_shipment(
    data: ShipmentCreate,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    account = await get_tenant_account(
        db, tenant.id, data.integration_id, platforms=COURIER_PLATFORMS, active_only=True,
    )
    service = CourierService(db, account)
    tracking_number = await service.create_shipment(ShipmentRequest(
        order_id=data.order_id,
        recipient=data.recipient.model_dump(),
        packages=[PackageSpec(**p.model_dump()) for p in data.packages],
        service_type=data.service_type,
    ))
    return ShipmentCreated(
        tracking_number=tracking_number,
        courier=account.platform,
        integration=account.account_name,
    )


@router.get("/shipments", response_model=Page[ShipmentOut])
async def list_shipments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    tracking_number: str | None = None,
    status: str | None = None,
    courier: str | None = None,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Shipment).where(Shipment.tenant_id == tenant.id)
    if tracking_number:
        stmt = stmt.where(Shipment.tracking_number.ilike(f"%{tracking_number}%"))
    if status and status.upper() != "ALL":
        try:
            stmt = stmt.where(Shipment.status == ShipmentStatus(status.upper()).value)
        except ValueError:
            raise HTTPException(400, f"Unknown shipment status: {status}")
    if courier:
        stmt = stmt.where(Shipment.courier_name == _courier_platform(courier).value)
    return await paginate(db, stmt.order_by(Shipment.created_at.desc()), page, limit)


@router.get("/shipments/track")
async def track_shipment(
    tracking_number: str | None = None,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    if not tracking_number:
        raise HTTPException(400, "tracking_number is required")
    result = await db.execute(
        select(Shipment).where(Shipment.tenant_id == tenant.id, Shipment.tracking_number == tracking_number)
    )
    shipment = result.scalar_one_or_none()
    if not shipment:
        raise HTTPException(404, "Shipment not found")
    account = await get_tenant_account(db, tenant.id, shipment.integration_account_id)
    info = await CourierService(db, account).track_shipment(tracking_number)
    await db.refresh(shipment)
    return {"shipment": ShipmentOut.model_validate(shipment), "tracking": info.to_dict()}


@router.put("/shipments/track")
async def sync_all_shipments(tenant: Tenant = Depends(current_tenant), db: AsyncSession = Depends(get_db)):
    """Re-track open shipments on every active courier account of the tenant."""
    result = await db.execute(
        select(IntegrationAccount).where(
            IntegrationAccount.tenant_id == tenant.id,
            IntegrationAccount.platform.in_(_COURIER_VALUES),
            IntegrationAccount.is_active.is_(True),
        )
    )
    results = []
    for account in result.scalars().all():
        account_id: UUID = account.id
        try:
            summary = await CourierService(db, account).sync_data()
        except IntegrationError as e:
            logger.warning(f"Courier sync failed for {account_id}: {e}")
            results.append({"integration_id": str(account_id), "status": "failed", "error": str(e)})
            continue
        results.append({"integration_id": str(account_id), "status": "success", **summary})
    return {"results": results}
