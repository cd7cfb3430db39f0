"""Tenant resolution."""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.models import Tenant
from app.services.auth import get_current_user


async def get_or_create_tenant(db: AsyncSession, slug: str, name: Optional[str] = None) -> Tenant:
    result = await db.execute(select(Tenant).where(Tenant.slug == slug))
    tenant = result.scalar_one_or_none()
    if tenant:
        return tenant
    tenant = Tenant(slug=slug, name=name or slug)
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    return tenant


async def get_or_create_default_tenant(db: AsyncSession) -> Tenant:
    settings = get_settings()
    return await get_or_create_tenant(db, settings.default_tenant_slug, settings.default_tenant_name)


async def current_tenant(
    user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Tenant:
    """Dependency for authenticated routes: tenant from the JWT ``tenant`` claim, else the default."""
    slug = user.get("tenant")
    if slug:
        return await get_or_create_tenant(db, slug)
    return await get_or_create_default_tenant(db)


async def webhook_tenant(
    x_tenant_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Tenant:
    """Dependency for unauthenticated vendor callbacks: ``X-Tenant-ID`` slug, else the default tenant."""
    if x_tenant_id:
        result = await db.execute(select(Tenant).where(Tenant.slug == x_tenant_id))
        tenant = result.scalar_one_or_none()
        if not tenant or not tenant.is_active:
            raise HTTPException(404, "Tenant not found")
        return tenant
    return await get_or_create_default_tenant(db)
