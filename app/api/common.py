"""Helpers shared by the integration routers."""

import math
from typing import Iterable, Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import IntegrationAccount, Platform


def parse_platform(value: str) -> Platform:
    try:
        return Platform.parse(value)
    except ValueError:
        raise HTTPException(400, f"Unsupported platform: {value}")


async def get_tenant_account(
    db: AsyncSession,
    tenant_id: UUID,
    integration_id: UUID,
    platforms: Optional[Iterable[Platform]] = None,
    active_only: bool = False,
) -> IntegrationAccount:
    stmt = select(IntegrationAccount).where(
        IntegrationAccount.id == integration_id,
        IntegrationAccount.tenant_id == tenant_id,
    )
    if platforms:
        stmt = stmt.where(IntegrationAccount.platform.in_([p.value for p in platforms]))
    if active_only:
        stmt = stmt.where(IntegrationAccount.is_active.is_(True))
    account = (await db.execute(stmt)).scalar_one_or_none()
    if not account:
        raise HTTPException(404, "Integration not found")
    return account


async def first_active_account(db: AsyncSession, tenant_id: UUID, platform: Platform) -> Optional[IntegrationAccount]:
    result = await db.execute(
        select(IntegrationAccount)
        .where(
            IntegrationAccount.tenant_id == tenant_id,
            IntegrationAccount.platform == platform.value,
            IntegrationAccount.is_active.is_(True),
        )
        .order_by(IntegrationAccount.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def paginate(db: AsyncSession, stmt: Select, page: int, limit: int) -> dict:
    """Run ``stmt`` for one page; returns ``{items, page, limit, total, pages}``."""
    total = (await db.execute(select(func.count()).select_from(stmt.order_by(None).subquery()))).scalar_one()
    result = await db.execute(stmt.offset((page - 1) * limit).limit(limit))
    return {
        "items": list(result.scalars().all()),
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }
