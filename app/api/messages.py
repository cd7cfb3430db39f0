"""Stored customer messages."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.common import paginate
from app.database import get_db
from app.models import Message, MessageDirection, MessagePlatform, Tenant
from app.schemas import MessageOut, Page
from app.services.tenant import current_tenant

router = APIRouter(prefix="/integrations/messages", tags=["messages"])


@router.get("", response_model=Page[MessageOut])
async def list_messages(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    platform: str | None = None,
    direction: str | None = None,
    customer_id: UUID | None = None,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Message).where(Message.tenant_id == tenant.id)
    if platform:
        try:
            stmt = stmt.where(Message.platform == MessagePlatform(platform.upper()).value)
        except ValueError:
            raise HTTPException(400, f"Unknown message platform: {platform}")
    if direction:
        try:
            stmt = stmt.where(Message.direction == MessageDirection(direction.upper()).value)
        except ValueError:
            raise HTTPException(400, f"Unknown direction: {direction}")
    if customer_id:
        stmt = stmt.where(Message.customer_id == customer_id)
    return await paginate(db, stmt.order_by(Message.created_at.desc()), page, limit)
