"""Background sync queue control."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import IntegrationLog, Tenant
from app.schemas import IntegrationLogOut, SyncAction
from app.services.auth import get_current_user, require_admin
from app.services.jobs import job_manager
from app.services.tenant import current_tenant

router = APIRouter(prefix="/integrations/sync", tags=["sync"])


@router.get("")
async def sync_status(
    integration_id: UUID | None = None,
    tenant: Tenant = Depends(current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Queue status and recent logs, or run one account's sync when ``integration_id`` is given."""
    if integration_id:
        ok = await job_manager.trigger_integration_sync(integration_id, tenant.id)
        if not ok:
            raise HTTPException(400, "Sync failed or integration not active")
        return {"integration_id": str(integration_id), "status": "success"}

    result = await db.execute(
        select(IntegrationLog)
        .where(IntegrationLog.tenant_id == tenant.id)
        .order_by(IntegrationLog.created_at.desc())
        .limit(20)
    )
    return {
        "job_queue": job_manager.get_status(),
        "recent_logs": [IntegrationLogOut.model_validate(log) for log in result.scalars().all()],
    }


@router.post("")
async def sync_action(
    data: SyncAction,
    tenant: Tenant = Depends(current_tenant),
    user: dict = Depends(get_current_user),
):
    if data.action in ("start_queue", "stop_queue"):
        await require_admin(user)

    if data.action == "start_queue":
        started = job_manager.start(force=True)
        return {"action": data.action, "started": started, "job_queue": job_manager.get_status()}
    if data.action == "stop_queue":
        await job_manager.stop()
        return {"action": data.action, "job_queue": job_manager.get_status()}
    if data.action == "sync_all":
        results = await job_manager.trigger_all_syncs(tenant.id)
        return {"action": data.action, "results": results}
    raise HTTPException(400, f"Unknown action: {data.action}")
