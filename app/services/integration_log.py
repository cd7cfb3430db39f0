"""Integration activity log, persisted to the ``integration_logs`` table."""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import IntegrationLog, LogStatus

logger = logging.getLogger(__name__)


class PayloadEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors="replace")
        return super().default(obj)


def json_safe(data: Any) -> Any:
    """Round-trip through JSON so the value fits a JSON column."""
    if data is None:
        return None
    try:
        return json.loads(json.dumps(data, cls=PayloadEncoder))
    except (TypeError, ValueError):
        return {"repr": repr(data)}


class IntegrationLogger:
    """Writes one row per integration action.

    Log writes never raise into the caller: a failed insert is rolled back
    and reported through :mod:`logging`.
    """

    @staticmethod
    async def log(
        db: AsyncSession,
        tenant_id: Optional[uuid.UUID],
        integration_account_id: Optional[uuid.UUID],
        action: str,
        status: LogStatus,
        message: Optional[str] = None,
        request_data: Any = None,
        response_data: Any = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        items_count: Optional[int] = None,
    ) -> Optional[IntegrationLog]:
        entry = IntegrationLog(
            tenant_id=tenant_id,
            integration_account_id=integration_account_id,
            action=action,
            status=LogStatus(status).value,
            message=message,
            request_data=json_safe(request_data),
            response_data=json_safe(response_data),
            error_message=error_message,
            duration_ms=duration_ms,
            items_count=items_count,
        )
        try:
            db.add(entry)
            await db.commit()
        except SQLAlchemyError:
            logger.exception(f"Failed to log integration activity: {action}")
            await db.rollback()
            return None
        return entry

    @classmethod
    async def success(
        cls,
        db: AsyncSession,
        tenant_id: Optional[uuid.UUID],
        integration_account_id: Optional[uuid.UUID],
        action: str,
        message: Optional[str] = None,
        request_data: Any = None,
        response_data: Any = None,
        duration_ms: Optional[int] = None,
        items_count: Optional[int] = None,
    ) -> Optional[IntegrationLog]:
        return await cls.log(
            db, tenant_id, integration_account_id, action, LogStatus.SUCCESS,
            message=message, request_data=request_data, response_data=response_data,
            duration_ms=duration_ms, items_count=items_count,
        )

    @classmethod
    async def error(
        cls,
        db: AsyncSession,
        tenant_id: Optional[uuid.UUID],
        integration_account_id: Optional[uuid.UUID],
        action: str,
        error_message: str,
        request_data: Any = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[IntegrationLog]:
        return await cls.log(
            db, tenant_id, integration_account_id, action, LogStatus.ERROR,
            request_data=request_data, error_message=error_message, duration_ms=duration_ms,
        )

    @staticmethod
    async def cleanup(db: AsyncSession, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete SUCCESS/INFO rows older than the retention window. Errors are kept."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        result = await db.execute(
            delete(IntegrationLog).where(
                IntegrationLog.created_at < cutoff,
                IntegrationLog.status.in_([LogStatus.SUCCESS.value, LogStatus.INFO.value]),
            )
        )
        await db.commit()
        return result.rowcount or 0
