"""In-process job queue for scheduled integration syncs and log cleanup."""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select

from app.config import get_settings
from app.database import async_session
from app.errors import IntegrationAPIError
from app.models import IntegrationAccount, LogStatus
from app.services.integration_log import IntegrationLogger
from app.services.integrations import create_service
from app.services.notification import notification_service

logger = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    interval: float
    initial_delay: float
    func: Callable[[], Awaitable[Any]]
    task: Optional[asyncio.Task] = None
    runs: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "interval_seconds": self.interval,
            "runs": self.runs,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
        }


def _summary(result: Any) -> Any:
    if isinstance(result, dict):
        return {k: v for k, v in result.items() if k != "results"}
    return result


class JobQueue:
    """Runs the periodic ``integration_sync`` and ``cleanup_logs`` jobs.

    Every job opens its own session from ``session_factory``; one account's
    failure is logged and never stops the loop. A per-account lock keeps a
    scheduled run and a manual trigger from syncing the same account at once.
    """

    def __init__(
        self,
        session_factory=None,
        service_factory=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory or async_session
        self.service_factory = service_factory or create_service
        self.sleep = sleep
        self._jobs: dict[str, Job] = {}
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ── lifecycle ────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            logger.info("Job queue already running")
            return
        settings = get_settings()
        self._running = True
        self._schedule(
            "integration_sync",
            settings.sync_interval_seconds,
            settings.initial_sync_delay_seconds,
            self.sync_all_integrations,
        )
        self._schedule(
            "cleanup_logs",
            settings.cleanup_interval_seconds,
            settings.initial_cleanup_delay_seconds,
            self.cleanup_old_logs,
        )
        logger.info(f"Job queue started with jobs: {', '.join(self._jobs)}")

    async def stop(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        self._running = False
        logger.info("Job queue stopped")

    def _schedule(self, name: str, interval: float, initial_delay: float, func) -> None:
        job = Job(name=name, interval=interval, initial_delay=initial_delay, func=func)
        job.task = asyncio.create_task(self._run(job), name=f"job:{name}")
        self._jobs[name] = job

    async def _run(self, job: Job) -> None:
        await asyncio.sleep(job.initial_delay)
        while True:
            try:
                await job.func()
                job.last_error = None
            except Exception as e:
                job.last_error = str(e)
                logger.exception(f"Job {job.name} failed")
            job.runs += 1
            job.last_run = datetime.now(timezone.utc)
            await asyncio.sleep(job.interval)

    def get_status(self) -> dict:
        return {
            "is_running": self._running,
            "active_jobs": [name for name, job in self._jobs.items() if job.task and not job.task.done()],
            "job_types": list(self._jobs),
            "last_runs": {name: job.to_dict() for name, job in self._jobs.items()},
        }

    # ── sync ─────────────────────────────────────────────

    async def sync_all_integrations(self, tenant_id: Optional[uuid.UUID] = None) -> list[dict]:
        async with self.session_factory() as db:
            stmt = select(IntegrationAccount.id).where(IntegrationAccount.is_active.is_(True))
            if tenant_id:
                stmt = stmt.where(IntegrationAccount.tenant_id == tenant_id)
            account_ids = list((await db.execute(stmt.order_by(IntegrationAccount.created_at))).scalars().all())

        logger.info(f"Syncing {len(account_ids)} active integrations")
        results = []
        for account_id in account_ids:
            try:
                result = await self.sync_single_integration(account_id)
            except Exception as e:
                results.append({"integration_id": str(account_id), "status": "failed", "error": str(e)})
                continue
            results.append({"integration_id": str(account_id), "status": "success", "result": _summary(result)})
        return results

    async def sync_single_integration(self, account_id: uuid.UUID) -> dict:
        """Sync one account, retrying transient vendor failures with exponential backoff."""
        settings = get_settings()
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            async with self.session_factory() as db:
                account = await db.get(IntegrationAccount, account_id)
                if not account:
                    raise LookupError(f"Integration {account_id} not found")
                tenant_id = account.tenant_id
                info = {
                    "integration_id": str(account_id),
                    "platform": account.platform,
                    "account_name": account.account_name,
                }

                attempt = 0
                while True:
                    attempt += 1
                    started = time.monotonic()
                    try:
                        service = self.service_factory(account.platform, db, account)
                        result = await service.sync_data()
                    except IntegrationAPIError as e:
                        if e.retryable and attempt < settings.sync_max_attempts:
                            delay = settings.sync_retry_backoff_seconds * 2 ** (attempt - 1)
                            logger.warning(
                                f"Sync of {account_id} failed (attempt {attempt}/{settings.sync_max_attempts}), "
                                f"retrying in {delay:.1f}s: {e}"
                            )
                            await self.sleep(delay)
                            continue
                        await self._sync_failed(db, tenant_id, account_id, info, e, attempt, started)
                        raise
                    except Exception as e:
                        await db.rollback()
                        await self._sync_failed(db, tenant_id, account_id, info, e, attempt, started)
                        raise
                    break

                await IntegrationLogger.log(
                    db, tenant_id, account_id, "scheduled_sync", LogStatus.SUCCESS,
                    message=f"Synced {account.account_name}",
                    response_data=_summary(result),
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
        notification_service.notify_sync_result(info, result=_summary(result))
        return result

    @staticmethod
    async def _sync_failed(db, tenant_id, account_id, info, error, attempts, started) -> None:
        logger.error(f"Sync of integration {account_id} failed after {attempts} attempt(s): {error}")
        await IntegrationLogger.log(
            db, tenant_id, account_id, "scheduled_sync", LogStatus.ERROR,
            error_message=str(error),
            request_data={"attempts": attempts},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        notification_service.notify_sync_result(info, error=str(error))

    async def trigger_sync(self, account_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> bool:
        """Run one sync now. False when the account is unknown, inactive, foreign or the sync failed."""
        async with self.session_factory() as db:
            account = await db.get(IntegrationAccount, account_id)
            if not account or not account.is_active:
                return False
            if tenant_id and account.tenant_id != tenant_id:
                return False
        try:
            await self.sync_single_integration(account_id)
        except Exception as e:
            logger.warning(f"Manual sync of {account_id} failed: {e}")
            return False
        return True

    # ── maintenance ──────────────────────────────────────

    async def cleanup_old_logs(self) -> int:
        retention = get_settings().log_retention_days
        async with self.session_factory() as db:
            deleted = await IntegrationLogger.cleanup(db, retention)
            await IntegrationLogger.log(
                db, None, None, "cleanup_logs", LogStatus.SUCCESS,
                message=f"Deleted {deleted} integration logs older than {retention} days",
                items_count=deleted,
            )
        logger.info(f"Cleaned up {deleted} old integration logs")
        return deleted


class BackgroundJobManager:
    """Lifespan-facing wrapper around the job queue."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    def start(self, force: bool = False) -> bool:
        if not force and not get_settings().job_queue_enabled:
            logger.info("Job queue disabled by configuration")
            return False
        self.queue.start()
        return True

    async def stop(self) -> None:
        if self.queue.is_running:
            await self.queue.stop()

    def get_status(self) -> dict:
        return self.queue.get_status()

    async def trigger_integration_sync(self, account_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> bool:
        return await self.queue.trigger_sync(account_id, tenant_id)

    async def trigger_all_syncs(self, tenant_id: Optional[uuid.UUID] = None) -> list[dict]:
        return await self.queue.sync_all_integrations(tenant_id)


job_queue = JobQueue()
job_manager = BackgroundJobManager(job_queue)
