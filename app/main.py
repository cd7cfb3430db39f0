"""ERP Integration Hub: FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import engine, Base
from app.errors import IntegrationError
from app.api import auth_routes, webhooks, facebook, whatsapp, couriers
from app.api import messages, sync, integrations
from app.services.jobs import job_manager
from app.services.notification import notification_service

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables on startup (use Alembic in production)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    notification_service.configure(settings)
    job_manager.start()
    yield
    await job_manager.stop()
    await notification_service.drain()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=VERSION,
    description="Integration hub connecting the ERP to Facebook Marketplace, "
                "WhatsApp Business, ikman.lk and the Aramex, DHL and Domex couriers",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Register routers. Platform-specific paths must precede /integrations/{integration_id}.
app.include_router(auth_routes.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")
app.include_router(facebook.router, prefix="/api/v1")
app.include_router(whatsapp.router, prefix="/api/v1")
app.include_router(couriers.router, prefix="/api/v1")
app.include_router(messages.router, prefix="/api/v1")
app.include_router(sync.router, prefix="/api/v1")
app.include_router(integrations.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": VERSION,
        "job_queue": job_manager.get_status(),
    }
