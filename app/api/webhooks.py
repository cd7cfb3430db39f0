"""Inbound vendor webhooks (unauthenticated; tenant from ``X-Tenant-ID``)."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import UnsupportedPlatformError, WebhookVerificationError
from app.models import COURIER_PLATFORMS, Platform, Tenant
from app.services.tenant import webhook_tenant
from app.services.webhooks import WebhookProcessor, parse_webhook_platform, verify_subscription

router = APIRouter(prefix="/integrations", tags=["webhooks"])


def _handshake(platform: str, mode, token, challenge) -> PlainTextResponse:
    try:
        return PlainTextResponse(verify_subscription(platform, mode, token, challenge))
    except WebhookVerificationError:
        raise HTTPException(403, "Verification failed")


async def _process(request: Request, db: AsyncSession, tenant: Tenant, platform, signature: Optional[str]) -> dict:
    body = await request.body()
    return await WebhookProcessor(db, tenant.id).process(platform, body, signature)


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    x_platform: Optional[str] = Header(None),
    x_signature: Optional[str] = Header(None),
    tenant: Tenant = Depends(webhook_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Generic receiver; the vendor is named by the ``X-Platform`` header."""
    if not x_platform:
        raise HTTPException(400, "X-Platform header is required")
    platform = parse_webhook_platform(x_platform)
    return await _process(request, db, tenant, platform, x_signature)


@router.get("/webhook")
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    platform: str = Query("facebook"),
):
    try:
        parse_webhook_platform(platform)
    except UnsupportedPlatformError:
        raise HTTPException(400, f"Unsupported platform: {platform}")
    return _handshake(platform, mode, token, challenge)


@router.get("/facebook/webhook")
async def verify_facebook_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    return _handshake("facebook", mode, token, challenge)


@router.post("/facebook/webhook")
async def facebook_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    tenant: Tenant = Depends(webhook_tenant),
    db: AsyncSession = Depends(get_db),
):
    return await _process(request, db, tenant, Platform.FACEBOOK_MARKETPLACE, x_hub_signature_256)


@router.get("/whatsapp/webhook")
async def verify_whatsapp_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    return _handshake("whatsapp", mode, token, challenge)


@router.post("/whatsapp/webhook")
async def whatsapp_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    tenant: Tenant = Depends(webhook_tenant),
    db: AsyncSession = Depends(get_db),
):
    return await _process(request, db, tenant, Platform.WHATSAPP_BUSINESS, x_hub_signature_256)


@router.post("/{courier}/webhook")
async def courier_webhook(
    courier: str,
    request: Request,
    x_signature: Optional[str] = Header(None),
    tenant: Tenant = Depends(webhook_tenant),
    db: AsyncSession = Depends(get_db),
):
    try:
        platform = Platform.parse(courier)
    except ValueError:
        raise HTTPException(404, f"Unknown courier: {courier}")
    if platform not in COURIER_PLATFORMS:
        raise HTTPException(404, f"Unknown courier: {courier}")
    return await _process(request, db, tenant, platform, x_signature)
