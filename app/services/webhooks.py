"""Inbound webhook processing.

Turns a raw vendor callback into stored messages / shipment updates:
parse → find the tenant's account → verify signature → dedupe → normalize →
persist → log → notify.
"""

import hashlib
import hmac
import json
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import PayloadError, UnsupportedPlatformError, WebhookVerificationError
from app.models import (
    COURIER_PLATFORMS,
    IntegrationAccount,
    LogStatus,
    Platform,
    Shipment,
    WebhookReceipt,
)
from app.services.integration_log import IntegrationLogger
from app.services.integrations import create_service
from app.services.messaging import apply_status_update, upsert_inbound_message
from app.services.normalizers import (
    InboundMessage,
    normalize_courier,
    normalize_facebook,
    normalize_whatsapp,
)
from app.services.notification import NotificationService, notification_service
from app.services.shipments import apply_shipment_update

logger = logging.getLogger(__name__)

WEBHOOK_PLATFORMS = (Platform.FACEBOOK_MARKETPLACE, Platform.WHATSAPP_BUSINESS) + COURIER_PLATFORMS

_SHORT_NAMES = {
    Platform.FACEBOOK_MARKETPLACE: "facebook",
    Platform.WHATSAPP_BUSINESS: "whatsapp",
}


def short_name(platform: Platform) -> str:
    return _SHORT_NAMES.get(platform, platform.value.lower())


def parse_webhook_platform(value: Optional[str]) -> Platform:
    try:
        platform = Platform.parse(value or "")
    except ValueError:
        raise UnsupportedPlatformError(value)
    if platform not in WEBHOOK_PLATFORMS:
        raise UnsupportedPlatformError(value)
    return platform


def verify_subscription(platform: str, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
    """Meta-style ``hub.mode=subscribe`` handshake. Returns the challenge to echo back."""
    expected = get_settings().verify_token_for(short_name(parse_webhook_platform(platform)))
    if (
        mode == "subscribe"
        and expected
        and token
        and hmac.compare_digest(token.encode(), expected.encode())
    ):
        logger.info(f"Webhook subscription verified for {platform}")
        return challenge or ""
    logger.warning(f"Webhook subscription rejected for {platform}")
    raise WebhookVerificationError("Webhook verification failed")


class WebhookProcessor:
    """Processes vendor callbacks for one tenant."""

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: uuid.UUID,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.notifier = notifier or notification_service

    async def _account(self, platform: Platform) -> Optional[IntegrationAccount]:
        result = await self.db.execute(
            select(IntegrationAccount)
            .where(
                IntegrationAccount.tenant_id == self.tenant_id,
                IntegrationAccount.platform == platform.value,
                IntegrationAccount.is_active.is_(True),
            )
            .order_by(IntegrationAccount.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _seen(self, platform: Platform, fingerprint: str) -> bool:
        result = await self.db.execute(
            select(WebhookReceipt.id).where(
                WebhookReceipt.tenant_id == self.tenant_id,
                WebhookReceipt.platform == platform.value,
                WebhookReceipt.fingerprint == fingerprint,
            )
        )
        return result.first() is not None

    async def process(self, platform, raw_body: bytes, signature: Optional[str] = None) -> dict:
        platform = parse_webhook_platform(platform) if not isinstance(platform, Platform) else platform
        action = f"webhook_{short_name(platform)}"

        try:
            payload = json.loads(raw_body or b"")
        except ValueError:
            raise PayloadError("Invalid JSON payload")
        if not isinstance(payload, dict):
            raise PayloadError("Webhook payload must be a JSON object")

        account = await self._account(platform)
        if not account:
            logger.warning(f"{platform.value} webhook for tenant {self.tenant_id} has no active integration account")
            await IntegrationLogger.log(
                self.db, self.tenant_id, None, action, LogStatus.WARNING,
                message="No active integration account; webhook ignored",
            )
            return {"status": "ignored", "reason": "no_active_account"}
        account_id = account.id

        service = create_service(platform, self.db, account)
        if signature or service.has_webhook_secret():
            # a supplied signature is always checked; without a secret only couriers accept it
            if not service.verify_webhook(signature, raw_body):
                await IntegrationLogger.log(
                    self.db, self.tenant_id, account_id, "webhook_verification", LogStatus.ERROR,
                    error_message=f"Invalid {platform.value} webhook signature",
                )
                raise WebhookVerificationError("Invalid webhook signature")
        else:
            logger.warning(f"Unsigned {platform.value} webhook for account {account_id} without a webhook secret")

        fingerprint = hashlib.sha256(raw_body).hexdigest()
        if await self._seen(platform, fingerprint):
            logger.info(f"Duplicate {platform.value} webhook {fingerprint[:12]} skipped")
            return {"status": "duplicate"}

        if platform == Platform.FACEBOOK_MARKETPLACE:
            counts = await self._store_messages(account_id, normalize_facebook(payload))
        elif platform == Platform.WHATSAPP_BUSINESS:
            normalized = normalize_whatsapp(payload)
            counts = await self._store_messages(account_id, normalized.messages)
            counts["statuses"] = await self._store_statuses(normalized.statuses)
        else:
            update = normalize_courier(platform, payload)
            if update is None:
                raise PayloadError("Webhook payload has no tracking number")
            counts = await self._store_shipment_update(platform, account_id, update)

        try:
            self.db.add(WebhookReceipt(tenant_id=self.tenant_id, platform=platform.value, fingerprint=fingerprint))
            await self.db.commit()
        except IntegrityError:
            # a concurrent delivery of the same body got there first
            await self.db.rollback()

        items = counts.get("items", 0)
        await IntegrationLogger.log(
            self.db, self.tenant_id, account_id, action, LogStatus.SUCCESS,
            message=f"Processed {platform.value} webhook",
            request_data=payload,
            response_data=counts,
            items_count=items,
        )
        return {"status": "processed", **counts}

    # ── messages ─────────────────────────────────────────

    async def _store_messages(self, account_id: uuid.UUID, messages: list[InboundMessage]) -> dict:
        created = existing = failed = 0
        for inbound in messages:
            try:
                message, is_new = await upsert_inbound_message(self.db, self.tenant_id, account_id, inbound)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.exception(f"Failed to store {inbound.platform.value} message {inbound.message_id}")
                await IntegrationLogger.log(
                    self.db, self.tenant_id, account_id, "message_processing", LogStatus.ERROR,
                    request_data=inbound.raw, error_message=str(e),
                )
                failed += 1
                continue
            if not is_new:
                existing += 1
                continue
            created += 1
            self.notifier.notify_message_received({
                "platform": inbound.platform.value,
                "message_id": inbound.message_id,
                "sender_id": inbound.sender_id,
                "customer_id": str(message.customer_id) if message.customer_id else None,
                "content": inbound.content,
            })
        return {"items": created, "existing": existing, "failed": failed}

    async def _store_statuses(self, statuses) -> int:
        applied = 0
        for update in statuses:
            if await apply_status_update(self.db, self.tenant_id, update):
                applied += 1
        await self.db.commit()
        return applied

    # ── shipments ────────────────────────────────────────

    async def _store_shipment_update(self, platform: Platform, account_id: uuid.UUID, update) -> dict:
        result = await self.db.execute(
            select(Shipment).where(
                Shipment.tenant_id == self.tenant_id,
                Shipment.tracking_number == update.tracking_number,
                Shipment.integration_account_id == account_id,
            )
        )
        shipment = result.scalar_one_or_none()
        if not shipment:
            logger.warning(f"{platform.value} webhook for unknown shipment {update.tracking_number}")
            await IntegrationLogger.log(
                self.db, self.tenant_id, account_id, "shipment_update", LogStatus.WARNING,
                message=f"Shipment {update.tracking_number} not found",
            )
            return {"items": 0, "skipped": 1}

        previous = apply_shipment_update(shipment, update, source="webhook")
        if previous is None:
            logger.info(f"Stale {platform.value} update for {update.tracking_number} ignored")
            return {"items": 0, "stale": 1}
        await self.db.commit()

        if shipment.status != previous:
            self.notifier.notify_shipment_update({
                "tracking_number": shipment.tracking_number,
                "courier_name": shipment.courier_name,
                "status": shipment.status,
                "previous_status": previous,
                "sales_order_ref": shipment.sales_order_ref,
            }, previous)
        return {"items": 1, "previous_status": previous, "current_status": shipment.status}
