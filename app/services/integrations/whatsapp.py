"""WhatsApp Business Cloud API integration."""

import hmac
import logging
import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.errors import IntegrationError
from app.models import MessagePlatform, Platform
from app.services.integrations.base import BaseIntegrationService, sign_payload
from app.services.messaging import record_outbound_message, upsert_inbound_message
from app.services.normalizers import whatsapp_message_to_inbound

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = "id,from,to,timestamp,type,text,image,document,video,audio"


class WhatsAppBusinessService(BaseIntegrationService):
    platform = Platform.WHATSAPP_BUSINESS

    @property
    def phone_number_id(self) -> str:
        return str(self.settings.get("phone_number_id") or self.account.account_id)

    @property
    def business_account_id(self) -> str:
        return str(self.settings.get("business_account_id") or "")

    @property
    def client(self):
        token = self.decrypt(self.account.access_token)
        return self.http_client({"Authorization": f"Bearer {token}"})

    def status_config(self) -> dict:
        return {
            "phone_number_id": self.phone_number_id,
            "business_account_id": self.business_account_id,
            "has_access_token": bool(self.account.access_token),
        }

    async def probe(self):
        return await self.client.get(f"/{self.phone_number_id}", {"fields": "id,display_phone_number"})

    async def get_messages(self, since: Optional[str] = None) -> list[dict]:
        started = time.monotonic()
        params = {"fields": MESSAGE_FIELDS, "limit": 100, "since": since}
        try:
            response = await self.client.get(f"/{self.phone_number_id}/messages", params)
        except IntegrationError as e:
            await self.log_error("sync_messages", e, started=started)
            raise
        messages = response.get("data") or []
        await self.log_success(
            "sync_messages", f"Retrieved {len(messages)} messages",
            started=started, items_count=len(messages),
        )
        return messages

    async def send_message(self, to: str, message: str, message_type: str = "text") -> str:
        """Send a text message, or a template when ``message_type`` is ``template``
        (``message`` is then the template name). Returns the WhatsApp message id."""
        started = time.monotonic()
        if message_type == "template":
            payload = {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "template",
                "template": {"name": message, "language": {"code": "en"}},
            }
        else:
            payload = {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": message},
            }
        try:
            response = await self.client.post(f"/{self.phone_number_id}/messages", payload)
        except IntegrationError as e:
            await self.log_error("send_message", e, request_data=payload, started=started)
            raise

        sent = response.get("messages") or [{}]
        message_id = str(sent[0].get("id") or "")
        if message_id:
            await record_outbound_message(
                self.db, self.tenant_id, self.account.id, MessagePlatform.WHATSAPP,
                message_id=message_id,
                sender_id=self.phone_number_id,
                recipient_id=to,
                content=message,
            )
            await self.db.commit()
        await self.log_success(
            "send_message", f"Sent message to {to}",
            request_data=payload, response_data=response, started=started,
        )
        return message_id

    async def create_template(self, name: str, content: str) -> str:
        started = time.monotonic()
        payload = {
            "name": name,
            "language": "en",
            "category": "MARKETING",
            "components": [{"type": "BODY", "text": content}],
        }
        try:
            response = await self.client.post(f"/{self.business_account_id}/message_templates", payload)
        except IntegrationError as e:
            await self.log_error("create_template", e, request_data=payload, started=started)
            raise
        await self.log_success(
            "create_template", f"Created template: {name}",
            request_data=payload, response_data=response, started=started,
        )
        return str(response.get("id", ""))

    async def sync_messages_to_erp(self) -> list[dict]:
        since = self.account.last_sync_at.isoformat() if self.account.last_sync_at else None
        results = []
        for raw in await self.get_messages(since):
            if not raw.get("id"):
                continue
            inbound = whatsapp_message_to_inbound(raw, self.phone_number_id)
            try:
                message, created = await upsert_inbound_message(self.db, self.tenant_id, self.account.id, inbound)
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.rollback()
                logger.exception(f"Failed to store WhatsApp message {inbound.message_id}")
                await self.log_error("message_processing", e, request_data=raw)
                results.append({"message_id": inbound.message_id, "status": "failed", "error": str(e)})
                continue
            results.append({
                "message_id": inbound.message_id,
                "status": "synced" if created else "existing",
                "customer_id": str(message.customer_id) if message.customer_id else None,
            })
        return results

    async def sync_data(self) -> dict:
        started = time.monotonic()
        results = await self.sync_messages_to_erp()
        await self.mark_synced()
        summary = {
            "messages_synced": len(results),
            "new_messages": sum(1 for r in results if r["status"] == "synced"),
            "results": results,
        }
        await self.log_success(
            "sync_data", f"Synced {summary['messages_synced']} WhatsApp messages",
            response_data={k: v for k, v in summary.items() if k != "results"},
            started=started, items_count=summary["messages_synced"],
        )
        return summary

    def verify_webhook(self, signature: Optional[str], payload: bytes) -> bool:
        """Accepts ``sha256=<hex>`` or the bare hex digest."""
        secret = self.decrypt(self.account.webhook_secret)
        if not secret or not signature:
            return False
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        return hmac.compare_digest(provided.encode(), sign_payload(secret, payload).encode())
