"""Message and contact persistence shared by webhooks and polling sync."""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    Customer,
    Message,
    MessageDirection,
    MessagePlatform,
    MessageStatus,
    MessageType,
)
from app.services.normalizers import InboundMessage, MessageStatusUpdate

logger = logging.getLogger(__name__)

# A receipt may only move a message forward; FAILED is accepted from any state.
_STATUS_RANK = {
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}


def normalize_phone(value: str) -> str:
    return (value or "").strip().lstrip("+").replace(" ", "")


async def find_or_create_customer(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    inbound: InboundMessage,
) -> Customer:
    """Match the sender to a CRM contact, creating one on first contact.

    The platform sender id recorded in ``external_ids`` wins. Otherwise
    WhatsApp senders are matched by phone number and Messenger senders by
    their page-scoped id (kept in the synthetic ``fb_<id>@facebook.com`` email).
    """
    key = inbound.platform.value
    if inbound.platform == MessagePlatform.WHATSAPP:
        phone = normalize_phone(inbound.sender_id)
        fallback = Customer.phone == phone
        name = inbound.contact_name or f"WhatsApp User {inbound.sender_id}"
        email = f"wa_{phone}@whatsapp.com"
        source = "whatsapp"
    else:
        phone = ""
        email = f"fb_{inbound.sender_id}@facebook.com"
        fallback = Customer.email == email
        name = inbound.contact_name or f"Facebook User {inbound.sender_id}"
        source = "facebook"

    customer = None
    for condition in (Customer.external_ids[key].as_string() == inbound.sender_id, fallback):
        result = await db.execute(
            select(Customer).where(Customer.tenant_id == tenant_id, condition).order_by(Customer.created_at).limit(1)
        )
        customer = result.scalar_one_or_none()
        if customer:
            break
    if customer:
        ids = dict(customer.external_ids or {})
        if ids.get(key) != inbound.sender_id:
            ids[key] = inbound.sender_id
            customer.external_ids = ids
        return customer

    customer = Customer(
        tenant_id=tenant_id,
        name=name,
        email=email,
        phone=phone,
        source=source,
        external_ids={key: inbound.sender_id},
    )
    db.add(customer)
    await db.flush()
    logger.info(f"Created customer {customer.id} from {key} sender {inbound.sender_id}")
    return customer


async def get_message(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    platform: MessagePlatform,
    message_id: str,
) -> Optional[Message]:
    result = await db.execute(
        select(Message).where(
            Message.tenant_id == tenant_id,
            Message.platform == platform.value,
            Message.message_id == message_id,
        )
    )
    return result.scalar_one_or_none()


async def upsert_inbound_message(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    integration_account_id: Optional[uuid.UUID],
    inbound: InboundMessage,
) -> tuple[Message, bool]:
    """Store an inbound message once. Returns ``(message, created)``."""
    existing = await get_message(db, tenant_id, inbound.platform, inbound.message_id)
    if existing:
        # redelivery only moves an inbound row forward to DELIVERED
        delivered = MessageStatus.DELIVERED.value
        if (
            existing.direction == MessageDirection.INBOUND.value
            and existing.status != MessageStatus.FAILED.value
            and _STATUS_RANK.get(existing.status, 0) < _STATUS_RANK[delivered]
        ):
            existing.status = delivered
        return existing, False

    customer = await find_or_create_customer(db, tenant_id, inbound)
    message = Message(
        tenant_id=tenant_id,
        integration_account_id=integration_account_id,
        customer_id=customer.id,
        platform=inbound.platform.value,
        message_id=inbound.message_id,
        direction=MessageDirection.INBOUND.value,
        sender_id=inbound.sender_id,
        recipient_id=inbound.recipient_id,
        message_type=inbound.message_type.value,
        content=inbound.content,
        status=MessageStatus.DELIVERED.value,
        sent_at=inbound.timestamp,
    )
    db.add(message)
    await db.flush()
    return message, True


async def record_outbound_message(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    integration_account_id: uuid.UUID,
    platform: MessagePlatform,
    message_id: str,
    sender_id: str,
    recipient_id: str,
    content: str,
    message_type: MessageType = MessageType.TEXT,
) -> Message:
    result = await db.execute(
        select(Customer).where(
            Customer.tenant_id == tenant_id,
            Customer.phone == normalize_phone(recipient_id),
        ).limit(1)
    )
    customer = result.scalar_one_or_none()
    message = Message(
        tenant_id=tenant_id,
        integration_account_id=integration_account_id,
        customer_id=customer.id if customer else None,
        platform=platform.value,
        message_id=message_id,
        direction=MessageDirection.OUTBOUND.value,
        sender_id=sender_id,
        recipient_id=recipient_id,
        message_type=message_type.value,
        content=content,
        status=MessageStatus.SENT.value,
    )
    db.add(message)
    await db.flush()
    return message


async def apply_status_update(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    update: MessageStatusUpdate,
) -> bool:
    """Apply a delivery receipt. Unknown messages and backward moves are ignored."""
    message = await get_message(db, tenant_id, update.platform, update.message_id)
    if not message:
        return False
    new = update.status.value
    if new != MessageStatus.FAILED.value:
        if _STATUS_RANK.get(new, 0) <= _STATUS_RANK.get(message.status, 0):
            return False
    elif message.status == MessageStatus.FAILED.value:
        return False
    message.status = new
    return True
