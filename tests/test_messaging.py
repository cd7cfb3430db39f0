"""Message and customer persistence tests."""

import pytest
from sqlalchemy import func, select

from app.models import Customer, Message, MessagePlatform, MessageStatus, MessageType
from app.services.messaging import (
    apply_status_update,
    find_or_create_customer,
    normalize_phone,
    record_outbound_message,
    upsert_inbound_message,
)
from app.services.normalizers import InboundMessage, MessageStatusUpdate


def inbound(message_id="wamid.1", sender="94771234567", platform=MessagePlatform.WHATSAPP, name=None):
    return InboundMessage(
        platform=platform,
        message_id=message_id,
        sender_id=sender,
        recipient_id="1098",
        message_type=MessageType.TEXT,
        content="Hello",
        contact_name=name,
    )


def test_normalize_phone():
    assert normalize_phone(" +94 77 123 4567") == "94771234567"
    assert normalize_phone(None) == ""


@pytest.mark.asyncio
async def test_whatsapp_customer_created_once(db, tenant):
    first = await find_or_create_customer(db, tenant.id, inbound(name="Nimal"))
    second = await find_or_create_customer(db, tenant.id, inbound(message_id="wamid.2"))
    await db.commit()
    assert first.id == second.id
    assert first.name == "Nimal"
    assert first.phone == "94771234567"
    assert first.email == "wa_94771234567@whatsapp.com"
    assert first.external_ids == {"WHATSAPP": "94771234567"}


@pytest.mark.asyncio
async def test_facebook_customer_by_synthetic_email(db, tenant):
    msg = inbound(sender="PSID9", platform=MessagePlatform.FACEBOOK_MESSENGER)
    customer = await find_or_create_customer(db, tenant.id, msg)
    again = await find_or_create_customer(db, tenant.id, msg)
    assert customer.id == again.id
    assert customer.name == "Facebook User PSID9"
    assert customer.email == "fb_PSID9@facebook.com"
    assert customer.source == "facebook"



@pytest.mark.asyncio
async def test_known_sender_matched_by_external_id(db, tenant):
    known = Customer(
        tenant_id=tenant.id, name="Known Buyer", email="buyer@example.com", phone="",
        source="manual", external_ids={"FACEBOOK_MESSENGER": "PSID1"},
    )
    db.add(known)
    await db.commit()

    msg = inbound(sender="PSID1", platform=MessagePlatform.FACEBOOK_MESSENGER)
    customer = await find_or_create_customer(db, tenant.id, msg)
    await db.commit()
    assert customer.id == known.id
    names = (await db.execute(select(Customer.name))).scalars().all()
    assert names == ["Known Buyer"]


@pytest.mark.asyncio
async def test_external_id_recorded_on_phone_match(db, tenant):
    db.add(Customer(tenant_id=tenant.id, name="Walk-in", email="w@example.com", phone="94771234567", external_ids={}))
    await db.commit()
    customer = await find_or_create_customer(db, tenant.id, inbound())
    await db.commit()
    assert customer.name == "Walk-in"
    assert customer.external_ids == {"WHATSAPP": "94771234567"}

@pytest.mark.asyncio
async def test_upsert_inbound_is_idempotent(db, tenant):
    message, created = await upsert_inbound_message(db, tenant.id, None, inbound())
    await db.commit()
    assert created is True
    assert message.status == MessageStatus.DELIVERED.value
    assert message.direction == "INBOUND"

    again, created = await upsert_inbound_message(db, tenant.id, None, inbound())
    await db.commit()
    assert created is False
    assert again.id == message.id
    count = (await db.execute(select(func.count()).select_from(Message))).scalar_one()
    assert count == 1
    customers = (await db.execute(select(func.count()).select_from(Customer))).scalar_one()
    assert customers == 1


@pytest.mark.asyncio
async def test_read_message_stays_read_on_redelivery(db, tenant):
    message, _ = await upsert_inbound_message(db, tenant.id, None, inbound())
    message.status = MessageStatus.READ.value
    await db.commit()
    again, _ = await upsert_inbound_message(db, tenant.id, None, inbound())
    assert again.status == MessageStatus.READ.value



@pytest.mark.asyncio
async def test_redelivery_keeps_failed_status(db, tenant):
    message, _ = await upsert_inbound_message(db, tenant.id, None, inbound())
    message.status = MessageStatus.FAILED.value
    await db.commit()
    again, created = await upsert_inbound_message(db, tenant.id, None, inbound())
    assert created is False
    assert again.status == MessageStatus.FAILED.value


@pytest.mark.asyncio
async def test_inbound_with_outbound_id_leaves_row_alone(db, tenant):
    await record_outbound_message(
        db, tenant.id, None, MessagePlatform.WHATSAPP,
        message_id="wamid.1", sender_id="1098", recipient_id="9477", content="Hi",
    )
    await db.commit()
    message, created = await upsert_inbound_message(db, tenant.id, None, inbound())
    assert created is False
    assert message.direction == "OUTBOUND"
    assert message.status == MessageStatus.SENT.value

@pytest.mark.asyncio
async def test_outbound_links_known_customer(db, tenant):
    customer = await find_or_create_customer(db, tenant.id, inbound())
    message = await record_outbound_message(
        db, tenant.id, None, MessagePlatform.WHATSAPP,
        message_id="wamid.out", sender_id="1098", recipient_id="+94771234567", content="Thanks",
    )
    await db.commit()
    assert message.customer_id == customer.id
    assert message.status == MessageStatus.SENT.value
    assert message.direction == "OUTBOUND"


class TestStatusUpdates:
    @pytest.mark.asyncio
    async def test_forward_only(self, db, tenant):
        await record_outbound_message(
            db, tenant.id, None, MessagePlatform.WHATSAPP,
            message_id="wamid.out", sender_id="1098", recipient_id="9477", content="Hi",
        )
        await db.commit()

        def receipt(status):
            return MessageStatusUpdate(platform=MessagePlatform.WHATSAPP, message_id="wamid.out", status=status)

        assert await apply_status_update(db, tenant.id, receipt(MessageStatus.READ)) is True
        assert await apply_status_update(db, tenant.id, receipt(MessageStatus.DELIVERED)) is False
        assert await apply_status_update(db, tenant.id, receipt(MessageStatus.READ)) is False
        assert await apply_status_update(db, tenant.id, receipt(MessageStatus.FAILED)) is True
        assert await apply_status_update(db, tenant.id, receipt(MessageStatus.FAILED)) is False

    @pytest.mark.asyncio
    async def test_unknown_message(self, db, tenant):
        update = MessageStatusUpdate(platform=MessagePlatform.WHATSAPP, message_id="nope", status=MessageStatus.READ)
        assert await apply_status_update(db, tenant.id, update) is False
