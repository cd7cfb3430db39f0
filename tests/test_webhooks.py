"""Inbound webhook tests."""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.errors import PayloadError, WebhookVerificationError
from app.models import Customer, IntegrationLog, Message, Platform, Shipment
from app.services import webhooks
from app.services.integrations.base import sign_payload
from app.services.notification import NotificationEvent, notification_service
from app.services.webhooks import WebhookProcessor, verify_subscription

TENANT_HEADERS = {"X-Tenant-ID": "test-tenant"}


def whatsapp_body(message_id="wamid.IN1", text="Hi there"):
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"field": "messages", "value": {
            "metadata": {"phone_number_id": "1098"},
            "contacts": [{"wa_id": "94771234567", "profile": {"name": "Nimal"}}],
            "messages": [{"id": message_id, "from": "94771234567", "timestamp": "1700000000",
                          "type": "text", "text": {"body": text}}],
        }}]}],
    }).encode()


def facebook_body():
    return json.dumps({
        "object": "page",
        "entry": [{"id": "PAGE1", "messaging": [{
            "sender": {"id": "PSID1"},
            "recipient": {"id": "PAGE1"},
            "timestamp": 1700000000000,
            "message": {"mid": "m_1", "text": "Still available?"},
        }]}],
    }).encode()


async def add_shipment(db, tenant, account, tracking_number="DMX1", status="PENDING"):
    shipment = Shipment(
        tenant_id=tenant.id, integration_account_id=account.id, tracking_number=tracking_number,
        courier_name=account.platform, status=status, events=[], extra={}, sales_order_ref="SO-1",
    )
    db.add(shipment)
    await db.commit()
    return shipment


class TestProcessor:
    @pytest.mark.asyncio
    async def test_whatsapp_message_stored(self, db, tenant, make_account):
        account = await make_account(Platform.WHATSAPP_BUSINESS, account_id="1098")
        result = await WebhookProcessor(db, tenant.id).process(Platform.WHATSAPP_BUSINESS, whatsapp_body())
        assert result == {"status": "processed", "items": 1, "existing": 0, "failed": 0, "statuses": 0}

        message = (await db.execute(select(Message))).scalar_one()
        assert message.integration_account_id == account.id
        assert message.content == "Hi there"
        assert message.customer_id is not None

        [notification] = notification_service.get_history(event=NotificationEvent.MESSAGE_RECEIVED)
        assert notification.data["message_id"] == "wamid.IN1"

        log = (await db.execute(select(IntegrationLog).where(IntegrationLog.action == "webhook_whatsapp"))).scalar_one()
        assert log.status == "SUCCESS"
        assert log.items_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_body_skipped(self, db, tenant, make_account):
        await make_account(Platform.WHATSAPP_BUSINESS, account_id="1098")
        processor = WebhookProcessor(db, tenant.id)
        await processor.process("whatsapp", whatsapp_body())
        assert await processor.process("whatsapp", whatsapp_body()) == {"status": "duplicate"}
        assert len((await db.execute(select(Message))).scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_redelivered_message_counts_as_existing(self, db, tenant, make_account):
        await make_account(Platform.WHATSAPP_BUSINESS, account_id="1098")
        processor = WebhookProcessor(db, tenant.id)
        await processor.process("whatsapp", whatsapp_body())
        # same message id, different body bytes
        result = await processor.process("whatsapp", whatsapp_body(text="Hi there!"))
        assert result["items"] == 0
        assert result["existing"] == 1

    @pytest.mark.asyncio
    async def test_no_account_ignored(self, db, tenant):
        result = await WebhookProcessor(db, tenant.id).process("whatsapp", whatsapp_body())
        assert result == {"status": "ignored", "reason": "no_active_account"}
        log = (await db.execute(select(IntegrationLog))).scalar_one()
        assert log.status == "WARNING"

    @pytest.mark.asyncio
    async def test_inactive_account_ignored(self, db, tenant, make_account):
        await make_account(Platform.WHATSAPP_BUSINESS, is_active=False)
        result = await WebhookProcessor(db, tenant.id).process("whatsapp", whatsapp_body())
        assert result["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, db, tenant, make_account):
        await make_account(Platform.WHATSAPP_BUSINESS, webhook_secret="app-secret")
        with pytest.raises(WebhookVerificationError):
            await WebhookProcessor(db, tenant.id).process("whatsapp", whatsapp_body(), "sha256=bad")
        log = (await db.execute(select(IntegrationLog))).scalar_one()
        assert log.action == "webhook_verification"
        assert log.status == "ERROR"
        assert (await db.execute(select(Message))).first() is None

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, db, tenant, make_account):
        await make_account(Platform.WHATSAPP_BUSINESS, webhook_secret="app-secret")
        body = whatsapp_body()
        signature = f"sha256={sign_payload('app-secret', body)}"
        result = await WebhookProcessor(db, tenant.id).process("whatsapp", body, signature)
        assert result["status"] == "processed"

    @pytest.mark.asyncio
    async def test_whatsapp_status_receipt(self, db, tenant, make_account):
        account = await make_account(Platform.WHATSAPP_BUSINESS)
        db.add(Message(
            tenant_id=tenant.id, integration_account_id=account.id, platform="WHATSAPP", message_id="wamid.OUT",
            direction="OUTBOUND", sender_id="1098", recipient_id="9477", content="Hi", status="SENT",
        ))
        await db.commit()
        body = json.dumps({
            "object": "whatsapp_business_account",
            "entry": [{"changes": [{"field": "messages", "value": {
                "statuses": [{"id": "wamid.OUT", "status": "delivered", "recipient_id": "9477"}],
            }}]}],
        }).encode()
        result = await WebhookProcessor(db, tenant.id).process("whatsapp", body)
        assert result["statuses"] == 1
        message = (await db.execute(select(Message))).scalar_one()
        await db.refresh(message)
        assert message.status == "DELIVERED"

    @pytest.mark.asyncio
    async def test_facebook_message(self, db, tenant, make_account):
        await make_account(Platform.FACEBOOK_MARKETPLACE, account_id="PAGE1")
        result = await WebhookProcessor(db, tenant.id).process("facebook", facebook_body())
        assert result["items"] == 1
        message = (await db.execute(select(Message))).scalar_one()
        assert message.platform == "FACEBOOK_MESSENGER"
        assert message.sender_id == "PSID1"


    @pytest.mark.asyncio
    async def test_forged_signature_rejected_without_secret(self, db, tenant, make_account):
        await make_account(Platform.FACEBOOK_MARKETPLACE, account_id="PAGE1")
        with pytest.raises(WebhookVerificationError):
            await WebhookProcessor(db, tenant.id).process("facebook", facebook_body(), "sha256=forged")
        assert (await db.execute(select(Message))).first() is None
        assert (await db.execute(select(Customer))).first() is None
        log = (await db.execute(select(IntegrationLog))).scalar_one()
        assert log.action == "webhook_verification"

    @pytest.mark.asyncio
    async def test_courier_without_secret_accepts_signed_callback(self, db, tenant, make_account):
        account = await make_account(Platform.DHL)
        await add_shipment(db, tenant, account, tracking_number="JD1")
        body = b'{"trackingNumber": "JD1", "status": "transit"}'
        result = await WebhookProcessor(db, tenant.id).process("dhl", body, "sha256=anything")
        assert result["status"] == "processed"

    @pytest.mark.asyncio
    async def test_failed_message_does_not_fail_delivery(self, db, tenant, make_account, monkeypatch):
        await make_account(Platform.WHATSAPP_BUSINESS, account_id="1098")
        store = webhooks.upsert_inbound_message

        async def flaky_store(db, tenant_id, account_id, inbound):
            if inbound.message_id == "wamid.BAD":
                raise SQLAlchemyError("disk full")
            return await store(db, tenant_id, account_id, inbound)

        monkeypatch.setattr(webhooks, "upsert_inbound_message", flaky_store)
        body = json.dumps({
            "object": "whatsapp_business_account",
            "entry": [{"changes": [{"field": "messages", "value": {
                "metadata": {"phone_number_id": "1098"},
                "messages": [
                    {"id": "wamid.BAD", "from": "9477", "timestamp": "1700000000", "type": "text", "text": {"body": "a"}},
                    {"id": "wamid.OK", "from": "9477", "timestamp": "1700000001", "type": "text", "text": {"body": "b"}},
                ],
            }}]}],
        }).encode()

        result = await WebhookProcessor(db, tenant.id).process("whatsapp", body)
        assert result["status"] == "processed"
        assert result["items"] == 1
        assert result["failed"] == 1

        [message] = (await db.execute(select(Message))).scalars().all()
        assert message.message_id == "wamid.OK"
        error = (await db.execute(
            select(IntegrationLog).where(IntegrationLog.action == "message_processing")
        )).scalar_one()
        assert error.status == "ERROR"
        assert error.error_message == "disk full"
    @pytest.mark.asyncio
    async def test_invalid_json(self, db, tenant):
        with pytest.raises(PayloadError):
            await WebhookProcessor(db, tenant.id).process("dhl", b"{not json")
        with pytest.raises(PayloadError):
            await WebhookProcessor(db, tenant.id).process("dhl", b"[1, 2]")


class TestCourierWebhooks:
    @pytest.mark.asyncio
    async def test_status_change_applied_and_notified(self, db, tenant, make_account):
        account = await make_account(Platform.DOMEX)
        await add_shipment(db, tenant, account)
        body = json.dumps({
            "trackingNumber": "DMX1", "status": "delivered", "timestamp": "2024-03-02T15:00:00Z",
            "location": "Kandy",
        }).encode()

        result = await WebhookProcessor(db, tenant.id).process("domex", body)

        assert result == {"status": "processed", "items": 1, "previous_status": "PENDING", "current_status": "DELIVERED"}
        shipment = (await db.execute(select(Shipment))).scalar_one()
        await db.refresh(shipment)
        assert shipment.status == "DELIVERED"
        assert shipment.extra["webhook_data"]["location"] == "Kandy"
        [notification] = notification_service.get_history(event=NotificationEvent.SHIPMENT_DELIVERED)
        assert notification.data["tracking_number"] == "DMX1"

    @pytest.mark.asyncio
    async def test_stale_update_ignored(self, db, tenant, make_account):
        account = await make_account(Platform.DOMEX)
        await add_shipment(db, tenant, account)
        processor = WebhookProcessor(db, tenant.id)
        await processor.process("domex", json.dumps(
            {"trackingNumber": "DMX1", "status": "delivered", "timestamp": "2024-03-02T15:00:00Z"}
        ).encode())
        result = await processor.process("domex", json.dumps(
            {"trackingNumber": "DMX1", "status": "in_transit", "timestamp": "2024-03-01T09:00:00Z"}
        ).encode())
        assert result["stale"] == 1
        shipment = (await db.execute(select(Shipment))).scalar_one()
        await db.refresh(shipment)
        assert shipment.status == "DELIVERED"

    @pytest.mark.asyncio
    async def test_unknown_shipment_skipped(self, db, tenant, make_account):
        await make_account(Platform.DHL)
        result = await WebhookProcessor(db, tenant.id).process(
            "dhl", b'{"trackingNumber": "NOPE", "status": "delivered"}',
        )
        assert result == {"status": "processed", "items": 0, "skipped": 1}

    @pytest.mark.asyncio
    async def test_missing_tracking_number(self, db, tenant, make_account):
        await make_account(Platform.ARAMEX)
        with pytest.raises(PayloadError):
            await WebhookProcessor(db, tenant.id).process("aramex", b'{"status": "delivered"}')


class TestSubscription:
    def test_verify_token_echoes_challenge(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "facebook_verify_token", "tok123")
        assert verify_subscription("facebook", "subscribe", "tok123", "CHALLENGE") == "CHALLENGE"

    def test_wrong_token(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "facebook_verify_token", "tok123")
        with pytest.raises(WebhookVerificationError):
            verify_subscription("facebook", "subscribe", "nope", "CHALLENGE")

    def test_unconfigured_token_rejects(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "whatsapp_verify_token", "")
        with pytest.raises(WebhookVerificationError):
            verify_subscription("whatsapp", "subscribe", "", "CHALLENGE")


class TestWebhookRoutes:
    @pytest.mark.asyncio
    async def test_whatsapp_route(self, client: AsyncClient, db, tenant, make_account):
        await make_account(Platform.WHATSAPP_BUSINESS, webhook_secret="app-secret")
        body = whatsapp_body()
        resp = await client.post(
            "/api/v1/integrations/whatsapp/webhook",
            content=body,
            headers={**TENANT_HEADERS, "X-Hub-Signature-256": f"sha256={sign_payload('app-secret', body)}"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "processed"

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, client: AsyncClient, tenant, make_account):
        await make_account(Platform.FACEBOOK_MARKETPLACE, webhook_secret="app-secret")
        resp = await client.post(
            "/api/v1/integrations/facebook/webhook",
            content=facebook_body(),
            headers={**TENANT_HEADERS, "X-Hub-Signature-256": "sha256=0000"},
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "WEBHOOK_VERIFICATION_FAILED"


    @pytest.mark.asyncio
    async def test_forged_signature_without_secret_is_401(self, client: AsyncClient, tenant, make_account):
        await make_account(Platform.FACEBOOK_MARKETPLACE)
        resp = await client.post(
            "/api/v1/integrations/facebook/webhook",
            content=facebook_body(),
            headers={**TENANT_HEADERS, "X-Hub-Signature-256": "sha256=forged"},
        )
        assert resp.status_code == 401
    @pytest.mark.asyncio
    async def test_generic_route_requires_platform(self, client: AsyncClient, tenant):
        resp = await client.post("/api/v1/integrations/webhook", content=b"{}", headers=TENANT_HEADERS)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_generic_route_unsupported_platform(self, client: AsyncClient, tenant):
        resp = await client.post(
            "/api/v1/integrations/webhook", content=b"{}", headers={**TENANT_HEADERS, "X-Platform": "ikman"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "UNSUPPORTED_PLATFORM"

    @pytest.mark.asyncio
    async def test_generic_route_courier(self, client: AsyncClient, db, tenant, make_account):
        account = await make_account(Platform.DHL)
        await add_shipment(db, tenant, account, tracking_number="JD1")
        resp = await client.post(
            "/api/v1/integrations/webhook",
            content=b'{"trackingNumber": "JD1", "status": "transit"}',
            headers={**TENANT_HEADERS, "X-Platform": "DHL"},
        )
        assert resp.status_code == 200
        assert resp.json()["current_status"] == "IN_TRANSIT"

    @pytest.mark.asyncio
    async def test_courier_route(self, client: AsyncClient, db, tenant, make_account):
        account = await make_account(Platform.ARAMEX, webhook_secret="ship-secret")
        await add_shipment(db, tenant, account, tracking_number="4401")
        body = b'{"WaybillNumber": "4401", "UpdateCode": "SH005"}'
        resp = await client.post(
            "/api/v1/integrations/aramex/webhook",
            content=body,
            headers={**TENANT_HEADERS, "X-Signature": sign_payload("ship-secret", body)},
        )
        assert resp.status_code == 200
        assert resp.json()["current_status"] == "DELIVERED"

    @pytest.mark.asyncio
    async def test_unknown_courier_route(self, client: AsyncClient, tenant):
        resp = await client.post("/api/v1/integrations/fedex/webhook", content=b"{}", headers=TENANT_HEADERS)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, client: AsyncClient, tenant):
        resp = await client.post("/api/v1/integrations/dhl/webhook", content=b"nope", headers=TENANT_HEADERS)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, client: AsyncClient):
        resp = await client.post(
            "/api/v1/integrations/dhl/webhook", content=b"{}", headers={"X-Tenant-ID": "ghost"},
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_handshake(self, client: AsyncClient, monkeypatch):
        monkeypatch.setattr(get_settings(), "whatsapp_verify_token", "verify-me")
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"}
        resp = await client.get("/api/v1/integrations/whatsapp/webhook", params=params)
        assert resp.status_code == 200
        assert resp.text == "12345"

        resp = await client.get("/api/v1/integrations/webhook", params={**params, "platform": "whatsapp"})
        assert resp.text == "12345"

        resp = await client.get(
            "/api/v1/integrations/whatsapp/webhook", params={**params, "hub.verify_token": "wrong"},
        )
        assert resp.status_code == 403
