"""Notification service tests."""

import json
from decimal import Decimal

import httpx
import pytest

from app.config import Settings
from app.services.notification import (
    Notification,
    NotificationChannel,
    NotificationEvent,
    NotificationService,
    create_telegram_handler,
    create_webhook_handler,
)


class TestNotification:
    def test_create_notification(self):
        n = Notification(
            event=NotificationEvent.MESSAGE_RECEIVED,
            title="New message",
            message="From 9477: hi",
        )
        assert n.event == NotificationEvent.MESSAGE_RECEIVED
        assert n.delivered is False

    def test_to_dict(self):
        n = Notification(
            event=NotificationEvent.SHIPMENT_DELIVERED,
            title="Delivered",
            message="DMX1 delivered",
            data={"tracking_number": "DMX1"},
        )
        d = n.to_dict()
        assert d["event"] == "shipment.delivered"
        assert d["data"]["tracking_number"] == "DMX1"
        assert "timestamp" in d

    def test_to_json(self):
        n = Notification(
            event=NotificationEvent.SYNC_COMPLETED,
            title="Synced",
            message="done",
            data={"shipping_cost": Decimal("450.50")},
        )
        assert '"shipping_cost": 450.5' in n.to_json()


class TestNotificationService:
    def test_notify_default_log(self):
        svc = NotificationService()
        results = svc.notify(NotificationEvent.SYNC_COMPLETED, "Test", "Test message")
        assert len(results) == 1
        assert results[0].delivered is True
        assert results[0].channel == NotificationChannel.LOG

    def test_subscribe_and_notify(self):
        svc = NotificationService()
        received = []
        svc.register_handler(NotificationChannel.WEBHOOK, received.append)
        svc.subscribe(
            NotificationEvent.MESSAGE_RECEIVED,
            [NotificationChannel.WEBHOOK, NotificationChannel.LOG],
        )

        results = svc.notify(NotificationEvent.MESSAGE_RECEIVED, "New message", "hi")
        assert len(results) == 2
        assert len(received) == 1
        assert received[0].title == "New message"

    def test_handler_error_caught(self):
        svc = NotificationService()

        def bad_handler(n):
            raise RuntimeError("fail")

        svc.register_handler(NotificationChannel.WEBHOOK, bad_handler)
        svc.subscribe(NotificationEvent.SYNC_FAILED, [NotificationChannel.WEBHOOK])

        results = svc.notify(NotificationEvent.SYNC_FAILED, "Test", "msg")
        assert results[0].error == "fail"
        assert results[0].delivered is False

    def test_history_and_stats(self):
        svc = NotificationService()
        svc.notify(NotificationEvent.SYNC_COMPLETED, "A", "a")
        svc.notify(NotificationEvent.SYNC_FAILED, "B", "b")
        svc.notify(NotificationEvent.SYNC_COMPLETED, "C", "c")

        assert len(svc.get_history()) == 3
        assert len(svc.get_history(event=NotificationEvent.SYNC_COMPLETED)) == 2
        stats = svc.stats()
        assert stats["total"] == 3
        assert stats["by_event"] == {"sync.completed": 2, "sync.failed": 1}

    def test_history_max_limit(self):
        svc = NotificationService(max_history=5)
        for i in range(10):
            svc.notify(NotificationEvent.SYNC_COMPLETED, f"N{i}", "msg")
        assert len(svc.get_history(limit=100)) == 5
        assert svc.get_history()[-1].title == "N9"


class TestShipmentEvents:
    @pytest.mark.parametrize("status,event", [
        ("DELIVERED", NotificationEvent.SHIPMENT_DELIVERED),
        ("FAILED", NotificationEvent.SHIPMENT_EXCEPTION),
        ("RETURNED", NotificationEvent.SHIPMENT_EXCEPTION),
        ("IN_TRANSIT", NotificationEvent.SHIPMENT_STATUS_CHANGED),
    ])
    def test_event_by_status(self, status, event):
        svc = NotificationService()
        [n] = svc.notify_shipment_update(
            {"tracking_number": "DMX1", "status": status, "courier_name": "DOMEX"}, "PENDING",
        )
        assert n.event == event
        assert "DMX1" in n.title

    def test_first_status_reads_new(self):
        svc = NotificationService()
        [n] = svc.notify_shipment_update({"tracking_number": "T", "status": "PICKED_UP"}, None)
        assert "NEW -> PICKED_UP" in n.message


class TestOtherEvents:
    def test_message_received_preview(self):
        svc = NotificationService()
        [n] = svc.notify_message_received({"platform": "WHATSAPP", "sender_id": "9477", "content": "x" * 200})
        assert n.event == NotificationEvent.MESSAGE_RECEIVED
        assert n.message == "From 9477: " + "x" * 80

    def test_sync_result(self):
        svc = NotificationService()
        account = {"integration_id": "i-1", "platform": "DHL", "account_name": "DHL Express"}
        [ok] = svc.notify_sync_result(account, result={"shipments_updated": 2})
        [bad] = svc.notify_sync_result(account, error="API Error: 500 - boom")
        assert ok.event == NotificationEvent.SYNC_COMPLETED
        assert ok.data["result"] == {"shipments_updated": 2}
        assert bad.event == NotificationEvent.SYNC_FAILED
        assert bad.data["error"] == "API Error: 500 - boom"


class TestConfigure:
    def test_log_only_by_default(self):
        svc = NotificationService()
        assert svc.configure(Settings(notify_webhook_url="", telegram_bot_token="")) == [NotificationChannel.LOG]
        [n] = svc.notify(NotificationEvent.SYNC_FAILED, "t", "m")
        assert n.channel == NotificationChannel.LOG

    def test_configured_channels_receive_every_event(self):
        svc = NotificationService()
        channels = svc.configure(Settings(
            notify_webhook_url="https://hooks.example.com/erp",
            telegram_bot_token="bot",
            telegram_chat_id="42",
        ))
        assert channels == [NotificationChannel.LOG, NotificationChannel.WEBHOOK, NotificationChannel.TELEGRAM]
        # swap the network handlers for recorders
        received = []
        svc._handlers[NotificationChannel.WEBHOOK] = [received.append]
        svc._handlers[NotificationChannel.TELEGRAM] = [received.append]

        results = svc.notify(NotificationEvent.SHIPMENT_DELIVERED, "Delivered", "m")
        assert [r.channel for r in results] == channels
        assert len(received) == 2

    def test_telegram_needs_chat_id(self):
        svc = NotificationService()
        channels = svc.configure(Settings(telegram_bot_token="bot", telegram_chat_id=""))
        assert NotificationChannel.TELEGRAM not in channels


class TestAsyncHandlers:
    @pytest.mark.asyncio
    async def test_coroutine_handler_runs_as_task(self):
        svc = NotificationService()
        received = []

        async def handler(n):
            received.append(n.title)

        svc.register_handler(NotificationChannel.WEBHOOK, handler)
        svc.subscribe(NotificationEvent.SYNC_COMPLETED, [NotificationChannel.WEBHOOK])

        [n] = svc.notify(NotificationEvent.SYNC_COMPLETED, "Synced", "ok")
        await svc.drain()
        assert received == ["Synced"]
        assert n.delivered is True
        assert svc.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_coroutine_handler_failure_recorded(self):
        svc = NotificationService()

        async def handler(n):
            raise RuntimeError("receiver down")

        svc.register_handler(NotificationChannel.WEBHOOK, handler)
        svc.subscribe(NotificationEvent.SYNC_FAILED, [NotificationChannel.WEBHOOK])

        [n] = svc.notify(NotificationEvent.SYNC_FAILED, "t", "m")
        await svc.drain()
        assert n.delivered is False
        assert n.error == "receiver down"

    def test_coroutine_handler_without_loop(self):
        svc = NotificationService()

        async def handler(n):
            return None

        svc.register_handler(NotificationChannel.WEBHOOK, handler)
        svc.subscribe(NotificationEvent.SYNC_FAILED, [NotificationChannel.WEBHOOK])
        [n] = svc.notify(NotificationEvent.SYNC_FAILED, "t", "m")
        assert n.delivered is False
        assert n.error

    @pytest.mark.asyncio
    async def test_webhook_handler_posts_json(self):
        requests = []

        def respond(request: httpx.Request):
            requests.append(request)
            return httpx.Response(204)

        handler = create_webhook_handler("https://hooks.example.com/erp", transport=httpx.MockTransport(respond))
        await handler(Notification(NotificationEvent.SHIPMENT_DELIVERED, "Delivered", "m", {"tracking_number": "T1"}))

        body = json.loads(requests[0].content)
        assert requests[0].url == "https://hooks.example.com/erp"
        assert body["event"] == "shipment.delivered"
        assert body["data"] == {"tracking_number": "T1"}

    @pytest.mark.asyncio
    async def test_telegram_handler_raises_on_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"ok": False}))
        handler = create_telegram_handler("bot", "42", transport=transport)
        with pytest.raises(httpx.HTTPStatusError):
            await handler(Notification(NotificationEvent.SYNC_FAILED, "t", "m"))
