"""Notification fan-out for integration events.

Events go to the LOG channel unless a subscription routes them elsewhere.
Handlers may be plain functions or coroutine functions; coroutine handlers run
as tasks on the current event loop so a slow receiver never holds up a sync or
a webhook response.
"""

import asyncio
import inspect
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from app.services.integration_log import PayloadEncoder

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Integration events worth telling someone about."""
    SHIPMENT_STATUS_CHANGED = "shipment.status_changed"
    SHIPMENT_DELIVERED = "shipment.delivered"
    SHIPMENT_EXCEPTION = "shipment.exception"
    MESSAGE_RECEIVED = "message.received"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"


class NotificationChannel(str, Enum):
    WEBHOOK = "webhook"
    LOG = "log"
    TELEGRAM = "telegram"


@dataclass
class Notification:
    event: NotificationEvent
    title: str
    message: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    channel: NotificationChannel = NotificationChannel.LOG
    delivered: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event": self.event.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "channel": self.channel.value,
            "delivered": self.delivered,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=PayloadEncoder)


Handler = Callable[[Notification], Any]


class NotificationService:
    def __init__(self, max_history: int = 1000):
        self._handlers: dict[NotificationChannel, list[Handler]] = {}
        self._subscriptions: dict[NotificationEvent, list[NotificationChannel]] = {}
        self._history: deque[Notification] = deque(maxlen=max_history)
        self._pending: set[asyncio.Task] = set()

    def register_handler(self, channel: NotificationChannel, handler: Handler) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    def subscribe(self, event: NotificationEvent, channels: list[NotificationChannel]) -> None:
        """Route ``event`` to ``channels`` (replaces any earlier routing)."""
        self._subscriptions[event] = list(channels)

    def configure(self, settings) -> list[NotificationChannel]:
        """Register the webhook and Telegram channels that have settings; every event goes to them and to LOG."""
        channels = [NotificationChannel.LOG]
        if settings.notify_webhook_url:
            self.register_handler(NotificationChannel.WEBHOOK, create_webhook_handler(settings.notify_webhook_url))
            channels.append(NotificationChannel.WEBHOOK)
        if settings.telegram_bot_token and settings.telegram_chat_id:
            self.register_handler(
                NotificationChannel.TELEGRAM,
                create_telegram_handler(settings.telegram_bot_token, settings.telegram_chat_id),
            )
            channels.append(NotificationChannel.TELEGRAM)
        if len(channels) > 1:
            for event in NotificationEvent:
                self.subscribe(event, channels)
        return channels

    def notify(
        self,
        event: NotificationEvent,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> list[Notification]:
        """One notification per subscribed channel. Never raises."""
        sent = []
        for channel in self._subscriptions.get(event, [NotificationChannel.LOG]):
            notification = Notification(event=event, title=title, message=message, data=data or {}, channel=channel)
            self._deliver(notification)
            self._history.append(notification)
            sent.append(notification)
        return sent

    def _deliver(self, notification: Notification) -> None:
        handlers = self._handlers.get(notification.channel)
        if not handlers:
            logger.info(f"[{notification.event.value}] {notification.title}: {notification.message}")
            notification.delivered = True
            return
        for handler in handlers:
            try:
                outcome = handler(notification)
            except Exception as e:
                self._failed(notification, e)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(notification, outcome)
            else:
                notification.delivered = True

    def _schedule(self, notification: Notification, awaitable) -> None:
        try:
            task = asyncio.ensure_future(awaitable, loop=asyncio.get_running_loop())
        except RuntimeError as e:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._failed(notification, e)
            return
        self._pending.add(task)

        def finished(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                notification.error = "cancelled"
            elif t.exception() is not None:
                self._failed(notification, t.exception())
            else:
                notification.delivered = True

        task.add_done_callback(finished)

    @staticmethod
    def _failed(notification: Notification, error: BaseException) -> None:
        notification.error = str(error)
        logger.error(f"Notification failed: {notification.channel.value} - {error}")

    async def drain(self) -> None:
        """Wait for in-flight coroutine handlers."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── integration events ───────────────────────────────

    def notify_shipment_update(self, shipment: dict, previous_status: Optional[str]) -> list[Notification]:
        """Delivered and failed/returned shipments get their own events."""
        tracking = shipment.get("tracking_number", "N/A")
        status = shipment.get("status", "")
        courier = shipment.get("courier_name", "")
        if status == "DELIVERED":
            return self.notify(
                NotificationEvent.SHIPMENT_DELIVERED,
                f"Delivered: {tracking}",
                f"{courier} shipment {tracking} was delivered",
                shipment,
            )
        if status in ("FAILED", "RETURNED"):
            return self.notify(
                NotificationEvent.SHIPMENT_EXCEPTION,
                f"Shipment {status.lower()}: {tracking}",
                f"{courier} shipment {tracking} is {status}",
                shipment,
            )
        return self.notify(
            NotificationEvent.SHIPMENT_STATUS_CHANGED,
            f"Shipment update: {tracking}",
            f"{courier} shipment {tracking}: {previous_status or 'NEW'} -> {status}",
            shipment,
        )

    def notify_message_received(self, message: dict) -> list[Notification]:
        preview = (message.get("content") or "")[:80]
        return self.notify(
            NotificationEvent.MESSAGE_RECEIVED,
            f"New {message.get('platform', 'unknown')} message",
            f"From {message.get('sender_id', 'unknown')}: {preview}",
            message,
        )

    def notify_sync_result(
        self, account: dict, result: Optional[dict] = None, error: Optional[str] = None,
    ) -> list[Notification]:
        name = account.get("account_name", "N/A")
        platform = account.get("platform", "")
        if error:
            return self.notify(
                NotificationEvent.SYNC_FAILED,
                f"Sync failed: {name}",
                f"{platform} sync for {name} failed: {error}",
                {**account, "error": error},
            )
        return self.notify(
            NotificationEvent.SYNC_COMPLETED,
            f"Sync completed: {name}",
            f"{platform} sync for {name} finished",
            {**account, "result": result or {}},
        )

    # ── introspection ────────────────────────────────────

    def get_history(
        self,
        event: Optional[NotificationEvent] = None,
        channel: Optional[NotificationChannel] = None,
        limit: int = 50,
    ) -> list[Notification]:
        items = [
            n for n in self._history
            if (event is None or n.event == event) and (channel is None or n.channel == channel)
        ]
        return items[-limit:]

    def stats(self) -> dict:
        by_event: dict[str, int] = {}
        by_channel: dict[str, int] = {}
        for n in self._history:
            by_event[n.event.value] = by_event.get(n.event.value, 0) + 1
            by_channel[n.channel.value] = by_channel.get(n.channel.value, 0) + 1
        return {
            "total": len(self._history),
            "delivered": sum(1 for n in self._history if n.delivered),
            "failed": sum(1 for n in self._history if n.error),
            "pending": len(self._pending),
            "by_event": by_event,
            "by_channel": by_channel,
        }

    def reset(self) -> None:
        self._history.clear()
        self._handlers.clear()
        self._subscriptions.clear()


# ── Handler factories ───────────────────────────────────

def create_webhook_handler(url: str, timeout: float = 10, transport: Optional[httpx.AsyncBaseTransport] = None):
    """POST each notification as JSON to ``url``."""

    async def handler(notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(
                url,
                content=notification.to_json(),
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()

    return handler


def create_telegram_handler(
    bot_token: str, chat_id: str, transport: Optional[httpx.AsyncBaseTransport] = None,
):
    async def handler(notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            resp = await client.post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                json={
                    "chat_id": chat_id,
                    "text": f"*{notification.title}*\n{notification.message}",
                    "parse_mode": "Markdown",
                },
            )
            resp.raise_for_status()

    return handler


notification_service = NotificationService()
