"""Webhook payload normalization.

Maps vendor callback bodies (Facebook Messenger, WhatsApp Cloud API, courier
tracking callbacks) onto the internal message / shipment records. Everything
here is pure: no database, no network.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.models import (
    MessagePlatform,
    MessageStatus,
    MessageType,
    Platform,
    ShipmentStatus,
)


@dataclass
class InboundMessage:
    """A chat message received from a customer."""
    platform: MessagePlatform
    message_id: str
    sender_id: str
    recipient_id: str
    message_type: MessageType
    content: str
    timestamp: Optional[datetime] = None
    contact_name: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class MessageStatusUpdate:
    """Delivery receipt for a message we sent."""
    platform: MessagePlatform
    message_id: str
    status: MessageStatus
    recipient_id: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class NormalizedWhatsApp:
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[MessageStatusUpdate] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.messages) + len(self.statuses)


@dataclass
class ShipmentUpdate:
    """One courier tracking update."""
    tracking_number: str
    status: Optional[ShipmentStatus]
    status_description: str = ""
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    timestamp: Optional[datetime] = None
    location: str = ""
    raw: dict = field(default_factory=dict)

    def event(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "status": self.status.value if self.status else None,
            "location": self.location,
            "description": self.status_description,
        }


# ── Date handling ────────────────────────────────────────

_MS_DATE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch seconds/milliseconds and ``/Date(ms)/`` into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        number = float(value)
        if number > 1e11:  # milliseconds
            number /= 1000
        return datetime.fromtimestamp(number, tz=timezone.utc)
    if isinstance(value, str):
        match = _MS_DATE.match(value.strip())
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# ── Facebook Messenger ───────────────────────────────────

def normalize_facebook(payload: dict) -> list[InboundMessage]:
    """Messenger ``page`` webhook → inbound messages.

    Delivery/read receipts and echoes of our own messages are skipped.
    """
    if not isinstance(payload, dict) or payload.get("object") != "page":
        return []

    messages: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        events = entry.get("messaging") or entry.get("standby") or []
        for event in events:
            message = event.get("message")
            if not message or message.get("is_echo"):
                continue
            message_id = message.get("mid") or event.get("id")
            if not message_id:
                continue
            sender = (event.get("sender") or {}).get("id") or "unknown"
            recipient = (event.get("recipient") or {}).get("id") or "unknown"
            attachments = message.get("attachments") or []
            messages.append(InboundMessage(
                platform=MessagePlatform.FACEBOOK_MESSENGER,
                message_id=str(message_id),
                sender_id=str(sender),
                recipient_id=str(recipient),
                message_type=_facebook_attachment_type(attachments),
                content=message.get("text") or "Media message",
                timestamp=parse_datetime(event.get("timestamp")),
                raw=event,
            ))
    return messages


def _facebook_attachment_type(attachments: list) -> MessageType:
    if not attachments:
        return MessageType.TEXT
    kind = (attachments[0] or {}).get("type", "")
    return {
        "video": MessageType.VIDEO,
        "audio": MessageType.AUDIO,
        "file": MessageType.DOCUMENT,
    }.get(kind, MessageType.IMAGE)


# ── WhatsApp Cloud API ───────────────────────────────────

_WHATSAPP_TYPES = {
    "text": MessageType.TEXT,
    "image": MessageType.IMAGE,
    "document": MessageType.DOCUMENT,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
}

_WHATSAPP_STATUSES = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
}


def map_whatsapp_message_type(kind: Optional[str]) -> MessageType:
    return _WHATSAPP_TYPES.get((kind or "").lower(), MessageType.TEXT)


def extract_whatsapp_content(message: dict) -> str:
    kind = message.get("type")
    if kind == "text":
        return (message.get("text") or {}).get("body", "")
    if kind == "image":
        return (message.get("image") or {}).get("caption") or "Image received"
    if kind == "document":
        return f"Document: {(message.get('document') or {}).get('filename') or 'document'}"
    if kind == "video":
        return "Video received"
    if kind == "audio":
        return "Audio received"
    return "Message received"


def whatsapp_message_to_inbound(
    message: dict,
    phone_number_id: str,
    contact_name: Optional[str] = None,
) -> InboundMessage:
    """One Cloud API message object → InboundMessage (webhooks and polling share this)."""
    return InboundMessage(
        platform=MessagePlatform.WHATSAPP,
        message_id=str(message.get("id")),
        sender_id=str(message.get("from") or "unknown"),
        recipient_id=phone_number_id or "unknown",
        message_type=map_whatsapp_message_type(message.get("type")),
        content=extract_whatsapp_content(message),
        timestamp=parse_datetime(message.get("timestamp")),
        contact_name=contact_name,
        raw=message,
    )


def normalize_whatsapp(payload: dict) -> NormalizedWhatsApp:
    """``whatsapp_business_account`` webhook → inbound messages and status receipts."""
    result = NormalizedWhatsApp()
    if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
        return result

    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field") != "messages":
                continue
            value = change.get("value") or {}
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id") or "unknown"
            contacts = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
            }

            for message in value.get("messages") or []:
                if not message.get("id"):
                    continue
                sender = str(message.get("from") or "unknown")
                result.messages.append(
                    whatsapp_message_to_inbound(message, str(phone_number_id), contacts.get(sender))
                )

            for status in value.get("statuses") or []:
                mapped = _WHATSAPP_STATUSES.get(status.get("status", ""))
                if not mapped or not status.get("id"):
                    continue
                result.statuses.append(MessageStatusUpdate(
                    platform=MessagePlatform.WHATSAPP,
                    message_id=str(status["id"]),
                    status=mapped,
                    recipient_id=str(status.get("recipient_id") or ""),
                    timestamp=parse_datetime(status.get("timestamp")),
                ))
    return result


# ── Couriers ─────────────────────────────────────────────

_GENERIC_SHIPMENT_STATUSES = {
    "pending": ShipmentStatus.PENDING,
    "created": ShipmentStatus.PENDING,
    "pre_transit": ShipmentStatus.PENDING,
    "picked_up": ShipmentStatus.PICKED_UP,
    "pickup": ShipmentStatus.PICKED_UP,
    "in_transit": ShipmentStatus.IN_TRANSIT,
    "transit": ShipmentStatus.IN_TRANSIT,
    "out_for_delivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "delivered": ShipmentStatus.DELIVERED,
    "failed": ShipmentStatus.FAILED,
    "failure": ShipmentStatus.FAILED,
    "exception": ShipmentStatus.FAILED,
    "cancelled": ShipmentStatus.CANCELLED,
    "canceled": ShipmentStatus.CANCELLED,
    "returned": ShipmentStatus.RETURNED,
    "return_to_sender": ShipmentStatus.RETURNED,
}

# Aramex tracking update codes
ARAMEX_UPDATE_CODES = {
    "SH014": ShipmentStatus.PICKED_UP,
    "SH047": ShipmentStatus.PICKED_UP,
    "SH001": ShipmentStatus.IN_TRANSIT,
    "SH002": ShipmentStatus.IN_TRANSIT,
    "SH004": ShipmentStatus.IN_TRANSIT,
    "SH003": ShipmentStatus.OUT_FOR_DELIVERY,
    "SH005": ShipmentStatus.DELIVERED,
    "SH006": ShipmentStatus.DELIVERED,
    "SH033": ShipmentStatus.FAILED,
    "SH069": ShipmentStatus.RETURNED,
}


def map_shipment_status(value: Any, platform: Optional[Platform] = None) -> Optional[ShipmentStatus]:
    """Vendor status string/code → ShipmentStatus, or None when unknown."""
    if not value:
        return None
    text = str(value).strip()
    if platform == Platform.ARAMEX and text.upper() in ARAMEX_UPDATE_CODES:
        return ARAMEX_UPDATE_CODES[text.upper()]
    key = re.sub(r"[\s\-]+", "_", text.lower())
    if key in _GENERIC_SHIPMENT_STATUSES:
        return _GENERIC_SHIPMENT_STATUSES[key]
    try:
        return ShipmentStatus(text.upper())
    except ValueError:
        return None


def normalize_courier(platform: Platform, payload: dict) -> Optional[ShipmentUpdate]:
    """Courier tracking callback → ShipmentUpdate, or None without a tracking number."""
    if not isinstance(payload, dict):
        return None
    tracking = (
        payload.get("trackingNumber")
        or payload.get("tracking_number")
        or payload.get("awb")
        or payload.get("WaybillNumber")
    )
    if not tracking:
        return None

    raw_status = (
        payload.get("status")
        or payload.get("statusCode")
        or payload.get("UpdateCode")
    )
    if isinstance(raw_status, dict):
        raw_status = raw_status.get("statusCode") or raw_status.get("status")

    return ShipmentUpdate(
        tracking_number=str(tracking).strip(),
        status=map_shipment_status(raw_status, platform),
        status_description=str(
            payload.get("statusDescription") or payload.get("description") or payload.get("UpdateDescription") or ""
        ),
        estimated_delivery=parse_datetime(payload.get("estimatedDelivery") or payload.get("estimated_delivery")),
        actual_delivery=parse_datetime(payload.get("actualDelivery") or payload.get("actual_delivery")),
        timestamp=parse_datetime(payload.get("timestamp") or payload.get("UpdateDateTime")),
        location=str(payload.get("location") or payload.get("UpdateLocation") or ""),
        raw=payload,
    )
