"""Shipment state updates shared by courier webhooks and tracking polls."""

from datetime import datetime, timezone
from typing import Optional

from app.models import Shipment, ShipmentStatus
from app.services.normalizers import ShipmentUpdate

MAX_EVENTS = 100


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def merge_events(existing: Optional[list], new_events: list[dict]) -> list[dict]:
    """Append events not seen before, ordered by timestamp, capped at MAX_EVENTS."""
    events = list(existing or [])
    for event in new_events:
        if event not in events:
            events.append(event)
    events.sort(key=lambda e: e.get("timestamp") or "")
    return events[-MAX_EVENTS:]


def apply_shipment_update(
    shipment: Shipment,
    update: ShipmentUpdate,
    source: str = "webhook",
    extra_events: Optional[list[dict]] = None,
) -> Optional[str]:
    """Apply a tracking update to a stored shipment.

    Returns the previous status when the update was applied, ``None`` when it
    was older than the last applied event. An unknown status leaves the
    current status in place.
    """
    now = datetime.now(timezone.utc)
    last = as_utc(shipment.last_event_at)
    if update.timestamp and last and update.timestamp < last:
        return None

    previous = shipment.status
    if update.status:
        shipment.status = update.status.value
    if update.estimated_delivery:
        shipment.estimated_delivery = update.estimated_delivery
    if update.actual_delivery:
        shipment.actual_delivery = update.actual_delivery
    elif update.status == ShipmentStatus.DELIVERED and not shipment.actual_delivery:
        shipment.actual_delivery = update.timestamp or now
    if update.timestamp:
        shipment.last_event_at = update.timestamp

    # a carrier history takes the place of the synthesized event
    if extra_events:
        new_events = list(extra_events)
    elif update.status or update.status_description:
        new_events = [update.event()]
    else:
        new_events = []
    shipment.events = merge_events(shipment.events, new_events)

    meta = dict(shipment.extra or {})
    meta[f"last_{source}_update"] = now.isoformat()
    if source == "webhook":
        meta["webhook_data"] = update.raw
    shipment.extra = meta
    return previous
