"""Courier integrations: Aramex, DHL and Domex.

Each carrier gets a small adapter that knows its endpoints and response
shapes; ``CourierService`` owns persistence and logging and is the same for
all three.
"""

import hmac
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.errors import IntegrationAPIError, IntegrationError, UnsupportedPlatformError
from app.models import Platform, Shipment, ShipmentStatus
from app.services.http_client import IntegrationHttpClient
from app.services.integrations.base import BaseIntegrationService, sign_payload
from app.services.normalizers import ShipmentUpdate, map_shipment_status, parse_datetime
from app.services.shipments import apply_shipment_update

logger = logging.getLogger(__name__)


@dataclass
class TrackingEvent:
    timestamp: Optional[datetime]
    location: str
    description: str
    status: Optional[ShipmentStatus]

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "status": self.status.value if self.status else None,
            "location": self.location,
            "description": self.description,
        }


@dataclass
class TrackingInfo:
    tracking_number: str
    status: Optional[ShipmentStatus]
    status_description: str = ""
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    events: list[TrackingEvent] = field(default_factory=list)

    @property
    def last_event_at(self) -> Optional[datetime]:
        stamps = [e.timestamp for e in self.events if e.timestamp]
        return max(stamps) if stamps else None

    def to_update(self) -> ShipmentUpdate:
        return ShipmentUpdate(
            tracking_number=self.tracking_number,
            status=self.status,
            status_description=self.status_description,
            estimated_delivery=self.estimated_delivery,
            actual_delivery=self.actual_delivery,
            timestamp=self.last_event_at,
        )

    def to_dict(self) -> dict:
        return {
            "tracking_number": self.tracking_number,
            "status": self.status.value if self.status else None,
            "status_description": self.status_description,
            "estimated_delivery": self.estimated_delivery.isoformat() if self.estimated_delivery else None,
            "actual_delivery": self.actual_delivery.isoformat() if self.actual_delivery else None,
            "events": [e.to_dict() for e in self.events],
        }


@dataclass
class PackageSpec:
    weight: float
    length: float = 0
    width: float = 0
    height: float = 0
    description: str = ""
    value: float = 0


@dataclass
class ShipmentRequest:
    order_id: str
    recipient: dict
    packages: list[PackageSpec]
    service_type: str = "STANDARD"


@dataclass
class CreatedShipment:
    tracking_number: str
    shipping_cost: Optional[Decimal] = None
    estimated_delivery: Optional[datetime] = None
    raw: dict = field(default_factory=dict)


# ── Carrier adapters ─────────────────────────────────────

class CarrierAdapter:
    """Vendor request/response mapping for one courier."""

    platform: Platform

    def __init__(self, client: IntegrationHttpClient, credentials: dict, settings: dict):
        self.client = client
        self.credentials = credentials
        self.settings = settings

    async def ping(self) -> Any:
        raise NotImplementedError

    async def create(self, request: ShipmentRequest, origin: dict) -> CreatedShipment:
        raise NotImplementedError

    async def track(self, tracking_number: str) -> TrackingInfo:
        raise NotImplementedError


class DHLAdapter(CarrierAdapter):
    """DHL Shipment Tracking Unified API and MyDHL shipments."""

    platform = Platform.DHL

    @staticmethod
    def headers(credentials: dict) -> dict:
        return {"DHL-API-Key": credentials["api_key"]}

    async def ping(self):
        # An unknown tracking number answers 404 once the key is accepted
        try:
            return await self.client.get("/track/shipments", {"trackingNumber": "0000000000"})
        except IntegrationAPIError as e:
            if e.status == 404:
                return {}
            raise

    async def create(self, request: ShipmentRequest, origin: dict) -> CreatedShipment:
        payload = {
            "productCode": self.settings.get("product_code") or "P",
            "accounts": [{"typeCode": "shipper", "number": self.settings.get("account_number", "")}],
            "customerReferences": [{"value": request.order_id}],
            "customerDetails": {
                "shipperDetails": {"postalAddress": {"countryCode": origin["country"], "cityName": origin["city"]}},
                "receiverDetails": {
                    "postalAddress": {
                        "cityName": request.recipient.get("city", ""),
                        "countryCode": request.recipient.get("country", ""),
                        "postalCode": request.recipient.get("zip_code", ""),
                        "addressLine1": request.recipient.get("street", ""),
                    },
                    "contactInformation": {
                        "fullName": request.recipient.get("name", ""),
                        "phone": request.recipient.get("phone", ""),
                    },
                },
            },
            "content": {
                "packages": [
                    {
                        "weight": p.weight,
                        "dimensions": {"length": p.length, "width": p.width, "height": p.height},
                    }
                    for p in request.packages
                ],
                "description": request.packages[0].description,
                "declaredValue": sum(p.value for p in request.packages),
            },
        }
        data = await self.client.post("/mydhlapi/shipments", payload)
        charges = data.get("shipmentCharges") or [{}]
        details = data.get("estimatedDeliveryDate") or {}
        return CreatedShipment(
            tracking_number=str(data.get("shipmentTrackingNumber") or ""),
            shipping_cost=Decimal(str(charges[0]["price"])) if charges[0].get("price") is not None else None,
            estimated_delivery=parse_datetime(details.get("estimatedDeliveryDate")),
            raw=data,
        )

    async def track(self, tracking_number: str) -> TrackingInfo:
        data = await self.client.get("/track/shipments", {"trackingNumber": tracking_number})
        shipments = data.get("shipments") or []
        if not shipments:
            raise IntegrationAPIError(f"API Error: 404 - No DHL shipment {tracking_number}", status=404)
        shipment = shipments[0]
        current = shipment.get("status") or {}
        events = [
            TrackingEvent(
                timestamp=parse_datetime(e.get("timestamp")),
                location=((e.get("location") or {}).get("address") or {}).get("addressLocality", ""),
                description=e.get("description") or e.get("statusCode") or "",
                status=map_shipment_status(e.get("statusCode"), self.platform),
            )
            for e in shipment.get("events") or []
        ]
        status = map_shipment_status(current.get("statusCode"), self.platform)
        return TrackingInfo(
            tracking_number=tracking_number,
            status=status,
            status_description=current.get("description") or current.get("status") or "",
            estimated_delivery=parse_datetime(shipment.get("estimatedTimeOfDelivery")),
            actual_delivery=parse_datetime(current.get("timestamp")) if status == ShipmentStatus.DELIVERED else None,
            events=events,
        )


class AramexAdapter(CarrierAdapter):
    """Aramex JSON Shipping Services API (ClientInfo in every body)."""

    platform = Platform.ARAMEX
    TRACKING_PATH = "/ShippingAPI.V2/Tracking/Service_1_0.svc/json/TrackShipments"
    SHIPPING_PATH = "/ShippingAPI.V2/Shipping/Service_1_0.svc/json/CreateShipments"

    @staticmethod
    def headers(credentials: dict) -> dict:
        return {"Accept": "application/json"}

    def client_info(self) -> dict:
        return {
            "UserName": self.credentials["api_key"],
            "Password": self.credentials["api_secret"],
            "Version": "v1.0",
            "AccountNumber": self.settings.get("account_number", ""),
            "AccountPin": self.settings.get("account_pin", ""),
            "AccountEntity": self.settings.get("account_entity", "CMB"),
            "AccountCountryCode": self.settings.get("origin_country") or "LK",
            "Source": 24,
        }

    @staticmethod
    def _check(data: dict) -> dict:
        if data.get("HasErrors"):
            notes = data.get("Notifications") or []
            message = "; ".join(n.get("Message", "") for n in notes) or "Aramex request failed"
            raise IntegrationAPIError(f"API Error: 400 - {message}", status=400, details=notes)
        return data

    async def ping(self):
        return self._check(await self.client.post(self.TRACKING_PATH, {
            "ClientInfo": self.client_info(),
            "Shipments": [],
            "GetLastTrackingUpdateOnly": True,
        }))

    async def create(self, request: ShipmentRequest, origin: dict) -> CreatedShipment:
        total_weight = sum(p.weight for p in request.packages)
        payload = {
            "ClientInfo": self.client_info(),
            "Shipments": [{
                "Reference1": request.order_id,
                "Shipper": {
                    "AccountNumber": self.settings.get("account_number", ""),
                    "PartyAddress": {"City": origin["city"], "CountryCode": origin["country"]},
                },
                "Consignee": {
                    "PartyAddress": {
                        "Line1": request.recipient.get("street", ""),
                        "City": request.recipient.get("city", ""),
                        "PostCode": request.recipient.get("zip_code", ""),
                        "CountryCode": request.recipient.get("country", ""),
                    },
                    "Contact": {
                        "PersonName": request.recipient.get("name", ""),
                        "PhoneNumber1": request.recipient.get("phone", ""),
                        "EmailAddress": request.recipient.get("email", ""),
                    },
                },
                "Details": {
                    "ActualWeight": {"Unit": "KG", "Value": total_weight},
                    "NumberOfPieces": len(request.packages),
                    "DescriptionOfGoods": request.packages[0].description,
                    "ProductGroup": "EXP" if request.recipient.get("country") != origin["country"] else "DOM",
                    "ProductType": request.service_type,
                    "PaymentType": "P",
                },
            }],
        }
        data = self._check(await self.client.post(self.SHIPPING_PATH, payload))
        processed = (data.get("Shipments") or [{}])[0]
        return CreatedShipment(tracking_number=str(processed.get("ID") or ""), raw=data)

    async def track(self, tracking_number: str) -> TrackingInfo:
        data = self._check(await self.client.post(self.TRACKING_PATH, {
            "ClientInfo": self.client_info(),
            "Shipments": [tracking_number],
            "GetLastTrackingUpdateOnly": False,
        }))
        results = {}
        for item in data.get("TrackingResults") or []:
            results[item.get("Key")] = item.get("Value") or []
        updates = results.get(tracking_number) or []
        if not updates:
            raise IntegrationAPIError(f"API Error: 404 - No Aramex tracking for {tracking_number}", status=404)
        events = [
            TrackingEvent(
                timestamp=parse_datetime(u.get("UpdateDateTime")),
                location=u.get("UpdateLocation") or "",
                description=u.get("UpdateDescription") or "",
                status=map_shipment_status(u.get("UpdateCode"), self.platform),
            )
            for u in updates
        ]
        events.sort(key=lambda e: e.timestamp or datetime.min.replace(tzinfo=timezone.utc))
        latest = events[-1]
        return TrackingInfo(
            tracking_number=tracking_number,
            status=latest.status,
            status_description=latest.description,
            actual_delivery=latest.timestamp if latest.status == ShipmentStatus.DELIVERED else None,
            events=events,
        )


class DomexAdapter(CarrierAdapter):
    """Domex REST API."""

    platform = Platform.DOMEX

    @staticmethod
    def headers(credentials: dict) -> dict:
        return {
            "Authorization": f"Bearer {credentials['api_key']}",
            "X-API-Key": credentials["api_key"],
        }

    async def ping(self):
        return await self.client.get("/account")

    async def create(self, request: ShipmentRequest, origin: dict) -> CreatedShipment:
        payload = {
            "reference": request.order_id,
            "service_type": request.service_type,
            "origin": origin,
            "recipient": request.recipient,
            "packages": [asdict(p) for p in request.packages],
        }
        data = await self.client.post("/shipments", payload)
        cost = data.get("shipping_cost")
        return CreatedShipment(
            tracking_number=str(data.get("tracking_number") or ""),
            shipping_cost=Decimal(str(cost)) if cost is not None else None,
            estimated_delivery=parse_datetime(data.get("estimated_delivery")),
            raw=data,
        )

    async def track(self, tracking_number: str) -> TrackingInfo:
        data = await self.client.get(f"/shipments/{tracking_number}/track")
        events = [
            TrackingEvent(
                timestamp=parse_datetime(e.get("timestamp")),
                location=e.get("location") or "",
                description=e.get("description") or "",
                status=map_shipment_status(e.get("status"), self.platform),
            )
            for e in data.get("events") or []
        ]
        status = map_shipment_status(data.get("status"), self.platform)
        return TrackingInfo(
            tracking_number=tracking_number,
            status=status,
            status_description=data.get("status_description") or "",
            estimated_delivery=parse_datetime(data.get("estimated_delivery")),
            actual_delivery=parse_datetime(data.get("actual_delivery")),
            events=events,
        )


ADAPTERS: dict[Platform, type[CarrierAdapter]] = {
    Platform.DHL: DHLAdapter,
    Platform.ARAMEX: AramexAdapter,
    Platform.DOMEX: DomexAdapter,
}


# ── Service ──────────────────────────────────────────────

class CourierService(BaseIntegrationService):
    """Shipment creation, tracking and polling for one courier account."""

    def __init__(self, db, account, transport=None):
        super().__init__(db, account, transport)
        self.platform = Platform(account.platform)
        if self.platform not in ADAPTERS:
            raise UnsupportedPlatformError(self.platform.value)

    @property
    def origin(self) -> dict:
        settings = self.settings
        return {
            "country": settings.get("origin_country") or "LK",
            "city": settings.get("origin_city") or "Colombo",
        }

    @property
    def adapter(self) -> CarrierAdapter:
        adapter_cls = ADAPTERS[self.platform]
        credentials = {
            "api_key": self.decrypt(self.account.api_key),
            "api_secret": self.decrypt(self.account.api_secret),
        }
        client = self.http_client(adapter_cls.headers(credentials))
        return adapter_cls(client, credentials, self.settings)

    def status_config(self) -> dict:
        return {
            **{f"origin_{k}": v for k, v in self.origin.items()},
            "has_credentials": bool(self.account.api_key),
            "has_webhook_secret": self.has_webhook_secret(),
        }

    async def probe(self):
        return await self.adapter.ping()

    async def create_shipment(self, request: ShipmentRequest) -> str:
        """Book the shipment with the carrier and store it as PENDING."""
        started = time.monotonic()
        request_data = asdict(request)
        try:
            created = await self.adapter.create(request, self.origin)
            if not created.tracking_number:
                raise IntegrationAPIError(f"{self.config.name} returned no tracking number", status=502)
        except IntegrationError as e:
            await self.log_error("create_shipment", e, request_data=request_data, started=started)
            raise

        first = request.packages[0]
        shipment = Shipment(
            tenant_id=self.tenant_id,
            integration_account_id=self.account.id,
            tracking_number=created.tracking_number,
            courier_name=self.platform.value,
            status=ShipmentStatus.PENDING.value,
            sales_order_ref=request.order_id,
            origin_address=self.origin,
            destination_address=request.recipient,
            weight_kg=Decimal(str(sum(p.weight for p in request.packages))),
            dimensions={"length": first.length, "width": first.width, "height": first.height},
            package_count=len(request.packages),
            description=first.description,
            shipping_cost=created.shipping_cost,
            estimated_delivery=created.estimated_delivery,
            events=[],
            extra={"created_response": created.raw},
        )
        self.db.add(shipment)
        await self.db.commit()
        await self.log_success(
            "create_shipment",
            f"Created {self.platform.value} shipment: {created.tracking_number}",
            request_data=request_data,
            response_data={"tracking_number": created.tracking_number, "platform": self.platform.value},
            started=started,
        )
        return created.tracking_number

    async def _stored_shipment(self, tracking_number: str) -> Optional[Shipment]:
        result = await self.db.execute(
            select(Shipment).where(
                Shipment.tenant_id == self.tenant_id,
                Shipment.tracking_number == tracking_number,
                Shipment.integration_account_id == self.account.id,
            )
        )
        return result.scalar_one_or_none()

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        """Fetch tracking from the carrier and apply it to the stored shipment."""
        started = time.monotonic()
        try:
            info = await self.adapter.track(tracking_number)
        except IntegrationError as e:
            await self.log_error("track_shipment", e, request_data={"tracking_number": tracking_number}, started=started)
            raise

        shipment = await self._stored_shipment(tracking_number)
        if shipment:
            apply_shipment_update(
                shipment, info.to_update(), source="tracking",
                extra_events=[e.to_dict() for e in info.events],
            )
            await self.db.commit()
        await self.log_success(
            "track_shipment", f"Tracked {self.platform.value} shipment: {tracking_number}",
            request_data={"tracking_number": tracking_number}, response_data=info.to_dict(), started=started,
        )
        return info

    async def sync_data(self) -> dict:
        started = time.monotonic()
        terminal = [s.value for s in ShipmentStatus if s.is_terminal]
        result = await self.db.execute(
            select(Shipment.tracking_number).where(
                Shipment.tenant_id == self.tenant_id,
                Shipment.integration_account_id == self.account.id,
                Shipment.status.notin_(terminal),
            )
        )
        tracking_numbers = list(result.scalars().all())

        updated = failed = 0
        for tracking_number in tracking_numbers:
            try:
                await self.track_shipment(tracking_number)
                updated += 1
            except IntegrationError as e:
                logger.warning(f"Failed to update shipment {tracking_number}: {e}")
                failed += 1
            except SQLAlchemyError:
                logger.exception(f"Failed to store tracking for shipment {tracking_number}")
                await self.rollback()
                failed += 1

        await self.mark_synced()
        summary = {
            "shipments_updated": updated,
            "shipments_failed": failed,
            "total_shipments": len(tracking_numbers),
            "platform": self.platform.value,
        }
        await self.log_success(
            "sync_data", f"Tracked {updated}/{len(tracking_numbers)} {self.platform.value} shipments",
            response_data=summary, started=started, items_count=len(tracking_numbers),
        )
        return summary

    def verify_webhook(self, signature: Optional[str], payload: bytes) -> bool:
        """HMAC-SHA256 of the body, ``sha256=`` prefix optional.

        Accounts without a webhook secret accept unsigned callbacks.
        """
        secret = self.decrypt(self.account.webhook_secret)
        if not secret:
            logger.warning(
                f"No webhook secret configured for {self.platform.value} account {self.account.id}; "
                "skipping signature check"
            )
            return True
        if not signature:
            return False
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        return hmac.compare_digest(provided.encode(), sign_payload(secret, payload).encode())
