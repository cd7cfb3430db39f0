"""Pydantic schemas for the integration API."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Literal, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    pages: int


# ── Integration accounts ─────────────────────────────────
class IntegrationCreate(BaseModel):
    platform: str
    account_name: str = Field(min_length=1)
    account_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class IntegrationUpdate(BaseModel):
    account_name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    settings: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


class IntegrationLogOut(BaseModel):
    id: UUID
    integration_account_id: Optional[UUID] = None
    action: str
    status: str
    message: Optional[str] = None
    error_message: Optional[str] = None
    request_data: Optional[Any] = None
    response_data: Optional[Any] = None
    duration_ms: Optional[int] = None
    items_count: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class IntegrationOut(BaseModel):
    """Account as shown to API clients. Secrets only appear as ``has_*`` flags."""
    id: UUID
    platform: str
    account_id: str
    account_name: str
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    last_sync_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    has_access_token: bool = False
    has_refresh_token: bool = False
    has_api_key: bool = False
    has_api_secret: bool = False
    has_webhook_secret: bool = False
    recent_logs: list[IntegrationLogOut] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_account(cls, account, recent_logs=None, counts=None) -> "IntegrationOut":
        return cls(
            id=account.id,
            platform=account.platform,
            account_id=account.account_id,
            account_name=account.account_name,
            settings=account.settings or {},
            is_active=account.is_active,
            last_sync_at=account.last_sync_at,
            expires_at=account.expires_at,
            created_at=account.created_at,
            has_access_token=bool(account.access_token),
            has_refresh_token=bool(account.refresh_token),
            has_api_key=bool(account.api_key),
            has_api_secret=bool(account.api_secret),
            has_webhook_secret=bool(account.webhook_secret),
            recent_logs=[IntegrationLogOut.model_validate(log) for log in recent_logs or []],
            counts=counts or {},
        )


class ConnectionTestOut(BaseModel):
    integration_id: UUID
    platform: str
    connected: bool


# ── Platform configuration ───────────────────────────────
class FacebookConfig(BaseModel):
    page_id: str
    account_name: str = "Facebook Page"
    access_token: str
    webhook_secret: Optional[str] = None


class WhatsAppSendRequest(BaseModel):
    to: str = Field(min_length=1)
    message: str = Field(min_length=1)
    message_type: Literal["text", "template"] = "text"
    integration_id: Optional[UUID] = None


class CourierCreate(BaseModel):
    platform: str
    account_name: str = Field(min_length=1)
    account_id: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    account_number: Optional[str] = None
    origin_country: str = "LK"
    origin_city: str = "Colombo"


# ── Shipments ────────────────────────────────────────────
class AddressIn(BaseModel):
    name: str
    phone: str = ""
    email: str = ""
    company: str = ""
    street: str = ""
    city: str
    state: str = ""
    zip_code: str = ""
    country: str


class PackageIn(BaseModel):
    weight: float = Field(gt=0)
    length: float = 0
    width: float = 0
    height: float = 0
    description: str = ""
    value: float = 0


class ShipmentCreate(BaseModel):
    integration_id: UUID
    order_id: str = Field(min_length=1)
    recipient: AddressIn
    packages: list[PackageIn] = Field(min_length=1)
    service_type: str = "STANDARD"


class ShipmentCreated(BaseModel):
    tracking_number: str
    courier: str
    integration: str


class ShipmentOut(BaseModel):
    id: UUID
    integration_account_id: UUID
    tracking_number: str
    courier_name: str
    status: str
    sales_order_ref: str = ""
    origin_address: Optional[dict] = None
    destination_address: Optional[dict] = None
    weight_kg: Optional[Decimal] = None
    package_count: int = 1
    description: str = ""
    shipping_cost: Optional[Decimal] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    events: list[dict] = Field(default_factory=list)
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Messages ─────────────────────────────────────────────
class MessageOut(BaseModel):
    id: UUID
    integration_account_id: Optional[UUID] = None
    customer_id: Optional[UUID] = None
    platform: str
    message_id: str
    direction: str
    sender_id: str
    recipient_id: str
    message_type: str
    content: str
    status: str
    sent_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Sync ─────────────────────────────────────────────────
class SyncAction(BaseModel):
    action: str
