"""Integration layer data models."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, JSON,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Platform(str, enum.Enum):
    """External platforms an integration account can connect to."""
    FACEBOOK_MARKETPLACE = "FACEBOOK_MARKETPLACE"
    WHATSAPP_BUSINESS = "WHATSAPP_BUSINESS"
    IKMAN_LK = "IKMAN_LK"
    ARAMEX = "ARAMEX"
    DHL = "DHL"
    DOMEX = "DOMEX"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Accept enum values and the short webhook names (``facebook``, ``dhl``)."""
        raw = (value or "").strip().upper()
        aliases = {
            "FACEBOOK": cls.FACEBOOK_MARKETPLACE,
            "WHATSAPP": cls.WHATSAPP_BUSINESS,
            "IKMAN": cls.IKMAN_LK,
        }
        if raw in aliases:
            return aliases[raw]
        return cls(raw)


COURIER_PLATFORMS = (Platform.ARAMEX, Platform.DHL, Platform.DOMEX)


class LogStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class MessagePlatform(str, enum.Enum):
    FACEBOOK_MESSENGER = "FACEBOOK_MESSENGER"
    WHATSAPP = "WHATSAPP"


class MessageDirection(str, enum.Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"


class MessageStatus(str, enum.Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class ShipmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"

    @property
    def is_terminal(self) -> bool:
        return self in (ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED, ShipmentStatus.RETURNED)


def _values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Tenant(Base):
    """Customer organization; every integration row is scoped to one."""
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(300), default="")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Customer(Base):
    """CRM contact, created on first contact through a messaging platform."""
    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(300), nullable=False)
    email = Column(String(320), default="")
    phone = Column(String(50), default="", index=True)
    source = Column(String(50), default="")
    external_ids = Column(JSON, default=dict)  # {"WHATSAPP": "9477...", "FACEBOOK_MESSENGER": "psid"}
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Product(Base):
    """ERP product pushed to marketplaces."""
    __tablename__ = "products"
    __table_args__ = (UniqueConstraint("tenant_id", "sku", name="uq_product_tenant_sku"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    sku = Column(String(100), nullable=False)
    name = Column(String(500), nullable=False)
    description = Column(Text, default="")
    category = Column(String(200), default="")
    list_price = Column(Numeric(12, 2), default=0)
    qty_available = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    can_be_sold = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class IntegrationAccount(Base):
    """Per-tenant credential set for an external platform. Secrets are encrypted."""
    __tablename__ = "integration_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "account_id", name="uq_integration_account"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    platform = Column(Enum(*_values(Platform), name="integration_platform"), nullable=False)
    account_id = Column(String(200), nullable=False)
    account_name = Column(String(300), nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    api_key = Column(Text, nullable=True)
    api_secret = Column(Text, nullable=True)
    webhook_secret = Column(Text, nullable=True)
    settings = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    logs = relationship("IntegrationLog", back_populates="integration_account", cascade="all, delete-orphan")
    shipments = relationship("Shipment", back_populates="integration_account")
    messages = relationship("Message", back_populates="integration_account")

    @property
    def is_courier(self) -> bool:
        return self.platform in COURIER_PLATFORMS


class IntegrationLog(Base):
    """One recorded integration action."""
    __tablename__ = "integration_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    integration_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("integration_accounts.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    action = Column(String(100), nullable=False)
    status = Column(Enum(*_values(LogStatus), name="integration_log_status"), nullable=False)
    message = Column(Text, nullable=True)
    request_data = Column(JSON, nullable=True)
    response_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    items_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    integration_account = relationship("IntegrationAccount", back_populates="logs")


class Message(Base):
    """Inbound or outbound chat message from a messaging platform."""
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "message_id", name="uq_message_platform_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    integration_account_id = Column(UUID(as_uuid=True), ForeignKey("integration_accounts.id"), nullable=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True)
    platform = Column(Enum(*_values(MessagePlatform), name="message_platform"), nullable=False)
    message_id = Column(String(255), nullable=False)
    direction = Column(Enum(*_values(MessageDirection), name="message_direction"), nullable=False)
    sender_id = Column(String(255), default="unknown")
    recipient_id = Column(String(255), default="unknown")
    message_type = Column(Enum(*_values(MessageType), name="message_type"), default=MessageType.TEXT.value)
    content = Column(Text, default="")
    status = Column(Enum(*_values(MessageStatus), name="message_status"), default=MessageStatus.DELIVERED.value)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    integration_account = relationship("IntegrationAccount", back_populates="messages")


class Shipment(Base):
    """Courier shipment tracked by webhook and polling."""
    __tablename__ = "shipments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "tracking_number", name="uq_shipment_tracking"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    integration_account_id = Column(UUID(as_uuid=True), ForeignKey("integration_accounts.id"), nullable=False)
    tracking_number = Column(String(100), nullable=False, index=True)
    courier_name = Column(String(50), nullable=False)
    status = Column(Enum(*_values(ShipmentStatus), name="shipment_status"), default=ShipmentStatus.PENDING.value)
    sales_order_ref = Column(String(100), default="")
    origin_address = Column(JSON, default=dict)
    destination_address = Column(JSON, default=dict)
    weight_kg = Column(Numeric(10, 3), default=0)
    dimensions = Column(JSON, default=dict)
    package_count = Column(Integer, default=1)
    description = Column(Text, default="")
    shipping_cost = Column(Numeric(12, 2), nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    actual_delivery = Column(DateTime(timezone=True), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    events = Column(JSON, default=list)  # [{timestamp, status, location, description}]
    extra = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    integration_account = relationship("IntegrationAccount", back_populates="shipments")


class ListingLink(Base):
    """ERP product ↔ marketplace listing id, keeps marketplace sync idempotent."""
    __tablename__ = "listing_links"
    __table_args__ = (
        UniqueConstraint("integration_account_id", "product_id", name="uq_listing_link"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_account_id = Column(
        UUID(as_uuid=True), ForeignKey("integration_accounts.id", ondelete="CASCADE"), nullable=False,
    )
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    external_id = Column(String(255), nullable=False)
    status = Column(String(30), default="active")
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)


class WebhookReceipt(Base):
    """Fingerprint of a processed webhook body; vendor redeliveries are skipped."""
    __tablename__ = "webhook_receipts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "fingerprint", name="uq_webhook_receipt"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    platform = Column(String(50), nullable=False)
    fingerprint = Column(String(64), nullable=False)
    received_at = Column(DateTime(timezone=True), default=utcnow)
