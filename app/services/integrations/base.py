"""Shared plumbing for platform integration services."""

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import IntegrationError
from app.models import IntegrationAccount, ListingLink, Platform, Product
from app.services.crypto import EncryptionService
from app.services.http_client import IntegrationHttpClient
from app.services.integration_log import IntegrationLogger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformConfig:
    name: str
    base_url: str
    auth_url: Optional[str]
    webhook_path: str
    scopes: tuple[str, ...] = field(default_factory=tuple)


PLATFORM_CONFIGS: dict[Platform, PlatformConfig] = {
    Platform.FACEBOOK_MARKETPLACE: PlatformConfig(
        name="Facebook Marketplace",
        base_url="https://graph.facebook.com/v18.0",
        auth_url="https://www.facebook.com/v18.0/dialog/oauth",
        webhook_path="/api/v1/integrations/facebook/webhook",
        scopes=("pages_manage_metadata", "pages_show_list", "pages_messaging"),
    ),
    Platform.WHATSAPP_BUSINESS: PlatformConfig(
        name="WhatsApp Business API",
        base_url="https://graph.facebook.com/v18.0",
        auth_url="https://www.facebook.com/v18.0/dialog/oauth",
        webhook_path="/api/v1/integrations/whatsapp/webhook",
        scopes=("whatsapp_business_management", "whatsapp_business_messaging"),
    ),
    Platform.IKMAN_LK: PlatformConfig(
        name="Ikman.lk",
        base_url="https://api.ikman.lk/v1",
        auth_url=None,
        webhook_path="/api/v1/integrations/ikman/webhook",
    ),
    Platform.ARAMEX: PlatformConfig(
        name="Aramex",
        base_url="https://ws.aramex.net",
        auth_url=None,
        webhook_path="/api/v1/integrations/aramex/webhook",
    ),
    Platform.DHL: PlatformConfig(
        name="DHL",
        base_url="https://api-eu.dhl.com",
        auth_url=None,
        webhook_path="/api/v1/integrations/dhl/webhook",
    ),
    Platform.DOMEX: PlatformConfig(
        name="Domex (Sri Lanka)",
        base_url="https://api.domex.lk/v1",
        auth_url=None,
        webhook_path="/api/v1/integrations/domex/webhook",
    ),
}


def sign_payload(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of a raw webhook body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _elapsed_ms(started: Optional[float]) -> Optional[int]:
    if started is None:
        return None
    return int((time.monotonic() - started) * 1000)


class BaseIntegrationService(ABC):
    """One connected platform account.

    Subclasses implement the vendor calls; this class owns credential
    decryption, the integration log and the ``last_sync_at`` stamp. The
    tenant always comes from the account row.
    """

    platform: Platform

    def __init__(
        self,
        db: AsyncSession,
        account: IntegrationAccount,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.account = account
        self.tenant_id = account.tenant_id
        self.transport = transport
        self.config = PLATFORM_CONFIGS[Platform(account.platform)]

    # ── credentials / settings ───────────────────────────

    @staticmethod
    def decrypt(value: Optional[str]) -> str:
        return EncryptionService.decrypt_optional(value)

    @property
    def settings(self) -> dict:
        return dict(self.account.settings or {})

    def http_client(self, headers: Optional[dict[str, str]] = None, base_url: Optional[str] = None) -> IntegrationHttpClient:
        return IntegrationHttpClient(
            base_url or self.config.base_url,
            headers=headers,
            transport=self.transport,
        )

    # ── logging ──────────────────────────────────────────

    async def log_success(
        self,
        action: str,
        message: str,
        request_data: Any = None,
        response_data: Any = None,
        started: Optional[float] = None,
        items_count: Optional[int] = None,
    ) -> None:
        await IntegrationLogger.success(
            self.db, self.tenant_id, self.account.id, action,
            message=message, request_data=request_data, response_data=response_data,
            duration_ms=_elapsed_ms(started), items_count=items_count,
        )

    async def log_error(
        self,
        action: str,
        error: Exception,
        request_data: Any = None,
        started: Optional[float] = None,
    ) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        logger.warning(f"{self.config.name} {action} failed for account {self.account.id}: {message}")
        await IntegrationLogger.error(
            self.db, self.tenant_id, self.account.id, action,
            error_message=message, request_data=request_data, duration_ms=_elapsed_ms(started),
        )

    async def rollback(self) -> None:
        """Discard a failed item and reload the account the rollback expired."""
        await self.db.rollback()
        await self.db.refresh(self.account)

    async def mark_synced(self) -> None:
        self.account.last_sync_at = datetime.now(timezone.utc)
        await self.db.commit()

    # ── contract ─────────────────────────────────────────

    @abstractmethod
    async def probe(self) -> Any:
        """Cheapest authenticated vendor call; raises on failure."""

    @abstractmethod
    async def sync_data(self) -> dict:
        """Run one sync pass and return counts."""

    def status_config(self) -> dict:
        """Non-secret configuration shown in ``get_status``."""
        return {}

    async def test_connection(self) -> bool:
        started = time.monotonic()
        try:
            await self.probe()
        except IntegrationError as e:
            await self.log_error("connection_test", e, started=started)
            return False
        await self.log_success("connection_test", f"{self.config.name} connection successful", started=started)
        return True

    async def get_status(self) -> dict:
        connected = await self.test_connection()
        return {
            "platform": self.platform.value,
            "connected": connected,
            "account_name": self.account.account_name,
            "last_sync": self.account.last_sync_at,
            "expires_at": self.account.expires_at,
            "config": self.status_config(),
        }

    # ── webhooks ─────────────────────────────────────────

    def has_webhook_secret(self) -> bool:
        return bool(self.account.webhook_secret)

    def verify_webhook(self, signature: Optional[str], payload: bytes) -> bool:
        """``sha256=<hex>`` HMAC of the raw body with the account's webhook secret."""
        secret = self.decrypt(self.account.webhook_secret)
        if not secret or not signature:
            return False
        expected = f"sha256={sign_payload(secret, payload)}"
        return hmac.compare_digest(signature.strip().encode(), expected.encode())


class MarketplaceService(BaseIntegrationService):
    """Pushes ERP products to a marketplace, one listing per product.

    The product → listing id mapping lives in ``listing_links`` so repeated
    runs update the same listing instead of creating new ones.
    """

    @abstractmethod
    def listing_payload(self, product: Product) -> dict:
        ...

    @abstractmethod
    async def create_listing(self, listing: dict) -> str:
        ...

    @abstractmethod
    async def update_listing(self, listing_id: str, updates: dict) -> None:
        ...

    def accepts(self, product: Product) -> bool:
        return True

    async def active_products(self) -> list[Product]:
        result = await self.db.execute(
            select(Product)
            .where(Product.tenant_id == self.tenant_id, Product.is_active.is_(True))
            .order_by(Product.sku)
        )
        return list(result.scalars().all())

    async def _links(self) -> dict:
        result = await self.db.execute(
            select(ListingLink).where(ListingLink.integration_account_id == self.account.id)
        )
        return {link.product_id: link for link in result.scalars().all()}

    async def sync_from_erp_products(self, products: list[Product]) -> list[dict]:
        links = await self._links()
        results = []
        for product in products:
            if not self.accepts(product):
                continue
            payload = self.listing_payload(product)
            link = links.get(product.id)
            try:
                if link:
                    status = "updated"
                    try:
                        await self.update_listing(link.external_id, payload)
                    except IntegrationError as e:
                        # listing removed on the marketplace side
                        if getattr(e, "status", None) != 404:
                            raise
                        link.external_id = await self.create_listing(payload)
                        status = "created"
                    link.status = "active"
                    link.last_synced_at = datetime.now(timezone.utc)
                else:
                    listing_id = await self.create_listing(payload)
                    link = ListingLink(
                        integration_account_id=self.account.id,
                        product_id=product.id,
                        external_id=listing_id,
                    )
                    self.db.add(link)
                    links[product.id] = link
                    status = "created"
                await self.db.commit()
                results.append({"product_id": str(product.id), "listing_id": link.external_id, "status": status})
            except IntegrationError as e:
                logger.error(f"Failed to sync product {product.id} to {self.config.name}: {e}")
                results.append({"product_id": str(product.id), "status": "failed", "error": str(e)})
        return results

    async def sync_data(self) -> dict:
        started = time.monotonic()
        products = await self.active_products()
        try:
            results = await self.sync_from_erp_products(products)
        except IntegrationError as e:
            await self.log_error("sync_data", e, started=started)
            raise
        await self.mark_synced()
        summary = {
            "products_synced": len([p for p in products if self.accepts(p)]),
            "listings_created": sum(1 for r in results if r["status"] == "created"),
            "listings_updated": sum(1 for r in results if r["status"] == "updated"),
            "listings_failed": sum(1 for r in results if r["status"] == "failed"),
            "results": results,
        }
        await self.log_success(
            "sync_data",
            f"Synced {summary['products_synced']} products to {self.config.name}",
            response_data={k: v for k, v in summary.items() if k != "results"},
            started=started,
            items_count=summary["products_synced"],
        )
        return summary
