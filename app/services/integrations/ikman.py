"""Ikman.lk classifieds integration (API key + secret)."""

import time
from typing import Optional

from app.config import get_settings
from app.errors import IntegrationError
from app.models import Platform, Product
from app.services.integrations.base import MarketplaceService


class IkmanService(MarketplaceService):
    platform = Platform.IKMAN_LK

    @property
    def client(self):
        return self.http_client({
            "X-API-Key": self.decrypt(self.account.api_key),
            "X-API-Secret": self.decrypt(self.account.api_secret),
        })

    def status_config(self) -> dict:
        return {
            "default_location": self.settings.get("location") or "Colombo",
            "has_api_key": bool(self.account.api_key),
            "has_api_secret": bool(self.account.api_secret),
        }

    async def probe(self):
        return await self.client.get("/account")

    async def get_listings(self, category: Optional[str] = None, location: Optional[str] = None) -> list[dict]:
        started = time.monotonic()
        try:
            response = await self.client.get("/listings", {"category": category, "location": location})
        except IntegrationError as e:
            await self.log_error("sync_listings", e, started=started)
            raise
        listings = response.get("data") or response.get("listings") or []
        await self.log_success(
            "sync_listings", f"Retrieved {len(listings)} listings",
            started=started, items_count=len(listings),
        )
        return listings

    async def create_listing(self, listing: dict) -> str:
        started = time.monotonic()
        try:
            response = await self.client.post("/listings", listing)
        except IntegrationError as e:
            await self.log_error("create_listing", e, request_data=listing, started=started)
            raise
        listing_id = str(response.get("id", ""))
        await self.log_success(
            "create_listing", f"Created Ikman listing: {listing_id}",
            request_data=listing, response_data=response, started=started,
        )
        return listing_id

    async def update_listing(self, listing_id: str, updates: dict) -> None:
        started = time.monotonic()
        try:
            await self.client.put(f"/listings/{listing_id}", updates)
        except IntegrationError as e:
            await self.log_error("update_listing", e, request_data=updates, started=started)
            raise
        await self.log_success("update_listing", f"Updated Ikman listing: {listing_id}", request_data=updates, started=started)

    def accepts(self, product: Product) -> bool:
        return bool(product.can_be_sold)

    def listing_payload(self, product: Product) -> dict:
        # Prices are kept in USD in the ERP; Ikman lists in LKR
        rate = get_settings().lkr_per_usd
        return {
            "title": product.name,
            "description": product.description or "",
            "price": round(float(product.list_price or 0) * rate),
            "currency": "LKR",
            "category": product.category or "Other",
            "location": self.settings.get("location") or "Colombo",
            "condition": "new",
            "images": [],
            "contact_info": {
                "name": self.settings.get("contact_name") or self.account.account_name,
                "phone": self.settings.get("contact_phone") or "",
            },
        }
