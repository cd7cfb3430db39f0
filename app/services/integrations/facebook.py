"""Facebook Marketplace (Graph API) integration."""

import time

from app.errors import IntegrationError
from app.models import Platform, Product
from app.services.integrations.base import MarketplaceService

LISTING_FIELDS = "id,title,description,price,currency,category,location,images,condition,availability"


class FacebookMarketplaceService(MarketplaceService):
    platform = Platform.FACEBOOK_MARKETPLACE

    @property
    def page_id(self) -> str:
        return str(self.settings.get("page_id") or self.account.account_id)

    @property
    def client(self):
        token = self.decrypt(self.account.access_token)
        return self.http_client({"Authorization": f"Bearer {token}"})

    def status_config(self) -> dict:
        return {
            "page_id": self.page_id,
            "has_access_token": bool(self.account.access_token),
            "has_webhook_secret": self.has_webhook_secret(),
        }

    async def probe(self):
        return await self.client.get(f"/{self.page_id}", {"fields": "id,name"})

    async def get_listings(self) -> list[dict]:
        started = time.monotonic()
        try:
            response = await self.client.get(
                f"/{self.page_id}/marketplace_listings",
                {"fields": LISTING_FIELDS, "limit": 100},
            )
        except IntegrationError as e:
            await self.log_error("sync_listings", e, started=started)
            raise
        listings = response.get("data") or []
        await self.log_success(
            "sync_listings", f"Retrieved {len(listings)} listings",
            started=started, items_count=len(listings),
        )
        return listings

    async def create_listing(self, listing: dict) -> str:
        started = time.monotonic()
        payload = {
            "title": listing.get("title"),
            "description": listing.get("description"),
            "price": listing.get("price"),
            "currency": listing.get("currency") or "USD",
            "category": listing.get("category"),
            "location": listing.get("location"),
            "condition": listing.get("condition") or "NEW",
            "availability": listing.get("availability") or "IN_STOCK",
            "images": listing.get("images") or [],
        }
        try:
            response = await self.client.post(f"/{self.page_id}/marketplace_listings", payload)
        except IntegrationError as e:
            await self.log_error("create_listing", e, request_data=payload, started=started)
            raise
        listing_id = str(response.get("id", ""))
        await self.log_success(
            "create_listing", f"Created listing: {listing_id}",
            request_data=payload, response_data=response, started=started,
        )
        return listing_id

    async def update_listing(self, listing_id: str, updates: dict) -> None:
        started = time.monotonic()
        try:
            await self.client.post(f"/{listing_id}", updates)
        except IntegrationError as e:
            await self.log_error("update_listing", e, request_data=updates, started=started)
            raise
        await self.log_success("update_listing", f"Updated listing: {listing_id}", request_data=updates, started=started)

    async def delete_listing(self, listing_id: str) -> None:
        started = time.monotonic()
        try:
            await self.client.delete(f"/{listing_id}")
        except IntegrationError as e:
            await self.log_error("delete_listing", e, started=started)
            raise
        await self.log_success("delete_listing", f"Deleted listing: {listing_id}", started=started)

    def listing_payload(self, product: Product) -> dict:
        settings = self.settings
        return {
            "title": product.name,
            "description": product.description or "",
            "price": float(product.list_price or 0),
            "currency": settings.get("currency") or "USD",
            "category": product.category or "Other",
            "condition": "NEW",
            "availability": "IN_STOCK" if (product.qty_available or 0) > 0 else "OUT_OF_STOCK",
            "location": {
                "city": settings.get("city") or "Colombo",
                "region": settings.get("region") or "Western",
            },
        }
