"""HTTP client wrapper for vendor API calls."""

from typing import Any, Optional

import httpx

from app.config import get_settings
from app.errors import IntegrationAPIError


class IntegrationHttpClient:
    """JSON client bound to one vendor base URL.

    ``transport`` lets callers (and tests) swap the network layer, e.g. for
    ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.user_agent,
            **(headers or {}),
        }
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._transport = transport

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        data: Any = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"headers": self.headers}
        if params:
            kwargs["params"] = {k: str(v) for k, v in params.items() if v is not None}
        if data is not None:
            kwargs["json"] = data
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, self._url(endpoint), **kwargs)
        except httpx.HTTPError as e:
            raise IntegrationAPIError(f"API Error: 0 - {e}", status=0) from e
        return self._handle_response(resp)

    async def get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Any = None) -> Any:
        return await self.request("POST", endpoint, data=data)

    async def put(self, endpoint: str, data: Any = None) -> Any:
        return await self.request("PUT", endpoint, data=data)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    @staticmethod
    def _handle_response(resp: httpx.Response) -> Any:
        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.is_success:
            return data

        message = resp.reason_phrase or "Request failed"
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
            elif isinstance(error, str) and error:
                message = error
            elif data.get("message"):
                message = data["message"]
            elif data.get("detail"):
                message = str(data["detail"])
        raise IntegrationAPIError(
            f"API Error: {resp.status_code} - {message}",
            status=resp.status_code,
            details=data or None,
        )
