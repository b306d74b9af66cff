from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from reconciliation.errors import PostcodeLookupFailed, PostcodeNotFound
from reconciliation.location import clean_location_name, normalize_postcode

logger = logging.getLogger(__name__)


class JsonCache(Protocol):
    async def get_json(self, key: str) -> dict[str, Any] | None: ...

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...


class PostcodeLookup:
    def __init__(
        self,
        cache: JsonCache | None,
        base_url: str = "https://api.postcodes.io",
        ttl_seconds: int = 604_800,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._transport = transport

    async def lookup(self, postcode: str) -> dict[str, Any]:
        key = normalize_postcode(postcode)
        if self.cache is not None:
            cached = await self.cache.get_json(f"postcode:{key}")
            if cached is not None:
                return cached

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/postcodes/{key}")
        except httpx.HTTPError as exc:
            logger.warning("Postcode lookup for %s failed: %s", key, exc)
            raise PostcodeLookupFailed("Unable to lookup postcode. Please try again later") from exc

        if resp.status_code == 404:
            raise PostcodeNotFound(f"Postcode not found: {key}")
        if resp.is_error:
            raise PostcodeLookupFailed(f"postcodes.io returned HTTP {resp.status_code}")

        result = (resp.json() or {}).get("result")
        if not result:
            raise PostcodeNotFound(f"Postcode not found: {key}")

        location = {
            "postcode": result.get("postcode") or key,
            "latitude": result.get("latitude"),
            "longitude": result.get("longitude"),
            "location_name": clean_location_name(result),
        }
        if self.cache is not None:
            await self.cache.set_json(f"postcode:{key}", location, ttl_seconds=self.ttl_seconds)
        return location
