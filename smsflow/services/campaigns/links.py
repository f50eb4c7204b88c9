"""Tracked discount apply URLs and optional link shortening."""

from typing import Any, Protocol
from urllib.parse import quote

import httpx

from smsflow.common.logging import logger


class Shortener(Protocol):
    async def shorten(self, url: str) -> str: ...


def build_apply_url(shop_domain: str, code: str, campaign_id: str, utm: dict[str, Any] | None = None) -> str:
    """`https://{shop}/discount/{code}?redirect=/checkout` plus UTM parameters."""

    params = {
        "redirect": "/checkout",
        "utm_source": "sms",
        "utm_medium": "sms",
        "utm_campaign": campaign_id,
    }
    for key, value in (utm or {}).items():
        if value not in (None, ""):
            params[key if key.startswith("utm_") else f"utm_{key}"] = str(value)
    return str(httpx.URL(f"https://{shop_domain}/discount/{quote(code, safe='')}", params=params))


class HttpShortener:
    """Shortens through `POST {base_url}/shorten`; the long URL is kept on failure."""

    def __init__(self, base_url: str, timeout_seconds: float = 3.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def shorten(self, url: str) -> str:
        try:
            resp = await self._client.post(f"{self.base_url}/shorten", json={"url": url})
            resp.raise_for_status()
            return resp.json().get("short_url") or url
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("shortlink failed, using long url error=%s", exc)
            return url

    async def aclose(self) -> None:
        await self._client.aclose()
