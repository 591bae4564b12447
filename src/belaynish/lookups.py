from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from .logging import get_logger

logger = get_logger(__name__)

WIKI_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/{query}"
DUCK_URL = "https://api.duckduckgo.com/"
TRANSLATE_URL = "https://translate.googleapis.com/translate_a/single"


class Lookups:
    """Key-less search and translation helpers. Failures degrade to text."""

    def __init__(
        self,
        *,
        timeout_s: float = 15,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _get_json(
        self, name: str, url: str, params: dict[str, str] | None = None
    ) -> Any | None:
        try:
            resp = await self._http_client.get(url, params=params)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "lookup.failed",
                lookup=name,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    async def wiki_summary(self, query: str) -> str:
        data = await self._get_json("wiki", WIKI_URL.format(query=quote(query)))
        if data is None:
            return "Wikipedia lookup failed."
        extract = data.get("extract") if isinstance(data, dict) else None
        return extract or "No Wikipedia summary found."

    async def duck_duck(self, query: str) -> str:
        data = await self._get_json(
            "duck",
            DUCK_URL,
            {"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"},
        )
        if not isinstance(data, dict):
            return "DuckDuckGo lookup failed."
        if data.get("AbstractText"):
            return data["AbstractText"]
        topics = data.get("RelatedTopics")
        if isinstance(topics, list) and topics and isinstance(topics[0], dict):
            text = topics[0].get("Text")
            if text:
                return text
        return "No DuckDuckGo instant answer."

    async def translate(self, text: str, to: str = "en") -> str:
        data = await self._get_json(
            "translate",
            TRANSLATE_URL,
            {"client": "gtx", "sl": "auto", "tl": to, "dt": "t", "q": text},
        )
        if isinstance(data, list) and data and isinstance(data[0], list):
            return "".join(
                part[0]
                for part in data[0]
                if isinstance(part, list) and part and isinstance(part[0], str)
            )
        return text
