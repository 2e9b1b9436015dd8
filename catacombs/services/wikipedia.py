"""Wikipedia lookups used when TMDB has no biography or portrait."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WikipediaSummary:
    summary: str | None = None
    thumbnail_url: str | None = None


class WikipediaClient:
    """Thin wrapper over the MediaWiki action API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._api_url = str(settings.wikipedia_api_url)
        self._client = http_client

    async def search_article(self, query: str) -> str | None:
        """Title of the best matching article, if any."""

        if not query:
            return None
        data = await self._get(
            {
                "action": "opensearch",
                "limit": 1,
                "namespace": 0,
                "format": "json",
                "search": query,
            }
        )
        if not isinstance(data, list) or len(data) < 2 or not data[1]:
            return None
        title = data[1][0]
        return title if isinstance(title, str) and title else None

    async def summary_and_thumbnail(self, article_title: str) -> WikipediaSummary:
        if not article_title:
            return WikipediaSummary()
        data = await self._get(
            {
                "action": "query",
                "prop": "pageimages|extracts",
                "titles": article_title,
                "format": "json",
                "exintro": 1,
                "explaintext": 1,
                "pithumbsize": 400,
            }
        )
        if not isinstance(data, dict):
            return WikipediaSummary()
        pages = (data.get("query") or {}).get("pages") or {}
        page = next(iter(pages.values()), None) if isinstance(pages, dict) else None
        if not isinstance(page, dict):
            return WikipediaSummary()
        thumbnail = page.get("thumbnail") or {}
        return WikipediaSummary(
            summary=page.get("extract") or None,
            thumbnail_url=thumbnail.get("source") if isinstance(thumbnail, dict) else None,
        )

    async def lookup_person(self, name: str) -> WikipediaSummary:
        article = await self.search_article(name)
        if article is None:
            return WikipediaSummary()
        return await self.summary_and_thumbnail(article)

    async def _get(self, params: dict[str, Any]) -> Any:
        try:
            response = await self._client.get(self._api_url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Wikipedia request failed: %s", exc)
            return None
        if response.status_code >= 400:
            logger.warning("Wikipedia request returned %s", response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Wikipedia returned invalid JSON")
            return None
