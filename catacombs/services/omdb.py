"""Secondary lookups against OMDb to backfill IMDb ratings, posters and plots."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from ..config import Settings
from ..exceptions import ConfigurationError, NetworkError
from ..models import Movie, OmdbRecord
from ..storage import KeyValueStorage
from ..utils import parse_year, safe_number
from .cache import Clock, NegativeMemo, TimedCache, make_cache_key
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

OMDB_CACHE_KEY = "catacombs-omdb-cache-v1"
OMDB_MISSES_KEY = "catacombs-omdb-misses-v1"


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.upper() == "N/A":
        return None
    return value


def parse_record(payload: dict[str, Any]) -> OmdbRecord | None:
    """Convert an OMDb title response into an :class:`OmdbRecord`."""

    if str(payload.get("Response", "")).lower() != "true":
        return None
    imdb_id = _clean(payload.get("imdbID"))
    if not imdb_id:
        return None
    return OmdbRecord(
        imdb_id=imdb_id,
        title=_clean(payload.get("Title")),
        year=parse_year(_clean(payload.get("Year"))),
        rating=safe_number(_clean(payload.get("imdbRating"))),
        poster=_clean(payload.get("Poster")),
        plot=_clean(payload.get("Plot")),
    )


class OMDbClient:
    """Cache-first OMDb client that only fills fields left empty."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        storage: KeyValueStorage,
        *,
        clock: Clock = time.time,
        limiter: RateLimiter | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._limiter = limiter or RateLimiter(settings.max_requests_per_second)
        self._cache: TimedCache[OmdbRecord] = TimedCache(
            storage,
            OMDB_CACHE_KEY,
            settings.provider_cache_seconds,
            model=OmdbRecord,
            clock=clock,
        )
        self._misses = NegativeMemo(
            storage, OMDB_MISSES_KEY, settings.negative_cache_seconds, clock=clock
        )
        try:
            settings.require_omdb_credentials()
        except ConfigurationError as exc:
            logger.error("OMDb lookups disabled: %s", exc)
            self.enabled = False
        else:
            self.enabled = True

    async def lookup(self, title: str, year: int | None = None) -> OmdbRecord | None:
        """Resolve a title: by title and year, by title, then by free-text search."""

        if not title:
            return None
        key = make_cache_key([title], year)
        hit = self._cache.get(key)
        if hit is not None:
            return hit.payload
        if not self.enabled or self._misses.active(key) is not None:
            return None

        try:
            record = await self._resolve(title, year)
        except NetworkError as exc:
            logger.warning("OMDb lookup failed for %s: %s", title, exc)
            stale = self._cache.get(key, allow_stale=True)
            return stale.payload if stale is not None else None

        if record is None:
            stale = self._cache.get(key, allow_stale=True)
            if stale is not None:
                return stale.payload
            self._misses.record(key)
            return None
        self._cache.set(key, record)
        self._misses.clear(key)
        return record

    async def supplement(self, movie: Movie) -> Movie:
        """Fill ``imdb_id``, ``imdb_rating``, ``poster_url`` and ``plot`` when empty."""

        missing = [
            name
            for name in ("imdb_id", "imdb_rating", "poster_url", "plot")
            if getattr(movie, name) in (None, "")
        ]
        if not missing or not self.enabled:
            return movie

        record: OmdbRecord | None = None
        for title in movie.lookup_titles():
            record = await self.lookup(title, movie.year)
            if record is not None:
                break
        if record is None:
            return movie

        values = {
            "imdb_id": record.imdb_id,
            "imdb_rating": record.rating,
            "poster_url": record.poster,
            "plot": record.plot,
        }
        update = {
            name: values[name] for name in missing if values[name] not in (None, "")
        }
        return movie.model_copy(update=update) if update else movie

    async def _resolve(self, title: str, year: int | None) -> OmdbRecord | None:
        if year is not None:
            record = parse_record(await self._get({"t": title, "y": year, "plot": "short"}))
            if record is not None:
                return record
        record = parse_record(await self._get({"t": title, "plot": "short"}))
        if record is not None:
            return record

        search = await self._get({"s": title})
        for result in search.get("Search") or []:
            imdb_id = _clean(result.get("imdbID")) if isinstance(result, dict) else None
            if imdb_id:
                return parse_record(await self._get({"i": imdb_id, "plot": "short"}))
        return None

    async def _get(self, params: dict[str, Any]) -> dict[str, Any]:
        query = {**params, "apikey": self._settings.omdb_api_key}
        await self._limiter.wait()
        try:
            response = await self._client.get("/", params=query)
        except httpx.HTTPError as exc:
            raise NetworkError(f"OMDb request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NetworkError(
                f"OMDb request failed with {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError("OMDb returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    def clear_cache(self) -> None:
        self._cache.clear()
        self._misses.clear_all()
