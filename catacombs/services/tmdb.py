"""Primary metadata enrichment against The Movie Database (TMDB)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

import httpx

from ..config import Settings
from ..exceptions import ConfigurationError, NetworkError
from ..models import EnrichmentStatus, MediaType, Movie, SeasonInfo, TmdbEnrichment
from ..storage import KeyValueStorage
from ..utils import normalize_lookup, parse_year
from .cache import CacheHit, Clock, NegativeMemo, TimedCache, make_cache_key
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

IMAGE_FALLBACK_BASE_URL = "https://image.tmdb.org/t/p/"
POSTER_SIZE = "w500"
DEFAULT_PROFILE_SIZE = "w300"

TMDB_CACHE_KEY = "catacombs-tmdb-cache-v1"
TMDB_MISSES_KEY = "catacombs-tmdb-misses-v1"
TMDB_CONFIG_KEY = "catacombs-tmdb-config-v1"

ProgressCallback = Callable[[int, int, str], None]


@dataclass(slots=True)
class EnrichOptions:
    force_network: bool = False
    allow_stale_cache: bool = False


@dataclass(slots=True)
class ImageConfig:
    """Base URL and size ladder from the ``/configuration`` endpoint."""

    secure_base_url: str = IMAGE_FALLBACK_BASE_URL
    profile_sizes: list[str] = field(default_factory=list)

    @property
    def profile_size(self) -> str:
        if len(self.profile_sizes) > 2:
            return self.profile_sizes[2]
        return DEFAULT_PROFILE_SIZE

    def poster_url(self, path: str | None) -> str | None:
        return build_image_url(self.secure_base_url, POSTER_SIZE, path)

    def profile_url(self, path: str | None) -> str | None:
        return build_image_url(self.secure_base_url, self.profile_size, path)


def build_image_url(base_url: str, size: str, path: str | None) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url}{size}{path}"


def _result_title(result: dict[str, Any]) -> str | None:
    return result.get("title") or result.get("name")


def _result_original_title(result: dict[str, Any]) -> str | None:
    return result.get("original_title") or result.get("original_name")


def _result_year(result: dict[str, Any]) -> int | None:
    return parse_year(result.get("release_date") or result.get("first_air_date"))


def score_result(
    result: dict[str, Any], target_title: str, target_year: int | None
) -> int:
    """Score a search candidate against the requested title and year.

    +3 when the title or original title matches, +2 for the exact year and
    another +1 when the year is within one of the target.
    """

    score = 0
    target = normalize_lookup(target_title)
    if target and target in (
        normalize_lookup(_result_title(result)),
        normalize_lookup(_result_original_title(result)),
    ):
        score += 3
    result_year = _result_year(result)
    if target_year is not None and result_year is not None:
        if result_year == target_year:
            score += 2
        if abs(result_year - target_year) <= 1:
            score += 1
    return score


def pick_best_result(
    results: Sequence[dict[str, Any]], target_title: str, target_year: int | None
) -> dict[str, Any] | None:
    """Highest scoring candidate; ties keep the provider's ordering."""

    if not results:
        return None
    if target_year is None:
        return results[0]
    best = results[0]
    best_score = score_result(best, target_title, target_year)
    for candidate in results[1:]:
        candidate_score = score_result(candidate, target_title, target_year)
        if candidate_score > best_score:
            best, best_score = candidate, candidate_score
    return best


def apply_enrichment(
    movie: Movie,
    enrichment: TmdbEnrichment,
    image_config: ImageConfig,
    status: EnrichmentStatus,
) -> Movie:
    """Merge a TMDb payload into a movie.

    Provider fields are overwritten; poster, plot and genres keep their old
    value only when the provider has none. The sheet year is never touched.
    """

    update: dict[str, Any] = {
        "tmdb_id": enrichment.tmdb_id,
        "tmdb_type": enrichment.tmdb_type,
        "tmdb_title": enrichment.title,
        "tmdb_original_title": enrichment.original_title,
        "tmdb_year": enrichment.year if enrichment.year is not None else movie.year,
        "tmdb_rating": enrichment.rating,
        "poster_url": image_config.poster_url(enrichment.poster_path) or movie.poster_url,
        "plot": enrichment.overview or movie.plot,
        "tmdb_genres": enrichment.genres if enrichment.genres else movie.tmdb_genres,
        "tmdb_status": status,
    }
    if enrichment.seasons is not None:
        update["tmdb_seasons"] = enrichment.seasons
    if not movie.original_title:
        update["original_title"] = enrichment.original_title or enrichment.title
    return movie.model_copy(update=update)


class TMDBClient:
    """Client resolving spreadsheet rows to TMDB records, cache first."""

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
        self._clock = clock
        self._limiter = limiter or RateLimiter(settings.max_requests_per_second)
        self._cache: TimedCache[TmdbEnrichment] = TimedCache(
            storage,
            TMDB_CACHE_KEY,
            settings.provider_cache_seconds,
            model=TmdbEnrichment,
            clock=clock,
        )
        self._misses = NegativeMemo(
            storage, TMDB_MISSES_KEY, settings.negative_cache_seconds, clock=clock
        )
        self._config_cache: TimedCache[dict[str, Any]] = TimedCache(
            storage, TMDB_CONFIG_KEY, settings.provider_cache_seconds, clock=clock
        )
        self._image_config: ImageConfig | None = None
        try:
            settings.require_tmdb_credentials()
        except ConfigurationError as exc:
            logger.error("TMDB lookups disabled: %s", exc)
            self.enabled = False
        else:
            self.enabled = True

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    def cache_key_for(self, movie: Movie) -> str:
        key = make_cache_key(movie.lookup_titles(), movie.year)
        return f"tv:{key}" if movie.series else key

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        limiter: RateLimiter | None = None,
    ) -> dict[str, Any]:
        """Rate-limited GET returning the decoded JSON body.

        ``limiter`` replaces the client limiter for this request. Raises
        :class:`NetworkError` on transport failures and non-2xx responses.
        """

        if not self.enabled:
            raise ConfigurationError("TMDB credentials are not configured")
        query = dict(params or {})
        headers: dict[str, str] = {}
        if self._settings.tmdb_bearer:
            headers["Authorization"] = f"Bearer {self._settings.tmdb_bearer}"
        else:
            query["api_key"] = self._settings.tmdb_api_key

        await (limiter or self._limiter).wait()
        try:
            response = await self._client.get(path, params=query, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"TMDB request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise NetworkError(
                f"TMDB request to {path} failed with {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError(f"TMDB returned invalid JSON for {path}") from exc
        return payload if isinstance(payload, dict) else {}

    async def image_config(self, *, limiter: RateLimiter | None = None) -> ImageConfig:
        """Image base URL and sizes, cached for the provider cache window."""

        if self._image_config is not None:
            return self._image_config
        hit = self._config_cache.get("images")
        if hit is not None:
            self._image_config = self._to_image_config(hit.payload)
            return self._image_config
        if not self.enabled:
            return ImageConfig()
        try:
            data = await self.get_json("/configuration", limiter=limiter)
        except NetworkError as exc:
            logger.warning("TMDB configuration fetch failed, using fallback: %s", exc)
            return ImageConfig()
        images = data.get("images") or {}
        self._config_cache.set("images", images)
        self._image_config = self._to_image_config(images)
        return self._image_config

    @staticmethod
    def _to_image_config(images: Any) -> ImageConfig:
        if not isinstance(images, dict):
            return ImageConfig()
        base_url = images.get("secure_base_url") or IMAGE_FALLBACK_BASE_URL
        sizes = [str(size) for size in images.get("profile_sizes") or []]
        return ImageConfig(secure_base_url=base_url, profile_sizes=sizes)

    async def enrich(
        self,
        movie: Movie,
        options: EnrichOptions | None = None,
        *,
        limiter: RateLimiter | None = None,
    ) -> Movie:
        """Attach TMDB metadata to ``movie``; never raises for provider errors."""

        options = options or EnrichOptions()
        titles = movie.lookup_titles()
        if not titles:
            return movie
        key = self.cache_key_for(movie)

        def status(**values: Any) -> EnrichmentStatus:
            return EnrichmentStatus(
                requested_titles=titles, requested_year=movie.year, **values
            )

        if options.force_network:
            self._misses.clear(key)
        else:
            failed_at = self._misses.active(key)
            if failed_at is not None:
                return movie.model_copy(
                    update={
                        "tmdb_status": status(
                            source="error",
                            fetched_at=failed_at,
                            message="Skipped: no TMDB match on a recent lookup",
                        )
                    }
                )
            hit = self._cache.get(key, allow_stale=options.allow_stale_cache)
            if hit is not None:
                source = "cache" if hit.fresh else "stale-cache"
                return await self._apply_hit(movie, hit, status(source=source), limiter)

        if not self.enabled:
            return movie.model_copy(
                update={
                    "tmdb_status": status(
                        source="none", message="TMDB credentials are not configured"
                    )
                }
            )

        media_type: MediaType = "tv" if movie.series else "movie"
        try:
            found = await self._find(titles, movie.year, media_type, limiter)
            if found is None:
                stale = self._cache.get(key, allow_stale=True)
                if stale is not None:
                    return await self._apply_hit(
                        movie,
                        stale,
                        status(
                            source="stale-cache",
                            message="Current lookup found no match; using cached data",
                        ),
                        limiter,
                    )
                failed_at = self._misses.record(key)
                logger.info("No TMDB match for %s (%s)", titles, movie.year)
                return movie.model_copy(
                    update={
                        "tmdb_status": status(
                            source="not-found",
                            fetched_at=failed_at,
                            message="No TMDB match found",
                        )
                    }
                )
            enrichment = await self._build_enrichment(found, media_type, limiter)
        except NetworkError as exc:
            logger.warning("TMDB lookup failed for %s: %s", titles[0], exc)
            stale = self._cache.get(key, allow_stale=True)
            if stale is not None:
                return await self._apply_hit(
                    movie, stale, status(source="error", error=str(exc)), limiter
                )
            return movie.model_copy(
                update={"tmdb_status": status(source="error", error=str(exc))}
            )

        fetched_at = self._cache.set(key, enrichment)
        self._misses.clear(key)
        return apply_enrichment(
            movie,
            enrichment,
            await self.image_config(limiter=limiter),
            status(
                source="network",
                fetched_at=fetched_at,
                matched_id=enrichment.tmdb_id,
                matched_title=enrichment.title,
                matched_original_title=enrichment.original_title,
            ),
        )

    async def enrich_batch(
        self,
        movies: Iterable[Movie],
        options: EnrichOptions | None = None,
        *,
        max_requests_per_second: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[Movie]:
        """Enrich movies one after another, preserving input order."""

        items = list(movies)
        total = len(items)
        limiter = (
            self._limiter.with_rate(max_requests_per_second)
            if max_requests_per_second
            else self._limiter
        )
        enriched: list[Movie] = []
        for index, movie in enumerate(items, start=1):
            enriched.append(await self.enrich(movie, options, limiter=limiter))
            if on_progress is not None:
                on_progress(index, total, movie.title)
        return enriched

    async def _apply_hit(
        self,
        movie: Movie,
        hit: CacheHit[TmdbEnrichment],
        status: EnrichmentStatus,
        limiter: RateLimiter | None = None,
    ) -> Movie:
        enrichment = hit.payload
        status = status.model_copy(
            update={
                "fetched_at": hit.fetched_at,
                "matched_id": enrichment.tmdb_id,
                "matched_title": enrichment.title,
                "matched_original_title": enrichment.original_title,
            }
        )
        images = await self.image_config(limiter=limiter)
        return apply_enrichment(movie, enrichment, images, status)

    async def _find(
        self,
        titles: Sequence[str],
        year: int | None,
        media_type: MediaType,
        limiter: RateLimiter | None = None,
    ) -> dict[str, Any] | None:
        if year is not None:
            for title in titles:
                found = await self._search(title, year, media_type, limiter)
                if found is not None:
                    return found
        for title in titles:
            found = await self._search(title, None, media_type, limiter)
            if found is not None:
                return found
        return None

    async def _search(
        self,
        title: str,
        year: int | None,
        media_type: MediaType,
        limiter: RateLimiter | None = None,
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {
            "query": title,
            "include_adult": "false",
            "language": self._settings.tmdb_language,
            "page": 1,
        }
        if year is not None:
            params["year" if media_type == "movie" else "first_air_date_year"] = year
        data = await self.get_json(f"/search/{media_type}", params, limiter=limiter)
        results = [
            result
            for result in data.get("results") or []
            if isinstance(result, dict) and result.get("id") is not None
        ]
        return pick_best_result(results, title, year)

    async def _build_enrichment(
        self,
        found: dict[str, Any],
        media_type: MediaType,
        limiter: RateLimiter | None = None,
    ) -> TmdbEnrichment:
        tmdb_id = int(found["id"])
        try:
            details = await self.get_json(
                f"/{media_type}/{tmdb_id}",
                {"language": self._settings.tmdb_language},
                limiter=limiter,
            )
        except NetworkError as exc:
            logger.warning("TMDB details fetch failed for %s: %s", tmdb_id, exc)
            details = {}

        genres = [
            genre["name"]
            for genre in details.get("genres") or []
            if isinstance(genre, dict) and genre.get("name")
        ]
        seasons: list[SeasonInfo] | None = None
        if media_type == "tv":
            seasons = [
                SeasonInfo(
                    season_number=int(season["season_number"]),
                    name=season.get("name"),
                    episode_count=season.get("episode_count"),
                    air_date=season.get("air_date"),
                )
                for season in details.get("seasons") or []
                if isinstance(season, dict) and season.get("season_number") is not None
            ]
        rating = details.get("vote_average", found.get("vote_average"))
        return TmdbEnrichment(
            tmdb_id=tmdb_id,
            tmdb_type=media_type,
            title=_result_title(found) or _result_title(details) or "",
            original_title=_result_original_title(found) or _result_original_title(details),
            year=_result_year(found) or _result_year(details),
            rating=float(rating) if isinstance(rating, (int, float)) else None,
            poster_path=found.get("poster_path") or details.get("poster_path"),
            overview=details.get("overview") or found.get("overview") or None,
            genres=genres or None,
            seasons=seasons,
        )

    def clear_cache(self) -> None:
        self._cache.clear()
        self._misses.clear_all()
        self._config_cache.clear()
        self._image_config = None
