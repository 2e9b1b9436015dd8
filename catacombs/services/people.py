"""Director lookups: person search, biographies, filmographies and ownership."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Mapping, Sequence

from pydantic import ValidationError

from ..exceptions import NetworkError
from ..matching import (
    build_owned_id_set,
    build_title_index,
    normalize_director_name,
    resolve_ownership,
)
from ..models import (
    CachedDirector,
    Credit,
    DirectorProfile,
    DirectorWorks,
    FilmographyEntry,
    Movie,
    PersonDetails,
    PersonMatch,
)
from ..storage import KeyValueStorage
from .cache import TimedCache
from .tmdb import TMDBClient
from .wikipedia import WikipediaClient

logger = logging.getLogger(__name__)

PERSON_SEARCH_KEY = "catacombs-tmdb-person-search-v1"
PERSON_DETAILS_KEY = "catacombs-tmdb-person-v1"
PERSON_CREDITS_KEY = "catacombs-tmdb-person-credits-v1"
RUNTIME_KEY = "catacombs-tmdb-runtime-v1"
DIRECTOR_LIST_KEY = "catacombs-director-list-v1"

PERSON_SEARCH_LIMIT = 200
PERSON_DETAILS_LIMIT = 150
PERSON_CREDITS_LIMIT = 150
RUNTIME_LIMIT = 1000

MIN_VOTE_COUNT = 30
SHORT_RUNTIME_MINUTES = 60
DIRECTED_JOBS = ("Director", "Creator")

DirectorProgress = Callable[[int, int], None]


def _is_listed_credit(credit: Credit) -> bool:
    return credit.media_type in ("movie", "tv") and credit.video is not True


def _dedupe_and_sort(credits: Iterable[Credit]) -> list[Credit]:
    seen: set[int] = set()
    unique: list[Credit] = []
    for credit in credits:
        if credit.id in seen:
            continue
        seen.add(credit.id)
        unique.append(credit)
    return sorted(unique, key=lambda credit: credit.sort_date())


class PeopleResolver:
    """Resolves directors against TMDB with per-tier caching."""

    def __init__(
        self,
        tmdb: TMDBClient,
        storage: KeyValueStorage,
        *,
        wikipedia: WikipediaClient | None = None,
    ) -> None:
        self._tmdb = tmdb
        self._wikipedia = wikipedia
        settings = tmdb.settings
        ttl = settings.provider_cache_seconds
        clock = tmdb.clock
        self._language = settings.tmdb_language
        self._fallback_language = settings.tmdb_fallback_language
        self._search_cache: TimedCache[PersonMatch | None] = TimedCache(
            storage,
            PERSON_SEARCH_KEY,
            ttl,
            model=PersonMatch,
            clock=clock,
            max_entries=PERSON_SEARCH_LIMIT,
        )
        self._details_cache: TimedCache[PersonDetails] = TimedCache(
            storage,
            PERSON_DETAILS_KEY,
            ttl,
            model=PersonDetails,
            clock=clock,
            max_entries=PERSON_DETAILS_LIMIT,
        )
        self._credits_cache: TimedCache[list[Credit]] = TimedCache(
            storage,
            PERSON_CREDITS_KEY,
            ttl,
            model=Credit,
            clock=clock,
            max_entries=PERSON_CREDITS_LIMIT,
        )
        self._runtime_cache: TimedCache[int | None] = TimedCache(
            storage, RUNTIME_KEY, ttl, clock=clock, max_entries=RUNTIME_LIMIT
        )
        self._director_cache: TimedCache[CachedDirector] = TimedCache(
            storage,
            DIRECTOR_LIST_KEY,
            settings.director_cache_seconds,
            model=CachedDirector,
            clock=clock,
        )

    async def resolve_person(self, name: str) -> PersonMatch | None:
        """First TMDB person result for ``name``; misses are cached as well."""

        normalized = normalize_director_name(name)
        if not normalized:
            return None
        hit = self._search_cache.get(normalized)
        if hit is not None:
            return hit.payload
        if not self._tmdb.enabled:
            return None
        try:
            data = await self._tmdb.get_json(
                "/search/person", {"query": name.strip(), "language": self._language}
            )
        except NetworkError as exc:
            logger.warning("TMDB person search failed for %s: %s", name, exc)
            return None
        match: PersonMatch | None = None
        for result in data.get("results") or []:
            if isinstance(result, dict) and result.get("id") is not None:
                match = PersonMatch(id=int(result["id"]), name=result.get("name") or name)
                break
        self._search_cache.set(normalized, match)
        return match

    async def get_person_details(self, person_id: int) -> PersonDetails | None:
        """Person details, with the biography backfilled from the fallback language."""

        key = str(person_id)
        hit = self._details_cache.get(key)
        if hit is not None:
            return hit.payload
        if not self._tmdb.enabled:
            return None
        try:
            primary = await self._tmdb.get_json(
                f"/person/{person_id}", {"language": self._language}
            )
        except NetworkError as exc:
            logger.warning("TMDB person fetch failed for %s: %s", person_id, exc)
            return None

        fallback: dict = {}
        if not (primary.get("biography") or "").strip():
            try:
                fallback = await self._tmdb.get_json(
                    f"/person/{person_id}", {"language": self._fallback_language}
                )
            except NetworkError as exc:
                logger.warning(
                    "TMDB fallback biography fetch failed for %s: %s", person_id, exc
                )

        def pick(field: str):
            return primary.get(field) or fallback.get(field) or None

        biography = (fallback.get("biography") or "").strip() or (
            primary.get("biography") or ""
        ).strip()
        profile_path = pick("profile_path")
        image_config = await self._tmdb.image_config()
        details = PersonDetails(
            id=int(primary.get("id") or person_id),
            name=pick("name") or str(person_id),
            biography=biography or None,
            profile_path=profile_path,
            profile_url=image_config.profile_url(profile_path),
            place_of_birth=pick("place_of_birth"),
            birthday=pick("birthday"),
            deathday=pick("deathday"),
            also_known_as=list(pick("also_known_as") or []),
        )
        self._details_cache.set(key, details)
        return details

    async def get_movie_runtime(self, movie_id: int) -> int | None:
        key = str(movie_id)
        hit = self._runtime_cache.get(key)
        if hit is not None:
            return hit.payload
        if not self._tmdb.enabled:
            return None
        try:
            details = await self._tmdb.get_json(
                f"/movie/{movie_id}", {"language": self._language}
            )
        except NetworkError as exc:
            logger.debug("Runtime lookup failed for %s: %s", movie_id, exc)
            return None
        runtime = details.get("runtime")
        runtime = int(runtime) if isinstance(runtime, (int, float)) else None
        self._runtime_cache.set(key, runtime)
        return runtime

    async def is_short(self, credit: Credit) -> bool:
        if credit.media_type != "movie":
            return False
        runtime = await self.get_movie_runtime(credit.id)
        return runtime is not None and 0 < runtime < SHORT_RUNTIME_MINUTES

    async def _combined_crew(self, person_id: int) -> list[Credit]:
        key = str(person_id)
        hit = self._credits_cache.get(key)
        if hit is not None:
            return hit.payload
        if not self._tmdb.enabled:
            return []
        try:
            data = await self._tmdb.get_json(
                f"/person/{person_id}/combined_credits", {"language": self._language}
            )
        except NetworkError as exc:
            logger.warning("TMDB credits fetch failed for %s: %s", person_id, exc)
            stale = self._credits_cache.get(key, allow_stale=True)
            return stale.payload if stale is not None else []

        crew: list[Credit] = []
        for item in data.get("crew") or []:
            if not isinstance(item, dict) or item.get("job") not in DIRECTED_JOBS:
                continue
            try:
                crew.append(Credit.model_validate(item))
            except ValidationError as exc:
                logger.debug("Skipping malformed credit for %s: %s", person_id, exc)
        self._credits_cache.set(key, crew)
        return crew

    async def _filter_unowned(
        self, credits: Sequence[Credit], owned_ids: set[int]
    ) -> list[Credit]:
        owned = [credit for credit in credits if credit.id in owned_ids]
        kept: list[Credit] = []
        for credit in credits:
            if credit.id in owned_ids:
                continue
            if (credit.vote_count or 0) < MIN_VOTE_COUNT:
                continue
            if await self.is_short(credit):
                continue
            kept.append(credit)
        return _dedupe_and_sort([*owned, *kept])

    async def get_directed_works(
        self, person_id: int, owned_ids: set[int] | None = None
    ) -> DirectorWorks:
        """Directed and created works; owned entries skip the quality filters."""

        owned_ids = owned_ids or set()
        crew = [credit for credit in await self._combined_crew(person_id) if _is_listed_credit(credit)]
        directed = await self._filter_unowned(
            [credit for credit in crew if credit.job == "Director"], owned_ids
        )
        created = await self._filter_unowned(
            [credit for credit in crew if credit.job == "Creator"], owned_ids
        )
        return DirectorWorks(
            director_list=directed,
            creator_list=created,
            director_count=len(directed),
            creator_count=len(created),
            total_count=len(directed) + len(created),
        )

    async def get_directors_for_movie(self, movie_id: int) -> list[PersonMatch]:
        if not self._tmdb.enabled:
            return []
        try:
            data = await self._tmdb.get_json(
                f"/movie/{movie_id}/credits", {"language": self._language}
            )
        except NetworkError as exc:
            logger.warning("TMDB credits fetch failed for movie %s: %s", movie_id, exc)
            return []
        seen: set[int] = set()
        directors: list[PersonMatch] = []
        for member in data.get("crew") or []:
            if not isinstance(member, dict) or member.get("job") != "Director":
                continue
            person_id = member.get("id")
            if person_id is None or person_id in seen:
                continue
            seen.add(person_id)
            directors.append(PersonMatch(id=int(person_id), name=member.get("name") or ""))
        return directors

    async def build_director_profiles(
        self,
        names: Iterable[str],
        *,
        overrides: Mapping[str, int] | None = None,
        force_refresh: bool = False,
        on_progress: DirectorProgress | None = None,
    ) -> list[DirectorProfile]:
        """Lightweight profiles for the director listing.

        Spreadsheet override ids win over name search; cached rows are reused
        for seven days unless they disagree with an override.
        """

        unique: list[str] = []
        seen: set[str] = set()
        for name in names:
            cleaned = name.strip()
            key = normalize_director_name(cleaned)
            if cleaned and key not in seen:
                seen.add(key)
                unique.append(cleaned)
        if not unique:
            return []
        override_map = {
            normalize_director_name(name): person_id
            for name, person_id in (overrides or {}).items()
        }
        if not self._tmdb.enabled:
            return [
                DirectorProfile(
                    name=name,
                    display_name=name,
                    tmdb_id=override_map.get(normalize_director_name(name)),
                )
                for name in unique
            ]

        total = len(unique)
        completed = 0
        rows: dict[str, CachedDirector] = {}
        missing: list[str] = []
        for name in unique:
            key = normalize_director_name(name)
            hit = None if force_refresh else self._director_cache.get(key)
            override_id = override_map.get(key)
            if hit is not None and (override_id is None or hit.payload.tmdb_id == override_id):
                rows[key] = hit.payload
                completed += 1
            else:
                missing.append(name)
        if on_progress is not None:
            on_progress(completed, total)

        for name in missing:
            key = normalize_director_name(name)
            row = await self._fetch_director_row(name, override_map.get(key))
            self._director_cache.set(key, row)
            rows[key] = row
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)

        return [
            DirectorProfile(
                name=row.name,
                display_name=row.resolved_name or row.name,
                tmdb_id=row.tmdb_id,
                profile_url=row.profile_url,
            )
            for row in (rows[normalize_director_name(name)] for name in unique)
        ]

    async def _fetch_director_row(self, name: str, override_id: int | None) -> CachedDirector:
        tmdb_id = override_id
        resolved_name = name
        if tmdb_id is None:
            match = await self.resolve_person(name)
            if match is not None:
                tmdb_id = match.id
                resolved_name = match.name or name
        profile_url = None
        if tmdb_id is not None:
            details = await self.get_person_details(tmdb_id)
            if details is not None:
                resolved_name = details.name or resolved_name
                profile_url = details.profile_url
        return CachedDirector(
            name=name,
            resolved_name=resolved_name,
            tmdb_id=tmdb_id,
            profile_url=profile_url,
            fetched_at=self._tmdb.clock(),
        )

    async def load_director(
        self, person_id: int, movies: Sequence[Movie]
    ) -> DirectorProfile | None:
        """Full director view with each work marked owned or not."""

        owned_ids = build_owned_id_set(movies)
        details = await self.get_person_details(person_id)
        works = await self.get_directed_works(person_id, owned_ids)
        if details is None and works.total_count == 0:
            return None

        title_index = build_title_index(movies)
        id_index = {movie.tmdb_id: movie for movie in movies if movie.tmdb_id is not None}
        image_config = await self._tmdb.image_config()

        def to_entry(credit: Credit) -> FilmographyEntry:
            owned, local = resolve_ownership(credit, owned_ids, title_index, id_index)
            return FilmographyEntry(
                id=credit.id,
                title=credit.display_title,
                original_title=credit.preferred_original_title,
                year=credit.year,
                media_type="tv" if credit.media_type == "tv" else "movie",
                job=credit.job,
                poster_url=image_config.poster_url(credit.poster_path),
                owned=owned,
                local_movie_id=local.id if local is not None else None,
            )

        name = details.name if details is not None else str(person_id)
        biography = details.biography if details is not None else None
        profile_url = details.profile_url if details is not None else None
        if self._wikipedia is not None and (not biography or not profile_url):
            wiki = await self._wikipedia.lookup_person(name)
            biography = biography or wiki.summary
            profile_url = profile_url or wiki.thumbnail_url

        return DirectorProfile(
            name=name,
            display_name=name,
            tmdb_id=person_id,
            profile_url=profile_url,
            biography=biography,
            directed=[to_entry(credit) for credit in works.director_list],
            created=[to_entry(credit) for credit in works.creator_list],
        )

    def clear_caches(self) -> None:
        self._search_cache.clear()
        self._details_cache.clear()
        self._credits_cache.clear()
        self._runtime_cache.clear()
        self._director_cache.clear()
