"""Assembly of the browsable collection from the spreadsheet and providers."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Sequence

from ..config import Settings
from ..exceptions import NotFoundError
from ..matching import build_director_override_map, split_directors
from ..models import CollectionState, DirectorProfile, Movie, Progress, SheetMeta
from ..storage import KeyValueStorage
from .cache import Clock, TimedCache
from .omdb import OMDbClient
from .overrides import LocalOverrideStore
from .people import PeopleResolver
from .sheets import SheetSource
from .tmdb import EnrichOptions, TMDBClient

logger = logging.getLogger(__name__)

COLLECTION_CACHE_KEY = "catacombs-collection-v1"
_COLLECTION_ENTRY = "movies"


class CollectionPipeline:
    """Owns the published movie list and the refresh cycle that rebuilds it.

    Each refresh takes a generation number; results are committed only while
    that generation is still the newest and the pipeline is open, so an older
    or abandoned refresh can never overwrite newer state.
    """

    def __init__(
        self,
        settings: Settings,
        sheets: SheetSource,
        tmdb: TMDBClient,
        overrides: LocalOverrideStore,
        storage: KeyValueStorage,
        *,
        omdb: OMDbClient | None = None,
        people: PeopleResolver | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._settings = settings
        self._sheets = sheets
        self._tmdb = tmdb
        self._omdb = omdb
        self._people = people
        self._overrides = overrides
        self._clock = clock
        self._collection_cache: TimedCache[list[Movie]] = TimedCache(
            storage,
            COLLECTION_CACHE_KEY,
            settings.provider_cache_seconds,
            model=Movie,
            clock=clock,
        )
        self.state = CollectionState()
        self._sheet_movies: dict[str, Movie] = {}
        self._generation = 0
        self._closed = False
        self._refresh_job: asyncio.Task[None] | None = None

    @property
    def movies(self) -> list[Movie]:
        return self.state.movies

    @property
    def overrides(self) -> LocalOverrideStore:
        return self._overrides

    @property
    def people(self) -> PeopleResolver | None:
        return self._people

    def get_movie(self, movie_id: str) -> Movie | None:
        for movie in self.state.movies:
            if movie.id == movie_id:
                return movie
        return None

    def _is_current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    def restore(self) -> bool:
        """Publish the last persisted collection, if any."""

        hit = self._collection_cache.get(_COLLECTION_ENTRY, allow_stale=True)
        if hit is None or not hit.payload:
            return False
        self._remember_sheet_values(hit.payload)
        self.state.movies = self._overrides.apply_local_overrides(hit.payload)
        self.state.refreshed_at = hit.fetched_at
        logger.info("Restored %s movies from the persisted collection", len(hit.payload))
        return True

    async def refresh(
        self, *, force_network: bool = False, invalidate_cache: bool = False
    ) -> CollectionState:
        """Reload the spreadsheet and enrich every movie."""

        self._generation += 1
        generation = self._generation
        self.state.loading = True
        self.state.error = None
        self.state.progress = Progress()
        if invalidate_cache:
            self.clear_caches()

        try:
            payload = await self._sheets.load()
            movies = self._overrides.apply_local_overrides(payload.movies)
        except Exception as exc:
            logger.exception("Loading the collection spreadsheet failed: %s", exc)
            if self._is_current(generation):
                self.state.error = str(exc) or exc.__class__.__name__
                self.state.loading = False
            return self.state

        if not self._is_current(generation):
            return self.state
        self._remember_sheet_values(payload.movies)
        self._publish_intermediate(movies, payload.meta)

        def report(completed: int, total: int, title: str) -> None:
            if self._is_current(generation):
                self.state.progress = Progress(
                    completed=completed, total=total, current_title=title
                )

        options = EnrichOptions(
            force_network=force_network, allow_stale_cache=not force_network
        )
        try:
            enriched = await self._tmdb.enrich_batch(movies, options, on_progress=report)
            if self._omdb is not None and self._omdb.enabled:
                supplemented: list[Movie] = []
                for movie in enriched:
                    if not self._is_current(generation):
                        return self.state
                    supplemented.append(await self._omdb.supplement(movie))
                enriched = supplemented
        except Exception as exc:
            logger.exception("Enriching the collection failed: %s", exc)
            if self._is_current(generation):
                self.state.error = str(exc) or exc.__class__.__name__
                self.state.loading = False
            return self.state

        if not self._is_current(generation):
            logger.info("Discarding results of superseded refresh %s", generation)
            return self.state

        final = self._overrides.apply_local_overrides(enriched)
        self.state.movies = final
        self.state.loading = False
        self.state.refreshed_at = self._clock()
        self._collection_cache.set(_COLLECTION_ENTRY, self._with_sheet_values(enriched))
        logger.info("Collection refreshed with %s movies", len(final))
        return self.state

    def _publish_intermediate(self, movies: list[Movie], meta: SheetMeta) -> None:
        self.state.movies = movies
        self.state.sheet_meta = meta
        self.state.progress = Progress(total=len(movies))

    def _remember_sheet_values(self, movies: Sequence[Movie]) -> None:
        self._sheet_movies = {movie.id: movie for movie in movies}

    def _with_sheet_values(self, movies: Sequence[Movie]) -> list[Movie]:
        """Undo local overrides so the persisted list holds spreadsheet values."""

        restored: list[Movie] = []
        for movie in movies:
            sheet = self._sheet_movies.get(movie.id)
            if sheet is not None:
                movie = movie.model_copy(update={"seen": sheet.seen, "rating": sheet.rating})
            restored.append(movie)
        return restored

    def request_refresh(
        self, *, force_network: bool = False, invalidate_cache: bool = False
    ) -> bool:
        """Schedule a background refresh unless one is already running."""

        if self._refresh_job is not None and not self._refresh_job.done():
            return False

        async def _runner() -> None:
            try:
                await self.refresh(
                    force_network=force_network, invalidate_cache=invalidate_cache
                )
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background refresh failed: %s", exc)

        self._refresh_job = asyncio.create_task(_runner())
        return True

    async def start(self) -> None:
        """Restore the persisted collection and kick off a refresh."""

        self._closed = False
        self.restore()
        self.request_refresh()

    async def stop(self) -> None:
        """Abandon any in-flight refresh."""

        self._closed = True
        self._generation += 1
        if self._refresh_job is None:
            return
        self._refresh_job.cancel()
        with suppress(asyncio.CancelledError):
            await self._refresh_job
        self._refresh_job = None

    def _replace_movie(self, movie_id: str, **update: object) -> Movie:
        for index, movie in enumerate(self.state.movies):
            if movie.id == movie_id:
                updated = movie.model_copy(update=update)
                movies = list(self.state.movies)
                movies[index] = updated
                self.state.movies = movies
                return updated
        raise NotFoundError(f"Unknown movie {movie_id}")

    def update_seen(self, movie_id: str, seen: bool) -> Movie:
        if self.get_movie(movie_id) is None:
            raise NotFoundError(f"Unknown movie {movie_id}")
        self._overrides.set_seen(movie_id, seen)
        return self._replace_movie(movie_id, seen=seen)

    def update_rating(self, movie_id: str, rating: float | None) -> Movie:
        if self.get_movie(movie_id) is None:
            raise NotFoundError(f"Unknown movie {movie_id}")
        self._overrides.set_rating(movie_id, rating)
        if rating is None:
            sheet = self._sheet_movies.get(movie_id)
            rating = sheet.rating if sheet is not None else None
        return self._replace_movie(movie_id, rating=rating)

    def update_note(self, movie_id: str, text: str) -> str:
        if self.get_movie(movie_id) is None:
            raise NotFoundError(f"Unknown movie {movie_id}")
        self._overrides.set_note(movie_id, text)
        return text

    def note_for(self, movie_id: str) -> str | None:
        return self._overrides.notes().get(movie_id)

    def director_names(self) -> list[str]:
        names: list[str] = []
        for movie in self.state.movies:
            for name in split_directors(movie.director):
                if name not in names:
                    names.append(name)
        return names

    async def director_profiles(self, *, force_refresh: bool = False) -> list[DirectorProfile]:
        if self._people is None:
            return []
        return await self._people.build_director_profiles(
            self.director_names(),
            overrides=build_director_override_map(self.state.movies),
            force_refresh=force_refresh,
        )

    async def load_director(self, person_id: int) -> DirectorProfile:
        profile = None
        if self._people is not None:
            profile = await self._people.load_director(person_id, self._movies_snapshot())
        if profile is None:
            raise NotFoundError(f"Unknown director {person_id}")
        return profile

    def _movies_snapshot(self) -> Sequence[Movie]:
        return tuple(self.state.movies)

    def clear_caches(self) -> None:
        """Drop every provider and spreadsheet cache tier."""

        self._sheets.clear_cache()
        self._tmdb.clear_cache()
        if self._omdb is not None:
            self._omdb.clear_cache()
        if self._people is not None:
            self._people.clear_caches()
        self._collection_cache.clear()
        logger.info("Cleared provider caches")
