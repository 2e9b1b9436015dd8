"""Tests for the collection refresh pipeline."""

from __future__ import annotations

import asyncio
from typing import Callable, Sequence

import pytest

from catacombs.config import Settings
from catacombs.exceptions import NotFoundError
from catacombs.models import EnrichmentStatus, Movie, SheetMeta
from catacombs.services.collection import COLLECTION_CACHE_KEY, CollectionPipeline
from catacombs.services.overrides import LocalOverrideStore
from catacombs.services.sheets import SheetPayload
from catacombs.storage import MemoryStorage

SHEET_MOVIES = [
    Movie(id="Jaws-0", title="Jaws", year=1975, seen=True, director="Steven Spielberg"),
    Movie(id="Alien-1", title="Alien", year=1979, director="Ridley Scott, Steven Spielberg"),
]


class FakeSheets:
    def __init__(self, movies: Sequence[Movie] = SHEET_MOVIES, error: Exception | None = None):
        self.movies = list(movies)
        self.error = error
        self.cleared = False

    async def load(self) -> SheetPayload:
        if self.error is not None:
            raise self.error
        return SheetPayload(
            movies=list(self.movies), meta=SheetMeta(source="network", url="https://sheet")
        )

    def clear_cache(self) -> None:
        self.cleared = True


class FakeEnricher:
    """Marks every movie as enriched; optionally runs a hook before returning."""

    def __init__(self, tag: str = "network") -> None:
        self.tag = tag
        self.calls = 0
        self.options = []
        self.before_return: Callable[[], None] | None = None
        self.cleared = False

    async def enrich_batch(self, movies, options=None, *, max_requests_per_second=None, on_progress=None):
        self.calls += 1
        self.options.append(options)
        enriched = []
        for index, movie in enumerate(movies, start=1):
            enriched.append(
                movie.model_copy(
                    update={
                        "tmdb_rating": 7.0,
                        "plot": self.tag,
                        "tmdb_status": EnrichmentStatus(source="network"),
                    }
                )
            )
            if on_progress is not None:
                on_progress(index, len(movies), movie.title)
        if self.before_return is not None:
            self.before_return()
        return enriched

    def clear_cache(self) -> None:
        self.cleared = True


class GatedEnricher(FakeEnricher):
    """Blocks the first batch until released, so a newer refresh can overtake it."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def enrich_batch(self, movies, options=None, **kwargs):
        self.calls += 1
        call = self.calls
        if call == 1:
            self.entered.set()
            await self.release.wait()
            tag = "stale"
        else:
            tag = "fresh"
        return [movie.model_copy(update={"plot": tag}) for movie in movies]


def build_pipeline(
    sheets: FakeSheets | None = None,
    enricher: FakeEnricher | None = None,
    storage: MemoryStorage | None = None,
    clock=None,
) -> tuple[CollectionPipeline, MemoryStorage]:
    storage = storage if storage is not None else MemoryStorage()
    pipeline = CollectionPipeline(
        Settings(_env_file=None),
        sheets or FakeSheets(),  # type: ignore[arg-type]
        enricher or FakeEnricher(),  # type: ignore[arg-type]
        LocalOverrideStore(storage),
        storage,
        clock=clock or (lambda: 1_700_000_000.0),
    )
    return pipeline, storage


@pytest.mark.anyio("asyncio")
async def test_refresh_publishes_enriched_movies_and_persists() -> None:
    pipeline, storage = build_pipeline()

    state = await pipeline.refresh()

    assert [movie.id for movie in state.movies] == ["Jaws-0", "Alien-1"]
    assert all(movie.tmdb_rating == 7.0 for movie in state.movies)
    assert state.loading is False
    assert state.error is None
    assert state.sheet_meta.source == "network"
    assert state.progress.completed == 2
    assert state.refreshed_at == 1_700_000_000.0
    assert COLLECTION_CACHE_KEY in storage.data


@pytest.mark.anyio("asyncio")
async def test_overrides_survive_refresh() -> None:
    pipeline, storage = build_pipeline()
    await pipeline.refresh()

    pipeline.update_seen("Jaws-0", False)
    pipeline.update_rating("Alien-1", 9)
    await pipeline.refresh()

    jaws = pipeline.get_movie("Jaws-0")
    alien = pipeline.get_movie("Alien-1")
    assert jaws.seen is False
    assert alien.rating == 9
    assert alien.tmdb_rating == 7.0


@pytest.mark.anyio("asyncio")
async def test_sheet_list_is_published_before_enrichment_finishes() -> None:
    enricher = FakeEnricher()
    pipeline, _ = build_pipeline(enricher=enricher)
    observed: list[tuple[list[str], bool, str | None]] = []
    enricher.before_return = lambda: observed.append(
        (
            [movie.id for movie in pipeline.movies],
            pipeline.state.loading,
            pipeline.movies[0].plot,
        )
    )

    await pipeline.refresh()

    assert observed == [(["Jaws-0", "Alien-1"], True, None)]
    assert pipeline.movies[0].plot == "network"


@pytest.mark.anyio("asyncio")
async def test_force_network_disables_stale_cache() -> None:
    enricher = FakeEnricher()
    pipeline, _ = build_pipeline(enricher=enricher)

    await pipeline.refresh()
    await pipeline.refresh(force_network=True)

    assert [(opt.force_network, opt.allow_stale_cache) for opt in enricher.options] == [
        (False, True),
        (True, False),
    ]


@pytest.mark.anyio("asyncio")
async def test_superseded_refresh_does_not_overwrite_newer_state() -> None:
    enricher = GatedEnricher()
    pipeline, _ = build_pipeline(enricher=enricher)

    first = asyncio.create_task(pipeline.refresh())
    await enricher.entered.wait()
    await pipeline.refresh()
    enricher.release.set()
    await first

    assert [movie.plot for movie in pipeline.movies] == ["fresh", "fresh"]
    assert pipeline.state.loading is False


@pytest.mark.anyio("asyncio")
async def test_stop_abandons_in_flight_refresh() -> None:
    enricher = GatedEnricher()
    pipeline, storage = build_pipeline(enricher=enricher)

    assert pipeline.request_refresh() is True
    assert pipeline.request_refresh() is False
    await enricher.entered.wait()
    await pipeline.stop()

    assert all(movie.plot is None for movie in pipeline.movies)
    assert COLLECTION_CACHE_KEY not in storage.data


@pytest.mark.anyio("asyncio")
async def test_source_failure_keeps_previous_list() -> None:
    sheets = FakeSheets()
    pipeline, _ = build_pipeline(sheets=sheets)
    await pipeline.refresh()

    sheets.error = RuntimeError("sheet unavailable")
    state = await pipeline.refresh()

    assert state.error == "sheet unavailable"
    assert state.loading is False
    assert [movie.id for movie in state.movies] == ["Jaws-0", "Alien-1"]


@pytest.mark.anyio("asyncio")
async def test_restore_reapplies_overrides() -> None:
    storage = MemoryStorage()
    pipeline, _ = build_pipeline(storage=storage)
    await pipeline.refresh()
    pipeline.update_seen("Alien-1", True)

    restored, _ = build_pipeline(storage=storage)

    assert restored.restore() is True
    assert [movie.id for movie in restored.movies] == ["Jaws-0", "Alien-1"]
    assert restored.get_movie("Alien-1").seen is True
    assert restored.get_movie("Alien-1").tmdb_rating == 7.0


def test_restore_without_persisted_collection() -> None:
    pipeline, _ = build_pipeline()

    assert pipeline.restore() is False
    assert pipeline.movies == []


@pytest.mark.anyio("asyncio")
async def test_local_edits_require_known_movie() -> None:
    pipeline, _ = build_pipeline()
    await pipeline.refresh()

    with pytest.raises(NotFoundError):
        pipeline.update_seen("missing", True)
    with pytest.raises(NotFoundError):
        pipeline.update_rating("missing", 5)
    with pytest.raises(NotFoundError):
        pipeline.update_note("missing", "text")

    pipeline.update_note("Jaws-0", "Copia en VHS")
    assert pipeline.note_for("Jaws-0") == "Copia en VHS"


@pytest.mark.anyio("asyncio")
async def test_clearing_a_rating_restores_the_sheet_value() -> None:
    storage = MemoryStorage()
    sheets = FakeSheets([Movie(id="Jaws-0", title="Jaws", year=1975, rating=6)])
    pipeline, _ = build_pipeline(sheets=sheets, storage=storage)
    await pipeline.refresh()
    pipeline.update_rating("Jaws-0", 9)
    await pipeline.refresh()
    assert pipeline.get_movie("Jaws-0").rating == 9

    cleared = pipeline.update_rating("Jaws-0", None)

    assert cleared.rating == 6
    assert pipeline.get_movie("Jaws-0").rating == 6
    assert pipeline.overrides.rating_overrides() == {}

    restored, _ = build_pipeline(storage=storage)
    assert restored.restore() is True
    assert restored.get_movie("Jaws-0").rating == 6


@pytest.mark.anyio("asyncio")
async def test_director_names_are_split_and_unique() -> None:
    pipeline, _ = build_pipeline()
    await pipeline.refresh()

    assert pipeline.director_names() == ["Steven Spielberg", "Ridley Scott"]
    assert await pipeline.director_profiles() == []
    with pytest.raises(NotFoundError):
        await pipeline.load_director(488)


@pytest.mark.anyio("asyncio")
async def test_clear_caches_drops_every_tier() -> None:
    sheets = FakeSheets()
    enricher = FakeEnricher()
    pipeline, storage = build_pipeline(sheets=sheets, enricher=enricher)
    await pipeline.refresh()

    await pipeline.refresh(invalidate_cache=True)

    assert sheets.cleared is True
    assert enricher.cleared is True
    assert COLLECTION_CACHE_KEY in storage.data

    pipeline.clear_caches()
    assert COLLECTION_CACHE_KEY not in storage.data
