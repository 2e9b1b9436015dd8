from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from catacombs.config import Settings
from catacombs.main import register_routes
from catacombs.models import Movie, SheetMeta
from catacombs.services.collection import CollectionPipeline
from catacombs.services.overrides import LocalOverrideStore
from catacombs.services.sheets import SheetPayload
from catacombs.storage import MemoryStorage

MOVIES = [
    Movie(id="Jaws-0", title="Jaws", year=1975, section="Terror", genre_raw="Terror; Aventura",
          seen=True, director="Steven Spielberg", tmdb_rating=7.7),
    Movie(id="Alien-1", title="Alien", year=1979, section="Ciencia ficción", saga="Alien",
          director="Ridley Scott", imdb_rating=8.5, funciona_status="damaged"),
    Movie(id="Twin Peaks-2", title="Twin Peaks", year=1990, section="Series", series=True,
          director="David Lynch, Mark Frost", tmdb_genres=["Misterio"]),
]


class StaticSheets:
    def __init__(self) -> None:
        self.cleared = False

    async def load(self) -> SheetPayload:
        return SheetPayload(movies=list(MOVIES), meta=SheetMeta(source="snapshot"))

    def clear_cache(self) -> None:
        self.cleared = True


class PassThroughEnricher:
    def __init__(self) -> None:
        self.cleared = False

    async def enrich_batch(self, movies, options=None, **kwargs):
        return list(movies)

    def clear_cache(self) -> None:
        self.cleared = True


def build_app() -> tuple[FastAPI, CollectionPipeline]:
    storage = MemoryStorage()
    pipeline = CollectionPipeline(
        Settings(_env_file=None),
        StaticSheets(),  # type: ignore[arg-type]
        PassThroughEnricher(),  # type: ignore[arg-type]
        LocalOverrideStore(storage),
        storage,
    )
    pipeline.state.movies = list(MOVIES)
    app = FastAPI()
    register_routes(app)
    app.state.pipeline = pipeline
    return app, pipeline


def test_healthz_and_status() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        health = client.get("/healthz")
        status = client.get("/api/status")

    assert health.json() == {"status": "ok"}
    assert status.status_code == 200
    assert status.json()["count"] == 3
    assert status.json()["loading"] is False


def test_list_movies_applies_query_filters_and_sort() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        by_query = client.get("/api/movies", params={"query": "spielberg"})
        by_year = client.get("/api/movies", params={"sort": "year-desc"})
        unseen_movies = client.get("/api/movies", params={"seen": "unseen", "series": "movies"})
        damaged = client.get("/api/movies", params={"funciona": "damaged"})

    assert [movie["id"] for movie in by_query.json()["movies"]] == ["Jaws-0"]
    assert [movie["id"] for movie in by_year.json()["movies"]] == [
        "Twin Peaks-2",
        "Alien-1",
        "Jaws-0",
    ]
    assert [movie["id"] for movie in unseen_movies.json()["movies"]] == ["Alien-1"]
    assert damaged.json()["total"] == 1
    assert damaged.json()["movies"][0]["external_rating"] == 8.5


def test_list_movies_uses_stored_filters() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        stored = client.put("/api/filters", json={"sort": "title-desc", "view": "list"})
        listed = client.get("/api/movies")
        overridden = client.get("/api/movies", params={"sort": "title-asc"})
        current = client.get("/api/filters")

    assert stored.status_code == 200
    assert [movie["title"] for movie in listed.json()["movies"]] == ["Twin Peaks", "Jaws", "Alien"]
    assert listed.json()["filters"]["view"] == "list"
    assert overridden.json()["movies"][0]["title"] == "Alien"
    assert current.json()["sort"] == "title-desc"


def test_invalid_filters_are_rejected() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        listed = client.get("/api/movies", params={"sort": "random"})
        stored = client.put("/api/filters", json={"seen": "sometimes"})
        wrong_shape = client.put("/api/filters", json=["sort"])

    assert listed.status_code == 400
    assert stored.status_code == 400
    assert wrong_shape.status_code == 400


def test_movie_detail_and_local_edits() -> None:
    app, pipeline = build_app()

    with TestClient(app) as client:
        seen = client.put("/api/movies/Alien-1/seen", json={"seen": "si"})
        rating = client.put("/api/movies/Alien-1/rating", json={"rating": "8,5"})
        note = client.put("/api/movies/Alien-1/note", json={"note": "Edición especial"})
        detail = client.get("/api/movies/Alien-1")

    assert seen.json()["seen"] is True
    assert rating.json()["rating"] == 8.5
    assert note.json() == {"id": "Alien-1", "note": "Edición especial"}
    assert detail.json()["note"] == "Edición especial"
    assert detail.json()["seen"] is True
    assert pipeline.overrides.seen_overrides() == {"Alien-1": True}


def test_local_edit_errors() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        unknown = client.get("/api/movies/missing")
        unknown_seen = client.put("/api/movies/missing/seen", json={"seen": True})
        missing_field = client.put("/api/movies/Jaws-0/seen", json={})
        bad_rating = client.put("/api/movies/Jaws-0/rating", json={"rating": "great"})

    assert unknown.status_code == 404
    assert unknown_seen.status_code == 404
    assert missing_field.status_code == 400
    assert bad_rating.status_code == 400


def test_facets() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        facets = client.get("/api/facets").json()

    assert facets["sections"] == ["Ciencia ficción", "Series", "Terror"]
    assert facets["sagas"] == ["Alien"]
    assert facets["genres"] == ["Aventura", "Misterio", "Terror"]


def test_refresh_wait_and_cache_clear() -> None:
    app, pipeline = build_app()
    pipeline.overrides.set_seen("Twin Peaks-2", True)

    with TestClient(app) as client:
        refreshed = client.post("/api/refresh", json={"wait": True})
        cleared = client.delete("/api/cache")

    body = refreshed.json()
    assert body["scheduled"] is False
    assert body["sheet"]["source"] == "snapshot"
    assert body["count"] == 3
    assert pipeline.get_movie("Twin Peaks-2").seen is True
    assert cleared.json() == {"cleared": True}


def test_directors_without_people_resolver() -> None:
    app, _ = build_app()

    with TestClient(app) as client:
        listing = client.get("/api/directors")
        bad_id = client.get("/api/directors/lynch")
        unknown = client.get("/api/directors/5602")

    assert listing.json() == {"directors": []}
    assert bad_id.status_code == 400
    assert unknown.status_code == 404
