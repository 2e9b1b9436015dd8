"""Tests for spreadsheet parsing and the sheet source fallbacks."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from catacombs.config import Settings
from catacombs.services.cache import TimedCache
from catacombs.services.sheets import (
    SHEET_CACHE_KEY,
    SheetSource,
    looks_like_collection,
    map_to_movie,
    parse_boolean,
    parse_csv,
    parse_funciona_status,
    parse_id_list,
    parse_movies,
)
from catacombs.storage import MemoryStorage

SHEET_A = "https://sheets.example/a.csv"
SHEET_B = "https://sheets.example/b.csv"

SAMPLE_CSV = "Titulo,Año,Vista,Funciona\nJaws,1975,si,no\nAlien,1979,no,si\n"


def to_csv(header: list[str], rows: list[list[str]]) -> str:
    def cell(value: str) -> str:
        if any(char in value for char in ',"\n'):
            return '"' + value.replace('"', '""') + '"'
        return value

    lines = [",".join(cell(value) for value in row) for row in [header, *rows]]
    return "\n".join(lines)


def test_parse_csv_handles_quotes_delimiters_and_newlines() -> None:
    text = 'Titulo,Nota\r\n"Hello, World","She said ""hi""\nand left"\r\nPlain,  padded  \r\n'

    records = parse_csv(text)

    assert records == [
        {"Titulo": "Hello, World", "Nota": 'She said "hi"\nand left'},
        {"Titulo": "Plain", "Nota": "padded"},
    ]


def test_parse_csv_keeps_trailing_row_and_pads_short_rows() -> None:
    text = "A,B,C\n1,2,3\n\n4"

    records = parse_csv(text)

    assert records == [{"A": "1", "B": "2", "C": "3"}, {"A": "4", "B": "", "C": ""}]


def test_parse_csv_empty_input() -> None:
    assert parse_csv("") == []
    assert parse_csv("Titulo,Año\n") == []


@pytest.mark.parametrize(
    "values",
    [
        ["Alien, el octavo pasajero", "1979", "Ridley Scott"],
        ['The "Thing"', "1982", "John Carpenter"],
        ["Line one\nLine two", "", "A, B & C"],
        ['""', "2001", 'Quote "inside", comma'],
    ],
)
def test_parse_csv_reproduces_serialised_fields(values: list[str]) -> None:
    header = ["Titulo", "Año", "Director"]

    records = parse_csv(to_csv(header, [values]))

    assert records == [dict(zip(header, values))]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("si", True), ("Sí", True), (" YES ", True), ("1", True), ("true", True),
     ("no", False), ("", False), (None, False), ("x", False)],
)
def test_parse_boolean(raw: str | None, expected: bool) -> None:
    assert parse_boolean(raw) is expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("si", "working"),
        ("OK", "working"),
        ("funciona", "working"),
        ("no", "damaged"),
        ("Dañada", "damaged"),
        ("broken", "damaged"),
        ("", "untested"),
        ("a veces", "untested"),
        (None, "untested"),
    ],
)
def test_parse_funciona_status(raw: str | None, expected: str) -> None:
    assert parse_funciona_status(raw) == expected


def test_parse_id_list_drops_non_numeric_parts() -> None:
    assert parse_id_list("488, 578 / abc & 1;x2") == [488, 578, 1]
    assert parse_id_list("") == []
    assert parse_id_list(None) == []


def test_map_to_movie_jaws_row() -> None:
    movie = map_to_movie({"Titulo": "Jaws", "Año": "1975", "Vista": "si", "Funciona": "no"}, 0)

    assert movie.id == "Jaws-0"
    assert movie.title == "Jaws"
    assert movie.year == 1975
    assert movie.seen is True
    assert movie.funciona_status == "damaged"
    assert movie.section == "Desconocida"
    assert movie.original_title is None
    assert movie.director_tmdb_ids == []


def test_map_to_movie_matches_headers_without_accents_or_case() -> None:
    record = {
        "TÍTULO": "Tiburón",
        "titulo original": "Jaws",
        "Sección": "Terror",
        "ANO": "1975",
        "Puntuación": "8,5",
        "Puntuación Gloria": "9",
        "Director TMDb": "488",
        "Serie": "no",
        "Temporada": "",
        "Depósito": "sí",
    }

    movie = map_to_movie(record, 3)

    assert movie.id == "Tiburón-3"
    assert movie.original_title == "Jaws"
    assert movie.section == "Terror"
    assert movie.year == 1975
    assert movie.rating == 8.5
    assert movie.rating_gloria == 9
    assert movie.rating_rodrigo is None
    assert movie.director_tmdb_ids == [488]
    assert movie.season is None
    assert movie.in_storage is True


def test_parse_movies_survives_short_rows() -> None:
    movies = parse_movies("Titulo,Año,Vista,Funciona\nSolo\n,1999\n")

    assert [movie.id for movie in movies] == ["Solo-0", "movie-1"]
    assert movies[0].year is None
    assert movies[1].title == "Sin título"
    assert movies[1].year == 1999


def test_byte_order_mark_does_not_hide_the_title_column() -> None:
    text = "\ufeffTitulo,Año,Vista\nJaws,1975,si\n"

    assert looks_like_collection(text) is True
    assert [movie.title for movie in parse_movies(text)] == ["Jaws"]


def build_source(
    handler,
    storage: MemoryStorage,
    clock,
    *,
    snapshot_path: Path,
) -> tuple[SheetSource, httpx.AsyncClient, TimedCache]:
    settings = Settings(_env_file=None, SHEET_CSV_URLS=f"{SHEET_A},{SHEET_B}")
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache: TimedCache[str] = TimedCache(
        storage, SHEET_CACHE_KEY, settings.sheet_cache_seconds, clock=clock
    )
    source = SheetSource(settings, http_client, cache, snapshot_path=snapshot_path)
    return source, http_client, cache


@pytest.mark.anyio("asyncio")
async def test_sheet_source_prefers_network_and_caches(tmp_path: Path, clock) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if str(request.url) == SHEET_A:
            return httpx.Response(500)
        return httpx.Response(200, text=SAMPLE_CSV)

    storage = MemoryStorage()
    source, http_client, cache = build_source(
        handler, storage, clock, snapshot_path=tmp_path / "missing.csv"
    )
    async with http_client:
        payload = await source.load()

    assert requested == [SHEET_A, SHEET_B]
    assert payload.meta.source == "network"
    assert payload.meta.url == SHEET_B
    assert [movie.title for movie in payload.movies] == ["Jaws", "Alien"]
    assert SHEET_CACHE_KEY in storage.data
    assert cache.get(SHEET_B) is not None


@pytest.mark.anyio("asyncio")
async def test_sheet_source_falls_back_to_fresh_then_stale_cache(tmp_path: Path, clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    storage = MemoryStorage()
    source, http_client, cache = build_source(
        handler, storage, clock, snapshot_path=tmp_path / "missing.csv"
    )
    cache.set(SHEET_A, SAMPLE_CSV)

    async with http_client:
        clock.advance(60)
        fresh = await source.load()
        clock.advance(25 * 3600)
        stale = await source.load()

    assert fresh.meta.source == "cache"
    assert stale.meta.source == "stale-cache"
    assert [movie.title for movie in stale.movies] == ["Jaws", "Alien"]


@pytest.mark.anyio("asyncio")
async def test_sheet_source_skips_non_collection_text_and_uses_snapshot(
    tmp_path: Path, clock
) -> None:
    snapshot = tmp_path / "snapshot.csv"
    snapshot.write_text("Titulo,Año\nSnapshot Movie,2000\n", encoding="utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html><body>Sign in</body></html>")

    source, http_client, _ = build_source(
        handler, MemoryStorage(), clock, snapshot_path=snapshot
    )
    async with http_client:
        payload = await source.load()

    assert payload.meta.source == "snapshot"
    assert [movie.title for movie in payload.movies] == ["Snapshot Movie"]


@pytest.mark.anyio("asyncio")
async def test_sheet_source_demo_dataset_is_last_resort(tmp_path: Path, clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    source, http_client, _ = build_source(
        handler, MemoryStorage(), clock, snapshot_path=tmp_path / "missing.csv"
    )
    async with http_client:
        payload = await source.load()

    assert payload.meta.source == "demo"
    assert [movie.id for movie in payload.movies] == ["demo-1"]
    assert payload.movies[0].title == "Demo of the Tomb"


def test_bundled_snapshot_parses() -> None:
    settings = Settings(_env_file=None)

    movies = parse_movies(settings.sheet_snapshot_path.read_text(encoding="utf-8"))

    assert movies
    twin_peaks = next(movie for movie in movies if movie.title == "Twin Peaks")
    assert twin_peaks.series is True
    assert twin_peaks.director_tmdb_ids == [5602, 15761]
    assert twin_peaks.funciona_status == "damaged"


@pytest.mark.anyio("asyncio")
async def test_sheet_source_accepts_export_with_byte_order_mark(tmp_path: Path, clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=("\ufeff" + SAMPLE_CSV).encode("utf-8"))

    source, http_client, _ = build_source(
        handler, MemoryStorage(), clock, snapshot_path=tmp_path / "missing.csv"
    )
    async with http_client:
        payload = await source.load()

    assert payload.meta.source == "network"
    assert payload.meta.url == SHEET_A
    assert [movie.title for movie in payload.movies] == ["Jaws", "Alien"]
