"""Spreadsheet ingestion: CSV parsing, row mapping and source fallbacks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..exceptions import ParseError
from ..models import FuncionaStatus, Movie, SheetMeta
from ..utils import normalize_header, safe_int, safe_number
from .cache import TimedCache

logger = logging.getLogger(__name__)

SHEET_CACHE_KEY = "catacombs-sheet-cache-v1"

TRUE_TOKENS = frozenset({"si", "sí", "yes", "1", "true"})
WORKING_TOKENS = frozenset({"si", "sí", "yes", "1", "true", "ok", "funciona", "working"})
DAMAGED_TOKENS = frozenset(
    {"no", "0", "false", "dañada", "danada", "dañado", "danado", "damaged", "roto", "broken"}
)
_ID_SPLIT_RE = re.compile(r"[,;/&]")

# Canonical field -> accepted (normalised) column headers.
COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("titulo", "title"),
    "original_title": ("titulo original", "original title", "original"),
    "section": ("seccion", "section"),
    "year": ("ano", "year"),
    "saga": ("saga",),
    "genre": ("genero", "genre"),
    "director": ("director",),
    "director_ids": ("director tmdb", "director tmdb id", "director id"),
    "group": ("grupo", "group"),
    "seen": ("vista", "visto", "seen"),
    "series": ("serie", "series"),
    "season": ("temporada", "season"),
    "rating": ("puntuacion", "rating"),
    "rating_gloria": ("puntuacion gloria",),
    "rating_rodrigo": ("puntuacion rodrigo",),
    "dubbing": ("doblaje", "dubbing"),
    "format": ("formato", "format"),
    "in_storage": ("deposito", "en deposito"),
    "funciona": ("funciona", "working"),
}

DEMO_MOVIES: tuple[Movie, ...] = (
    Movie(
        id="demo-1",
        section="Accion - Aventura",
        year=1981,
        saga="Demo Saga",
        title="Demo of the Tomb",
        genre_raw="Aventura; Fantasia",
        director="Demo Director",
        group="Coleccion",
        seen=False,
        rating=7,
        dubbing="Español",
        format="Blu-ray",
    ),
)


def parse_csv(text: str) -> list[dict[str, str]]:
    """Parse delimited text into header-keyed records.

    Quoted fields may contain commas and newlines, and ``""`` inside a quoted
    field is a literal quote. Cells are trimmed; a final row without a
    trailing newline is kept; short rows are padded with empty strings. A
    leading byte-order mark is dropped.
    """

    text = text.removeprefix("\ufeff")
    rows: list[list[str]] = []
    cells: list[str] = []
    current: list[str] = []
    in_quotes = False
    index = 0
    length = len(text)

    while index < length:
        char = text[index]
        if char == '"':
            if in_quotes and index + 1 < length and text[index + 1] == '"':
                current.append('"')
                index += 1
            else:
                in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            cells.append("".join(current).strip())
            current = []
        elif char == "\n" and not in_quotes:
            cells.append("".join(current).strip())
            rows.append(cells)
            cells = []
            current = []
        elif char == "\r" and not in_quotes:
            pass
        else:
            current.append(char)
        index += 1

    if current or cells:
        cells.append("".join(current).strip())
        rows.append(cells)

    if not rows:
        return []
    header, *data = rows
    keys = [key.strip() for key in header]
    records: list[dict[str, str]] = []
    for row in data:
        if not any(cell for cell in row):
            continue
        records.append(
            {key: (row[idx] if idx < len(row) else "") for idx, key in enumerate(keys)}
        )
    return records


def parse_boolean(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUE_TOKENS


def parse_funciona_status(value: str | None) -> FuncionaStatus:
    """Map the "Funciona" column; unknown or empty input means untested."""

    token = (value or "").strip().lower()
    if token in WORKING_TOKENS:
        return "working"
    if token in DAMAGED_TOKENS:
        return "damaged"
    return "untested"


def parse_id_list(value: str | None) -> list[int]:
    """Parse ``12, 34 / 56`` style lists; non-numeric parts are dropped."""

    ids: list[int] = []
    for part in _ID_SPLIT_RE.split(value or ""):
        parsed = safe_int(part)
        if parsed is not None:
            ids.append(parsed)
    return ids


def _field_lookup(record: Mapping[str, str]) -> dict[str, str]:
    by_header = {normalize_header(key): value for key, value in record.items()}
    resolved: dict[str, str] = {}
    for field, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in by_header:
                resolved[field] = by_header[alias]
                break
    return resolved


def map_to_movie(record: Mapping[str, str], index: int) -> Movie:
    """Convert one spreadsheet record into a :class:`Movie`."""

    fields = _field_lookup(record)
    raw_title = fields.get("title", "")
    try:
        return Movie(
            id=f"{raw_title or 'movie'}-{index}",
            section=fields.get("section") or "Desconocida",
            year=safe_int(fields.get("year")),
            saga=fields.get("saga", ""),
            title=raw_title or "Sin título",
            original_title=fields.get("original_title") or None,
            genre_raw=fields.get("genre", ""),
            director=fields.get("director", ""),
            director_tmdb_ids=parse_id_list(fields.get("director_ids")),
            group=fields.get("group", ""),
            seen=parse_boolean(fields.get("seen")),
            series=parse_boolean(fields.get("series")),
            season=safe_int(fields.get("season")),
            rating=safe_number(fields.get("rating")),
            rating_gloria=safe_number(fields.get("rating_gloria")),
            rating_rodrigo=safe_number(fields.get("rating_rodrigo")),
            dubbing=fields.get("dubbing", ""),
            format=fields.get("format", ""),
            in_storage=parse_boolean(fields.get("in_storage")),
            funciona_status=parse_funciona_status(fields.get("funciona")),
        )
    except ValidationError as exc:
        raise ParseError(f"Row {index} could not be mapped: {exc}") from exc


def parse_movies(text: str) -> list[Movie]:
    """Parse CSV text into movies, substituting defaults for broken rows."""

    movies: list[Movie] = []
    for index, record in enumerate(parse_csv(text)):
        try:
            movies.append(map_to_movie(record, index))
        except ParseError as exc:
            logger.debug("%s; using defaults", exc)
            title = (_field_lookup(record).get("title") or "").strip()
            movies.append(Movie(id=f"{title or 'movie'}-{index}", title=title or "Sin título"))
    return movies


def looks_like_collection(text: str) -> bool:
    """True when the text parses to at least one row with a title column."""

    records = parse_csv(text)
    if not records:
        return False
    return "title" in _field_lookup(records[0])


@dataclass(slots=True)
class SheetPayload:
    movies: list[Movie]
    meta: SheetMeta


class SheetSource:
    """Loads the collection spreadsheet, falling back when offline.

    Order: configured URLs over the network, fresh cached copy, stale cached
    copy, bundled snapshot file, hardcoded demo dataset.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        cache: TimedCache[str],
        *,
        snapshot_path: Path | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._cache = cache
        self._urls = tuple(settings.sheet_csv_urls)
        self._snapshot_path = snapshot_path or settings.sheet_snapshot_path

    async def load(self) -> SheetPayload:
        fetched = await self._fetch_network()
        if fetched is not None:
            url, text = fetched
            fetched_at = self._cache.set(url, text)
            return SheetPayload(
                movies=parse_movies(text),
                meta=SheetMeta(source="network", url=url, fetched_at=fetched_at),
            )

        cached = self._cached_copy(allow_stale=False) or self._cached_copy(allow_stale=True)
        if cached is not None:
            url, hit = cached
            source = "cache" if hit.fresh else "stale-cache"
            logger.info("Using %s spreadsheet copy from %s", source, url)
            return SheetPayload(
                movies=parse_movies(hit.payload),
                meta=SheetMeta(source=source, url=url, fetched_at=hit.fetched_at),
            )

        snapshot = self._read_snapshot()
        if snapshot is not None:
            logger.info("Using bundled spreadsheet snapshot %s", self._snapshot_path)
            return SheetPayload(
                movies=parse_movies(snapshot),
                meta=SheetMeta(source="snapshot", url=str(self._snapshot_path)),
            )

        logger.warning("No spreadsheet source available, falling back to demo data")
        return SheetPayload(
            movies=[movie.model_copy() for movie in DEMO_MOVIES],
            meta=SheetMeta(source="demo"),
        )

    async def _fetch_network(self) -> tuple[str, str] | None:
        for url in self._urls:
            try:
                response = await self._client.get(url, follow_redirects=True)
            except httpx.HTTPError as exc:
                logger.warning("Spreadsheet fetch failed for %s: %s", url, exc)
                continue
            if response.status_code >= 400:
                logger.warning(
                    "Spreadsheet fetch for %s returned %s", url, response.status_code
                )
                continue
            text = response.text
            if not looks_like_collection(text):
                logger.warning("Spreadsheet at %s did not contain collection rows", url)
                continue
            return url, text
        return None

    def _cached_copy(self, *, allow_stale: bool):
        for url in self._urls:
            hit = self._cache.get(url, allow_stale=allow_stale)
            if hit is not None and hit.payload and looks_like_collection(hit.payload):
                return url, hit
        return None

    def _read_snapshot(self) -> str | None:
        path = self._snapshot_path
        if path is None or not path.exists():
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not read snapshot %s: %s", path, exc)
            return None
        return text if looks_like_collection(text) else None

    def clear_cache(self) -> None:
        self._cache.clear()
