"""Helpers reconciling provider credits with the local collection."""

from __future__ import annotations

import re
from typing import Iterable, Mapping

from .models import Credit, Movie
from .utils import normalize_lookup, normalize_title

_DIRECTOR_SPLIT_RE = re.compile(r"[,;/&]")


def split_directors(value: str) -> list[str]:
    """Split a free-text director field into individual names."""

    return [part.strip() for part in _DIRECTOR_SPLIT_RE.split(value or "") if part.strip()]


def normalize_director_name(value: str) -> str:
    return normalize_lookup(value)


def build_owned_id_set(movies: Iterable[Movie]) -> set[int]:
    """TMDb identifiers present in the collection."""

    return {movie.tmdb_id for movie in movies if movie.tmdb_id is not None}


def build_title_index(movies: Iterable[Movie]) -> dict[str, Movie]:
    """Map normalised titles to local movies; the first occurrence wins."""

    index: dict[str, Movie] = {}
    for movie in movies:
        for title in (
            movie.original_title,
            movie.tmdb_original_title,
            movie.tmdb_title,
            movie.title,
        ):
            key = normalize_title(title)
            if key and key not in index:
                index[key] = movie
    return index


def match_local_movie(
    credit: Credit, title_index: Mapping[str, Movie]
) -> Movie | None:
    """Find a local movie by the credit's original title, then its title."""

    preferred = normalize_title(credit.preferred_original_title)
    if preferred and preferred in title_index:
        return title_index[preferred]
    fallback = normalize_title(credit.display_title)
    if fallback and fallback in title_index:
        return title_index[fallback]
    return None


def resolve_ownership(
    credit: Credit,
    owned_ids: set[int],
    title_index: Mapping[str, Movie],
    id_index: Mapping[int, Movie] | None = None,
) -> tuple[bool, Movie | None]:
    """Return whether a credit is owned and the local movie backing it."""

    if credit.id in owned_ids:
        local = id_index.get(credit.id) if id_index else None
        return True, local
    local = match_local_movie(credit, title_index)
    return local is not None, local


def build_director_override_map(movies: Iterable[Movie]) -> dict[str, int]:
    """Director name to TMDb person id, from the spreadsheet's id column.

    Names and ids pair up by position; extra names reuse the first id.
    """

    overrides: dict[str, int] = {}
    for movie in movies:
        ids = list(movie.director_tmdb_ids)
        if not ids:
            continue
        for index, name in enumerate(split_directors(movie.director)):
            normalized = normalize_director_name(name)
            if normalized in overrides:
                continue
            overrides[normalized] = ids[index] if index < len(ids) else ids[0]
    return overrides
