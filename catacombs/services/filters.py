"""Catalog filtering and sorting for the browse endpoints."""

from __future__ import annotations

from typing import Callable, Iterable

from ..models import Movie, MovieFilters, SortOrder
from ..utils import normalize_lookup, strip_accents


def _fold(value: str | None) -> str:
    return strip_accents(normalize_lookup(value))


def matches_query(movie: Movie, query: str) -> bool:
    needle = _fold(query)
    if not needle:
        return True
    haystacks = (movie.title, movie.original_title, movie.tmdb_title, movie.director)
    return any(needle in _fold(value) for value in haystacks if value)


def matches_genre(movie: Movie, genre: str) -> bool:
    target = _fold(genre)
    if target in _fold(movie.genre_raw):
        return True
    return any(_fold(name) == target for name in movie.tmdb_genres or [])


def filter_movies(movies: Iterable[Movie], filters: MovieFilters) -> list[Movie]:
    result: list[Movie] = []
    for movie in movies:
        if not matches_query(movie, filters.query):
            continue
        if filters.section and movie.section != filters.section:
            continue
        if filters.genre and not matches_genre(movie, filters.genre):
            continue
        if filters.saga and _fold(movie.saga) != _fold(filters.saga):
            continue
        if filters.series == "series" and not movie.series:
            continue
        if filters.series == "movies" and movie.series:
            continue
        if filters.seen == "seen" and not movie.seen:
            continue
        if filters.seen == "unseen" and movie.seen:
            continue
        if filters.funciona and movie.funciona_status != filters.funciona:
            continue
        result.append(movie)
    return result


_SORT_KEYS: dict[str, Callable[[Movie], object]] = {
    "title": lambda movie: _fold(movie.title),
    "year": lambda movie: movie.year or 0,
    "tmdb": lambda movie: movie.external_rating or 0,
    "rating": lambda movie: movie.rating or 0,
}


def sort_movies(movies: Iterable[Movie], order: SortOrder) -> list[Movie]:
    """Stable sort; missing years and ratings count as zero."""

    field, _, direction = order.partition("-")
    return sorted(movies, key=_SORT_KEYS[field], reverse=direction == "desc")


def apply_filters(movies: Iterable[Movie], filters: MovieFilters) -> list[Movie]:
    return sort_movies(filter_movies(movies, filters), filters.sort)


def facet_values(movies: Iterable[Movie]) -> dict[str, list[str]]:
    """Distinct sections, sagas and genres for building filter menus."""

    sections: set[str] = set()
    sagas: set[str] = set()
    genres: set[str] = set()
    for movie in movies:
        if movie.section:
            sections.add(movie.section)
        if movie.saga:
            sagas.add(movie.saga)
        for part in movie.genre_raw.replace(",", ";").split(";"):
            if part.strip():
                genres.add(part.strip())
        genres.update(movie.tmdb_genres or [])
    return {
        "sections": sorted(sections, key=_fold),
        "sagas": sorted(sagas, key=_fold),
        "genres": sorted(genres, key=_fold),
    }
