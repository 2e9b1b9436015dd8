"""User-entered state that survives reloads: seen flags, ratings, notes, filters."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from ..models import Movie, MovieFilters
from ..storage import KeyValueStorage, read_json, remove_key, write_json

logger = logging.getLogger(__name__)

STATE_STORAGE_KEY = "catacombs-movie-state-v1"


def _empty_state() -> dict[str, dict[str, Any]]:
    return {"seen": {}, "ratings": {}, "notes": {}, "filters": {}}


class LocalOverrideStore:
    """Write-through store of per-movie overrides keyed by ``Movie.id``."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage
        self._state = self._load()

    def _load(self) -> dict[str, dict[str, Any]]:
        state = _empty_state()
        raw = read_json(self._storage, STATE_STORAGE_KEY)
        if not isinstance(raw, dict):
            return state
        for section in state:
            value = raw.get(section)
            if isinstance(value, dict):
                state[section] = dict(value)
        return state

    def _save(self) -> None:
        write_json(self._storage, STATE_STORAGE_KEY, self._state)

    def seen_overrides(self) -> dict[str, bool]:
        return self._state["seen"]

    def set_seen(self, movie_id: str, value: bool) -> None:
        self._state["seen"][movie_id] = bool(value)
        self._save()

    def rating_overrides(self) -> dict[str, float]:
        return self._state["ratings"]

    def set_rating(self, movie_id: str, value: float | None) -> None:
        """Store a rating; ``None`` drops the override."""

        if value is None:
            self._state["ratings"].pop(movie_id, None)
        else:
            self._state["ratings"][movie_id] = float(value)
        self._save()

    def notes(self) -> dict[str, str]:
        return self._state["notes"]

    def set_note(self, movie_id: str, text: str) -> None:
        if text:
            self._state["notes"][movie_id] = text
        else:
            self._state["notes"].pop(movie_id, None)
        self._save()

    def stored_filters(self) -> MovieFilters:
        try:
            return MovieFilters.model_validate(self._state["filters"])
        except ValidationError as exc:
            logger.warning("Ignoring stored filters: %s", exc)
            return MovieFilters()

    def set_stored_filters(self, partial: Mapping[str, Any]) -> MovieFilters:
        """Merge ``partial`` into the stored filters and return the result."""

        merged = {**self._state["filters"], **dict(partial)}
        filters = MovieFilters.model_validate(merged)
        self._state["filters"] = filters.model_dump(exclude_defaults=True)
        self._save()
        return filters

    def apply_local_overrides(self, movies: Iterable[Movie]) -> list[Movie]:
        """Return copies of ``movies`` with seen and rating overrides applied."""

        seen = self._state["seen"]
        ratings = self._state["ratings"]
        result: list[Movie] = []
        for movie in movies:
            update: dict[str, Any] = {}
            if movie.id in seen:
                update["seen"] = seen[movie.id]
            if movie.id in ratings:
                update["rating"] = ratings[movie.id]
            result.append(movie.model_copy(update=update) if update else movie)
        return result

    def clear(self) -> None:
        self._state = _empty_state()
        remove_key(self._storage, STATE_STORAGE_KEY)
