"""Time-boxed caches persisted through the key-value storage capability."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, TypeVar

from pydantic import BaseModel, ValidationError

from ..storage import KeyValueStorage, read_json, remove_key, write_json
from ..utils import normalize_lookup

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


def make_cache_key(titles: Iterable[str], year: int | None) -> str:
    """Deterministic key for a title list and year.

    Title order is significant; case and whitespace are not.
    """

    normalized = "|".join(normalize_lookup(title) for title in titles)
    return f"{normalized}|{year if year is not None else ''}"


@dataclass(slots=True)
class CacheHit(Generic[T]):
    """A cached payload and whether it is still within its freshness window."""

    payload: T
    fetched_at: float
    fresh: bool


class TimedCache(Generic[T]):
    """String-keyed cache of ``{fetchedAt, payload}`` entries with a TTL.

    The whole partition lives under one storage key. It is read once at
    construction and every write goes straight back to storage.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        storage_key: str,
        ttl_seconds: float,
        *,
        model: type[BaseModel] | None = None,
        clock: Clock = time.time,
        max_entries: int | None = None,
    ) -> None:
        self._storage = storage
        self.storage_key = storage_key
        self.ttl_seconds = ttl_seconds
        self._model = model
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, dict[str, Any]] = self._load()

    def _load(self) -> dict[str, dict[str, Any]]:
        raw = read_json(self._storage, self.storage_key)
        if not isinstance(raw, dict):
            return {}
        entries: dict[str, dict[str, Any]] = {}
        for key, entry in raw.items():
            if not isinstance(entry, dict) or "fetchedAt" not in entry:
                continue
            entries[str(key)] = entry
        logger.debug("Loaded %s entries from %s", len(entries), self.storage_key)
        return entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def is_fresh(self, fetched_at: float) -> bool:
        return self._clock() - fetched_at < self.ttl_seconds

    def get(self, key: str, *, allow_stale: bool = False) -> CacheHit[T] | None:
        """Return the entry for ``key``; expired entries only when ``allow_stale``."""

        entry = self._entries.get(key)
        if entry is None:
            return None
        try:
            fetched_at = float(entry["fetchedAt"])
        except (TypeError, ValueError):
            return None
        fresh = self.is_fresh(fetched_at)
        if not fresh and not allow_stale:
            return None
        payload = self._decode(entry.get("payload"))
        if payload is None and entry.get("payload") is not None:
            return None
        return CacheHit(payload=payload, fetched_at=fetched_at, fresh=fresh)

    def set(self, key: str, payload: T) -> float:
        """Store ``payload`` stamped with the current time and persist."""

        fetched_at = self._clock()
        self._entries[key] = {"fetchedAt": fetched_at, "payload": self._encode(payload)}
        self._prune()
        self._persist()
        return fetched_at

    def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._persist()

    def clear(self) -> None:
        self._entries.clear()
        remove_key(self._storage, self.storage_key)

    def _prune(self) -> None:
        if not self._max_entries or len(self._entries) <= self._max_entries:
            return
        newest = sorted(
            self._entries.items(),
            key=lambda item: float(item[1].get("fetchedAt") or 0),
            reverse=True,
        )[: self._max_entries]
        self._entries = dict(newest)

    def _persist(self) -> None:
        write_json(self._storage, self.storage_key, self._entries)

    def _encode(self, payload: Any) -> Any:
        if isinstance(payload, BaseModel):
            return payload.model_dump(mode="json")
        if isinstance(payload, list) and payload and isinstance(payload[0], BaseModel):
            return [item.model_dump(mode="json") for item in payload]
        return payload

    def _decode(self, raw: Any) -> Any:
        if self._model is None or raw is None:
            return raw
        try:
            if isinstance(raw, list):
                return [self._model.model_validate(item) for item in raw]
            return self._model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring malformed entry in %s: %s", self.storage_key, exc)
            return None


class NegativeMemo:
    """Remembers lookups that recently failed so they are not retried."""

    def __init__(
        self,
        storage: KeyValueStorage,
        storage_key: str,
        ttl_seconds: float,
        *,
        clock: Clock = time.time,
    ) -> None:
        self._storage = storage
        self.storage_key = storage_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        raw = read_json(storage, storage_key)
        self._failures: dict[str, float] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                try:
                    self._failures[str(key)] = float(value)
                except (TypeError, ValueError):
                    continue

    def active(self, key: str) -> float | None:
        """Timestamp of the last failure when still inside the TTL window."""

        failed_at = self._failures.get(key)
        if failed_at is None:
            return None
        if self._clock() - failed_at >= self.ttl_seconds:
            return None
        return failed_at

    def record(self, key: str) -> float:
        failed_at = self._clock()
        self._failures[key] = failed_at
        write_json(self._storage, self.storage_key, self._failures)
        return failed_at

    def clear(self, key: str) -> None:
        if self._failures.pop(key, None) is not None:
            write_json(self._storage, self.storage_key, self._failures)

    def clear_all(self) -> None:
        self._failures.clear()
        remove_key(self._storage, self.storage_key)
