"""Persistent key-value string storage used by every cache tier."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from .database import Database
from .db_models import StorageEntry

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Get/set/remove serialised strings by key.

    Reading a missing key returns ``None``; implementations may raise on
    write, callers treat persistence as best effort.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage, used in tests and when no database is configured."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class SqlStorage:
    """Storage backed by the ``storage_entries`` table."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def get(self, key: str) -> str | None:
        with self._database.session() as session:
            entry = session.get(StorageEntry, key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: str) -> None:
        with self._database.session() as session:
            entry = session.get(StorageEntry, key)
            if entry is None:
                session.add(StorageEntry(key=key, value=value))
            else:
                entry.value = value

    def remove(self, key: str) -> None:
        with self._database.session() as session:
            entry = session.get(StorageEntry, key)
            if entry is not None:
                session.delete(entry)


def read_json(storage: KeyValueStorage, key: str) -> Any | None:
    """Load and decode a JSON value; unreadable entries count as missing."""

    try:
        raw = storage.get(key)
    except Exception as exc:
        logger.warning("Could not read %s from storage: %s", key, exc)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        logger.warning("Discarding corrupt storage entry %s: %s", key, exc)
        return None


def write_json(storage: KeyValueStorage, key: str, value: Any) -> bool:
    """Serialise and persist a value, logging instead of raising on failure."""

    try:
        storage.set(key, json.dumps(value, ensure_ascii=False))
    except Exception as exc:
        logger.error("Could not persist %s: %s", key, exc)
        return False
    return True


def remove_key(storage: KeyValueStorage, key: str) -> None:
    try:
        storage.remove(key)
    except Exception as exc:
        logger.error("Could not remove %s from storage: %s", key, exc)
