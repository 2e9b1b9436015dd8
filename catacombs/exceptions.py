"""Error taxonomy shared by the catalog services."""

from __future__ import annotations


class CatacombsError(Exception):
    """Base class for all catalog errors."""


class ParseError(CatacombsError, ValueError):
    """A spreadsheet row or cell could not be interpreted."""


class NetworkError(CatacombsError):
    """A provider request failed at the transport level or returned non-2xx."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(CatacombsError):
    """A provider returned no candidates for a lookup."""


class ConfigurationError(CatacombsError):
    """Required provider credentials or settings are missing."""
