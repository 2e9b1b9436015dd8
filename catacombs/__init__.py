"""Catacombs: a physical movie collection catalog enriched from TMDB and OMDb."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "1.0.0"

_EXPORTS = {
    "app": "catacombs.main",
    "create_app": "catacombs.main",
    "Settings": "catacombs.config",
    "Movie": "catacombs.models",
    "CollectionPipeline": "catacombs.services.collection",
}

__all__ = ["__version__", *_EXPORTS]


def __getattr__(name: str) -> Any:
    # Imported on demand so ``import catacombs`` does not build the FastAPI app.
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'catacombs' has no attribute {name}")
    return getattr(import_module(module_name), name)
