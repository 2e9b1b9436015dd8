"""Command line entry point: ``catacombs`` or ``python -m catacombs``."""

from __future__ import annotations

import argparse
import logging
from typing import Sequence

import uvicorn

from catacombs.config import Settings, settings

logger = logging.getLogger(__name__)


def build_parser(config: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catacombs",
        description="Serve the movie collection catalog as a JSON API.",
    )
    parser.add_argument("--host", default=config.server_host, help="bind address (HOST)")
    parser.add_argument("--port", type=int, default=config.server_port, help="bind port (PORT)")
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=config.environment == "development",
        help="restart on code changes (default on in development)",
    )
    return parser


def describe_sources(config: Settings) -> list[str]:
    """One line per spreadsheet export and metadata provider, for the startup log."""

    lines = [f"sheet: {url}" for url in config.sheet_csv_urls] or ["sheet: bundled snapshot only"]
    if config.tmdb_bearer:
        lines.append("tmdb: bearer token")
    elif config.tmdb_api_key:
        lines.append("tmdb: api key")
    else:
        lines.append("tmdb: disabled")
    lines.append("omdb: " + ("api key" if config.omdb_api_key else "disabled"))
    return lines


def main(argv: Sequence[str] | None = None) -> None:
    """Serve the catalog API; flags override the configured host, port and reload."""

    args = build_parser(settings).parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    for line in describe_sources(settings):
        logger.info("Catacombs %s", line)
    uvicorn.run(
        "catacombs.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
