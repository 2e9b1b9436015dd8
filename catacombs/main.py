"""Entry point for the FastAPI-powered collection catalog."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import __version__
from .config import settings
from .database import Database
from .exceptions import NotFoundError
from .models import Movie, MovieFilters
from .services.cache import TimedCache
from .services.collection import CollectionPipeline
from .services.filters import apply_filters, facet_values
from .services.omdb import OMDbClient
from .services.overrides import LocalOverrideStore
from .services.people import PeopleResolver
from .services.ratelimit import RateLimiter
from .services.sheets import SHEET_CACHE_KEY, SheetSource
from .services.tmdb import TMDBClient
from .services.wikipedia import WikipediaClient
from .storage import SqlStorage
from .utils import safe_int, safe_number

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    timeout = httpx.Timeout(settings.http_timeout_seconds, connect=5.0)
    tmdb_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(base_url=str(settings.tmdb_api_url), timeout=timeout)
    )
    omdb_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(base_url=str(settings.omdb_api_url), timeout=timeout)
    )
    web_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=timeout, headers={"User-Agent": settings.app_name})
    )
    database = Database(settings.database_url)
    database.create_all()
    storage = SqlStorage(database)

    limiter = RateLimiter(settings.max_requests_per_second)
    tmdb = TMDBClient(settings, tmdb_http, storage, limiter=limiter)
    omdb = OMDbClient(settings, omdb_http, storage)
    people = PeopleResolver(
        tmdb, storage, wikipedia=WikipediaClient(settings, web_http)
    )
    sheets = SheetSource(
        settings,
        web_http,
        TimedCache(storage, SHEET_CACHE_KEY, settings.sheet_cache_seconds),
    )
    pipeline = CollectionPipeline(
        settings,
        sheets,
        tmdb,
        LocalOverrideStore(storage),
        storage,
        omdb=omdb,
        people=people,
    )

    fastapi_app.state.pipeline = pipeline
    fastapi_app.state.database = database
    await pipeline.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await pipeline.stop()
        database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Catalog of a physical movie collection enriched from TMDB and OMDb",
        version=__version__,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_pipeline(app: FastAPI) -> CollectionPipeline:
    pipeline = getattr(app.state, "pipeline", None)
    if not isinstance(pipeline, CollectionPipeline):
        raise RuntimeError("Collection pipeline not initialised")
    return pipeline


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on", "si", "sí"}
    if isinstance(value, (int, float)):
        return bool(value)
    return False


def movie_payload(movie: Movie, note: str | None = None) -> dict[str, Any]:
    payload = movie.model_dump(mode="json")
    payload["external_rating"] = movie.external_rating
    if note is not None:
        payload["note"] = note
    return payload


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def register_routes(fastapi_app: FastAPI) -> None:
    def _status_payload(pipeline: CollectionPipeline) -> dict[str, Any]:
        state = pipeline.state
        return {
            "loading": state.loading,
            "error": state.error,
            "count": len(state.movies),
            "sheet": state.sheet_meta.model_dump(mode="json") if state.sheet_meta else None,
            "progress": state.progress.model_dump(mode="json"),
            "refreshed_at": state.refreshed_at,
        }

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/status")
    async def status_endpoint() -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        return JSONResponse(_status_payload(pipeline))

    @fastapi_app.get("/api/movies")
    async def list_movies_endpoint(request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        stored = pipeline.overrides.stored_filters().model_dump()
        requested = {
            key: value
            for key, value in request.query_params.items()
            if key in MovieFilters.model_fields
        }
        try:
            filters = MovieFilters.model_validate({**stored, **requested})
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc

        movies = apply_filters(pipeline.movies, filters)
        return JSONResponse(
            {
                "movies": [movie_payload(movie) for movie in movies],
                "total": len(movies),
                "filters": filters.model_dump(mode="json"),
                "loading": pipeline.state.loading,
            }
        )

    @fastapi_app.get("/api/facets")
    async def facets_endpoint() -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        return JSONResponse(facet_values(pipeline.movies))

    @fastapi_app.get("/api/movies/{movie_id}")
    async def movie_endpoint(movie_id: str) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        movie = pipeline.get_movie(movie_id)
        if movie is None:
            raise HTTPException(status_code=404, detail="Movie not found")
        return JSONResponse(movie_payload(movie, pipeline.note_for(movie_id) or ""))

    @fastapi_app.put("/api/movies/{movie_id}/seen")
    async def seen_endpoint(movie_id: str, request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        payload = await _read_json_object(request)
        if "seen" not in payload:
            raise HTTPException(status_code=400, detail="Missing 'seen'")
        try:
            movie = pipeline.update_seen(movie_id, _coerce_bool(payload["seen"]))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(movie_payload(movie))

    @fastapi_app.put("/api/movies/{movie_id}/rating")
    async def rating_endpoint(movie_id: str, request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        payload = await _read_json_object(request)
        raw = payload.get("rating")
        rating = safe_number(raw)
        if raw not in (None, "") and rating is None:
            raise HTTPException(status_code=400, detail="Rating must be a number")
        try:
            movie = pipeline.update_rating(movie_id, rating)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(movie_payload(movie))

    @fastapi_app.put("/api/movies/{movie_id}/note")
    async def note_endpoint(movie_id: str, request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        payload = await _read_json_object(request)
        note = payload.get("note") or ""
        if not isinstance(note, str):
            raise HTTPException(status_code=400, detail="Note must be a string")
        try:
            text = pipeline.update_note(movie_id, note)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse({"id": movie_id, "note": text})

    @fastapi_app.get("/api/filters")
    async def get_filters_endpoint() -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        return JSONResponse(pipeline.overrides.stored_filters().model_dump(mode="json"))

    @fastapi_app.put("/api/filters")
    async def put_filters_endpoint(request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        payload = await _read_json_object(request)
        try:
            filters = pipeline.overrides.set_stored_filters(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        return JSONResponse(filters.model_dump(mode="json"))

    @fastapi_app.post("/api/refresh")
    async def refresh_endpoint(request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        payload = await _read_json_object(request)
        force = _coerce_bool(payload.get("force"))
        invalidate = _coerce_bool(payload.get("invalidateCache"))
        if _coerce_bool(payload.get("wait")):
            await pipeline.refresh(force_network=force, invalidate_cache=invalidate)
            scheduled = False
        else:
            scheduled = pipeline.request_refresh(
                force_network=force, invalidate_cache=invalidate
            )
        body = _status_payload(pipeline)
        body["scheduled"] = scheduled
        return JSONResponse(body)

    @fastapi_app.get("/api/directors")
    async def directors_endpoint(request: Request) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        force = _coerce_bool(request.query_params.get("refresh"))
        profiles = await pipeline.director_profiles(force_refresh=force)
        return JSONResponse(
            {"directors": [profile.model_dump(mode="json") for profile in profiles]}
        )

    @fastapi_app.get("/api/directors/{person_id}")
    async def director_endpoint(person_id: str) -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        tmdb_id = safe_int(person_id)
        if tmdb_id is None:
            raise HTTPException(status_code=400, detail="Director id must be numeric")
        try:
            profile = await pipeline.load_director(tmdb_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        payload = profile.model_dump(mode="json")
        payload["owned_count"] = profile.owned_count
        return JSONResponse(payload)

    @fastapi_app.delete("/api/cache")
    async def clear_cache_endpoint() -> JSONResponse:
        pipeline = get_pipeline(fastapi_app)
        pipeline.clear_caches()
        return JSONResponse({"cleared": True})


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "catacombs.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
