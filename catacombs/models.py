"""Pydantic models describing catalog records and provider payloads."""

from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .utils import parse_year

FuncionaStatus = Literal["working", "damaged", "untested"]
StatusSource = Literal["network", "cache", "stale-cache", "not-found", "error", "none"]
MediaType = Literal["movie", "tv"]
SheetOrigin = Literal["network", "cache", "stale-cache", "snapshot", "demo"]
SortOrder = Literal[
    "title-asc",
    "title-desc",
    "year-asc",
    "year-desc",
    "tmdb-desc",
    "tmdb-asc",
    "rating-desc",
    "rating-asc",
]


class SeasonInfo(BaseModel):
    """Season metadata returned for TV series."""

    season_number: int
    name: str | None = None
    episode_count: int | None = None
    air_date: str | None = None


class EnrichmentStatus(BaseModel):
    """Outcome of the most recent enrichment attempt for a movie."""

    source: StatusSource = "none"
    requested_titles: list[str] = Field(default_factory=list)
    requested_year: int | None = None
    matched_id: int | None = None
    matched_title: str | None = None
    matched_original_title: str | None = None
    fetched_at: float | None = None
    message: str | None = None
    error: str | None = None


class Movie(BaseModel):
    """A single owned title from the spreadsheet, plus enrichment fields."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    section: str = Field(
        default="Desconocida", validation_alias=AliasChoices("section", "seccion")
    )
    year: int | None = None
    saga: str = ""
    title: str = "Sin título"
    original_title: str | None = None
    genre_raw: str = ""
    director: str = ""
    director_tmdb_ids: list[int] = Field(default_factory=list)
    group: str = ""
    seen: bool = False
    series: bool = False
    season: int | None = None
    rating: float | None = None
    rating_gloria: float | None = None
    rating_rodrigo: float | None = None
    dubbing: str = ""
    format: str = ""
    in_storage: bool = False
    funciona_status: FuncionaStatus = "untested"

    tmdb_id: int | None = None
    tmdb_type: MediaType | None = None
    tmdb_title: str | None = None
    tmdb_original_title: str | None = None
    tmdb_year: int | None = None
    tmdb_rating: float | None = None
    poster_url: str | None = None
    plot: str | None = None
    tmdb_genres: list[str] | None = None
    tmdb_seasons: list[SeasonInfo] | None = None
    tmdb_status: EnrichmentStatus | None = None

    imdb_id: str | None = None
    imdb_rating: float | None = None

    @property
    def external_rating(self) -> float | None:
        """Provider rating, preferring TMDb over the IMDb backfill."""

        if self.tmdb_rating is not None:
            return self.tmdb_rating
        return self.imdb_rating

    def lookup_titles(self) -> list[str]:
        """Distinct titles used for provider searches, original title first."""

        titles: list[str] = []
        for candidate in (self.original_title, self.title):
            cleaned = (candidate or "").strip()
            if cleaned and cleaned not in titles:
                titles.append(cleaned)
        return titles


class TmdbEnrichment(BaseModel):
    """Cached TMDb payload for a title/year lookup."""

    tmdb_id: int
    tmdb_type: MediaType = "movie"
    title: str
    original_title: str | None = None
    year: int | None = None
    rating: float | None = None
    poster_path: str | None = None
    overview: str | None = None
    genres: list[str] | None = None
    seasons: list[SeasonInfo] | None = None


class OmdbRecord(BaseModel):
    """Cached OMDb payload used to backfill posters, ratings and plots."""

    imdb_id: str
    title: str | None = None
    year: int | None = None
    rating: float | None = None
    poster: str | None = None
    plot: str | None = None


class PersonMatch(BaseModel):
    id: int
    name: str


class PersonDetails(BaseModel):
    """Biographical details for a TMDb person."""

    id: int
    name: str
    biography: str | None = None
    profile_path: str | None = None
    profile_url: str | None = None
    place_of_birth: str | None = None
    birthday: str | None = None
    deathday: str | None = None
    also_known_as: list[str] = Field(default_factory=list)


class Credit(BaseModel):
    """One crew entry from a person's combined credits."""

    model_config = ConfigDict(extra="ignore")

    id: int
    media_type: str | None = None
    title: str | None = None
    name: str | None = None
    original_title: str | None = None
    original_name: str | None = None
    job: str | None = None
    release_date: str | None = None
    first_air_date: str | None = None
    poster_path: str | None = None
    popularity: float | None = None
    vote_count: int | None = None
    video: bool | None = None

    @property
    def display_title(self) -> str:
        return self.title or self.name or "Producción sin título"

    @property
    def preferred_original_title(self) -> str | None:
        return self.original_title or self.original_name

    @property
    def year(self) -> int | None:
        return parse_year(self.release_date or self.first_air_date)

    def sort_date(self) -> date:
        """Release or first-air date; a bare year counts as January 1."""

        raw = self.release_date or self.first_air_date
        if raw:
            try:
                return date.fromisoformat(raw[:10])
            except ValueError:
                year = parse_year(raw)
                if year is not None:
                    return date(year, 1, 1)
        return date.min


class DirectorWorks(BaseModel):
    director_list: list[Credit] = Field(default_factory=list)
    creator_list: list[Credit] = Field(default_factory=list)
    director_count: int = 0
    creator_count: int = 0
    total_count: int = 0


class FilmographyEntry(BaseModel):
    """A credit annotated with its ownership in the local collection."""

    id: int
    title: str
    original_title: str | None = None
    year: int | None = None
    media_type: MediaType = "movie"
    job: str | None = None
    poster_url: str | None = None
    owned: bool = False
    local_movie_id: str | None = None


class DirectorProfile(BaseModel):
    """Aggregated director view: identity, portrait and filmography."""

    name: str
    display_name: str
    tmdb_id: int | None = None
    profile_url: str | None = None
    biography: str | None = None
    directed: list[FilmographyEntry] = Field(default_factory=list)
    created: list[FilmographyEntry] = Field(default_factory=list)

    @property
    def owned_count(self) -> int:
        return sum(1 for entry in (*self.directed, *self.created) if entry.owned)


class CachedDirector(BaseModel):
    """Row of the bulk director listing cache."""

    name: str
    resolved_name: str
    tmdb_id: int | None = None
    profile_url: str | None = None
    fetched_at: float


class MovieFilters(BaseModel):
    """Catalog browsing preferences persisted alongside local overrides."""

    query: str = ""
    section: str | None = None
    genre: str | None = None
    saga: str | None = None
    series: Literal["all", "series", "movies"] = "all"
    seen: Literal["all", "seen", "unseen"] = "all"
    funciona: FuncionaStatus | None = None
    view: Literal["grid", "list"] = "grid"
    sort: SortOrder = "title-asc"


class SheetMeta(BaseModel):
    source: SheetOrigin
    url: str | None = None
    fetched_at: float | None = None


class Progress(BaseModel):
    completed: int = 0
    total: int = 0
    current_title: str | None = None


class CollectionState(BaseModel):
    """Observable state of the collection pipeline."""

    movies: list[Movie] = Field(default_factory=list)
    loading: bool = False
    error: str | None = None
    sheet_meta: SheetMeta | None = None
    progress: Progress = Field(default_factory=Progress)
    refreshed_at: float | None = None
