from contextlib import asynccontextmanager
import logging
from typing import List, Literal

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from showtrackr.catalog import GENRE_IDS, CatalogError, GenreLookup, TMDBClient
from showtrackr.config import GENRE_REFRESH_HOURS, LOG_FORMAT, LOG_LEVEL, SCHEDULER_ENABLED
from showtrackr.db import SessionLocal, engine
from showtrackr.enrichment import StatusOutbox, enrich_user_shows
from showtrackr.models import Base
from showtrackr.progress import (
    BackfillRegistry,
    ProgressUpdateError,
    backfill_completed_show,
    fetch_watched_episodes,
    mark_all_watched,
    mark_episode_watched,
    mark_season_watched,
    unmark_episode_watched,
    unmark_season_watched,
)
from showtrackr.schemas import (
    DiscoverResponse,
    EnrichedShowResponse,
    EpisodeBatch,
    EpisodeResponse,
    SearchResultResponse,
    ShowDetailResponse,
    ShowSummaryResponse,
    TrackedShowCreate,
    TrackedShowResponse,
    TrackedShowUpdate,
    WatchedEpisodesResponse,
    WatchProvidersResponse,
)
from showtrackr.services import (
    get_tracked_show,
    list_tracked_shows,
    remove_tracked_show,
    update_tracked_show_status,
    upsert_tracked_show,
)

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()
genre_lookup = GenreLookup()
catalog = TMDBClient(genres=genre_lookup)
backfill_registry = BackfillRegistry()

SORT_OPTIONS = {
    "popularity": "popularity.desc",
    "rating": "vote_average.desc",
    "year_desc": "first_air_date.desc",
    "year_asc": "first_air_date.asc",
    "name": "name.asc",
}

FILTER_LABELS = {
    "rating": {"8": "8+ rating", "7": "7+ rating"},
    "status": {"running": "Running status", "ended": "Ended status"},
    "language": {"en": "English only"},
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def get_catalog() -> TMDBClient:
    return catalog


def get_backfill_registry() -> BackfillRegistry:
    return backfill_registry


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not logged in")
    return x_user_id.strip()


def refresh_genres() -> None:
    genre_lookup.refresh(catalog)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    if catalog.api_key:
        refresh_genres()
    if SCHEDULER_ENABLED:
        scheduler.add_job(
            refresh_genres,
            "interval",
            hours=GENRE_REFRESH_HOURS,
            id="genre_refresh",
            replace_existing=True,
        )
        scheduler.start()
    yield
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(lifespan=lifespan)


@app.get("/api/search", response_model=List[SearchResultResponse])
def search_shows(q: str = "", catalog: TMDBClient = Depends(get_catalog)):
    query = q.strip()
    if not query:
        return []
    try:
        return catalog.search_shows(query)
    except CatalogError as exc:
        logger.error("Search failed for %r: %s", query, exc)
        return JSONResponse([], status_code=500)


def run_discover(catalog: TMDBClient, genre_id, page, sort, status, rating_min, language):
    if sort == "rating":
        return catalog.discover_shows_by_rating(
            genre_id=genre_id, page=page, status=status, rating_min=rating_min, language=language
        )
    return catalog.discover_shows(
        genre_id=genre_id,
        page=page,
        sort_by=SORT_OPTIONS.get(sort, "popularity.desc"),
        status=status,
        rating_min=rating_min,
        language=language,
    )


def relaxed_discover(catalog: TMDBClient, genre_id, sort, status, rating_min, language):
    """Drop one filter at a time, most restrictive first, until something matches."""
    candidates = []
    if rating_min:
        label = FILTER_LABELS["rating"].get(f"{rating_min:g}", f"{rating_min:g}+ rating")
        candidates.append(("rating", label, {"rating_min": None}))
    if status:
        label = FILTER_LABELS["status"].get(status, f"{status} status")
        candidates.append(("status", label, {"status": None}))
    if language:
        label = FILTER_LABELS["language"].get(language, "Language filter")
        candidates.append(("language", label, {"language": None}))

    for name, label, override in candidates:
        options = {"status": status, "rating_min": rating_min, "language": language, **override}
        result = run_discover(catalog, genre_id, 1, sort, **options)
        if result.shows:
            return {
                "shows": result.shows,
                "total_pages": result.total_pages,
                "relaxed_filter": name,
                "relaxed_filter_label": label,
            }
    return None


@app.get("/api/discover", response_model=DiscoverResponse)
def discover(
    genre: str = "",
    page: int = 1,
    sort: str = "popularity",
    status: Literal["running", "ended"] | None = None,
    rating: float | None = None,
    language: str | None = None,
    catalog: TMDBClient = Depends(get_catalog),
):
    page = max(page, 1)
    genre_id = GENRE_IDS.get(genre)
    try:
        result = run_discover(catalog, genre_id, page, sort, status, rating, language)
        if not result.shows and page == 1 and (rating or status or language):
            fallback = relaxed_discover(catalog, genre_id, sort, status, rating, language)
            if fallback:
                return {"shows": [], "total_pages": 0, "fallback": fallback}
        return result
    except CatalogError as exc:
        logger.error("Discover failed: %s", exc)
        return JSONResponse({"shows": [], "total_pages": 0}, status_code=500)


@app.get("/api/popular", response_model=List[ShowSummaryResponse])
def popular_shows(catalog: TMDBClient = Depends(get_catalog)):
    return catalog.get_popular_shows()


@app.get("/api/top-rated", response_model=List[ShowSummaryResponse])
def top_rated_shows(catalog: TMDBClient = Depends(get_catalog)):
    try:
        return catalog.get_top_rated_shows()
    except CatalogError as exc:
        logger.error("Top rated failed: %s", exc)
        return []


@app.get("/api/shows/{show_id}", response_model=ShowDetailResponse)
def show_detail(show_id: int, catalog: TMDBClient = Depends(get_catalog)):
    try:
        return catalog.get_show(show_id)
    except CatalogError:
        raise HTTPException(status_code=404, detail="Show not found")


@app.get("/api/shows/{show_id}/episodes", response_model=List[EpisodeResponse])
def show_episodes(show_id: int, catalog: TMDBClient = Depends(get_catalog)):
    try:
        return catalog.get_episodes(show_id)
    except CatalogError:
        raise HTTPException(status_code=404, detail="Show not found")


@app.get("/api/shows/{show_id}/providers", response_model=WatchProvidersResponse)
def show_providers(show_id: int, region: str = "IN", catalog: TMDBClient = Depends(get_catalog)):
    return catalog.get_watch_providers(show_id, region.upper())


@app.get("/api/my-shows", response_model=List[EnrichedShowResponse])
def my_shows(
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    catalog: TMDBClient = Depends(get_catalog),
    session_factory=Depends(get_session_factory),
):
    shows = list_tracked_shows(db, user_id)
    outbox = StatusOutbox()
    enriched = enrich_user_shows(db, user_id, shows, catalog, outbox)
    if outbox.commands:
        background_tasks.add_task(outbox.dispatch, session_factory)
    return enriched


@app.post("/api/my-shows", response_model=TrackedShowResponse)
def add_my_show(
    payload: TrackedShowCreate,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return upsert_tracked_show(db, user_id, payload)


@app.patch("/api/my-shows/{show_id}", response_model=TrackedShowResponse)
def update_my_show(
    show_id: int,
    payload: TrackedShowUpdate,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    show = update_tracked_show_status(db, user_id, show_id, payload.status)
    if not show:
        raise HTTPException(status_code=404, detail="Show not tracked")
    return show


@app.delete("/api/my-shows/{show_id}")
def delete_my_show(
    show_id: int,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not remove_tracked_show(db, user_id, show_id):
        raise HTTPException(status_code=404, detail="Show not tracked")
    return {"deleted": show_id}


@app.get("/api/shows/{show_id}/progress", response_model=WatchedEpisodesResponse)
def watched_episodes(
    show_id: int,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    catalog: TMDBClient = Depends(get_catalog),
    registry: BackfillRegistry = Depends(get_backfill_registry),
):
    backfilled = 0
    tracked = get_tracked_show(db, user_id, show_id)
    if tracked:
        backfilled = backfill_completed_show(
            db, registry, tracked, lambda external_id: catalog.get_episodes(external_id, strict=True)
        )
    episodes = fetch_watched_episodes(db, user_id, show_id)
    return {"external_show_id": show_id, "episodes": sorted(episodes), "backfilled": backfilled}


def progress_error(exc: ProgressUpdateError) -> HTTPException:
    logger.error("%s", exc)
    return HTTPException(status_code=500, detail=str(exc))


@app.put("/api/shows/{show_id}/progress/{season}/{episode}")
def mark_episode(
    show_id: int,
    season: int,
    episode: int,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        mark_episode_watched(db, user_id, show_id, season, episode)
    except ProgressUpdateError as exc:
        raise progress_error(exc)
    return {"marked": 1}


@app.delete("/api/shows/{show_id}/progress/{season}/{episode}")
def unmark_episode(
    show_id: int,
    season: int,
    episode: int,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        unmark_episode_watched(db, user_id, show_id, season, episode)
    except ProgressUpdateError as exc:
        raise progress_error(exc)
    return {"unmarked": 1}


@app.post("/api/shows/{show_id}/progress/season")
def mark_season(
    show_id: int,
    payload: EpisodeBatch,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    pairs = [(item.season, item.episode) for item in payload.episodes]
    try:
        count = mark_season_watched(db, user_id, show_id, pairs)
    except ProgressUpdateError as exc:
        raise progress_error(exc)
    return {"marked": count}


@app.delete("/api/shows/{show_id}/progress/season")
def unmark_season(
    show_id: int,
    payload: EpisodeBatch,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    pairs = [(item.season, item.episode) for item in payload.episodes]
    try:
        count = unmark_season_watched(db, user_id, show_id, pairs)
    except ProgressUpdateError as exc:
        raise progress_error(exc)
    return {"unmarked": count}


@app.post("/api/shows/{show_id}/progress/all")
def mark_all(
    show_id: int,
    payload: EpisodeBatch,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    pairs = [(item.season, item.episode) for item in payload.episodes]
    try:
        count = mark_all_watched(db, user_id, show_id, pairs)
    except ProgressUpdateError as exc:
        raise progress_error(exc)
    return {"marked": count}
