from __future__ import annotations

from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
import logging
import threading
import time
from typing import Dict, Iterable, List

import requests

from showtrackr.config import (
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_CACHE_MAX_ENTRIES,
    TMDB_CACHE_SECONDS,
    TMDB_IMAGE_URL,
    TMDB_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

USER_AGENT = "ShowTrackr/1.0 (+https://example.com)"

RATING_POOL_PAGES = 5
RATING_PAGE_SIZE = 20
RATING_MIN_VOTES = 200

LANGUAGES = {
    "en": "English", "fr": "French", "es": "Spanish", "de": "German",
    "ja": "Japanese", "ko": "Korean", "pt": "Portuguese", "it": "Italian",
    "zh": "Chinese", "ar": "Arabic", "hi": "Hindi", "ru": "Russian",
    "nl": "Dutch", "sv": "Swedish", "da": "Danish", "tr": "Turkish",
    "pl": "Polish", "no": "Norwegian",
}

SHOW_STATUSES = {
    "Returning Series": "Running",
    "Ended": "Ended",
    "Canceled": "Ended",
    "In Production": "In Development",
    "Planned": "In Development",
    "Pilot": "In Development",
}

# Genre name -> TMDB genre id, used by the discover filters.
GENRE_IDS = {
    "Drama": 18,
    "Comedy": 35,
    "Crime": 80,
    "Sci-Fi & Fantasy": 10765,
    "Action & Adventure": 10759,
    "Mystery": 9648,
    "Animation": 16,
    "Documentary": 99,
    "Reality": 10764,
    "Kids": 10762,
    "News": 10763,
    "Talk": 10767,
    "Family": 10751,
    "War & Politics": 10768,
    "Western": 37,
    "Soap": 10766,
}


class CatalogError(Exception):
    """Raised when the show catalog cannot answer a request."""


@dataclass(frozen=True)
class EpisodeAirInfo:
    season_number: int
    episode_number: int
    air_date: date | None


@dataclass(frozen=True)
class SeasonMeta:
    external_show_id: int
    next_episode: EpisodeAirInfo | None
    last_episode: EpisodeAirInfo | None
    number_of_seasons: int
    latest_season_premiere: date | None


@dataclass
class Episode:
    id: int
    name: str
    season: int
    number: int
    air_date: date | None
    runtime: int | None = None
    summary: str | None = None


@dataclass
class ShowSummary:
    id: int
    name: str
    language: str | None
    genres: List[str]
    premiered: date | None
    rating: float | None
    popularity: float
    poster_url: str | None
    poster_original_url: str | None
    summary: str | None


@dataclass
class ShowDetail(ShowSummary):
    status: str = "Unknown"
    runtime: int | None = None
    ended: date | None = None
    network: str | None = None
    backdrop_url: str | None = None
    number_of_seasons: int = 0
    next_episode: Episode | None = None


@dataclass
class SearchResult:
    score: float
    show: ShowSummary


@dataclass
class DiscoverPage:
    shows: List[ShowSummary]
    total_pages: int


@dataclass
class WatchProvider:
    id: int
    name: str
    logo_url: str | None


@dataclass
class WatchProviders:
    flatrate: List[WatchProvider] = field(default_factory=list)
    buy: List[WatchProvider] = field(default_factory=list)
    rent: List[WatchProvider] = field(default_factory=list)
    link: str | None = None


def parse_air_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def image_url(path: str | None, size: str = "w500") -> str | None:
    if not path:
        return None
    return f"{TMDB_IMAGE_URL}/{size}{path}"


def map_language(code: str | None) -> str | None:
    if not code:
        return None
    return LANGUAGES.get(code, code.upper())


def map_status(raw: str | None) -> str:
    if not raw:
        return "Unknown"
    return SHOW_STATUSES.get(raw, raw)


def auth_header(api_key: str | None) -> str:
    if not api_key:
        raise CatalogError("TMDB_API_KEY is not set")
    return api_key if api_key.startswith("Bearer ") else f"Bearer {api_key}"


def episode_air_info(raw: dict | None) -> EpisodeAirInfo | None:
    if not raw:
        return None
    return EpisodeAirInfo(
        season_number=raw.get("season_number", 0),
        episode_number=raw.get("episode_number", 0),
        air_date=parse_air_date(raw.get("air_date")),
    )


def latest_season_premiere(seasons: Iterable[dict]) -> date | None:
    regular = [
        season
        for season in seasons
        if season.get("season_number", 0) > 0 and parse_air_date(season.get("air_date"))
    ]
    if not regular:
        return None
    latest = max(regular, key=lambda season: season["season_number"])
    return parse_air_date(latest["air_date"])


def map_season_meta(raw: dict) -> SeasonMeta:
    return SeasonMeta(
        external_show_id=raw["id"],
        next_episode=episode_air_info(raw.get("next_episode_to_air")),
        last_episode=episode_air_info(raw.get("last_episode_to_air")),
        number_of_seasons=raw.get("number_of_seasons") or 0,
        latest_season_premiere=latest_season_premiere(raw.get("seasons") or []),
    )


def map_episode(raw: dict) -> Episode:
    return Episode(
        id=raw.get("id", 0),
        name=raw.get("name") or "",
        season=raw.get("season_number", 0),
        number=raw.get("episode_number", 0),
        air_date=parse_air_date(raw.get("air_date")),
        runtime=raw.get("runtime"),
        summary=raw.get("overview"),
    )


class GenreLookup:
    """Genre id -> name table, populated explicitly by ``refresh``."""

    def __init__(self, names: Dict[int, str] | None = None):
        self._names = dict(names or {})
        self._lock = threading.Lock()
        self.refreshed_at: float | None = None

    def __len__(self) -> int:
        return len(self._names)

    def resolve(self, ids: Iterable[int]) -> List[str]:
        with self._lock:
            names = self._names
        return [names[genre_id] for genre_id in ids if genre_id in names]

    def refresh(self, client: "TMDBClient") -> int:
        try:
            names = client.fetch_genres()
        except CatalogError as exc:
            logger.warning("Genre refresh failed, keeping %s cached genres: %s", len(self), exc)
            return len(self)
        with self._lock:
            self._names = names
        self.refreshed_at = time.time()
        logger.info("Genre lookup refreshed with %s genres.", len(names))
        return len(names)


class TMDBClient:
    def __init__(
        self,
        api_key: str | None = TMDB_API_KEY,
        base_url: str = TMDB_BASE_URL,
        genres: GenreLookup | None = None,
        timeout: float = TMDB_TIMEOUT_SECONDS,
        cache_seconds: float = TMDB_CACHE_SECONDS,
        cache_max_entries: int = TMDB_CACHE_MAX_ENTRIES,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.genres = genres if genres is not None else GenreLookup()
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.cache_max_entries = cache_max_entries
        self._cache: OrderedDict[tuple, tuple[float, dict]] = OrderedDict()
        self._cache_lock = threading.Lock()

    def _cache_get(self, key: tuple) -> dict | None:
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit is None:
                return None
            if hit[0] <= time.monotonic():
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return hit[1]

    def _cache_put(self, key: tuple, data: dict) -> None:
        now = time.monotonic()
        with self._cache_lock:
            for stale in [k for k, (expires, _) in self._cache.items() if expires <= now]:
                del self._cache[stale]
            self._cache[key] = (now + self.cache_seconds, data)
            self._cache.move_to_end(key)
            # Least recently used entries go first.
            while len(self._cache) > self.cache_max_entries:
                self._cache.popitem(last=False)

    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    def _get(self, endpoint: str, params: dict | None = None, cache: bool = True) -> dict:
        key = (endpoint, tuple(sorted((params or {}).items())))
        use_cache = cache and self.cache_seconds > 0 and self.cache_max_entries > 0
        if use_cache:
            hit = self._cache_get(key)
            if hit is not None:
                return hit
        headers = {"Authorization": auth_header(self.api_key), "User-Agent": USER_AGENT}
        try:
            response = requests.get(
                f"{self.base_url}{endpoint}",
                headers=headers,
                params=params,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise CatalogError(f"TMDB API error ({endpoint}): {exc}") from exc
        except ValueError as exc:
            raise CatalogError(f"TMDB API returned invalid JSON ({endpoint})") from exc
        if use_cache:
            self._cache_put(key, data)
        return data

    def fetch_genres(self) -> Dict[int, str]:
        data = self._get("/genre/tv/list")
        return {genre["id"]: genre["name"] for genre in data.get("genres", [])}

    def _summary(self, raw: dict) -> ShowSummary:
        return ShowSummary(
            id=raw["id"],
            name=raw.get("name") or "",
            language=map_language(raw.get("original_language")),
            genres=self.genres.resolve(raw.get("genre_ids") or []),
            premiered=parse_air_date(raw.get("first_air_date")),
            rating=raw.get("vote_average"),
            popularity=raw.get("popularity") or 0,
            poster_url=image_url(raw.get("poster_path"), "w500"),
            poster_original_url=image_url(raw.get("poster_path"), "original"),
            summary=raw.get("overview"),
        )

    def _detail(self, raw: dict) -> ShowDetail:
        networks = raw.get("networks") or []
        run_times = raw.get("episode_run_time") or []
        next_episode = raw.get("next_episode_to_air")
        return ShowDetail(
            id=raw["id"],
            name=raw.get("name") or "",
            language=map_language(raw.get("original_language")),
            genres=[genre["name"] for genre in raw.get("genres") or []],
            premiered=parse_air_date(raw.get("first_air_date")),
            rating=raw.get("vote_average"),
            popularity=raw.get("popularity") or 0,
            poster_url=image_url(raw.get("poster_path"), "w500"),
            poster_original_url=image_url(raw.get("poster_path"), "original"),
            summary=raw.get("overview"),
            status=map_status(raw.get("status")),
            runtime=run_times[0] if run_times else None,
            ended=parse_air_date(raw.get("last_air_date")),
            network=networks[0]["name"] if networks else None,
            backdrop_url=image_url(raw.get("backdrop_path"), "original"),
            number_of_seasons=raw.get("number_of_seasons") or 0,
            next_episode=map_episode(next_episode) if next_episode else None,
        )

    def get_season_meta(self, show_id: int) -> SeasonMeta | None:
        try:
            return map_season_meta(self._get(f"/tv/{show_id}"))
        except (CatalogError, KeyError, TypeError) as exc:
            logger.debug("Season meta unavailable for show %s: %s", show_id, exc)
            return None

    def search_shows(self, query: str) -> List[SearchResult]:
        data = self._get("/search/tv", {"query": query, "page": 1}, cache=False)
        return [
            SearchResult(score=raw.get("popularity") or 0, show=self._summary(raw))
            for raw in data.get("results", [])
        ]

    def get_show(self, show_id: int) -> ShowDetail:
        return self._detail(self._get(f"/tv/{show_id}"))

    def get_episodes(self, show_id: int, strict: bool = False) -> List[Episode]:
        """Episodes of every regular season.

        A season that fails to load is skipped, unless ``strict`` is set, in
        which case the whole call raises ``CatalogError`` so callers that
        persist the result never act on a partial list.
        """
        show = self._get(f"/tv/{show_id}")
        season_count = show.get("number_of_seasons") or 0
        if season_count == 0:
            return []

        def fetch_season(number: int) -> dict | None:
            try:
                return self._get(f"/tv/{show_id}/season/{number}")
            except CatalogError as exc:
                if strict:
                    raise
                logger.warning("Skipping season %s of show %s: %s", number, show_id, exc)
                return None

        with ThreadPoolExecutor(max_workers=min(season_count, 8)) as executor:
            seasons = list(executor.map(fetch_season, range(1, season_count + 1)))

        episodes: List[Episode] = []
        for season in seasons:
            if not season or season.get("season_number", 0) <= 0:
                continue
            for raw in season.get("episodes") or []:
                if raw.get("episode_number", 0) > 0:
                    episodes.append(map_episode(raw))
        return episodes

    def _list_page(self, endpoint: str, params: dict | None = None) -> List[dict]:
        try:
            return self._get(endpoint, params).get("results", [])
        except CatalogError as exc:
            logger.warning("Catalog list %s failed: %s", endpoint, exc)
            return []

    def get_popular_shows(self) -> List[ShowSummary]:
        with ThreadPoolExecutor(max_workers=3) as executor:
            pages = list(
                executor.map(lambda page: self._list_page("/tv/popular", {"page": page}), [1, 2, 3])
            )
        results = [raw for page in pages for raw in page]
        results.sort(key=lambda raw: raw.get("popularity") or 0, reverse=True)
        return [self._summary(raw) for raw in results]

    def get_top_rated_shows(self) -> List[ShowSummary]:
        data = self._get("/tv/top_rated", {"page": 1})
        return [self._summary(raw) for raw in data.get("results", [])]

    def discover_shows(
        self,
        genre_id: int | None = None,
        page: int = 1,
        sort_by: str = "popularity.desc",
        status: str | None = None,
        rating_min: float | None = None,
        language: str | None = None,
        vote_count_min: int | None = None,
    ) -> DiscoverPage:
        params = discover_params(genre_id, status, rating_min, language, vote_count_min)
        params.update({"sort_by": sort_by, "page": page})
        data = self._get("/discover/tv", params, cache=False)
        return DiscoverPage(
            shows=[self._summary(raw) for raw in data.get("results", [])],
            total_pages=data.get("total_pages") or 0,
        )

    def discover_shows_by_rating(
        self,
        genre_id: int | None = None,
        page: int = 1,
        status: str | None = None,
        rating_min: float | None = None,
        language: str | None = None,
    ) -> DiscoverPage:
        """Rank a pool of well-known shows by rating.

        Sorting TMDB by ``vote_average`` surfaces obscure titles with a handful
        of votes, so this pulls several popularity-ordered pages with a vote
        floor, re-sorts them by rating and slices a virtual page.
        """
        base = discover_params(genre_id, status, rating_min, language, RATING_MIN_VOTES)
        base["sort_by"] = "popularity.desc"

        def fetch_page(number: int) -> List[dict]:
            try:
                data = self._get("/discover/tv", {**base, "page": number}, cache=False)
            except CatalogError as exc:
                logger.warning("Rating pool page %s failed: %s", number, exc)
                return []
            return data.get("results", [])

        with ThreadPoolExecutor(max_workers=RATING_POOL_PAGES) as executor:
            pages = list(executor.map(fetch_page, range(1, RATING_POOL_PAGES + 1)))

        seen = set()
        pool: List[ShowSummary] = []
        for results in pages:
            for raw in results:
                if raw["id"] in seen:
                    continue
                seen.add(raw["id"])
                pool.append(self._summary(raw))
        pool.sort(key=lambda show: show.rating or 0, reverse=True)

        total_pages = -(-len(pool) // RATING_PAGE_SIZE)
        start = (page - 1) * RATING_PAGE_SIZE
        return DiscoverPage(shows=pool[start:start + RATING_PAGE_SIZE], total_pages=total_pages)

    def get_watch_providers(self, show_id: int, region: str = "IN") -> WatchProviders:
        try:
            data = self._get(f"/tv/{show_id}/watch/providers")
        except CatalogError as exc:
            logger.warning("Watch providers unavailable for show %s: %s", show_id, exc)
            return WatchProviders()
        region_data = (data.get("results") or {}).get(region)
        if not region_data:
            return WatchProviders()

        def providers(kind: str) -> List[WatchProvider]:
            return [
                WatchProvider(
                    id=raw["provider_id"],
                    name=raw["provider_name"],
                    logo_url=image_url(raw.get("logo_path"), "w92"),
                )
                for raw in region_data.get(kind) or []
            ]

        return WatchProviders(
            flatrate=providers("flatrate"),
            buy=providers("buy"),
            rent=providers("rent"),
            link=region_data.get("link"),
        )


def discover_params(
    genre_id: int | None,
    status: str | None,
    rating_min: float | None,
    language: str | None,
    vote_count_min: int | None,
) -> dict:
    # TMDB with_status: 0=Returning Series, 3=Ended, 4=Cancelled
    params: dict = {}
    if genre_id:
        params["with_genres"] = genre_id
    if status == "running":
        params["with_status"] = "0"
    elif status == "ended":
        params["with_status"] = "3|4"
    if rating_min:
        params["vote_average.gte"] = rating_min
    if language:
        params["with_original_language"] = language
    if vote_count_min:
        params["vote_count.gte"] = vote_count_min
    return params
