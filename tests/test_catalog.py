from datetime import date

import pytest
import requests

from showtrackr import catalog as catalog_module
from showtrackr.catalog import CatalogError, GenreLookup, TMDBClient, parse_air_date
from showtrackr.progress import BackfillRegistry, backfill_completed_show, fetch_watched_episodes

BASE = "https://tmdb.test/3"

SHOW = {
    "id": 1399,
    "name": "Dragons",
    "original_language": "en",
    "status": "Returning Series",
    "number_of_seasons": 3,
    "genres": [{"id": 18, "name": "Drama"}],
    "networks": [{"id": 49, "name": "HBO"}],
    "episode_run_time": [55],
    "poster_path": "/poster.jpg",
    "backdrop_path": "/backdrop.jpg",
    "first_air_date": "2019-04-01",
    "last_air_date": "2026-02-01",
    "next_episode_to_air": {"id": 9, "name": "Next", "season_number": 3, "episode_number": 4,
                            "air_date": "2026-04-01"},
    "last_episode_to_air": {"id": 8, "name": "Last", "season_number": 3, "episode_number": 3,
                            "air_date": "2026-03-01"},
    "seasons": [
        {"season_number": 0, "air_date": "2026-05-01"},
        {"season_number": 1, "air_date": "2019-04-01"},
        {"season_number": 2, "air_date": "2022-06-01"},
        {"season_number": 3, "air_date": "2026-02-01"},
        {"season_number": 4, "air_date": None},
    ],
}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


@pytest.fixture
def tmdb(monkeypatch):
    routes = {}
    calls = []

    def fake_get(url, headers=None, params=None, timeout=None):
        calls.append({"url": url, "headers": headers, "params": params})
        endpoint = url[len(BASE):]
        if endpoint not in routes:
            return FakeResponse({"status_message": "not found"}, 404)
        value = routes[endpoint]
        if callable(value):
            value = value(params or {})
        if isinstance(value, Exception):
            raise value
        return FakeResponse(value)

    monkeypatch.setattr(catalog_module.requests, "get", fake_get)
    return routes, calls


def client(**kwargs):
    kwargs.setdefault("api_key", "secret")
    return TMDBClient(base_url=BASE, **kwargs)


def test_season_meta_from_show(tmdb):
    routes, calls = tmdb
    routes["/tv/1399"] = SHOW

    meta = client().get_season_meta(1399)

    assert meta.next_episode.season_number == 3
    assert meta.next_episode.air_date == date(2026, 4, 1)
    assert meta.last_episode.episode_number == 3
    assert meta.number_of_seasons == 3
    assert meta.latest_season_premiere == date(2026, 2, 1)
    assert calls[0]["headers"]["Authorization"] == "Bearer secret"


def test_season_meta_handles_missing_episodes(tmdb):
    routes, _ = tmdb
    routes["/tv/5"] = {"id": 5, "number_of_seasons": 1, "seasons": [],
                       "next_episode_to_air": None, "last_episode_to_air": None}

    meta = client().get_season_meta(5)

    assert meta.next_episode is None
    assert meta.last_episode is None
    assert meta.latest_season_premiere is None


def test_season_meta_returns_none_on_failure(tmdb):
    routes, _ = tmdb
    routes["/tv/2"] = requests.ConnectionError("reset")

    assert client().get_season_meta(2) is None
    assert client().get_season_meta(404) is None


def test_missing_api_key(tmdb):
    routes, calls = tmdb
    routes["/search/tv"] = {"results": []}

    assert client(api_key=None).get_season_meta(1399) is None
    with pytest.raises(CatalogError):
        client(api_key="").search_shows("x")
    assert calls == []


def test_bearer_prefix_is_not_doubled(tmdb):
    routes, calls = tmdb
    routes["/tv/1399"] = SHOW

    client(api_key="Bearer abc").get_show(1399)

    assert calls[0]["headers"]["Authorization"] == "Bearer abc"


def test_show_details_are_cached_and_search_is_not(tmdb):
    routes, calls = tmdb
    routes["/tv/1399"] = SHOW
    routes["/search/tv"] = {"results": []}
    tmdb_client = client()

    tmdb_client.get_show(1399)
    tmdb_client.get_season_meta(1399)
    tmdb_client.search_shows("dragons")
    tmdb_client.search_shows("dragons")

    assert [call["url"] for call in calls] == [f"{BASE}/tv/1399"] + [f"{BASE}/search/tv"] * 2


def test_show_detail_mapping(tmdb):
    routes, _ = tmdb
    routes["/tv/1399"] = SHOW

    show = client().get_show(1399)

    assert show.status == "Running"
    assert show.language == "English"
    assert show.network == "HBO"
    assert show.runtime == 55
    assert show.poster_url == "https://image.tmdb.org/t/p/w500/poster.jpg"
    assert show.backdrop_url == "https://image.tmdb.org/t/p/original/backdrop.jpg"
    assert show.next_episode.number == 4


def test_search_resolves_genres(tmdb):
    routes, _ = tmdb
    routes["/genre/tv/list"] = {"genres": [{"id": 18, "name": "Drama"}, {"id": 35, "name": "Comedy"}]}
    routes["/search/tv"] = {"results": [
        {"id": 1, "name": "A", "genre_ids": [35, 99], "popularity": 4.5, "original_language": "xx"},
    ]}
    genres = GenreLookup()
    tmdb_client = client(genres=genres)
    genres.refresh(tmdb_client)

    [result] = tmdb_client.search_shows("a")

    assert result.score == 4.5
    assert result.show.genres == ["Comedy"]
    assert result.show.language == "XX"


def test_genre_refresh_failure_keeps_previous_names(tmdb):
    genres = GenreLookup({18: "Drama"})

    assert genres.refresh(client(genres=genres)) == 1
    assert genres.resolve([18]) == ["Drama"]
    assert genres.refreshed_at is None


def test_episodes_skip_specials_and_failed_seasons(tmdb):
    routes, _ = tmdb
    routes["/tv/7"] = {"id": 7, "number_of_seasons": 3}
    routes["/tv/7/season/1"] = {"season_number": 1, "episodes": [
        {"id": 1, "name": "Pilot", "season_number": 1, "episode_number": 1, "air_date": "2020-01-01"},
        {"id": 2, "name": "Extra", "season_number": 1, "episode_number": 0, "air_date": "2020-01-02"},
    ]}
    routes["/tv/7/season/3"] = {"season_number": 3, "episodes": [
        {"id": 3, "name": "Return", "season_number": 3, "episode_number": 1, "air_date": None},
    ]}

    episodes = client().get_episodes(7)

    assert [(item.season, item.number) for item in episodes] == [(1, 1), (3, 1)]
    assert episodes[0].air_date == date(2020, 1, 1)
    assert episodes[1].air_date is None


def test_strict_episodes_raise_when_a_season_fails(tmdb):
    routes, _ = tmdb
    routes["/tv/7"] = {"id": 7, "number_of_seasons": 2}
    routes["/tv/7/season/1"] = {"season_number": 1, "episodes": [
        {"id": 1, "name": "Pilot", "season_number": 1, "episode_number": 1, "air_date": "2020-01-01"},
    ]}

    with pytest.raises(CatalogError):
        client().get_episodes(7, strict=True)


def test_cache_drops_expired_entries_on_write(tmdb, monkeypatch):
    routes, _ = tmdb
    clock = {"now": 1000.0}
    monkeypatch.setattr(catalog_module.time, "monotonic", lambda: clock["now"])
    for show_id in (1, 2, 3):
        routes[f"/tv/{show_id}"] = {**SHOW, "id": show_id}
    tmdb_client = client(cache_seconds=60)

    tmdb_client.get_show(1)
    tmdb_client.get_show(2)
    clock["now"] += 61
    tmdb_client.get_show(3)

    assert tmdb_client.cache_size() == 1


def test_cache_is_capped_least_recently_used_first(tmdb):
    routes, calls = tmdb
    for show_id in (1, 2, 3):
        routes[f"/tv/{show_id}"] = {**SHOW, "id": show_id}
    tmdb_client = client(cache_max_entries=2)

    tmdb_client.get_show(1)
    tmdb_client.get_show(2)
    tmdb_client.get_show(1)
    tmdb_client.get_show(3)
    assert tmdb_client.cache_size() == 2

    tmdb_client.get_show(1)
    assert len(calls) == 3
    tmdb_client.get_show(2)
    assert len(calls) == 4


def test_discover_params(tmdb):
    routes, calls = tmdb
    routes["/discover/tv"] = {"results": [{"id": 3, "name": "C"}], "total_pages": 4}

    page = client().discover_shows(genre_id=18, page=2, status="ended", rating_min=7,
                                   language="en", vote_count_min=50)

    assert page.total_pages == 4
    assert calls[0]["params"] == {
        "with_genres": 18,
        "with_status": "3|4",
        "vote_average.gte": 7,
        "with_original_language": "en",
        "vote_count.gte": 50,
        "sort_by": "popularity.desc",
        "page": 2,
    }


def test_discover_by_rating_dedupes_and_reranks(tmdb):
    routes, calls = tmdb

    def pool(params):
        page = params["page"]
        if page == 3:
            return requests.Timeout("slow")
        return {"results": [
            {"id": 1, "name": "Shared", "vote_average": 7.0},
            {"id": 10 + page, "name": f"P{page}", "vote_average": 8.0 + page / 10},
        ]}

    routes["/discover/tv"] = pool

    result = client().discover_shows_by_rating(status="running")

    assert [show.id for show in result.shows] == [15, 14, 12, 11, 1]
    assert result.total_pages == 1
    assert all(call["params"]["vote_count.gte"] == 200 for call in calls)
    assert all(call["params"]["with_status"] == "0" for call in calls)


def test_popular_merges_pages(tmdb):
    routes, _ = tmdb
    routes["/tv/popular"] = lambda params: {"results": [
        {"id": params["page"], "name": str(params["page"]), "popularity": params["page"] * 10},
    ]}

    shows = client().get_popular_shows()

    assert [show.id for show in shows] == [3, 2, 1]


def test_watch_providers(tmdb):
    routes, _ = tmdb
    routes["/tv/1/watch/providers"] = {"results": {"IN": {
        "link": "https://tmdb.test/watch",
        "flatrate": [{"provider_id": 8, "provider_name": "Netflix", "logo_path": "/n.png"}],
    }}}
    tmdb_client = client()

    providers = tmdb_client.get_watch_providers(1)
    missing = tmdb_client.get_watch_providers(1, region="US")
    failed = tmdb_client.get_watch_providers(2)

    assert providers.flatrate[0].name == "Netflix"
    assert providers.flatrate[0].logo_url == "https://image.tmdb.org/t/p/w92/n.png"
    assert providers.link == "https://tmdb.test/watch"
    assert missing.flatrate == [] and missing.link is None
    assert failed.buy == []


def test_parse_air_date():
    assert parse_air_date("2026-01-31") == date(2026, 1, 31)
    assert parse_air_date("2026-01-31T00:00:00Z") == date(2026, 1, 31)
    assert parse_air_date("") is None
    assert parse_air_date("soon") is None


def test_backfill_with_strict_episodes_never_persists_a_partial_show(tmdb, db_session, add_show):
    routes, _ = tmdb
    show = add_show(7, status="completed")
    routes["/tv/7"] = {"id": 7, "number_of_seasons": 2}
    routes["/tv/7/season/1"] = {"season_number": 1, "episodes": [
        {"id": 1, "name": "Pilot", "season_number": 1, "episode_number": 1, "air_date": "2020-01-01"},
    ]}
    tmdb_client = client()
    registry = BackfillRegistry()

    def load(show_id):
        return tmdb_client.get_episodes(show_id, strict=True)

    assert backfill_completed_show(db_session, registry, show, load, today=date(2026, 1, 1)) == 0
    assert fetch_watched_episodes(db_session, "user-1", 7) == set()

    routes["/tv/7/season/2"] = {"season_number": 2, "episodes": [
        {"id": 2, "name": "Return", "season_number": 2, "episode_number": 1, "air_date": "2021-01-01"},
    ]}

    assert backfill_completed_show(db_session, registry, show, load, today=date(2026, 1, 1)) == 2
    assert fetch_watched_episodes(db_session, "user-1", 7) == {"S1E1", "S2E1"}
