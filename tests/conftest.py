from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from showtrackr.catalog import (
    CatalogError,
    DiscoverPage,
    Episode,
    EpisodeAirInfo,
    SearchResult,
    SeasonMeta,
    ShowDetail,
    ShowSummary,
)
from showtrackr.models import Base, UserShow

NOW = datetime.now(timezone.utc).replace(microsecond=0)
TODAY = NOW.date()


def days(offset: int) -> date:
    return TODAY + timedelta(days=offset)


def summary(show_id: int, name: str = "Show") -> ShowSummary:
    return ShowSummary(
        id=show_id,
        name=name,
        language="English",
        genres=["Drama"],
        premiered=date(2020, 1, 1),
        rating=8.1,
        popularity=10.0,
        poster_url=f"https://image.tmdb.org/t/p/w500/{show_id}.jpg",
        poster_original_url=None,
        summary=None,
    )


class FakeCatalog:
    """In-memory stand-in for the TMDB client."""

    def __init__(self, metas=None, episodes=None):
        self.metas = metas or {}
        self.episodes = episodes or {}
        self.meta_calls = []
        self.episode_calls = []
        self.search_error = None
        self.discover_calls = []

    def get_season_meta(self, show_id):
        self.meta_calls.append(show_id)
        value = self.metas.get(show_id)
        if isinstance(value, Exception):
            raise value
        return value

    def get_episodes(self, show_id, strict=False):
        self.episode_calls.append((show_id, strict))
        value = self.episodes.get(show_id, [])
        if isinstance(value, Exception):
            raise value
        return value

    def get_show(self, show_id):
        if show_id not in self.metas and show_id not in self.episodes:
            raise CatalogError("not found")
        base = summary(show_id, f"Show {show_id}")
        return ShowDetail(**vars(base), status="Running", number_of_seasons=2)

    def search_shows(self, query):
        if self.search_error:
            raise self.search_error
        return [SearchResult(score=5.0, show=summary(1, query.title()))]

    def discover_shows(self, genre_id=None, page=1, sort_by="popularity.desc", status=None,
                       rating_min=None, language=None, vote_count_min=None):
        self.discover_calls.append({"status": status, "rating_min": rating_min, "language": language})
        if rating_min:
            return DiscoverPage(shows=[], total_pages=0)
        return DiscoverPage(shows=[summary(7, "Relaxed")], total_pages=3)

    def discover_shows_by_rating(self, genre_id=None, page=1, status=None, rating_min=None, language=None):
        return self.discover_shows(genre_id, page, "vote_average.desc", status, rating_min, language)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def add_show(db_session):
    created = {"count": 0}

    def _add(show_id, status="watching", user_id="user-1", created_at=None, title=None):
        created["count"] += 1
        show = UserShow(
            user_id=user_id,
            external_show_id=show_id,
            title=title or f"Show {show_id}",
            status=status,
            created_at=created_at or NOW - timedelta(days=created["count"]),
        )
        db_session.add(show)
        db_session.commit()
        return show

    return _add


@pytest.fixture
def meta():
    def _meta(show_id, last=None, next_=None, seasons=1, premiere=None):
        return SeasonMeta(
            external_show_id=show_id,
            next_episode=EpisodeAirInfo(*next_) if next_ else None,
            last_episode=EpisodeAirInfo(*last) if last else None,
            number_of_seasons=seasons,
            latest_season_premiere=premiere,
        )

    return _meta


@pytest.fixture
def episode():
    def _episode(season, number, air_date):
        return Episode(id=season * 100 + number, name=f"E{number}", season=season,
                       number=number, air_date=air_date)

    return _episode
