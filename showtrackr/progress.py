from datetime import date, datetime, timezone
import logging
import threading
from typing import Callable, Dict, Iterable, List, Sequence, Set, Tuple

from sqlalchemy import delete, func, select, tuple_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from showtrackr.catalog import CatalogError, Episode
from showtrackr.db import upsert_insert
from showtrackr.models import UserShow, WatchProgress, new_id, utc_now

logger = logging.getLogger(__name__)

EpisodePair = Tuple[int, int]

UPSERT_CHUNK_SIZE = 150


class ProgressUpdateError(Exception):
    """A watch-progress write did not complete; nothing was persisted."""


def episode_key(season: int, episode: int) -> str:
    return f"S{season}E{episode}"


def fetch_watched_episodes(session: Session, user_id: str, show_id: int) -> Set[str]:
    rows = session.execute(
        select(WatchProgress.season, WatchProgress.episode).where(
            WatchProgress.user_id == user_id,
            WatchProgress.external_show_id == show_id,
        )
    ).all()
    return {episode_key(season, episode) for season, episode in rows}


def max_watched_seasons(
    session: Session, user_id: str, show_ids: Sequence[int]
) -> Dict[int, int]:
    if not show_ids:
        return {}
    rows = session.execute(
        select(WatchProgress.external_show_id, func.max(WatchProgress.season))
        .where(
            WatchProgress.user_id == user_id,
            WatchProgress.external_show_id.in_(list(show_ids)),
        )
        .group_by(WatchProgress.external_show_id)
    ).all()
    return {show_id: season for show_id, season in rows}


def _upsert_marks(
    session: Session, user_id: str, show_id: int, pairs: Sequence[EpisodePair], watched_at: datetime
) -> None:
    table = WatchProgress.__table__
    # One row per pair; an upsert may not touch the same row twice.
    unique_pairs = list(dict.fromkeys(pairs))
    for start in range(0, len(unique_pairs), UPSERT_CHUNK_SIZE):
        stmt = upsert_insert(session, table).values(
            [
                {
                    "id": new_id(),
                    "user_id": user_id,
                    "external_show_id": show_id,
                    "season": season,
                    "episode": episode,
                    "watched_at": watched_at,
                }
                for season, episode in unique_pairs[start:start + UPSERT_CHUNK_SIZE]
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.external_show_id, table.c.season, table.c.episode],
            set_={"watched_at": stmt.excluded.watched_at},
        )
        session.execute(stmt)


def mark_episode_watched(session: Session, user_id: str, show_id: int, season: int, episode: int) -> None:
    mark_season_watched(session, user_id, show_id, [(season, episode)])


def unmark_episode_watched(session: Session, user_id: str, show_id: int, season: int, episode: int) -> None:
    unmark_season_watched(session, user_id, show_id, [(season, episode)])


def mark_season_watched(
    session: Session, user_id: str, show_id: int, episodes: Iterable[EpisodePair]
) -> int:
    pairs = list(episodes)
    if not pairs:
        return 0
    try:
        _upsert_marks(session, user_id, show_id, pairs, utc_now())
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise ProgressUpdateError(
            f"Could not mark {len(pairs)} episode(s) of show {show_id} as watched"
        ) from exc
    return len(pairs)


def mark_all_watched(
    session: Session, user_id: str, show_id: int, episodes: Iterable[EpisodePair]
) -> int:
    """Mark every released episode, as used by "mark completed"."""
    return mark_season_watched(session, user_id, show_id, episodes)


def unmark_season_watched(
    session: Session, user_id: str, show_id: int, episodes: Iterable[EpisodePair]
) -> int:
    pairs = list(episodes)
    if not pairs:
        return 0
    try:
        result = session.execute(
            delete(WatchProgress).where(
                WatchProgress.user_id == user_id,
                WatchProgress.external_show_id == show_id,
                tuple_(WatchProgress.season, WatchProgress.episode).in_(pairs),
            )
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise ProgressUpdateError(
            f"Could not unmark {len(pairs)} episode(s) of show {show_id}"
        ) from exc
    return result.rowcount


class BackfillRegistry:
    """Remembers which (user, show) pairs were already backfilled this session."""

    def __init__(self):
        self._claimed: Set[Tuple[str, int]] = set()
        self._lock = threading.Lock()

    def claim(self, user_id: str, show_id: int) -> bool:
        with self._lock:
            if (user_id, show_id) in self._claimed:
                return False
            self._claimed.add((user_id, show_id))
            return True

    def release(self, user_id: str, show_id: int) -> None:
        with self._lock:
            self._claimed.discard((user_id, show_id))


def aired_episodes(episodes: Iterable[Episode], today: date) -> List[EpisodePair]:
    return [
        (item.season, item.number)
        for item in episodes
        if item.air_date is not None and item.air_date <= today
    ]


def backfill_completed_show(
    session: Session,
    registry: BackfillRegistry,
    show: UserShow,
    load_episodes: Callable[[int], List[Episode]],
    today: date | None = None,
) -> int:
    """Synthesize watch marks for a completed show that has none.

    Shows marked completed before per-episode tracking existed have no
    progress rows, which makes their episode lists look unwatched.
    """
    if show.status != "completed":
        return 0
    if not registry.claim(show.user_id, show.external_show_id):
        return 0
    if fetch_watched_episodes(session, show.user_id, show.external_show_id):
        return 0
    today = today or datetime.now(timezone.utc).date()
    try:
        pairs = aired_episodes(load_episodes(show.external_show_id), today)
        count = mark_all_watched(session, show.user_id, show.external_show_id, pairs)
    except (CatalogError, ProgressUpdateError) as exc:
        registry.release(show.user_id, show.external_show_id)
        logger.warning("Backfill failed for show %s: %s", show.external_show_id, exc)
        return 0
    logger.info("Backfilled %s watched episodes for show %s.", count, show.external_show_id)
    return count
