
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
import logging
from typing import Callable, Dict, List, Protocol, Sequence, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from showtrackr.catalog import SeasonMeta
from showtrackr.config import ENRICH_MAX_WORKERS
from showtrackr.progress import max_watched_seasons
from showtrackr.services import apply_status_update

logger = logging.getLogger(__name__)

NEW_SEASON_WINDOW = relativedelta(months=3)

STATUS_PRIORITY = {
    "watching": 0,
    "plan_to_watch": 1,
    "on_hold": 2,
    "completed": 3,
    "dropped": 4,
}
UNKNOWN_PRIORITY = 5


class SeasonMetaSource(Protocol):
    def get_season_meta(self, show_id: int) -> SeasonMeta | None:
        ...


@dataclass
class EnrichedShow:
    id: str
    user_id: str
    external_show_id: int
    title: str
    poster_url: str | None
    backdrop_url: str | None
    status: str
    created_at: datetime | None
    new_season_tag: str | None = None
    next_episode_air_date: date | None = None
    has_upcoming_episodes_in_current_season: bool = False

    @classmethod
    def from_row(cls, show) -> "EnrichedShow":
        return cls(
            id=show.id,
            user_id=show.user_id,
            external_show_id=show.external_show_id,
            title=show.title,
            poster_url=show.poster_url,
            backdrop_url=show.backdrop_url,
            status=show.status,
            created_at=show.created_at,
        )


@dataclass(frozen=True)
class StatusUpdate:
    status: str
    show_ids: Tuple[str, ...]


@dataclass
class StatusOutbox:
    """Status writes produced by enrichment, dispatched by the caller.

    Dispatch is fire-and-forget: a failed write is logged and dropped, and
    the status already shown to the user stays as computed.
    """

    commands: List[StatusUpdate] = field(default_factory=list)

    def append(self, command: StatusUpdate) -> None:
        self.commands.append(command)

    def dispatch(self, session_factory: Callable[[], Session]) -> int:
        commands, self.commands = self.commands, []
        applied = 0
        for command in commands:
            session = session_factory()
            try:
                applied += apply_status_update(session, command.show_ids, command.status)
            except SQLAlchemyError:
                session.rollback()
                logger.exception(
                    "Auto-move to %s failed for %s show(s).", command.status, len(command.show_ids)
                )
            finally:
                session.close()
        return applied


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def air_moment(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def compute_tags(
    meta: SeasonMeta, max_watched_season: int, now: datetime
) -> Tuple[str | None, date | None, bool]:
    """Return ``(new_season_tag, next_episode_air_date, has_upcoming_in_season)``."""
    new_season_tag = None
    next_air_date = None
    has_upcoming = False
    next_episode, last_episode = meta.next_episode, meta.last_episode

    if next_episode is not None and next_episode.air_date is not None:
        next_air_date = next_episode.air_date
        airs_at = air_moment(next_episode.air_date)
        if last_episode is not None and airs_at > now:
            if next_episode.season_number > last_episode.season_number:
                if airs_at <= now + NEW_SEASON_WINDOW:
                    new_season_tag = "soon"
            elif next_episode.season_number == last_episode.season_number:
                has_upcoming = True

    # "soon" wins; "out" is only considered when it did not fire.
    if (
        new_season_tag is None
        and meta.latest_season_premiere is not None
        and meta.number_of_seasons > 1
        and max_watched_season < meta.number_of_seasons
    ):
        premiere = air_moment(meta.latest_season_premiere)
        if now - NEW_SEASON_WINDOW <= premiere <= now:
            new_season_tag = "out"

    return new_season_tag, next_air_date, has_upcoming


def signal_date(meta: SeasonMeta | None) -> date | None:
    if meta is None:
        return None
    if meta.last_episode is not None and meta.last_episode.air_date is not None:
        return meta.last_episode.air_date
    return meta.latest_season_premiere


def sort_key(show: EnrichedShow, meta: SeasonMeta | None) -> tuple:
    tier = STATUS_PRIORITY.get(show.status, UNKNOWN_PRIORITY)
    created = -as_utc(show.created_at).timestamp() if show.created_at else 0.0
    signal = signal_date(meta)
    if signal is None:
        return (tier, 1, 0, created)
    return (tier, 0, -signal.toordinal(), created)


def order_shows(
    shows: Sequence[EnrichedShow], meta_by_show: Dict[int, SeasonMeta]
) -> List[EnrichedShow]:
    return sorted(shows, key=lambda show: sort_key(show, meta_by_show.get(show.external_show_id)))


def _settled(future, show_id: int) -> SeasonMeta | None:
    try:
        return future.result()
    except Exception as exc:
        logger.warning("Season meta fetch failed for show %s: %s", show_id, exc)
        return None


def _load_watched_seasons(session: Session, user_id: str, show_ids: List[int]) -> Dict[int, int]:
    try:
        return max_watched_seasons(session, user_id, show_ids)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("Watch progress unavailable, enriching without it: %s", exc)
        return {}


def auto_move_completed(shows: Sequence[EnrichedShow], outbox: StatusOutbox) -> List[str]:
    moved = []
    for show in shows:
        if show.status == "completed" and show.has_upcoming_episodes_in_current_season:
            show.status = "watching"
            moved.append(show.id)
    if moved:
        outbox.append(StatusUpdate(status="watching", show_ids=tuple(moved)))
    return moved


def enrich_user_shows(
    session: Session,
    user_id: str,
    shows: Sequence,
    catalog: SeasonMetaSource,
    outbox: StatusOutbox,
    now: datetime | None = None,
    max_workers: int = ENRICH_MAX_WORKERS,
) -> List[EnrichedShow]:
    if not shows:
        return []
    now = as_utc(now) if now else datetime.now(timezone.utc)
    show_ids = list(dict.fromkeys(show.external_show_id for show in shows))

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(show_ids)))) as executor:
        futures = {show_id: executor.submit(catalog.get_season_meta, show_id) for show_id in show_ids}
        watched_seasons = _load_watched_seasons(session, user_id, show_ids)
        meta_by_show = {}
        for show_id, future in futures.items():
            meta = _settled(future, show_id)
            if meta is not None:
                meta_by_show[show_id] = meta

    enriched = []
    for show in shows:
        item = EnrichedShow.from_row(show)
        meta = meta_by_show.get(item.external_show_id)
        if meta is not None:
            (
                item.new_season_tag,
                item.next_episode_air_date,
                item.has_upcoming_episodes_in_current_season,
            ) = compute_tags(meta, watched_seasons.get(item.external_show_id, 0), now)
        enriched.append(item)

    moved = auto_move_completed(enriched, outbox)
    if moved:
        logger.info("Auto-moved %s completed show(s) back to watching.", len(moved))

    return order_shows(enriched, meta_by_show)
