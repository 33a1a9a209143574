from typing import List, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from showtrackr.db import upsert_insert
from showtrackr.models import UserShow, new_id, utc_now
from showtrackr.schemas import TrackedShowCreate


def is_valid_text(value: str | None, min_length: int = 1) -> bool:
    if not value:
        return False
    return len(value.strip()) >= min_length


def list_tracked_shows(session: Session, user_id: str) -> List[UserShow]:
    return (
        session.execute(
            select(UserShow)
            .where(UserShow.user_id == user_id)
            .order_by(UserShow.created_at.desc())
        )
        .scalars()
        .all()
    )


def get_tracked_show(session: Session, user_id: str, show_id: int) -> UserShow | None:
    return (
        session.execute(
            select(UserShow)
            .where(UserShow.user_id == user_id, UserShow.external_show_id == show_id)
            .limit(1)
        )
        .scalars()
        .first()
    )


def upsert_tracked_show(session: Session, user_id: str, payload: TrackedShowCreate) -> UserShow:
    table = UserShow.__table__
    keep_title = not is_valid_text(payload.title)
    stmt = upsert_insert(session, table).values(
        id=new_id(),
        user_id=user_id,
        external_show_id=payload.external_show_id,
        title=payload.title.strip(),
        poster_url=payload.poster_url or None,
        backdrop_url=payload.backdrop_url or None,
        status=payload.status,
        created_at=utc_now(),
    )
    # An existing row keeps its title and artwork unless new values were sent.
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.external_show_id],
        set_={
            "status": stmt.excluded.status,
            "title": table.c.title if keep_title else stmt.excluded.title,
            "poster_url": func.coalesce(stmt.excluded.poster_url, table.c.poster_url),
            "backdrop_url": func.coalesce(stmt.excluded.backdrop_url, table.c.backdrop_url),
        },
    )
    session.execute(stmt)
    session.commit()
    return get_tracked_show(session, user_id, payload.external_show_id)


def update_tracked_show_status(
    session: Session, user_id: str, show_id: int, status: str
) -> UserShow | None:
    show = get_tracked_show(session, user_id, show_id)
    if not show:
        return None
    show.status = status
    session.commit()
    session.refresh(show)
    return show


def remove_tracked_show(session: Session, user_id: str, show_id: int) -> int:
    result = session.execute(
        delete(UserShow).where(
            UserShow.user_id == user_id, UserShow.external_show_id == show_id
        )
    )
    session.commit()
    return result.rowcount


def apply_status_update(session: Session, row_ids: Sequence[str], status: str) -> int:
    if not row_ids:
        return 0
    result = session.execute(
        update(UserShow).where(UserShow.id.in_(list(row_ids))).values(status=status)
    )
    session.commit()
    return result.rowcount
