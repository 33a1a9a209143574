import argparse
import logging
from typing import List, Sequence

from sqlalchemy.orm import Session

from showtrackr.catalog import CatalogError, GenreLookup, TMDBClient
from showtrackr.config import LOG_FORMAT, LOG_LEVEL
from showtrackr.db import SessionLocal, engine
from showtrackr.models import Base
from showtrackr.schemas import TrackedShowCreate
from showtrackr.services import get_tracked_show, remove_tracked_show, upsert_tracked_show

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)


def seed_user(session: Session, client: TMDBClient, user_id: str, show_ids: Sequence[int]) -> List[int]:
    added = []
    for show_id in show_ids:
        if get_tracked_show(session, user_id, show_id):
            logger.info("Show %s already tracked by %s, skipping.", show_id, user_id)
            continue
        try:
            show = client.get_show(show_id)
        except CatalogError as exc:
            logger.warning("Could not load show %s: %s", show_id, exc)
            continue
        upsert_tracked_show(
            session,
            user_id,
            TrackedShowCreate(
                external_show_id=show.id,
                title=show.name,
                poster_url=show.poster_url or show.poster_original_url,
                backdrop_url=show.backdrop_url or show.poster_url,
                status="plan_to_watch",
            ),
        )
        logger.info("Added %s (%s) for %s.", show.name, show.id, user_id)
        added.append(show_id)
    return added


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ShowTrackr maintenance commands.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create database tables.")

    seed = commands.add_parser("seed-user", help="Add catalog shows to a user's list.")
    seed.add_argument("user_id")
    seed.add_argument("show_ids", nargs="+", type=int, help="TMDB show ids")

    remove = commands.add_parser("remove-show", help="Delete a wrongly added show.")
    remove.add_argument("user_id")
    remove.add_argument("show_id", type=int)

    commands.add_parser("refresh-genres", help="Fetch the TMDB genre list once.")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.command == "init-db":
        Base.metadata.create_all(bind=engine)
        print("Database tables created.")
        return

    if args.command == "refresh-genres":
        genres = GenreLookup()
        count = genres.refresh(TMDBClient(genres=genres))
        print(f"Genre lookup holds {count} genres.")
        return

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if args.command == "seed-user":
            added = seed_user(db, TMDBClient(), args.user_id, args.show_ids)
            print(f"Seeded {len(added)} show(s) for {args.user_id}.")
        elif args.command == "remove-show":
            count = remove_tracked_show(db, args.user_id, args.show_id)
            print(f"Deleted {count} row(s) with external_show_id={args.show_id}.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
