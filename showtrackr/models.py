from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserShow(Base):
    __tablename__ = "user_shows"
    __table_args__ = (UniqueConstraint("user_id", "external_show_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    external_show_id = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False)
    poster_url = Column(String(512), nullable=True)
    backdrop_url = Column(String(512), nullable=True)
    status = Column(String(32), nullable=False, default="plan_to_watch")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class WatchProgress(Base):
    __tablename__ = "watch_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "external_show_id", "season", "episode"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    external_show_id = Column(Integer, nullable=False, index=True)
    season = Column(Integer, nullable=False)
    episode = Column(Integer, nullable=False)
    watched_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
