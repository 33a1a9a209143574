from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from showtrackr.config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def upsert_insert(session: Session, table):
    """Dialect INSERT that supports ``on_conflict_do_update``."""
    dialect = session.get_bind().dialect.name
    if dialect not in UPSERT_DIALECTS:
        raise NotImplementedError(f"Upserts are not supported on {dialect}")
    return UPSERT_DIALECTS[dialect](table)
