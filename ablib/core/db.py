from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ablib.models.orm.base import Base


def _is_in_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def create_db_engine(database_url: str) -> Engine:
    """
    Builds the SQLAlchemy engine for a local cache or remote database URL.

    In-memory SQLite databases are pinned to a single shared connection,
    otherwise every new session would see an empty database.
    """
    kwargs = {}
    if "sqlite" in database_url:
        # Remote adapter calls run in worker threads
        kwargs["connect_args"] = {"check_same_thread": False}
    if _is_in_memory_sqlite(database_url):
        kwargs["poolclass"] = StaticPool

    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine, *tables) -> sessionmaker:
    """
    Creates the given tables (all known tables when none are given) and
    returns a session factory bound to the engine.
    """
    Base.metadata.create_all(engine, tables=[t.__table__ for t in tables] or None)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
