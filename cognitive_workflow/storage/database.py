"""Database engine and session construction.

Engines are built explicitly and handed to the components that need them;
nothing here holds a process-wide connection.
"""

from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create an engine; SQLite gets a single connection shared across threads."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args=connect_args or {})

    return create_engine(
        database_url,
        connect_args=connect_args if connect_args is not None else {"check_same_thread": False},
        poolclass=StaticPool,
        echo=echo
    )


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine):
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine):
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
