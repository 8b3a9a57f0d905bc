"""SQLAlchemy engine, session, and declarative base setup."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from exolix.config import get_settings


class Base(DeclarativeBase):
    """Declarative base class for all SQLAlchemy models."""


def build_engine(database_url: str) -> Engine:
    # Store calls run in worker threads.
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, future=True, connect_args=connect_args)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine | None = None) -> None:
    """Create tables, and the SQLite file's parent directory when needed."""
    import exolix.models  # noqa: F401

    bind = bind or engine
    url = make_url(str(bind.url))
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=bind)
