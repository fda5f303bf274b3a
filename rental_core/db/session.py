from __future__ import annotations

from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rental_core.core.config import get_settings


def build_engine(url: str, **kwargs: Any) -> Engine:
    """
    One engine per process. SQLite is for local runs only: its connections are shared
    across the API's worker threads.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, future=True, **kwargs)


engine = build_engine(get_settings().database_url)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
)


def get_db() -> Iterator[Session]:
    # the coordinator commits or rolls back each unit of work itself
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
