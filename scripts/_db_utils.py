from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from app.gallery.db import build_engine, make_sessionmaker, unit_of_work


def database_url_from_env(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///gallery.db").strip()


def create_script_engine(db_url: str) -> Engine:
    # One-shot processes: no pool sizing, same FK pragma as the app.
    return build_engine(db_url, pooled=False)


@contextmanager
def script_session(db_url: str) -> Iterator[Session]:
    """Same unit of work the services use, on a throwaway engine."""
    engine = create_script_engine(db_url)
    s = make_sessionmaker(engine)()
    try:
        with unit_of_work(s):
            yield s
    finally:
        s.close()
        engine.dispose()
