from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator, Iterator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.gallery.errors import PersistenceUnavailable

logger = logging.getLogger(__name__)

# Driver/pool failures that mean "try again later", as opposed to bad input.
UNAVAILABLE_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)


def build_engine(db_url: str, *, pooled: bool = True) -> Engine:
    """
    Postgres gets a bounded pool when ``pooled``; SQLite always gets foreign
    keys switched on so RESTRICT/SET NULL behave as they do in production.
    """
    engine_kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        engine_kwargs["pool_recycle"] = 1800
        if pooled:
            engine_kwargs.update({"pool_size": 5, "max_overflow": 10, "pool_timeout": 30})
    engine = create_engine(db_url, **engine_kwargs)
    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fk(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return engine


def make_sessionmaker(engine: Engine) -> sessionmaker:
    # expire_on_commit=False: services hand committed objects back to the blueprints.
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


@contextmanager
def unit_of_work(s: Session) -> Iterator[Session]:
    """
    Commit on success, roll back on any exception. Connection-level failures
    surface as ``PersistenceUnavailable`` so callers answer 503 + Retry-After.
    """
    try:
        yield s
        s.commit()
    except UNAVAILABLE_ERRORS as exc:
        s.rollback()
        logger.error("Persistence failure, transaction rolled back: %s", exc, exc_info=True)
        raise PersistenceUnavailable() from exc
    except Exception:
        s.rollback()
        raise


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if getattr(g, "db_session", None) is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    g.db_session = app.extensions["sqlalchemy_sessionmaker"]()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        s.close()
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """Non-request session for tests and maintenance code."""
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        with unit_of_work(s):
            yield s
    finally:
        s.close()
