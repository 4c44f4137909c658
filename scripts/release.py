"""
Release phase for a gallery deploy: migrate, verify the schema the code
expects, then seed the admin account.

Refuses SQLite when ENV is production, and exits non-zero if the schema is
still missing columns after `alembic upgrade head` (a migration that was never
written fails the deploy instead of the first request).

Usage:
  python scripts/release.py               # migrate + verify + seed
  python scripts/release.py --skip-seed   # migrate + verify only
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("gallery.release")


def _release_database_url(database_url: str | None) -> str:
    db_url = (database_url or os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for a release.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against sqlite in production. Point DATABASE_URL at Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def verify_schema(db_url: str) -> None:
    from app.gallery import missing_schema
    from scripts._db_utils import create_script_engine

    engine = create_script_engine(db_url)
    try:
        missing = missing_schema(engine)
    finally:
        engine.dispose()
    if missing:
        raise RuntimeError("Schema still incomplete after migrations: " + ", ".join(missing))


def run_release(*, database_url: str | None = None, seed: bool = True) -> None:
    db_url = _release_database_url(database_url)
    logger.info("Applying migrations")
    migrate(db_url)
    verify_schema(db_url)
    logger.info("Schema verified")
    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
        logger.info("Admin seed applied")


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--skip-seed", action="store_true", help="do not touch the admin account")
    args = parser.parse_args(argv)
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
