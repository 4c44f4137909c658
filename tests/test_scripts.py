"""Maintenance scripts: admin seed and design group checker."""
import pytest
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.gallery import missing_schema
from app.gallery.db import session_scope
from app.gallery.models import ROLE_ADMIN, User
from app.gallery.modules.design_groups.models import DesignGroup
from app.gallery.modules.submissions.models import Picture
from scripts import check_groups, init_db, release
from scripts._db_utils import create_script_engine, script_session


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    monkeypatch.setenv("ADMIN_EMAIL", "Root@Example.org")
    monkeypatch.setenv("ADMIN_PASSWORD", "first")
    init_db.create_tables(database_url=db_url)
    init_db.seed_only(database_url=db_url)

    monkeypatch.setenv("ADMIN_PASSWORD", "second")
    init_db.seed_only(database_url=db_url)

    with script_session(db_url) as s:
        users = s.scalars(select(User)).all()
        assert [u.email for u in users] == ["root@example.org"]
        assert users[0].role == ROLE_ADMIN
        assert check_password_hash(users[0].password_hash, "first")


def test_check_groups_reports_and_repairs(app, world, svc):
    ps = svc.create_set(world.chef1, set_type="INSTALLATION_PHOTO", locators=["a", "b", "c", "d", "e"])
    p1, p2, p3, p4, p5 = (p.id for p in ps.pictures)
    pair, _ = svc.create_group(world.branche1, [p1, p2])
    trio, _ = svc.create_group(world.branche1, [p3, p4, p5])
    assert trio.primary_picture_id == p3

    # Break the rules behind the engine's back.
    with session_scope(app) as s:
        s.get(Picture, p2).design_group_id = None
        s.get(Picture, p3).design_group_id = None
    db_url = app.config["DATABASE_URL"]

    assert check_groups.check(database_url=db_url) == [(pair.id, "size=1"), (trio.id, "primary_not_member")]

    check_groups.check(database_url=db_url, fix=True)
    assert check_groups.check(database_url=db_url) == []
    with session_scope(app) as s:
        assert s.get(DesignGroup, pair.id) is None
        assert s.get(Picture, p1).design_group_id is None
        assert s.get(DesignGroup, trio.id).primary_picture_id == p4


def test_release_migrates_verifies_and_seeds(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'release.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("ADMIN_EMAIL", "ops@example.org")
    monkeypatch.setenv("ADMIN_PASSWORD", "pw")

    release.run_release(database_url=db_url, seed=False)
    with script_session(db_url) as s:
        assert s.scalars(select(User)).all() == []

    release.main([])
    with script_session(db_url) as s:
        assert [u.email for u in s.scalars(select(User))] == ["ops@example.org"]


def test_release_refuses_sqlite_in_production(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="sqlite"):
        release.run_release()
    assert not (tmp_path / "prod.db").exists()


def test_missing_schema_lists_absent_tables(tmp_path):
    engine = create_script_engine(f"sqlite:///{tmp_path/'empty.db'}")
    try:
        assert "picture_sets (table)" in missing_schema(engine)
    finally:
        engine.dispose()
