from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.gallery import create_app
from app.gallery.auth import Actor
from app.gallery.db import session_scope
from app.gallery.models import (
    ROLE_ADMIN,
    ROLE_BRANCHE_ECLAIREURS,
    ROLE_CHEF_TROUPE,
    Base,
    DistrictGrant,
    User,
)
from app.gallery.modules.categories.models import Category
from app.gallery.modules.hierarchy.models import District, Group, Patrouille, Troupe
from app.gallery.modules.submissions.service import SubmissionService

PASSWORD = "pw"


class MemoryStorage:
    """In-memory blob store used in place of local disk / S3."""

    def __init__(self):
        self.blobs = {}
        self.deleted = []
        self._n = 0

    def store(self, data, content_type=None):
        self._n += 1
        locator = f"mem/{self._n}"
        self.blobs[locator] = data
        return locator

    def delete(self, locator):
        self.deleted.append(locator)
        self.blobs.pop(locator, None)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    app.config["TESTING"] = True
    app.extensions["gallery_storage"] = MemoryStorage()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


def _user(s, email, role, *, troupe=None, districts=()):
    u = User(
        email=email,
        name=email.split("@")[0],
        password_hash=generate_password_hash(PASSWORD),
        role=role,
        troupe_id=troupe.id if troupe else None,
        is_active=True,
    )
    s.add(u)
    s.flush()
    for d in districts:
        s.add(DistrictGrant(user_id=u.id, district_id=d.id))
    s.flush()
    s.refresh(u)
    return u


@pytest.fixture()
def world(app):
    """
    Two districts, one troupe each, a CHEF_TROUPE per troupe, a BRANCHE_ECLAIREURS
    per district, one without grants, an ADMIN and a handful of categories.
    """
    with session_scope(app) as s:
        d1 = District(name="District 1", code="D1")
        d2 = District(name="District 2", code="D2")
        s.add_all([d1, d2])
        s.flush()
        g1 = Group(name="Group 1", code="G1", district_id=d1.id)
        g2 = Group(name="Group 2", code="G2", district_id=d2.id)
        s.add_all([g1, g2])
        s.flush()
        t1 = Troupe(name="Troupe 1", code="T1", group_id=g1.id)
        t2 = Troupe(name="Troupe 2", code="T2", group_id=g2.id)
        s.add_all([t1, t2])
        s.flush()
        p1 = Patrouille(name="Aigles", troupe_id=t1.id)
        p2 = Patrouille(name="Loups", troupe_id=t2.id)
        s.add_all([p1, p2])
        s.flush()

        photo = Category(name="Portails", type="INSTALLATION_PHOTO")
        schematic = Category(name="Plans", type="SCHEMATIC", is_schematic_enabled=True)
        disabled = Category(name="Archives", is_upload_disabled=True)
        s.add_all([photo, schematic, disabled])
        s.flush()
        sub = Category(name="Portails doubles", parent_id=photo.id)
        s.add(sub)
        s.flush()

        admin = _user(s, "admin@example.com", ROLE_ADMIN)
        chef1 = _user(s, "chef1@example.com", ROLE_CHEF_TROUPE, troupe=t1)
        chef2 = _user(s, "chef2@example.com", ROLE_CHEF_TROUPE, troupe=t2)
        branche1 = _user(s, "branche1@example.com", ROLE_BRANCHE_ECLAIREURS, districts=[d1])
        branche2 = _user(s, "branche2@example.com", ROLE_BRANCHE_ECLAIREURS, districts=[d2])
        branche_none = _user(s, "branche0@example.com", ROLE_BRANCHE_ECLAIREURS)

        return SimpleNamespace(
            d1=d1.id,
            d2=d2.id,
            g1=g1.id,
            t1=t1.id,
            t2=t2.id,
            p1=p1.id,
            p2=p2.id,
            cat_photo=photo.id,
            cat_schematic=schematic.id,
            cat_disabled=disabled.id,
            cat_sub=sub.id,
            admin=Actor.from_user(admin),
            chef1=Actor.from_user(chef1),
            chef2=Actor.from_user(chef2),
            branche1=Actor.from_user(branche1),
            branche2=Actor.from_user(branche2),
            branche_none=Actor.from_user(branche_none),
        )


@pytest.fixture()
def svc(app):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s = sm()
    try:
        yield SubmissionService(s, app.extensions["gallery_storage"])
    finally:
        s.close()
