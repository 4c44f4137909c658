"""Individual picture administration and category filtering of sets."""
import pytest

from app.gallery.db import session_scope
from app.gallery.errors import AuthorizationDenied, NotFound, ValidationError, WorkflowViolation
from app.gallery.models import AuditEvent
from app.gallery.modules.design_groups.models import DesignGroup
from app.gallery.modules.submissions.models import Picture, PictureSet


def _set(svc, actor, n=2, category_id=None):
    ps = svc.create_set(actor, set_type="INSTALLATION_PHOTO", locators=[f"pic/{actor.id}/{i}" for i in range(n)])
    if category_id is not None:
        svc.classify(actor, ps.id, category_id=category_id)
    return ps.id, [p.id for p in ps.pictures]


def test_list_pictures_is_admin_only_and_filters(svc, world):
    set_id, (a, b, c) = _set(svc, world.chef1, n=3, category_id=world.cat_photo)
    _set(svc, world.chef2, n=1)
    svc.bulk_update_pictures(world.admin, [a, b], {"category_id": world.cat_photo})

    with pytest.raises(AuthorizationDenied):
        svc.list_pictures(world.branche1)

    rows, total = svc.list_pictures(world.admin)
    assert total == 4
    rows, total = svc.list_pictures(world.admin, category_id=world.cat_photo, sort_by="uploadedAt", sort_order="asc")
    assert [p.id for p in rows] == [a, b]
    rows, total = svc.list_pictures(world.admin, status="CLASSIFIED")
    assert {p.id for p in rows} == {a, b, c}
    rows, total = svc.list_pictures(world.admin, sort_by="district", limit=1)
    assert len(rows) == 1 and total == 4

    for bad in ({"status": "LOST"}, {"picture_type": "VIDEO"}, {"sort_by": "size"}, {"sort_order": "up"}):
        with pytest.raises(ValidationError):
            svc.list_pictures(world.admin, **bad)


def test_update_picture_guards(svc, world, app):
    set_id, (a, b) = _set(svc, world.chef1)
    with pytest.raises(WorkflowViolation) as ei:
        svc.update_picture(world.branche1, a, {"category_id": world.cat_photo})
    assert ei.value.guard == "set_not_classified"

    svc.classify(world.chef1, set_id, category_id=world.cat_photo)
    with pytest.raises(AuthorizationDenied):
        svc.update_picture(world.chef1, a, {"category_id": world.cat_photo})
    with pytest.raises(AuthorizationDenied):
        svc.update_picture(world.branche2, a, {"category_id": world.cat_photo})
    with pytest.raises(ValidationError):
        svc.update_picture(world.branche1, a, {})
    with pytest.raises(WorkflowViolation) as ei:
        svc.update_picture(world.branche1, a, {"category_id": world.cat_disabled})
    assert ei.value.guard == "category_disabled"
    with pytest.raises(WorkflowViolation) as ei:
        svc.update_picture(world.branche1, a, {"category_id": world.cat_photo, "type": "SCHEMATIC"})
    assert ei.value.guard == "category_not_schematic"

    picture = svc.update_picture(world.branche1, a, {"category_id": world.cat_sub, "type": "INSTALLATION_PHOTO"})
    assert picture.category_id == world.cat_sub
    with session_scope(app) as s:
        ps = s.get(PictureSet, set_id)
        assert ps.status == "CLASSIFIED"
        assert s.query(AuditEvent).filter_by(action="picture.update", entity_id=str(a)).count() == 1

    svc.reject(world.branche1, set_id, reason="flou")
    with pytest.raises(WorkflowViolation) as ei:
        svc.update_picture(world.admin, b, {"category_id": world.cat_photo})
    assert ei.value.guard == "set_rejected"


def test_bulk_update_is_all_or_nothing(svc, world, app):
    _, (a, b) = _set(svc, world.chef1)
    with pytest.raises(NotFound):
        svc.bulk_update_pictures(world.admin, [a, 424242], {"category_id": world.cat_photo})
    with session_scope(app) as s:
        assert s.get(Picture, a).category_id is None

    with pytest.raises(ValidationError):
        svc.bulk_update_pictures(world.admin, [a], {"type": "VIDEO"})
    with pytest.raises(ValidationError):
        svc.bulk_update_pictures(world.admin, [], {"type": "SCHEMATIC"})
    with pytest.raises(AuthorizationDenied):
        svc.bulk_update_pictures(world.branche1, [a], {"type": "SCHEMATIC"})

    updated = svc.bulk_update_pictures(world.admin, [a, b], {"category_id": world.cat_photo, "type": "SCHEMATIC"})
    assert [p.id for p in updated] == [a, b]
    with session_scope(app) as s:
        assert {(p.category_id, p.type) for p in s.query(Picture)} == {(world.cat_photo, "SCHEMATIC")}


def test_bulk_delete_never_empties_a_set(svc, world, app):
    first_set, (a1, a2, a3) = _set(svc, world.chef1, n=3)
    second_set, (b1, b2) = _set(svc, world.chef1, n=2)
    group, _ = svc.create_group(world.branche1, [b1, b2])
    storage = app.extensions["gallery_storage"]

    deleted, skipped = svc.bulk_delete_pictures(world.admin, [a3, a2, a1, b2])
    assert sorted(deleted) == sorted([a2, a3, b2])
    assert skipped == [{"id": a1, "pictureSetId": first_set, "reason": "last_picture"}]
    assert sorted(storage.deleted) == sorted(f"pic/{world.chef1.id}/{i}" for i in (1, 2, 1))

    with session_scope(app) as s:
        assert [p.id for p in s.get(PictureSet, first_set).pictures] == [a1]
        assert [p.id for p in s.get(PictureSet, second_set).pictures] == [b1]
        # b1 alone cannot stay grouped.
        assert s.get(DesignGroup, group.id) is None
        assert s.query(AuditEvent).filter_by(action="group.dissolve").count() == 1

    with pytest.raises(AuthorizationDenied):
        svc.bulk_delete_pictures(world.chef1, [b1])


def test_list_sets_filters_by_category(svc, world):
    photo_id, _ = _set(svc, world.chef1, category_id=world.cat_photo)
    plans_id, _ = _set(svc, world.chef1, category_id=world.cat_schematic)
    sub_id, _ = _set(svc, world.chef1)
    svc.classify(world.chef1, sub_id, category_id=world.cat_photo, sub_category_id=world.cat_sub)
    loose_id, (loose_pic, _) = _set(svc, world.chef1)
    svc.bulk_update_pictures(world.admin, [loose_pic], {"category_id": world.cat_sub})

    items, total = svc.list_sets(world.admin, category_id=world.cat_schematic)
    assert [ps.id for ps in items] == [plans_id]
    items, total = svc.list_sets(world.admin, category_id=world.cat_sub)
    assert {ps.id for ps in items} == {sub_id, loose_id}
    items, total = svc.list_sets(world.admin, category_id=world.cat_photo)
    assert {ps.id for ps in items} == {photo_id, sub_id}


def _login(client, email):
    assert client.post("/auth/login", json={"email": email, "password": "pw"}).status_code == 200


def test_picture_endpoints(app, world, svc):
    set_id, (a, b, c) = _set(svc, world.chef1, n=3, category_id=world.cat_photo)
    client = app.test_client()

    _login(client, "branche1@example.com")
    assert client.get("/pictures").status_code == 403
    r = client.put(f"/pictures/{a}", json={"categoryId": world.cat_sub, "takenAt": "2024-07-14T12:00:00+02:00"})
    assert r.status_code == 200
    assert r.json["categoryId"] == world.cat_sub
    assert r.json["takenAt"] == "2024-07-14T10:00:00"
    assert r.json["pictureSet"]["id"] == set_id
    assert client.put("/pictures/bulk-update", json={"pictureIds": [a], "updates": {"type": "SCHEMATIC"}}).status_code == 403

    _login(client, "admin@example.com")
    r = client.get(f"/pictures?categoryId={world.cat_sub}")
    assert r.status_code == 200
    assert [p["id"] for p in r.json["pictures"]] == [a]
    assert r.json["pagination"]["total"] == 1
    assert client.get("/pictures?sortBy=size").status_code == 400

    assert client.put("/pictures/bulk-update", json={"pictureIds": [a, b], "updates": "x"}).status_code == 400
    r = client.put("/pictures/bulk-update", json={"pictureIds": [b, c], "updates": {"categoryId": world.cat_photo}})
    assert r.json == {"count": 2, "pictureIds": [b, c]}

    r = client.delete("/pictures/bulk-delete", json={"pictureIds": [a, b, c]})
    assert r.status_code == 200
    assert r.json["deleted"] == 2
    assert r.json["skipped"][0]["reason"] == "last_picture"
    assert client.get(f"/sets/{set_id}").json["pictures"][0]["id"] == a

    r = client.get(f"/sets?categoryId={world.cat_sub}")
    assert [s["id"] for s in r.json["sets"]] == [set_id]
