"""Tests for SubmissionService picture set operations."""
from datetime import datetime

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy import select

from app.gallery.db import session_scope
from app.gallery.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    InvalidTransition,
    NotFound,
    PersistenceUnavailable,
    ValidationError,
    WorkflowViolation,
)
from app.gallery.models import AuditEvent
from app.gallery.modules.submissions import service as service_module
from app.gallery.modules.submissions.models import Picture, PictureSet
from app.gallery.modules.submissions.service import SubmissionService
from app.gallery.modules.submissions.workflow import PictureClassification


def _create(svc, actor, n=3, **kw):
    kw.setdefault("set_type", "INSTALLATION_PHOTO")
    locators = [f"blob/{getattr(actor, 'id', 0)}/{i}" for i in range(n)]
    return svc.create_set(actor, locators=locators, **kw)


def _reload(app, set_id):
    with session_scope(app) as s:
        ps = s.get(PictureSet, set_id)
        if ps is None:
            return None
        return {
            "status": ps.status,
            "category_id": ps.category_id,
            "rejection_reason": ps.rejection_reason,
            "pictures": [(p.id, p.display_order, p.category_id, p.design_group_id) for p in ps.pictures],
        }


def _actions(app):
    with session_scope(app) as s:
        return [ev.action for ev in s.scalars(select(AuditEvent).order_by(AuditEvent.id))]


# Walkthrough: create, classify, self-approve, out-of-district classify, approve.


def test_chef_creates_pending_set_with_ordered_pictures(svc, world, app):
    ps = _create(svc, world.chef1, n=3)
    assert ps.status == "PENDING"
    assert [p.display_order for p in ps.pictures] == [1, 2, 3]
    assert ps.uploaded_by_id == world.chef1.id
    assert ps.troupe_id == world.t1
    assert ps.title == "District 1_Group 1_Troupe 1_Set00"
    assert "set.create" in _actions(app)

    second = _create(svc, world.chef1, n=1)
    assert second.title == "District 1_Group 1_Troupe 1_Set01"


def test_chef_classifies_own_set(svc, world):
    ps = _create(svc, world.chef1)
    ps = svc.classify(world.chef1, ps.id, category_id=world.cat_photo, sub_category_id=world.cat_sub)
    assert ps.status == "CLASSIFIED"
    assert ps.classified_by_id == world.chef1.id
    assert ps.category_id == world.cat_photo
    assert ps.sub_category_id == world.cat_sub


def test_chef_cannot_approve_own_set(svc, world, app):
    ps = _create(svc, world.chef1)
    svc.classify(world.chef1, ps.id, category_id=world.cat_photo)
    with pytest.raises(AuthorizationDenied) as ei:
        svc.approve(world.chef1, ps.id)
    assert ei.value.reason == "separation_of_duties"
    assert _reload(app, ps.id)["status"] == "CLASSIFIED"


def test_branche_outside_district_cannot_classify(svc, world, app):
    ps = _create(svc, world.chef1)
    with pytest.raises(AuthorizationDenied) as ei:
        svc.classify(world.branche2, ps.id, category_id=world.cat_photo)
    assert ei.value.reason == "district_not_granted"
    assert _reload(app, ps.id)["status"] == "PENDING"


def test_branche_approves_then_reject_fails(svc, world, app):
    ps = _create(svc, world.chef1)
    svc.classify(world.chef1, ps.id, category_id=world.cat_photo)
    ps = svc.approve(world.branche1, ps.id, is_highlight=True)
    assert ps.status == "APPROVED"
    assert ps.approved_by_id == world.branche1.id
    assert ps.is_highlight is True

    with pytest.raises(WorkflowViolation):
        svc.reject(world.branche1, ps.id, reason="changed my mind")
    state = _reload(app, ps.id)
    assert state["status"] == "APPROVED"
    assert state["rejection_reason"] is None


# Create guards


def test_create_requires_authentication(svc, world):
    with pytest.raises(AuthenticationRequired):
        _create(svc, None)


def test_chef_cannot_create_for_other_troupe(svc, world):
    with pytest.raises(AuthorizationDenied):
        _create(svc, world.chef1, troupe_id=world.t2)


def test_admin_passes_authorization_but_is_not_an_uploader(svc, world):
    with pytest.raises(WorkflowViolation) as ei:
        _create(svc, world.admin, troupe_id=world.t1)
    assert ei.value.guard == "uploader_role"


def test_schematic_requires_patrouille(svc, world):
    with pytest.raises(WorkflowViolation) as ei:
        _create(svc, world.chef1, set_type="SCHEMATIC")
    assert ei.value.guard == "patrouille_required"
    ps = _create(svc, world.chef1, set_type="SCHEMATIC", patrouille_id=world.p1)
    assert ps.patrouille_id == world.p1

    with pytest.raises(WorkflowViolation) as ei:
        _create(svc, world.chef1, set_type="SCHEMATIC", patrouille_id=world.p2)
    assert ei.value.guard == "patrouille_not_in_troupe"


def test_classify_guards(svc, world):
    ps = _create(svc, world.chef1)
    with pytest.raises(WorkflowViolation) as ei:
        svc.classify(world.chef1, ps.id, category_id=None)
    assert ei.value.guard == "category_required"
    with pytest.raises(WorkflowViolation) as ei:
        svc.classify(world.chef1, ps.id, category_id=world.cat_disabled)
    assert ei.value.guard == "category_disabled"
    with pytest.raises(NotFound):
        svc.classify(world.chef1, ps.id, category_id=9999)
    with pytest.raises(NotFound):
        svc.classify(world.chef1, 9999, category_id=world.cat_photo)
    with pytest.raises(AuthenticationRequired):
        svc.classify(None, ps.id, category_id=world.cat_photo)


def test_reject_needs_reason_and_records_it(svc, world, app):
    ps = _create(svc, world.chef1)
    with pytest.raises(WorkflowViolation) as ei:
        svc.reject(world.branche1, ps.id, reason="")
    assert ei.value.guard == "rejection_reason_required"
    svc.reject(world.branche1, ps.id, reason="Photos floues")
    state = _reload(app, ps.id)
    assert state["status"] == "REJECTED"
    assert state["rejection_reason"] == "Photos floues"
    with pytest.raises(InvalidTransition):
        svc.classify(world.chef1, ps.id, category_id=world.cat_photo)


# Bulk classification


def test_bulk_classify_updates_pictures_then_set(svc, world, app):
    ps = _create(svc, world.chef1, n=2)
    p1, p2 = (p.id for p in ps.pictures)
    taken = datetime(2024, 7, 14, 10, 30)
    svc.bulk_classify(
        world.branche1,
        ps.id,
        [
            PictureClassification(picture_id=p1, category_id=world.cat_photo, taken_at=taken),
            PictureClassification(picture_id=p2, category_id=world.cat_sub),
        ],
    )
    state = _reload(app, ps.id)
    assert state["status"] == "CLASSIFIED"
    assert [(pid, cat) for pid, _order, cat, _grp in state["pictures"]] == [(p1, world.cat_photo), (p2, world.cat_sub)]
    with session_scope(app) as s:
        assert s.get(Picture, p1).taken_at == taken
    assert _actions(app).count("set.classify_bulk") == 1


def test_bulk_classify_is_all_or_nothing_on_bad_item(svc, world, app):
    ps = _create(svc, world.chef1, n=2)
    p1, p2 = (p.id for p in ps.pictures)
    with pytest.raises(WorkflowViolation) as ei:
        svc.bulk_classify(
            world.chef1,
            ps.id,
            [
                PictureClassification(picture_id=p1, category_id=world.cat_photo),
                PictureClassification(picture_id=p2, category_id=world.cat_disabled),
            ],
        )
    assert ei.value.guard == "category_disabled"
    state = _reload(app, ps.id)
    assert state["status"] == "PENDING"
    assert all(cat is None for _pid, _order, cat, _grp in state["pictures"])


def test_bulk_classify_rejects_foreign_picture(svc, world, app):
    ps = _create(svc, world.chef1, n=1)
    other = _create(svc, world.chef1, n=1)
    with pytest.raises(NotFound):
        svc.bulk_classify(
            world.chef1,
            ps.id,
            [
                PictureClassification(picture_id=ps.pictures[0].id, category_id=world.cat_photo),
                PictureClassification(picture_id=other.pictures[0].id, category_id=world.cat_photo),
            ],
        )
    assert _reload(app, ps.id)["pictures"][0][2] is None


def test_bulk_classify_is_all_or_nothing_on_persistence_failure(svc, world, app, monkeypatch):
    ps = _create(svc, world.chef1, n=3)
    items = [PictureClassification(picture_id=p.id, category_id=world.cat_photo) for p in ps.pictures]

    def _boom(*args, **kwargs):
        raise sa_exc.OperationalError("INSERT INTO audit_events", {}, Exception("database is gone"))

    monkeypatch.setattr(service_module, "record_event", _boom)
    with pytest.raises(PersistenceUnavailable) as ei:
        svc.bulk_classify(world.chef1, ps.id, items)
    assert ei.value.retryable is True

    state = _reload(app, ps.id)
    assert state["status"] == "PENDING"
    assert all(cat is None for _pid, _order, cat, _grp in state["pictures"])


def test_bulk_classify_empty_list(svc, world):
    ps = _create(svc, world.chef1)
    with pytest.raises(ValidationError):
        svc.bulk_classify(world.chef1, ps.id, [])


# Concurrency


def test_stale_transition_loses_to_committed_one(app, world, monkeypatch):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    storage = app.extensions["gallery_storage"]
    s_a, s_b = sm(), sm()
    try:
        svc_a = SubmissionService(s_a, storage)
        svc_b = SubmissionService(s_b, storage)
        ps = _create(svc_a, world.chef1)
        svc_a.classify(world.chef1, ps.id, category_id=world.cat_photo)

        # Request A has already read the set as CLASSIFIED...
        stale = s_a.get(PictureSet, ps.id)
        assert stale.status == "CLASSIFIED"
        s_a.commit()

        # ...when request B approves it.
        svc_b.approve(world.branche1, ps.id)

        monkeypatch.setattr(svc_a, "_load_set", lambda set_id, for_update=True: stale)
        with pytest.raises(InvalidTransition) as ei:
            svc_a.reject(world.branche1, ps.id, reason="too late")
        assert ei.value.from_status == "APPROVED"
    finally:
        s_a.close()
        s_b.close()

    state = _reload(app, ps.id)
    assert state["status"] == "APPROVED"
    assert state["rejection_reason"] is None


# Reads


def test_view_count_increments_on_each_successful_read(svc, world):
    ps = _create(svc, world.chef1)
    assert svc.get_set(world.chef1, ps.id).view_count == 1
    assert svc.get_set(world.branche1, ps.id).view_count == 2
    with pytest.raises(AuthenticationRequired):
        svc.get_set(None, ps.id)
    with pytest.raises(AuthorizationDenied):
        svc.get_set(world.chef2, ps.id)
    assert svc.get_set(world.admin, ps.id).view_count == 3


def test_list_sets_role_filters(svc, world):
    mine = _create(svc, world.chef1)
    theirs = _create(svc, world.chef2)
    svc.approve(world.branche2, theirs.id)

    def ids(actor, **kw):
        items, total = svc.list_sets(actor, **kw)
        assert total == len(items)
        return {ps.id for ps in items}

    assert ids(None) == {theirs.id}
    assert ids(world.chef1) == {mine.id, theirs.id}
    assert ids(world.chef1, status="APPROVED") == set()
    assert ids(world.chef1, status="PENDING") == {mine.id}
    assert ids(world.branche1) == {mine.id}
    assert ids(world.branche2) == {theirs.id}
    assert ids(world.branche_none) == set()
    assert ids(world.admin) == {mine.id, theirs.id}
    assert ids(world.admin, troupe_id=world.t2) == {theirs.id}
    assert ids(world.admin, group_id=world.g1) == {mine.id}
    assert ids(world.admin, highlights=True) == set()

    with pytest.raises(ValidationError):
        svc.list_sets(world.admin, status="ARCHIVED")


def test_list_sets_pagination(svc, world):
    for _ in range(5):
        _create(svc, world.chef1, n=1)
    items, total = svc.list_sets(world.chef1, page=2, limit=2)
    assert total == 5
    assert len(items) == 2
    items, total = svc.list_sets(world.chef1, page=1, limit=1000)
    assert len(items) == 5


# Deletion


def test_delete_set_by_owner_discards_blobs(svc, world, app):
    ps = _create(svc, world.chef1, n=2)
    locators = [p.file_path for p in ps.pictures]
    with pytest.raises(AuthorizationDenied):
        svc.delete_set(world.branche1, ps.id)
    svc.delete_set(world.chef1, ps.id)
    assert _reload(app, ps.id) is None
    assert svc.storage.deleted == locators


def test_delete_set_dissolves_design_groups(svc, world, app):
    first = _create(svc, world.chef1, n=1)
    second = _create(svc, world.chef1, n=1)
    keep_id = second.pictures[0].id
    group, _members = svc.create_group(world.branche1, [first.pictures[0].id, keep_id])

    svc.delete_set(world.chef1, first.id)
    assert _reload(app, second.id)["pictures"][0][3] is None
    assert "group.dissolve" in _actions(app)
    with pytest.raises(NotFound):
        svc.get_group(world.admin, group.id)


def test_delete_picture_keeps_gaps_and_refuses_last(svc, world, app):
    ps = _create(svc, world.chef1, n=3)
    middle = ps.pictures[1]
    svc.delete_picture(world.chef1, ps.id, middle.id)
    state = _reload(app, ps.id)
    assert [order for _pid, order, _cat, _grp in state["pictures"]] == [1, 3]
    assert svc.storage.deleted == [middle.file_path]

    svc.delete_picture(world.chef1, ps.id, state["pictures"][0][0])
    with pytest.raises(WorkflowViolation) as ei:
        svc.delete_picture(world.chef1, ps.id, state["pictures"][1][0])
    assert ei.value.guard == "last_picture"
    with pytest.raises(NotFound):
        svc.delete_picture(world.chef1, ps.id, 9999)
