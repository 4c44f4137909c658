"""Tests for design group membership rules."""
import random

import pytest

from app.gallery.db import session_scope
from app.gallery.errors import AuthorizationDenied, GroupingInvariantViolation, NotFound
from app.gallery.modules.design_groups.engine import GroupingEngine
from app.gallery.modules.design_groups.models import DesignGroup
from app.gallery.modules.submissions.models import Picture


def _pictures(svc, actor, n):
    ps = svc.create_set(actor, set_type="INSTALLATION_PHOTO", locators=[f"g/{i}" for i in range(n)])
    return [p.id for p in ps.pictures]


def _group_ref(app, picture_id):
    with session_scope(app) as s:
        return s.get(Picture, picture_id).design_group_id


def test_removing_from_pair_dissolves_group(svc, world, app):
    p1, p2 = _pictures(svc, world.chef1, 2)
    group, members = svc.create_group(world.branche1, [p1, p2])
    assert [p.id for p in members] == [p1, p2]
    assert group.primary_picture_id == p1

    result = svc.remove_from_group(world.branche1, group.id, p1)
    assert result.dissolved is True
    assert set(result.released_picture_ids) == {p2}
    assert _group_ref(app, p1) is None
    assert _group_ref(app, p2) is None
    with session_scope(app) as s:
        assert s.get(DesignGroup, group.id) is None


def test_removing_primary_reassigns_lowest_display_order(svc, world):
    p1, p2, p3 = _pictures(svc, world.chef1, 3)
    group, _ = svc.create_group(world.branche1, [p2, p3, p1])
    assert group.primary_picture_id == p2

    result = svc.remove_from_group(world.branche1, group.id, p2)
    assert result.dissolved is False
    group, members = svc.get_group(world.branche1, group.id)
    assert group.primary_picture_id == p1
    assert {p.id for p in members} == {p1, p3}


def test_create_group_rules(svc, world):
    p1, p2, p3 = _pictures(svc, world.chef1, 3)
    with pytest.raises(GroupingInvariantViolation) as ei:
        svc.create_group(world.branche1, [p1, p1])
    assert ei.value.kind == GroupingInvariantViolation.BELOW_MINIMUM_SIZE

    group, _ = svc.create_group(world.branche1, [p1, p2], primary_id=p2, name=" Portail ")
    assert group.primary_picture_id == p2
    assert group.name == "Portail"

    with pytest.raises(GroupingInvariantViolation) as ei:
        svc.create_group(world.branche1, [p2, p3])
    assert ei.value.kind == GroupingInvariantViolation.ALREADY_GROUPED
    assert ei.value.picture_ids == [p2]

    with pytest.raises(NotFound):
        svc.create_group(world.branche1, [p3, 9999])


def test_primary_outside_members_falls_back_to_first(svc, world):
    p1, p2, p3 = _pictures(svc, world.chef1, 3)
    group, _ = svc.create_group(world.branche1, [p2, p1], primary_id=p3)
    assert group.primary_picture_id == p2


def test_category_comes_from_first_picture(svc, world, app):
    p1, p2 = _pictures(svc, world.chef1, 2)
    with session_scope(app) as s:
        s.get(Picture, p1).category_id = world.cat_sub
        s.get(Picture, p2).category_id = world.cat_photo
    group, _ = svc.create_group(world.branche1, [p1, p2])
    assert group.category_id == world.cat_sub


def test_add_pictures_is_idempotent_for_members(svc, world):
    p1, p2, p3 = _pictures(svc, world.chef1, 3)
    q1, q2 = _pictures(svc, world.chef1, 2)
    group, _ = svc.create_group(world.branche1, [p1, p2])
    other, _ = svc.create_group(world.branche1, [q1, q2])

    _, members = svc.add_to_group(world.branche1, group.id, [p2, p3])
    assert {p.id for p in members} == {p1, p2, p3}
    _, members = svc.add_to_group(world.branche1, group.id, [p3])
    assert len(members) == 3

    with pytest.raises(GroupingInvariantViolation) as ei:
        svc.add_to_group(world.branche1, group.id, [q1])
    assert ei.value.kind == GroupingInvariantViolation.ALREADY_GROUPED
    _, members = svc.get_group(world.admin, other.id)
    assert {p.id for p in members} == {q1, q2}


def test_update_group_primary_must_be_member(svc, world):
    p1, p2, p3 = _pictures(svc, world.chef1, 3)
    group, _ = svc.create_group(world.branche1, [p1, p2])
    with pytest.raises(GroupingInvariantViolation) as ei:
        svc.update_group(world.branche1, group.id, {"primary_id": p3})
    assert ei.value.kind == GroupingInvariantViolation.PRIMARY_NOT_MEMBER

    group, _ = svc.update_group(world.branche1, group.id, {"primary_id": p2, "name": "Tour", "category_id": world.cat_photo})
    assert group.primary_picture_id == p2
    assert group.name == "Tour"
    assert group.category_id == world.cat_photo


def test_group_authorization(svc, world):
    p1, p2 = _pictures(svc, world.chef1, 2)
    q1 = _pictures(svc, world.chef2, 1)[0]

    # CHEF_TROUPE may not start a group; a BRANCHE needs every touched district.
    with pytest.raises(AuthorizationDenied):
        svc.create_group(world.chef1, [p1, p2])
    with pytest.raises(AuthorizationDenied):
        svc.create_group(world.branche2, [p1, p2])

    group, _ = svc.create_group(world.branche1, [p1, p2])
    with pytest.raises(AuthorizationDenied):
        svc.add_to_group(world.branche2, group.id, [q1])
    # The creator may add pictures from anywhere, but only sees the ones it could see anyway.
    _, members = svc.add_to_group(world.branche1, group.id, [q1])
    assert {p.id for p in members} == {p1, p2}
    _, members = svc.get_group(world.admin, group.id)
    assert {p.id for p in members} == {p1, p2, q1}
    # Another BRANCHE must now be granted both districts.
    with pytest.raises(AuthorizationDenied):
        svc.remove_from_group(world.branche2, group.id, q1)

    with pytest.raises(AuthorizationDenied):
        svc.delete_group(world.branche2, group.id)
    released = svc.delete_group(world.branche1, group.id)
    assert set(released) == {p1, p2, q1}


def test_anonymous_sees_only_approved_members(svc, world):
    p1, p2 = _pictures(svc, world.chef1, 2)
    group, _ = svc.create_group(world.branche1, [p1, p2])
    with pytest.raises(NotFound):
        svc.get_group(None, group.id)
    rows, total = svc.list_groups(None)
    assert (rows, total) == ([], 0)

    set_id = svc.get_group(world.admin, group.id)[1][0].picture_set_id
    svc.approve(world.branche1, set_id)
    _, members = svc.get_group(None, group.id)
    assert {p.id for p in members} == {p1, p2}
    rows, total = svc.list_groups(None)
    assert total == 1


def test_group_reads_hide_pending_members_from_other_districts_and_troupes(svc, world):
    p1, p2 = _pictures(svc, world.chef1, 2)
    group, _ = svc.create_group(world.branche1, [p1, p2])

    # Neither the other district's BRANCHE nor another troupe's chef may see PENDING work.
    for outsider in (world.branche2, world.chef2, world.branche_none):
        with pytest.raises(NotFound):
            svc.get_group(outsider, group.id)
        assert svc.list_groups(outsider) == ([], 0)

    # The uploader sees their own pictures even though they did not create the group.
    _, members = svc.get_group(world.chef1, group.id)
    assert {p.id for p in members} == {p1, p2}
    rows, total = svc.list_groups(world.chef1)
    assert total == 1
    assert {p.id for p in rows[0][1]} == {p1, p2}


def test_mixed_group_shows_each_caller_only_their_visible_members(svc, world):
    p1, p2 = _pictures(svc, world.chef1, 2)
    q1, q2 = _pictures(svc, world.chef2, 2)
    group, _ = svc.create_group(world.admin, [p1, p2, q1, q2])

    _, members = svc.get_group(world.branche2, group.id)
    assert {p.id for p in members} == {q1, q2}
    _, members = svc.get_group(world.chef1, group.id)
    assert {p.id for p in members} == {p1, p2}
    rows, total = svc.list_groups(world.chef2)
    assert total == 1
    assert {p.id for p in rows[0][1]} == {q1, q2}

    svc.approve(world.branche1, svc.get_group(world.branche1, group.id)[1][0].picture_set_id)
    _, members = svc.get_group(world.branche2, group.id)
    assert {p.id for p in members} == {p1, p2, q1, q2}


def test_randomized_operations_keep_invariants(app, world, svc):
    ids = []
    for _ in range(4):
        ids.extend(_pictures(svc, world.chef1, 3))

    rng = random.Random(20240501)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s = sm()
    try:
        engine = GroupingEngine(s)

        def live_groups():
            return [g.id for g in s.query(DesignGroup).all()]

        for _ in range(200):
            op = rng.choice(["create", "add", "remove", "delete"])
            groups = live_groups()
            try:
                if op == "create" or not groups:
                    picked = rng.sample(ids, rng.randint(1, 4))
                    engine.create_group([s.get(Picture, i) for i in picked], created_by_id=world.admin.id)
                elif op == "add":
                    group = s.get(DesignGroup, rng.choice(groups))
                    picked = rng.sample(ids, rng.randint(1, 3))
                    engine.add_pictures(group, [s.get(Picture, i) for i in picked])
                elif op == "remove":
                    group = s.get(DesignGroup, rng.choice(groups))
                    members = engine.members(group.id)
                    target = rng.choice(members) if rng.random() < 0.9 else s.get(Picture, rng.choice(ids))
                    engine.remove_picture(group, target)
                else:
                    engine.delete_group(s.get(DesignGroup, rng.choice(groups)))
            except (GroupingInvariantViolation, NotFound):
                pass
            s.commit()
            assert engine.check_invariants() == []
            for gid in live_groups():
                members = engine.members(gid)
                assert len(members) >= 2
                assert s.get(DesignGroup, gid).primary_picture_id in {p.id for p in members}
    finally:
        s.close()
