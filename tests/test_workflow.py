"""Tests for the picture set state machine (no database)."""
from datetime import datetime

import pytest

from app.gallery.errors import InvalidTransition, WorkflowViolation
from app.gallery.modules.categories.models import Category
from app.gallery.modules.hierarchy.models import Patrouille
from app.gallery.modules.submissions import workflow
from app.gallery.modules.submissions.workflow import Event

NOW = datetime(2024, 5, 1, 12, 0, 0)


def _category(cid=5, **kw):
    kw.setdefault("is_upload_disabled", False)
    kw.setdefault("is_schematic_enabled", False)
    return Category(id=cid, name=f"cat{cid}", **kw)


def _new_set(**kw):
    params = dict(title="t", set_type="INSTALLATION_PHOTO", troupe_id=10, uploader_id=2,
                  locators=["a", "b", "c"], now=NOW)
    params.update(kw)
    return workflow.new_picture_set(**params)


def test_new_set_is_pending_with_dense_display_order():
    ps = _new_set()
    assert ps.status == "PENDING"
    assert [p.display_order for p in ps.pictures] == [1, 2, 3]
    assert [p.file_path for p in ps.pictures] == ["a", "b", "c"]
    assert ps.uploaded_by_id == 2
    assert ps.uploaded_at == NOW
    assert ps.view_count == 0


@pytest.mark.parametrize(
    "kw, guard",
    [
        ({"locators": []}, "pictures_required"),
        ({"set_type": "VIDEO"}, "invalid_type"),
        ({"set_type": "SCHEMATIC"}, "patrouille_required"),
        ({"patrouille": Patrouille(id=3, name="x", troupe_id=99)}, "patrouille_not_in_troupe"),
    ],
)
def test_create_guards(kw, guard):
    with pytest.raises(WorkflowViolation) as ei:
        _new_set(**kw)
    assert ei.value.guard == guard
    assert ei.value.event == "create"


def test_schematic_with_patrouille():
    ps = _new_set(set_type="SCHEMATIC", patrouille=Patrouille(id=3, name="x", troupe_id=10))
    assert ps.patrouille_id == 3


def test_classify_then_reclassify_refreshes_fields():
    ps = _new_set()
    assert workflow.classify(ps, actor_id=2, category=_category(5), now=NOW) == "CLASSIFIED"
    assert ps.classified_by_id == 2
    assert ps.category_id == 5

    later = datetime(2024, 6, 1)
    workflow.classify(ps, actor_id=4, category=_category(6), now=later, description="second pass")
    assert ps.status == "CLASSIFIED"
    assert ps.classified_at == later
    assert ps.classified_by_id == 4
    assert ps.category_id == 6
    assert ps.description == "second pass"


def test_classify_guards():
    ps = _new_set()
    with pytest.raises(WorkflowViolation) as ei:
        workflow.classify(ps, actor_id=2, category=None, now=NOW)
    assert ei.value.guard == "category_required"

    with pytest.raises(WorkflowViolation) as ei:
        workflow.classify(ps, actor_id=2, category=_category(is_upload_disabled=True), now=NOW)
    assert ei.value.guard == "category_disabled"

    sub = Category(id=8, name="sub", parent_id=99)
    with pytest.raises(WorkflowViolation) as ei:
        workflow.classify(ps, actor_id=2, category=_category(5), sub_category=sub, now=NOW)
    assert ei.value.guard == "subcategory_mismatch"
    assert ps.status == "PENDING"


def test_schematic_set_needs_schematic_category():
    ps = _new_set(set_type="SCHEMATIC", patrouille=Patrouille(id=3, name="x", troupe_id=10))
    with pytest.raises(WorkflowViolation) as ei:
        workflow.classify(ps, actor_id=2, category=_category(5), now=NOW)
    assert ei.value.guard == "category_not_schematic"
    workflow.classify(ps, actor_id=2, category=_category(6, is_schematic_enabled=True), now=NOW)
    assert ps.status == "CLASSIFIED"


def test_approve_from_pending_and_classified():
    for classify_first in (False, True):
        ps = _new_set()
        if classify_first:
            workflow.classify(ps, actor_id=2, category=_category(), now=NOW)
        workflow.approve(ps, actor_id=4, now=NOW, is_highlight=True)
        assert ps.status == "APPROVED"
        assert ps.approved_by_id == 4
        assert ps.is_highlight is True


def test_reject_requires_reason():
    ps = _new_set()
    with pytest.raises(WorkflowViolation) as ei:
        workflow.reject(ps, actor_id=4, now=NOW, reason="   ")
    assert ei.value.guard == "rejection_reason_required"
    workflow.reject(ps, actor_id=4, now=NOW, reason=" blurry ")
    assert ps.status == "REJECTED"
    assert ps.rejection_reason == "blurry"
    assert ps.approved_by_id == 4


@pytest.mark.parametrize("terminal", ["APPROVED", "REJECTED"])
def test_terminal_statuses_are_immutable(terminal):
    ps = _new_set()
    ps.status = terminal
    attempts = [
        lambda: workflow.classify(ps, actor_id=2, category=_category(), now=NOW),
        lambda: workflow.mark_classified(ps, actor_id=2, now=NOW),
        lambda: workflow.approve(ps, actor_id=4, now=NOW),
        lambda: workflow.reject(ps, actor_id=4, now=NOW, reason="no"),
    ]
    for attempt in attempts:
        with pytest.raises(InvalidTransition) as ei:
            attempt()
        assert ei.value.from_status == terminal
        assert ps.status == terminal
    assert workflow.is_terminal(terminal)


def test_validate_transition_table():
    assert workflow.validate_transition("PENDING", Event.CLASSIFY) == "CLASSIFIED"
    assert workflow.validate_transition("CLASSIFIED", Event.CLASSIFY) == "CLASSIFIED"
    assert workflow.validate_transition("CLASSIFIED", Event.REJECT) == "REJECTED"
    with pytest.raises(InvalidTransition):
        workflow.validate_transition("APPROVED", Event.APPROVE)
