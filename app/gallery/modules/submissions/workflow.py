"""
Picture set state machine.

    (none) --create--> PENDING --classify--> CLASSIFIED --classify--> CLASSIFIED
    PENDING | CLASSIFIED --approve--> APPROVED
    PENDING | CLASSIFIED --reject---> REJECTED

APPROVED and REJECTED are terminal. The functions here only mutate the objects
they are handed; loading, authorization and persistence belong to
``SubmissionService``.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from app.gallery.errors import InvalidTransition, WorkflowViolation
from app.gallery.modules.categories.models import Category
from app.gallery.modules.hierarchy.models import Patrouille
from app.gallery.modules.submissions.models import (
    PICTURE_TYPES,
    STATUS_APPROVED,
    STATUS_CLASSIFIED,
    STATUS_PENDING,
    STATUS_REJECTED,
    TYPE_SCHEMATIC,
    Picture,
    PictureSet,
)


class Event(str, enum.Enum):
    CREATE = "create"
    CLASSIFY = "classify"
    APPROVE = "approve"
    REJECT = "reject"


# event -> (allowed source statuses, target status)
TRANSITIONS: dict[Event, tuple[frozenset[str], str]] = {
    Event.CLASSIFY: (frozenset({STATUS_PENDING, STATUS_CLASSIFIED}), STATUS_CLASSIFIED),
    Event.APPROVE: (frozenset({STATUS_PENDING, STATUS_CLASSIFIED}), STATUS_APPROVED),
    Event.REJECT: (frozenset({STATUS_PENDING, STATUS_CLASSIFIED}), STATUS_REJECTED),
}


def allowed_sources(event: Event) -> frozenset[str]:
    return TRANSITIONS[event][0]


def validate_transition(current: str, event: Event) -> str:
    """Return the target status or raise ``InvalidTransition``."""
    sources, target = TRANSITIONS[event]
    if current not in sources:
        raise InvalidTransition(from_status=current, event=event.value)
    return target


@dataclass(frozen=True)
class PictureClassification:
    picture_id: int
    category_id: int
    taken_at: datetime | None = None
    type: str | None = None


def check_category(
    category: Category | None,
    *,
    set_type: str,
    event: Event,
    from_status: str,
    sub_category: Category | None = None,
) -> Category:
    if category is None:
        raise WorkflowViolation(from_status=from_status, event=event.value, guard="category_required")
    if category.is_upload_disabled:
        raise WorkflowViolation(from_status=from_status, event=event.value, guard="category_disabled")
    if set_type == TYPE_SCHEMATIC and not category.is_schematic_enabled:
        raise WorkflowViolation(from_status=from_status, event=event.value, guard="category_not_schematic")
    if sub_category is not None and sub_category.parent_id != category.id:
        raise WorkflowViolation(from_status=from_status, event=event.value, guard="subcategory_mismatch")
    return category


def new_picture_set(
    *,
    title: str,
    set_type: str,
    troupe_id: int,
    uploader_id: int,
    locators: Sequence[str],
    now: datetime,
    patrouille: Patrouille | None = None,
) -> PictureSet:
    """Build a PENDING set with pictures numbered 1..N in submission order."""
    if set_type not in PICTURE_TYPES:
        raise WorkflowViolation(from_status=None, event=Event.CREATE.value, guard="invalid_type")
    if not locators:
        raise WorkflowViolation(from_status=None, event=Event.CREATE.value, guard="pictures_required")
    if set_type == TYPE_SCHEMATIC and patrouille is None:
        raise WorkflowViolation(from_status=None, event=Event.CREATE.value, guard="patrouille_required")
    if patrouille is not None and patrouille.troupe_id != troupe_id:
        raise WorkflowViolation(from_status=None, event=Event.CREATE.value, guard="patrouille_not_in_troupe")

    ps = PictureSet(
        title=title,
        type=set_type,
        status=STATUS_PENDING,
        troupe_id=troupe_id,
        patrouille_id=patrouille.id if patrouille else None,
        uploaded_by_id=uploader_id,
        uploaded_at=now,
        view_count=0,
        is_highlight=False,
    )
    ps.pictures = [
        Picture(file_path=locator, display_order=index, uploaded_at=now)
        for index, locator in enumerate(locators, start=1)
    ]
    return ps


def classify(
    ps: PictureSet,
    *,
    actor_id: int,
    category: Category | None,
    now: datetime,
    sub_category: Category | None = None,
    description: str | None = None,
) -> str:
    target = validate_transition(ps.status, Event.CLASSIFY)
    check_category(category, set_type=ps.type, event=Event.CLASSIFY, from_status=ps.status, sub_category=sub_category)
    ps.category_id = category.id
    ps.sub_category_id = sub_category.id if sub_category else None
    if description is not None:
        ps.description = description
    ps.classified_by_id = actor_id
    ps.classified_at = now
    ps.status = target
    return target


def classify_picture(picture: Picture, *, category: Category, taken_at: datetime | None, picture_type: str | None) -> None:
    """Per-picture classification. Never touches the parent set's status."""
    if picture_type is not None and picture_type not in PICTURE_TYPES:
        raise WorkflowViolation(
            from_status=picture.picture_set.status,
            event=Event.CLASSIFY.value,
            guard="invalid_type",
        )
    picture.category_id = category.id
    if taken_at is not None:
        picture.taken_at = taken_at
    if picture_type is not None:
        picture.type = picture_type


def edit_picture(picture: Picture, changes: dict) -> None:
    """
    Correct one picture of a classified or approved set. ``changes`` may hold
    ``category`` (a Category or None to clear), ``taken_at`` and ``type``.
    The parent set's status is never touched.
    """
    status = picture.picture_set.status
    if status == STATUS_PENDING:
        raise WorkflowViolation(from_status=status, event=Event.CLASSIFY.value, guard="set_not_classified")
    if status == STATUS_REJECTED:
        raise WorkflowViolation(from_status=status, event=Event.CLASSIFY.value, guard="set_rejected")
    picture_type = changes.get("type")
    if picture_type is not None and picture_type not in PICTURE_TYPES:
        raise WorkflowViolation(from_status=status, event=Event.CLASSIFY.value, guard="invalid_type")

    if "category" in changes:
        category = changes["category"]
        if category is not None:
            check_category(
                category,
                set_type=picture_type or picture.type or picture.picture_set.type,
                event=Event.CLASSIFY,
                from_status=status,
            )
        picture.category_id = category.id if category is not None else None
    if "taken_at" in changes:
        picture.taken_at = changes["taken_at"]
    if "type" in changes:
        picture.type = picture_type


def mark_classified(ps: PictureSet, *, actor_id: int, now: datetime, set_type: str | None = None) -> str:
    """Set-level step that closes a bulk classification."""
    target = validate_transition(ps.status, Event.CLASSIFY)
    if set_type is not None:
        if set_type not in PICTURE_TYPES:
            raise WorkflowViolation(from_status=ps.status, event=Event.CLASSIFY.value, guard="invalid_type")
        ps.type = set_type
    ps.classified_by_id = actor_id
    ps.classified_at = now
    ps.status = target
    return target


def approve(ps: PictureSet, *, actor_id: int, now: datetime, is_highlight: bool = False) -> str:
    target = validate_transition(ps.status, Event.APPROVE)
    ps.approved_by_id = actor_id
    ps.approved_at = now
    ps.is_highlight = bool(is_highlight)
    ps.status = target
    return target


def reject(ps: PictureSet, *, actor_id: int, now: datetime, reason: str | None) -> str:
    target = validate_transition(ps.status, Event.REJECT)
    reason = (reason or "").strip()
    if not reason:
        raise WorkflowViolation(from_status=ps.status, event=Event.REJECT.value, guard="rejection_reason_required")
    ps.approved_by_id = actor_id
    ps.approved_at = now
    ps.rejection_reason = reason
    ps.status = target
    return target


def is_terminal(status: str) -> bool:
    return status in (STATUS_APPROVED, STATUS_REJECTED)
