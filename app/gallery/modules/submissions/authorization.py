"""
Authorization decision table for picture sets and design groups.

``decide`` is a pure function: it never touches the database, the request or
the clock. The service layer resolves everything a rule needs (district of a
set, districts of every picture a group operation touches, owner/creator ids)
into a ``Resource`` before asking.

Rules are evaluated top to bottom and the first match wins:

1. ADMIN may do anything.
2. CREATE_SET: a CHEF_TROUPE for their own troupe.
3. CLASSIFY / BULK_CLASSIFY: the uploading CHEF_TROUPE, or a
   BRANCHE_ECLAIREURS granted the set's district.
4. APPROVE / REJECT: a BRANCHE_ECLAIREURS granted the set's district. Never the
   uploader's CHEF_TROUPE role (separation of duties).
5. DELETE: the uploader, whatever their role.
6. VIEW_UNAPPROVED: anyone for APPROVED sets; otherwise the uploading
   CHEF_TROUPE or a granted BRANCHE_ECLAIREURS.
   EDIT_PICTURE: a BRANCHE_ECLAIREURS granted the picture's district.
   VIEW_PROGRESS: a CHEF_TROUPE for their own troupe, or a BRANCHE_ECLAIREURS
   granted the troupe's district.
7. Group membership operations: the group's creator, or a BRANCHE_ECLAIREURS
   granted the district of every picture touched.
8. DELETE_GROUP: the group's creator.
9. Everything else is denied. MANAGE_PICTURES has no rule of its own, so only
   ADMIN gets it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from app.gallery.auth import Actor
from app.gallery.errors import AuthenticationRequired, AuthorizationDenied
from app.gallery.models import ROLE_ADMIN, ROLE_BRANCHE_ECLAIREURS, ROLE_CHEF_TROUPE
from app.gallery.modules.submissions.models import STATUS_APPROVED


class Operation(str, enum.Enum):
    CREATE_SET = "CREATE_SET"
    CLASSIFY = "CLASSIFY"
    BULK_CLASSIFY = "BULK_CLASSIFY"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    DELETE = "DELETE"
    CREATE_GROUP = "CREATE_GROUP"
    MODIFY_GROUP = "MODIFY_GROUP"
    ADD_TO_GROUP = "ADD_TO_GROUP"
    REMOVE_FROM_GROUP = "REMOVE_FROM_GROUP"
    DELETE_GROUP = "DELETE_GROUP"
    VIEW_UNAPPROVED = "VIEW_UNAPPROVED"
    EDIT_PICTURE = "EDIT_PICTURE"
    VIEW_PROGRESS = "VIEW_PROGRESS"
    MANAGE_PICTURES = "MANAGE_PICTURES"


_CLASSIFY_OPS = frozenset({Operation.CLASSIFY, Operation.BULK_CLASSIFY})
_REVIEW_OPS = frozenset({Operation.APPROVE, Operation.REJECT})
_GROUP_MEMBERSHIP_OPS = frozenset(
    {
        Operation.CREATE_GROUP,
        Operation.MODIFY_GROUP,
        Operation.ADD_TO_GROUP,
        Operation.REMOVE_FROM_GROUP,
    }
)


@dataclass(frozen=True)
class Resource:
    """
    What a rule may look at. Sets fill ``troupe_id``/``district_id``/
    ``uploaded_by_id``/``status``; group operations fill ``created_by_id`` and
    ``district_ids`` (one entry per distinct district of the pictures touched).
    """

    kind: str
    id: int | None = None
    troupe_id: int | None = None
    district_id: int | None = None
    uploaded_by_id: int | None = None
    status: str | None = None
    created_by_id: int | None = None
    district_ids: frozenset[int] = field(default_factory=frozenset)

    def label(self) -> str:
        return f"{self.kind}:{self.id}" if self.id is not None else self.kind


@dataclass(frozen=True)
class Decision:
    allow: bool
    deny_reason: str | None = None


ALLOW = Decision(True)


def _deny(reason: str) -> Decision:
    return Decision(False, reason)


def _granted(actor: Actor, district_id: int | None) -> bool:
    return district_id is not None and district_id in actor.granted_district_ids


def decide(actor: Actor | None, operation: Operation, resource: Resource) -> Decision:
    if actor is None:
        if operation is Operation.VIEW_UNAPPROVED and resource.status == STATUS_APPROVED:
            return ALLOW
        return _deny("unauthenticated")

    role = actor.role
    is_chef = role == ROLE_CHEF_TROUPE
    is_branche = role == ROLE_BRANCHE_ECLAIREURS

    # 1
    if role == ROLE_ADMIN:
        return ALLOW

    # 2
    if operation is Operation.CREATE_SET:
        if not is_chef:
            return _deny("role_not_permitted")
        if actor.troupe_id is None or resource.troupe_id != actor.troupe_id:
            return _deny("wrong_troupe")
        return ALLOW

    # 3
    if operation in _CLASSIFY_OPS:
        if is_chef:
            return ALLOW if resource.uploaded_by_id == actor.id else _deny("not_owner")
        if is_branche:
            return ALLOW if _granted(actor, resource.district_id) else _deny("district_not_granted")
        return _deny("role_not_permitted")

    # 4
    if operation in _REVIEW_OPS:
        if is_branche:
            return ALLOW if _granted(actor, resource.district_id) else _deny("district_not_granted")
        if is_chef:
            return _deny("separation_of_duties")
        return _deny("role_not_permitted")

    # 5
    if operation is Operation.DELETE:
        return ALLOW if resource.uploaded_by_id == actor.id else _deny("not_owner")

    # 6
    if operation is Operation.VIEW_UNAPPROVED:
        if resource.status == STATUS_APPROVED:
            return ALLOW
        if is_chef:
            return ALLOW if resource.uploaded_by_id == actor.id else _deny("not_owner")
        if is_branche:
            return ALLOW if _granted(actor, resource.district_id) else _deny("district_not_granted")
        return _deny("not_published")

    if operation is Operation.EDIT_PICTURE:
        if is_branche:
            return ALLOW if _granted(actor, resource.district_id) else _deny("district_not_granted")
        return _deny("role_not_permitted")

    if operation is Operation.VIEW_PROGRESS:
        if is_chef:
            if actor.troupe_id is None or resource.troupe_id != actor.troupe_id:
                return _deny("wrong_troupe")
            return ALLOW
        if is_branche:
            return ALLOW if _granted(actor, resource.district_id) else _deny("district_not_granted")
        return _deny("role_not_permitted")

    # 7
    if operation in _GROUP_MEMBERSHIP_OPS:
        if operation is not Operation.CREATE_GROUP and resource.created_by_id == actor.id:
            return ALLOW
        if is_branche:
            if resource.district_ids and resource.district_ids <= actor.granted_district_ids:
                return ALLOW
            return _deny("district_not_granted")
        return _deny("role_not_permitted")

    # 8
    if operation is Operation.DELETE_GROUP:
        return ALLOW if resource.created_by_id == actor.id else _deny("not_creator")

    # 9
    return _deny("no_matching_rule")


def authorize(actor: Actor | None, operation: Operation, resource: Resource) -> None:
    """Raise unless ``decide`` allows; anonymous callers get 401 rather than 403."""
    decision = decide(actor, operation, resource)
    if decision.allow:
        return
    if actor is None:
        raise AuthenticationRequired()
    raise AuthorizationDenied(
        actor_id=actor.id,
        operation=operation.value,
        resource=resource.label(),
        reason=decision.deny_reason or "denied",
    )
