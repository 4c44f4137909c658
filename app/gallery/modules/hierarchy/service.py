"""
District -> Group -> Troupe -> Patrouille administration, plus the troupe-to-
district lookup that every authorization decision depends on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.gallery.audit import record_event
from app.gallery.errors import ConflictError, NotFound, ValidationError
from app.gallery.models import ROLE_CHEF_TROUPE, ROLES, DistrictGrant, User
from app.gallery.modules.hierarchy.models import District, Group, Patrouille, Troupe

if TYPE_CHECKING:
    from app.gallery.auth import Actor


class AncestryResolver:
    """
    Troupe -> district lookup cached for the lifetime of one resolver.

    Build one per request (SubmissionService does) so a single decision never
    sees two different answers, while a later request always re-reads the tree.
    """

    def __init__(self, s: Session) -> None:
        self.s = s
        self._troupe_district: dict[int, int] = {}

    def district_for_troupe(self, troupe_id: int) -> int:
        cached = self._troupe_district.get(troupe_id)
        if cached is not None:
            return cached
        row = self.s.execute(
            select(Group.district_id).join(Troupe, Troupe.group_id == Group.id).where(Troupe.id == troupe_id)
        ).one_or_none()
        if row is None:
            raise NotFound("Troupe", troupe_id)
        self._troupe_district[troupe_id] = row[0]
        return row[0]

    def districts_for_troupes(self, troupe_ids: set[int] | frozenset[int]) -> frozenset[int]:
        return frozenset(self.district_for_troupe(t) for t in troupe_ids)


def normalize_code(raw: str) -> str:
    return (raw or "").strip().upper()


def _require(value: str | None, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value


def _get_or_404(s: Session, model, obj_id: int):
    obj = s.get(model, obj_id)
    if obj is None:
        raise NotFound(model.__name__, obj_id)
    return obj


def _ensure_unique_code(s: Session, model, code: str, *, exclude_id: int | None = None) -> None:
    stmt = select(model.id).where(model.code == code)
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    if s.execute(stmt).first() is not None:
        raise ConflictError(model.__name__, "code", code)


def _count(s: Session, column, value: int) -> int:
    return s.scalar(select(func.count()).where(column == value)) or 0


# Districts


def create_district(s: Session, *, name: str, code: str, actor: Actor) -> District:
    name = _require(name, "name")
    code = normalize_code(_require(code, "code"))
    _ensure_unique_code(s, District, code)
    d = District(name=name, code=code)
    s.add(d)
    s.flush()
    record_event(s, actor=actor, action="hierarchy.district.create", entity_type="District", entity_id=str(d.id),
                 metadata={"code": code})
    return d


def update_district(s: Session, district: District, *, actor: Actor, name: str | None = None,
                    code: str | None = None) -> District:
    if name is not None:
        district.name = _require(name, "name")
    if code is not None:
        code = normalize_code(_require(code, "code"))
        _ensure_unique_code(s, District, code, exclude_id=district.id)
        district.code = code
    record_event(s, actor=actor, action="hierarchy.district.update", entity_type="District",
                 entity_id=str(district.id))
    return district


def delete_district(s: Session, district: District, *, actor: Actor) -> None:
    if _count(s, Group.district_id, district.id):
        raise ConflictError("District", "groups", message="Cannot delete district with existing groups")
    s.execute(DistrictGrant.__table__.delete().where(DistrictGrant.district_id == district.id))
    record_event(s, actor=actor, action="hierarchy.district.delete", entity_type="District",
                 entity_id=str(district.id), metadata={"code": district.code})
    s.delete(district)


# Groups


def create_group(s: Session, *, name: str, code: str, district_id: int, actor: Actor) -> Group:
    name = _require(name, "name")
    code = normalize_code(_require(code, "code"))
    _get_or_404(s, District, district_id)
    _ensure_unique_code(s, Group, code)
    grp = Group(name=name, code=code, district_id=district_id)
    s.add(grp)
    s.flush()
    record_event(s, actor=actor, action="hierarchy.group.create", entity_type="Group", entity_id=str(grp.id),
                 metadata={"code": code, "district_id": district_id})
    return grp


def delete_group(s: Session, grp: Group, *, actor: Actor) -> None:
    if _count(s, Troupe.group_id, grp.id):
        raise ConflictError("Group", "troupes", message="Cannot delete group with existing troupes")
    record_event(s, actor=actor, action="hierarchy.group.delete", entity_type="Group", entity_id=str(grp.id))
    s.delete(grp)


# Troupes


def create_troupe(s: Session, *, name: str, code: str, group_id: int, actor: Actor) -> Troupe:
    name = _require(name, "name")
    code = normalize_code(_require(code, "code"))
    _get_or_404(s, Group, group_id)
    _ensure_unique_code(s, Troupe, code)
    t = Troupe(name=name, code=code, group_id=group_id)
    s.add(t)
    s.flush()
    record_event(s, actor=actor, action="hierarchy.troupe.create", entity_type="Troupe", entity_id=str(t.id),
                 metadata={"code": code, "group_id": group_id})
    return t


def delete_troupe(s: Session, troupe: Troupe, *, actor: Actor) -> None:
    from app.gallery.modules.submissions.models import PictureSet

    if _count(s, Patrouille.troupe_id, troupe.id):
        raise ConflictError("Troupe", "patrouilles", message="Cannot delete troupe with existing patrouilles")
    if _count(s, User.troupe_id, troupe.id):
        raise ConflictError("Troupe", "users", message="Cannot delete troupe with assigned users")
    if _count(s, PictureSet.troupe_id, troupe.id):
        raise ConflictError("Troupe", "picture_sets", message="Cannot delete troupe with picture sets")
    record_event(s, actor=actor, action="hierarchy.troupe.delete", entity_type="Troupe", entity_id=str(troupe.id))
    s.delete(troupe)


# Patrouilles


def create_patrouille(s: Session, *, name: str, troupe_id: int, actor: Actor, totem: str | None = None,
                      cri: str | None = None) -> Patrouille:
    name = _require(name, "name")
    _get_or_404(s, Troupe, troupe_id)
    p = Patrouille(
        name=name,
        totem=(totem or "").strip() or None,
        cri=(cri or "").strip() or None,
        troupe_id=troupe_id,
    )
    s.add(p)
    s.flush()
    record_event(s, actor=actor, action="hierarchy.patrouille.create", entity_type="Patrouille",
                 entity_id=str(p.id), metadata={"troupe_id": troupe_id})
    return p


def delete_patrouille(s: Session, patrouille: Patrouille, *, actor: Actor) -> None:
    from app.gallery.modules.submissions.models import PictureSet

    if _count(s, PictureSet.patrouille_id, patrouille.id):
        raise ConflictError("Patrouille", "picture_sets", message="Cannot delete patrouille with picture sets")
    record_event(s, actor=actor, action="hierarchy.patrouille.delete", entity_type="Patrouille",
                 entity_id=str(patrouille.id))
    s.delete(patrouille)


# Users and district grants


def _check_role_troupe(s: Session, role: str, troupe_id: int | None) -> None:
    if role not in ROLES:
        raise ValidationError(f"Invalid role: {role}", details={"role": "invalid"})
    if role == ROLE_CHEF_TROUPE:
        if troupe_id is None:
            raise ValidationError("troupeId is required for CHEF_TROUPE", details={"troupeId": "required"})
        _get_or_404(s, Troupe, troupe_id)
    elif troupe_id is not None:
        raise ValidationError("troupeId is only allowed for CHEF_TROUPE", details={"troupeId": "not_allowed"})


def create_user(
    s: Session,
    *,
    email: str,
    password: str,
    role: str,
    actor: Actor,
    name: str = "",
    troupe_id: int | None = None,
    force_password_change: bool = True,
) -> User:
    email = _require(email, "email").lower()
    password = _require(password, "password")
    _check_role_troupe(s, role, troupe_id)
    if s.execute(select(User.id).where(User.email == email)).first() is not None:
        raise ConflictError("User", "email", email)
    u = User(
        email=email,
        name=(name or "").strip(),
        password_hash=generate_password_hash(password),
        role=role,
        troupe_id=troupe_id,
        is_active=True,
        force_password_change=force_password_change,
    )
    s.add(u)
    s.flush()
    record_event(s, actor=actor, action="user.create", entity_type="User", entity_id=str(u.id),
                 metadata={"email": email, "role": role})
    return u


def update_user(
    s: Session,
    user: User,
    *,
    actor: Actor,
    role: str | None = None,
    troupe_id: int | None = None,
    is_active: bool | None = None,
) -> User:
    new_role = role or user.role
    new_troupe = troupe_id if (troupe_id is not None or role is not None) else user.troupe_id
    _check_role_troupe(s, new_role, new_troupe)
    changes = {}
    if new_role != user.role:
        changes["role"] = {"from": user.role, "to": new_role}
        user.role = new_role
    if new_troupe != user.troupe_id:
        changes["troupe_id"] = {"from": user.troupe_id, "to": new_troupe}
        user.troupe_id = new_troupe
    if is_active is not None and is_active != user.is_active:
        changes["is_active"] = {"from": user.is_active, "to": is_active}
        user.is_active = is_active
    if changes:
        record_event(s, actor=actor, action="user.update", entity_type="User", entity_id=str(user.id),
                     metadata=changes)
    return user


def set_district_grants(s: Session, user: User, district_ids: list[int], *, actor: Actor) -> User:
    wanted = set(district_ids)
    for district_id in wanted:
        _get_or_404(s, District, district_id)
    current = {gr.district_id for gr in user.district_grants}
    user.district_grants = [gr for gr in user.district_grants if gr.district_id in wanted]
    for district_id in sorted(wanted - current):
        user.district_grants.append(DistrictGrant(user_id=user.id, district_id=district_id))
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.district_grants",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"added": sorted(wanted - current), "removed": sorted(current - wanted)},
    )
    return user


# Serialization


def district_dict(d: District) -> dict:
    return {"id": d.id, "name": d.name, "code": d.code}


def group_dict(grp: Group) -> dict:
    return {"id": grp.id, "name": grp.name, "code": grp.code, "districtId": grp.district_id}


def troupe_dict(t: Troupe) -> dict:
    return {"id": t.id, "name": t.name, "code": t.code, "groupId": t.group_id, "districtId": t.district_id}


def patrouille_dict(p: Patrouille) -> dict:
    return {"id": p.id, "name": p.name, "totem": p.totem, "cri": p.cri, "troupeId": p.troupe_id}


def user_dict(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "role": u.role,
        "troupeId": u.troupe_id,
        "isActive": u.is_active,
        "forcePasswordChange": u.force_password_change,
        "districtIds": sorted(u.granted_district_ids),
    }
