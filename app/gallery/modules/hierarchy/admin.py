from __future__ import annotations

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from app.gallery.auth import require_actor
from app.gallery.db import db_session
from app.gallery.errors import NotFound
from app.gallery.models import ROLE_ADMIN, User
from app.gallery.modules.hierarchy import service as svc
from app.gallery.modules.hierarchy.models import District, Group, Patrouille, Troupe
from app.gallery.rbac import require_role
from app.gallery.utils import int_list, json_payload, optional_int, required_int

bp = Blueprint("hierarchy", __name__)


def _get_or_404(s, model, obj_id: int):
    obj = s.get(model, obj_id)
    if obj is None:
        raise NotFound(model.__name__, obj_id)
    return obj


@bp.get("/districts")
def list_districts_public():
    s = db_session()
    districts = s.scalars(select(District).order_by(District.name.asc())).all()
    return jsonify({"districts": [svc.district_dict(d) for d in districts]})


@bp.get("/admin/districts")
@require_role(ROLE_ADMIN)
def list_districts():
    s = db_session()
    districts = s.scalars(select(District).order_by(District.name.asc())).all()
    out = []
    for d in districts:
        row = svc.district_dict(d)
        row["groups"] = [svc.group_dict(grp) for grp in d.groups]
        out.append(row)
    return jsonify({"districts": out})


@bp.post("/admin/districts")
@require_role(ROLE_ADMIN)
def create_district():
    s = db_session()
    data = json_payload()
    d = svc.create_district(s, name=data.get("name"), code=data.get("code"), actor=require_actor())
    s.commit()
    return jsonify(svc.district_dict(d)), 201


@bp.put("/admin/districts/<int:district_id>")
@require_role(ROLE_ADMIN)
def update_district(district_id: int):
    s = db_session()
    d = _get_or_404(s, District, district_id)
    data = json_payload()
    svc.update_district(s, d, actor=require_actor(), name=data.get("name"), code=data.get("code"))
    s.commit()
    return jsonify(svc.district_dict(d))


@bp.delete("/admin/districts/<int:district_id>")
@require_role(ROLE_ADMIN)
def delete_district(district_id: int):
    s = db_session()
    d = _get_or_404(s, District, district_id)
    svc.delete_district(s, d, actor=require_actor())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/admin/groups")
@require_role(ROLE_ADMIN)
def create_group():
    s = db_session()
    data = json_payload()
    grp = svc.create_group(
        s,
        name=data.get("name"),
        code=data.get("code"),
        district_id=required_int(data, "districtId"),
        actor=require_actor(),
    )
    s.commit()
    return jsonify(svc.group_dict(grp)), 201


@bp.delete("/admin/groups/<int:group_id>")
@require_role(ROLE_ADMIN)
def delete_group(group_id: int):
    s = db_session()
    grp = _get_or_404(s, Group, group_id)
    svc.delete_group(s, grp, actor=require_actor())
    s.commit()
    return jsonify({"ok": True})


@bp.get("/admin/troupes")
@require_role(ROLE_ADMIN)
def list_troupes():
    s = db_session()
    stmt = select(Troupe).order_by(Troupe.name.asc())
    group_id = optional_int(request.args, "groupId")
    if group_id is not None:
        stmt = stmt.where(Troupe.group_id == group_id)
    return jsonify({"troupes": [svc.troupe_dict(t) for t in s.scalars(stmt)]})


@bp.post("/admin/troupes")
@require_role(ROLE_ADMIN)
def create_troupe():
    s = db_session()
    data = json_payload()
    t = svc.create_troupe(
        s,
        name=data.get("name"),
        code=data.get("code"),
        group_id=required_int(data, "groupId"),
        actor=require_actor(),
    )
    s.commit()
    return jsonify(svc.troupe_dict(t)), 201


@bp.delete("/admin/troupes/<int:troupe_id>")
@require_role(ROLE_ADMIN)
def delete_troupe(troupe_id: int):
    s = db_session()
    t = _get_or_404(s, Troupe, troupe_id)
    svc.delete_troupe(s, t, actor=require_actor())
    s.commit()
    return jsonify({"ok": True})


@bp.post("/admin/patrouilles")
@require_role(ROLE_ADMIN)
def create_patrouille():
    s = db_session()
    data = json_payload()
    p = svc.create_patrouille(
        s,
        name=data.get("name"),
        troupe_id=required_int(data, "troupeId"),
        totem=data.get("totem"),
        cri=data.get("cri"),
        actor=require_actor(),
    )
    s.commit()
    return jsonify(svc.patrouille_dict(p)), 201


@bp.delete("/admin/patrouilles/<int:patrouille_id>")
@require_role(ROLE_ADMIN)
def delete_patrouille(patrouille_id: int):
    s = db_session()
    p = _get_or_404(s, Patrouille, patrouille_id)
    svc.delete_patrouille(s, p, actor=require_actor())
    s.commit()
    return jsonify({"ok": True})


@bp.get("/admin/users")
@require_role(ROLE_ADMIN)
def list_users():
    s = db_session()
    users = s.scalars(select(User).order_by(User.email.asc())).all()
    return jsonify({"users": [svc.user_dict(u) for u in users]})


@bp.post("/admin/users")
@require_role(ROLE_ADMIN)
def create_user():
    s = db_session()
    data = json_payload()
    u = svc.create_user(
        s,
        email=data.get("email"),
        password=data.get("password"),
        role=(data.get("role") or "").strip(),
        name=data.get("name") or "",
        troupe_id=optional_int(data, "troupeId"),
        actor=require_actor(),
    )
    s.commit()
    return jsonify(svc.user_dict(u)), 201


@bp.put("/admin/users/<int:user_id>")
@require_role(ROLE_ADMIN)
def update_user(user_id: int):
    s = db_session()
    u = _get_or_404(s, User, user_id)
    data = json_payload()
    is_active = data.get("isActive")
    svc.update_user(
        s,
        u,
        actor=require_actor(),
        role=(data.get("role") or "").strip() or None,
        troupe_id=optional_int(data, "troupeId"),
        is_active=bool(is_active) if is_active is not None else None,
    )
    s.commit()
    return jsonify(svc.user_dict(u))


@bp.put("/admin/users/<int:user_id>/districts")
@require_role(ROLE_ADMIN)
def set_user_districts(user_id: int):
    s = db_session()
    u = _get_or_404(s, User, user_id)
    data = json_payload()
    district_ids = int_list(data, "districtIds", required=False)
    svc.set_district_grants(s, u, district_ids, actor=require_actor())
    s.commit()
    return jsonify(svc.user_dict(u))
