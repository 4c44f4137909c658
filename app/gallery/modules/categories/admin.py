from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.gallery.auth import current_actor, require_actor
from app.gallery.db import db_session
from app.gallery.errors import NotFound
from app.gallery.models import ROLE_ADMIN
from app.gallery.modules.categories import service as svc
from app.gallery.modules.categories.models import Category
from app.gallery.rbac import actor_has_role, require_role
from app.gallery.utils import json_payload, optional_int, parse_bool

bp = Blueprint("categories", __name__)

# JSON key -> model attribute
_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "type": "type",
    "displayOrder": "display_order",
    "parentId": "parent_id",
    "isUploadDisabled": "is_upload_disabled",
    "isHiddenFromBrowse": "is_hidden_from_browse",
    "isSchematicEnabled": "is_schematic_enabled",
}
_INT_FIELDS = ("displayOrder", "parentId")


def _changes(data: dict) -> dict:
    out = {}
    for key, attr in _FIELD_MAP.items():
        if key not in data:
            continue
        if key in _INT_FIELDS:
            out[attr] = optional_int(data, key)
        elif attr in svc.FLAG_FIELDS:
            out[attr] = parse_bool(data[key])
        else:
            out[attr] = data[key]
    return out


def _get_or_404(s, category_id: int) -> Category:
    c = s.get(Category, category_id)
    if c is None:
        raise NotFound("Category", category_id)
    return c


@bp.get("/categories")
def list_categories():
    s = db_session()
    is_admin = actor_has_role(current_actor(), ROLE_ADMIN)
    include_hidden = is_admin and parse_bool(request.args.get("includeHidden"))
    cats = svc.list_categories(s, include_hidden=include_hidden)
    return jsonify({"categories": [svc.category_dict(c, include_hidden=include_hidden) for c in cats]})


@bp.get("/categories/<int:category_id>")
def get_category(category_id: int):
    s = db_session()
    c = _get_or_404(s, category_id)
    if c.is_hidden_from_browse and not actor_has_role(current_actor(), ROLE_ADMIN):
        raise NotFound("Category", category_id)
    return jsonify(svc.category_dict(c, include_hidden=actor_has_role(current_actor(), ROLE_ADMIN)))


@bp.post("/admin/categories")
@require_role(ROLE_ADMIN)
def create_category():
    s = db_session()
    data = json_payload()
    changes = _changes(data)
    c = svc.create_category(
        s,
        name=changes.pop("name", ""),
        description=changes.pop("description", None),
        type=changes.pop("type", None),
        parent_id=changes.pop("parent_id", None),
        display_order=changes.pop("display_order", None),
        flags=changes,
        actor=require_actor(),
    )
    s.commit()
    return jsonify(svc.category_dict(c)), 201


@bp.put("/admin/categories/<int:category_id>")
@require_role(ROLE_ADMIN)
def update_category(category_id: int):
    s = db_session()
    c = _get_or_404(s, category_id)
    data = json_payload()
    svc.update_category(s, c, actor=require_actor(), changes=_changes(data))
    if "mainPictureId" in data:
        svc.set_main_picture(s, c, optional_int(data, "mainPictureId"), actor=require_actor())
    s.commit()
    return jsonify(svc.category_dict(c))


@bp.delete("/admin/categories/<int:category_id>")
@require_role(ROLE_ADMIN)
def delete_category(category_id: int):
    s = db_session()
    c = _get_or_404(s, category_id)
    svc.delete_category(s, c, actor=require_actor())
    s.commit()
    return jsonify({"ok": True})
