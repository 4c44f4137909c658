from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.gallery.auth import current_actor
from app.gallery.db import db_session
from app.gallery.modules.submissions.service import SubmissionService, design_group_dict, removal_dict
from app.gallery.utils import int_list, json_payload, optional_int

bp = Blueprint("design_groups", __name__)

# JSON key -> SubmissionService.update_group change key
_UPDATABLE = {"name": "name", "primaryPictureId": "primary_id", "categoryId": "category_id"}


def _service() -> SubmissionService:
    return SubmissionService(db_session(), current_app.extensions["gallery_storage"])


@bp.get("/groups")
def list_groups():
    args = request.args
    page = max(optional_int(args, "page") or 1, 1)
    limit = optional_int(args, "limit") or 50
    rows, total = _service().list_groups(
        current_actor(),
        category_id=optional_int(args, "categoryId"),
        page=page,
        limit=limit,
    )
    return jsonify(
        {
            "groups": [design_group_dict(group, members) for group, members in rows],
            "pagination": {"total": total, "page": page, "limit": limit},
        }
    )


@bp.get("/groups/<int:group_id>")
def get_group(group_id: int):
    group, members = _service().get_group(current_actor(), group_id)
    return jsonify(design_group_dict(group, members))


@bp.post("/groups")
def create_group():
    data = json_payload()
    group, members = _service().create_group(
        current_actor(),
        int_list(data, "pictureIds"),
        primary_id=optional_int(data, "primaryPictureId"),
        name=data.get("name"),
    )
    return jsonify(design_group_dict(group, members)), 201


@bp.put("/groups/<int:group_id>")
def update_group(group_id: int):
    data = json_payload()
    changes = {}
    for key, change_key in _UPDATABLE.items():
        if key not in data:
            continue
        changes[change_key] = data[key] if key == "name" else optional_int(data, key)
    group, members = _service().update_group(current_actor(), group_id, changes)
    return jsonify(design_group_dict(group, members))


@bp.post("/groups/<int:group_id>/pictures")
def add_pictures(group_id: int):
    data = json_payload()
    group, members = _service().add_to_group(current_actor(), group_id, int_list(data, "pictureIds"))
    return jsonify(design_group_dict(group, members))


@bp.delete("/groups/<int:group_id>/pictures/<int:picture_id>")
def remove_picture(group_id: int, picture_id: int):
    svc = _service()
    result = svc.remove_from_group(current_actor(), group_id, picture_id)
    body = removal_dict(result)
    if not result.dissolved:
        group, members = svc.get_group(current_actor(), group_id)
        body["group"] = design_group_dict(group, members)
    return jsonify(body)


@bp.delete("/groups/<int:group_id>")
def delete_group(group_id: int):
    released = _service().delete_group(current_actor(), group_id)
    return jsonify({"ok": True, "releasedPictureIds": list(released)})
