from __future__ import annotations

import logging

from botocore.exceptions import BotoCoreError, ClientError
from flask import Blueprint, current_app, jsonify, request

from app.gallery.auth import current_actor, require_actor
from app.gallery.db import db_session
from app.gallery.errors import PersistenceUnavailable, ValidationError
from app.gallery.modules.submissions.models import PICTURE_TYPES, TYPE_INSTALLATION_PHOTO
from app.gallery.modules.submissions.service import (
    SubmissionService,
    picture_dict,
    picture_set_dict,
)
from app.gallery.modules.submissions.workflow import PictureClassification
from app.gallery.storage import StorageError
from app.gallery.utils import int_list, json_payload, optional_int, parse_bool, parse_datetime, required_int

logger = logging.getLogger(__name__)

bp = Blueprint("submissions", __name__)

# Blob backend failures: the upload can be retried as is.
_STORE_ERRORS = (OSError, StorageError, BotoCoreError, ClientError)


def _service() -> SubmissionService:
    return SubmissionService(db_session(), current_app.extensions["gallery_storage"])


def _upper(raw) -> str | None:
    value = (raw or "").strip().upper()
    return value or None


@bp.get("/sets")
def list_sets():
    args = request.args
    page = max(optional_int(args, "page") or 1, 1)
    limit = optional_int(args, "limit") or 20
    items, total = _service().list_sets(
        current_actor(),
        status=_upper(args.get("status")),
        set_type=_upper(args.get("type")),
        category_id=optional_int(args, "categoryId"),
        troupe_id=optional_int(args, "troupeId"),
        group_id=optional_int(args, "groupId"),
        patrouille_id=optional_int(args, "patrouilleId"),
        highlights=parse_bool(args.get("highlights")),
        start=parse_datetime(args.get("startDate"), "startDate"),
        end=parse_datetime(args.get("endDate"), "endDate"),
        page=page,
        limit=limit,
    )
    return jsonify(
        {
            "sets": [picture_set_dict(ps) for ps in items],
            "pagination": {"total": total, "page": page, "limit": limit},
        }
    )


@bp.get("/sets/<int:set_id>")
def get_set(set_id: int):
    ps = _service().get_set(current_actor(), set_id)
    return jsonify(picture_set_dict(ps))


@bp.post("/sets")
def create_set():
    actor = require_actor()
    files = [f for f in request.files.getlist("pictures") if f and f.filename]
    max_files = current_app.config.get("MAX_UPLOAD_FILES", 100)
    if len(files) > max_files:
        raise ValidationError(f"At most {max_files} pictures per set", details={"pictures": "too_many"})
    set_type = _upper(request.form.get("type")) or TYPE_INSTALLATION_PHOTO
    if set_type not in PICTURE_TYPES:
        raise ValidationError(f"Invalid type: {set_type}", details={"type": "invalid"})
    troupe_id = optional_int(request.form, "troupeId")
    patrouille_id = optional_int(request.form, "patrouilleId")

    # Blobs go to storage before the workflow runs; undo them if it refuses.
    svc = _service()
    locators: list[str] = []
    try:
        try:
            for f in files:
                locators.append(svc.storage.store(f.read(), f.mimetype))
        except _STORE_ERRORS as exc:
            logger.error("Blob store failed after %s of %s picture(s): %s", len(locators), len(files), exc)
            raise PersistenceUnavailable() from exc
        ps = svc.create_set(
            actor,
            set_type=set_type,
            locators=locators,
            troupe_id=troupe_id,
            patrouille_id=patrouille_id,
            title=request.form.get("title"),
            description=request.form.get("description"),
        )
    except Exception:
        if locators:
            logger.info("Set creation failed; removing %s stored blob(s)", len(locators))
            svc.discard_blobs(locators)
        raise
    return jsonify(picture_set_dict(ps)), 201


@bp.put("/sets/<int:set_id>/classify")
def classify(set_id: int):
    data = json_payload()
    ps = _service().classify(
        current_actor(),
        set_id,
        category_id=optional_int(data, "categoryId"),
        sub_category_id=optional_int(data, "subCategoryId"),
        description=data.get("description"),
    )
    return jsonify(picture_set_dict(ps))


@bp.put("/sets/<int:set_id>/classify-bulk")
def classify_bulk(set_id: int):
    data = json_payload()
    raw = data.get("classifications")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("classifications must be a non-empty list", details={"classifications": "required"})
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError("Each classification must be an object", details={"classifications": "invalid"})
        items.append(
            PictureClassification(
                picture_id=required_int(entry, "pictureId"),
                category_id=required_int(entry, "categoryId"),
                taken_at=parse_datetime(entry.get("takenAt"), "takenAt"),
                type=_upper(entry.get("type")),
            )
        )
    ps = _service().bulk_classify(current_actor(), set_id, items, set_type=_upper(data.get("type")))
    return jsonify(picture_set_dict(ps))


@bp.post("/sets/<int:set_id>/approve")
def approve(set_id: int):
    data = json_payload()
    ps = _service().approve(current_actor(), set_id, is_highlight=parse_bool(data.get("isHighlight")))
    return jsonify(picture_set_dict(ps))


@bp.post("/sets/<int:set_id>/reject")
def reject(set_id: int):
    data = json_payload()
    ps = _service().reject(current_actor(), set_id, reason=data.get("reason"))
    return jsonify(picture_set_dict(ps))


@bp.delete("/sets/<int:set_id>")
def delete_set(set_id: int):
    _service().delete_set(current_actor(), set_id)
    return jsonify({"ok": True})


@bp.delete("/sets/<int:set_id>/pictures/<int:picture_id>")
def delete_picture(set_id: int, picture_id: int):
    ps = _service().delete_picture(current_actor(), set_id, picture_id)
    return jsonify(picture_set_dict(ps))


# Individual pictures


def _picture_row(p) -> dict:
    out = picture_dict(p)
    out["pictureSet"] = picture_set_dict(p.picture_set, with_pictures=False)
    return out


@bp.get("/pictures")
def list_pictures():
    args = request.args
    page = max(optional_int(args, "page") or 1, 1)
    limit = optional_int(args, "limit") or 50
    items, total = _service().list_pictures(
        current_actor(),
        status=_upper(args.get("status")),
        category_id=optional_int(args, "categoryId"),
        picture_type=_upper(args.get("type")),
        sort_by=(args.get("sortBy") or "uploadedAt").strip(),
        sort_order=(args.get("sortOrder") or "desc").strip().lower(),
        page=page,
        limit=limit,
    )
    return jsonify(
        {
            "pictures": [_picture_row(p) for p in items],
            "pagination": {"total": total, "page": page, "limit": limit},
        }
    )


@bp.put("/pictures/<int:picture_id>")
def update_picture(picture_id: int):
    data = json_payload()
    changes = {}
    if "categoryId" in data:
        changes["category_id"] = optional_int(data, "categoryId")
    if "takenAt" in data:
        changes["taken_at"] = parse_datetime(data.get("takenAt"), "takenAt")
    if "type" in data:
        changes["type"] = _upper(data.get("type"))
    picture = _service().update_picture(current_actor(), picture_id, changes)
    return jsonify(_picture_row(picture))


@bp.put("/pictures/bulk-update")
def bulk_update_pictures():
    data = json_payload()
    updates = data.get("updates")
    if not isinstance(updates, dict):
        raise ValidationError("updates must be an object", details={"updates": "required"})
    changes = {}
    if "categoryId" in updates:
        changes["category_id"] = optional_int(updates, "categoryId")
    if "type" in updates:
        changes["type"] = _upper(updates.get("type"))
    pictures = _service().bulk_update_pictures(current_actor(), int_list(data, "pictureIds"), changes)
    return jsonify({"count": len(pictures), "pictureIds": [p.id for p in pictures]})


@bp.delete("/pictures/bulk-delete")
def bulk_delete_pictures():
    data = json_payload()
    deleted, skipped = _service().bulk_delete_pictures(current_actor(), int_list(data, "pictureIds"))
    return jsonify({"deleted": len(deleted), "deletedIds": deleted, "skipped": skipped})
