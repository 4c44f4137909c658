from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.gallery.auth import current_actor
from app.gallery.db import db_session
from app.gallery.modules.hierarchy.service import troupe_dict
from app.gallery.modules.schematics.service import SchematicProgress, progress_dict
from app.gallery.utils import optional_int

bp = Blueprint("schematics", __name__)


# Literal segments first so "troupe" and "all" never reach the int converter.
@bp.get("/schematics/progress/troupe/<int:troupe_id>")
def troupe_progress(troupe_id: int):
    troupe, rows = SchematicProgress(db_session()).troupe_progress(current_actor(), troupe_id)
    return jsonify({"troupe": troupe_dict(troupe), "patrouilles": [progress_dict(r, with_sets=False) for r in rows]})


@bp.get("/schematics/progress/all")
def all_progress():
    rows = SchematicProgress(db_session()).all_progress(
        current_actor(),
        group_id=optional_int(request.args, "groupId"),
        district_id=optional_int(request.args, "districtId"),
    )
    return jsonify(
        {
            "patrouilles": [progress_dict(r, with_sets=False) for r in rows],
            "totalItems": rows[0].total_items if rows else 0,
        }
    )


@bp.get("/schematics/progress/<int:patrouille_id>")
def patrouille_progress(patrouille_id: int):
    progress = SchematicProgress(db_session()).patrouille_progress(current_actor(), patrouille_id)
    return jsonify(progress_dict(progress))
