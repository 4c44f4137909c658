from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.gallery.audit import record_event
from app.gallery.errors import ConflictError, NotFound, ValidationError
from app.gallery.modules.categories.models import Category
from app.gallery.modules.submissions.models import (
    PICTURE_TYPES,
    STATUS_APPROVED,
    TYPE_INSTALLATION_PHOTO,
    Picture,
    PictureSet,
)

if TYPE_CHECKING:
    from app.gallery.auth import Actor

FLAG_FIELDS = ("is_upload_disabled", "is_hidden_from_browse", "is_schematic_enabled")


def get_category(s: Session, category_id: int | None) -> Category | None:
    if category_id is None:
        return None
    return s.get(Category, category_id)


def _child_count(s: Session, category_id: int) -> int:
    return s.scalar(select(func.count(Category.id)).where(Category.parent_id == category_id)) or 0


def _check_parent(s: Session, category: Category | None, parent_id: int | None) -> Category | None:
    """Categories are one level deep: a parent must itself be top-level."""
    if parent_id is None:
        return None
    if category is not None and category.id == parent_id:
        raise ValidationError("A category cannot be its own parent", details={"parentId": "self"})
    parent = s.get(Category, parent_id)
    if parent is None:
        raise NotFound("Category", parent_id)
    if parent.parent_id is not None:
        raise ValidationError("Parent category must be a top-level category", details={"parentId": "nested"})
    if category is not None and _child_count(s, category.id):
        raise ValidationError("A category with sub-categories cannot become a sub-category",
                              details={"parentId": "has_children"})
    return parent


def _check_type(raw: str | None) -> str:
    value = (raw or TYPE_INSTALLATION_PHOTO).strip().upper()
    if value not in PICTURE_TYPES:
        raise ValidationError(f"Invalid type: {raw}", details={"type": "invalid"})
    return value


def create_category(
    s: Session,
    *,
    name: str,
    actor: Actor,
    description: str | None = None,
    type: str | None = None,
    parent_id: int | None = None,
    display_order: int | None = None,
    flags: dict[str, bool] | None = None,
) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    _check_parent(s, None, parent_id)
    c = Category(
        name=name,
        description=(description or "").strip() or None,
        type=_check_type(type),
        parent_id=parent_id,
        display_order=display_order or 0,
    )
    for field_name, value in (flags or {}).items():
        if field_name in FLAG_FIELDS:
            setattr(c, field_name, bool(value))
    s.add(c)
    s.flush()
    record_event(s, actor=actor, action="category.create", entity_type="Category", entity_id=str(c.id),
                 metadata={"name": name, "parent_id": parent_id})
    return c


def update_category(s: Session, category: Category, *, actor: Actor, changes: dict[str, Any]) -> Category:
    """Apply the keys present in ``changes``; absent keys stay untouched."""
    before: dict[str, Any] = {}
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationError("name is required", details={"name": "required"})
        before["name"] = category.name
        category.name = name
    if "description" in changes:
        category.description = (changes["description"] or "").strip() or None
    if "type" in changes:
        before["type"] = category.type
        category.type = _check_type(changes["type"])
    if "display_order" in changes:
        category.display_order = changes["display_order"] or 0
    if "parent_id" in changes:
        _check_parent(s, category, changes["parent_id"])
        before["parent_id"] = category.parent_id
        category.parent_id = changes["parent_id"]
    for field_name in FLAG_FIELDS:
        if field_name in changes:
            before[field_name] = getattr(category, field_name)
            setattr(category, field_name, bool(changes[field_name]))
    s.flush()
    record_event(s, actor=actor, action="category.update", entity_type="Category", entity_id=str(category.id),
                 metadata={"before": before})
    return category


def set_main_picture(s: Session, category: Category, picture_id: int | None, *, actor: Actor) -> Category:
    """
    The cover must be a published picture filed under this category or one of
    its direct sub-categories (by its own category or its set's).
    """
    if picture_id is not None:
        picture = s.get(Picture, picture_id)
        if picture is None:
            raise NotFound("Picture", picture_id)
        ps = picture.picture_set
        if ps.status != STATUS_APPROVED:
            raise ConflictError("Picture", "status", ps.status,
                                message="Only pictures of approved sets can be a category cover")
        family = {category.id, *s.scalars(select(Category.id).where(Category.parent_id == category.id))}
        if not family & {picture.category_id, ps.category_id, ps.sub_category_id}:
            raise ValidationError(
                "Picture is not filed under this category",
                details={"mainPictureId": "category_mismatch"},
            )
    category.main_picture_id = picture_id
    s.flush()
    record_event(s, actor=actor, action="category.main_picture", entity_type="Category",
                 entity_id=str(category.id), metadata={"picture_id": picture_id})
    return category


def delete_category(s: Session, category: Category, *, actor: Actor) -> None:
    if _child_count(s, category.id):
        raise ConflictError("Category", "children", message="Cannot delete a category that has sub-categories")
    in_use = s.scalar(
        select(func.count(PictureSet.id)).where(
            or_(PictureSet.category_id == category.id, PictureSet.sub_category_id == category.id)
        )
    )
    in_use = (in_use or 0) + (s.scalar(select(func.count(Picture.id)).where(Picture.category_id == category.id)) or 0)
    if in_use:
        raise ConflictError("Category", "pictures", message="Cannot delete a category referenced by pictures")
    record_event(s, actor=actor, action="category.delete", entity_type="Category", entity_id=str(category.id),
                 metadata={"name": category.name})
    s.delete(category)


def list_categories(s: Session, *, include_hidden: bool = False) -> list[Category]:
    stmt = select(Category).where(Category.parent_id.is_(None))
    if not include_hidden:
        stmt = stmt.where(Category.is_hidden_from_browse.is_(False))
    stmt = stmt.order_by(Category.display_order.asc(), Category.name.asc())
    return list(s.scalars(stmt))


def category_dict(c: Category, *, include_hidden: bool = True, with_children: bool = True) -> dict:
    out: dict[str, Any] = {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "type": c.type,
        "displayOrder": c.display_order,
        "parentId": c.parent_id,
        "isUploadDisabled": c.is_upload_disabled,
        "isHiddenFromBrowse": c.is_hidden_from_browse,
        "isSchematicEnabled": c.is_schematic_enabled,
        "mainPictureId": c.main_picture_id,
    }
    if with_children:
        out["children"] = [
            category_dict(child, with_children=False)
            for child in c.children
            if include_hidden or not child.is_hidden_from_browse
        ]
    return out
