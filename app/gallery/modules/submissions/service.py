"""
Picture set and design group operations.

Every public method is one unit of work: load the target (row-locked where the
backend supports it), resolve its district, ask ``decide()``, run the workflow
or grouping step, write the status with a compare-and-set and append the audit
event. Anything raised inside rolls the whole thing back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.gallery.audit import record_event
from app.gallery.auth import Actor
from app.gallery.db import unit_of_work
from app.gallery.errors import (
    AuthenticationRequired,
    InvalidTransition,
    NotFound,
    ValidationError,
    WorkflowViolation,
)
from app.gallery.models import ROLE_ADMIN, ROLE_BRANCHE_ECLAIREURS, ROLE_CHEF_TROUPE
from app.gallery.modules.categories.models import Category
from app.gallery.modules.design_groups.engine import GroupingEngine, RemovalResult
from app.gallery.modules.design_groups.models import DesignGroup
from app.gallery.modules.hierarchy.models import District, Group, Patrouille, Troupe
from app.gallery.modules.hierarchy.service import AncestryResolver
from app.gallery.modules.submissions import workflow
from app.gallery.modules.submissions.authorization import Operation, Resource, authorize, decide
from app.gallery.modules.submissions.models import (
    PICTURE_TYPES,
    STATUS_APPROVED,
    STATUSES,
    Picture,
    PictureSet,
)
from app.gallery.modules.submissions.workflow import Event, PictureClassification
from app.gallery.storage import Storage
from app.gallery.utils import iso

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# sortBy -> column for the individual picture listing
PICTURE_SORTS = {
    "uploadedAt": Picture.uploaded_at,
    "district": District.name,
    "group": Group.name,
    "troupe": Troupe.name,
    "category": Category.name,
    "type": Picture.type,
}


class SubmissionService:
    def __init__(
        self,
        s: Session,
        storage: Storage | None = None,
        *,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.s = s
        self.storage = storage
        self._now = now
        self.ancestry = AncestryResolver(s)
        self.grouping = GroupingEngine(s)

    # Plumbing

    def unit_of_work(self) -> AbstractContextManager[Session]:
        return unit_of_work(self.s)

    def _authorize(self, actor: Actor | None, operation: Operation, resource: Resource) -> None:
        authorize(actor, operation, resource)

    @staticmethod
    def _granted_troupes(actor: Actor):
        return (
            select(Troupe.id)
            .join(Group, Group.id == Troupe.group_id)
            .where(Group.district_id.in_(sorted(actor.granted_district_ids)))
        )

    def _visible_set_clause(self, actor: Actor | None):
        """SQL form of the VIEW_UNAPPROVED rule over ``PictureSet``; None means unrestricted."""
        if actor is not None and actor.role == ROLE_ADMIN:
            return None
        approved = PictureSet.status == STATUS_APPROVED
        if actor is None:
            return approved
        if actor.role == ROLE_CHEF_TROUPE:
            return or_(approved, PictureSet.uploaded_by_id == actor.id)
        if actor.role == ROLE_BRANCHE_ECLAIREURS and actor.granted_district_ids:
            return or_(approved, PictureSet.troupe_id.in_(self._granted_troupes(actor)))
        return approved

    def _visible_members(self, actor: Actor | None, members: Sequence[Picture]) -> list[Picture]:
        return [
            p
            for p in members
            if decide(actor, Operation.VIEW_UNAPPROVED, self._set_resource(p.picture_set)).allow
        ]

    def _load_set(self, set_id: int, *, for_update: bool = True) -> PictureSet:
        stmt = select(PictureSet).where(PictureSet.id == set_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update(of=PictureSet)
        ps = self.s.scalars(stmt).unique().one_or_none()
        if ps is None:
            raise NotFound("Picture set", set_id)
        return ps

    def _set_resource(self, ps: PictureSet) -> Resource:
        return Resource(
            kind="PictureSet",
            id=ps.id,
            troupe_id=ps.troupe_id,
            district_id=self.ancestry.district_for_troupe(ps.troupe_id),
            uploaded_by_id=ps.uploaded_by_id,
            status=ps.status,
        )

    def _cas_status(self, set_id: int, event: Event, from_status: str) -> str:
        """
        Persist the transition only if the stored status is still one the event
        may leave from. A concurrent terminal transition makes this a no-op and
        the caller's transition fails.

        Must run before the session flushes the in-memory status, otherwise the
        ORM write would overwrite the concurrent one.
        """
        target = workflow.TRANSITIONS[event][1]
        result = self.s.execute(
            update(PictureSet)
            .where(PictureSet.id == set_id, PictureSet.status.in_(workflow.allowed_sources(event)))
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self.s.scalar(select(PictureSet.status).where(PictureSet.id == set_id))
            logger.info(
                "Lost status race on picture set %s: %s expected one of %s, found %s",
                set_id,
                event.value,
                sorted(workflow.allowed_sources(event)),
                current,
            )
            raise InvalidTransition(from_status=current or from_status, event=event.value)
        return target

    def _category(self, category_id: int | None) -> Category | None:
        if category_id is None:
            return None
        category = self.s.get(Category, category_id)
        if category is None:
            raise NotFound("Category", category_id)
        return category

    def discard_blobs(self, locators: Sequence[str]) -> None:
        if self.storage is None:
            return
        for locator in locators:
            try:
                self.storage.delete(locator)
            except Exception:
                # The rows are already gone; an orphaned blob is only wasted space.
                logger.exception("Failed to delete blob %s", locator)

    def _next_title(self, troupe: Troupe) -> str:
        existing = self.s.scalar(select(func.count(PictureSet.id)).where(PictureSet.troupe_id == troupe.id)) or 0
        grp = troupe.group
        return f"{grp.district.name}_{grp.name}_{troupe.name}_Set{existing:02d}"

    # Picture sets

    def create_set(
        self,
        actor: Actor | None,
        *,
        set_type: str,
        locators: Sequence[str],
        troupe_id: int | None = None,
        patrouille_id: int | None = None,
        title: str | None = None,
        description: str | None = None,
    ) -> PictureSet:
        with self.unit_of_work():
            if actor is None:
                raise AuthenticationRequired()
            troupe_id = troupe_id if troupe_id is not None else actor.troupe_id
            if troupe_id is None:
                raise ValidationError("troupeId is required", details={"troupeId": "required"})
            troupe = self.s.get(Troupe, troupe_id)
            if troupe is None:
                raise NotFound("Troupe", troupe_id)
            self._authorize(
                actor,
                Operation.CREATE_SET,
                Resource(kind="Troupe", id=troupe.id, troupe_id=troupe.id,
                         district_id=self.ancestry.district_for_troupe(troupe.id)),
            )
            if actor.role != ROLE_CHEF_TROUPE:
                raise WorkflowViolation(from_status=None, event=Event.CREATE.value, guard="uploader_role")

            patrouille = None
            if patrouille_id is not None:
                patrouille = self.s.get(Patrouille, patrouille_id)
                if patrouille is None:
                    raise NotFound("Patrouille", patrouille_id)

            ps = workflow.new_picture_set(
                title=(title or "").strip() or self._next_title(troupe),
                set_type=set_type,
                troupe_id=troupe.id,
                uploader_id=actor.id,
                locators=locators,
                now=self._now(),
                patrouille=patrouille,
            )
            ps.description = (description or "").strip() or None
            self.s.add(ps)
            self.s.flush()
            record_event(
                self.s,
                actor=actor,
                action="set.create",
                entity_type="PictureSet",
                entity_id=str(ps.id),
                metadata={"troupe_id": troupe.id, "type": set_type, "pictures": len(locators)},
            )
        logger.info("Picture set %s created by %s with %s picture(s)", ps.id, actor.id, len(locators))
        return ps

    def get_set(self, actor: Actor | None, set_id: int) -> PictureSet:
        """Read a set and count the view. Only successful reads are counted."""
        with self.unit_of_work():
            ps = self._load_set(set_id, for_update=False)
            self._authorize(actor, Operation.VIEW_UNAPPROVED, self._set_resource(ps))
            self.s.execute(
                update(PictureSet)
                .where(PictureSet.id == ps.id)
                .values(view_count=PictureSet.view_count + 1)
                .execution_options(synchronize_session=False)
            )
            views = self.s.scalar(select(PictureSet.view_count).where(PictureSet.id == ps.id))
            set_committed_value(ps, "view_count", views)
        return ps

    def list_sets(
        self,
        actor: Actor | None,
        *,
        status: str | None = None,
        set_type: str | None = None,
        category_id: int | None = None,
        troupe_id: int | None = None,
        group_id: int | None = None,
        patrouille_id: int | None = None,
        highlights: bool = False,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PictureSet], int]:
        if status is not None and status not in STATUSES:
            raise ValidationError(f"Invalid status: {status}", details={"status": "invalid"})
        if set_type is not None and set_type not in PICTURE_TYPES:
            raise ValidationError(f"Invalid type: {set_type}", details={"type": "invalid"})
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        stmt = select(PictureSet)
        if actor is None:
            stmt = stmt.where(PictureSet.status == STATUS_APPROVED)
        elif actor.role == ROLE_CHEF_TROUPE:
            if status is not None:
                stmt = stmt.where(PictureSet.uploaded_by_id == actor.id)
            else:
                stmt = stmt.where(or_(PictureSet.uploaded_by_id == actor.id, PictureSet.status == STATUS_APPROVED))
        elif actor.role == ROLE_BRANCHE_ECLAIREURS:
            if not actor.granted_district_ids:
                return [], 0
            stmt = stmt.where(PictureSet.troupe_id.in_(self._granted_troupes(actor)))

        if status is not None:
            stmt = stmt.where(PictureSet.status == status)
        if set_type is not None:
            stmt = stmt.where(PictureSet.type == set_type)
        if category_id is not None:
            # Matches the set's own classification or any of its pictures.
            stmt = stmt.where(
                or_(
                    PictureSet.category_id == category_id,
                    PictureSet.sub_category_id == category_id,
                    PictureSet.id.in_(select(Picture.picture_set_id).where(Picture.category_id == category_id)),
                )
            )
        if troupe_id is not None:
            stmt = stmt.where(PictureSet.troupe_id == troupe_id)
        if group_id is not None:
            stmt = stmt.where(PictureSet.troupe_id.in_(select(Troupe.id).where(Troupe.group_id == group_id)))
        if patrouille_id is not None:
            stmt = stmt.where(PictureSet.patrouille_id == patrouille_id)
        if highlights:
            stmt = stmt.where(PictureSet.is_highlight.is_(True))
        if start is not None:
            stmt = stmt.where(PictureSet.uploaded_at >= start)
        if end is not None:
            stmt = stmt.where(PictureSet.uploaded_at <= end)

        with self.unit_of_work():
            total = self.s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            items = list(
                self.s.scalars(
                    stmt.order_by(PictureSet.uploaded_at.desc(), PictureSet.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).unique()
            )
        return items, total

    def classify(
        self,
        actor: Actor | None,
        set_id: int,
        *,
        category_id: int | None,
        sub_category_id: int | None = None,
        description: str | None = None,
    ) -> PictureSet:
        with self.unit_of_work():
            ps = self._load_set(set_id)
            self._authorize(actor, Operation.CLASSIFY, self._set_resource(ps))
            from_status = ps.status
            workflow.validate_transition(from_status, Event.CLASSIFY)
            category = self._category(category_id)
            sub_category = self._category(sub_category_id)
            workflow.classify(
                ps,
                actor_id=actor.id,
                category=category,
                now=self._now(),
                sub_category=sub_category,
                description=description,
            )
            self._cas_status(ps.id, Event.CLASSIFY, from_status)
            record_event(
                self.s,
                actor=actor,
                action="set.classify",
                entity_type="PictureSet",
                entity_id=str(ps.id),
                metadata={"from": from_status, "category_id": category_id, "sub_category_id": sub_category_id},
            )
        logger.info("Picture set %s classified (%s -> %s) by %s", ps.id, from_status, ps.status, actor.id)
        return ps

    def bulk_classify(
        self,
        actor: Actor | None,
        set_id: int,
        classifications: Sequence[PictureClassification],
        *,
        set_type: str | None = None,
    ) -> PictureSet:
        """
        Classify individual pictures, then move the set to CLASSIFIED once.
        Either every named picture and the set status change, or nothing does.
        """
        with self.unit_of_work():
            ps = self._load_set(set_id)
            self._authorize(actor, Operation.BULK_CLASSIFY, self._set_resource(ps))
            from_status = ps.status
            workflow.validate_transition(from_status, Event.CLASSIFY)
            if not classifications:
                raise ValidationError("classifications are required", details={"classifications": "required"})
            if set_type is not None and set_type not in PICTURE_TYPES:
                raise WorkflowViolation(from_status=from_status, event=Event.CLASSIFY.value, guard="invalid_type")

            by_id = {p.id: p for p in ps.pictures}
            for item in classifications:
                picture = by_id.get(item.picture_id)
                if picture is None:
                    raise NotFound("Picture in set", item.picture_id)
                category = workflow.check_category(
                    self._category(item.category_id),
                    set_type=item.type or set_type or ps.type,
                    event=Event.CLASSIFY,
                    from_status=from_status,
                )
                workflow.classify_picture(picture, category=category, taken_at=item.taken_at, picture_type=item.type)

            workflow.mark_classified(ps, actor_id=actor.id, now=self._now(), set_type=set_type)
            self._cas_status(ps.id, Event.CLASSIFY, from_status)
            record_event(
                self.s,
                actor=actor,
                action="set.classify_bulk",
                entity_type="PictureSet",
                entity_id=str(ps.id),
                metadata={"from": from_status, "pictures": sorted(c.picture_id for c in classifications)},
            )
        logger.info("Picture set %s bulk-classified (%s picture(s)) by %s", ps.id, len(classifications), actor.id)
        return ps

    def approve(self, actor: Actor | None, set_id: int, *, is_highlight: bool = False) -> PictureSet:
        with self.unit_of_work():
            ps = self._load_set(set_id)
            self._authorize(actor, Operation.APPROVE, self._set_resource(ps))
            from_status = ps.status
            workflow.approve(ps, actor_id=actor.id, now=self._now(), is_highlight=is_highlight)
            self._cas_status(ps.id, Event.APPROVE, from_status)
            record_event(
                self.s,
                actor=actor,
                action="set.approve",
                entity_type="PictureSet",
                entity_id=str(ps.id),
                metadata={"from": from_status, "is_highlight": bool(is_highlight)},
            )
        logger.info("Picture set %s approved by %s", ps.id, actor.id)
        return ps

    def reject(self, actor: Actor | None, set_id: int, *, reason: str | None) -> PictureSet:
        with self.unit_of_work():
            ps = self._load_set(set_id)
            self._authorize(actor, Operation.REJECT, self._set_resource(ps))
            from_status = ps.status
            workflow.reject(ps, actor_id=actor.id, now=self._now(), reason=reason)
            self._cas_status(ps.id, Event.REJECT, from_status)
            record_event(
                self.s,
                actor=actor,
                action="set.reject",
                entity_type="PictureSet",
                entity_id=str(ps.id),
                reason=ps.rejection_reason,
                metadata={"from": from_status},
            )
        logger.info("Picture set %s rejected by %s", ps.id, actor.id)
        return ps

    def delete_set(self, actor: Actor | None, set_id: int) -> None:
        with self.unit_of_work():
            ps = self._load_set(set_id)
            self._authorize(actor, Operation.DELETE, self._set_resource(ps))
            locators = [p.file_path for p in ps.pictures]
            for picture in list(ps.pictures):
                self._record_removal(actor, self.grouping.detach_picture(picture))
            record_event(
                self.s,
                actor=actor,
                action="set.delete",
                entity_type="PictureSet",
                entity_id=str(ps.id),
                metadata={"title": ps.title, "status": ps.status, "pictures": len(locators)},
            )
            self.s.delete(ps)
        logger.info("Picture set %s deleted by %s", set_id, actor.id)
        self.discard_blobs(locators)

    def delete_picture(self, actor: Actor | None, set_id: int, picture_id: int) -> PictureSet:
        """Remove one picture. Remaining display orders keep their gaps."""
        with self.unit_of_work():
            ps = self._load_set(set_id)
            self._authorize(actor, Operation.DELETE, self._set_resource(ps))
            picture = next((p for p in ps.pictures if p.id == picture_id), None)
            if picture is None:
                raise NotFound("Picture", picture_id)
            if len(ps.pictures) <= 1:
                raise WorkflowViolation(from_status=ps.status, event="delete_picture", guard="last_picture")
            locator = picture.file_path
            self._record_removal(actor, self.grouping.detach_picture(picture))
            ps.pictures.remove(picture)
            record_event(
                self.s,
                actor=actor,
                action="picture.delete",
                entity_type="Picture",
                entity_id=str(picture_id),
                metadata={"picture_set_id": ps.id},
            )
            self.s.flush()
        self.discard_blobs([locator])
        return ps

    # Individual pictures

    def list_pictures(
        self,
        actor: Actor | None,
        *,
        status: str | None = None,
        category_id: int | None = None,
        picture_type: str | None = None,
        sort_by: str = "uploadedAt",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Picture], int]:
        self._authorize(actor, Operation.MANAGE_PICTURES, Resource(kind="Picture"))
        if status is not None and status not in STATUSES:
            raise ValidationError(f"Invalid status: {status}", details={"status": "invalid"})
        if picture_type is not None and picture_type not in PICTURE_TYPES:
            raise ValidationError(f"Invalid type: {picture_type}", details={"type": "invalid"})
        column = PICTURE_SORTS.get(sort_by)
        if column is None:
            raise ValidationError(f"Invalid sortBy: {sort_by}", details={"sortBy": "invalid"})
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Invalid sortOrder: {sort_order}", details={"sortOrder": "invalid"})
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        stmt = (
            select(Picture)
            .join(PictureSet, PictureSet.id == Picture.picture_set_id)
            .join(Troupe, Troupe.id == PictureSet.troupe_id)
            .join(Group, Group.id == Troupe.group_id)
            .join(District, District.id == Group.district_id)
            .outerjoin(Category, Category.id == Picture.category_id)
        )
        if status is not None:
            stmt = stmt.where(PictureSet.status == status)
        if category_id is not None:
            stmt = stmt.where(Picture.category_id == category_id)
        if picture_type is not None:
            stmt = stmt.where(Picture.type == picture_type)
        direction = (lambda c: c.asc()) if sort_order == "asc" else (lambda c: c.desc())

        with self.unit_of_work():
            total = self.s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            items = list(
                self.s.scalars(
                    stmt.order_by(direction(column), direction(Picture.id))
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).unique()
            )
        return items, total

    def update_picture(self, actor: Actor | None, picture_id: int, changes: dict[str, Any]) -> Picture:
        """``changes`` may hold ``category_id``, ``taken_at`` and ``type``; absent keys are left alone."""
        with self.unit_of_work():
            picture = self._load_pictures([picture_id])[0]
            ps = picture.picture_set
            self._authorize(actor, Operation.EDIT_PICTURE, self._set_resource(ps))
            edits: dict[str, Any] = {k: changes[k] for k in ("taken_at", "type") if k in changes}
            if "category_id" in changes:
                edits["category"] = self._category(changes["category_id"])
            if not edits:
                raise ValidationError("No updates provided", details={"updates": "required"})
            workflow.edit_picture(picture, edits)
            record_event(
                self.s,
                actor=actor,
                action="picture.update",
                entity_type="Picture",
                entity_id=str(picture.id),
                metadata={
                    "picture_set_id": ps.id,
                    "category_id": picture.category_id,
                    "type": picture.type,
                    "taken_at": iso(picture.taken_at),
                },
            )
        logger.info("Picture %s of set %s updated by %s", picture.id, ps.id, actor.id)
        return picture

    def bulk_update_pictures(
        self, actor: Actor | None, picture_ids: Sequence[int], changes: dict[str, Any]
    ) -> list[Picture]:
        """Set ``category_id`` and/or ``type`` on every named picture, or on none of them."""
        with self.unit_of_work():
            self._authorize(actor, Operation.MANAGE_PICTURES, Resource(kind="Picture"))
            if not picture_ids:
                raise ValidationError("No pictures selected", details={"pictureIds": "required"})
            if "category_id" not in changes and "type" not in changes:
                raise ValidationError("No updates provided", details={"updates": "required"})
            picture_type = changes.get("type")
            if picture_type is not None and picture_type not in PICTURE_TYPES:
                raise ValidationError(f"Invalid type: {picture_type}", details={"type": "invalid"})
            category = self._category(changes.get("category_id"))
            pictures = self._load_pictures(picture_ids)
            for picture in pictures:
                if "category_id" in changes:
                    picture.category_id = category.id if category is not None else None
                if "type" in changes:
                    picture.type = picture_type
            record_event(
                self.s,
                actor=actor,
                action="picture.bulk_update",
                entity_type="Picture",
                metadata={
                    "picture_ids": [p.id for p in pictures],
                    "category_id": changes.get("category_id"),
                    "type": picture_type,
                },
            )
        logger.info("%s picture(s) bulk-updated by %s", len(pictures), actor.id)
        return pictures

    def bulk_delete_pictures(
        self, actor: Actor | None, picture_ids: Sequence[int]
    ) -> tuple[list[int], list[dict[str, Any]]]:
        """
        Delete the named pictures. A set is never emptied: when every remaining
        picture of a set is named, its lowest display order is kept and reported
        as skipped.
        """
        with self.unit_of_work():
            self._authorize(actor, Operation.MANAGE_PICTURES, Resource(kind="Picture"))
            if not picture_ids:
                raise ValidationError("No pictures selected", details={"pictureIds": "required"})
            pictures = self._load_pictures(picture_ids)
            requested = {p.id for p in pictures}
            by_set: dict[int, list[Picture]] = {}
            for picture in pictures:
                by_set.setdefault(picture.picture_set_id, []).append(picture)

            deleted: list[int] = []
            skipped: list[dict[str, Any]] = []
            locators: list[str] = []
            for set_id, named in by_set.items():
                ps = named[0].picture_set
                if all(p.id in requested for p in ps.pictures):
                    keep = min(named, key=lambda p: p.display_order)
                    named = [p for p in named if p is not keep]
                    skipped.append({"id": keep.id, "pictureSetId": set_id, "reason": "last_picture"})
                for picture in named:
                    self._record_removal(actor, self.grouping.detach_picture(picture))
                    locators.append(picture.file_path)
                    deleted.append(picture.id)
                    ps.pictures.remove(picture)
            record_event(
                self.s,
                actor=actor,
                action="picture.bulk_delete",
                entity_type="Picture",
                metadata={"picture_ids": deleted, "skipped": [item["id"] for item in skipped]},
            )
            self.s.flush()
        logger.info("%s picture(s) bulk-deleted by %s, %s skipped", len(deleted), actor.id, len(skipped))
        self.discard_blobs(locators)
        return deleted, skipped

    # Design groups

    def _load_group(self, group_id: int, *, for_update: bool = True) -> DesignGroup:
        stmt = select(DesignGroup).where(DesignGroup.id == group_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update(of=DesignGroup)
        group = self.s.scalars(stmt).one_or_none()
        if group is None:
            raise NotFound("Design group", group_id)
        return group

    def _load_pictures(self, picture_ids: Sequence[int]) -> list[Picture]:
        ids = list(dict.fromkeys(picture_ids))
        if not ids:
            return []
        stmt = (
            select(Picture)
            .where(Picture.id.in_(ids))
            .with_for_update(of=Picture)
            .execution_options(populate_existing=True)
        )
        found = {p.id: p for p in self.s.scalars(stmt).unique()}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFound("Picture", missing[0])
        return [found[i] for i in ids]

    def _group_resource(self, group: DesignGroup | None, pictures: Sequence[Picture]) -> Resource:
        troupe_ids = {p.picture_set.troupe_id for p in pictures}
        return Resource(
            kind="DesignGroup",
            id=group.id if group else None,
            created_by_id=group.created_by_id if group else None,
            district_ids=self.ancestry.districts_for_troupes(troupe_ids),
        )

    def _record_removal(self, actor: Actor | None, result: RemovalResult | None) -> None:
        if result is None or not result.dissolved:
            return
        record_event(
            self.s,
            actor=actor,
            action="group.dissolve",
            entity_type="DesignGroup",
            entity_id=str(result.group_id),
            metadata={"released": list(result.released_picture_ids)},
        )

    def get_group(self, actor: Actor | None, group_id: int) -> tuple[DesignGroup, list[Picture]]:
        """
        Members are filtered through VIEW_UNAPPROVED, so a group never exposes a
        picture its set would hide. A group with no visible member does not
        exist for the caller, unless the caller created it.
        """
        with self.unit_of_work():
            group = self._load_group(group_id, for_update=False)
            members = self._visible_members(actor, self.grouping.members(group.id))
            is_creator = actor is not None and group.created_by_id == actor.id
            if not members and not is_creator:
                raise NotFound("Design group", group_id)
        return group, members

    def list_groups(
        self,
        actor: Actor | None,
        *,
        category_id: int | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[tuple[DesignGroup, list[Picture]]], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        stmt = select(DesignGroup)
        if category_id is not None:
            stmt = stmt.where(DesignGroup.category_id == category_id)
        visible = self._visible_set_clause(actor)
        if visible is not None:
            with_visible = (
                select(Picture.design_group_id)
                .join(PictureSet, PictureSet.id == Picture.picture_set_id)
                .where(visible, Picture.design_group_id.is_not(None))
            )
            stmt = stmt.where(DesignGroup.id.in_(with_visible))

        with self.unit_of_work():
            total = self.s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            groups = list(
                self.s.scalars(
                    stmt.order_by(DesignGroup.created_at.desc(), DesignGroup.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            )
            out = []
            for group in groups:
                out.append((group, self._visible_members(actor, self.grouping.members(group.id))))
        return out, total

    def create_group(
        self,
        actor: Actor | None,
        picture_ids: Sequence[int],
        *,
        primary_id: int | None = None,
        name: str | None = None,
    ) -> tuple[DesignGroup, list[Picture]]:
        with self.unit_of_work():
            if not picture_ids:
                raise ValidationError("pictureIds are required", details={"pictureIds": "required"})
            pictures = self._load_pictures(picture_ids)
            self._authorize(actor, Operation.CREATE_GROUP, self._group_resource(None, pictures))
            group = self.grouping.create_group(pictures, created_by_id=actor.id, primary_id=primary_id, name=name)
            record_event(
                self.s,
                actor=actor,
                action="group.create",
                entity_type="DesignGroup",
                entity_id=str(group.id),
                metadata={"pictures": [p.id for p in pictures], "primary": group.primary_picture_id},
            )
            members = self._visible_members(actor, self.grouping.members(group.id))
        return group, members

    def update_group(self, actor: Actor | None, group_id: int, changes: dict[str, Any]) -> tuple[DesignGroup, list[Picture]]:
        """``changes`` may hold ``name``, ``primary_id`` and ``category_id``; absent keys are left alone."""
        with self.unit_of_work():
            group = self._load_group(group_id)
            members = self.grouping.members(group.id)
            self._authorize(actor, Operation.MODIFY_GROUP, self._group_resource(group, members))
            allowed = {k: v for k, v in changes.items() if k in ("name", "primary_id", "category_id")}
            if allowed.get("category_id") is not None:
                self._category(allowed["category_id"])
            self.grouping.update_group(group, **allowed)
            record_event(
                self.s,
                actor=actor,
                action="group.update",
                entity_type="DesignGroup",
                entity_id=str(group.id),
                metadata=allowed,
            )
            members = self._visible_members(actor, members)
        return group, members

    def add_to_group(
        self, actor: Actor | None, group_id: int, picture_ids: Sequence[int]
    ) -> tuple[DesignGroup, list[Picture]]:
        with self.unit_of_work():
            if not picture_ids:
                raise ValidationError("pictureIds are required", details={"pictureIds": "required"})
            group = self._load_group(group_id)
            pictures = self._load_pictures(picture_ids)
            touched = self.grouping.members(group.id) + pictures
            self._authorize(actor, Operation.ADD_TO_GROUP, self._group_resource(group, touched))
            added = self.grouping.add_pictures(group, pictures)
            if added:
                record_event(
                    self.s,
                    actor=actor,
                    action="group.add_pictures",
                    entity_type="DesignGroup",
                    entity_id=str(group.id),
                    metadata={"added": [p.id for p in added]},
                )
            members = self._visible_members(actor, self.grouping.members(group.id))
        return group, members

    def remove_from_group(self, actor: Actor | None, group_id: int, picture_id: int) -> RemovalResult:
        with self.unit_of_work():
            group = self._load_group(group_id)
            members = self.grouping.members(group.id)
            picture = next((p for p in members if p.id == picture_id), None)
            if picture is None:
                raise NotFound("Picture in design group", picture_id)
            self._authorize(actor, Operation.REMOVE_FROM_GROUP, self._group_resource(group, members))
            result = self.grouping.remove_picture(group, picture)
            record_event(
                self.s,
                actor=actor,
                action="group.remove_picture",
                entity_type="DesignGroup",
                entity_id=str(group_id),
                metadata={"picture_id": picture_id, "dissolved": result.dissolved},
            )
            self._record_removal(actor, result)
        return result

    def delete_group(self, actor: Actor | None, group_id: int) -> tuple[int, ...]:
        with self.unit_of_work():
            group = self._load_group(group_id)
            self._authorize(actor, Operation.DELETE_GROUP, self._group_resource(group, []))
            released = self.grouping.delete_group(group)
            record_event(
                self.s,
                actor=actor,
                action="group.delete",
                entity_type="DesignGroup",
                entity_id=str(group_id),
                metadata={"released": list(released)},
            )
        return released


# Serialization


def picture_dict(p: Picture) -> dict:
    return {
        "id": p.id,
        "pictureSetId": p.picture_set_id,
        "filePath": p.file_path,
        "displayOrder": p.display_order,
        "categoryId": p.category_id,
        "type": p.type,
        "takenAt": iso(p.taken_at),
        "designGroupId": p.design_group_id,
        "uploadedAt": iso(p.uploaded_at),
    }


def picture_set_dict(ps: PictureSet, *, with_pictures: bool = True) -> dict:
    out = {
        "id": ps.id,
        "title": ps.title,
        "description": ps.description,
        "type": ps.type,
        "status": ps.status,
        "troupeId": ps.troupe_id,
        "patrouilleId": ps.patrouille_id,
        "categoryId": ps.category_id,
        "subCategoryId": ps.sub_category_id,
        "uploadedById": ps.uploaded_by_id,
        "uploadedAt": iso(ps.uploaded_at),
        "classifiedById": ps.classified_by_id,
        "classifiedAt": iso(ps.classified_at),
        "approvedById": ps.approved_by_id,
        "approvedAt": iso(ps.approved_at),
        "rejectionReason": ps.rejection_reason,
        "isHighlight": ps.is_highlight,
        "viewCount": ps.view_count,
    }
    if with_pictures:
        out["pictures"] = [picture_dict(p) for p in ps.pictures]
    return out


def design_group_dict(group: DesignGroup, members: Sequence[Picture]) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "primaryPictureId": group.primary_picture_id,
        "categoryId": group.category_id,
        "createdById": group.created_by_id,
        "createdAt": iso(group.created_at),
        "pictureCount": len(members),
        "pictures": [picture_dict(p) for p in members],
    }


def removal_dict(result: RemovalResult) -> dict:
    return {
        "groupId": result.group_id,
        "dissolved": result.dissolved,
        "releasedPictureIds": list(result.released_picture_ids),
    }
