"""
Design group membership rules.

A live group has at least ``MIN_GROUP_SIZE`` members and its primary picture is
one of them. Every mutation below either keeps that true or dissolves the
group. The engine flushes but never commits: the caller owns the transaction,
so a multi-picture change lands completely or not at all.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.gallery.errors import GroupingInvariantViolation, NotFound
from app.gallery.modules.design_groups.models import DesignGroup
from app.gallery.modules.submissions.models import Picture

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 2

_UNSET = object()


@dataclass(frozen=True)
class RemovalResult:
    group_id: int
    dissolved: bool
    released_picture_ids: tuple[int, ...] = ()


class GroupingEngine:
    def __init__(self, s: Session) -> None:
        self.s = s

    def members(self, group_id: int) -> list[Picture]:
        stmt = (
            select(Picture)
            .where(Picture.design_group_id == group_id)
            .order_by(Picture.display_order.asc(), Picture.id.asc())
        )
        return list(self.s.scalars(stmt))

    def create_group(
        self,
        pictures: Sequence[Picture],
        *,
        created_by_id: int,
        primary_id: int | None = None,
        name: str | None = None,
    ) -> DesignGroup:
        ordered = _dedupe(pictures)
        if len(ordered) < MIN_GROUP_SIZE:
            raise GroupingInvariantViolation(
                GroupingInvariantViolation.BELOW_MINIMUM_SIZE,
                picture_ids=[p.id for p in ordered],
                message=f"At least {MIN_GROUP_SIZE} pictures are required to create a design group",
            )
        grouped = [p.id for p in ordered if p.design_group_id is not None]
        if grouped:
            raise GroupingInvariantViolation(
                GroupingInvariantViolation.ALREADY_GROUPED,
                picture_ids=grouped,
                message=f"{len(grouped)} picture(s) are already in a design group",
            )

        ids = [p.id for p in ordered]
        if primary_id is None or primary_id not in ids:
            primary_id = ids[0]

        group = DesignGroup(
            name=(name or "").strip() or None,
            primary_picture_id=primary_id,
            # First picture wins; no majority vote across members.
            category_id=ordered[0].category_id,
            created_by_id=created_by_id,
        )
        self.s.add(group)
        self.s.flush()
        for p in ordered:
            p.design_group_id = group.id
        self.s.flush()
        logger.info("Design group %s created with pictures %s (primary=%s)", group.id, ids, primary_id)
        return group

    def add_pictures(self, group: DesignGroup, pictures: Sequence[Picture]) -> list[Picture]:
        ordered = _dedupe(pictures)
        elsewhere = [p.id for p in ordered if p.design_group_id is not None and p.design_group_id != group.id]
        if elsewhere:
            raise GroupingInvariantViolation(
                GroupingInvariantViolation.ALREADY_GROUPED,
                picture_ids=elsewhere,
                message=f"{len(elsewhere)} picture(s) are already in another design group",
            )
        added = [p for p in ordered if p.design_group_id != group.id]
        for p in added:
            p.design_group_id = group.id
        self.s.flush()
        return added

    def update_group(
        self,
        group: DesignGroup,
        *,
        name: object = _UNSET,
        primary_id: object = _UNSET,
        category_id: object = _UNSET,
    ) -> DesignGroup:
        if primary_id is not _UNSET:
            member_ids = {p.id for p in self.members(group.id)}
            if primary_id not in member_ids:
                raise GroupingInvariantViolation(
                    GroupingInvariantViolation.PRIMARY_NOT_MEMBER,
                    picture_ids=[primary_id] if isinstance(primary_id, int) else [],
                    message="Primary picture must belong to this design group",
                )
            group.primary_picture_id = primary_id  # type: ignore[assignment]
        if name is not _UNSET:
            group.name = (str(name).strip() or None) if name is not None else None
        if category_id is not _UNSET:
            group.category_id = category_id  # type: ignore[assignment]
        self.s.flush()
        return group

    def remove_picture(self, group: DesignGroup, picture: Picture) -> RemovalResult:
        if picture.design_group_id != group.id:
            raise NotFound("Picture in design group", picture.id)
        picture.design_group_id = None
        self.s.flush()
        return self._settle(group, removed_id=picture.id)

    def detach_picture(self, picture: Picture) -> RemovalResult | None:
        """Drop ``picture`` from whatever group holds it, e.g. before deleting it."""
        if picture.design_group_id is None:
            return None
        group = self.s.get(DesignGroup, picture.design_group_id)
        if group is None:
            picture.design_group_id = None
            return None
        return self.remove_picture(group, picture)

    def delete_group(self, group: DesignGroup) -> tuple[int, ...]:
        released = self._release_all(group)
        logger.info("Design group %s deleted; released pictures %s", group.id, released)
        return released

    def check_invariants(self) -> list[tuple[int, str]]:
        """Return (group_id, problem) for every live group that breaks the rules."""
        counts = dict(
            self.s.execute(
                select(Picture.design_group_id, func.count(Picture.id))
                .where(Picture.design_group_id.is_not(None))
                .group_by(Picture.design_group_id)
            ).all()
        )
        problems: list[tuple[int, str]] = []
        for group in self.s.scalars(select(DesignGroup).order_by(DesignGroup.id)):
            size = counts.get(group.id, 0)
            if size < MIN_GROUP_SIZE:
                problems.append((group.id, f"size={size}"))
                continue
            primary = self.s.get(Picture, group.primary_picture_id)
            if primary is None or primary.design_group_id != group.id:
                problems.append((group.id, "primary_not_member"))
        return problems

    def _settle(self, group: DesignGroup, *, removed_id: int) -> RemovalResult:
        remaining = self.members(group.id)
        if len(remaining) < MIN_GROUP_SIZE:
            released = self._release_all(group, remaining)
            logger.info(
                "Design group %s dissolved after removing picture %s (%s member(s) left)",
                group.id,
                removed_id,
                len(remaining),
            )
            return RemovalResult(group_id=group.id, dissolved=True, released_picture_ids=released)
        if group.primary_picture_id == removed_id:
            group.primary_picture_id = remaining[0].id
            self.s.flush()
        return RemovalResult(group_id=group.id, dissolved=False)

    def _release_all(self, group: DesignGroup, members: list[Picture] | None = None) -> tuple[int, ...]:
        if members is None:
            members = self.members(group.id)
        for p in members:
            p.design_group_id = None
        self.s.flush()
        self.s.delete(group)
        self.s.flush()
        return tuple(p.id for p in members)


def _dedupe(pictures: Sequence[Picture]) -> list[Picture]:
    seen: set[int] = set()
    out: list[Picture] = []
    for p in pictures:
        if p.id in seen:
            continue
        seen.add(p.id)
        out.append(p)
    return out
