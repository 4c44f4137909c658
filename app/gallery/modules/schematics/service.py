from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.gallery.auth import Actor
from app.gallery.db import unit_of_work
from app.gallery.errors import AuthenticationRequired, AuthorizationDenied, NotFound
from app.gallery.models import ROLE_ADMIN, ROLE_BRANCHE_ECLAIREURS
from app.gallery.modules.categories.models import Category
from app.gallery.modules.hierarchy.models import Group, Patrouille, Troupe
from app.gallery.modules.hierarchy.service import AncestryResolver, patrouille_dict, troupe_dict
from app.gallery.modules.submissions.authorization import Operation, Resource, authorize, decide
from app.gallery.modules.submissions.models import (
    STATUS_APPROVED,
    STATUS_CLASSIFIED,
    STATUS_PENDING,
    TYPE_SCHEMATIC,
    PictureSet,
)

logger = logging.getLogger(__name__)

ITEM_APPROVED = "APPROVED"
ITEM_SUBMITTED = "SUBMITTED"
ITEM_MISSING = "MISSING"


@dataclass
class ItemProgress:
    category: Category
    status: str = ITEM_MISSING
    picture_set_id: int | None = None


@dataclass
class SetProgress:
    category: Category
    items: list[ItemProgress] = field(default_factory=list)

    @property
    def completed_items(self) -> int:
        return sum(1 for i in self.items if i.status == ITEM_APPROVED)

    @property
    def is_complete(self) -> bool:
        return bool(self.items) and self.completed_items == len(self.items)


@dataclass
class PatrouilleProgress:
    patrouille: Patrouille
    sets: list[SetProgress]

    @property
    def total_items(self) -> int:
        return sum(len(s.items) for s in self.sets)

    @property
    def completed_items(self) -> int:
        return sum(s.completed_items for s in self.sets)

    @property
    def pending_review(self) -> int:
        return sum(1 for s in self.sets for i in s.items if i.status == ITEM_SUBMITTED)

    @property
    def completion_percentage(self) -> int:
        total = self.total_items
        return round(self.completed_items * 100 / total) if total else 0

    @property
    def is_winner(self) -> bool:
        total = self.total_items
        return total > 0 and self.completed_items == total


class SchematicProgress:
    """Read-only progress views. Visibility follows the VIEW_PROGRESS rule."""

    def __init__(self, s: Session) -> None:
        self.s = s
        self.ancestry = AncestryResolver(s)

    def _troupe_resource(self, troupe_id: int) -> Resource:
        return Resource(
            kind="Troupe",
            id=troupe_id,
            troupe_id=troupe_id,
            district_id=self.ancestry.district_for_troupe(troupe_id),
        )

    def _catalogue(self) -> list[tuple[Category, list[Category]]]:
        """(set, items) pairs in display order."""
        enabled = list(
            self.s.scalars(
                select(Category)
                .where(Category.is_schematic_enabled.is_(True))
                .order_by(Category.display_order.asc(), Category.name.asc(), Category.id.asc())
            )
        )
        parents_with_items = {c.parent_id for c in enabled if c.parent_id is not None}
        items = [c for c in enabled if c.id not in parents_with_items]
        by_set: dict[int, list[Category]] = {}
        heads: dict[int, Category] = {}
        for item in items:
            head = item.parent if item.parent_id is not None else item
            heads.setdefault(head.id, head)
            by_set.setdefault(head.id, []).append(item)
        ordered = sorted(heads.values(), key=lambda c: (c.display_order, c.name, c.id))
        return [(head, by_set[head.id]) for head in ordered]

    def _progress_for(self, patrouilles: Sequence[Patrouille]) -> list[PatrouilleProgress]:
        catalogue = self._catalogue()
        ids = [p.id for p in patrouilles]
        sets = (
            self.s.scalars(
                select(PictureSet).where(
                    PictureSet.patrouille_id.in_(ids),
                    PictureSet.type == TYPE_SCHEMATIC,
                    PictureSet.status.in_((STATUS_PENDING, STATUS_CLASSIFIED, STATUS_APPROVED)),
                ).execution_options(populate_existing=True)
            ).unique()
            if ids
            else []
        )
        # (patrouille, category) -> best set; APPROVED wins over anything in review.
        best: dict[tuple[int, int], PictureSet] = {}
        for ps in sets:
            for category_id in {ps.category_id, ps.sub_category_id} - {None}:
                key = (ps.patrouille_id, category_id)
                current = best.get(key)
                if current is None or (current.status != STATUS_APPROVED and ps.status == STATUS_APPROVED):
                    best[key] = ps

        out = []
        for patrouille in patrouilles:
            set_rows = []
            for head, items in catalogue:
                row = SetProgress(category=head)
                for item in items:
                    ps = best.get((patrouille.id, item.id))
                    if ps is None:
                        row.items.append(ItemProgress(category=item))
                    else:
                        status = ITEM_APPROVED if ps.status == STATUS_APPROVED else ITEM_SUBMITTED
                        row.items.append(ItemProgress(category=item, status=status, picture_set_id=ps.id))
                set_rows.append(row)
            out.append(PatrouilleProgress(patrouille=patrouille, sets=set_rows))
        return out

    def patrouille_progress(self, actor: Actor | None, patrouille_id: int) -> PatrouilleProgress:
        with unit_of_work(self.s):
            patrouille = self.s.get(Patrouille, patrouille_id)
            if patrouille is None:
                raise NotFound("Patrouille", patrouille_id)
            authorize(actor, Operation.VIEW_PROGRESS, self._troupe_resource(patrouille.troupe_id))
            return self._progress_for([patrouille])[0]

    def troupe_progress(self, actor: Actor | None, troupe_id: int) -> tuple[Troupe, list[PatrouilleProgress]]:
        """Patrouilles of one troupe, most advanced first."""
        with unit_of_work(self.s):
            troupe = self.s.get(Troupe, troupe_id)
            if troupe is None:
                raise NotFound("Troupe", troupe_id)
            authorize(actor, Operation.VIEW_PROGRESS, self._troupe_resource(troupe_id))
            patrouilles = sorted(troupe.patrouilles, key=lambda p: (p.name, p.id))
            rows = self._progress_for(patrouilles)
        rows.sort(key=lambda r: r.completion_percentage, reverse=True)
        return troupe, rows

    def all_progress(
        self,
        actor: Actor | None,
        *,
        group_id: int | None = None,
        district_id: int | None = None,
    ) -> list[PatrouilleProgress]:
        """
        Leaderboard across troupes for reviewers. A BRANCHE_ECLAIREURS only
        sees patrouilles in the districts they are granted.
        """
        if actor is None:
            raise AuthenticationRequired()
        if actor.role not in (ROLE_ADMIN, ROLE_BRANCHE_ECLAIREURS):
            raise AuthorizationDenied(
                actor_id=actor.id,
                operation=Operation.VIEW_PROGRESS.value,
                resource="Patrouille",
                reason="role_not_permitted",
            )
        stmt = (
            select(Patrouille)
            .join(Troupe, Troupe.id == Patrouille.troupe_id)
            .join(Group, Group.id == Troupe.group_id)
            .order_by(Patrouille.name.asc(), Patrouille.id.asc())
        )
        if group_id is not None:
            stmt = stmt.where(Troupe.group_id == group_id)
        if district_id is not None:
            stmt = stmt.where(Group.district_id == district_id)
        with unit_of_work(self.s):
            patrouilles = [
                p
                for p in self.s.scalars(stmt).unique()
                if decide(actor, Operation.VIEW_PROGRESS, self._troupe_resource(p.troupe_id)).allow
            ]
            rows = self._progress_for(patrouilles)
        rows.sort(key=lambda r: r.completion_percentage, reverse=True)
        logger.debug("Schematic leaderboard for %s: %s patrouille(s)", actor.id, len(rows))
        return rows


def item_dict(item: ItemProgress) -> dict:
    return {
        "categoryId": item.category.id,
        "name": item.category.name,
        "status": item.status,
        "pictureSetId": item.picture_set_id,
    }


def progress_dict(progress: PatrouilleProgress, *, with_sets: bool = True) -> dict:
    patrouille = progress.patrouille
    out = {
        "patrouille": patrouille_dict(patrouille),
        "troupe": troupe_dict(patrouille.troupe),
        "completedItems": progress.completed_items,
        "pendingReview": progress.pending_review,
        "totalItems": progress.total_items,
        "completionPercentage": progress.completion_percentage,
        "isWinner": progress.is_winner,
    }
    if with_sets:
        out["sets"] = [
            {
                "categoryId": row.category.id,
                "name": row.category.name,
                "items": [item_dict(i) for i in row.items],
                "completedItems": row.completed_items,
                "totalItems": len(row.items),
                "isComplete": row.is_complete,
            }
            for row in progress.sets
        ]
        out["completedSets"] = sum(1 for row in progress.sets if row.is_complete)
        out["totalSets"] = len(progress.sets)
    return out
