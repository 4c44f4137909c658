from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


ROLE_ADMIN = "ADMIN"
ROLE_CHEF_TROUPE = "CHEF_TROUPE"
ROLE_BRANCHE_ECLAIREURS = "BRANCHE_ECLAIREURS"
ROLES = (ROLE_ADMIN, ROLE_CHEF_TROUPE, ROLE_BRANCHE_ECLAIREURS)


class DistrictGrant(Base):
    """The only access-control data for BRANCHE_ECLAIREURS users."""

    __tablename__ = "user_district_access"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=ROLE_CHEF_TROUPE)
    # Required iff role == CHEF_TROUPE (enforced in hierarchy.service.create_user/update_user).
    troupe_id: Mapped[int | None] = mapped_column(ForeignKey("troupes.id", ondelete="RESTRICT"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    force_password_change: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    troupe: Mapped["Troupe | None"] = relationship(lazy="selectin")
    district_grants: Mapped[list[DistrictGrant]] = relationship(
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def granted_district_ids(self) -> frozenset[int]:
        return frozenset(gr.district_id for gr in self.district_grants)


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; module tables refer to it by entity type/id.
    """

    __tablename__ = "audit_events"
    __table_args__ = (Index("idx_audit_events_entity", "entity_type", "entity_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "set.approve"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "PictureSet"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.gallery.modules.hierarchy.models import District, Group, Patrouille, Troupe  # noqa: E402,F401
from app.gallery.modules.categories.models import Category  # noqa: E402,F401
from app.gallery.modules.submissions.models import Picture, PictureSet  # noqa: E402,F401
from app.gallery.modules.design_groups.models import DesignGroup  # noqa: E402,F401
