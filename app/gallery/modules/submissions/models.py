from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.gallery.models import Base

STATUS_PENDING = "PENDING"
STATUS_CLASSIFIED = "CLASSIFIED"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
STATUSES = (STATUS_PENDING, STATUS_CLASSIFIED, STATUS_APPROVED, STATUS_REJECTED)
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})

TYPE_INSTALLATION_PHOTO = "INSTALLATION_PHOTO"
TYPE_SCHEMATIC = "SCHEMATIC"
PICTURE_TYPES = (TYPE_INSTALLATION_PHOTO, TYPE_SCHEMATIC)


class PictureSet(Base):
    __tablename__ = "picture_sets"
    __table_args__ = (
        Index("idx_picture_sets_status", "status"),
        Index("idx_picture_sets_troupe", "troupe_id"),
        Index("idx_picture_sets_uploaded_by", "uploaded_by_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default=TYPE_INSTALLATION_PHOTO)

    # PENDING -> CLASSIFIED -> APPROVED, or -> REJECTED from PENDING/CLASSIFIED
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING)

    troupe_id: Mapped[int] = mapped_column(ForeignKey("troupes.id", ondelete="RESTRICT"), nullable=False)
    patrouille_id: Mapped[int | None] = mapped_column(ForeignKey("patrouilles.id", ondelete="RESTRICT"), nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    sub_category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)

    uploaded_by_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    classified_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    classified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Also records the rejecter for REJECTED sets.
    approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_highlight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    troupe = relationship("Troupe", lazy="joined")
    patrouille = relationship("Patrouille", lazy="selectin")
    pictures: Mapped[list["Picture"]] = relationship(
        back_populates="picture_set",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Picture.display_order",
    )


class Picture(Base):
    __tablename__ = "pictures"
    __table_args__ = (
        Index("idx_pictures_set", "picture_set_id"),
        Index("idx_pictures_design_group", "design_group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    picture_set_id: Mapped[int] = mapped_column(ForeignKey("picture_sets.id", ondelete="CASCADE"), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)  # opaque storage locator
    display_order: Mapped[int] = mapped_column(Integer, nullable=False)

    # Per-picture classification; may diverge from the parent set.
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    taken_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    design_group_id: Mapped[int | None] = mapped_column(
        ForeignKey("design_groups.id", ondelete="SET NULL"),
        nullable=True,
    )
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    picture_set: Mapped[PictureSet] = relationship(back_populates="pictures", lazy="joined")
