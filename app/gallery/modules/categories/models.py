from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.gallery.models import Base


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (Index("idx_categories_parent", "parent_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="INSTALLATION_PHOTO")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # One level deep: a parent never has a parent itself (see categories.service).
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="RESTRICT"), nullable=True)

    is_upload_disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_hidden_from_browse: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_schematic_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    main_picture_id: Mapped[int | None] = mapped_column(
        ForeignKey("pictures.id", ondelete="SET NULL", use_alter=True, name="fk_categories_main_picture"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    parent: Mapped["Category | None"] = relationship(
        "Category",
        remote_side=[id],
        back_populates="children",
        lazy="selectin",
    )
    children: Mapped[list["Category"]] = relationship(
        "Category",
        back_populates="parent",
        lazy="selectin",
        order_by="Category.display_order",
    )
