from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.gallery.models import Base


class DesignGroup(Base):
    """
    Cross-set cluster of pictures showing the same installation.

    Membership lives on ``Picture.design_group_id``; a live group always has at
    least two members and ``primary_picture_id`` is one of them.
    """

    __tablename__ = "design_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    primary_picture_id: Mapped[int] = mapped_column(
        ForeignKey("pictures.id", ondelete="RESTRICT", use_alter=True, name="fk_design_groups_primary_picture"),
        nullable=False,
    )
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
