from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.gallery.models import Base


class District(Base):
    __tablename__ = "districts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    groups: Mapped[list["Group"]] = relationship(back_populates="district", lazy="selectin")


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (Index("idx_groups_district", "district_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    district: Mapped[District] = relationship(back_populates="groups", lazy="joined")
    troupes: Mapped[list["Troupe"]] = relationship(back_populates="group", lazy="selectin")


class Troupe(Base):
    __tablename__ = "troupes"
    __table_args__ = (Index("idx_troupes_group", "group_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    group: Mapped[Group] = relationship(back_populates="troupes", lazy="joined")
    patrouilles: Mapped[list["Patrouille"]] = relationship(back_populates="troupe", lazy="selectin")

    @property
    def district_id(self) -> int:
        return self.group.district_id


class Patrouille(Base):
    __tablename__ = "patrouilles"
    __table_args__ = (Index("idx_patrouilles_troupe", "troupe_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    totem: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cri: Mapped[str | None] = mapped_column(Text, nullable=True)
    troupe_id: Mapped[int] = mapped_column(ForeignKey("troupes.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    troupe: Mapped[Troupe] = relationship(back_populates="patrouilles", lazy="joined")
