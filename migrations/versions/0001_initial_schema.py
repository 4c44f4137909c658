"""initial schema: hierarchy, users, categories, picture sets, design groups

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [sa.Column("created_at", sa.DateTime(timezone=False), nullable=False)]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "districts" not in existing_tables:
        op.create_table(
            "districts",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("code", name="uq_districts_code"),
        )

    if "groups" not in existing_tables:
        op.create_table(
            "groups",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("district_id", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["district_id"], ["districts.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("code", name="uq_groups_code"),
        )
        op.create_index("idx_groups_district", "groups", ["district_id"])

    if "troupes" not in existing_tables:
        op.create_table(
            "troupes",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("group_id", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("code", name="uq_troupes_code"),
        )
        op.create_index("idx_troupes_group", "troupes", ["group_id"])

    if "patrouilles" not in existing_tables:
        op.create_table(
            "patrouilles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("totem", sa.String(length=255), nullable=True),
            sa.Column("cri", sa.Text(), nullable=True),
            sa.Column("troupe_id", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["troupe_id"], ["troupes.id"], ondelete="RESTRICT"),
        )
        op.create_index("idx_patrouilles_troupe", "patrouilles", ["troupe_id"])

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False),
            sa.Column("troupe_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("force_password_change", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["troupe_id"], ["troupes.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("email", name="uq_users_email"),
            sa.CheckConstraint(
                "role IN ('ADMIN','CHEF_TROUPE','BRANCHE_ECLAIREURS')",
                name="ck_users_role",
            ),
        )

    if "user_district_access" not in existing_tables:
        op.create_table(
            "user_district_access",
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("district_id", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["district_id"], ["districts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("user_id", "district_id"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            *_timestamps(),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_role", sa.String(length=32), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])

    if "categories" not in existing_tables:
        op.create_table(
            "categories",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("type", sa.String(length=32), nullable=False, server_default="INSTALLATION_PHOTO"),
            sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("parent_id", sa.Integer(), nullable=True),
            sa.Column("is_upload_disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_hidden_from_browse", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_schematic_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            # FK to pictures added below, once that table exists.
            sa.Column("main_picture_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["parent_id"], ["categories.id"], ondelete="RESTRICT"),
        )
        op.create_index("idx_categories_parent", "categories", ["parent_id"])

    if "picture_sets" not in existing_tables:
        op.create_table(
            "picture_sets",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("type", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("troupe_id", sa.Integer(), nullable=False),
            sa.Column("patrouille_id", sa.Integer(), nullable=True),
            sa.Column("category_id", sa.Integer(), nullable=True),
            sa.Column("sub_category_id", sa.Integer(), nullable=True),
            sa.Column("uploaded_by_id", sa.Integer(), nullable=False),
            sa.Column("uploaded_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("classified_by_id", sa.Integer(), nullable=True),
            sa.Column("classified_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("approved_by_id", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("is_highlight", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["troupe_id"], ["troupes.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["patrouille_id"], ["patrouilles.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["category_id"], ["categories.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["sub_category_id"], ["categories.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["uploaded_by_id"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["classified_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approved_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint(
                "status IN ('PENDING','CLASSIFIED','APPROVED','REJECTED')",
                name="ck_picture_sets_status",
            ),
            sa.CheckConstraint("type IN ('INSTALLATION_PHOTO','SCHEMATIC')", name="ck_picture_sets_type"),
            sa.CheckConstraint("view_count >= 0", name="ck_picture_sets_view_count"),
        )
        for idx_name, cols in (
            ("idx_picture_sets_status", ["status"]),
            ("idx_picture_sets_troupe", ["troupe_id"]),
            ("idx_picture_sets_uploaded_by", ["uploaded_by_id"]),
        ):
            op.create_index(idx_name, "picture_sets", cols)

    if "pictures" not in existing_tables:
        op.create_table(
            "pictures",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("picture_set_id", sa.Integer(), nullable=False),
            sa.Column("file_path", sa.String(length=1024), nullable=False),
            sa.Column("display_order", sa.Integer(), nullable=False),
            sa.Column("category_id", sa.Integer(), nullable=True),
            sa.Column("type", sa.String(length=32), nullable=True),
            sa.Column("taken_at", sa.DateTime(timezone=False), nullable=True),
            # FK to design_groups added below, once that table exists.
            sa.Column("design_group_id", sa.Integer(), nullable=True),
            sa.Column("uploaded_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["picture_set_id"], ["picture_sets.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["category_id"], ["categories.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_pictures_set", "pictures", ["picture_set_id"])
        op.create_index("idx_pictures_design_group", "pictures", ["design_group_id"])

    if "design_groups" not in existing_tables:
        op.create_table(
            "design_groups",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("primary_picture_id", sa.Integer(), nullable=False),
            sa.Column("category_id", sa.Integer(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(
                ["primary_picture_id"],
                ["pictures.id"],
                ondelete="RESTRICT",
                name="fk_design_groups_primary_picture",
            ),
            sa.ForeignKeyConstraint(["category_id"], ["categories.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="RESTRICT"),
        )

        with op.batch_alter_table("pictures") as batch:
            batch.create_foreign_key(
                "fk_pictures_design_group",
                "design_groups",
                ["design_group_id"],
                ["id"],
                ondelete="SET NULL",
            )
        with op.batch_alter_table("categories") as batch:
            batch.create_foreign_key(
                "fk_categories_main_picture",
                "pictures",
                ["main_picture_id"],
                ["id"],
                ondelete="SET NULL",
            )


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table("categories") as batch:
        batch.drop_constraint("fk_categories_main_picture", type_="foreignkey")
    with op.batch_alter_table("pictures") as batch:
        batch.drop_constraint("fk_pictures_design_group", type_="foreignkey")
    op.drop_table("design_groups")
    op.drop_index("idx_pictures_design_group", table_name="pictures")
    op.drop_index("idx_pictures_set", table_name="pictures")
    op.drop_table("pictures")
    for idx_name in ("idx_picture_sets_uploaded_by", "idx_picture_sets_troupe", "idx_picture_sets_status"):
        op.drop_index(idx_name, table_name="picture_sets")
    op.drop_table("picture_sets")
    op.drop_index("idx_categories_parent", table_name="categories")
    op.drop_table("categories")
    op.drop_index("idx_audit_events_entity", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("user_district_access")
    op.drop_table("users")
    op.drop_index("idx_patrouilles_troupe", table_name="patrouilles")
    op.drop_table("patrouilles")
    op.drop_index("idx_troupes_group", table_name="troupes")
    op.drop_table("troupes")
    op.drop_index("idx_groups_district", table_name="groups")
    op.drop_table("groups")
    op.drop_table("districts")
