from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None

UPLOAD_STATUSES = ("pending", "in_progress", "assembling", "completed", "failed")
ACTIVE_SESSION = sa.text("status IN ('pending', 'in_progress', 'assembling')")


def _backend_part_columns() -> list[sa.Column]:
    upload_status_enum = sa.Enum(*UPLOAD_STATUSES, name="uploadstatus").with_variant(
        postgresql.ENUM(*UPLOAD_STATUSES, name="uploadstatus", create_type=False), "postgresql"
    )
    return [
        sa.Column("specimen_id", sa.Integer(), sa.ForeignKey("specimens.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", upload_status_enum, nullable=False),
        sa.Column("part_number", sa.Integer(), nullable=False),
        sa.Column("part_etags", sa.JSON(), nullable=False),
        sa.Column("buffered_bytes", sa.BigInteger(), nullable=False),
        sa.Column("buffered_data", sa.LargeBinary(), nullable=True),
        sa.Column("backend_upload_id", sa.String(length=1024), nullable=False),
        sa.Column("object_key", sa.String(length=1024), nullable=False),
        sa.Column("content_type", sa.String(length=64), nullable=False),
        sa.Column("total_parts", sa.Integer(), nullable=True),
        sa.Column("image_id", sa.Integer(), sa.ForeignKey("specimen_images.id", ondelete="SET NULL"), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    sa.Enum(*UPLOAD_STATUSES, name="uploadstatus").create(op.get_bind(), checkfirst=True)

    op.create_table(
        "specimens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("specimen_code", sa.String(length=255), nullable=False, unique=True),
        sa.Column("primary_image_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "specimen_images",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("specimen_id", sa.Integer(), sa.ForeignKey("specimens.id", ondelete="CASCADE"), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column("content_hash", sa.String(length=32), nullable=False),
        sa.Column("content_type", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("specimen_id", "content_hash", name="uq_specimen_images_specimen_hash"),
    )

    with op.batch_alter_table("specimens") as batch:
        batch.create_foreign_key(
            "fk_specimens_primary_image",
            "specimen_images",
            ["primary_image_id"],
            ["id"],
            ondelete="SET NULL",
        )

    op.create_table(
        "upload_sessions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("content_hash", sa.String(length=32), nullable=False),
        sa.Column("current_part_index", sa.Integer(), nullable=False),
        *_backend_part_columns(),
    )
    op.create_index("ix_upload_sessions_specimen_hash", "upload_sessions", ["specimen_id", "content_hash"])
    op.create_index(
        "uq_upload_sessions_active_hash",
        "upload_sessions",
        ["specimen_id", "content_hash"],
        unique=True,
        sqlite_where=ACTIVE_SESSION,
        postgresql_where=ACTIVE_SESSION,
    )

    op.create_table(
        "tus_uploads",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("upload_length", sa.BigInteger(), nullable=False),
        sa.Column("upload_offset", sa.BigInteger(), nullable=False),
        sa.Column("upload_metadata", sa.JSON(), nullable=True),
        sa.Column("declared_hash", sa.String(length=32), nullable=True),
        sa.Column("target_image_id", sa.Integer(), nullable=True),
        *_backend_part_columns(),
    )


def downgrade() -> None:
    op.drop_table("tus_uploads")
    op.drop_index("uq_upload_sessions_active_hash", table_name="upload_sessions")
    op.drop_index("ix_upload_sessions_specimen_hash", table_name="upload_sessions")
    op.drop_table("upload_sessions")
    with op.batch_alter_table("specimens") as batch:
        batch.drop_constraint("fk_specimens_primary_image", type_="foreignkey")
    op.drop_table("specimen_images")
    op.drop_table("specimens")

    sa.Enum(name="uploadstatus").drop(op.get_bind(), checkfirst=False)
