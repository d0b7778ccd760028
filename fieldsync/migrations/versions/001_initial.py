"""Initial mirror schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Mirrored parent rows
    op.create_table(
        "inspection_record",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("object_id", sa.Integer),
        sa.Column("relation_key", sa.String(64), nullable=False),
        sa.Column("action_code", sa.String(100)),
        sa.Column("alt_action_code", sa.String(100)),
        sa.Column("occurred_at", sa.DateTime(timezone=True)),
        sa.Column("north", sa.Float),
        sa.Column("east", sa.Float),
        sa.Column("zone", sa.String(20)),
        sa.Column("altitude", sa.Float),
        sa.Column("component", sa.String(300)),
        sa.Column("sub_component", sa.String(300)),
        sa.Column("component_type", sa.String(300)),
        sa.Column("installation", sa.String(300)),
        sa.Column("modality", sa.String(200)),
        sa.Column("activity", sa.String(300)),
        sa.Column("sampling_point", sa.String(200)),
        sa.Column("supervisor_name", sa.String(200)),
        sa.Column("description", sa.Text),
        sa.Column("findings", sa.Text),
        sa.Column("photo_descriptions", sa.JSON),
        sa.Column("descriptions_text", sa.Text),
        sa.Column("facts_text", sa.Text),
        sa.Column("fact_descriptions_text", sa.Text),
        sa.Column("related_descriptions", sa.JSON),
        sa.Column("related_facts", sa.JSON),
        sa.Column("extra_json", sa.JSON),
        sa.Column("remote_created_at", sa.DateTime(timezone=True)),
        sa.Column("remote_edited_at", sa.DateTime(timezone=True)),
        sa.Column("remote_editor", sa.String(200)),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_inspection_record_relation_key", "inspection_record", ["relation_key"], unique=True)
    op.create_index("ix_inspection_record_action_code", "inspection_record", ["action_code"])
    op.create_index("ix_inspection_record_alt_action_code", "inspection_record", ["alt_action_code"])
    op.create_index("ix_inspection_record_codes", "inspection_record", ["action_code", "alt_action_code"])
    op.create_index("ix_inspection_record_is_deleted", "inspection_record", ["is_deleted"])

    # Attachments
    op.create_table(
        "inspection_photo",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("relation_key", sa.String(64), nullable=False),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("content_type", sa.String(200)),
        sa.Column("size_bytes", sa.BigInteger),
        sa.Column("sha256", sa.String(64)),
        sa.Column("local_path", sa.Text, nullable=False),
        sa.Column("source_layer", sa.Integer, nullable=False),
        sa.Column("child_object_id", sa.Integer),
        sa.Column("attachment_id", sa.Integer),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True)),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("relation_key", "file_name", name="uq_photo_relation_file"),
    )
    op.create_index("ix_inspection_photo_relation_key", "inspection_photo", ["relation_key"])
    op.create_index("ix_inspection_photo_is_deleted", "inspection_photo", ["is_deleted"])

    # Per-scope bookkeeping
    op.create_table(
        "sync_scope_state",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("scope_key", sa.String(300), nullable=False),
        sa.Column("scope_kind", sa.String(20), nullable=False),
        sa.Column("code_field", sa.String(20)),
        sa.Column("record_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_sync_scope_state_scope_key", "sync_scope_state", ["scope_key"], unique=True)

    # Append-only run log
    op.create_table(
        "sync_log",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("scope_key", sa.String(300), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False, server_default="running"),
        sa.Column("final_state", sa.String(30)),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("records_before", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_after", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_new", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_updated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_unchanged", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_soft_deleted", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rows_missing_key", sa.Integer, nullable=False, server_default="0"),
        sa.Column("orphan_children", sa.Integer, nullable=False, server_default="0"),
        sa.Column("soft_delete_skipped", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("photos_downloaded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("photos_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("photos_soft_deleted", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors_json", sa.JSON),
        sa.Column("error_message", sa.Text),
        *_timestamps(),
    )
    op.create_index("ix_sync_log_scope_key", "sync_log", ["scope_key"])
    op.create_index("ix_sync_log_outcome", "sync_log", ["outcome"])

    # Local edits
    op.create_table(
        "edit_overlay",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("relation_key", sa.String(64), nullable=False),
        sa.Column("field_name", sa.String(100), nullable=False),
        sa.Column("value", sa.Text),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("relation_key", "field_name", name="uq_overlay_relation_field"),
    )
    op.create_index("ix_edit_overlay_relation_key", "edit_overlay", ["relation_key"])


def downgrade() -> None:
    op.drop_table("edit_overlay")
    op.drop_table("sync_log")
    op.drop_table("sync_scope_state")
    op.drop_table("inspection_photo")
    op.drop_table("inspection_record")
