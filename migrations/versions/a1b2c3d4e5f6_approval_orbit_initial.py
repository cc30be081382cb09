"""Approval Orbit: workflows, projects, assets and review ledger

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "workflows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("stages", sa.JSON(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_by", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("client_name", sa.String(200)),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("color", sa.String(20), server_default="blue"),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("workflows.id", ondelete="SET NULL"), index=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_by_email", sa.String(255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "assets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="SET NULL"), index=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("image_url", sa.String(1000)),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_by_email", sa.String(255)),
        sa.Column("review_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_approved_by", sa.String(64)),
        sa.Column("final_approved_at", sa.DateTime(timezone=True)),
        sa.Column("final_approval_notes", sa.Text()),
        sa.Column("last_review_activity_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "stage_reviewers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("user_name", sa.String(150), nullable=False),
        sa.Column("user_email", sa.String(255)),
        sa.Column("added_by", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "stage_order", "user_id", name="uq_stage_reviewer"),
    )

    op.create_table(
        "stage_progress",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("asset_id", sa.Integer(), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.String(64)),
        sa.Column("reviewed_by_name", sa.String(150)),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("asset_id", "stage_order", name="uq_stage_progress_asset_stage"),
    )

    op.create_table(
        "stage_approvals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("asset_id", sa.Integer(), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("review_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("user_name", sa.String(150)),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "asset_id", "review_round", "stage_order", "user_id", "action",
            name="uq_stage_approval_tuple",
        ),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(64), index=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), index=True),
        sa.Column("recipient", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), server_default=""),
        sa.Column("category", sa.String(30), server_default="system"),
        sa.Column("severity", sa.String(20), server_default="info"),
        sa.Column("entity_type", sa.String(30), server_default="asset"),
        sa.Column("entity_id", sa.Integer()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_email", sa.String(255), nullable=False, index=True),
        sa.Column("recipient_name", sa.String(150)),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("template_name", sa.String(100)),
        sa.Column("category", sa.String(30), server_default="system"),
        sa.Column("status", sa.String(20), server_default="queued"),
        sa.Column("attempts", sa.Integer(), server_default="0"),
        sa.Column("error_message", sa.Text()),
        sa.Column("notification_id", sa.Integer()),
        sa.Column("asset_id", sa.Integer(), index=True),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("email_logs")
    op.drop_table("notifications")
    op.drop_table("stage_approvals")
    op.drop_table("stage_progress")
    op.drop_table("stage_reviewers")
    op.drop_table("assets")
    op.drop_table("projects")
    op.drop_table("workflows")
