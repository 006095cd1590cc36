"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "users",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("tasks_refresh_token_encrypted", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)

  op.create_table(
    "api_tokens",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("token_hash", sa.String(), nullable=False),
    sa.Column("token_hint", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
  )
  op.create_index("ix_api_tokens_user_id", "api_tokens", ["user_id"], unique=False)
  op.create_index("ix_api_tokens_token_hash", "api_tokens", ["token_hash"], unique=True)

  op.create_table(
    "projects",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("member_ids", sa.JSON(), nullable=False),
    sa.Column("external_list_id", sa.String(), nullable=True),
    sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("sync_status", sa.String(), nullable=True),
    sa.Column("sync_error", sa.Text(), nullable=True),
    sa.Column("sync_claimed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_projects_owner_id", "projects", ["owner_id"], unique=False)
  op.create_index("ix_projects_sync_enabled", "projects", ["sync_enabled"], unique=False)

  op.create_table(
    "tasks",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False, server_default=""),
    sa.Column("status", sa.String(), nullable=False, server_default="open"),
    sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
    sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("assignee_id", sa.String(), nullable=True),
    sa.Column("assignee_name", sa.String(), nullable=True),
    sa.Column("tags", sa.JSON(), nullable=False),
    sa.Column("external_task_id", sa.String(), nullable=True),
    sa.Column("external_list_id", sa.String(), nullable=True),
    sa.Column("external_origin", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("project_id", "external_task_id", name="ux_tasks_project_external_task"),
  )
  op.create_index("ix_tasks_project_id", "tasks", ["project_id"], unique=False)

  op.create_table(
    "audit_events",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("project_id", sa.String(), nullable=True),
    sa.Column("task_id", sa.String(), nullable=True),
    sa.Column("actor_id", sa.String(), nullable=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("payload", sa.JSON(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_audit_events_project_id", "audit_events", ["project_id"], unique=False)

  op.create_table(
    "notification_logs",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("task_id", sa.String(), nullable=True),
    sa.Column("kind", sa.String(), nullable=False),
    sa.Column("recipient", sa.String(), nullable=False),
    sa.Column("success", sa.Boolean(), nullable=False),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_notification_logs_task_id", "notification_logs", ["task_id"], unique=False)

  op.create_table(
    "member_enrollments",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("task_id", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("done_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_member_enrollments_project_id", "member_enrollments", ["project_id"], unique=False)


def downgrade() -> None:
  op.drop_table("member_enrollments")
  op.drop_table("notification_logs")
  op.drop_table("audit_events")
  op.drop_table("tasks")
  op.drop_table("projects")
  op.drop_table("api_tokens")
  op.drop_table("users")
