"""orgcore hierarchy, recruitment codes and assignments

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("reference_code_used", sa.String(), nullable=True),
        sa.Column("recruited_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["recruited_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_display_name", "users", ["display_name"])
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_reference_code_used", "users", ["reference_code_used"])
    op.create_index("ix_users_recruited_by", "users", ["recruited_by"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "hierarchy_edges",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("top_admin_id", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["parent_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["top_admin_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_hierarchy_edges_parent_id", "hierarchy_edges", ["parent_id"])
    op.create_index("ix_hierarchy_edges_level", "hierarchy_edges", ["level"])
    op.create_index("ix_hierarchy_edges_top_admin_id", "hierarchy_edges", ["top_admin_id"])
    op.create_index("ix_hierarchy_edges_created_at", "hierarchy_edges", ["created_at"])
    op.create_index("ix_hierarchy_edges_updated_at", "hierarchy_edges", ["updated_at"])

    op.create_table(
        "recruitment_codes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("code_type", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_recruitment_codes_code", "recruitment_codes", ["code"])
    op.create_index("ix_recruitment_codes_owner_id", "recruitment_codes", ["owner_id"])
    op.create_index("ix_recruitment_codes_code_type", "recruitment_codes", ["code_type"])
    op.create_index("ix_recruitment_codes_is_active", "recruitment_codes", ["is_active"])
    op.create_index("ix_recruitment_codes_created_at", "recruitment_codes", ["created_at"])
    op.create_index("ix_recruitment_codes_updated_at", "recruitment_codes", ["updated_at"])
    op.create_index(
        "uq_recruitment_codes_active_code",
        "recruitment_codes",
        ["code"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "uq_recruitment_codes_active_owner_type",
        "recruitment_codes",
        ["owner_id", "code_type"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "work_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_items_client_id", "work_items", ["client_id"])
    op.create_index("ix_work_items_created_by", "work_items", ["created_by"])
    op.create_index("ix_work_items_created_at", "work_items", ["created_at"])
    op.create_index("ix_work_items_updated_at", "work_items", ["updated_at"])

    op.create_table(
        "assignment_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("assigned_to_id", sa.String(), nullable=False),
        sa.Column("assigned_to_role", sa.String(), nullable=False),
        sa.Column("assigned_by_id", sa.String(), nullable=False),
        sa.Column("assigned_by_role", sa.String(), nullable=False),
        sa.Column("assignment_type", sa.String(), nullable=False),
        sa.Column("previous_assigned_to_id", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("validation_notes", sa.String(), nullable=True),
        sa.Column("hierarchy_level", sa.Integer(), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["work_item_id"], ["work_items.id"]),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["assigned_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["previous_assigned_to_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_assignment_records_work_item_id", "assignment_records", ["work_item_id"])
    op.create_index("ix_assignment_records_assigned_to_id", "assignment_records", ["assigned_to_id"])
    op.create_index("ix_assignment_records_assigned_by_id", "assignment_records", ["assigned_by_id"])
    op.create_index("ix_assignment_records_assignment_type", "assignment_records", ["assignment_type"])
    op.create_index("ix_assignment_records_is_valid", "assignment_records", ["is_valid"])
    op.create_index("ix_assignment_records_assigned_at", "assignment_records", ["assigned_at"])
    op.create_index(
        "uq_assignment_records_current",
        "assignment_records",
        ["work_item_id"],
        unique=True,
        sqlite_where=sa.text("is_valid = 1"),
        postgresql_where=sa.text("is_valid"),
    )

    op.create_table(
        "hierarchy_change_log",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("old_parent_id", sa.String(), nullable=True),
        sa.Column("new_parent_id", sa.String(), nullable=True),
        sa.Column("old_level", sa.Integer(), nullable=True),
        sa.Column("new_level", sa.Integer(), nullable=False),
        sa.Column("changed_by", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("affected_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_hierarchy_change_log_user_id", "hierarchy_change_log", ["user_id"])
    op.create_index("ix_hierarchy_change_log_change_type", "hierarchy_change_log", ["change_type"])
    op.create_index("ix_hierarchy_change_log_changed_by", "hierarchy_change_log", ["changed_by"])
    op.create_index("ix_hierarchy_change_log_created_at", "hierarchy_change_log", ["created_at"])

    op.create_table(
        "financial_access_audit",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("caller_id", sa.String(), nullable=False),
        sa.Column("caller_role", sa.String(), nullable=False),
        sa.Column("access_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_financial_access_audit_caller_id", "financial_access_audit", ["caller_id"])
    op.create_index("ix_financial_access_audit_access_type", "financial_access_audit", ["access_type"])
    op.create_index("ix_financial_access_audit_resource_id", "financial_access_audit", ["resource_id"])
    op.create_index("ix_financial_access_audit_success", "financial_access_audit", ["success"])
    op.create_index("ix_financial_access_audit_created_at", "financial_access_audit", ["created_at"])


def downgrade() -> None:
    op.drop_table("financial_access_audit")
    op.drop_table("hierarchy_change_log")
    op.drop_index("uq_assignment_records_current", table_name="assignment_records")
    op.drop_table("assignment_records")
    op.drop_table("work_items")
    op.drop_index("uq_recruitment_codes_active_owner_type", table_name="recruitment_codes")
    op.drop_index("uq_recruitment_codes_active_code", table_name="recruitment_codes")
    op.drop_table("recruitment_codes")
    op.drop_table("hierarchy_edges")
    op.drop_table("users")
    op.drop_table("audit_logs")
    op.drop_table("events")
