"""initial_translation_kpi_schema

Create users, coefficient registry, projects/members, KPI ledger,
notifications and audit tables.

Revision ID: 7c1e4a9b2d30
Revises:
Create Date: 2026-10-12 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e4a9b2d30"
down_revision = None
branch_labels = None
depends_on = None


def _money():
    return sa.Numeric(precision=15, scale=2)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("username", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("roles", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("username"),
        )

    if "coefficient_registry" not in existing_tables:
        op.create_table(
            "coefficient_registry",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("translator_ratio_mtpe", sa.Float(), nullable=False, server_default="0.12"),
            sa.Column("translator_ratio_deepedit", sa.Float(), nullable=False, server_default="0.18"),
            sa.Column("reviewer_ratio", sa.Float(), nullable=False, server_default="0.08"),
            sa.Column("pm_ratio", sa.Float(), nullable=False, server_default="0.03"),
            sa.Column("sales_bonus_ratio", sa.Float(), nullable=False, server_default="0.02"),
            sa.Column("sales_commission_ratio", sa.Float(), nullable=False, server_default="0.1"),
            sa.Column("admin_ratio", sa.Float(), nullable=False, server_default="0.005"),
            sa.Column("completion_factor", sa.Float(), nullable=False, server_default="1.0"),
            sa.Column("part_time_sales_tax_rate", sa.Float(), nullable=False, server_default="0"),
            sa.Column("role_ratios", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_coefficient_registry_is_active", "coefficient_registry", ["is_active"])

    if "coefficient_changes" not in existing_tables:
        op.create_table(
            "coefficient_changes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("registry_id", sa.Integer(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("old_values", sa.JSON(), nullable=False),
            sa.Column("new_values", sa.JSON(), nullable=False),
            sa.Column("reason", sa.String(length=500), nullable=True),
            sa.Column("changed_by", sa.Integer(), nullable=True),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["registry_id"], ["coefficient_registry.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["changed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_coefficient_changes_registry_id", "coefficient_changes", ["registry_id"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_number", sa.String(length=40), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("client_name", sa.String(length=200), nullable=True),
            sa.Column("business_type", sa.String(length=30), nullable=False, server_default="translation"),
            sa.Column("word_count", sa.Integer(), nullable=True),
            sa.Column("unit_price", _money(), nullable=True),
            sa.Column("amount", _money(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
            sa.Column("deadline", sa.Date(), nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revision_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_delayed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("has_complaint", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("payment_received_amount", _money(), nullable=True),
            sa.Column("payment_received_at", sa.Date(), nullable=True),
            sa.Column("payment_expected_at", sa.Date(), nullable=True),
            sa.Column("payment_is_fully_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="unpaid"),
            sa.Column("part_time_sales_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("company_receivable", _money(), nullable=True),
            sa.Column("part_time_sales_tax_rate", sa.Float(), nullable=True),
            sa.Column("pending_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("accepted_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rejected_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("locked_ratios", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_number"),
        )
        op.create_index("ix_projects_status", "projects", ["status"])
        op.create_index("ix_projects_status_completed", "projects", ["status", "completed_at"])

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=40), nullable=False),
            sa.Column("translator_type", sa.String(length=20), nullable=True),
            sa.Column("employment_type", sa.String(length=20), nullable=False, server_default="full_time"),
            sa.Column("workload_ratio", sa.Float(), nullable=False, server_default="1.0"),
            sa.Column("part_time_fee", _money(), nullable=True),
            sa.Column("ratio_locked", sa.Float(), nullable=True),
            sa.Column("acceptance_status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("acceptance_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", "role", name="uq_project_members_project_user_role"),
        )
        op.create_index("ix_project_members_project_id", "project_members", ["project_id"])
        op.create_index("ix_project_members_user_id", "project_members", ["user_id"])

    if "kpi_records" not in existing_tables:
        op.create_table(
            "kpi_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=40), nullable=False),
            sa.Column("month", sa.String(length=7), nullable=False),
            sa.Column("employment_type", sa.String(length=20), nullable=False, server_default="full_time"),
            sa.Column("value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("formula", sa.Text(), nullable=False, server_default=""),
            sa.Column("project_amount", sa.Float(), nullable=True),
            sa.Column("ratio", sa.Float(), nullable=True),
            sa.Column("workload_ratio", sa.Float(), nullable=True),
            sa.Column("completion_factor", sa.Float(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=False),
            sa.Column("is_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("reviewed_by", sa.Integer(), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["reviewed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "project_id", "role", "month", name="uq_kpi_records_natural_key"),
        )
        op.create_index("ix_kpi_records_user_id", "kpi_records", ["user_id"])
        op.create_index("ix_kpi_records_project_id", "kpi_records", ["project_id"])
        op.create_index("ix_kpi_records_month_user", "kpi_records", ["month", "user_id"])

    if "monthly_role_kpis" not in existing_tables:
        op.create_table(
            "monthly_role_kpis",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("month", sa.String(length=7), nullable=False),
            sa.Column("role", sa.String(length=40), nullable=False),
            sa.Column("total_company_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("ratio", sa.Float(), nullable=False, server_default="0"),
            sa.Column("evaluation_level", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("evaluation_factor", sa.Float(), nullable=False, server_default="1.0"),
            sa.Column("is_evaluated", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("evaluated_by", sa.Integer(), nullable=True),
            sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("formula", sa.Text(), nullable=False, server_default=""),
            sa.Column("is_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("reviewed_by", sa.Integer(), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["evaluated_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["reviewed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "month", "role", name="uq_monthly_role_kpis_user_month_role"),
        )
        op.create_index("ix_monthly_role_kpis_user_id", "monthly_role_kpis", ["user_id"])
        op.create_index("ix_monthly_role_kpis_month", "monthly_role_kpis", ["month"])

    if "kpi_generation_runs" not in existing_tables:
        op.create_table(
            "kpi_generation_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("month", sa.String(length=7), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
            sa.Column("force", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("started_by", sa.Integer(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("projects_processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("company_total", sa.Float(), nullable=True),
            sa.Column("errors", sa.JSON(), nullable=False),
            sa.ForeignKeyConstraint(["started_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_kpi_generation_runs_month", "kpi_generation_runs", ["month"])
        op.create_index(
            "uq_kpi_generation_runs_month_running",
            "kpi_generation_runs",
            ["month"],
            unique=True,
            postgresql_where=sa.text("status = 'running'"),
            sqlite_where=sa.text("status = 'running'"),
        )

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False, server_default="system"),
            sa.Column("message", sa.Text(), nullable=False, server_default=""),
            sa.Column("link", sa.String(length=300), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
        op.create_index("ix_notifications_project_id", "notifications", ["project_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("changes", sa.JSON(), nullable=False),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_project_ts", "audit_logs", ["project_id", "timestamp"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "audit_logs",
        "notifications",
        "kpi_generation_runs",
        "monthly_role_kpis",
        "kpi_records",
        "project_members",
        "projects",
        "coefficient_changes",
        "coefficient_registry",
        "users",
    ):
        if table in existing_tables:
            op.drop_table(table)
