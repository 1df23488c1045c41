"""approval_engine_initial

Creates the approval engine tables:
  - employees               — read-only directory for SqlDirectory
  - approval_chains         — sequential and graded chains (optimistic lock)
  - approval_steps          — one row per chain level
  - notifications           — in-app notifications
  - milestones / action_items / action_item_assignees
  - kpi_targets / action_item_kpi_links

Tables created conditionally (IF NOT EXISTS semantics) so the migration can
run against a development database that already received them via
db.create_all().

Revision ID: a1c0e7d24b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c0e7d24b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Directory ─────────────────────────────────────────────────────────
    if "employees" not in existing:
        op.create_table(
            "employees",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=False),
            sa.Column("department", sa.String(length=150), nullable=True),
            sa.Column("position", sa.String(length=150), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("supervisor_id", sa.Integer(), nullable=True),
            sa.Column("department_head_id", sa.Integer(), nullable=True),
            sa.Column("approval_capacities", sa.JSON(), nullable=True,
                      comment="Declared capacities, e.g. ['department_head', 'finance_officer']"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["supervisor_id"], ["employees.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["department_head_id"], ["employees.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_employees_email", "employees", ["email"], unique=True)

    # ── Approval chains ───────────────────────────────────────────────────
    if "approval_chains" not in existing:
        op.create_table(
            "approval_chains",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("chain_type", sa.String(length=20), nullable=False,
                      comment="sequential | graded"),
            sa.Column("workflow_kind", sa.String(length=30), nullable=False),
            sa.Column("entity_type", sa.String(length=50), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("requester_key", sa.String(length=200), nullable=False),
            sa.Column("requester_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("current_level", sa.Integer(), nullable=False),
            sa.Column("task_weight", sa.Float(), nullable=True),
            sa.Column("completion_grade", sa.Float(), nullable=True),
            sa.Column("rejection_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_rejection", sa.JSON(), nullable=True),
            sa.Column("outcome_notified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_chains_requester_key", "approval_chains", ["requester_key"])
        op.create_index("ix_approval_chains_status", "approval_chains", ["status"])
        op.create_index("ix_approval_chain_entity", "approval_chains", ["entity_type", "entity_id"])

    if "approval_steps" not in existing:
        op.create_table(
            "approval_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("chain_id", sa.Integer(), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False),
            sa.Column("approver_key", sa.String(length=200), nullable=True),
            sa.Column("approver_name", sa.String(length=200), nullable=True),
            sa.Column("approver_department", sa.String(length=150), nullable=True),
            sa.Column("capacity", sa.String(length=50), nullable=True, comment="Primary capacity"),
            sa.Column("capacities", sa.JSON(), nullable=True,
                      comment="All capacities held at build time"),
            sa.Column("level_role", sa.String(length=40), nullable=True, comment="Graded chains only"),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("grade", sa.Float(), nullable=True),
            sa.Column("effective_score", sa.Float(), nullable=True),
            sa.ForeignKeyConstraint(["chain_id"], ["approval_chains.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("chain_id", "level", name="uq_approval_step_level"),
        )
        op.create_index("ix_approval_steps_chain_id", "approval_steps", ["chain_id"])
        op.create_index("ix_approval_steps_approver_key", "approval_steps", ["approver_key"])

    # ── Notifications ─────────────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=200), nullable=False, comment="Identity key"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=50), nullable=True),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])

    # ── Milestones, KPIs, action items ────────────────────────────────────
    if "milestones" not in existing:
        op.create_table(
            "milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="not_started"),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if "kpi_targets" not in existing:
        op.create_table(
            "kpi_targets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("owner_key", sa.String(length=200), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("weight", sa.Float(), nullable=False, server_default="0"),
            sa.Column("achievement", sa.Float(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_kpi_targets_owner_key", "kpi_targets", ["owner_key"])

    if "action_items" not in existing:
        op.create_table(
            "action_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("task_weight", sa.Float(), nullable=False, server_default="0",
                      comment="0–100, share of milestone"),
            sa.Column("created_by_key", sa.String(length=200), nullable=False),
            sa.Column("originator_key", sa.String(length=200), nullable=True),
            sa.Column("milestone_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=40), nullable=False, server_default="in_progress"),
            sa.Column("completion_grade", sa.Float(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_action_items_milestone_id", "action_items", ["milestone_id"])

    if "action_item_assignees" not in existing:
        op.create_table(
            "action_item_assignees",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("action_item_id", sa.Integer(), nullable=False),
            sa.Column("assignee_key", sa.String(length=200), nullable=False),
            sa.Column("completion_status", sa.String(length=20), nullable=False,
                      server_default="pending"),
            sa.Column("completion_notes", sa.Text(), nullable=True),
            sa.Column("completion_grade", sa.Float(), nullable=True),
            sa.Column("effective_score", sa.Float(), nullable=True),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("graded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("chain_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["action_item_id"], ["action_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["chain_id"], ["approval_chains.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("action_item_id", "assignee_key", name="uq_action_item_assignee"),
        )
        op.create_index("ix_action_item_assignees_action_item_id", "action_item_assignees",
                        ["action_item_id"])

    if "action_item_kpi_links" not in existing:
        op.create_table(
            "action_item_kpi_links",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("action_item_id", sa.Integer(), nullable=False),
            sa.Column("kpi_id", sa.Integer(), nullable=False),
            sa.Column("kpi_weight", sa.Float(), nullable=False, server_default="0"),
            sa.Column("contribution", sa.Float(), nullable=True,
                      comment="Last contribution applied to the KPI"),
            sa.ForeignKeyConstraint(["action_item_id"], ["action_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["kpi_id"], ["kpi_targets.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_action_item_kpi_links_action_item_id", "action_item_kpi_links",
                        ["action_item_id"])


def downgrade():
    op.drop_table("action_item_kpi_links")
    op.drop_table("action_item_assignees")
    op.drop_table("action_items")
    op.drop_table("kpi_targets")
    op.drop_table("milestones")
    op.drop_table("notifications")
    op.drop_table("approval_steps")
    op.drop_table("approval_chains")
    op.drop_table("employees")
