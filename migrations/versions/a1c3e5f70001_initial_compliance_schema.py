"""initial_compliance_schema

Creates the compliance engine schema:
  - users, user_assignments, regions, branches, bcks, suppliers  directory
  - audit_templates                                              checklist catalog
  - audit_plans, audits, audit_results                           audits
  - findings, capas, capa_activities                             corrective actions
  - health_scores                                                score snapshots
  - notifications, scheduled_jobs                                side channels

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-03-02 09:12:44.381920
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c3e5f70001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Directory ─────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_role", "users", ["role"])

    if "user_assignments" not in existing:
        op.create_table(
            "user_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("assigned_type", sa.String(length=20), nullable=False,
                      comment="region, branch, bck, supplier"),
            sa.Column("assigned_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "assigned_type", "assigned_id",
                                name="uq_user_assignment"),
        )
        op.create_index("ix_user_assignments_user_id", "user_assignments", ["user_id"])

    if "regions" not in existing:
        op.create_table(
            "regions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    for table in ("branches", "bcks"):
        if table in existing:
            continue
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("city", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("health_score", sa.Float(), nullable=True),
            sa.Column("region_id", sa.Integer(), nullable=True),
            sa.Column("manager_id", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["region_id"], ["regions.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["manager_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )
        op.create_index(f"ix_{table}_region_id", table, ["region_id"])

    if "suppliers" not in existing:
        op.create_table(
            "suppliers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("supplier_code", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("city", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("quality_score", sa.Float(), nullable=True),
            sa.Column("certifications", sa.JSON(), nullable=True),
            sa.Column("supplies_to_bck_ids", sa.JSON(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("supplier_code"),
        )

    # ── Templates ─────────────────────────────────────────────────────────
    if "audit_templates" not in existing:
        op.create_table(
            "audit_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("version", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("checklist_json", sa.JSON(), nullable=True),
            sa.Column("scoring_config", sa.JSON(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    # ── Audits ────────────────────────────────────────────────────────────
    if "audit_plans" not in existing:
        op.create_table(
            "audit_plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("recurrence_pattern", sa.JSON(), nullable=False),
            sa.Column("scope", sa.JSON(), nullable=False),
            sa.Column("assignment_strategy", sa.String(length=30), nullable=False),
            sa.Column("assigned_auditor_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("last_expanded_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["template_id"], ["audit_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["assigned_auditor_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "audits" not in existing:
        op.create_table(
            "audits",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False, comment="AUD-YYYY-NNNNN"),
            sa.Column("plan_id", sa.Integer(), nullable=True),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("auditor_id", sa.Integer(), nullable=True),
            sa.Column("scheduled_date", sa.Date(), nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("score", sa.Float(), nullable=True),
            sa.Column("pass_fail", sa.String(length=10), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["plan_id"], ["audit_plans.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["template_id"], ["audit_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["auditor_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )
        op.create_index("ix_audits_plan_id", "audits", ["plan_id"])
        op.create_index("ix_audits_auditor_id", "audits", ["auditor_id"])
        op.create_index("ix_audits_entity", "audits", ["entity_type", "entity_id"])
        op.create_index("ix_audits_status_date", "audits", ["status", "scheduled_date"])

    if "audit_results" not in existing:
        op.create_table(
            "audit_results",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("audit_id", sa.Integer(), nullable=False),
            sa.Column("section_id", sa.String(length=50), nullable=False),
            sa.Column("item_id", sa.String(length=50), nullable=False),
            sa.Column("response", sa.JSON(), nullable=True),
            sa.Column("evidence_urls", sa.JSON(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("points_earned", sa.Float(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["audit_id"], ["audits.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("audit_id", "item_id", name="uq_audit_result_item"),
        )
        op.create_index("ix_audit_results_audit_id", "audit_results", ["audit_id"])

    # ── Findings & CAPAs ──────────────────────────────────────────────────
    if "findings" not in existing:
        op.create_table(
            "findings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False, comment="FND-YYYY-NNNNN"),
            sa.Column("audit_id", sa.Integer(), nullable=False),
            sa.Column("item_id", sa.String(length=50), nullable=False),
            sa.Column("section_name", sa.String(length=200), nullable=True),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("evidence_urls", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["audit_id"], ["audits.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
            sa.UniqueConstraint("audit_id", "item_id", name="uq_finding_audit_item"),
        )
        op.create_index("ix_findings_audit_id", "findings", ["audit_id"])

    if "capas" not in existing:
        op.create_table(
            "capas",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False, comment="CPA-YYYY-NNNNN"),
            sa.Column("finding_id", sa.Integer(), nullable=False),
            sa.Column("audit_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("priority", sa.String(length=20), nullable=False),
            sa.Column("evidence_urls", sa.JSON(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("sub_tasks", sa.JSON(), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["finding_id"], ["findings.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["audit_id"], ["audits.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_to"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
            sa.UniqueConstraint("finding_id"),
        )
        op.create_index("ix_capas_audit_id", "capas", ["audit_id"])
        op.create_index("ix_capas_assigned_to", "capas", ["assigned_to"])
        op.create_index("ix_capas_entity", "capas", ["entity_type", "entity_id"])
        op.create_index("ix_capas_status_due", "capas", ["status", "due_date"])

    if "capa_activities" not in existing:
        op.create_table(
            "capa_activities",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("capa_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=50), nullable=False,
                      comment="User id or 'system'"),
            sa.Column("action", sa.String(length=50), nullable=False),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["capa_id"], ["capas.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_capa_activities_capa_id", "capa_activities", ["capa_id"])

    # ── Health scores ─────────────────────────────────────────────────────
    if "health_scores" not in existing:
        op.create_table(
            "health_scores",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("score", sa.Float(), nullable=False),
            sa.Column("components", sa.JSON(), nullable=False),
            sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_type", "entity_id", name="uq_health_score_entity"),
        )

    # ── Notifications & scheduler ─────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("link_to", sa.String(length=300), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_seconds", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs", "notifications", "health_scores", "capa_activities", "capas",
        "findings", "audit_results", "audits", "audit_plans", "audit_templates",
        "suppliers", "bcks", "branches", "regions", "user_assignments", "users",
    ):
        op.drop_table(table)
