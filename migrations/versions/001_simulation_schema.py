"""Simulation schema

Revision ID: 001_simulation_schema
Revises:
Create Date: 2026-10-19

Collaborator tables touched by the seeder (minimal columns) plus the
simulation run table and its bounded recent-actions ring buffer.
Designed to work on SQLite (tests) and Postgres.
"""

from alembic import op
import sqlalchemy as sa


revision = "001_simulation_schema"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True)


def upgrade() -> None:
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        _created_at(),
        sa.CheckConstraint("role IN ('ADMIN', 'SUBADMIN', 'AEFE', 'TEACHER')", name="chk_users_role"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "school_years",
        _id(),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_school_years_active", "school_years", ["active"])

    op.create_table(
        "classes",
        _id(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("level", sa.String(length=20), nullable=False),
        sa.Column("school_year_id", sa.Uuid(), sa.ForeignKey("school_years.id", ondelete="CASCADE"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_classes_name", "classes", ["name"])
    op.create_index("ix_classes_school_year_id", "classes", ["school_year_id"])

    op.create_table(
        "students",
        _id(),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=False),
        sa.Column("logical_key", sa.String(length=64), nullable=False, unique=True),
        _created_at(),
    )

    op.create_table(
        "enrollments",
        _id(),
        sa.Column("student_id", sa.Uuid(), sa.ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
        sa.Column("class_id", sa.Uuid(), sa.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("school_year_id", sa.Uuid(), sa.ForeignKey("school_years.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
    )
    op.create_index("ix_enrollments_class_status", "enrollments", ["class_id", "status"])

    op.create_table(
        "gradebook_templates",
        _id(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("pages", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        _created_at(),
    )

    op.create_table(
        "template_assignments",
        _id(),
        sa.Column(
            "template_id", sa.Uuid(), sa.ForeignKey("gradebook_templates.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("student_id", sa.Uuid(), sa.ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
        sa.Column("school_year_id", sa.Uuid(), sa.ForeignKey("school_years.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_teachers", sa.JSON(), nullable=False),
        sa.Column("assigned_by", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False),
        sa.Column("completed_by", sa.String(length=64), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        _created_at(),
        sa.CheckConstraint(
            "status IN ('draft', 'in_progress', 'completed', 'signed')",
            name="chk_template_assignments_status",
        ),
    )
    op.create_index("ix_template_assignments_template_id", "template_assignments", ["template_id"])
    op.create_index("ix_template_assignments_student_id", "template_assignments", ["student_id"])
    op.create_index(
        "ix_template_assignments_template_student", "template_assignments", ["template_id", "student_id"]
    )

    op.create_table(
        "teacher_class_assignments",
        _id(),
        sa.Column("teacher_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("class_id", sa.Uuid(), sa.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("school_year_id", sa.Uuid(), sa.ForeignKey("school_years.id", ondelete="CASCADE"), nullable=False),
        sa.Column("languages", sa.JSON(), nullable=False),
        sa.Column("is_prof_polyvalent", sa.Boolean(), nullable=False),
        sa.Column("assigned_by", sa.String(length=64), nullable=True),
        _created_at(),
        sa.UniqueConstraint("teacher_id", "class_id", name="uq_teacher_class_assignments_teacher_class"),
    )

    op.create_table(
        "subadmin_assignments",
        _id(),
        sa.Column("sub_admin_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("teacher_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_by", sa.String(length=64), nullable=True),
        _created_at(),
        sa.UniqueConstraint("sub_admin_id", "teacher_id", name="uq_subadmin_assignments_pair"),
    )

    op.create_table(
        "role_scopes",
        _id(),
        sa.Column(
            "user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("levels", sa.JSON(), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )

    op.create_table(
        "simulation_runs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("scenario", sa.String(length=50), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_duration_sec", sa.Integer(), nullable=False),
        sa.Column("teachers", sa.Integer(), nullable=False),
        sa.Column("sub_admins", sa.Integer(), nullable=False),
        sa.Column("think_time_ms", sa.Integer(), nullable=True),
        sa.Column("ramp_up_users_per_sec", sa.Integer(), nullable=True),
        sa.Column("template_name", sa.String(length=200), nullable=True),
        sa.Column("sandbox_template_id", sa.String(length=64), nullable=True),
        sa.Column("sandbox", sa.Boolean(), nullable=False),
        sa.Column("sandbox_marker", sa.String(length=100), nullable=True),
        sa.Column("cleanup_seeded_data", sa.Boolean(), nullable=False),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("last_metrics", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("actions_recorded", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("status IN ('running','stopped','completed','failed')", name="chk_simulation_runs_status"),
        sa.CheckConstraint(
            "(status = 'running' AND ended_at IS NULL) OR status <> 'running'",
            name="chk_simulation_runs_ended_at",
        ),
        sa.CheckConstraint(
            "requested_duration_sec >= 10 AND requested_duration_sec <= 1800", name="chk_simulation_runs_duration"
        ),
        sa.CheckConstraint("teachers >= 0 AND teachers <= 100000", name="chk_simulation_runs_teachers"),
        sa.CheckConstraint("sub_admins >= 0 AND sub_admins <= 10000", name="chk_simulation_runs_sub_admins"),
        sa.CheckConstraint("actions_recorded >= 0", name="chk_simulation_runs_actions_recorded"),
    )
    op.create_index("ix_simulation_runs_status", "simulation_runs", ["status"])
    op.create_index("ix_simulation_runs_started_at", "simulation_runs", ["started_at"])

    op.create_table(
        "simulation_run_actions",
        sa.Column("run_id", sa.String(length=64), primary_key=True),
        sa.Column("slot", sa.Integer(), primary_key=True),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False),
        sa.Column("ms", sa.Integer(), nullable=False),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("slot >= 0", name="chk_simulation_run_actions_slot"),
        sa.CheckConstraint("ms >= 0", name="chk_simulation_run_actions_ms"),
    )
    op.create_index("ix_simulation_run_actions_run_seq", "simulation_run_actions", ["run_id", "seq"])


def downgrade() -> None:
    op.drop_index("ix_simulation_run_actions_run_seq", table_name="simulation_run_actions")
    op.drop_table("simulation_run_actions")
    op.drop_index("ix_simulation_runs_started_at", table_name="simulation_runs")
    op.drop_index("ix_simulation_runs_status", table_name="simulation_runs")
    op.drop_table("simulation_runs")
    op.drop_table("role_scopes")
    op.drop_table("subadmin_assignments")
    op.drop_table("teacher_class_assignments")
    op.drop_index("ix_template_assignments_template_student", table_name="template_assignments")
    op.drop_index("ix_template_assignments_student_id", table_name="template_assignments")
    op.drop_index("ix_template_assignments_template_id", table_name="template_assignments")
    op.drop_table("template_assignments")
    op.drop_table("gradebook_templates")
    op.drop_index("ix_enrollments_class_status", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_table("students")
    op.drop_index("ix_classes_school_year_id", table_name="classes")
    op.drop_index("ix_classes_name", table_name="classes")
    op.drop_table("classes")
    op.drop_index("ix_school_years_active", table_name="school_years")
    op.drop_table("school_years")
    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
