"""core tables: org tree, profiles, delegation records, invitations

Revision ID: 0001_core_tables
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_core_tables"
down_revision = None
branch_labels = None
depends_on = None

NOW = sa.text("CURRENT_TIMESTAMP")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=NOW)


def upgrade() -> None:
    op.create_table(
        "districts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=True, unique=True),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "schools",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("district_id", sa.Integer(), sa.ForeignKey("districts.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_schools_district_id", "schools", ["district_id"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=True),
        sa.Column("school_id", sa.Integer(), sa.ForeignKey("schools.id"), nullable=True),
        sa.Column("district_id", sa.Integer(), sa.ForeignKey("districts.id"), nullable=True),
        _created_at(),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"], unique=True)
    op.create_index("ix_profiles_role", "profiles", ["role"])
    op.create_index("ix_profiles_school_id", "profiles", ["school_id"])
    op.create_index("ix_profiles_district_id", "profiles", ["district_id"])

    op.create_table(
        "classrooms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("school_id", sa.Integer(), sa.ForeignKey("schools.id"), nullable=True),
        sa.Column("district_id", sa.Integer(), sa.ForeignKey("districts.id"), nullable=True),
        sa.Column("teacher_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_classrooms_school_id", "classrooms", ["school_id"])
    op.create_index("ix_classrooms_district_id", "classrooms", ["district_id"])
    op.create_index("ix_classrooms_teacher_id", "classrooms", ["teacher_id"])

    op.create_table(
        "district_admins",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("district_id", sa.Integer(), sa.ForeignKey("districts.id"), nullable=False),
        sa.Column("admin_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("assigned_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
        _created_at(),
        sa.UniqueConstraint("district_id", "admin_id", name="uq_district_admins_district_admin"),
    )
    op.create_index("ix_district_admins_district_id", "district_admins", ["district_id"])
    op.create_index("ix_district_admins_admin_id", "district_admins", ["admin_id"])

    op.create_table(
        "school_admins",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("school_id", sa.Integer(), sa.ForeignKey("schools.id"), nullable=False),
        sa.Column("admin_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("assigned_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
        _created_at(),
        sa.UniqueConstraint("admin_id", "school_id", name="uq_school_admins_admin_school"),
    )
    op.create_index("ix_school_admins_school_id", "school_admins", ["school_id"])
    op.create_index("ix_school_admins_admin_id", "school_admins", ["admin_id"])

    op.create_table(
        "invitations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("district_id", sa.Integer(), sa.ForeignKey("districts.id"), nullable=True),
        sa.Column("school_id", sa.Integer(), sa.ForeignKey("schools.id"), nullable=True),
        sa.Column("invited_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
        _created_at(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("ix_invitations_token_hash", "invitations", ["token_hash"], unique=True)
    op.create_index("ix_invitations_email", "invitations", ["email"])
    op.create_index("ix_invitations_district_id", "invitations", ["district_id"])
    op.create_index("ix_invitations_school_id", "invitations", ["school_id"])

    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("classroom_id", sa.Integer(), sa.ForeignKey("classrooms.id"), nullable=False),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("classroom_id", "student_id", name="uq_enrollments_classroom_student"),
    )
    op.create_index("ix_enrollments_classroom_id", "enrollments", ["classroom_id"])
    op.create_index("ix_enrollments_student_id", "enrollments", ["student_id"])


def downgrade() -> None:
    op.drop_table("enrollments")
    op.drop_table("invitations")
    op.drop_table("school_admins")
    op.drop_table("district_admins")
    op.drop_table("classrooms")
    op.drop_table("profiles")
    op.drop_table("schools")
    op.drop_table("districts")
