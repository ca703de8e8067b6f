import sqlalchemy as sa
from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Text,
    DateTime,
    JSON,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import text
from averon.db.base import Base

# Cross-DB timestamp default (SQLite + Postgres)
DB_NOW = text("CURRENT_TIMESTAMP")


# ---------------------------------------------------------------------------
# Organizational tree: District 1-* School 1-* Classroom
# ---------------------------------------------------------------------------

class District(Base):
    __tablename__ = "districts"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(64), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)

    # Soft-delete marker used by softer admin flows. The deletion
    # orchestrator ignores it and hard-deletes.
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    schools = relationship("School", back_populates="district")


class School(Base):
    __tablename__ = "schools"

    id = Column(Integer, primary_key=True, index=True)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    district = relationship("District", back_populates="schools")
    classrooms = relationship("Classroom", back_populates="school")


class Classroom(Base):
    """
    A classroom usually belongs to a school. District-run programs may hang a
    classroom directly off the district (school_id is NULL, district_id set).
    """
    __tablename__ = "classrooms"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True, index=True)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=True, index=True)
    teacher_id = Column(Integer, ForeignKey("profiles.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    school = relationship("School", back_populates="classrooms")


class Profile(Base):
    """
    Authenticated account. Owned by the identity; references at most one
    school (and transitively one district) by id.
    """
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)

    # "full_admin" | "district_admin" | "school_admin" | "teacher" | "student"
    # NULL until onboarding or an invitation assigns one.
    role = Column(String(32), nullable=True, index=True)

    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True, index=True)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


# ---------------------------------------------------------------------------
# Delegation records
# ---------------------------------------------------------------------------

class DistrictAdmin(Base):
    __tablename__ = "district_admins"

    id = Column(Integer, primary_key=True, index=True)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=False, index=True)
    admin_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    assigned_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("district_id", "admin_id", name="uq_district_admins_district_admin"),
    )


class SchoolAdmin(Base):
    __tablename__ = "school_admins"

    id = Column(Integer, primary_key=True, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    admin_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    assigned_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("admin_id", "school_id", name="uq_school_admins_admin_school"),
    )


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------

class Invitation(Base):
    """
    Single-use invitation granting a role + scope to one addressee.

    Only the SHA-256 digest of the secret is stored. The raw token is
    returned once at creation and cannot be recovered from this row.
    Expiry is derived from expires_at at read time, never stored as a state.
    """

    __tablename__ = "invitations"

    id = Column(Integer, primary_key=True, index=True)

    # sha256 hex = 64 chars
    token_hash = Column(String(64), nullable=False, unique=True)

    email = Column(String(255), nullable=False, index=True)
    role = Column(String(32), nullable=False)

    district_id = Column(Integer, ForeignKey("districts.id"), nullable=True, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True, index=True)

    invited_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=DB_NOW)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Set exactly once, by the conditional UPDATE in the redeemer.
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)

    revoked_at = Column(DateTime(timezone=True), nullable=True)

    # Underlying DB column is "metadata" (reserved attribute name on declarative classes)
    meta = Column("metadata", JSON, nullable=True)


# ---------------------------------------------------------------------------
# Classroom-scoped dependents
# ---------------------------------------------------------------------------

class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("classroom_id", "student_id", name="uq_enrollments_classroom_student"),
    )


# Optional feature tables below: created by migration 0002 and not guaranteed
# to exist in every deployment.

class LessonAssignment(Base):
    __tablename__ = "lesson_assignments"

    id = Column(Integer, primary_key=True, index=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), nullable=False, index=True)
    lesson_id = Column(Integer, nullable=False)
    due_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class ClassroomMessage(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), nullable=True, index=True)
    sender_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    body = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class ClassroomCourseOffering(Base):
    __tablename__ = "classroom_course_offerings"

    id = Column(Integer, primary_key=True, index=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), nullable=False, index=True)
    course_offering_id = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class DataExport(Base):
    __tablename__ = "data_exports"

    id = Column(Integer, primary_key=True, index=True)
    district_id = Column(Integer, ForeignKey("districts.id"), nullable=True, index=True)
    requested_by = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    status = Column(String(32), nullable=False, server_default=text("'pending'"))

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


# Created by the second migration; deployments may run without them.
OPTIONAL_TABLES = (
    "lesson_assignments",
    "messages",
    "classroom_course_offerings",
    "data_exports",
    "audit_logs",
)
