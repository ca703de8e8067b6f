from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from averon.core.errors import InvalidInputError, NotFoundOrExpiredError
from averon.models import (
    AuditLog,
    Classroom,
    ClassroomMessage,
    DataExport,
    District,
    DistrictAdmin,
    Enrollment,
    Invitation,
    LessonAssignment,
    OPTIONAL_TABLES,
    Profile,
    School,
    SchoolAdmin,
)
from averon.services.org_deletion import (
    STEP_DONE,
    STEP_SKIPPED_ABSENT,
    STEP_SKIPPED_RESUME,
    CascadeAborted,
    OrgDeletionOrchestrator,
)

from tests.factories import make_engine, make_invitation, make_profile


def _seed_district(db):
    """
    District with two schools, each with one classroom and one enrolled
    student, plus a district-direct classroom and a few dependents.
    """
    district = District(name="Lake District")
    db.add(district)
    db.commit()

    ids = {"district": district.id, "schools": [], "classrooms": [], "students": []}
    for n in range(2):
        school = School(name=f"School {n}", district_id=district.id)
        db.add(school)
        db.commit()
        student = make_profile(db, f"student{n}@example.com", "student", district_id=district.id, school_id=school.id)
        classroom = Classroom(name=f"Room {n}", school_id=school.id, district_id=district.id)
        db.add(classroom)
        db.commit()
        db.add(Enrollment(classroom_id=classroom.id, student_id=student.id))
        db.add(LessonAssignment(classroom_id=classroom.id, lesson_id=100 + n))
        db.commit()
        ids["schools"].append(school.id)
        ids["classrooms"].append(classroom.id)
        ids["students"].append(student.id)

    direct = Classroom(name="Online Program", district_id=district.id, school_id=None)
    db.add(direct)
    db.commit()
    ids["direct_classroom"] = direct.id

    admin = make_profile(db, "lake.admin@example.com", "district_admin", district_id=district.id)
    db.add(DistrictAdmin(district_id=district.id, admin_id=admin.id))
    db.add(SchoolAdmin(school_id=ids["schools"][0], admin_id=admin.id))
    db.add(DataExport(district_id=district.id))
    db.commit()
    ids["admin"] = admin.id

    make_invitation(db, email="pending@example.com", role="teacher", district_id=district.id, school_id=ids["schools"][1])
    make_invitation(db, email="dadmin@example.com", role="district_admin", district_id=district.id)
    return ids


def test_delete_classroom_removes_dependents(db, org):
    classroom = Classroom(name="Room A", school_id=org.s1, district_id=org.d1)
    db.add(classroom)
    db.commit()
    student = make_profile(db, "a@example.com", "student", district_id=org.d1, school_id=org.s1)
    db.add(Enrollment(classroom_id=classroom.id, student_id=student.id))
    db.add(ClassroomMessage(classroom_id=classroom.id, body="hello"))
    db.commit()

    report = OrgDeletionOrchestrator(db).delete_classroom(classroom.id, actor_id=org.full_admin.id, reason="term ended")

    names = [s.name for s in report.steps]
    assert names == [
        f"classroom[{classroom.id}].enrollments.delete",
        f"classroom[{classroom.id}].lesson_assignments.delete",
        f"classroom[{classroom.id}].messages.delete",
        f"classroom[{classroom.id}].classroom_course_offerings.delete",
        f"classroom[{classroom.id}].row.delete",
    ]
    assert all(s.status == STEP_DONE for s in report.steps)
    assert db.query(Classroom).filter(Classroom.id == classroom.id).count() == 0
    assert db.query(Enrollment).count() == 0
    assert db.query(ClassroomMessage).count() == 0
    # The student account survives; only the link is gone.
    assert db.query(Profile).filter(Profile.id == student.id).count() == 1

    audit = db.query(AuditLog).filter(AuditLog.action == "classroom.deleted").one()
    assert "reason=term ended" in audit.description


def test_delete_district_cascades_everything(db, org):
    ids = _seed_district(db)

    report = OrgDeletionOrchestrator(db).delete_district(ids["district"])
    assert report.entity_type == "district"
    assert report.steps[-1].name == f"district[{ids['district']}].row.delete"

    db.expire_all()
    assert db.get(District, ids["district"]) is None
    assert db.query(School).filter(School.id.in_(ids["schools"])).count() == 0
    assert db.query(Classroom).filter(Classroom.district_id == ids["district"]).count() == 0
    assert db.query(Enrollment).count() == 0
    assert db.query(LessonAssignment).count() == 0
    assert db.query(DistrictAdmin).filter(DistrictAdmin.district_id == ids["district"]).count() == 0
    assert db.query(DataExport).count() == 0
    assert db.query(Invitation).filter(Invitation.district_id == ids["district"]).count() == 0

    for sid in ids["students"]:
        student = db.get(Profile, sid)
        assert student is not None
        assert student.school_id is None
        assert student.district_id is None

    # Unrelated districts are untouched.
    assert db.get(District, org.d1) is not None
    assert db.query(School).filter(School.district_id == org.d1).count() == 2


def test_delete_school_detaches_profiles(db, org):
    classroom = Classroom(name="Room B", school_id=org.s1, district_id=org.d1)
    db.add(classroom)
    db.commit()
    make_invitation(db, email="p@example.com", role="student", district_id=org.d1, school_id=org.s1)

    OrgDeletionOrchestrator(db).delete_school(org.s1)

    db.expire_all()
    assert db.get(School, org.s1) is None
    assert db.get(Classroom, classroom.id) is None
    assert db.query(SchoolAdmin).filter(SchoolAdmin.school_id == org.s1).count() == 0
    assert db.query(Invitation).filter(Invitation.school_id == org.s1).count() == 0
    teacher = db.get(Profile, org.teacher.id)
    assert teacher.school_id is None
    assert teacher.district_id == org.d1


def test_second_delete_reports_not_found(db, org):
    orchestrator = OrgDeletionOrchestrator(db)
    orchestrator.delete_school(org.s2)

    with pytest.raises(NotFoundOrExpiredError) as exc:
        orchestrator.delete_school(org.s2)
    assert exc.value.code == "SCHOOL_NOT_FOUND"

    with pytest.raises(NotFoundOrExpiredError) as exc:
        orchestrator.delete_district(424242)
    assert exc.value.code == "DISTRICT_NOT_FOUND"

    with pytest.raises(NotFoundOrExpiredError) as exc:
        orchestrator.delete_classroom(424242)
    assert exc.value.code == "CLASSROOM_NOT_FOUND"


def test_missing_optional_tables_are_skipped():
    engine = make_engine(exclude_tables=("data_exports", "messages", "audit_logs"))
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()
    try:
        district = District(name="Sparse")
        session.add(district)
        session.commit()
        school = School(name="Only School", district_id=district.id)
        session.add(school)
        session.commit()
        session.add(Classroom(name="Only Room", school_id=school.id, district_id=district.id))
        session.commit()

        report = OrgDeletionOrchestrator(session).delete_district(district.id, reason="cleanup")

        by_name = {s.name: s.status for s in report.steps}
        assert by_name[f"district[{district.id}].data_exports.delete"] == STEP_SKIPPED_ABSENT
        assert any(n.endswith(".messages.delete") and st == STEP_SKIPPED_ABSENT for n, st in by_name.items())
        assert by_name[f"district[{district.id}].row.delete"] == STEP_DONE

        session.expire_all()
        assert session.get(District, district.id) is None
        assert session.query(Classroom).count() == 0
    finally:
        session.close()
        engine.dispose()


def test_lookup_failure_aborts_before_any_delete(db, org, monkeypatch):
    def _boom(self, district_id):
        raise OperationalError("SELECT schools.id FROM schools", {}, Exception("disk I/O error"))

    monkeypatch.setattr(OrgDeletionOrchestrator, "_schools_of_district", _boom)

    with pytest.raises(CascadeAborted) as exc:
        OrgDeletionOrchestrator(db).delete_district(org.d1)

    err = exc.value
    assert err.failed_step == f"district[{org.d1}].schools.lookup"
    assert err.completed_steps == []
    assert err.status_code == 500
    assert err.to_detail()["failed_step"] == err.failed_step

    db.expire_all()
    assert db.get(District, org.d1) is not None
    assert db.query(School).filter(School.district_id == org.d1).count() == 2


def test_failed_step_keeps_earlier_steps_and_resumes(db, org):
    classroom = Classroom(name="Room C", school_id=org.s1, district_id=org.d1)
    db.add(classroom)
    db.commit()

    db.execute(
        text(
            "CREATE TRIGGER block_school_admin_delete BEFORE DELETE ON school_admins "
            "BEGIN SELECT RAISE(ABORT, 'blocked'); END"
        )
    )
    db.commit()

    failed = f"school[{org.s1}].school_admins.delete"
    with pytest.raises(CascadeAborted) as exc:
        OrgDeletionOrchestrator(db).delete_school(org.s1)
    assert exc.value.failed_step == failed
    assert f"classroom[{classroom.id}].row.delete" in exc.value.completed_steps

    db.expire_all()
    # Applied before the failure, and stays applied.
    assert db.get(Classroom, classroom.id) is None
    # Not reached.
    assert db.get(School, org.s1) is not None
    assert db.query(SchoolAdmin).filter(SchoolAdmin.school_id == org.s1).count() == 1

    db.execute(text("DROP TRIGGER block_school_admin_delete"))
    db.commit()

    report = OrgDeletionOrchestrator(db).delete_school(org.s1, resume_from=failed)
    statuses = [s.status for s in report.steps]
    assert statuses[0] == STEP_DONE
    assert report.steps[0].name == failed
    assert STEP_SKIPPED_RESUME not in statuses  # the deleted classroom is no longer planned

    db.expire_all()
    assert db.get(School, org.s1) is None


def test_resume_still_runs_steps_ahead_of_cursor(db, org):
    classroom = Classroom(name="Room D", school_id=org.s2, district_id=org.d1)
    db.add(classroom)
    db.commit()
    kid = make_profile(db, "d@example.com", "student", district_id=org.d1, school_id=org.s2)
    db.add(Enrollment(classroom_id=classroom.id, student_id=kid.id))
    db.commit()
    classroom_id = classroom.id

    start = f"school[{org.s2}].school_admins.delete"
    report = OrgDeletionOrchestrator(db).delete_school(org.s2, resume_from=start)

    by_name = {s.name: s for s in report.steps}
    assert by_name[f"classroom[{classroom_id}].enrollments.delete"].status == STEP_DONE
    assert by_name[f"classroom[{classroom_id}].enrollments.delete"].rows == 1
    assert by_name[f"classroom[{classroom_id}].lesson_assignments.delete"].status == STEP_SKIPPED_RESUME
    assert by_name[f"classroom[{classroom_id}].row.delete"].status == STEP_DONE
    assert start in report.completed_steps

    db.expire_all()
    assert db.get(School, org.s2) is None
    assert db.get(Classroom, classroom_id) is None
    assert db.query(Enrollment).count() == 0


def test_resume_at_root_row_never_orphans_children(db, org):
    classroom = Classroom(name="Room E", school_id=org.s2, district_id=org.d1)
    db.add(classroom)
    db.commit()
    kid = make_profile(db, "e@example.com", "student", district_id=org.d1, school_id=org.s2)
    db.add(Enrollment(classroom_id=classroom.id, student_id=kid.id))
    db.commit()
    classroom_id = classroom.id

    OrgDeletionOrchestrator(db).delete_school(org.s2, resume_from=f"school[{org.s2}].row.delete")

    db.expire_all()
    assert db.get(School, org.s2) is None
    assert db.query(Classroom).filter(Classroom.school_id == org.s2).count() == 0
    assert db.get(Classroom, classroom_id) is None
    assert db.query(Enrollment).filter(Enrollment.classroom_id == classroom_id).count() == 0
    assert db.get(Profile, kid.id).school_id is None


def test_fully_applied_steps_ahead_of_cursor_report_skipped(db, org):
    classroom = Classroom(name="Room F", school_id=org.s2, district_id=org.d1)
    db.add(classroom)
    db.commit()
    classroom_id = classroom.id

    report = OrgDeletionOrchestrator(db).delete_classroom(
        classroom_id, resume_from=f"classroom[{classroom_id}].row.delete"
    )
    statuses = [s.status for s in report.steps]
    assert statuses == [STEP_SKIPPED_RESUME] * 4 + [STEP_DONE]
    assert report.completed_steps == [f"classroom[{classroom_id}].row.delete"]


def test_unknown_resume_step(db, org):
    with pytest.raises(InvalidInputError) as exc:
        OrgDeletionOrchestrator(db).delete_school(org.s2, resume_from="school[0].nothing")
    assert exc.value.code == "RESUME_STEP_UNKNOWN"
    assert db.get(School, org.s2) is not None


def test_delete_account_cascades_taught_classrooms(db, org):
    teacher_id = org.teacher.id
    admin_id = org.full_admin.id

    taught = Classroom(name="Room T", school_id=org.s1, district_id=org.d1, teacher_id=teacher_id)
    other = Classroom(name="Room O", school_id=org.s1, district_id=org.d1)
    db.add_all([taught, other])
    db.commit()
    kid = make_profile(db, "t@example.com", "student", district_id=org.d1, school_id=org.s1)
    db.add(Enrollment(classroom_id=taught.id, student_id=kid.id))
    db.add(Enrollment(classroom_id=other.id, student_id=kid.id))
    db.add(LessonAssignment(classroom_id=taught.id, lesson_id=7))
    db.add(ClassroomMessage(classroom_id=other.id, sender_id=teacher_id, body="see you monday"))
    db.add(SchoolAdmin(school_id=org.s2, admin_id=teacher_id))
    db.add(DataExport(district_id=org.d1, requested_by=teacher_id))
    db.add(AuditLog(user_id=teacher_id, action="login"))
    db.commit()
    _, inv = make_invitation(db, email="new@example.com", role="student", school_id=org.s1, invited_by=teacher_id)
    taught_id, other_id, kid_id, inv_id = taught.id, other.id, kid.id, inv.id

    report = OrgDeletionOrchestrator(db).delete_account(teacher_id, actor_id=admin_id, reason="left the school")

    assert report.entity_type == "account"
    assert report.entity_name == "teacher@averon.test"
    assert report.steps[0].name == f"classroom[{taught_id}].enrollments.delete"
    assert report.steps[-1].name == f"account[{teacher_id}].row.delete"

    db.expire_all()
    assert db.get(Profile, teacher_id) is None
    assert db.get(Classroom, taught_id) is None
    assert db.query(LessonAssignment).count() == 0
    assert db.get(Classroom, other_id) is not None
    assert db.get(Profile, kid_id) is not None
    assert db.query(Enrollment).filter(Enrollment.student_id == kid_id).count() == 1
    assert db.query(SchoolAdmin).filter(SchoolAdmin.admin_id == teacher_id).count() == 0
    assert db.query(ClassroomMessage).one().sender_id is None
    assert db.query(DataExport).one().requested_by is None
    assert db.get(Invitation, inv_id).invited_by is None
    assert db.query(AuditLog).filter(AuditLog.user_id == teacher_id).count() == 0

    audit = db.query(AuditLog).filter(AuditLog.action == "account.deleted").one()
    assert audit.user_id == admin_id
    assert "reason=left the school" in audit.description


def test_delete_account_nulls_assigned_by(db, org):
    dadmin_id = org.district_admin.id
    sadmin_id = org.school_admin.id

    OrgDeletionOrchestrator(db).delete_account(dadmin_id, actor_id=org.full_admin.id)

    db.expire_all()
    assert db.get(Profile, dadmin_id) is None
    assert db.query(DistrictAdmin).filter(DistrictAdmin.admin_id == dadmin_id).count() == 0
    kept = db.query(SchoolAdmin).filter(SchoolAdmin.admin_id == sadmin_id).one()
    assert kept.assigned_by is None


def test_delete_own_account_is_refused(db, org):
    admin_id = org.full_admin.id
    with pytest.raises(InvalidInputError) as exc:
        OrgDeletionOrchestrator(db).delete_account(admin_id, actor_id=admin_id)
    assert exc.value.code == "ACCOUNT_SELF_DELETE"
    assert exc.value.message == "Cannot delete your own account"

    db.expire_all()
    assert db.get(Profile, admin_id) is not None


def test_delete_missing_account(db, org):
    with pytest.raises(NotFoundOrExpiredError) as exc:
        OrgDeletionOrchestrator(db).delete_account(424242, actor_id=org.full_admin.id)
    assert exc.value.code == "ACCOUNT_NOT_FOUND"


def test_delete_account_without_optional_tables():
    engine = make_engine(exclude_tables=OPTIONAL_TABLES)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()
    try:
        teacher = make_profile(session, "solo@example.com", "teacher")
        session.add(Classroom(name="Solo Room", teacher_id=teacher.id))
        session.commit()
        teacher_id = teacher.id

        report = OrgDeletionOrchestrator(session).delete_account(teacher_id, actor_id=None)

        by_name = {s.name: s.status for s in report.steps}
        assert by_name[f"account[{teacher_id}].audit_logs.delete"] == STEP_SKIPPED_ABSENT
        assert by_name[f"account[{teacher_id}].data_exports.detach"] == STEP_SKIPPED_ABSENT
        assert by_name[f"account[{teacher_id}].messages.detach"] == STEP_SKIPPED_ABSENT
        assert by_name[f"account[{teacher_id}].row.delete"] == STEP_DONE

        session.expire_all()
        assert session.get(Profile, teacher_id) is None
        assert session.query(Classroom).count() == 0
    finally:
        session.close()
        engine.dispose()
