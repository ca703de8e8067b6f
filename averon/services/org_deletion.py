"""
Cascading hard deletion of districts, schools, classrooms and accounts.

Deletion runs in two phases:

1) Plan (read-only): confirm the root exists, then enumerate children
   (schools of a district, classrooms of a school, district-direct
   classrooms, classrooms an account teaches). Each lookup is a named step.

2) Execute: an ordered list of DeletionSteps. Each step is a single
   statement committed on its own, so a failure part-way through leaves
   every earlier step applied. The report names the failed step and the
   caller can re-run with `resume_from=<step name>`. The plan is rebuilt
   from live rows on each call and every planned step runs, so a node row
   is never removed while something still points at it.

Dependent tables that may not exist in a deployment's schema are skipped
when the driver reports the table/column missing. The root row delete is
never skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from averon.core.errors import (
    FatalError,
    InvalidInputError,
    NotFoundOrExpiredError,
    RetryableInternalError,
)
from averon.db.schema_errors import DbErrorClass, classify_db_error
from averon.models import (
    AuditLog,
    Classroom,
    ClassroomCourseOffering,
    ClassroomMessage,
    DataExport,
    District,
    DistrictAdmin,
    Enrollment,
    Invitation,
    LessonAssignment,
    Profile,
    School,
    SchoolAdmin,
)
from averon.services.audit import record_audit_event

logger = logging.getLogger("averon.org_deletion")

STEP_DONE = "done"
STEP_SKIPPED_ABSENT = "skipped_absent"
STEP_SKIPPED_RESUME = "skipped_resume"


class CascadeAborted(FatalError):
    """A deletion step failed; earlier steps remain applied."""

    def __init__(self, failed_step: str, completed_steps: Sequence[str], message: Optional[str] = None):
        super().__init__(
            "CASCADE_ABORTED",
            message or f"Deletion stopped at step {failed_step}",
            extra={"failed_step": failed_step, "completed_steps": list(completed_steps)},
        )
        self.failed_step = failed_step
        self.completed_steps = list(completed_steps)


class CascadeTimedOut(RetryableInternalError):
    """A deletion step hit a data-store timeout. Safe to resume."""

    def __init__(self, failed_step: str, completed_steps: Sequence[str]):
        super().__init__(
            "CASCADE_TIMEOUT",
            f"Deletion timed out at step {failed_step}; retry with resume_from",
            extra={"failed_step": failed_step, "completed_steps": list(completed_steps)},
        )
        self.failed_step = failed_step
        self.completed_steps = list(completed_steps)


@dataclass(frozen=True)
class DeletionStep:
    name: str
    statement: Any
    # False for district/school/classroom rows: those tables are never optional.
    tolerate_absent: bool = True


@dataclass
class StepOutcome:
    name: str
    status: str
    rows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status, "rows": self.rows}


@dataclass
class DeletionReport:
    entity_type: str
    entity_id: int
    entity_name: Optional[str]
    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def completed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status != STEP_SKIPPED_RESUME]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class _Plan:
    entity_type: str
    entity_id: int
    entity_name: Optional[str]
    steps: List[DeletionStep]


def _no_sync(stmt):
    return stmt.execution_options(synchronize_session=False)


class OrgDeletionOrchestrator:
    def __init__(self, db: Session):
        self.db = db

    # ---------- plan: lookups ----------

    def _lookup(self, step_name: str, fn: Callable[[], List[int]]) -> List[int]:
        try:
            return fn()
        except SQLAlchemyError as exc:
            self.db.rollback()
            kind = classify_db_error(exc)
            if kind is DbErrorClass.SCHEMA_ABSENT:
                logger.debug("lookup skipped (schema absent) step=%s", step_name)
                return []
            if kind is DbErrorClass.TIMEOUT:
                raise CascadeTimedOut(step_name, []) from exc
            logger.error("lookup failed step=%s error=%s", step_name, type(exc).__name__)
            raise CascadeAborted(step_name, []) from exc

    def _root(self, step_name: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except SQLAlchemyError as exc:
            self.db.rollback()
            if classify_db_error(exc) is DbErrorClass.TIMEOUT:
                raise CascadeTimedOut(step_name, []) from exc
            logger.error("root lookup failed step=%s error=%s", step_name, type(exc).__name__)
            raise CascadeAborted(step_name, []) from exc

    def _classrooms_of_school(self, school_id: int) -> List[int]:
        rows = (
            self.db.query(Classroom.id)
            .filter(Classroom.school_id == school_id)
            .order_by(Classroom.id.asc())
            .all()
        )
        return [cid for (cid,) in rows]

    def _schools_of_district(self, district_id: int) -> List[int]:
        rows = (
            self.db.query(School.id)
            .filter(School.district_id == district_id)
            .order_by(School.id.asc())
            .all()
        )
        return [sid for (sid,) in rows]

    def _direct_classrooms_of_district(self, district_id: int) -> List[int]:
        rows = (
            self.db.query(Classroom.id)
            .filter(Classroom.district_id == district_id, Classroom.school_id.is_(None))
            .order_by(Classroom.id.asc())
            .all()
        )
        return [cid for (cid,) in rows]

    # ---------- plan: step lists ----------

    @staticmethod
    def _classroom_steps(classroom_id: int) -> List[DeletionStep]:
        p = f"classroom[{classroom_id}]"
        return [
            DeletionStep(
                f"{p}.enrollments.delete",
                _no_sync(delete(Enrollment).where(Enrollment.classroom_id == classroom_id)),
            ),
            DeletionStep(
                f"{p}.lesson_assignments.delete",
                _no_sync(delete(LessonAssignment).where(LessonAssignment.classroom_id == classroom_id)),
            ),
            DeletionStep(
                f"{p}.messages.delete",
                _no_sync(delete(ClassroomMessage).where(ClassroomMessage.classroom_id == classroom_id)),
            ),
            DeletionStep(
                f"{p}.classroom_course_offerings.delete",
                _no_sync(
                    delete(ClassroomCourseOffering).where(ClassroomCourseOffering.classroom_id == classroom_id)
                ),
            ),
            DeletionStep(
                f"{p}.row.delete",
                _no_sync(delete(Classroom).where(Classroom.id == classroom_id)),
                tolerate_absent=False,
            ),
        ]

    def _school_steps(self, school_id: int) -> List[DeletionStep]:
        p = f"school[{school_id}]"
        classroom_ids = self._lookup(f"{p}.classrooms.lookup", lambda: self._classrooms_of_school(school_id))

        steps: List[DeletionStep] = []
        for cid in classroom_ids:
            steps.extend(self._classroom_steps(cid))

        steps.extend(
            [
                DeletionStep(
                    f"{p}.school_admins.delete",
                    _no_sync(delete(SchoolAdmin).where(SchoolAdmin.school_id == school_id)),
                ),
                DeletionStep(
                    f"{p}.profiles.detach",
                    _no_sync(update(Profile).where(Profile.school_id == school_id).values(school_id=None)),
                ),
                DeletionStep(
                    f"{p}.invitations.delete",
                    _no_sync(delete(Invitation).where(Invitation.school_id == school_id)),
                ),
                DeletionStep(
                    f"{p}.row.delete",
                    _no_sync(delete(School).where(School.id == school_id)),
                    tolerate_absent=False,
                ),
            ]
        )
        return steps

    def _district_steps(self, district_id: int) -> List[DeletionStep]:
        p = f"district[{district_id}]"
        school_ids = self._lookup(f"{p}.schools.lookup", lambda: self._schools_of_district(district_id))
        direct_ids = self._lookup(
            f"{p}.direct_classrooms.lookup",
            lambda: self._direct_classrooms_of_district(district_id),
        )

        steps: List[DeletionStep] = []
        for sid in school_ids:
            steps.extend(self._school_steps(sid))
        for cid in direct_ids:
            steps.extend(self._classroom_steps(cid))

        steps.extend(
            [
                DeletionStep(
                    f"{p}.district_admins.delete",
                    _no_sync(delete(DistrictAdmin).where(DistrictAdmin.district_id == district_id)),
                ),
                DeletionStep(
                    f"{p}.profiles.detach",
                    _no_sync(
                        update(Profile)
                        .where(Profile.district_id == district_id)
                        .values(district_id=None, school_id=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.invitations.delete",
                    _no_sync(delete(Invitation).where(Invitation.district_id == district_id)),
                ),
                DeletionStep(
                    f"{p}.data_exports.delete",
                    _no_sync(delete(DataExport).where(DataExport.district_id == district_id)),
                ),
                DeletionStep(
                    f"{p}.row.delete",
                    _no_sync(delete(District).where(District.id == district_id)),
                    tolerate_absent=False,
                ),
            ]
        )
        return steps

    def _classrooms_of_teacher(self, profile_id: int) -> List[int]:
        rows = (
            self.db.query(Classroom.id)
            .filter(Classroom.teacher_id == profile_id)
            .order_by(Classroom.id.asc())
            .all()
        )
        return [cid for (cid,) in rows]

    def _account_steps(self, profile_id: int) -> List[DeletionStep]:
        p = f"account[{profile_id}]"
        classroom_ids = self._lookup(
            f"{p}.taught_classrooms.lookup",
            lambda: self._classrooms_of_teacher(profile_id),
        )

        steps: List[DeletionStep] = []
        for cid in classroom_ids:
            steps.extend(self._classroom_steps(cid))

        steps.extend(
            [
                DeletionStep(
                    f"{p}.district_admins.delete",
                    _no_sync(delete(DistrictAdmin).where(DistrictAdmin.admin_id == profile_id)),
                ),
                DeletionStep(
                    f"{p}.school_admins.delete",
                    _no_sync(delete(SchoolAdmin).where(SchoolAdmin.admin_id == profile_id)),
                ),
                DeletionStep(
                    f"{p}.district_admins_assigned_by.detach",
                    _no_sync(
                        update(DistrictAdmin)
                        .where(DistrictAdmin.assigned_by == profile_id)
                        .values(assigned_by=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.school_admins_assigned_by.detach",
                    _no_sync(
                        update(SchoolAdmin)
                        .where(SchoolAdmin.assigned_by == profile_id)
                        .values(assigned_by=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.enrollments.delete",
                    _no_sync(delete(Enrollment).where(Enrollment.student_id == profile_id)),
                ),
                DeletionStep(
                    f"{p}.audit_logs.delete",
                    _no_sync(delete(AuditLog).where(AuditLog.user_id == profile_id)),
                ),
                DeletionStep(
                    f"{p}.data_exports.detach",
                    _no_sync(
                        update(DataExport)
                        .where(DataExport.requested_by == profile_id)
                        .values(requested_by=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.messages.detach",
                    _no_sync(
                        update(ClassroomMessage)
                        .where(ClassroomMessage.sender_id == profile_id)
                        .values(sender_id=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.invitations_invited_by.detach",
                    _no_sync(
                        update(Invitation)
                        .where(Invitation.invited_by == profile_id)
                        .values(invited_by=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.invitations_used_by.detach",
                    _no_sync(
                        update(Invitation)
                        .where(Invitation.used_by == profile_id)
                        .values(used_by=None)
                    ),
                ),
                DeletionStep(
                    f"{p}.row.delete",
                    _no_sync(delete(Profile).where(Profile.id == profile_id)),
                    tolerate_absent=False,
                ),
            ]
        )
        return steps

    def plan_classroom(self, classroom_id: int) -> _Plan:
        row = self._root(
            f"classroom[{classroom_id}].lookup",
            lambda: self.db.query(Classroom.id, Classroom.name).filter(Classroom.id == classroom_id).first(),
        )
        if row is None:
            raise NotFoundOrExpiredError("CLASSROOM_NOT_FOUND", "Classroom not found")
        return _Plan("classroom", classroom_id, row.name, self._classroom_steps(classroom_id))

    def plan_school(self, school_id: int) -> _Plan:
        row = self._root(
            f"school[{school_id}].lookup",
            lambda: self.db.query(School.id, School.name).filter(School.id == school_id).first(),
        )
        if row is None:
            raise NotFoundOrExpiredError("SCHOOL_NOT_FOUND", "School not found")
        return _Plan("school", school_id, row.name, self._school_steps(school_id))

    def plan_district(self, district_id: int) -> _Plan:
        row = self._root(
            f"district[{district_id}].lookup",
            lambda: self.db.query(District.id, District.name).filter(District.id == district_id).first(),
        )
        if row is None:
            raise NotFoundOrExpiredError("DISTRICT_NOT_FOUND", "District not found")
        return _Plan("district", district_id, row.name, self._district_steps(district_id))

    def plan_account(self, profile_id: int) -> _Plan:
        row = self._root(
            f"account[{profile_id}].lookup",
            lambda: self.db.query(Profile.id, Profile.email).filter(Profile.id == profile_id).first(),
        )
        if row is None:
            raise NotFoundOrExpiredError("ACCOUNT_NOT_FOUND", "Account not found")
        return _Plan("account", profile_id, row.email, self._account_steps(profile_id))

    # ---------- execute ----------

    def _run_step(self, step: DeletionStep, completed: List[str]) -> StepOutcome:
        try:
            result = self.db.execute(step.statement)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            kind = classify_db_error(exc)

            if kind is DbErrorClass.SCHEMA_ABSENT and step.tolerate_absent:
                logger.debug("step skipped (schema absent) step=%s", step.name)
                return StepOutcome(step.name, STEP_SKIPPED_ABSENT)

            if kind is DbErrorClass.TIMEOUT:
                logger.warning("step timed out step=%s completed=%s", step.name, len(completed))
                raise CascadeTimedOut(step.name, completed) from exc

            logger.error(
                "step failed step=%s completed=%s error=%s",
                step.name,
                len(completed),
                type(exc).__name__,
            )
            raise CascadeAborted(step.name, completed) from exc

        rows = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else 0
        return StepOutcome(step.name, STEP_DONE, rows)

    def execute(self, plan: _Plan, *, resume_from: Optional[str] = None) -> DeletionReport:
        """
        Run every planned step in order.

        `resume_from` is a reporting cursor, not a skip list: steps ahead of
        it still run, because the plan is rebuilt from live rows and any
        step that appears in it still has something to remove. A step ahead
        of the cursor that touches no rows is reported as `skipped_resume`.
        """
        names = [s.name for s in plan.steps]
        start = 0
        if resume_from:
            if resume_from not in names:
                raise InvalidInputError(
                    "RESUME_STEP_UNKNOWN",
                    f"resume_from does not name a step of this deletion: {resume_from}",
                )
            start = names.index(resume_from)

        report = DeletionReport(plan.entity_type, plan.entity_id, plan.entity_name)
        completed: List[str] = []

        for index, step in enumerate(plan.steps):
            outcome = self._run_step(step, completed)
            if index < start and outcome.status == STEP_DONE:
                if outcome.rows == 0:
                    outcome = StepOutcome(step.name, STEP_SKIPPED_RESUME)
                else:
                    logger.warning(
                        "step ahead of resume cursor still had rows step=%s rows=%s resume_from=%s",
                        step.name,
                        outcome.rows,
                        resume_from,
                    )
            report.steps.append(outcome)
            if outcome.status != STEP_SKIPPED_RESUME:
                completed.append(step.name)

        logger.info(
            "cascade complete entity=%s id=%s steps=%s resumed_from=%s",
            plan.entity_type,
            plan.entity_id,
            len(completed),
            resume_from or "-",
        )
        return report

    # ---------- entry points ----------

    def _finish(self, report: DeletionReport, *, actor_id: Optional[int], reason: Optional[str]) -> DeletionReport:
        description = f"name={report.entity_name}; steps={len(report.completed_steps)}"
        if reason:
            description += f"; reason={reason}"
        record_audit_event(
            self.db,
            user_id=actor_id,
            action=f"{report.entity_type}.deleted",
            entity_type=report.entity_type,
            entity_id=report.entity_id,
            description=description,
        )
        return report

    def delete_classroom(
        self,
        classroom_id: int,
        *,
        resume_from: Optional[str] = None,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> DeletionReport:
        report = self.execute(self.plan_classroom(classroom_id), resume_from=resume_from)
        return self._finish(report, actor_id=actor_id, reason=reason)

    def delete_school(
        self,
        school_id: int,
        *,
        resume_from: Optional[str] = None,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> DeletionReport:
        report = self.execute(self.plan_school(school_id), resume_from=resume_from)
        return self._finish(report, actor_id=actor_id, reason=reason)

    def delete_district(
        self,
        district_id: int,
        *,
        resume_from: Optional[str] = None,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> DeletionReport:
        report = self.execute(self.plan_district(district_id), resume_from=resume_from)
        return self._finish(report, actor_id=actor_id, reason=reason)

    def delete_account(
        self,
        profile_id: int,
        *,
        actor_id: Optional[int],
        resume_from: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> DeletionReport:
        """
        Hard-delete one profile: classrooms it teaches (full classroom
        cascade), its admin assignments, enrollments and audit rows, then
        every remaining reference to it is nulled before the row goes.
        """
        if actor_id is not None and actor_id == profile_id:
            raise InvalidInputError("ACCOUNT_SELF_DELETE", "Cannot delete your own account")
        report = self.execute(self.plan_account(profile_id), resume_from=resume_from)
        return self._finish(report, actor_id=actor_id, reason=reason)
