from __future__ import annotations

import logging
import math
import random
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

import app.db.session as db
from app.core.simulations.models import RunConfig, SeededData
from app.db.models.gradebook import TemplateAssignment
from app.db.models.school import Enrollment, SchoolClass, SchoolYear, Student
from app.db.models.scopes import RoleScope, SubAdminAssignment, TeacherClassAssignment

logger = logging.getLogger(__name__)

CLASS_LEVELS = ("PS", "MS", "GS")
MAX_CLASSES = 10
STUDENTS_PER_CLASS = 6
COMPLETED_PROBABILITY = 0.55
TEACHER_LANGUAGES = ["FR", "AR", "EN"]
SEEDED_BY = "simulation"

# Upper bound on bound parameters of one IN (...) lookup.
QUERY_CHUNK_SIZE = 500


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def class_count_for(teachers: int) -> int:
    """Two teachers per class, at least one class, at most ten."""
    return max(1, min(MAX_CLASSES, math.ceil(max(teachers, 1) / 2)))


def _uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _uuids(values: Sequence[Any]) -> list[uuid.UUID]:
    return [_uuid(v) for v in values]


class DataSeeder:
    """Creates the school data synthetic actors work on.

    All rows of one seeding pass are written in a single transaction: a failure
    leaves nothing behind.
    """

    def __init__(self, *, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    async def _resolve_school_year(self, session: AsyncSession, seeded: SeededData) -> uuid.UUID:
        year = (
            await session.execute(select(SchoolYear).where(SchoolYear.active.is_(True)).limit(1))
        ).scalar_one_or_none()
        if year is not None:
            return year.id

        y = datetime.now(timezone.utc).year
        year = SchoolYear(
            id=uuid.uuid4(),
            name=f"{y}/{y + 1}",
            start_date=date(y, 9, 1),
            end_date=date(y + 1, 7, 1),
            active=True,
        )
        session.add(year)
        seeded.created_school_year = True
        return year.id

    async def _ensure_teacher_class(
        self,
        session: AsyncSession,
        seeded: SeededData,
        *,
        teacher_id: uuid.UUID,
        class_id: uuid.UUID,
        school_year_id: uuid.UUID,
    ) -> None:
        existing = (
            await session.execute(
                select(TeacherClassAssignment.id).where(
                    TeacherClassAssignment.teacher_id == teacher_id,
                    TeacherClassAssignment.class_id == class_id,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            return

        row = TeacherClassAssignment(
            id=uuid.uuid4(),
            teacher_id=teacher_id,
            class_id=class_id,
            school_year_id=school_year_id,
            languages=list(TEACHER_LANGUAGES),
            is_prof_polyvalent=True,
            assigned_by=SEEDED_BY,
        )
        session.add(row)
        seeded.teacher_class_assignment_ids.append(str(row.id))

    async def _ensure_role_scope(
        self, session: AsyncSession, seeded: SeededData, *, user_id: uuid.UUID, levels: list[str]
    ) -> None:
        scope = (
            await session.execute(select(RoleScope).where(RoleScope.user_id == user_id))
        ).scalar_one_or_none()
        if scope is None:
            scope = RoleScope(id=uuid.uuid4(), user_id=user_id, levels=sorted(set(levels)))
            session.add(scope)
            seeded.role_scope_ids.append(str(scope.id))
            return

        merged = sorted(set(scope.levels or []) | set(levels))
        if merged != list(scope.levels or []):
            # Reassign: in-place JSON mutation is not tracked.
            scope.levels = merged

    async def _ensure_sub_admin_assignments(
        self,
        session: AsyncSession,
        seeded: SeededData,
        *,
        sub_admin_id: uuid.UUID,
        teacher_ids: list[uuid.UUID],
    ) -> None:
        if not teacher_ids:
            return
        have: set[uuid.UUID] = set()
        for chunk in _chunks(teacher_ids, QUERY_CHUNK_SIZE):
            result = await session.execute(
                select(SubAdminAssignment.teacher_id).where(
                    SubAdminAssignment.sub_admin_id == sub_admin_id,
                    SubAdminAssignment.teacher_id.in_(chunk),
                )
            )
            have.update(result.scalars().all())
        for teacher_id in teacher_ids:
            if teacher_id in have:
                continue
            row = SubAdminAssignment(
                id=uuid.uuid4(), sub_admin_id=sub_admin_id, teacher_id=teacher_id, assigned_by=SEEDED_BY
            )
            session.add(row)
            seeded.sub_admin_assignment_ids.append(str(row.id))

    async def seed(
        self,
        config: RunConfig,
        teacher_ids: Sequence[Any],
        sub_admin_ids: Sequence[Any],
    ) -> SeededData:
        teachers = _uuids(teacher_ids)
        sub_admins = _uuids(sub_admin_ids)
        template_id = _uuid(config.sandbox_template_id) if config.sandbox_template_id else None
        run_tag = config.run_id[:6]
        seeded = SeededData()

        async with db.AsyncSessionLocal() as session:
            school_year_id = await self._resolve_school_year(session, seeded)
            seeded.school_year_id = str(school_year_id)

            classes: list[SchoolClass] = []
            for i in range(class_count_for(len(teachers))):
                cls = SchoolClass(
                    id=uuid.uuid4(),
                    name=f"SIM {run_tag} {chr(65 + i)}",
                    level=CLASS_LEVELS[i % len(CLASS_LEVELS)],
                    school_year_id=school_year_id,
                )
                session.add(cls)
                classes.append(cls)
                seeded.class_ids.append(str(cls.id))
            # Classes must exist before rows that reference them are checked.
            await session.flush()

            for i, teacher_id in enumerate(teachers):
                await self._ensure_teacher_class(
                    session,
                    seeded,
                    teacher_id=teacher_id,
                    class_id=classes[i % len(classes)].id,
                    school_year_id=school_year_id,
                )

            now = datetime.now(timezone.utc)
            for c, cls in enumerate(classes):
                assigned = [str(teachers[c % len(teachers)])] if teachers else []
                for s in range(STUDENTS_PER_CLASS):
                    student = Student(
                        id=uuid.uuid4(),
                        first_name="Sim",
                        last_name=f"Student_{run_tag}_{c}_{s}",
                        date_of_birth=date(2019, 1, 1),
                        logical_key=f"SIM_{run_tag}_{uuid.uuid4().hex[:6]}",
                    )
                    session.add(student)
                    seeded.student_ids.append(str(student.id))

                    enrollment = Enrollment(
                        id=uuid.uuid4(),
                        student_id=student.id,
                        class_id=cls.id,
                        school_year_id=school_year_id,
                        status="active",
                    )
                    session.add(enrollment)
                    seeded.enrollment_ids.append(str(enrollment.id))

                    if template_id is None:
                        continue
                    completed = self._rng.random() < COMPLETED_PROBABILITY
                    assignment = TemplateAssignment(
                        id=uuid.uuid4(),
                        template_id=template_id,
                        student_id=student.id,
                        school_year_id=school_year_id,
                        assigned_teachers=assigned,
                        assigned_by=SEEDED_BY,
                        status="completed" if completed else "draft",
                        is_completed=completed,
                        completed_by=(assigned[0] if assigned else SEEDED_BY) if completed else None,
                        completed_at=now if completed else None,
                        data={},
                    )
                    session.add(assignment)
                    seeded.assignment_ids.append(str(assignment.id))

            levels = sorted({cls.level for cls in classes})
            for sub_admin_id in sub_admins:
                await self._ensure_role_scope(session, seeded, user_id=sub_admin_id, levels=levels)
                await self._ensure_sub_admin_assignments(
                    session, seeded, sub_admin_id=sub_admin_id, teacher_ids=teachers
                )

            await session.commit()

        logger.info(
            "simulation.seeded run_id=%s classes=%d students=%d assignments=%d",
            config.run_id,
            len(seeded.class_ids),
            len(seeded.student_ids),
            len(seeded.assignment_ids),
        )
        return seeded

    async def cleanup(self, seeded: SeededData) -> None:
        """Delete every row recorded in `seeded` (dependents first)."""
        async with db.AsyncSessionLocal() as session:
            for model, ids in (
                (TemplateAssignment, seeded.assignment_ids),
                (Enrollment, seeded.enrollment_ids),
                (Student, seeded.student_ids),
                (TeacherClassAssignment, seeded.teacher_class_assignment_ids),
                (SubAdminAssignment, seeded.sub_admin_assignment_ids),
                (RoleScope, seeded.role_scope_ids),
                (SchoolClass, seeded.class_ids),
            ):
                for chunk in _chunks(_uuids(ids), QUERY_CHUNK_SIZE):
                    await session.execute(delete(model).where(model.id.in_(chunk)))
            if seeded.created_school_year and seeded.school_year_id:
                await session.execute(delete(SchoolYear).where(SchoolYear.id == _uuid(seeded.school_year_id)))
            await session.commit()

        logger.info(
            "simulation.seed_cleanup classes=%d students=%d assignments=%d",
            len(seeded.class_ids),
            len(seeded.student_ids),
            len(seeded.assignment_ids),
        )
