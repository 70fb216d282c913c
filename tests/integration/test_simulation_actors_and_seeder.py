import random
import uuid
from datetime import date

import pytest
from sqlalchemy import event, func, select

from app.core.simulations.actors import ActorFactory
from app.core.simulations.models import ActorRole, RunConfig
from app.core.simulations import seeder as seeder_module
from app.core.simulations.seeder import DataSeeder, class_count_for
from app.db.models.gradebook import GradebookTemplate, TemplateAssignment
from app.db.models.school import Enrollment, SchoolClass, SchoolYear, Student
from app.db.models.scopes import RoleScope, SubAdminAssignment, TeacherClassAssignment
from app.db.models.user import User
from app.utils.security import decode_token, verify_password


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_create_actor_persists_user_and_issues_token(db_engine, db_session):
    factory = ActorFactory(password="sim-pass")

    actor = await factory.create_actor(ActorRole.TEACHER, "run42")

    assert actor.role is ActorRole.TEACHER
    assert actor.email.startswith("sim_teacher_run42_")
    payload = decode_token(actor.token)
    assert payload["sub"] == actor.user_id
    assert payload["role"] == "TEACHER"

    user = await db_session.get(User, uuid.UUID(actor.user_id))
    assert user.role == "TEACHER"
    assert verify_password("sim-pass", user.password_hash)


@pytest.mark.asyncio
async def test_delete_actors_removes_users_and_scope_rows(db_engine, db_session):
    factory = ActorFactory(password="sim")
    teacher = await factory.create_actor(ActorRole.TEACHER, "run-del")
    sub_admin = await factory.create_actor(ActorRole.SUBADMIN, "run-del")

    config = RunConfig(run_id="run-del", teachers=1, sub_admins=1, duration_sec=10)
    await DataSeeder(rng=random.Random(1)).seed(config, [teacher.user_id], [sub_admin.user_id])

    deleted = await factory.delete_actors([teacher.user_id, sub_admin.user_id, ""])

    assert deleted == 2
    assert await _count(db_session, User) == 0
    assert await _count(db_session, TeacherClassAssignment) == 0
    assert await _count(db_session, SubAdminAssignment) == 0
    assert await _count(db_session, RoleScope) == 0
    # Seeded school data is not owned by the actors.
    assert await _count(db_session, Student) == 6
    assert await factory.delete_actors([]) == 0


@pytest.mark.parametrize(
    "teachers, expected",
    [(0, 1), (1, 1), (2, 1), (3, 2), (19, 10), (500, 10)],
)
def test_class_count_for(teachers, expected):
    assert class_count_for(teachers) == expected


@pytest.mark.asyncio
async def test_seed_creates_working_set_and_cleanup_removes_it(db_engine, db_session, template_doc):
    template = GradebookTemplate(id=uuid.uuid4(), name="Livret", pages=template_doc["pages"], created_by="test")
    db_session.add(template)
    await db_session.commit()

    factory = ActorFactory(password="sim")
    teachers = [await factory.create_actor(ActorRole.TEACHER, "run-seed") for _ in range(3)]
    sub_admin = await factory.create_actor(ActorRole.SUBADMIN, "run-seed")
    config = RunConfig(
        run_id="run-seed", teachers=3, sub_admins=1, duration_sec=10, sandbox_template_id=str(template.id)
    )
    seeder = DataSeeder(rng=random.Random(7))

    seeded = await seeder.seed(config, [t.user_id for t in teachers], [sub_admin.user_id])

    assert len(seeded.class_ids) == 2
    assert len(seeded.student_ids) == 12
    assert len(seeded.enrollment_ids) == 12
    assert len(seeded.assignment_ids) == 12
    assert len(seeded.teacher_class_assignment_ids) == 3
    assert len(seeded.sub_admin_assignment_ids) == 3
    assert seeded.created_school_year is True
    assert seeded.counts()["seededAssignmentId"] == seeded.assignment_ids[0]

    assignments = (await db_session.execute(select(TemplateAssignment))).scalars().all()
    assert {a.template_id for a in assignments} == {template.id}
    assert all(len(a.assigned_teachers) == 1 for a in assignments)
    for a in assignments:
        assert a.is_completed == (a.status == "completed")
        assert (a.completed_at is not None) == a.is_completed

    scope = (await db_session.execute(select(RoleScope))).scalar_one()
    assert scope.levels == ["MS", "PS"]

    await seeder.cleanup(seeded)

    for model in (TemplateAssignment, Enrollment, Student, SchoolClass, SchoolYear, RoleScope, SubAdminAssignment):
        assert await _count(db_session, model) == 0
    # Actors and the template survive seed cleanup.
    assert await _count(db_session, User) == 4
    assert await _count(db_session, GradebookTemplate) == 1


@pytest.mark.asyncio
async def test_seed_reuses_active_school_year_and_existing_scopes(db_engine, db_session):
    year = SchoolYear(
        id=uuid.uuid4(), name="2025/2026", start_date=date(2025, 9, 1), end_date=date(2026, 7, 1), active=True
    )
    db_session.add(year)
    await db_session.commit()

    factory = ActorFactory(password="sim")
    teacher = await factory.create_actor(ActorRole.TEACHER, "run-reuse")
    sub_admin = await factory.create_actor(ActorRole.SUBADMIN, "run-reuse")
    config = RunConfig(run_id="run-reuse", teachers=1, sub_admins=1, duration_sec=10)
    seeder = DataSeeder(rng=random.Random(3))

    first = await seeder.seed(config, [teacher.user_id], [sub_admin.user_id])
    second = await seeder.seed(config, [teacher.user_id], [sub_admin.user_id])

    assert first.school_year_id == str(year.id)
    assert first.created_school_year is False
    # No template configured: students without assignments.
    assert first.assignment_ids == []
    # Scope and subadmin links already exist from the first pass.
    assert second.role_scope_ids == []
    assert second.sub_admin_assignment_ids == []
    assert await _count(db_session, RoleScope) == 1
    assert await _count(db_session, SubAdminAssignment) == 1

    await seeder.cleanup(second)
    assert await _count(db_session, SchoolYear) == 1


@pytest.mark.asyncio
async def test_sub_admin_links_are_looked_up_in_bounded_batches(db_engine, db_session, monkeypatch):
    monkeypatch.setattr(seeder_module, "QUERY_CHUNK_SIZE", 4)
    teacher_ids = [str(uuid.uuid4()) for _ in range(11)]
    sub_admin_id = str(uuid.uuid4())

    lookups: list[int] = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT") and "subadmin_assignments" in statement:
            lookups.append(len(parameters))

    event.listen(db_engine.sync_engine, "before_cursor_execute", _record)
    try:
        seeder = DataSeeder(rng=random.Random(3))
        config = RunConfig(run_id="run-batch", teachers=11, sub_admins=1, duration_sec=10)
        first = await seeder.seed(config, teacher_ids, [sub_admin_id])
        second = await seeder.seed(config, teacher_ids, [sub_admin_id])
    finally:
        event.remove(db_engine.sync_engine, "before_cursor_execute", _record)

    # Three batches per seed: 4 + 4 + 3 teacher ids, each plus the sub-admin id.
    assert len(lookups) == 6
    assert max(lookups) <= 5

    assert len(first.sub_admin_assignment_ids) == 11
    assert second.sub_admin_assignment_ids == []
    assert await _count(db_session, SubAdminAssignment) == 11

    await seeder.cleanup(second)
    await seeder.cleanup(first)
    assert await _count(db_session, SubAdminAssignment) == 0
    assert await _count(db_session, TeacherClassAssignment) == 0
