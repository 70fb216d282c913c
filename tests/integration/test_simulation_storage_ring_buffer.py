import asyncio

import pytest
from sqlalchemy import func, select

from app.core.simulations import storage
from app.core.simulations.models import RECENT_ACTIONS_MAX, ActionMetric, RunConfig
from app.db.models.simulation_run import SimulationRun, SimulationRunAction


async def _create_run(run_id: str = "run-storage") -> RunConfig:
    config = RunConfig(run_id=run_id, teachers=1, sub_admins=1, duration_sec=30)
    await storage.create_run(config, sandbox_marker="sandbox", last_metrics={"dbName": "nvcar_test"})
    return config


@pytest.mark.asyncio
async def test_create_and_read_run(db_engine):
    await _create_run()

    run = await storage.get_run("run-storage")
    assert run is not None
    assert run.status == "running"
    assert run.sandbox is True
    assert run.sandbox_marker == "sandbox"
    assert run.last_metrics == {"dbName": "nvcar_test"}
    assert run.actions_recorded == 0
    assert run.ended_at is None

    running = await storage.get_running_run()
    assert running is not None and running.id == "run-storage"
    assert await storage.get_run("missing") is None


@pytest.mark.asyncio
async def test_ring_buffer_keeps_latest_actions_in_arrival_order(db_engine, db_session):
    await _create_run()
    total = RECENT_ACTIONS_MAX + 50

    for i in range(total):
        seq = await storage.record_action(
            "run-storage", ActionMetric(name=f"a{i}", ok=i % 10 != 0, ms=i, status=200)
        )
        assert seq == i

    actions = await storage.read_recent_actions("run-storage")
    assert len(actions) == RECENT_ACTIONS_MAX
    assert [a.name for a in actions] == [f"a{i}" for i in range(50, total)]
    assert actions[0].at.tzinfo is not None

    rows = (
        await db_session.execute(
            select(func.count()).select_from(SimulationRunAction).where(SimulationRunAction.run_id == "run-storage")
        )
    ).scalar_one()
    assert rows == RECENT_ACTIONS_MAX

    run = await storage.get_run("run-storage")
    assert run.actions_recorded == total


@pytest.mark.asyncio
async def test_concurrent_records_get_distinct_sequence_numbers(db_engine):
    await _create_run()

    seqs = await asyncio.gather(
        *[storage.record_action("run-storage", ActionMetric(name="c", ok=True, ms=1)) for _ in range(25)]
    )

    assert sorted(seqs) == list(range(25))
    assert len(await storage.read_recent_actions("run-storage")) == 25


@pytest.mark.asyncio
async def test_record_action_for_unknown_run_writes_nothing(db_engine):
    assert await storage.record_action("ghost", ActionMetric(name="x", ok=True, ms=1)) is None
    assert await storage.read_recent_actions("ghost") == []


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_keeps_first_ended_at(db_engine):
    await _create_run()

    assert await storage.mark_stopped("run-storage") is True
    first = await storage.get_run("run-storage")
    assert first.status == "stopped"
    assert first.ended_at is not None

    await asyncio.sleep(0.01)
    assert await storage.mark_stopped("run-storage") is False
    second = await storage.get_run("run-storage")
    assert second.status == "stopped"
    assert second.ended_at == first.ended_at

    assert await storage.mark_stopped("missing") is None


@pytest.mark.asyncio
async def test_finalize_does_not_overwrite_stopped_but_stores_summary(db_engine):
    await _create_run()
    await storage.mark_stopped("run-storage")

    completed = await storage.finalize_run("run-storage", {"verdict": "pass"})

    run = await storage.get_run("run-storage")
    assert completed is False
    assert run.status == "stopped"
    assert run.summary == {"verdict": "pass"}


@pytest.mark.asyncio
async def test_finalize_completes_running_run(db_engine):
    await _create_run()

    assert await storage.finalize_run("run-storage", {"verdict": "warning"}) is True
    run = await storage.get_run("run-storage")
    assert run.status == "completed"
    assert run.ended_at is not None
    assert run.summary["verdict"] == "warning"


@pytest.mark.asyncio
async def test_mark_failed_keeps_terminal_status_but_records_error(db_engine):
    await _create_run("r-fail")
    assert await storage.mark_failed("r-fail", "seed exploded") is True
    assert (await storage.get_run("r-fail")).status == "failed"

    await _create_run("r-done")
    await storage.finalize_run("r-done", {})
    assert await storage.mark_failed("r-done", "late error") is False
    run = await storage.get_run("r-done")
    assert run.status == "completed"
    assert run.error == "late error"


@pytest.mark.asyncio
async def test_reconcile_marks_stale_running_runs_failed(db_engine):
    await _create_run("stale-1")
    await _create_run("live-1")
    await _create_run("done-1")
    await storage.finalize_run("done-1", {})

    count = await storage.reconcile_stale_runs(exclude={"live-1"})

    assert count == 1
    stale = await storage.get_run("stale-1")
    assert stale.status == "failed"
    assert stale.error == "server_restart"
    assert (await storage.get_run("live-1")).status == "running"
    assert (await storage.get_run("done-1")).status == "completed"


@pytest.mark.asyncio
async def test_list_runs_newest_first_and_delete_actions(db_engine, db_session):
    for i in range(3):
        await _create_run(f"hist-{i}")
        await storage.mark_stopped(f"hist-{i}")
        await storage.record_action(f"hist-{i}", ActionMetric(name="x", ok=True, ms=1))
        await asyncio.sleep(0.01)

    runs = await storage.list_runs(limit=2)
    assert [r.id for r in runs] == ["hist-2", "hist-1"]

    deleted = await storage.delete_run_actions(["hist-0", "hist-1"])
    assert deleted == 2
    remaining = (await db_session.execute(select(SimulationRunAction.run_id))).scalars().all()
    assert remaining == ["hist-2"]
    assert (await db_session.get(SimulationRun, "hist-0")) is not None
