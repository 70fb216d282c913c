from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, select, update as sql_update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

import app.db.session as db
from app.core.simulations.models import (
    RECENT_ACTIONS_MAX,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_STOPPED,
    ActionMetric,
    RunConfig,
)
from app.db.models.simulation_run import SimulationRun, SimulationRunAction

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _insert_fn(session: AsyncSession):
    bind = session.get_bind()
    dialect_name = bind.dialect.name if bind is not None else None
    if dialect_name == "sqlite":
        return sqlite_insert
    if dialect_name in {"postgresql", "postgres"}:
        return pg_insert
    raise RuntimeError(f"Unsupported SQL dialect for simulation_run_actions upsert: {dialect_name!r}")


async def create_run(
    config: RunConfig,
    *,
    sandbox_marker: str,
    template_name: Optional[str] = None,
    last_metrics: Optional[dict[str, Any]] = None,
    started_at: Optional[datetime] = None,
) -> None:
    async with db.AsyncSessionLocal() as session:
        session.add(
            SimulationRun(
                id=config.run_id,
                status=RUN_STATUS_RUNNING,
                scenario=config.scenario.value,
                started_at=started_at or _utc_now(),
                requested_duration_sec=config.duration_sec,
                teachers=config.teachers,
                sub_admins=config.sub_admins,
                think_time_ms=config.think_time_ms,
                ramp_up_users_per_sec=config.ramp_up_users_per_sec,
                template_name=template_name,
                sandbox_template_id=config.sandbox_template_id,
                sandbox=True,
                sandbox_marker=sandbox_marker,
                cleanup_seeded_data=config.cleanup_seeded_data,
                last_metrics=last_metrics or {},
                actions_recorded=0,
            )
        )
        await session.commit()


async def get_run(run_id: str) -> Optional[SimulationRun]:
    async with db.AsyncSessionLocal() as session:
        return await session.get(SimulationRun, run_id)


async def get_running_run() -> Optional[SimulationRun]:
    async with db.AsyncSessionLocal() as session:
        return (
            await session.execute(
                select(SimulationRun)
                .where(SimulationRun.status == RUN_STATUS_RUNNING)
                .order_by(SimulationRun.started_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()


async def list_runs(*, limit: int = 25) -> list[SimulationRun]:
    async with db.AsyncSessionLocal() as session:
        rows = (
            await session.execute(
                select(SimulationRun).order_by(SimulationRun.started_at.desc()).limit(max(1, int(limit)))
            )
        ).scalars().all()
    return list(rows)


# ---------------------------------------------------------------------------
# Recent-actions ring buffer
# ---------------------------------------------------------------------------


async def record_action(run_id: str, metric: ActionMetric) -> Optional[int]:
    """Persist one action outcome into the run's bounded ring buffer.

    The run row's `actions_recorded` counter is bumped first; the UPDATE holds
    the row lock until commit, so the value read back in the same transaction
    is this action's sequence number. The action then overwrites slot
    `seq % RECENT_ACTIONS_MAX`, so storage per run never exceeds the capacity.

    Best-effort: returns the sequence number, or None when nothing was written.
    """
    try:
        async with db.AsyncSessionLocal() as session:
            try:
                await session.execute(
                    sql_update(SimulationRun)
                    .where(SimulationRun.id == run_id)
                    .values(actions_recorded=SimulationRun.actions_recorded + 1)
                    .execution_options(synchronize_session=False)
                )
                counter = (
                    await session.execute(
                        select(SimulationRun.actions_recorded).where(SimulationRun.id == run_id)
                    )
                ).scalar_one_or_none()
                if counter is None:
                    await session.rollback()
                    return None

                seq = int(counter) - 1
                values = {
                    "run_id": run_id,
                    "slot": seq % RECENT_ACTIONS_MAX,
                    "seq": seq,
                    "name": metric.name,
                    "ok": bool(metric.ok),
                    "ms": max(0, int(metric.ms)),
                    "status": metric.status,
                    "error": metric.error,
                    "at": metric.at,
                }
                table = SimulationRunAction.__table__
                stmt = _insert_fn(session)(table).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.run_id, table.c.slot],
                    set_={
                        "seq": stmt.excluded.seq,
                        "name": stmt.excluded.name,
                        "ok": stmt.excluded.ok,
                        "ms": stmt.excluded.ms,
                        "status": stmt.excluded.status,
                        "error": stmt.excluded.error,
                        "at": stmt.excluded.at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
                return seq
            except Exception:
                await session.rollback()
                raise
    except Exception:
        logger.exception("simulation.storage.record_action_failed run_id=%s action=%s", run_id, metric.name)
        return None


def _row_to_metric(row: SimulationRunAction) -> ActionMetric:
    at = row.at
    if isinstance(at, datetime) and at.tzinfo is None:
        # SQLite drops tzinfo on read.
        at = at.replace(tzinfo=timezone.utc)
    return ActionMetric(name=row.name, ok=bool(row.ok), ms=int(row.ms), status=row.status, error=row.error, at=at)


async def read_recent_actions(run_id: str) -> list[ActionMetric]:
    """Return the persisted ring buffer in arrival order (oldest first)."""
    async with db.AsyncSessionLocal() as session:
        rows = (
            await session.execute(
                select(SimulationRunAction)
                .where(SimulationRunAction.run_id == run_id)
                .order_by(SimulationRunAction.seq.asc())
            )
        ).scalars().all()
    return [_row_to_metric(r) for r in rows]


async def delete_run_actions(run_ids: list[str]) -> int:
    if not run_ids:
        return 0
    async with db.AsyncSessionLocal() as session:
        result = await session.execute(
            delete(SimulationRunAction).where(SimulationRunAction.run_id.in_(run_ids))
        )
        await session.commit()
    return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Metrics snapshot and status transitions
# ---------------------------------------------------------------------------


async def set_last_metrics(run_id: str, last_metrics: dict[str, Any]) -> None:
    try:
        async with db.AsyncSessionLocal() as session:
            await session.execute(
                sql_update(SimulationRun)
                .where(SimulationRun.id == run_id)
                .values(last_metrics=last_metrics)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
    except Exception:
        logger.exception("simulation.storage.set_last_metrics_failed run_id=%s", run_id)


async def _transition(session: AsyncSession, run_id: str, status: str, **values: Any) -> bool:
    """running -> `status`; a run that already left `running` is untouched."""
    result = await session.execute(
        sql_update(SimulationRun)
        .where(SimulationRun.id == run_id, SimulationRun.status == RUN_STATUS_RUNNING)
        .values(status=status, ended_at=_utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def finalize_run(run_id: str, summary: dict[str, Any]) -> bool:
    """Store the summary and mark the run completed if it is still running.

    A run stopped while its summary was being computed keeps `stopped` and its
    original `ended_at`, but still receives the summary.
    """
    async with db.AsyncSessionLocal() as session:
        await session.execute(
            sql_update(SimulationRun)
            .where(SimulationRun.id == run_id)
            .values(summary=summary)
            .execution_options(synchronize_session=False)
        )
        completed = await _transition(session, run_id, RUN_STATUS_COMPLETED)
        await session.commit()
    return completed


async def mark_failed(run_id: str, error: str) -> bool:
    try:
        async with db.AsyncSessionLocal() as session:
            failed = await _transition(session, run_id, RUN_STATUS_FAILED, error=error)
            if not failed:
                # Keep the terminal status, still surface what went wrong.
                await session.execute(
                    sql_update(SimulationRun)
                    .where(SimulationRun.id == run_id)
                    .values(error=error)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()
        return failed
    except Exception:
        logger.exception("simulation.storage.mark_failed_failed run_id=%s", run_id)
        return False


async def mark_stopped(run_id: str) -> Optional[bool]:
    """Return None if the run does not exist, else whether it transitioned."""
    async with db.AsyncSessionLocal() as session:
        exists = (
            await session.execute(select(SimulationRun.id).where(SimulationRun.id == run_id))
        ).scalar_one_or_none()
        if exists is None:
            return None
        stopped = await _transition(session, run_id, RUN_STATUS_STOPPED)
        await session.commit()
    return stopped


async def reconcile_stale_runs(*, exclude: Optional[set[str]] = None) -> int:
    """Mark runs left `running` by a dead process as failed (server restart recovery).

    Best-effort: DB errors are logged and swallowed so the server still starts.
    """
    try:
        async with db.AsyncSessionLocal() as session:
            stmt = sql_update(SimulationRun).where(SimulationRun.status == RUN_STATUS_RUNNING)
            if exclude:
                stmt = stmt.where(SimulationRun.id.not_in(sorted(exclude)))
            result = await session.execute(
                stmt.values(status=RUN_STATUS_FAILED, ended_at=_utc_now(), error="server_restart")
                .execution_options(synchronize_session=False)
            )
            count = int(result.rowcount or 0)
            await session.commit()
        if count:
            logger.warning("simulation.reconcile stale_runs=%d marked failed (reason: server_restart)", count)
        return count
    except Exception:
        logger.exception("simulation.reconcile_failed")
        return 0
