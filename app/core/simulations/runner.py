from __future__ import annotations

import asyncio
import logging
import math
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

import app.db.session as db
from app.config import settings
from app.core.simulations import storage
from app.core.simulations.actors import ActorFactory
from app.core.simulations.behaviors import (
    SCENARIO_ROLES,
    ActorContext,
    ramp_up_delay,
    run_actor_loop,
)
from app.core.simulations.metrics import ProcessSampler, compute_summary
from app.core.simulations.models import (
    ActionMetric,
    ActorRole,
    LiveState,
    RunConfig,
    ScenarioKind,
    SeededData,
    SimActor,
)
from app.core.simulations.sandbox_guard import SandboxDiagnostics, assert_sandbox
from app.core.simulations.seeder import DataSeeder
from app.db.models.gradebook import GradebookTemplate
from app.utils.error_codes import ErrorCode
from app.utils.exceptions import AlreadyRunningException, AppException
from app.utils.metrics import SIMULATION_ACTIONS_TOTAL, SIMULATION_RUNS_TOTAL
from app.utils.observability import log_duration

logger = logging.getLogger(__name__)

DEFAULT_TEACHERS = 30
DEFAULT_SUB_ADMINS = 5
DEFAULT_DURATION_SEC = 120

TEACHERS_RANGE = (0, 100_000)
SUB_ADMINS_RANGE = (0, 10_000)
DURATION_RANGE = (10, 1_800)

# Poll step of the duration race when a run has no actors.
IDLE_POLL_SECONDS = 0.25

# Keys of a client-supplied template document that must not reach the DB row.
_TEMPLATE_DROP_KEYS = frozenset({"_id", "__v", "id"})

# Width of gradebook_templates.name and simulation_runs.template_name.
TEMPLATE_NAME_MAX_LEN = 200


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _clamp(value: Any, default: int, bounds: tuple[int, int]) -> int:
    number = _to_number(value)
    if number is None:
        return default
    low, high = bounds
    return max(low, min(high, int(number)))


def clamp_params(teachers: Any, sub_admins: Any, duration_sec: Any) -> tuple[int, int, int]:
    """Defaults apply only to absent or non-numeric values; 0 actors is honored."""
    return (
        _clamp(teachers, DEFAULT_TEACHERS, TEACHERS_RANGE),
        _clamp(sub_admins, DEFAULT_SUB_ADMINS, SUB_ADMINS_RANGE),
        _clamp(duration_sec, DEFAULT_DURATION_SEC, DURATION_RANGE),
    )


def _optional_non_negative(value: Any) -> Optional[int]:
    number = _to_number(value)
    if number is None:
        return None
    return max(0, int(number))


def default_base_url() -> str:
    protocol = (settings.PUBLIC_API_PROTOCOL or "").strip().lower() or "http"
    host = (settings.PUBLIC_API_HOST or "").strip() or "127.0.0.1"
    return f"{protocol}://{host}:{int(settings.PORT)}"


def _new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RunHandle:
    run_id: str
    config: RunConfig
    live: LiveState
    task: asyncio.Task
    controller: "RunController" = field(repr=False)

    async def wait(self) -> None:
        await self.task

    async def stop(self) -> bool:
        return await self.controller.stop(self.run_id)


class RunController:
    """Owns the lifecycle of simulation runs: start, execution, stop and teardown.

    At most one run is `running` at a time. Actor accounts created for a run
    are deleted on every exit path.
    """

    def __init__(
        self,
        *,
        actor_factory: Optional[ActorFactory] = None,
        seeder: Optional[DataSeeder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        guard: Callable[[], SandboxDiagnostics] = assert_sandbox,
        rng: Optional[random.Random] = None,
        sampler_factory: Callable[[], ProcessSampler] = ProcessSampler,
    ) -> None:
        self._rng = rng or random.Random()
        self._actor_factory = actor_factory or ActorFactory()
        self._seeder = seeder or DataSeeder(rng=self._rng)
        self._transport = transport
        self._guard = guard
        self._sampler_factory = sampler_factory
        self._handles: dict[str, RunHandle] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_live(self, run_id: str) -> Optional[LiveState]:
        handle = self._handles.get(run_id)
        return handle.live if handle else None

    def get_handle(self, run_id: str) -> Optional[RunHandle]:
        return self._handles.get(run_id)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def _create_template(self, run_id: str, template: dict[str, Any]) -> tuple[str, str]:
        clean = {k: v for k, v in template.items() if k not in _TEMPLATE_DROP_KEYS}
        name = str(clean.get("name") or "").strip() or f"SIM template {run_id[:6]}"
        name = name[:TEMPLATE_NAME_MAX_LEN]
        pages = clean.get("pages") if isinstance(clean.get("pages"), list) else []

        row = GradebookTemplate(id=uuid.uuid4(), name=name, pages=pages, created_by="simulation")
        async with db.AsyncSessionLocal() as session:
            session.add(row)
            await session.commit()
        return str(row.id), name

    async def start(
        self,
        *,
        teachers: Any = None,
        sub_admins: Any = None,
        duration_sec: Any = None,
        scenario: ScenarioKind = ScenarioKind.MIXED,
        base_url: Optional[str] = None,
        think_time_ms: Any = None,
        ramp_up_users_per_sec: Any = None,
        template: Optional[dict[str, Any]] = None,
        cleanup_seeded_data: Optional[bool] = None,
    ) -> RunHandle:
        diag = self._guard()

        async with self._lock:
            running = next((h.run_id for h in self._handles.values() if not h.task.done()), None)
            if running is None:
                row = await storage.get_running_run()
                running = row.id if row is not None else None
            if running is not None:
                raise AlreadyRunningException(running)

            try:
                handle = await self._start_locked(
                    diag,
                    teachers=teachers,
                    sub_admins=sub_admins,
                    duration_sec=duration_sec,
                    scenario=scenario,
                    base_url=base_url,
                    think_time_ms=think_time_ms,
                    ramp_up_users_per_sec=ramp_up_users_per_sec,
                    template=template,
                    cleanup_seeded_data=cleanup_seeded_data,
                )
            except AppException:
                raise
            except Exception as exc:
                logger.exception("simulation.start_failed")
                raise AppException(
                    str(exc) or exc.__class__.__name__, code=ErrorCode.START_FAILED, status_code=500
                ) from exc

        return handle

    async def _start_locked(
        self,
        diag: SandboxDiagnostics,
        *,
        teachers: Any,
        sub_admins: Any,
        duration_sec: Any,
        scenario: ScenarioKind,
        base_url: Optional[str],
        think_time_ms: Any,
        ramp_up_users_per_sec: Any,
        template: Optional[dict[str, Any]],
        cleanup_seeded_data: Optional[bool],
    ) -> RunHandle:
        run_id = _new_run_id()
        n_teachers, n_sub_admins, duration = clamp_params(teachers, sub_admins, duration_sec)

        template_id: Optional[str] = None
        template_name: Optional[str] = None
        if isinstance(template, dict) and template:
            template_id, template_name = await self._create_template(run_id, template)

        config = RunConfig(
            run_id=run_id,
            teachers=n_teachers,
            sub_admins=n_sub_admins,
            duration_sec=duration,
            scenario=ScenarioKind(scenario),
            base_url=(base_url or default_base_url()).rstrip("/"),
            think_time_ms=_optional_non_negative(think_time_ms),
            ramp_up_users_per_sec=_optional_non_negative(ramp_up_users_per_sec),
            sandbox_template_id=template_id,
            cleanup_seeded_data=(
                settings.SIMULATION_CLEANUP_SEEDED_DATA if cleanup_seeded_data is None else bool(cleanup_seeded_data)
            ),
        )

        live = LiveState(run_id=run_id, last_metrics={"dbName": diag.db_name})
        await storage.create_run(
            config,
            sandbox_marker=diag.marker,
            template_name=template_name,
            last_metrics=dict(live.last_metrics),
            started_at=live.started_at,
        )

        task = asyncio.create_task(self.execute(config, live), name=f"simulation-run:{run_id}")
        handle = RunHandle(run_id=run_id, config=config, live=live, task=task, controller=self)
        self._handles[run_id] = handle

        logger.info(
            "simulation.started run_id=%s teachers=%d sub_admins=%d duration_sec=%d template=%s",
            run_id,
            n_teachers,
            n_sub_admins,
            duration,
            template_id,
        )
        return handle

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _make_client(self, config: RunConfig) -> httpx.AsyncClient:
        prefix = (settings.SIMULATION_TARGET_API_PREFIX or "").rstrip("/")
        return httpx.AsyncClient(
            base_url=f"{config.base_url}{prefix}",
            timeout=float(settings.SIMULATION_HTTP_TIMEOUT_SECONDS),
            verify=False,
            transport=self._transport,
            limits=httpx.Limits(max_connections=None, max_keepalive_connections=None),
        )

    async def _record(self, live: LiveState, metric: ActionMetric) -> None:
        live.recent_actions.append(metric)
        live.actions_recorded += 1
        SIMULATION_ACTIONS_TOTAL.labels(action=metric.name, result="ok" if metric.ok else "error").inc()
        await storage.record_action(live.run_id, metric)

    async def _create_actors(self, config: RunConfig, created_ids: list[str]) -> list[SimActor]:
        actors: list[SimActor] = []
        for role in SCENARIO_ROLES[config.scenario]:
            count = config.teachers if role is ActorRole.TEACHER else config.sub_admins
            for _ in range(count):
                actor = await self._actor_factory.create_actor(role, config.run_id)
                # Tracked immediately so teardown sees partial creation too.
                created_ids.append(actor.user_id)
                actors.append(actor)
        return actors

    async def _actor_task(self, actor: SimActor, ctx: ActorContext, start_delay: float) -> None:
        try:
            await run_actor_loop(actor.role, ctx, start_delay=start_delay)
        finally:
            if actor.role is ActorRole.TEACHER:
                ctx.live.active_teacher_users -= 1
            else:
                ctx.live.active_sub_admin_users -= 1

    async def _sampler_loop(self, config: RunConfig, live: LiveState, sampler: ProcessSampler) -> None:
        interval = float(settings.SIMULATION_SAMPLER_INTERVAL_SECONDS)
        while live.should_continue(config.duration_sec):
            try:
                base = {k: v for k, v in live.last_metrics.items() if k not in ("activeUsers", "system")}
                live.last_metrics = {
                    **base,
                    "activeUsers": {
                        "teachers": live.active_teacher_users,
                        "subAdmins": live.active_sub_admin_users,
                        "inFlight": live.in_flight,
                    },
                    "system": sampler.snapshot(),
                }
                await storage.set_last_metrics(config.run_id, dict(live.last_metrics))
            except Exception:
                logger.exception("simulation.sampler_failed run_id=%s", config.run_id)
            await asyncio.sleep(interval)

    async def _collector_loop(self, config: RunConfig, live: LiveState, collected: list[ActionMetric]) -> None:
        interval = float(settings.SIMULATION_COLLECTOR_INTERVAL_SECONDS)
        while live.should_continue(config.duration_sec):
            try:
                collected[:] = await storage.read_recent_actions(config.run_id)
            except Exception:
                logger.exception("simulation.collector_failed run_id=%s", config.run_id)
            await asyncio.sleep(interval)

    async def _wait_for_end(self, config: RunConfig, live: LiveState, actor_tasks: list[asyncio.Task]) -> None:
        remaining = max(0.0, config.duration_sec - live.elapsed_seconds())
        if actor_tasks:
            # Actors exit on their own once the deadline passes or stop is requested.
            await asyncio.wait(actor_tasks, timeout=remaining)
            return
        while live.should_continue(config.duration_sec):
            await asyncio.sleep(min(IDLE_POLL_SECONDS, max(0.0, config.duration_sec - live.elapsed_seconds())))

    async def _final_actions(self, live: LiveState, collected: list[ActionMetric]) -> list[ActionMetric]:
        try:
            persisted = await storage.read_recent_actions(live.run_id)
        except Exception:
            logger.exception("simulation.final_read_failed run_id=%s", live.run_id)
            persisted = []
        return persisted or collected or list(live.recent_actions)

    async def _drain(self, run_id: str, tasks: list[asyncio.Task]) -> None:
        pending = [t for t in tasks if not t.done()]
        if not pending:
            return
        _done, pending_set = await asyncio.wait(
            pending, timeout=float(settings.SIMULATION_ACTOR_DRAIN_TIMEOUT_SECONDS)
        )
        if pending_set:
            logger.warning("simulation.actors.drain_timeout run_id=%s cancelled=%d", run_id, len(pending_set))
            for t in pending_set:
                t.cancel()
            await asyncio.gather(*pending_set, return_exceptions=True)

    async def execute(self, config: RunConfig, live: LiveState) -> None:
        run_id = config.run_id
        created_ids: list[str] = []
        seeded: Optional[SeededData] = None
        actor_tasks: list[asyncio.Task] = []
        background: list[asyncio.Task] = []
        collected: list[ActionMetric] = []
        client = self._make_client(config)
        result = "failed"

        try:
            sampler = self._sampler_factory()
            actors = await self._create_actors(config, created_ids)

            with log_duration(logger, "simulation.seed", run_id=run_id):
                seeded = await self._seeder.seed(
                    config,
                    [a.user_id for a in actors if a.role is ActorRole.TEACHER],
                    [a.user_id for a in actors if a.role is ActorRole.SUBADMIN],
                )
            live.seeded = seeded.counts()
            live.last_metrics = {**live.last_metrics, **live.seeded}
            await storage.set_last_metrics(run_id, dict(live.last_metrics))

            live.active_teacher_users = sum(1 for a in actors if a.role is ActorRole.TEACHER)
            live.active_sub_admin_users = sum(1 for a in actors if a.role is ActorRole.SUBADMIN)

            indexes: dict[ActorRole, int] = {}
            for actor in actors:
                i = indexes.get(actor.role, 0)
                indexes[actor.role] = i + 1
                ctx = ActorContext(
                    config=config,
                    live=live,
                    seeded=seeded,
                    client=client,
                    rng=self._rng,
                    token=actor.token,
                    record=lambda metric: self._record(live, metric),
                )
                actor_tasks.append(
                    asyncio.create_task(
                        self._actor_task(actor, ctx, ramp_up_delay(i, config.ramp_up_users_per_sec)),
                        name=f"simulation-actor:{run_id}:{actor.role.value}:{i}",
                    )
                )

            background = [
                asyncio.create_task(self._sampler_loop(config, live, sampler), name=f"simulation-sampler:{run_id}"),
                asyncio.create_task(
                    self._collector_loop(config, live, collected), name=f"simulation-collector:{run_id}"
                ),
            ]

            await self._wait_for_end(config, live, actor_tasks)
            live.stop_requested = True
            await asyncio.gather(*background, return_exceptions=True)

            with log_duration(logger, "simulation.summary", run_id=run_id):
                actions = await self._final_actions(live, collected)
                summary = compute_summary(actions, config.duration_sec, recorded_actions=live.actions_recorded)
                summary["resourceDelta"] = sampler.resource_delta()

            completed = await storage.finalize_run(run_id, summary)
            result = "completed" if completed else "stopped"
            logger.info(
                "simulation.finished run_id=%s status=%s actions=%d error_rate=%.4f verdict=%s",
                run_id,
                result,
                live.actions_recorded,
                summary["errorRate"],
                summary["verdict"],
            )
        except Exception as exc:
            logger.exception("simulation.failed run_id=%s", run_id)
            await storage.mark_failed(run_id, str(exc) or exc.__class__.__name__)
        finally:
            live.stop_requested = True
            for t in background:
                if not t.done():
                    t.cancel()
            await self._drain(run_id, actor_tasks)
            await client.aclose()

            try:
                await self._actor_factory.delete_actors(created_ids)
            except Exception:
                logger.exception("simulation.actors.delete_failed run_id=%s count=%d", run_id, len(created_ids))

            if seeded is not None and config.cleanup_seeded_data:
                try:
                    await self._seeder.cleanup(seeded)
                except Exception:
                    logger.exception("simulation.seed_cleanup_failed run_id=%s", run_id)

            self._handles.pop(run_id, None)
            SIMULATION_RUNS_TOTAL.labels(result=result).inc()

    # ------------------------------------------------------------------
    # Stop / shutdown
    # ------------------------------------------------------------------

    async def stop(self, run_id: str) -> bool:
        """Request a stop; returns False when no such run exists."""
        handle = self._handles.get(run_id)
        if handle is not None:
            handle.live.stop_requested = True

        transitioned = await storage.mark_stopped(run_id)
        if transitioned is None:
            return handle is not None
        if transitioned:
            logger.info("simulation.stopped run_id=%s", run_id)
        return True

    async def shutdown(self, *, timeout: Optional[float] = None) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            try:
                await self.stop(handle.run_id)
            except Exception:
                logger.exception("simulation.shutdown_stop_failed run_id=%s", handle.run_id)

        tasks = [h.task for h in handles if not h.task.done()]
        if not tasks:
            return
        wait_for = float(settings.SIMULATION_ACTOR_DRAIN_TIMEOUT_SECONDS) + 5.0 if timeout is None else timeout
        _done, pending = await asyncio.wait(tasks, timeout=wait_for)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
