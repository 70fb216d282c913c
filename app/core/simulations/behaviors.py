"""Virtual actor loops.

Each actor runs one loop: an episode of API calls against the collaborator API,
then a randomized think time, until the run's deadline passes or a stop is
requested. Cancellation is cooperative and only checked between episodes; an
actor never has two calls in flight.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.core.simulations.metrics import TimedResult, timed
from app.core.simulations.models import ActionMetric, ActorRole, LiveState, RunConfig, ScenarioKind, SeededData
from app.core.simulations.patch_builder import build_data_patch, language_toggle_blocks, randomize_items, sample_patch

logger = logging.getLogger(__name__)

LANGUAGE_TOGGLE_PROBABILITY = 0.4
TOGGLE_ITEM_ACTIVE_PROBABILITY = 0.6
MARK_DONE_PROBABILITY = 0.35
UNMARK_DONE_PROBABILITY = 0.15
REVIEW_PROBABILITY = 0.65
SIGN_PROBABILITY = 0.8

Recorder = Callable[[ActionMetric], Awaitable[None]]


def _doc_id(doc: Any) -> Optional[str]:
    if not isinstance(doc, dict):
        return None
    value = doc.get("_id", doc.get("id"))
    return str(value) if value else None


@dataclass
class ActorContext:
    config: RunConfig
    live: LiveState
    seeded: SeededData
    client: httpx.AsyncClient
    rng: random.Random
    token: str
    record: Recorder

    def should_continue(self) -> bool:
        return self.live.should_continue(self.config.duration_sec)

    def pick(self, items: Any) -> Any:
        if not isinstance(items, list) or not items:
            return None
        return self.rng.choice(items)

    async def call(self, name: str, method: str, path: str, *, json: Any = None) -> TimedResult:
        headers = {"Authorization": f"Bearer {self.token}"}
        self.live.in_flight += 1
        try:
            result = await timed(lambda: self.client.request(method, path, json=json, headers=headers))
        finally:
            self.live.in_flight -= 1
        await self.record(
            ActionMetric(name=name, ok=result.ok, ms=result.ms, status=result.status, error=result.error)
        )
        return result


async def teacher_episode(ctx: ActorContext) -> None:
    r1 = await ctx.call("teacher.classes", "GET", "/teacher/classes")
    class_id = _doc_id(ctx.pick(r1.data)) if r1.ok else None
    if not class_id:
        return

    r2 = await ctx.call("teacher.classStudents", "GET", f"/teacher/classes/{class_id}/students")
    student_id = _doc_id(ctx.pick(r2.data)) if r2.ok else None
    if not student_id:
        return

    r3 = await ctx.call("teacher.studentTemplates", "GET", f"/teacher/students/{student_id}/templates")
    assignment_id = _doc_id(ctx.pick(r3.data)) if r3.ok else None
    if not assignment_id:
        return

    r4 = await ctx.call("teacher.assignmentView", "GET", f"/teacher/template-assignments/{assignment_id}")
    template = r4.data.get("template") if r4.ok and isinstance(r4.data, dict) else None

    patch = sample_patch(build_data_patch(template, ctx.rng), ctx.rng)
    await ctx.call(
        "teacher.patchData", "PATCH", f"/teacher/template-assignments/{assignment_id}/data", json={"data": patch}
    )

    if template and ctx.rng.random() < LANGUAGE_TOGGLE_PROBABILITY:
        block = ctx.pick(language_toggle_blocks(template))
        if block is not None:
            await ctx.call(
                "teacher.languageToggle",
                "PATCH",
                f"/teacher/template-assignments/{assignment_id}/language-toggle",
                json={
                    "blockId": block.block_id,
                    "pageIndex": block.page_index,
                    "blockIndex": block.block_index,
                    "items": randomize_items(block.items, ctx.rng, TOGGLE_ITEM_ACTIVE_PROBABILITY),
                },
            )

    if ctx.rng.random() < MARK_DONE_PROBABILITY:
        await ctx.call("teacher.markDone", "POST", f"/teacher/templates/{assignment_id}/mark-done", json={})
    elif ctx.rng.random() < UNMARK_DONE_PROBABILITY:
        await ctx.call("teacher.unmarkDone", "POST", f"/teacher/templates/{assignment_id}/unmark-done", json={})


async def sub_admin_episode(ctx: ActorContext) -> None:
    assignment_ids = ctx.seeded.assignment_ids
    class_ids = ctx.seeded.class_ids

    if assignment_ids and ctx.rng.random() < REVIEW_PROBABILITY:
        assignment_id = ctx.pick(assignment_ids)
        await ctx.call("subadmin.review", "GET", f"/subadmin/templates/{assignment_id}/review")
        if ctx.rng.random() < SIGN_PROBABILITY:
            await ctx.call(
                "subadmin.signStandard", "POST", f"/subadmin/templates/{assignment_id}/sign", json={"type": "standard"}
            )
        else:
            await ctx.call(
                "subadmin.unsignStandard",
                "DELETE",
                f"/subadmin/templates/{assignment_id}/sign",
                json={"type": "standard"},
            )
    elif class_ids:
        class_id = ctx.pick(class_ids)
        await ctx.call("subadmin.signClass", "POST", f"/subadmin/templates/sign-class/{class_id}", json={})
    else:
        await ctx.call("subadmin.students", "GET", "/subadmin/students")


@dataclass(frozen=True)
class Behavior:
    episode: Callable[[ActorContext], Awaitable[None]]
    # Uniform think time in [think_min_ms, think_min_ms + think_width_ms).
    think_min_ms: int
    think_width_ms: int

    def think_seconds(self, rng: random.Random, think_time_ms: Optional[int] = None) -> float:
        low = self.think_min_ms if think_time_ms is None else max(0, int(think_time_ms))
        return (low + rng.randrange(self.think_width_ms)) / 1000.0


# Different ranges keep the two populations from falling into lockstep.
BEHAVIORS: dict[ActorRole, Behavior] = {
    ActorRole.TEACHER: Behavior(episode=teacher_episode, think_min_ms=150, think_width_ms=450),
    ActorRole.SUBADMIN: Behavior(episode=sub_admin_episode, think_min_ms=250, think_width_ms=650),
}

SCENARIO_ROLES: dict[ScenarioKind, tuple[ActorRole, ...]] = {
    ScenarioKind.MIXED: (ActorRole.TEACHER, ActorRole.SUBADMIN),
}


def behavior_for(role: ActorRole) -> Behavior:
    return BEHAVIORS[role]


def ramp_up_delay(index: int, users_per_sec: Optional[int]) -> float:
    if not users_per_sec or users_per_sec <= 0:
        return 0.0
    return index / float(users_per_sec)


async def run_actor_loop(role: ActorRole, ctx: ActorContext, *, start_delay: float = 0.0) -> None:
    behavior = behavior_for(role)
    if start_delay > 0:
        await asyncio.sleep(start_delay)

    while ctx.should_continue():
        try:
            await behavior.episode(ctx)
        except Exception:
            # Calls never raise; this guards the episode logic itself.
            logger.warning("simulation.actor.episode_failed run_id=%s role=%s", ctx.config.run_id, role.value, exc_info=True)
        await asyncio.sleep(behavior.think_seconds(ctx.rng, ctx.config.think_time_ms))
