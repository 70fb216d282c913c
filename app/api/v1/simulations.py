from __future__ import annotations

import logging
import os
from typing import Any, Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import Response

from app.config import settings
from app.core.simulations import runtime, storage
from app.core.simulations.runner import RunController
from app.core.simulations.sandbox_guard import diagnostics, is_sandbox
from app.core.simulations.sandbox_server import SandboxServerManager
from app.db.models.simulation_run import SimulationRun
from app.schemas.simulations import (
    SimulationRunOut,
    SimulationStartRequest,
    SimulationStartResponse,
    SimulationStopRequest,
)
from app.utils.error_codes import ErrorCode
from app.utils.exceptions import AppException, BadRequestException, ConflictException, NotFoundException

logger = logging.getLogger(__name__)

router = APIRouter()

_FORWARDED_HEADERS = ("authorization", "x-admin-token", "content-type")

ERR_NOT_FOUND_MESSAGE = "Simulation run not found"


def get_run_controller() -> RunController:
    return runtime.run_controller


def get_sandbox_manager() -> SandboxServerManager:
    return runtime.sandbox_manager


# ---------------------------------------------------------------------------
# Proxy to the sandbox server (main process only)
# ---------------------------------------------------------------------------


async def _proxy(request: Request, manager: SandboxServerManager, path: str) -> Response:
    current = manager.status()
    if not current.running:
        raise ConflictException(
            code=ErrorCode.SANDBOX_SERVER_NOT_RUNNING,
            details={"sandboxServer": current.to_dict()},
        )

    url = f"{current.base_url}{settings.API_PREFIX}/simulations{path}"
    headers = {k: request.headers[k] for k in _FORWARDED_HEADERS if k in request.headers}
    body = await request.body()

    try:
        async with httpx.AsyncClient(
            verify=False,
            timeout=float(settings.SIMULATION_PROXY_TIMEOUT_SECONDS),
            transport=manager.http_transport,
        ) as client:
            resp = await client.request(request.method, url, content=body or None, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("simulation.proxy_failed method=%s path=%s error=%s", request.method, path, exc)
        raise AppException(
            str(exc) or exc.__class__.__name__,
            code=ErrorCode.SANDBOX_PROXY_FAILED,
            details={"sandboxServer": manager.status().to_dict()},
            status_code=502,
        ) from exc

    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type=resp.headers.get("content-type", "application/json"),
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


async def _serialize_run(run: SimulationRun) -> dict[str, Any]:
    recent = await storage.read_recent_actions(run.id)
    out = SimulationRunOut.model_validate(
        {
            "id": run.id,
            "status": run.status,
            "scenario": run.scenario,
            "started_at": run.started_at,
            "ended_at": run.ended_at,
            "requested_duration_sec": run.requested_duration_sec,
            "teachers": run.teachers,
            "sub_admins": run.sub_admins,
            "think_time_ms": run.think_time_ms,
            "ramp_up_users_per_sec": run.ramp_up_users_per_sec,
            "template_name": run.template_name,
            "sandbox_template_id": run.sandbox_template_id,
            "sandbox": run.sandbox,
            "sandbox_marker": run.sandbox_marker,
            "cleanup_seeded_data": run.cleanup_seeded_data,
            "summary": run.summary,
            "last_metrics": run.last_metrics,
            "error": run.error,
            "actions_recorded": run.actions_recorded,
            "recent_actions": [a.to_dict() for a in recent],
        }
    )
    return out.model_dump(mode="json", by_alias=True)


def _sandbox_fields() -> dict[str, Any]:
    diag = diagnostics()
    return {"sandbox": diag.ok, "sandboxDiagnostics": diag.to_dict()}


def _live_dict(controller: RunController, run_id: str) -> Optional[dict[str, Any]]:
    live = controller.get_live(run_id)
    return live.to_dict() if live is not None else None


# ---------------------------------------------------------------------------
# Sandbox server lifecycle
# ---------------------------------------------------------------------------


@router.get("/sandbox/status")
async def sandbox_status(manager: SandboxServerManager = Depends(get_sandbox_manager)):
    if is_sandbox():
        return {
            "ok": True,
            "mode": "sandbox",
            "sandboxServer": {"running": True, "pid": os.getpid(), "port": int(settings.PORT)},
        }
    return {"ok": True, "mode": "normal", "sandboxServer": manager.status().to_dict()}


@router.post("/sandbox/start")
async def sandbox_start(manager: SandboxServerManager = Depends(get_sandbox_manager)):
    if is_sandbox():
        raise BadRequestException(code=ErrorCode.ALREADY_IN_SANDBOX)

    try:
        current = await manager.start()
    except Exception as exc:
        raise AppException(
            str(exc) or exc.__class__.__name__,
            code=ErrorCode.SANDBOX_START_FAILED,
            details={"sandboxServer": manager.status().to_dict()},
            status_code=500,
        ) from exc
    return {"ok": True, "sandboxServer": current.to_dict()}


@router.post("/sandbox/stop")
async def sandbox_stop(manager: SandboxServerManager = Depends(get_sandbox_manager)):
    if is_sandbox():
        raise BadRequestException(code=ErrorCode.CANNOT_STOP_FROM_SANDBOX)

    current = await manager.stop()
    return {"ok": True, "sandboxServer": current.to_dict()}


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@router.get("/status")
async def simulation_status(
    request: Request,
    controller: RunController = Depends(get_run_controller),
    manager: SandboxServerManager = Depends(get_sandbox_manager),
):
    if not is_sandbox():
        return await _proxy(request, manager, "/status")

    running = await storage.get_running_run()
    if running is None:
        return {**_sandbox_fields(), "running": None, "live": None}
    return {
        **_sandbox_fields(),
        "running": await _serialize_run(running),
        "live": _live_dict(controller, running.id),
    }


@router.get("/history")
async def simulation_history(
    request: Request,
    manager: SandboxServerManager = Depends(get_sandbox_manager),
):
    if not is_sandbox():
        return await _proxy(request, manager, "/history")

    runs = await storage.list_runs(limit=settings.SIMULATION_HISTORY_LIMIT)
    return {**_sandbox_fields(), "runs": [await _serialize_run(r) for r in runs]}


@router.post("/start", response_model=SimulationStartResponse)
async def simulation_start(
    request: Request,
    payload: Optional[SimulationStartRequest] = Body(default=None),
    controller: RunController = Depends(get_run_controller),
    manager: SandboxServerManager = Depends(get_sandbox_manager),
):
    if not is_sandbox():
        return await _proxy(request, manager, "/start")

    payload = payload or SimulationStartRequest()
    logger.info(
        "simulations.start request teachers=%s sub_admins=%s duration_sec=%s think_time_ms=%s ramp_up=%s scenario=%s",
        payload.teachers,
        payload.sub_admins,
        payload.duration_sec,
        payload.think_time_ms,
        payload.ramp_up_users_per_sec,
        payload.scenario.value,
    )
    handle = await controller.start(
        teachers=payload.teachers,
        sub_admins=payload.sub_admins,
        duration_sec=payload.duration_sec,
        scenario=payload.scenario,
        think_time_ms=payload.think_time_ms,
        ramp_up_users_per_sec=payload.ramp_up_users_per_sec,
        template=payload.template,
        cleanup_seeded_data=payload.cleanup_seeded_data,
    )
    return SimulationStartResponse(run_id=handle.run_id)


@router.post("/stop")
async def simulation_stop(
    request: Request,
    payload: Optional[SimulationStopRequest] = Body(default=None),
    controller: RunController = Depends(get_run_controller),
    manager: SandboxServerManager = Depends(get_sandbox_manager),
):
    if not is_sandbox():
        return await _proxy(request, manager, "/stop")

    run_id = payload.run_id if payload is not None else None
    if run_id:
        run = await storage.get_run(str(run_id))
    else:
        run = await storage.get_running_run()
    if run is None:
        raise NotFoundException(ERR_NOT_FOUND_MESSAGE)

    await controller.stop(run.id)
    return {"ok": True}


@router.get("/{run_id}")
async def simulation_get(
    run_id: str,
    request: Request,
    controller: RunController = Depends(get_run_controller),
    manager: SandboxServerManager = Depends(get_sandbox_manager),
):
    if not is_sandbox():
        return await _proxy(request, manager, f"/{quote(run_id, safe='')}")

    run = await storage.get_run(run_id)
    if run is None:
        raise NotFoundException(ERR_NOT_FOUND_MESSAGE)
    return {**_sandbox_fields(), "run": await _serialize_run(run), "live": _live_dict(controller, run.id)}
