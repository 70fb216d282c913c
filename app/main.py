from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text

import app.db.session as db
from app.api.router import api_router
from app.config import settings
from app.db.models import Base
from app.utils.error_codes import ERROR_MESSAGES, ErrorCode
from app.utils.exceptions import AppException
from app.utils.request_id import REQUEST_ID_HEADER, new_request_id, request_id_var, validate_request_id


logger = logging.getLogger(__name__)
logging.getLogger("app").setLevel((settings.LOG_LEVEL or "INFO").upper())


async def _sqlite_ensure_schema() -> None:
    """SQLite-only: create missing tables for dev/sandbox DB files.

    Alembic migrations target Postgres; local SQLite files (including the
    sandbox server's own DB) are brought up to the model schema directly.
    """
    if db.engine.url.get_backend_name() != "sqlite":
        return

    try:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        raise RuntimeError(
            "SQLite DB schema could not be created. "
            "Delete the DB file (or point DATABASE_URL to a fresh file) and restart."
        ) from exc


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _sqlite_ensure_schema()

    # Runs still marked running were owned by a process that died.
    # Best-effort: must NOT prevent the server from starting.
    from app.core.simulations.storage import reconcile_stale_runs

    await reconcile_stale_runs()

    try:
        yield
    finally:
        from app.core.simulations.runtime import run_controller, sandbox_manager

        try:
            await run_controller.shutdown()
        except Exception:
            logger.exception("simulation.runtime.shutdown_failed")

        try:
            await sandbox_manager.stop()
        except Exception:
            logger.exception("sandbox.server.shutdown_failed")

        # Ensure DB connections/threads are cleaned up when the app shuts down.
        try:
            await db.engine.dispose()
        except Exception:
            logger.exception("db.engine.dispose_failed")


app = FastAPI(title="NVCar Simulations", debug=settings.DEBUG, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    # Local dev servers on any port, localhost only.
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    incoming_rid = request.headers.get(REQUEST_ID_HEADER)
    rid = validate_request_id(incoming_rid) or new_request_id()
    token = request_id_var.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)

    response.headers[REQUEST_ID_HEADER] = rid
    return response


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    if not settings.METRICS_ENABLED:
        return await call_next(request)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed_s = time.perf_counter() - start

    try:
        from app.utils.metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_DURATION_SECONDS

        route = request.scope.get("route")
        # Keep label cardinality low: route template, or a fixed label when unmatched.
        route_path = getattr(route, "path", None)
        path_label = route_path if isinstance(route_path, str) and route_path else "__unmatched__"
        method = request.method
        status = str(getattr(response, "status_code", 0))

        HTTP_REQUESTS_TOTAL.labels(method=method, path=path_label, status=status).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path_label).observe(elapsed_s)
    except Exception:
        logger.exception("metrics.middleware_failed")

    return response


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": ErrorCode.INVALID_INPUT.value,
            "message": ERROR_MESSAGES[ErrorCode.INVALID_INPUT],
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("http.unhandled_exception method=%s path=%s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": ErrorCode.INTERNAL_ERROR.value,
            "message": str(exc) or ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR],
        },
    )


app.include_router(api_router, prefix=settings.API_PREFIX)

_START_TIME = time.time()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _best_effort_version() -> str:
    v = (os.getenv("NVCAR_APP_VERSION") or os.getenv("APP_VERSION") or "").strip()
    return v or "dev"


if settings.METRICS_ENABLED:

    @app.get("/metrics")
    async def metrics():
        from app.utils.metrics import render_metrics

        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "version": _best_effort_version(),
        "environment": settings.ENV,
        "uptime_seconds": int(max(0.0, time.time() - _START_TIME)),
        "timestamp": _utc_now_iso(),
    }


@app.get("/healthz")
async def healthz_check():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db_check():
    dialect = db.engine.url.get_backend_name()
    try:
        t0 = time.perf_counter()
        async with db.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency_ms = int(round((time.perf_counter() - t0) * 1000.0))
        return {
            "status": "ok",
            "db": {"dialect": dialect, "reachable": True, "latency_ms": latency_ms},
            "timestamp": _utc_now_iso(),
        }
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "db": {"dialect": dialect, "reachable": False, "latency_ms": None},
                "details": str(exc),
                "timestamp": _utc_now_iso(),
            },
        )
